from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from storyloom.domain.models import TimeTracker


@dataclass
class InsertResult:
    id: int
    inserted: bool


@dataclass
class StoryRow:
    id: int
    title: str
    mode: str
    created_at: datetime | None = None


@dataclass
class BranchStateRow:
    story_id: int
    branch_id: str
    time_tracker: TimeTracker | None = None
    activation_data: dict[str, int] = field(default_factory=dict)


@dataclass
class BranchOverrideRow:
    id: int
    story_id: int
    branch_id: str
    kind: str
    entity_id: str
    payload: dict[str, Any]
    deleted: bool


@dataclass
class SnapshotRow:
    id: int
    story_id: int
    branch_id: str
    position: int
    snapshot_json: str
    created_at: datetime | None = None


@dataclass
class CheckpointRow:
    id: int
    story_id: int
    branch_id: str
    name: str
    last_position: int
    snapshot_json: str
    snapshot_hash: str
    created_at: datetime | None = None
