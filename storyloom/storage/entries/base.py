from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, text as sa_text
from sqlalchemy.orm import Mapped, mapped_column

from storyloom.domain.models import MAIN_BRANCH
from storyloom.storage.base import Base


class StoryEntryRecord(Base):
    __tablename__ = "story_entries"
    __table_args__ = (
        UniqueConstraint("story_id", "branch_id", "position", name="uq_story_entries_position"),
        Index("idx_story_entries_story_branch", "story_id", "branch_id"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    story_id: Mapped[int] = mapped_column(ForeignKey("stories.id", ondelete="CASCADE"), nullable=False)
    branch_id: Mapped[str] = mapped_column(String(64), nullable=False, default=MAIN_BRANCH)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    translated_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    world_state_delta: Mapped[dict[str, Any] | None] = mapped_column(JSON(none_as_null=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=sa_text("CURRENT_TIMESTAMP"), nullable=False
    )
