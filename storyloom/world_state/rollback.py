"""Reverse the world-state effects of classified entries.

Deltas are walked newest first. Each one deletes the entities its step created
and writes back the fields its step overwrote; the time tracker and the
current location are then restored once, from the oldest delta reversed.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from loguru import logger

from storyloom.domain.models import EntityKind, StoryEntry
from storyloom.storage.repo import SQLAlchemyRepo
from storyloom.world_state.delta import WorldStateDelta


@dataclass
class KindCounts:
    deleted_attempted: int = 0
    deleted_succeeded: int = 0
    restored_attempted: int = 0
    restored_succeeded: int = 0


@dataclass
class RollbackSummary:
    target_position: int
    entries_considered: int = 0
    entries_reversed: int = 0
    counts: dict[EntityKind, KindCounts] = field(default_factory=lambda: {kind: KindCounts() for kind in EntityKind})
    time_tracker_restored: bool = False
    current_location_restored: bool = False
    snapshots_purged: int = 0
    overrides_cleaned: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return sum(item.deleted_attempted + item.restored_attempted for item in self.counts.values())

    @property
    def succeeded(self) -> int:
        return sum(item.deleted_succeeded + item.restored_succeeded for item in self.counts.values())

    @property
    def ok(self) -> bool:
        return not self.errors

    def describe(self) -> str:
        if self.entries_considered == 0:
            return "nothing to roll back"
        text = f"{self.succeeded} of {self.attempted} restored"
        if self.errors:
            text += f" ({len(self.errors)} failed)"
        return text


class RollbackEngine:
    def __init__(self, repo: SQLAlchemyRepo):
        self.repo = repo

    async def rollback(self, story_id: int, branch_id: str, target_position: int) -> RollbackSummary:
        """Undo every delta at or after ``target_position``. Never raises."""

        log = logger.bind(phase="rollback", story_id=story_id, branch_id=branch_id, position=target_position)
        summary = RollbackSummary(target_position=target_position)

        try:
            entries = await self.repo.list_story_entries(
                story_id,
                branch_id,
                from_position=target_position,
                with_delta_only=True,
            )
        except Exception as exc:  # noqa: BLE001
            log.error("Failed to load entries for rollback: {}", exc)
            summary.errors.append(f"load entries: {exc}")
            return summary

        entries.sort(key=lambda item: item.position, reverse=True)
        summary.entries_considered = len(entries)
        oldest: WorldStateDelta | None = None
        reversed_cleanly: list[StoryEntry] = []

        for entry in entries:
            delta = entry.world_state_delta
            if delta is None:
                continue
            failures_before = len(summary.errors)
            await self._delete_created(delta, branch_id, summary)
            await self._restore_previous(delta, branch_id, summary)
            oldest = delta
            if len(summary.errors) == failures_before:
                reversed_cleanly.append(entry)
            else:
                log.warning("Entry at position {} reversed with failures", entry.position)

        if oldest is not None:
            await self._restore_environment(oldest, story_id, branch_id, summary)

        try:
            summary.snapshots_purged = await self.repo.delete_snapshots_from(story_id, branch_id, target_position - 1)
        except Exception as exc:  # noqa: BLE001
            log.warning("Failed to purge snapshots: {}", exc)
            summary.errors.append(f"purge snapshots: {exc}")

        try:
            summary.overrides_cleaned = await self.repo.cleanup_noop_overrides(story_id, branch_id)
        except Exception as exc:  # noqa: BLE001
            log.warning("Failed to clean branch overrides: {}", exc)
            summary.errors.append(f"cleanup overrides: {exc}")

        for entry in reversed_cleanly:
            try:
                await self.repo.set_entry_delta(entry.id, None)
                summary.entries_reversed += 1
            except Exception as exc:  # noqa: BLE001
                log.warning("Failed to detach delta from entry {}: {}", entry.id, exc)
                summary.errors.append(f"detach delta {entry.id}: {exc}")

        log.info("Rollback finished: {}", summary.describe())
        return summary

    async def _delete_created(self, delta: WorldStateDelta, branch_id: str, summary: RollbackSummary) -> None:
        for kind in EntityKind:
            counts = summary.counts[kind]
            for entity_id in delta.created_entities.ids_for(kind):
                counts.deleted_attempted += 1
                try:
                    deleted = await self.repo.delete_entity(kind, entity_id, branch_id)
                except Exception as exc:  # noqa: BLE001
                    logger.bind(phase="rollback").warning("Failed to delete {} {}: {}", kind.value, entity_id, exc)
                    summary.errors.append(f"delete {kind.value} {entity_id}: {exc}")
                    continue
                if not deleted:
                    # Already gone; the goal state holds.
                    logger.bind(phase="rollback").debug("Created {} {} already absent", kind.value, entity_id)
                counts.deleted_succeeded += 1

    async def _restore_previous(self, delta: WorldStateDelta, branch_id: str, summary: RollbackSummary) -> None:
        for kind in EntityKind:
            counts = summary.counts[kind]
            for snapshot in delta.previous_state.snapshots_for(kind):
                counts.restored_attempted += 1
                try:
                    restored = await self.repo.update_entity(kind, snapshot.id, snapshot.values, branch_id)
                except Exception as exc:  # noqa: BLE001
                    logger.bind(phase="rollback").warning("Failed to restore {} {}: {}", kind.value, snapshot.id, exc)
                    summary.errors.append(f"restore {kind.value} {snapshot.id}: {exc}")
                    continue
                if not restored:
                    summary.errors.append(f"restore {kind.value} {snapshot.id}: not found")
                    continue
                counts.restored_succeeded += 1

    async def _restore_environment(
        self,
        delta: WorldStateDelta,
        story_id: int,
        branch_id: str,
        summary: RollbackSummary,
    ) -> None:
        previous = delta.previous_state
        try:
            await self.repo.save_time_tracker(story_id, branch_id, previous.time_tracker)
            summary.time_tracker_restored = True
        except Exception as exc:  # noqa: BLE001
            logger.bind(phase="rollback").warning("Failed to restore time tracker: {}", exc)
            summary.errors.append(f"restore time tracker: {exc}")

        try:
            await self.repo.set_current_location(story_id, branch_id, previous.current_location_id)
            summary.current_location_restored = True
        except Exception as exc:  # noqa: BLE001
            logger.bind(phase="rollback").warning("Failed to restore current location: {}", exc)
            summary.errors.append(f"restore current location: {exc}")


async def delete_entries_from(
    repo: SQLAlchemyRepo,
    story_id: int,
    branch_id: str,
    position: int,
) -> tuple[RollbackSummary, int]:
    """Roll back world state from ``position`` and then delete those entries.

    Chapters summarizing any deleted entry are deleted too.
    """

    summary = await RollbackEngine(repo).rollback(story_id, branch_id, position)
    deleted = await repo.delete_story_entries_from(story_id, branch_id, position)
    chapters = await repo.delete_chapters_from(story_id, branch_id, position)
    logger.bind(phase="rollback", story_id=story_id, branch_id=branch_id).info(
        "Deleted {} entries and {} chapters from position {}", deleted, chapters, position
    )
    return summary, deleted
