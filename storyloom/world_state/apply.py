from __future__ import annotations

from dataclasses import dataclass, field

from loguru import logger

from storyloom.domain.models import entity_label
from storyloom.storage.repo import SQLAlchemyRepo
from storyloom.world_state.classifier import ClassificationResult
from storyloom.world_state.delta import DeltaBuilder, MutationPlan, WorldStateDelta


@dataclass
class ApplyReport:
    created: int = 0
    updated: int = 0
    time_advanced: bool = False
    failures: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


class ClassificationApplier:
    """Writes a mutation plan to the branch view, one operation at a time."""

    def __init__(self, repo: SQLAlchemyRepo):
        self.repo = repo

    async def apply_result(
        self,
        result: ClassificationResult,
        *,
        story_id: int,
        branch_id: str,
        builder: DeltaBuilder | None = None,
    ) -> tuple[WorldStateDelta, ApplyReport]:
        world = await self.repo.load_world_view(story_id, branch_id)
        plan, delta = (builder or DeltaBuilder(story_id, branch_id)).build(result, world)
        report = await self.apply_plan(plan, story_id=story_id, branch_id=branch_id)
        return delta, report

    async def apply_plan(self, plan: MutationPlan, *, story_id: int, branch_id: str) -> ApplyReport:
        log = logger.bind(phase="classification", story_id=story_id, branch_id=branch_id)
        report = ApplyReport()

        for kind, entity in plan.creations:
            try:
                await self.repo.add_entity(kind, entity)
                report.created += 1
            except Exception as exc:  # noqa: BLE001
                log.warning("Failed to create {} '{}': {}", kind.value, entity_label(entity), exc)
                report.failures.append(f"create {kind.value} {entity.id}: {exc}")

        for change in plan.updates:
            try:
                found = await self.repo.update_entity(change.kind, change.entity_id, change.changes, branch_id)
            except Exception as exc:  # noqa: BLE001
                log.warning("Failed to update {} {}: {}", change.kind.value, change.entity_id, exc)
                report.failures.append(f"update {change.kind.value} {change.entity_id}: {exc}")
                continue
            if found:
                report.updated += 1
            else:
                log.warning("Skipped update of missing {} {}", change.kind.value, change.entity_id)
                report.failures.append(f"update {change.kind.value} {change.entity_id}: not found")

        if plan.time_changed:
            try:
                await self.repo.save_time_tracker(story_id, branch_id, plan.time_tracker)
                report.time_advanced = True
            except Exception as exc:  # noqa: BLE001
                log.warning("Failed to advance time tracker: {}", exc)
                report.failures.append(f"time tracker: {exc}")

        log.debug(
            "Applied classification plan: created={} updated={} failures={}",
            report.created,
            report.updated,
            len(report.failures),
        )
        return report
