from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
from typing import Any

from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.pretty import Pretty
from rich.table import Table

from storyloom.config import load_config
from storyloom.config.loader import masked_env_snapshot
from storyloom.chapters.service import ChapterService
from storyloom.config.schema import AppConfigRoot
from storyloom.domain.models import MAIN_BRANCH
from storyloom.events.types import StoryCreated
from storyloom.lorebook.classifier import LorebookClassifier
from storyloom.lorebook.merge import merge_lorebook_entries
from storyloom.pipeline.abort import AbortSignal
from storyloom.pipeline.context import AppContext
from storyloom.pipeline.orchestrator import PipelineOrchestrator
from storyloom.pipeline.types import NarrativeChunk, PhaseError, PipelineResult, TurnAborted, TurnInput
from storyloom.storage.db import DatabaseService, init_db_service, session_scope, shutdown_db_service
from storyloom.storage.repo import SQLAlchemyRepo
from storyloom.utils.logging import setup_logging
from storyloom.world_state.rollback import RollbackEngine, RollbackSummary, delete_entries_from
from storyloom.world_state.snapshots import CheckpointService

console = Console()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="storyloom")
    parser.add_argument("--config", type=Path, default=None, help="Path to custom config YAML")
    parser.add_argument("--profile", type=str, default=None, help="Config profile name")
    parser.add_argument("--data-dir", type=Path, default=None, help="Override data directory")
    parser.add_argument("--sqlite-path", type=Path, default=None, help="Override story database path")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("config", help="Validate and print effective config")
    subparsers.add_parser("init-db", help="Create the story database tables")

    story_parser = subparsers.add_parser("new-story", help="Create a story")
    story_parser.add_argument("--title", type=str, required=True, help="Story title")
    story_parser.add_argument("--mode", choices=["adventure", "creative"], default="adventure", help="Story mode")

    turn_parser = subparsers.add_parser("turn", help="Run one turn of the generation pipeline")
    turn_parser.add_argument("--story-id", type=int, required=True, help="Story id")
    turn_parser.add_argument("--branch", type=str, default=MAIN_BRANCH, help="Branch id")
    turn_parser.add_argument("--input", type=str, required=True, help="Player action or author direction")
    turn_parser.add_argument("--mode", choices=["adventure", "creative"], default=None, help="Override story mode")
    turn_parser.add_argument("--no-stream", action="store_true", help="Disable narrative streaming")

    rollback_parser = subparsers.add_parser("rollback", help="Undo world-state changes from a position onward")
    rollback_parser.add_argument("--story-id", type=int, required=True, help="Story id")
    rollback_parser.add_argument("--branch", type=str, default=MAIN_BRANCH, help="Branch id")
    rollback_parser.add_argument("--position", type=int, required=True, help="First entry position to undo")
    rollback_parser.add_argument("--delete", action="store_true", help="Also delete the rolled-back entries")

    checkpoint_parser = subparsers.add_parser("checkpoint", help="Named full-story checkpoints")
    checkpoint_sub = checkpoint_parser.add_subparsers(dest="checkpoint_command", required=True)
    create_parser = checkpoint_sub.add_parser("create", help="Create a checkpoint")
    create_parser.add_argument("--story-id", type=int, required=True, help="Story id")
    create_parser.add_argument("--branch", type=str, default=MAIN_BRANCH, help="Branch id")
    create_parser.add_argument("--name", type=str, required=True, help="Checkpoint name")
    list_parser = checkpoint_sub.add_parser("list", help="List checkpoints")
    list_parser.add_argument("--story-id", type=int, required=True, help="Story id")
    restore_parser = checkpoint_sub.add_parser("restore", help="Restore a checkpoint")
    restore_parser.add_argument("--checkpoint-id", type=int, required=True, help="Checkpoint id")

    lorebook_parser = subparsers.add_parser("lorebook", help="Lorebook maintenance")
    lorebook_sub = lorebook_parser.add_subparsers(dest="lorebook_command", required=True)
    classify_parser = lorebook_sub.add_parser("classify", help="Assign entry types with the LLM")
    classify_parser.add_argument("--story-id", type=int, required=True, help="Story id")
    classify_parser.add_argument("--branch", type=str, default=MAIN_BRANCH, help="Branch id")
    merge_parser = lorebook_sub.add_parser("merge", help="Merge several entries into one")
    merge_parser.add_argument("--story-id", type=int, required=True, help="Story id")
    merge_parser.add_argument("--branch", type=str, default=MAIN_BRANCH, help="Branch id")
    merge_parser.add_argument("--ids", nargs="+", required=True, help="Entry ids to merge")
    merge_parser.add_argument("--name", type=str, default=None, help="Name of the merged entry")

    chapter_parser = subparsers.add_parser("chapter", help="Chapter summaries")
    chapter_sub = chapter_parser.add_subparsers(dest="chapter_command", required=True)
    chapter_create = chapter_sub.add_parser("create", help="Summarize a range of entries into a chapter")
    chapter_create.add_argument("--story-id", type=int, required=True, help="Story id")
    chapter_create.add_argument("--branch", type=str, default=MAIN_BRANCH, help="Branch id")
    chapter_create.add_argument("--start", type=int, required=True, help="First entry position")
    chapter_create.add_argument("--end", type=int, required=True, help="Last entry position")
    chapter_list = chapter_sub.add_parser("list", help="List chapters")
    chapter_list.add_argument("--story-id", type=int, required=True, help="Story id")
    chapter_list.add_argument("--branch", type=str, default=MAIN_BRANCH, help="Branch id")

    return parser


def _build_overrides(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if args.data_dir:
        overrides["app"] = {"data_dir": str(args.data_dir)}
    if args.sqlite_path:
        overrides["storage"] = {"sqlite_path": str(args.sqlite_path)}
    if getattr(args, "no_stream", False):
        overrides["narrative"] = {"streaming": False}
    return overrides


def _print_config(config: AppConfigRoot) -> None:
    env_snapshot = masked_env_snapshot(config)
    console.print(Panel(Pretty(config.model_dump(mode="json")), title="Effective Config"))
    console.print(Panel(Pretty(env_snapshot), title="Env Snapshot"))


def _print_rollback(summary: RollbackSummary, deleted: int | None = None) -> None:
    table = Table(title="Rollback Summary", show_header=True, header_style="bold")
    table.add_column("Kind")
    table.add_column("Deleted")
    table.add_column("Restored")
    for kind, counts in summary.counts.items():
        table.add_row(
            kind.value,
            f"{counts.deleted_succeeded}/{counts.deleted_attempted}",
            f"{counts.restored_succeeded}/{counts.restored_attempted}",
        )
    console.print(table)
    details = [summary.describe(), f"entries reversed: {summary.entries_reversed}/{summary.entries_considered}"]
    if deleted is not None:
        details.append(f"entries deleted: {deleted}")
    for error in summary.errors:
        details.append(f"[red]{error}[/red]")
    console.print(Panel("\n".join(details), title="Rollback"))


def _print_turn(result: PipelineResult) -> None:
    table = Table(title="Turn Summary", show_header=True, header_style="bold")
    table.add_column("Phase")
    table.add_column("Outcome")
    for phase in ("retrieval", "classification", "translation", "image"):
        phase_result = getattr(result, phase)
        if phase_result is None:
            outcome = "-"
        elif phase_result.skipped_reason is not None:
            outcome = f"skipped ({phase_result.skipped_reason})"
        elif phase_result.error:
            outcome = f"degraded: {phase_result.error}"
        else:
            outcome = "ok"
        table.add_row(phase, outcome)
    if result.post_generation is not None:
        table.add_row("position", str(result.post_generation.position))
        if result.post_generation.suggestions:
            table.add_row("suggestions", "\n".join(result.post_generation.suggestions))
    console.print(table)


async def _run_turn(config: AppConfigRoot, db: DatabaseService, args: argparse.Namespace) -> None:
    ctx = AppContext.from_config(config, db)
    orchestrator = PipelineOrchestrator(ctx)
    signal = AbortSignal()
    execution = orchestrator.execute(
        TurnInput(story_id=args.story_id, user_input=args.input, branch_id=args.branch, mode=args.mode, signal=signal)
    )
    try:
        async for event in execution:
            if isinstance(event, NarrativeChunk):
                console.print(event.chunk, end="", markup=False, highlight=False)
            elif isinstance(event, PhaseError):
                console.print(f"\n[yellow]{event.phase}: {event.error}[/yellow]")
            elif isinstance(event, TurnAborted):
                console.print(f"\n[yellow]Turn aborted in {event.phase}[/yellow]")
    except asyncio.CancelledError:
        signal.abort("cancelled")
        raise
    console.print()

    result = execution.result
    if result is None:
        return
    if result.fatal_error:
        restored = await orchestrator.restore_backup(result)
        console.print(
            Panel(
                f"{result.fatal_phase}: {result.fatal_error}\nBackup restored: {restored}",
                title="Turn Failed",
                style="red",
            )
        )
        return
    _print_turn(result)
    await ctx.wait_background()


async def _main_async() -> None:
    parser = _build_parser()
    args = parser.parse_args()

    overrides = _build_overrides(args)
    config = load_config(
        config_path=args.config,
        profile=args.profile,
        overrides=overrides,
    )

    setup_logging(config.app.log_level)
    logger.info("Loaded configuration")

    if args.command == "config":
        _print_config(config)
        return

    db = await init_db_service(config.storage.sqlite_path)
    try:
        if args.command == "init-db":
            console.print(Panel(f"Database ready at {config.storage.sqlite_path}", title="init-db"))
            return

        if args.command == "new-story":
            async with db.transaction() as session:
                created = await SQLAlchemyRepo(session).create_story(args.title, args.mode)
            AppContext.from_config(config, db).bus.emit(StoryCreated(story_id=created.id, title=args.title))
            console.print(Panel(f"Story {created.id}: {args.title} ({args.mode})", title="new-story"))
            return

        if args.command == "turn":
            await _run_turn(config, db, args)
            return

        if args.command == "rollback":
            async with session_scope() as session:
                repo = SQLAlchemyRepo(session)
                if args.delete:
                    summary, deleted = await delete_entries_from(repo, args.story_id, args.branch, args.position)
                else:
                    summary = await RollbackEngine(repo).rollback(args.story_id, args.branch, args.position)
                    deleted = None
            _print_rollback(summary, deleted)
            return

        if args.command == "checkpoint":
            async with session_scope() as session:
                service = CheckpointService(SQLAlchemyRepo(session))
                if args.checkpoint_command == "create":
                    checkpoint_id = await service.create(args.story_id, args.branch, args.name)
                    console.print(Panel(f"Checkpoint {checkpoint_id} '{args.name}' created", title="checkpoint"))
                elif args.checkpoint_command == "list":
                    table = Table(title="Checkpoints", show_header=True, header_style="bold")
                    table.add_column("ID")
                    table.add_column("Name")
                    table.add_column("Branch")
                    table.add_column("Last position")
                    table.add_column("Created")
                    for row in await service.list(args.story_id):
                        table.add_row(str(row.id), row.name, row.branch_id, str(row.last_position), str(row.created_at))
                    console.print(table)
                else:
                    backup = await service.restore(args.checkpoint_id)
                    console.print(
                        Panel(f"Restored {len(backup.entries)} entries on branch {backup.branch_id}", title="checkpoint")
                    )
            return

        if args.command == "chapter":
            if args.chapter_command == "create":
                ctx = AppContext.from_config(config, db)
                async with session_scope() as session:
                    chapter = await ChapterService(ctx.chapters_client, ctx.bus, config.chapters).create_chapter(
                        SQLAlchemyRepo(session), args.story_id, args.branch, args.start, args.end
                    )
                console.print(
                    Panel(
                        f"Chapter {chapter.number}: {chapter.title or '(untitled)'}\n{chapter.summary}",
                        title="chapter",
                    )
                )
            else:
                async with session_scope() as session:
                    chapters = await SQLAlchemyRepo(session).list_chapters(args.story_id, args.branch)
                table = Table(title="Chapters", show_header=True, header_style="bold")
                table.add_column("#")
                table.add_column("Title")
                table.add_column("Positions")
                table.add_column("Entries")
                for chapter in chapters:
                    table.add_row(
                        str(chapter.number),
                        chapter.title or "",
                        f"{chapter.start_position}-{chapter.end_position}",
                        str(chapter.entry_count),
                    )
                console.print(table)
            return

        if args.command == "lorebook":
            if args.lorebook_command == "merge":
                async with session_scope() as session:
                    merged = await merge_lorebook_entries(
                        SQLAlchemyRepo(session),
                        args.story_id,
                        args.branch,
                        list(args.ids),
                        name=args.name,
                    )
                console.print(Panel(f"Merged into {merged.id} '{merged.name}'", title="lorebook"))
                return

            ctx = AppContext.from_config(config, db)
            async with db.transaction() as session:
                entries = await SQLAlchemyRepo(session).list_lorebook_entries(args.story_id, args.branch)

            def _progress(done: int, total: int) -> None:
                console.print(f"classified {done}/{total}")

            classifier = LorebookClassifier(ctx.lorebook_client, config.lorebook)
            classified = await classifier.classify_entries(entries, on_progress=_progress)
            changed = 0
            async with db.transaction() as session:
                repo = SQLAlchemyRepo(session)
                for before, after in zip(entries, classified):
                    if before.type != after.type:
                        await repo.update_lorebook_entry(after.id, {"type": after.type})
                        changed += 1
            console.print(Panel(f"{changed} of {len(entries)} entries changed type", title="lorebook classify"))
            return
    finally:
        await shutdown_db_service()


def main() -> None:
    asyncio.run(_main_async())


if __name__ == "__main__":
    main()
