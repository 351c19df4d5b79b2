from __future__ import annotations

from pathlib import Path

import pytest

from storyloom.cli import _build_overrides, _build_parser


def test_turn_defaults_to_main_branch_and_streaming() -> None:
    parser = _build_parser()
    args = parser.parse_args(["turn", "--story-id", "1", "--input", "I open the door"])

    assert args.command == "turn"
    assert args.branch == "main"
    assert args.mode is None
    assert args.no_stream is False
    assert _build_overrides(args) == {}


def test_turn_no_stream_builds_override() -> None:
    parser = _build_parser()
    args = parser.parse_args(["turn", "--story-id", "1", "--input", "look", "--no-stream", "--mode", "creative"])

    overrides = _build_overrides(args)

    assert args.mode == "creative"
    assert overrides["narrative"]["streaming"] is False


def test_global_path_flags_build_overrides() -> None:
    parser = _build_parser()
    args = parser.parse_args(["--data-dir", "d", "--sqlite-path", "d/s.db", "init-db"])

    overrides = _build_overrides(args)

    assert overrides["app"]["data_dir"] == str(Path("d"))
    assert overrides["storage"]["sqlite_path"] == str(Path("d/s.db"))


def test_rollback_accepts_delete_flag() -> None:
    parser = _build_parser()
    args = parser.parse_args(["rollback", "--story-id", "2", "--position", "10", "--delete"])

    assert args.position == 10
    assert args.delete is True


def test_checkpoint_and_lorebook_subcommands() -> None:
    parser = _build_parser()

    restore = parser.parse_args(["checkpoint", "restore", "--checkpoint-id", "4"])
    merge = parser.parse_args(["lorebook", "merge", "--story-id", "1", "--ids", "a", "b", "--name", "Guild"])

    assert restore.checkpoint_command == "restore"
    assert restore.checkpoint_id == 4
    assert merge.lorebook_command == "merge"
    assert merge.ids == ["a", "b"]
    assert merge.name == "Guild"


def test_new_story_rejects_unknown_mode() -> None:
    parser = _build_parser()

    with pytest.raises(SystemExit):
        parser.parse_args(["new-story", "--title", "T", "--mode", "epic"])


def test_chapter_subcommands() -> None:
    parser = _build_parser()

    create = parser.parse_args(["chapter", "create", "--story-id", "3", "--start", "0", "--end", "9"])
    listed = parser.parse_args(["chapter", "list", "--story-id", "3", "--branch", "alt"])

    assert create.chapter_command == "create"
    assert (create.start, create.end, create.branch) == (0, 9, "main")
    assert listed.chapter_command == "list"
    assert listed.branch == "alt"
