"""Tests for the coding-bot CLI."""

from __future__ import annotations

import sys
from unittest.mock import AsyncMock, patch

import pytest
import yaml

from codingbot.__main__ import _print_events, main
from codingbot.models import AdapterEvent, AdapterEventKind


@pytest.fixture(autouse=True)
def isolated_cwd(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for name in ("REPO_BASE_PATH", "REPO_NAME", "BASE_BRANCH"):
        monkeypatch.delenv(name, raising=False)


def _run_main(*argv: str) -> int:
    with patch.object(sys, "argv", ["coding-bot", *argv]):
        with pytest.raises(SystemExit) as exc_info:
            main()
    return exc_info.value.code


async def _events(*events):
    for event in events:
        yield event


class TestMain:
    def test_no_command_prints_help(self, capsys):
        assert _run_main() == 1
        assert "usage: coding-bot" in capsys.readouterr().out

    def test_cleanup_removes_ticket_worktree(self, tmp_path, capsys):
        remove = AsyncMock()
        with patch("codingbot.worktree.WorktreeManager.remove", remove):
            code = _run_main("cleanup", "--ticket", "ENG-12")

        assert code == 0
        base_path, repo, branch = remove.call_args.args
        assert branch == "ticket/eng-12"
        assert base_path == str(tmp_path.parent)
        assert repo == tmp_path.name
        assert "Removed worktree for ticket/eng-12" in capsys.readouterr().out

    def test_invalid_config_exits(self, tmp_path, capsys):
        config_file = tmp_path / "bad.yaml"
        config_file.write_text(
            yaml.dump({"runtime": {"session_timeout": 10, "question_timeout": 60}})
        )
        assert _run_main("--config", str(config_file), "cleanup", "--ticket", "ENG-1") == 1
        assert "invalid configuration" in capsys.readouterr().err


class TestPrintEvents:
    async def test_success(self, capsys):
        code = await _print_events(
            _events(
                AdapterEvent(kind=AdapterEventKind.SYSTEM_INIT, tools=["Read"]),
                AdapterEvent(kind=AdapterEventKind.TOOL_USE, tool_name="Read"),
                AdapterEvent(kind=AdapterEventKind.RESULT, success=True, text="All good"),
            )
        )
        out = capsys.readouterr().out
        assert code == 0
        assert "[init] tools: Read" in out
        assert "[action] Read" in out
        assert "[done] All good" in out

    async def test_failure(self, capsys):
        code = await _print_events(
            _events(AdapterEvent(kind=AdapterEventKind.RESULT, success=False, errors=["boom"]))
        )
        assert code == 1
        assert "[failed] boom" in capsys.readouterr().err

    async def test_no_result(self, capsys):
        code = await _print_events(
            _events(AdapterEvent(kind=AdapterEventKind.ASSISTANT_TEXT, text="hmm"))
        )
        assert code == 1
