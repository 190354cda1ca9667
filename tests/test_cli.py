"""Tests for the CLI module."""

import json
from unittest.mock import AsyncMock, patch

import pytest

from src.cli.main import build_parser, cmd_async, cmd_serve, main
from src.scheduler.errors import NotFoundError


class TestParser:
    """Tests for build_parser()."""

    def test_auto_schedule_arguments(self):
        args = build_parser().parse_args([
            "auto-schedule", "PLAN-1", "--user", "user-1", "--only-unscheduled", "--max-per-day", "3",
        ])

        assert args.command == "auto-schedule"
        assert args.plan_id == "PLAN-1"
        assert args.user == "user-1"
        assert args.only_unscheduled is True
        assert args.max_per_day == 3
        assert args.daily_hours is None
        assert args.func is cmd_async

    def test_redistribute_defaults(self):
        args = build_parser().parse_args(["redistribute", "PLAN-1", "-u", "user-1"])

        assert args.reason == "missed_task"
        assert args.max == 50

    def test_strategy_mode_choices(self):
        args = build_parser().parse_args(["strategy", "PLAN-1", "-u", "user-1", "-m", "emergency"])

        assert args.mode == "emergency"
        with pytest.raises(SystemExit):
            build_parser().parse_args(["strategy", "PLAN-1", "-u", "user-1", "-m", "turbo"])

    def test_plan_commands_require_user(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["detect", "PLAN-1"])

    def test_serve(self):
        args = build_parser().parse_args(["serve", "--port", "9000"])

        assert args.func is cmd_serve
        assert args.port == 9000
        assert args.host is None


class TestCommands:
    """Tests for command dispatch."""

    def test_success_returns_zero(self):
        handler = AsyncMock()

        with patch.dict("src.cli.main.COMMANDS", {"sweep": handler}):
            assert main(["sweep"]) == 0

        handler.assert_awaited_once()

    def test_engine_error_is_printed_as_json(self, capsys):
        """Should print the error payload and exit non-zero."""
        handler = AsyncMock(side_effect=NotFoundError("Plan PLAN-X not found", {"plan_id": "PLAN-X"}))

        with patch.dict("src.cli.main.COMMANDS", {"detect": handler}):
            code = main(["detect", "PLAN-X", "--user", "user-1"])

        assert code == 1
        output = json.loads(capsys.readouterr().out)
        assert output == {
            "error": "NotFoundError",
            "message": "Plan PLAN-X not found",
            "details": {"plan_id": "PLAN-X"},
        }

    def test_other_errors_propagate(self):
        handler = AsyncMock(side_effect=OSError("connection refused"))

        with patch.dict("src.cli.main.COMMANDS", {"sweep": handler}):
            with pytest.raises(OSError):
                main(["sweep"])

    def test_serve_runs_uvicorn(self, monkeypatch):
        monkeypatch.delenv("HOST", raising=False)
        monkeypatch.delenv("PORT", raising=False)

        with patch("src.cli.main.uvicorn.run") as mock_run:
            assert main(["serve", "--port", "9000"]) == 0

        mock_run.assert_called_once()
        assert mock_run.call_args.args == ("src.api.main:app",)
        assert mock_run.call_args.kwargs["host"] == "0.0.0.0"
        assert mock_run.call_args.kwargs["port"] == 9000
