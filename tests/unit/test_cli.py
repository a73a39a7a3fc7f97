"""Tests for the `python -m runsync` command line."""
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from runsync.__main__ import build_parser, main
from runsync.models.sync import SyncStatus, SyncType
from runsync.sync.errors import SessionNotFoundError
from runsync.sync.orchestrator import SyncResult


@pytest.fixture
def orchestrator():
    orch = MagicMock()
    orch.get_sync_status.return_value = {"session_id": "s1", "status": "completed"}
    with patch("runsync.db.engine.get_engine", return_value=MagicMock()), \
         patch("runsync.sync.orchestrator.build_orchestrator", return_value=orch):
        yield orch


class TestParser:
    def test_sync_options(self):
        args = build_parser().parse_args(["sync", "u1", "--since", "2024-01-01", "--no-enrich"])
        assert args.user_id == "u1"
        assert args.since == datetime(2024, 1, 1)
        assert args.until is None
        assert args.no_enrich is True
        assert args.incremental is False

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_bad_date_rejected(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["sync", "u1", "--since", "yesterday"])


class TestMain:
    def test_sync_exit_code_follows_result(self, orchestrator, capsys):
        orchestrator.sync_now = AsyncMock(return_value=SyncResult("s1", SyncStatus.COMPLETED))
        assert main(["sync", "u1", "--incremental"]) == 0
        kwargs = orchestrator.sync_now.await_args.kwargs
        assert kwargs["sync_type"] == SyncType.INCREMENTAL
        assert kwargs["options"].enrich is True
        assert '"status": "completed"' in capsys.readouterr().out

        orchestrator.sync_now = AsyncMock(return_value=SyncResult("s1", SyncStatus.FAILED))
        assert main(["sync", "u1"]) == 1

    def test_status_not_found(self, orchestrator, capsys):
        orchestrator.get_sync_status.side_effect = SessionNotFoundError("Sync session x not found")
        assert main(["status", "x"]) == 2
        assert capsys.readouterr().err.strip()

    def test_history(self, orchestrator, capsys):
        orchestrator.get_sync_history.return_value = ["a", "b"]
        orchestrator.describe.side_effect = lambda s: {"session_id": s}
        assert main(["history", "u1", "--limit", "2"]) == 0
        orchestrator.get_sync_history.assert_called_once_with("u1", 2)
        assert '"session_id": "b"' in capsys.readouterr().out
