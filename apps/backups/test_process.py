"""
Tests for external process execution.
"""

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from apps.backups.exceptions import BackupTimeout
from apps.backups.process import COMMAND_NOT_FOUND, ProcessResult, SubprocessRunner


class TestProcessResult:
    def test_ok(self):
        assert ProcessResult(returncode=0).ok
        assert not ProcessResult(returncode=1).ok

    def test_tail_prefers_stderr(self):
        result = ProcessResult(returncode=1, stdout="out", stderr="\n".join(f"line {i}" for i in range(30)))
        tail = result.tail(lines=3)
        assert tail == "line 27\nline 28\nline 29"

    def test_tail_falls_back_to_stdout(self):
        assert ProcessResult(returncode=1, stdout="only stdout\n").tail() == "only stdout"


class TestSubprocessRunner:
    @patch("apps.backups.process.subprocess.run")
    def test_success(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="done", stderr="")

        result = SubprocessRunner().run(["mongodump", "--version"], timeout=30)

        assert result.ok
        assert result.stdout == "done"
        args, kwargs = mock_run.call_args
        assert args[0] == ["mongodump", "--version"]
        assert kwargs["timeout"] == 30
        assert kwargs["capture_output"] is True

    @patch("apps.backups.process.subprocess.run")
    def test_timeout_raises_backup_timeout(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="mongodump", timeout=5)

        with pytest.raises(BackupTimeout) as exc_info:
            SubprocessRunner().run(["mongodump"], timeout=5, phase="dump")

        assert exc_info.value.phase == "dump"
        assert exc_info.value.seconds == 5

    @patch("apps.backups.process.subprocess.run")
    def test_missing_executable(self, mock_run):
        mock_run.side_effect = FileNotFoundError("mongodump")

        result = SubprocessRunner().run(["mongodump"], timeout=5)

        assert result.returncode == COMMAND_NOT_FOUND
        assert "command not found" in result.stderr
