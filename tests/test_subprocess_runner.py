"""Tests for SubprocessRunner."""
import subprocess
from unittest.mock import patch

import pytest

from agent_swarm.backends.subprocess_runner import SubprocessRunner
from agent_swarm.exceptions import ProviderOperationError


def completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class TestSubprocessRunner:
    @patch("agent_swarm.backends.subprocess_runner.subprocess.run")
    def test_output_is_stripped(self, mock_run):
        mock_run.return_value = completed(stdout="hello\n", stderr=" \n")
        result = SubprocessRunner().run(["echo", "hello"])
        assert result.stdout == "hello"
        assert result.stderr == ""
        assert mock_run.call_args.kwargs["capture_output"] is True

    @patch("agent_swarm.backends.subprocess_runner.subprocess.run")
    def test_failure_keeps_stderr(self, mock_run):
        mock_run.return_value = completed(returncode=2, stderr="domain not found\n")
        with pytest.raises(ProviderOperationError) as exc:
            SubprocessRunner().run(["virsh", "start", "x"])
        assert exc.value.detail == "domain not found"
        assert exc.value.returncode == 2

    @patch("agent_swarm.backends.subprocess_runner.subprocess.run")
    def test_unchecked_failure_returns_result(self, mock_run):
        mock_run.return_value = completed(returncode=1)
        result = SubprocessRunner().run(["false"], check=False)
        assert result.success is False

    @patch("agent_swarm.backends.subprocess_runner.subprocess.run", side_effect=FileNotFoundError("no such file"))
    def test_missing_tool(self, mock_run):
        with pytest.raises(ProviderOperationError, match="virsh not found"):
            SubprocessRunner().run(["virsh", "list"])

    @patch(
        "agent_swarm.backends.subprocess_runner.subprocess.run",
        side_effect=subprocess.TimeoutExpired(cmd="sleep", timeout=1),
    )
    def test_timeout(self, mock_run):
        with pytest.raises(ProviderOperationError, match="timed out"):
            SubprocessRunner().run(["sleep", "5"], timeout=1)

    @patch("agent_swarm.backends.subprocess_runner.subprocess.run", side_effect=FileNotFoundError())
    def test_ok_never_raises(self, mock_run):
        assert SubprocessRunner().ok(["missing-tool"]) is False

    @patch("agent_swarm.backends.subprocess_runner.subprocess.Popen")
    def test_spawn_detached(self, mock_popen):
        SubprocessRunner().spawn_detached(["vm-helper", "run", "x"])
        assert mock_popen.call_args.kwargs["start_new_session"] is True

    @patch("agent_swarm.backends.subprocess_runner.subprocess.Popen", side_effect=OSError("denied"))
    def test_spawn_failure(self, mock_popen):
        with pytest.raises(ProviderOperationError):
            SubprocessRunner().spawn_detached(["vm-helper"])
