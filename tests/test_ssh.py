"""Tests for SSH command building and env injection."""
import shlex
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from agent_swarm.exceptions import InvalidNameError, ProviderOperationError
from agent_swarm.interfaces.process import ProcessResult, ProcessRunner
from agent_swarm.interfaces.provider import SshInfo
from agent_swarm.ssh import (
    build_scp_command,
    build_ssh_command,
    export_prefix,
    login_shell_command,
    provisioning_done,
    scp_to,
    ssh_exec,
    ssh_interactive,
    ssh_reachable,
    ssh_run,
    vscode_remote_command,
    wrap_command,
)

INFO = SshInfo(host="10.0.0.5", port=2222, user="worker")


class TestEnvInjection:
    def test_empty_env(self):
        assert export_prefix({}) == ""
        assert wrap_command("ls", None) == "ls"
        assert login_shell_command({}) is None

    def test_values_are_quoted(self):
        prefix = export_prefix({"TOKEN": "a'b c$d"})
        assert prefix == "export TOKEN=" + shlex.quote("a'b c$d")
        # the shell parses it back to the literal value
        assert shlex.split(prefix) == ["export", "TOKEN=a'b c$d"]

    def test_wrap_and_login(self):
        env = {"A": "1", "B": "2"}
        assert wrap_command("make test", env) == "export A=1 && export B=2 && make test"
        assert login_shell_command(env) == "export A=1 && export B=2 && exec $SHELL -l"

    def test_invalid_name_rejected(self):
        with pytest.raises(InvalidNameError):
            export_prefix({"BAD-NAME": "x"})


class TestBuilders:
    def test_ssh_command(self):
        cmd = build_ssh_command(INFO, batch_mode=True, connect_timeout=3)
        assert cmd[0] == "ssh"
        assert "StrictHostKeyChecking=no" in cmd
        assert "UserKnownHostsFile=/dev/null" in cmd
        assert "BatchMode=yes" in cmd
        assert "ConnectTimeout=3" in cmd
        assert cmd[cmd.index("-p") + 1] == "2222"
        assert cmd[-1] == "worker@10.0.0.5"

    def test_scp_uses_capital_p(self):
        cmd = build_scp_command(INFO, "a.txt", "worker@10.0.0.5:/tmp/a.txt")
        assert cmd[cmd.index("-P") + 1] == "2222"
        assert cmd[-2:] == ["a.txt", "worker@10.0.0.5:/tmp/a.txt"]

    def test_vscode_remote_command(self):
        assert vscode_remote_command(INFO) == [
            "code", "--remote", "ssh-remote+worker@10.0.0.5", "/home/worker",
        ]
        assert vscode_remote_command(INFO, "/srv/app")[-1] == "/srv/app"


class TestExecution:
    @patch("agent_swarm.ssh.subprocess.call", return_value=0)
    def test_interactive_forwards_agent(self, mock_call):
        assert ssh_interactive(INFO, {"A": "1"}) == 0
        cmd = mock_call.call_args[0][0]
        assert "-A" in cmd and "-t" in cmd
        assert cmd[-1] == "export A=1 && exec $SHELL -l"

    @patch("agent_swarm.ssh.subprocess.call", return_value=0)
    def test_interactive_plain_login(self, mock_call):
        ssh_interactive(INFO, {})
        assert mock_call.call_args[0][0][-1] == "worker@10.0.0.5"

    @patch("agent_swarm.ssh.subprocess.call", return_value=3)
    def test_run_returns_exit_code(self, mock_call):
        assert ssh_run(INFO, "false", {"A": "1"}) == 3
        assert mock_call.call_args[0][0][-1] == "export A=1 && false"
        assert mock_call.call_args.kwargs["stdin"] is subprocess.DEVNULL

    @patch("agent_swarm.ssh.subprocess.call", return_value=1)
    def test_scp_failure_raises(self, mock_call):
        with pytest.raises(ProviderOperationError):
            scp_to(INFO, "local.txt", "/tmp/x")

    def test_exec_returns_stdout(self):
        runner = MagicMock(spec=ProcessRunner)
        runner.run.return_value = ProcessResult(0, "hello", "")
        assert ssh_exec(runner, INFO, "echo hello") == "hello"
        assert "BatchMode=yes" in runner.run.call_args[0][0]


class TestReadinessChecks:
    def test_reachable_runs_true(self):
        runner = MagicMock(spec=ProcessRunner)
        runner.ok.return_value = True
        assert ssh_reachable(runner, INFO) is True
        assert runner.ok.call_args[0][0][-1] == "true"

    @pytest.mark.parametrize(
        "stdout,expected",
        [
            ("status: done", True),
            ('{"v1": {"errors": []}} result', True),
            ("pending", False),
            ("status: running", False),
        ],
    )
    def test_provisioning_done(self, stdout, expected):
        runner = MagicMock(spec=ProcessRunner)
        runner.run.return_value = ProcessResult(0, stdout, "")
        assert provisioning_done(runner, INFO) is expected

    def test_provisioning_ssh_failure(self):
        runner = MagicMock(spec=ProcessRunner)
        runner.run.return_value = ProcessResult(255, "", "Connection refused")
        assert provisioning_done(runner, INFO) is False
