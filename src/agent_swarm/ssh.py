"""
SSH session helpers for agent-swarm.

Builds ssh/scp command lines for a running VM and injects resolved secrets
into the remote shell: every variable is exported, shell-quoted, before the
user's command runs or the login shell starts.
"""

import re
import shlex
import subprocess
from typing import List, Mapping, Optional

import structlog

from agent_swarm.exceptions import InvalidNameError, ProviderOperationError
from agent_swarm.interfaces.process import ProcessRunner
from agent_swarm.interfaces.provider import SshInfo

log = structlog.get_logger(__name__)

# ── default SSH flags (used everywhere) ──────────────────────────────────────

DEFAULT_SSH_OPTS: List[str] = [
    "-o", "StrictHostKeyChecking=no",
    "-o", "UserKnownHostsFile=/dev/null",
    "-o", "LogLevel=ERROR",
]

PROVISIONING_CHECK = (
    "cloud-init status --wait 2>/dev/null"
    " || cat /run/cloud-init/result.json 2>/dev/null"
    " || echo pending"
)

_ENV_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def is_valid_env_name(name: str) -> bool:
    return bool(_ENV_NAME.match(name))


# ── env injection ────────────────────────────────────────────────────────────

def export_prefix(env: Optional[Mapping[str, str]]) -> str:
    """Render ``export K='v' && ...`` for *env*; empty string when no vars.

    Values are single-quoted with embedded quotes escaped, so the remote
    shell sees them verbatim.
    """
    if not env:
        return ""
    parts = []
    for name, value in env.items():
        if not is_valid_env_name(name):
            raise InvalidNameError(f"Invalid environment variable name: {name!r}")
        parts.append(f"export {name}={shlex.quote(value)}")
    return " && ".join(parts)


def wrap_command(command: str, env: Optional[Mapping[str, str]] = None) -> str:
    prefix = export_prefix(env)
    return f"{prefix} && {command}" if prefix else command


def login_shell_command(env: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """Remote command for an interactive session, or None for a plain login."""
    prefix = export_prefix(env)
    return f"{prefix} && exec $SHELL -l" if prefix else None


# ── command builders ─────────────────────────────────────────────────────────

def build_ssh_command(
    info: SshInfo,
    batch_mode: bool = False,
    connect_timeout: Optional[int] = None,
    extra_opts: Optional[List[str]] = None,
) -> List[str]:
    """Build the ssh base command for *info* (without a remote command).

    >>> build_ssh_command(SshInfo("10.0.0.5", 22, "worker"))[-1]
    'worker@10.0.0.5'
    """
    cmd: List[str] = ["ssh"] + list(DEFAULT_SSH_OPTS)
    if batch_mode:
        cmd.extend(["-o", "BatchMode=yes"])
    if connect_timeout is not None:
        cmd.extend(["-o", f"ConnectTimeout={connect_timeout}"])
    cmd.extend(["-p", str(info.port)])
    if extra_opts:
        cmd.extend(extra_opts)
    cmd.append(f"{info.user}@{info.host}")
    return cmd


def build_scp_command(info: SshInfo, source: str, destination: str) -> List[str]:
    return ["scp"] + list(DEFAULT_SSH_OPTS) + ["-P", str(info.port), source, destination]


# ── execution ────────────────────────────────────────────────────────────────

def ssh_interactive(info: SshInfo, env: Optional[Mapping[str, str]] = None) -> int:
    """Open an interactive shell with *env* exported. Returns the exit code."""
    cmd = build_ssh_command(info, extra_opts=["-A", "-t"])
    remote = login_shell_command(env)
    if remote:
        cmd.append(remote)
    log.info("ssh_interactive", host=info.host, env_count=len(env or {}))
    return subprocess.call(cmd)


def ssh_run(info: SshInfo, command: str, env: Optional[Mapping[str, str]] = None) -> int:
    """Run *command* remotely, streaming output to our stdout/stderr."""
    cmd = build_ssh_command(info)
    cmd.append(wrap_command(command, env))
    return subprocess.call(cmd, stdin=subprocess.DEVNULL)


def ssh_exec(
    runner: ProcessRunner,
    info: SshInfo,
    command: str,
    env: Optional[Mapping[str, str]] = None,
    timeout: Optional[float] = None,
) -> str:
    """Run *command* remotely and return its stdout; raises on non-zero exit."""
    cmd = build_ssh_command(info, batch_mode=True)
    cmd.append(wrap_command(command, env))
    return runner.run(cmd, timeout=timeout).stdout


def scp_to(info: SshInfo, local_path: str, remote_path: str) -> None:
    code = subprocess.call(build_scp_command(info, local_path, f"{info.user}@{info.host}:{remote_path}"))
    if code != 0:
        raise ProviderOperationError(f"scp to VM failed with code {code}", returncode=code)


def scp_from(info: SshInfo, remote_path: str, local_path: str) -> None:
    code = subprocess.call(build_scp_command(info, f"{info.user}@{info.host}:{remote_path}", local_path))
    if code != 0:
        raise ProviderOperationError(f"scp from VM failed with code {code}", returncode=code)


def vscode_remote_command(info: SshInfo, remote_path: Optional[str] = None) -> List[str]:
    """VS Code Remote-SSH launch; *remote_path* defaults to the login user's home."""
    path = remote_path or f"/home/{info.user}"
    return ["code", "--remote", f"ssh-remote+{info.user}@{info.host}", path]


# ── readiness checks ─────────────────────────────────────────────────────────

def ssh_reachable(runner: ProcessRunner, info: SshInfo, connect_timeout: int = 3) -> bool:
    """Trivial authenticated no-op; True once the guest accepts our key."""
    cmd = build_ssh_command(info, batch_mode=True, connect_timeout=connect_timeout)
    cmd.append("true")
    return runner.ok(cmd, timeout=connect_timeout + 10)


def provisioning_done(runner: ProcessRunner, info: SshInfo, connect_timeout: int = 3) -> bool:
    """True once first-boot provisioning reports completion."""
    cmd = build_ssh_command(info, batch_mode=True, connect_timeout=connect_timeout)
    cmd.append(PROVISIONING_CHECK)
    result = runner.run(cmd, check=False)
    if not result.success:
        return False
    return "done" in result.stdout or "result" in result.stdout
