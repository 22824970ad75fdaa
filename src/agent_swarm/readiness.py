"""
Bounded readiness polling.

After a VM is launched three loops run in sequence: IP acquisition, SSH
reachability and (for freshly built projects only) first-boot provisioning.
Each loop is bounded by its own timeout and returns a degraded result
(None or False) when the bound is exhausted. Nothing here raises on timeout.
"""

import time
from typing import Callable, Optional, TypeVar

from agent_swarm.interfaces.process import ProcessRunner
from agent_swarm.interfaces.provider import SshInfo
from agent_swarm.logging import get_logger
from agent_swarm.models import ReadinessSettings
from agent_swarm.ssh import provisioning_done, ssh_reachable

log = get_logger(__name__)

T = TypeVar("T")


def poll_until(
    check: Callable[[], Optional[T]],
    interval: float,
    timeout: float,
    what: str = "check",
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> Optional[T]:
    """Call *check* until it returns a truthy value or *timeout* elapses.

    The check always runs at least once. An exception raised by the check
    counts as "not ready yet". Returns the check's value, or None once the
    deadline has passed.
    """
    deadline = clock() + timeout
    attempt = 0
    while True:
        attempt += 1
        try:
            result = check()
        except Exception as e:
            log.debug("poll.check_error", what=what, attempt=attempt, error=str(e))
            result = None
        if result:
            log.debug("poll.ready", what=what, attempts=attempt)
            return result

        remaining = deadline - clock()
        if remaining <= 0:
            log.info("poll.exhausted", what=what, attempts=attempt, timeout=timeout)
            return None
        sleep(min(interval, remaining))


def wait_for_ip(
    resolve_ip: Callable[[], Optional[str]],
    settings: ReadinessSettings,
    timeout: Optional[float] = None,
) -> Optional[str]:
    """Poll *resolve_ip* for an address; None when none shows up in time."""
    return poll_until(
        resolve_ip,
        interval=settings.ip_interval,
        timeout=settings.ip_timeout if timeout is None else timeout,
        what="ip",
    )


def wait_for_ssh(runner: ProcessRunner, info: SshInfo, settings: ReadinessSettings) -> bool:
    return bool(
        poll_until(
            lambda: ssh_reachable(runner, info),
            interval=settings.ssh_interval,
            timeout=settings.ssh_timeout,
            what="ssh",
        )
    )


def wait_for_provisioning(runner: ProcessRunner, info: SshInfo, settings: ReadinessSettings) -> bool:
    return bool(
        poll_until(
            lambda: provisioning_done(runner, info),
            interval=settings.provisioning_interval,
            timeout=settings.provisioning_timeout,
            what="provisioning",
        )
    )


def await_ready(
    resolve_ip: Callable[[], Optional[str]],
    runner: ProcessRunner,
    user: str,
    port: int,
    settings: ReadinessSettings,
    provisioning: bool,
) -> Optional[str]:
    """Run the readiness sequence for a freshly launched VM.

    Returns the observed IP or None. SSH and provisioning results are
    logged but never turn into failures: the next real interaction with the
    VM surfaces a hard error if it is genuinely unreachable.
    """
    ip = wait_for_ip(resolve_ip, settings)
    if not ip:
        log.warning("readiness.no_ip", timeout=settings.ip_timeout)
        return None

    info = SshInfo(host=ip, port=port, user=user)
    if not wait_for_ssh(runner, info, settings):
        log.warning("readiness.ssh_unconfirmed", ip=ip)
        return ip

    if provisioning and not wait_for_provisioning(runner, info, settings):
        log.warning("readiness.provisioning_unconfirmed", ip=ip)
    return ip
