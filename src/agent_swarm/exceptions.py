"""
Error taxonomy for agent-swarm.

Every error a lifecycle operation can surface derives from SwarmError so
the CLI can report it uniformly. Polling timeouts are not errors:
they are returned as degraded results, never raised.
"""

from typing import List, Optional


class SwarmError(Exception):
    """Base class for all agent-swarm errors."""


class ProviderUnavailableError(SwarmError):
    """No usable provider, or a pinned provider is missing on this host."""

    INSTALL_HINTS = (
        "  Mac:     Requires Xcode Command Line Tools: xcode-select --install\n"
        "  Linux:   apt install qemu-kvm libvirt-daemon-system virtinst genisoimage ovmf\n"
        "  Windows: Enable Hyper-V in Windows Features (Pro/Enterprise)"
    )

    def __init__(self, message: str = "No VM provider found.", hints: bool = True):
        if hints:
            message = f"{message}\n{self.INSTALL_HINTS}"
        super().__init__(message)


class NotFoundError(SwarmError):
    """A referenced object does not exist."""


class ProjectNotFoundError(NotFoundError):
    def __init__(self, name: str):
        super().__init__(f"No project found: {name}")
        self.name = name


class TaskNotFoundError(NotFoundError):
    def __init__(self, task_id: str):
        super().__init__(f"No environment found for task {task_id}")
        self.task_id = task_id


class CheckpointNotFoundError(NotFoundError):
    def __init__(self, vm_id: str, name: Optional[str] = None):
        if name is None:
            message = f"No checkpoints found for {vm_id}"
        else:
            message = f"Checkpoint '{name}' not found for {vm_id}"
        super().__init__(message)
        self.vm_id = vm_id
        self.checkpoint = name


class SecretNotFoundError(NotFoundError):
    def __init__(self, name: str, scope: str = ""):
        where = f"project {scope}" if scope else "global scope"
        super().__init__(f"Env var {name} not set ({where})")
        self.secret_name = name
        self.scope = scope


class AlreadyExistsError(SwarmError):
    """Creating an object whose key is already taken."""


class ProviderOperationError(SwarmError):
    """A hypervisor tool or API call failed.

    ``detail`` holds the tool's own diagnostic output, untouched.
    """

    def __init__(self, message: str, detail: str = "", returncode: Optional[int] = None):
        full = f"{message}: {detail}" if detail else message
        super().__init__(full)
        self.detail = detail
        self.returncode = returncode


class ReferentialConflictError(SwarmError):
    """Deleting a project that still has tasks."""

    def __init__(self, project: str, blocking: List[str]):
        self.project = project
        self.blocking = list(blocking)
        super().__init__(
            f"Project {project} still has {len(self.blocking)} task(s): "
            f"{', '.join(self.blocking)}. Delete them first."
        )


class DecryptionError(SwarmError):
    """Stored ciphertext failed authentication or is malformed."""


class UnsupportedPlatformError(SwarmError):
    """The host OS has no key custodian or image tooling we know about."""


class InvalidNameError(SwarmError, ValueError):
    """A project name, task id, checkpoint or variable name is not usable."""
