"""
Canonical path helpers for agent-swarm.

Every module that needs to locate on-disk artifacts (VM directories, disk
images, checkpoints, the registry database, helper binaries) should import
from here instead of computing paths inline.
"""

import os
import re
from pathlib import Path

from agent_swarm.exceptions import InvalidNameError

VM_PREFIX = "agent-swarm-"
PROJECT_PREFIX = "project-"


# ── directory roots ──────────────────────────────────────────────────────────

def swarm_dir() -> Path:
    """Root of all agent-swarm state (``$AGENT_SWARM_HOME`` or ~/.agent-swarm)."""
    return Path(os.getenv("AGENT_SWARM_HOME", str(Path.home() / ".agent-swarm")))


def vms_dir() -> Path:
    """Directory holding one subdirectory per VM."""
    return swarm_dir() / "vms"


def snapshots_dir() -> Path:
    """Checkpoint root: one subdirectory per VM id."""
    return swarm_dir() / "snapshots"


def base_images_dir() -> Path:
    return swarm_dir() / "base-images"


def bin_dir() -> Path:
    return swarm_dir() / "bin"


def registry_db_path() -> Path:
    return swarm_dir() / "registry.db"


def config_path() -> Path:
    return swarm_dir() / "config.yaml"


def setup_script_path() -> Path:
    """User-editable first-boot script baked into new project VMs."""
    return swarm_dir() / "setup.sh"


# ── VM naming ────────────────────────────────────────────────────────────────

def task_vm_name(task_id: str) -> str:
    return f"{VM_PREFIX}{task_id}"


def project_vm_name(project: str) -> str:
    return f"{PROJECT_PREFIX}{project}"


def is_managed_vm_name(vm_id: str) -> bool:
    return vm_id.startswith(VM_PREFIX) or vm_id.startswith(PROJECT_PREFIX)


def key_from_vm_name(vm_id: str) -> str:
    """Strip the managed prefix, giving back the project name or task id."""
    if vm_id.startswith(PROJECT_PREFIX):
        return vm_id[len(PROJECT_PREFIX):]
    if vm_id.startswith(VM_PREFIX):
        return vm_id[len(VM_PREFIX):]
    return vm_id


def is_under(path: Path, root: Path) -> bool:
    """True if *path* lies inside *root* (after resolving both)."""
    path = Path(path).expanduser().resolve()
    root = Path(root).expanduser().resolve()
    return root in path.parents


_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,62}$")


def validate_name(value: str, kind: str = "name") -> str:
    """Reject names that cannot double as a file name and hypervisor VM name."""
    if not _NAME_RE.match(value or ""):
        raise InvalidNameError(
            f"Invalid {kind} {value!r}: use letters, digits, '.', '_' or '-' "
            "(max 63 chars, must start with a letter or digit)"
        )
    return value
