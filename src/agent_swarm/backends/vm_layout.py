"""On-disk layout shared by the providers: one directory per VM."""

import json
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict

from ..paths import is_under, project_vm_name, task_vm_name, validate_name

CONFIG_FILE = "config.json"
CIDATA_FILE = "cidata.iso"


@dataclass
class VmLayout:
    """Where a VM being created lives and whether it is a task clone."""

    vm_id: str
    directory: Path
    source: Path
    is_task_clone: bool

    @property
    def cidata(self) -> Path:
        return self.directory / CIDATA_FILE

    @property
    def source_dir(self) -> Path:
        return self.source.parent


def plan_vm(vms_root: Path, key: str, source: str) -> VmLayout:
    """Decide identity and directory for ``create_vm(key, source)``.

    A source inside the managed VMs tree is a project disk, so the new VM
    is a task clone; anything else is a base image for a new project.
    """
    validate_name(key)
    source_path = Path(source).expanduser()
    clone = is_under(source_path, vms_root)
    vm_id = task_vm_name(key) if clone else project_vm_name(key)
    return VmLayout(
        vm_id=vm_id,
        directory=Path(vms_root) / vm_id,
        source=source_path,
        is_task_clone=clone,
    )


def read_vm_config(directory: Path) -> Dict[str, Any]:
    return json.loads((directory / CONFIG_FILE).read_text())


def write_vm_config(directory: Path, data: Dict[str, Any]) -> None:
    (directory / CONFIG_FILE).write_text(json.dumps(data, indent=2))


def remove_vm_dir(directory: Path) -> bool:
    """Remove a VM directory; False if it was already gone."""
    try:
        shutil.rmtree(directory)
    except FileNotFoundError:
        return False
    return True
