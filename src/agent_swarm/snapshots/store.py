#!/usr/bin/env python3
"""File-based checkpoint store shared by every provider."""

import os
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional

from agent_swarm.exceptions import CheckpointNotFoundError, ProviderOperationError
from agent_swarm.logging import get_logger
from agent_swarm.paths import snapshots_dir, validate_name

from .models import Checkpoint

log = get_logger(__name__)

CopyFn = Callable[[Path, Path], None]


def _plain_copy(src: Path, dst: Path) -> None:
    shutil.copyfile(src, dst)


class CheckpointStore:
    """Keep disk checkpoints under ``<root>/<vm_id>/<name>.<ext>``.

    The VM must already be stopped when ``create`` or ``restore`` runs;
    providers take care of that before calling in. ``copy_file`` lets each
    provider use its cheapest copy (APFS clone, reflink, plain copy).
    """

    def __init__(
        self,
        extension: str,
        root: Optional[Path] = None,
        copy_file: Optional[CopyFn] = None,
    ):
        self.extension = extension.lstrip(".")
        self.root = Path(root) if root else snapshots_dir()
        self._copy = copy_file or _plain_copy

    def vm_dir(self, vm_id: str) -> Path:
        return self.root / vm_id

    def path_for(self, vm_id: str, name: str) -> Path:
        return self.vm_dir(vm_id) / f"{name}.{self.extension}"

    def create(self, vm_id: str, name: str, disk: Path) -> Checkpoint:
        """Copy *disk* into the store as checkpoint *name* (overwrites)."""
        validate_name(name, "checkpoint name")
        disk = Path(disk)
        if not disk.exists():
            raise ProviderOperationError(f"Disk for {vm_id} not found", str(disk))

        target = self.path_for(vm_id, name)
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.exists():
            target.unlink()
        self._copy(disk, target)
        # clone-style copies may keep the source mtime
        os.utime(target, None)

        log.info("checkpoint.created", vm_id=vm_id, checkpoint=name)
        return self._describe(vm_id, target)

    def restore(self, vm_id: str, name: str, disk: Path) -> None:
        """Replace the live *disk* with checkpoint *name*."""
        source = self.path_for(vm_id, name)
        if not source.exists():
            raise CheckpointNotFoundError(vm_id, name)

        disk = Path(disk)
        staging = disk.with_name(disk.name + ".restoring")
        staging.unlink(missing_ok=True)
        try:
            self._copy(source, staging)
        except BaseException:
            staging.unlink(missing_ok=True)
            raise
        # the live disk is only swapped once the copy is complete
        os.replace(staging, disk)
        log.info("checkpoint.restored", vm_id=vm_id, checkpoint=name)

    def list(self, vm_id: str) -> List[Checkpoint]:
        """Checkpoints of *vm_id*, oldest first (ties broken by name)."""
        directory = self.vm_dir(vm_id)
        if not directory.is_dir():
            return []
        suffix = f".{self.extension}"
        checkpoints = [
            self._describe(vm_id, path)
            for path in directory.iterdir()
            if path.is_file() and path.name.endswith(suffix)
        ]
        checkpoints.sort(key=lambda c: (c.created_at, c.name))
        return checkpoints

    def names(self, vm_id: str) -> List[str]:
        return [c.name for c in self.list(vm_id)]

    def latest(self, vm_id: str) -> Optional[str]:
        names = self.names(vm_id)
        return names[-1] if names else None

    def remove_all(self, vm_id: str) -> None:
        """Drop every checkpoint of *vm_id*; a missing directory is fine."""
        directory = self.vm_dir(vm_id)
        try:
            shutil.rmtree(directory)
        except FileNotFoundError:
            return
        log.info("checkpoint.removed_all", vm_id=vm_id)

    def _describe(self, vm_id: str, path: Path) -> Checkpoint:
        stat = path.stat()
        return Checkpoint(
            name=path.name[: -(len(self.extension) + 1)],
            vm_id=vm_id,
            disk_path=path,
            created_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            size_bytes=stat.st_size,
        )
