"""macOS native-virtualization provider.

VMs run inside a small helper binary (``vm-helper run <vm>``) built on
Apple's Virtualization framework; the helper writes its pid into the VM
directory and resolves guest addresses from the host ARP table by MAC.
Disks are raw images cloned with APFS copy-on-write (``cp -c``).
"""

import json
import os
import secrets
import signal
import sys
from pathlib import Path
from typing import List, Optional

from ..cloud_init import create_cloud_init_iso
from ..exceptions import CheckpointNotFoundError, NotFoundError, ProviderOperationError
from ..interfaces.process import ProcessRunner
from ..interfaces.provider import Provider, SshInfo, VmInfo, VmStatus
from ..logging import get_logger
from ..models import SwarmConfig
from ..paths import bin_dir, is_managed_vm_name, key_from_vm_name, project_vm_name, snapshots_dir, vms_dir
from ..readiness import await_ready, poll_until, wait_for_ip
from ..snapshots import CheckpointStore
from .vm_layout import VmLayout, plan_vm, read_vm_config, remove_vm_dir, write_vm_config

log = get_logger(__name__)

DISK_FILE = "disk.img"
PID_FILE = "pid"


def generate_mac_address() -> str:
    """Random locally administered, unicast MAC address."""
    octets = bytearray(secrets.token_bytes(6))
    octets[0] = (octets[0] & 0xFC) | 0x02
    return ":".join(f"{b:02x}" for b in octets)


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class MacNativeProvider(Provider):
    """Provider for Apple silicon / Intel Macs using Virtualization.framework."""

    name = "macos-native"

    def __init__(
        self,
        runner: ProcessRunner,
        config: Optional[SwarmConfig] = None,
        vms_root: Optional[Path] = None,
        snapshots_root: Optional[Path] = None,
        platform: str = sys.platform,
    ):
        self.runner = runner
        self.config = config or SwarmConfig()
        self.vms_root = Path(vms_root) if vms_root else vms_dir()
        self.platform = platform
        self.checkpoints = CheckpointStore(
            "img", root=snapshots_root or snapshots_dir(), copy_file=self._apfs_clone
        )

    @property
    def helper(self) -> Path:
        return Path(self.config.vm_helper) if self.config.vm_helper else bin_dir() / "vm-helper"

    def _helper_run(self, *args: str) -> str:
        if not self.helper.exists():
            raise ProviderOperationError(f"VM helper not found at {self.helper}")
        return self.runner.run([str(self.helper), *args]).stdout

    # ── contract ─────────────────────────────────────────────────────────────

    def available(self) -> bool:
        if self.platform != "darwin":
            return False
        try:
            return self.helper.is_file() and os.access(self.helper, os.X_OK)
        except OSError as e:
            log.debug("macos_native.unavailable", error=str(e))
            return False

    def create_vm(self, key: str, source: str) -> VmInfo:
        layout = plan_vm(self.vms_root, key, source)
        if not layout.source.exists():
            raise NotFoundError(f"Source disk not found: {layout.source}")
        layout.directory.mkdir(parents=True, exist_ok=True)
        disk = layout.directory / DISK_FILE
        vm = self.config.vm

        log.info("macos_native.disk_clone", vm_id=layout.vm_id, source=str(layout.source))
        self._apfs_clone(layout.source, disk)

        if layout.is_task_clone:
            self._copy_project_media(layout)
            # the guest's network config is keyed on the project's MAC
            mac_address = read_vm_config(layout.source_dir)["macAddress"]
        else:
            self._grow_disk(disk, vm.disk_size_gb * 1024 ** 3)
            create_cloud_init_iso(layout.directory, key, self.runner, user=vm.user, platform=self.platform)
            mac_address = generate_mac_address()

        write_vm_config(
            layout.directory,
            {"cpus": vm.cpus, "memoryMB": vm.memory_mb, "macAddress": mac_address},
        )
        self._launch(layout.vm_id)

        ip = await_ready(
            lambda: self._helper_ip(layout.vm_id),
            self.runner,
            vm.user,
            vm.ssh_port,
            self.config.readiness,
            provisioning=not layout.is_task_clone,
        )
        return VmInfo(vm_id=layout.vm_id, key=key, ip=ip, status=VmStatus.RUNNING)

    def start_vm(self, vm_id: str) -> None:
        if not (self.vms_root / vm_id / DISK_FILE).exists():
            raise ProviderOperationError(f"VM {vm_id} has no disk in {self.vms_root}")
        if self.status(vm_id) != VmStatus.RUNNING:
            self._launch(vm_id)
        wait_for_ip(lambda: self._helper_ip(vm_id), self.config.readiness)

    def stop_vm(self, vm_id: str) -> None:
        pid = self._read_pid(vm_id)
        if pid is None or not _pid_alive(pid):
            self._clear_pid(vm_id)
            return

        readiness = self.config.readiness
        os.kill(pid, signal.SIGTERM)
        stopped = poll_until(
            lambda: not _pid_alive(pid),
            interval=readiness.stop_interval,
            timeout=readiness.stop_timeout,
            what="shutdown",
        )
        if not stopped:
            log.warning("macos_native.force_stop", vm_id=vm_id, pid=pid)
            try:
                os.kill(pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
        self._clear_pid(vm_id)

    def delete_vm(self, vm_id: str) -> None:
        self.stop_vm(vm_id)
        remove_vm_dir(self.vms_root / vm_id)
        self.checkpoints.remove_all(vm_id)
        log.info("macos_native.deleted", vm_id=vm_id)

    def ssh_info(self, vm_id: str) -> SshInfo:
        if self.status(vm_id) != VmStatus.RUNNING:
            raise ProviderOperationError(f"Cannot get IP for {vm_id} - is it running?")
        ip = wait_for_ip(
            lambda: self._helper_ip(vm_id),
            self.config.readiness,
            timeout=self.config.readiness.ssh_info_timeout,
        )
        if not ip:
            raise ProviderOperationError(f"Cannot get IP for {vm_id} - is it running?")
        return SshInfo(host=ip, port=self.config.vm.ssh_port, user=self.config.vm.user)

    def checkpoint(self, vm_id: str, name: str) -> None:
        self.stop_vm(vm_id)
        self.checkpoints.create(vm_id, name, self._disk(vm_id))

    def restore(self, vm_id: str, name: str) -> None:
        if not self.checkpoints.path_for(vm_id, name).exists():
            raise CheckpointNotFoundError(vm_id, name)
        self.stop_vm(vm_id)
        self.checkpoints.restore(vm_id, name, self._disk(vm_id))

    def list_checkpoints(self, vm_id: str) -> List[str]:
        return self.checkpoints.names(vm_id)

    def status(self, vm_id: str) -> VmStatus:
        pid = self._read_pid(vm_id)
        if pid is not None and _pid_alive(pid):
            return VmStatus.RUNNING
        return VmStatus.STOPPED

    def list_vms(self) -> List[VmInfo]:
        entries = json.loads(self._helper_run("list") or "[]")
        results = []
        for entry in entries:
            vm_id = entry.get("name", "")
            if not is_managed_vm_name(vm_id):
                continue
            try:
                status = VmStatus(entry.get("status") or "unknown")
            except ValueError:
                status = VmStatus.UNKNOWN
            results.append(
                VmInfo(vm_id=vm_id, key=key_from_vm_name(vm_id), ip=entry.get("ip"), status=status)
            )
        return results

    def project_disk_path(self, project: str) -> str:
        return str(self.vms_root / project_vm_name(project) / DISK_FILE)

    # ── helpers ──────────────────────────────────────────────────────────────

    def _disk(self, vm_id: str) -> Path:
        return self.vms_root / vm_id / DISK_FILE

    def _apfs_clone(self, src: Path, dst: Path) -> None:
        self.runner.run(["cp", "-c", str(src), str(dst)])

    def _copy_project_media(self, layout: VmLayout) -> None:
        project_cidata = layout.source_dir / "cidata.iso"
        if project_cidata.exists():
            self._apfs_clone(project_cidata, layout.cidata)

    @staticmethod
    def _grow_disk(disk: Path, size_bytes: int) -> None:
        """Extend a raw disk image (sparse) to at least *size_bytes*."""
        if disk.stat().st_size < size_bytes:
            with open(disk, "r+b") as f:
                f.truncate(size_bytes)

    def _launch(self, vm_id: str) -> None:
        if not self.helper.exists():
            raise ProviderOperationError(f"VM helper not found at {self.helper}")
        self.runner.spawn_detached([str(self.helper), "run", vm_id])
        log.info("macos_native.vm_started", vm_id=vm_id)

    def _helper_ip(self, vm_id: str) -> Optional[str]:
        return self._helper_run("ip", vm_id).strip() or None

    def _read_pid(self, vm_id: str) -> Optional[int]:
        try:
            return int((self.vms_root / vm_id / PID_FILE).read_text().strip())
        except (FileNotFoundError, ValueError):
            return None

    def _clear_pid(self, vm_id: str) -> None:
        (self.vms_root / vm_id / PID_FILE).unlink(missing_ok=True)
