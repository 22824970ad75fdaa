"""Hyper-V provider, driven entirely through PowerShell cmdlets.

VMs sit on an internal ``AgentSwarmNAT`` switch with a host NAT in front
of it. Task clones are differencing VHDX disks whose parent is the project
disk. Checkpoints are stop-then-copy, like the other providers.
"""

import json
import sys
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..cloud_init import create_cloud_init_iso
from ..exceptions import CheckpointNotFoundError, NotFoundError, ProviderOperationError
from ..interfaces.process import ProcessResult, ProcessRunner
from ..interfaces.provider import Provider, SshInfo, VmInfo, VmStatus
from ..logging import get_logger
from ..models import SwarmConfig
from ..paths import is_managed_vm_name, key_from_vm_name, project_vm_name, snapshots_dir, vms_dir
from ..powershell import powershell_command, ps_quote
from ..readiness import await_ready, wait_for_ip
from ..snapshots import CheckpointStore
from .vm_layout import VmLayout, plan_vm, remove_vm_dir, write_vm_config

log = get_logger(__name__)

DISK_FILE = "disk.vhdx"
SWITCH_NAME = "AgentSwarmNAT"
NAT_NAME = "AgentSwarmNet"
NAT_SUBNET = "172.28.0.0/24"
NAT_GATEWAY = "172.28.0.1"
NAT_PREFIX_LENGTH = 24

# Hyper-V VMState enum values as emitted by ConvertTo-Json
_STATE_RUNNING = {2, "Running"}
_STATE_OFF = {3, "Off"}


class HypervProvider(Provider):
    """Provider for Windows hosts with the Hyper-V role enabled."""

    name = "hyperv"

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
            "vhdx", root=snapshots_root or snapshots_dir(), copy_file=self._copy_item
        )
        self._switch_lock = threading.Lock()

    def _ps(self, script: str, check: bool = True, timeout: Optional[float] = None) -> ProcessResult:
        return self.runner.run(powershell_command(script), check=check, timeout=timeout)

    # ── contract ─────────────────────────────────────────────────────────────

    def available(self) -> bool:
        if self.platform != "win32":
            return False
        try:
            return self._ps("Get-Command Get-VM -ErrorAction Stop", check=False).success
        except Exception as e:
            log.debug("hyperv.unavailable", error=str(e))
            return False

    def create_vm(self, key: str, source: str) -> VmInfo:
        layout = plan_vm(self.vms_root, key, source)
        if not layout.source.exists():
            raise NotFoundError(f"Source disk not found: {layout.source}")
        layout.directory.mkdir(parents=True, exist_ok=True)
        disk = layout.directory / DISK_FILE
        vm = self.config.vm

        self._ensure_nat_switch()

        if layout.is_task_clone:
            log.info("hyperv.differencing_disk", vm_id=layout.vm_id, parent=str(layout.source))
            self._ps(
                f"New-VHD -Path {ps_quote(disk)} -ParentPath {ps_quote(layout.source)} -Differencing"
            )
            self._copy_project_media(layout)
        else:
            log.info("hyperv.disk_copy", vm_id=layout.vm_id, base=str(layout.source))
            self._copy_item(layout.source, disk)
            self._ps(f"Resize-VHD -Path {ps_quote(disk)} -SizeBytes {vm.disk_size_gb * 1024 ** 3}")
            create_cloud_init_iso(layout.directory, key, self.runner, user=vm.user, platform=self.platform)

        write_vm_config(layout.directory, {"cpus": vm.cpus, "memoryMB": vm.memory_mb})
        self._define_vm(layout, disk)
        self._ps(f"Start-VM -Name {ps_quote(layout.vm_id)}")
        log.info("hyperv.vm_started", vm_id=layout.vm_id)

        ip = await_ready(
            lambda: self._adapter_ip(layout.vm_id),
            self.runner,
            vm.user,
            vm.ssh_port,
            self.config.readiness,
            provisioning=not layout.is_task_clone,
        )
        return VmInfo(vm_id=layout.vm_id, key=key, ip=ip, status=VmStatus.RUNNING)

    def start_vm(self, vm_id: str) -> None:
        self._ps(f"Start-VM -Name {ps_quote(vm_id)}")
        wait_for_ip(lambda: self._adapter_ip(vm_id), self.config.readiness)

    def stop_vm(self, vm_id: str) -> None:
        if self.status(vm_id) != VmStatus.RUNNING:
            return
        readiness = self.config.readiness
        try:
            self._ps(f"Stop-VM -Name {ps_quote(vm_id)} -Force", timeout=readiness.stop_timeout)
            return
        except ProviderOperationError as e:
            log.warning("hyperv.force_stop", vm_id=vm_id, error=str(e))
        self._ps(f"Stop-VM -Name {ps_quote(vm_id)} -TurnOff -Force")

    def delete_vm(self, vm_id: str) -> None:
        if self._vm_exists(vm_id):
            self._ps(f"Stop-VM -Name {ps_quote(vm_id)} -TurnOff -Force -ErrorAction SilentlyContinue")
            self._ps(f"Remove-VM -Name {ps_quote(vm_id)} -Force")
        remove_vm_dir(self.vms_root / vm_id)
        self.checkpoints.remove_all(vm_id)
        log.info("hyperv.deleted", vm_id=vm_id)

    def ssh_info(self, vm_id: str) -> SshInfo:
        if self.status(vm_id) != VmStatus.RUNNING:
            raise ProviderOperationError(f"Cannot get IP for {vm_id} - is it running?")
        ip = wait_for_ip(
            lambda: self._adapter_ip(vm_id),
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
        result = self._ps(f"(Get-VM -Name {ps_quote(vm_id)}).State", check=False)
        if not result.success:
            return VmStatus.STOPPED
        state = result.stdout.strip()
        if state in _STATE_RUNNING:
            return VmStatus.RUNNING
        if state in _STATE_OFF:
            return VmStatus.STOPPED
        return VmStatus.UNKNOWN

    def list_vms(self) -> List[VmInfo]:
        raw = self._ps(
            "Get-VM | Select-Object Name, State | ConvertTo-Json -Compress"
        ).stdout.strip()
        if not raw:
            return []
        parsed = json.loads(raw)
        entries: List[Dict[str, Any]] = parsed if isinstance(parsed, list) else [parsed]

        results = []
        for entry in entries:
            vm_id = entry.get("Name", "")
            if not is_managed_vm_name(vm_id):
                continue
            state = entry.get("State")
            if state in _STATE_RUNNING:
                status = VmStatus.RUNNING
            elif state in _STATE_OFF:
                status = VmStatus.STOPPED
            else:
                status = VmStatus.UNKNOWN
            ip = None
            if status == VmStatus.RUNNING:
                ip = wait_for_ip(
                    lambda: self._adapter_ip(vm_id),
                    self.config.readiness,
                    timeout=self.config.readiness.list_ip_timeout,
                )
            results.append(VmInfo(vm_id=vm_id, key=key_from_vm_name(vm_id), ip=ip, status=status))
        return results

    def project_disk_path(self, project: str) -> str:
        return str(self.vms_root / project_vm_name(project) / DISK_FILE)

    # ── helpers ──────────────────────────────────────────────────────────────

    def _disk(self, vm_id: str) -> Path:
        return self.vms_root / vm_id / DISK_FILE

    def _copy_item(self, src: Path, dst: Path) -> None:
        self._ps(f"Copy-Item -Path {ps_quote(src)} -Destination {ps_quote(dst)}")

    def _copy_project_media(self, layout: VmLayout) -> None:
        project_cidata = layout.source_dir / "cidata.iso"
        if project_cidata.exists():
            self._copy_item(project_cidata, layout.cidata)

    def _vm_exists(self, vm_id: str) -> bool:
        out = self._ps(
            f"@(Get-VM -Name {ps_quote(vm_id)} -ErrorAction SilentlyContinue).Count"
        ).stdout.strip()
        return out not in ("", "0")

    def _define_vm(self, layout: VmLayout, disk: Path) -> None:
        vm = self.config.vm
        name = ps_quote(layout.vm_id)
        self._ps(
            f"New-VM -Name {name} -MemoryStartupBytes {vm.memory_mb * 1024 * 1024} "
            f"-VHDPath {ps_quote(disk)} -Generation 2 -SwitchName {ps_quote(SWITCH_NAME)}"
        )
        self._ps(f"Set-VM -Name {name} -ProcessorCount {vm.cpus}")
        self._ps(f"Set-VMFirmware -VMName {name} -EnableSecureBoot Off")
        if layout.cidata.exists():
            self._ps(f"Add-VMDvdDrive -VMName {name} -Path {ps_quote(layout.cidata)}")

    def _ensure_nat_switch(self) -> None:
        """Create the internal switch and host NAT once per host."""
        with self._switch_lock:
            count = self._ps(
                f"Get-VMSwitch -Name {ps_quote(SWITCH_NAME)} -ErrorAction SilentlyContinue "
                "| Measure-Object | Select-Object -ExpandProperty Count"
            ).stdout.strip()
            if count not in ("", "0"):
                return

            log.info("hyperv.nat_switch_create", switch=SWITCH_NAME, subnet=NAT_SUBNET)
            self._ps(f"New-VMSwitch -SwitchName {ps_quote(SWITCH_NAME)} -SwitchType Internal")
            if_index = self._ps(
                f"(Get-NetAdapter | Where-Object {{ $_.Name -like '*{SWITCH_NAME}*' }}).ifIndex"
            ).stdout.strip()
            self._ps(
                f"New-NetIPAddress -IPAddress {ps_quote(NAT_GATEWAY)} "
                f"-PrefixLength {NAT_PREFIX_LENGTH} -InterfaceIndex {if_index}"
            )
            self._ps(
                f"New-NetNat -Name {ps_quote(NAT_NAME)} "
                f"-InternalIPInterfaceAddressPrefix {ps_quote(NAT_SUBNET)}"
            )

    def _adapter_ip(self, vm_id: str) -> Optional[str]:
        out = self._ps(
            f"(Get-VMNetworkAdapter -VMName {ps_quote(vm_id)}).IPAddresses "
            "| Where-Object { $_ -match '^\\d+\\.\\d+\\.\\d+\\.\\d+$' } "
            "| Select-Object -First 1"
        ).stdout.strip()
        return out or None
