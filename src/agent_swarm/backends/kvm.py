"""KVM/libvirt provider.

Task clones are qcow2 overlays backed by the project disk. Domains are
defined with ``virt-install`` and driven through libvirt; addresses come
from the ``default`` network's DHCP leases.
"""

import sys
import threading
from pathlib import Path
from typing import List, Optional

try:
    import libvirt
except ImportError:
    libvirt = None

from ..cloud_init import create_cloud_init_iso
from ..exceptions import (
    CheckpointNotFoundError,
    NotFoundError,
    ProviderOperationError,
    ProviderUnavailableError,
)
from ..interfaces.process import ProcessRunner
from ..interfaces.provider import Provider, SshInfo, VmInfo, VmStatus
from ..logging import get_logger
from ..models import SwarmConfig
from ..paths import is_managed_vm_name, key_from_vm_name, project_vm_name, snapshots_dir, vms_dir
from ..readiness import await_ready, poll_until, wait_for_ip
from ..snapshots import CheckpointStore
from .vm_layout import VmLayout, plan_vm, remove_vm_dir, write_vm_config

log = get_logger(__name__)

DISK_FILE = "disk.qcow2"
NETWORK = "default"
OS_VARIANT = "ubuntu24.04"


class KvmProvider(Provider):
    """libvirt-backed provider for Linux hosts."""

    name = "kvm"

    def __init__(
        self,
        runner: ProcessRunner,
        config: Optional[SwarmConfig] = None,
        vms_root: Optional[Path] = None,
        snapshots_root: Optional[Path] = None,
        uri: str = "qemu:///system",
        platform: str = sys.platform,
    ):
        self.runner = runner
        self.config = config or SwarmConfig()
        self.vms_root = Path(vms_root) if vms_root else vms_dir()
        self.uri = uri
        self.platform = platform
        self.checkpoints = CheckpointStore(
            "qcow2", root=snapshots_root or snapshots_dir(), copy_file=self._reflink_copy
        )
        self._conn = None
        self._conn_lock = threading.Lock()

    # ── connection ───────────────────────────────────────────────────────────

    @property
    def conn(self):
        """Lazily opened libvirt connection, shared across threads."""
        if libvirt is None:
            raise ProviderUnavailableError("libvirt-python not installed (pip install agent-swarm[kvm])")
        with self._conn_lock:
            if self._conn is None:
                try:
                    self._conn = libvirt.open(self.uri)
                except libvirt.libvirtError as e:
                    raise ProviderOperationError(f"Failed to connect to libvirt at {self.uri}", str(e)) from e
            return self._conn

    def _find_domain(self, vm_id: str):
        """Domain for *vm_id*, or None when libvirt has no such domain."""
        try:
            return self.conn.lookupByName(vm_id)
        except libvirt.libvirtError as e:
            if e.get_error_code() == libvirt.VIR_ERR_NO_DOMAIN:
                return None
            raise ProviderOperationError(f"Failed to look up {vm_id}", str(e)) from e

    def _domain(self, vm_id: str):
        domain = self._find_domain(vm_id)
        if domain is None:
            raise ProviderOperationError(f"VM {vm_id} not found in libvirt")
        return domain

    # ── contract ─────────────────────────────────────────────────────────────

    def available(self) -> bool:
        if not self.platform.startswith("linux") or libvirt is None:
            return False
        try:
            for tool in ("qemu-img", "virt-install"):
                if not self.runner.ok([tool, "--version"]):
                    return False
            self.conn.networkLookupByName(NETWORK)
            return True
        except Exception as e:
            log.debug("kvm.unavailable", error=str(e))
            return False

    def create_vm(self, key: str, source: str) -> VmInfo:
        layout = plan_vm(self.vms_root, key, source)
        if not layout.source.exists():
            raise NotFoundError(f"Source disk not found: {layout.source}")
        layout.directory.mkdir(parents=True, exist_ok=True)
        disk = layout.directory / DISK_FILE
        vm = self.config.vm

        if layout.is_task_clone:
            log.info("kvm.overlay_create", vm_id=layout.vm_id, backing=str(layout.source))
            self.runner.run(
                ["qemu-img", "create", "-f", "qcow2", "-b", str(layout.source), "-F", "qcow2", str(disk)]
            )
            self._copy_project_media(layout)
        else:
            log.info("kvm.disk_copy", vm_id=layout.vm_id, base=str(layout.source))
            self._reflink_copy(layout.source, disk)
            self.runner.run(["qemu-img", "resize", str(disk), f"{vm.disk_size_gb}G"])
            create_cloud_init_iso(layout.directory, key, self.runner, user=vm.user, platform=self.platform)

        write_vm_config(layout.directory, {"cpus": vm.cpus, "memoryMB": vm.memory_mb})
        self.runner.run(self._virt_install_command(layout, disk), timeout=300)
        log.info("kvm.domain_started", vm_id=layout.vm_id)

        ip = await_ready(
            lambda: self._lease_ip(layout.vm_id),
            self.runner,
            vm.user,
            vm.ssh_port,
            self.config.readiness,
            provisioning=not layout.is_task_clone,
        )
        return VmInfo(vm_id=layout.vm_id, key=key, ip=ip, status=VmStatus.RUNNING)

    def start_vm(self, vm_id: str) -> None:
        domain = self._domain(vm_id)
        try:
            if not domain.isActive():
                domain.create()
        except libvirt.libvirtError as e:
            raise ProviderOperationError(f"Failed to start {vm_id}", str(e)) from e
        wait_for_ip(lambda: self._lease_ip(vm_id), self.config.readiness)

    def stop_vm(self, vm_id: str) -> None:
        domain = self._find_domain(vm_id)
        if domain is None or not domain.isActive():
            return

        readiness = self.config.readiness
        try:
            domain.shutdown()
        except libvirt.libvirtError as e:
            log.debug("kvm.shutdown_refused", vm_id=vm_id, error=str(e))

        stopped = poll_until(
            lambda: not domain.isActive(),
            interval=readiness.stop_interval,
            timeout=readiness.stop_timeout,
            what="shutdown",
        )
        if stopped:
            return

        log.warning("kvm.force_stop", vm_id=vm_id, timeout=readiness.stop_timeout)
        try:
            domain.destroy()
        except libvirt.libvirtError as e:
            if domain.isActive():
                raise ProviderOperationError(f"Failed to stop {vm_id}", str(e)) from e

    def delete_vm(self, vm_id: str) -> None:
        domain = self._find_domain(vm_id)
        if domain is not None:
            try:
                if domain.isActive():
                    domain.destroy()
                domain.undefineFlags(libvirt.VIR_DOMAIN_UNDEFINE_NVRAM)
            except libvirt.libvirtError as e:
                if e.get_error_code() != libvirt.VIR_ERR_NO_DOMAIN:
                    raise ProviderOperationError(f"Failed to remove {vm_id}", str(e)) from e

        remove_vm_dir(self.vms_root / vm_id)
        self.checkpoints.remove_all(vm_id)
        log.info("kvm.deleted", vm_id=vm_id)

    def ssh_info(self, vm_id: str) -> SshInfo:
        if self.status(vm_id) != VmStatus.RUNNING:
            raise ProviderOperationError(f"Cannot get IP for {vm_id} - is it running?")
        ip = wait_for_ip(
            lambda: self._lease_ip(vm_id),
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
        domain = self._find_domain(vm_id)
        if domain is None:
            return VmStatus.STOPPED
        try:
            state, _reason = domain.state()
        except libvirt.libvirtError:
            return VmStatus.UNKNOWN
        if state == libvirt.VIR_DOMAIN_RUNNING:
            return VmStatus.RUNNING
        if state == libvirt.VIR_DOMAIN_SHUTOFF:
            return VmStatus.STOPPED
        return VmStatus.UNKNOWN

    def list_vms(self) -> List[VmInfo]:
        try:
            domains = self.conn.listAllDomains()
        except libvirt.libvirtError as e:
            raise ProviderOperationError("Failed to list libvirt domains", str(e)) from e

        results = []
        for domain in domains:
            vm_id = domain.name()
            if not is_managed_vm_name(vm_id):
                continue
            status = self.status(vm_id)
            ip = None
            if status == VmStatus.RUNNING:
                ip = wait_for_ip(
                    lambda: self._lease_ip(vm_id),
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

    def _reflink_copy(self, src: Path, dst: Path) -> None:
        self.runner.run(["cp", "--reflink=auto", str(src), str(dst)])

    def _copy_project_media(self, layout: VmLayout) -> None:
        project_cidata = layout.source_dir / "cidata.iso"
        if project_cidata.exists():
            self._reflink_copy(project_cidata, layout.cidata)

    def _virt_install_command(self, layout: VmLayout, disk: Path) -> List[str]:
        vm = self.config.vm
        cmd = [
            "virt-install",
            "--connect", self.uri,
            "--name", layout.vm_id,
            "--memory", str(vm.memory_mb),
            "--vcpus", str(vm.cpus),
            "--disk", f"path={disk},format=qcow2",
        ]
        if layout.cidata.exists():
            cmd += ["--disk", f"path={layout.cidata},device=cdrom"]
        cmd += [
            "--os-variant", OS_VARIANT,
            "--network", f"network={NETWORK}",
            "--boot", "uefi",
            "--import",
            "--noautoconsole",
        ]
        return cmd

    def _lease_ip(self, vm_id: str) -> Optional[str]:
        """First IPv4 address in the DHCP leases for *vm_id*."""
        domain = self.conn.lookupByName(vm_id)
        ifaces = domain.interfaceAddresses(libvirt.VIR_DOMAIN_INTERFACE_ADDRESSES_SRC_LEASE)
        for iface in (ifaces or {}).values():
            for addr in iface.get("addrs") or []:
                if addr.get("type") == libvirt.VIR_IP_ADDR_TYPE_IPV4 and addr.get("addr"):
                    return addr["addr"]
        return None
