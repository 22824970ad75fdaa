"""Interfaces for agent-swarm VM providers."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional


class VmStatus(str, Enum):
    """Observed state of a VM."""

    CREATING = "creating"
    RUNNING = "running"
    STOPPED = "stopped"
    UNKNOWN = "unknown"


@dataclass
class VmInfo:
    """VM information returned by a provider.

    ``ip`` is None when the VM was launched but no address was observed
    within the polling bound; that means "not yet reachable", not failure.
    """

    vm_id: str
    key: str
    ip: Optional[str]
    status: VmStatus


@dataclass
class SshInfo:
    """Where to reach a running VM."""

    host: str
    port: int
    user: str


class Provider(ABC):
    """VM lifecycle contract implemented once per hypervisor technology.

    Implementations never persist state of their own beyond what the host
    hypervisor tracks (VM definitions, disk files, checkpoint files).
    """

    name: str = ""

    @abstractmethod
    def available(self) -> bool:
        """Whether this provider can run here. Never raises."""
        pass

    @abstractmethod
    def create_vm(self, key: str, source: str) -> VmInfo:
        """Build a VM for *key* from a base image (project) or project disk (task)."""
        pass

    @abstractmethod
    def start_vm(self, vm_id: str) -> None:
        pass

    @abstractmethod
    def stop_vm(self, vm_id: str) -> None:
        """Graceful shutdown, then forced after a bounded wait. Idempotent."""
        pass

    @abstractmethod
    def delete_vm(self, vm_id: str) -> None:
        """Best-effort removal of the VM, its disk directory and checkpoints."""
        pass

    @abstractmethod
    def ssh_info(self, vm_id: str) -> SshInfo:
        pass

    @abstractmethod
    def checkpoint(self, vm_id: str, name: str) -> None:
        pass

    @abstractmethod
    def restore(self, vm_id: str, name: str) -> None:
        pass

    @abstractmethod
    def list_checkpoints(self, vm_id: str) -> List[str]:
        """Checkpoint names, oldest first."""
        pass

    @abstractmethod
    def status(self, vm_id: str) -> VmStatus:
        pass

    @abstractmethod
    def list_vms(self) -> List[VmInfo]:
        pass

    @abstractmethod
    def project_disk_path(self, project: str) -> str:
        """Path of a project's live disk. Pure derivation, no I/O."""
        pass
