"""
Pytest fixtures and configuration for agent-swarm tests.
"""
import tempfile
import threading
from pathlib import Path
from typing import Dict, List, Optional
from unittest.mock import MagicMock

import pytest

from agent_swarm.exceptions import ProviderOperationError
from agent_swarm.interfaces.process import ProcessResult, ProcessRunner
from agent_swarm.interfaces.provider import Provider, SshInfo, VmInfo, VmStatus
from agent_swarm.models import ReadinessSettings, SwarmConfig
from agent_swarm.paths import project_vm_name, task_vm_name
from agent_swarm.registry import Registry
from agent_swarm.secrets import KeyCustodian, SecretBackend
from agent_swarm.snapshots import CheckpointStore


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def swarm_home(temp_dir, monkeypatch):
    """Point AGENT_SWARM_HOME at a scratch directory."""
    home = temp_dir / "home"
    home.mkdir()
    monkeypatch.setenv("AGENT_SWARM_HOME", str(home))
    return home


@pytest.fixture
def fast_config():
    """Config whose polling loops give up immediately."""
    readiness = ReadinessSettings(
        ip_interval=0.01,
        ip_timeout=0,
        ssh_interval=0.01,
        ssh_timeout=0,
        provisioning_interval=0.01,
        provisioning_timeout=0,
        stop_interval=0.01,
        stop_timeout=0,
        ssh_info_timeout=0,
        list_ip_timeout=0,
    )
    return SwarmConfig(readiness=readiness, max_workers=4)


@pytest.fixture
def registry(temp_dir):
    """File-backed registry so worker threads get their own connections."""
    reg = Registry.open(f"sqlite:///{temp_dir / 'registry.db'}")
    yield reg
    reg.close()


@pytest.fixture
def memory_registry():
    reg = Registry.in_memory()
    yield reg
    reg.close()


class FakeCustodian(KeyCustodian):
    """Key custodian holding its key in memory."""

    description = "memory"

    def __init__(self, key: Optional[bytes] = None):
        super().__init__(MagicMock(spec=ProcessRunner))
        self.stored = key
        self.store_calls = 0

    def _load(self):
        return self.stored

    def _store(self, key):
        self.store_calls += 1
        self.stored = key


@pytest.fixture
def custodian():
    return FakeCustodian()


@pytest.fixture
def secret_backend(registry, custodian):
    return SecretBackend(registry, custodian)


@pytest.fixture
def mock_runner():
    """ProcessRunner whose commands all succeed with empty output."""
    runner = MagicMock(spec=ProcessRunner)
    runner.run.return_value = ProcessResult(returncode=0, stdout="", stderr="")
    runner.ok.return_value = True
    return runner


class FakeProvider(Provider):
    """In-process provider that keeps disks as plain files.

    ``fail_keys`` makes ``create_vm`` raise for the listed keys.
    """

    name = "fake"

    def __init__(self, root: Path, fail_keys: Optional[List[str]] = None):
        self.vms_root = root / "vms"
        self.vms_root.mkdir(parents=True, exist_ok=True)
        self.checkpoints = CheckpointStore("img", root=root / "snapshots")
        self.states: Dict[str, VmStatus] = {}
        self.fail_keys = set(fail_keys or [])
        self.calls: List[tuple] = []
        self._lock = threading.Lock()
        self.is_available = True

    def _record(self, *call):
        with self._lock:
            self.calls.append(call)

    def disk(self, vm_id: str) -> Path:
        return self.vms_root / vm_id / "disk.img"

    def available(self) -> bool:
        return self.is_available

    def create_vm(self, key, source):
        self._record("create_vm", key, source)
        if key in self.fail_keys:
            raise ProviderOperationError(f"boom creating {key}")
        source = Path(source)
        clone = self.vms_root in source.parents
        vm_id = task_vm_name(key) if clone else project_vm_name(key)
        self.disk(vm_id).parent.mkdir(parents=True, exist_ok=True)
        self.disk(vm_id).write_bytes(source.read_bytes())
        with self._lock:
            self.states[vm_id] = VmStatus.RUNNING
        return VmInfo(vm_id=vm_id, key=key, ip="10.0.0.2", status=VmStatus.RUNNING)

    def start_vm(self, vm_id):
        self._record("start_vm", vm_id)
        self.states[vm_id] = VmStatus.RUNNING

    def stop_vm(self, vm_id):
        self._record("stop_vm", vm_id)
        self.states[vm_id] = VmStatus.STOPPED

    def delete_vm(self, vm_id):
        self._record("delete_vm", vm_id)
        self.states.pop(vm_id, None)
        disk = self.disk(vm_id)
        if disk.exists():
            disk.unlink()
        self.checkpoints.remove_all(vm_id)

    def ssh_info(self, vm_id):
        if self.states.get(vm_id) != VmStatus.RUNNING:
            raise ProviderOperationError(f"Cannot get IP for {vm_id} - is it running?")
        return SshInfo(host="10.0.0.9", port=22, user="worker")

    def checkpoint(self, vm_id, name):
        self.stop_vm(vm_id)
        self.checkpoints.create(vm_id, name, self.disk(vm_id))

    def restore(self, vm_id, name):
        self.stop_vm(vm_id)
        self.checkpoints.restore(vm_id, name, self.disk(vm_id))

    def list_checkpoints(self, vm_id):
        return self.checkpoints.names(vm_id)

    def status(self, vm_id):
        return self.states.get(vm_id, VmStatus.STOPPED)

    def list_vms(self):
        return [
            VmInfo(vm_id=vm_id, key=vm_id, ip=None, status=status)
            for vm_id, status in self.states.items()
        ]

    def project_disk_path(self, project):
        return str(self.disk(project_vm_name(project)))


class FakeDetector:
    """Detector handing out a single fake provider."""

    def __init__(self, provider: FakeProvider):
        self.provider = provider

    def get(self, name):
        return self.provider

    def detect(self):
        return self.provider

    def require(self, name):
        return self.provider

    def availability(self):
        return [(self.provider.name, self.provider.available())]


@pytest.fixture
def fake_provider(temp_dir):
    return FakeProvider(temp_dir / "state")


@pytest.fixture
def base_image(temp_dir):
    image = temp_dir / "ubuntu-24.04.img"
    image.write_bytes(b"base-image")
    return image
