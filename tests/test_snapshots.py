"""Tests for the file-based checkpoint store."""
import os

import pytest

from agent_swarm.exceptions import CheckpointNotFoundError, InvalidNameError, ProviderOperationError
from agent_swarm.snapshots import CheckpointStore


@pytest.fixture
def store(temp_dir):
    return CheckpointStore("qcow2", root=temp_dir / "snapshots")


@pytest.fixture
def disk(temp_dir):
    path = temp_dir / "vms" / "agent-swarm-t1" / "disk.qcow2"
    path.parent.mkdir(parents=True)
    path.write_bytes(b"v1")
    return path


def test_layout(store, temp_dir):
    assert store.path_for("agent-swarm-t1", "cp1") == temp_dir / "snapshots" / "agent-swarm-t1" / "cp1.qcow2"


def test_create_and_restore(store, disk):
    checkpoint = store.create("agent-swarm-t1", "cp1", disk)
    assert checkpoint.name == "cp1"
    assert checkpoint.size_bytes == 2
    assert checkpoint.vm_id == "agent-swarm-t1"

    disk.write_bytes(b"v2-changed")
    store.restore("agent-swarm-t1", "cp1", disk)
    assert disk.read_bytes() == b"v1"


def test_create_overwrites_same_name(store, disk):
    store.create("agent-swarm-t1", "cp1", disk)
    disk.write_bytes(b"v2")
    store.create("agent-swarm-t1", "cp1", disk)
    assert store.path_for("agent-swarm-t1", "cp1").read_bytes() == b"v2"
    assert store.names("agent-swarm-t1") == ["cp1"]


def test_list_is_chronological(store, disk):
    for name in ("zeta", "alpha", "mid"):
        store.create("agent-swarm-t1", name, disk)
    base = 1_700_000_000
    for offset, name in enumerate(("zeta", "alpha", "mid")):
        path = store.path_for("agent-swarm-t1", name)
        os.utime(path, (base + offset, base + offset))

    assert store.names("agent-swarm-t1") == ["zeta", "alpha", "mid"]
    assert store.latest("agent-swarm-t1") == "mid"


def test_same_mtime_breaks_ties_by_name(store, disk):
    for name in ("b", "a"):
        store.create("agent-swarm-t1", name, disk)
        os.utime(store.path_for("agent-swarm-t1", name), (1_700_000_000, 1_700_000_000))
    assert store.names("agent-swarm-t1") == ["a", "b"]


def test_empty(store):
    assert store.list("agent-swarm-none") == []
    assert store.latest("agent-swarm-none") is None


def test_restore_missing(store, disk):
    with pytest.raises(CheckpointNotFoundError):
        store.restore("agent-swarm-t1", "nope", disk)
    assert disk.read_bytes() == b"v1"


def test_create_missing_disk(store, temp_dir):
    with pytest.raises(ProviderOperationError):
        store.create("agent-swarm-t1", "cp1", temp_dir / "missing.qcow2")


def test_invalid_name(store, disk):
    with pytest.raises(InvalidNameError):
        store.create("agent-swarm-t1", "../escape", disk)


def test_remove_all(store, disk):
    store.create("agent-swarm-t1", "cp1", disk)
    store.remove_all("agent-swarm-t1")
    assert store.list("agent-swarm-t1") == []
    store.remove_all("agent-swarm-t1")


def test_custom_copy_function(temp_dir, disk):
    copies = []

    def copy(src, dst):
        copies.append((src, dst))
        dst.write_bytes(src.read_bytes())

    store = CheckpointStore("qcow2", root=temp_dir / "snap", copy_file=copy)
    store.create("agent-swarm-t1", "cp1", disk)
    assert copies == [(disk, store.path_for("agent-swarm-t1", "cp1"))]


def test_failed_restore_keeps_live_disk(temp_dir, disk):
    def copy_file(src, dst):
        if dst.name.endswith(".restoring"):
            dst.write_bytes(b"partial")
            raise OSError("No space left on device")
        dst.write_bytes(src.read_bytes())

    store = CheckpointStore("qcow2", root=temp_dir / "snapshots", copy_file=copy_file)
    store.create("agent-swarm-t1", "cp1", disk)
    disk.write_bytes(b"v2")

    with pytest.raises(OSError):
        store.restore("agent-swarm-t1", "cp1", disk)

    assert disk.read_bytes() == b"v2"
    assert sorted(p.name for p in disk.parent.iterdir()) == ["disk.qcow2"]
