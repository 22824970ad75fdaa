"""Tests for cloud-init media generation."""
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import yaml

from agent_swarm.cloud_init import (
    create_cloud_init_iso,
    ensure_setup_script,
    find_ssh_pubkey,
    generate_meta_data,
    generate_user_data,
    iso_command,
)
from agent_swarm.exceptions import UnsupportedPlatformError
from agent_swarm.interfaces.process import ProcessResult, ProcessRunner


def test_user_data_document():
    text = generate_user_data("worker", "ssh-ed25519 AAAA test", "#!/bin/bash\necho hi\n")
    assert text.startswith("#cloud-config\n")
    doc = yaml.safe_load(text)
    user = doc["users"][1]
    assert doc["users"][0] == "default"
    assert user["name"] == "worker"
    assert user["ssh_authorized_keys"] == ["ssh-ed25519 AAAA test"]
    assert user["sudo"] == "ALL=(ALL) NOPASSWD:ALL"
    assert doc["ssh_pwauth"] is False
    assert doc["write_files"][0]["content"] == "#!/bin/bash\necho hi\n"
    assert doc["runcmd"] == ["/opt/agent-swarm/setup.sh"]


def test_user_data_without_key():
    doc = yaml.safe_load(generate_user_data("worker", "", "true"))
    assert "ssh_authorized_keys" not in doc["users"][1]


def test_meta_data():
    assert yaml.safe_load(generate_meta_data("webapp")) == {
        "instance-id": "webapp",
        "local-hostname": "webapp",
    }


def test_find_ssh_pubkey_prefers_ed25519(temp_dir):
    (temp_dir / "id_rsa.pub").write_text("ssh-rsa BBBB\n")
    (temp_dir / "id_ed25519.pub").write_text("ssh-ed25519 AAAA\n")
    assert find_ssh_pubkey(temp_dir) == "ssh-ed25519 AAAA"
    assert find_ssh_pubkey(temp_dir / "empty") == ""


def test_setup_script_written_once(temp_dir):
    path = temp_dir / "setup.sh"
    first = ensure_setup_script("dev", path)
    assert "usermod -aG docker dev" in first
    path.write_text("#!/bin/bash\n# customized\n")
    assert ensure_setup_script("dev", path) == "#!/bin/bash\n# customized\n"


class TestIsoCommand:
    def test_darwin(self, temp_dir):
        cmd = iso_command(temp_dir, temp_dir / "cidata.iso", "darwin")
        assert cmd[:2] == ["hdiutil", "makehybrid"]
        assert "cidata" in cmd

    def test_linux_prefers_genisoimage(self, temp_dir):
        with patch("agent_swarm.cloud_init.shutil.which", side_effect=lambda t: "/usr/bin/x" if t == "genisoimage" else None):
            cmd = iso_command(temp_dir, temp_dir / "cidata.iso", "linux")
        assert cmd[0] == "genisoimage"
        assert cmd[cmd.index("-volid") + 1] == "cidata"

    def test_linux_xorriso_fallback(self, temp_dir):
        with patch("agent_swarm.cloud_init.shutil.which", side_effect=lambda t: "/usr/bin/x" if t == "xorriso" else None):
            cmd = iso_command(temp_dir, temp_dir / "cidata.iso", "linux")
        assert cmd[:3] == ["xorriso", "-as", "mkisofs"]

    def test_windows(self, temp_dir):
        cmd = iso_command(temp_dir, temp_dir / "cidata.iso", "win32")
        assert cmd[0] == "oscdimg.exe"
        assert "-lcidata" in cmd

    def test_unsupported(self, temp_dir):
        with pytest.raises(UnsupportedPlatformError):
            iso_command(temp_dir, temp_dir / "cidata.iso", "sunos5")


def test_create_iso_stages_files(temp_dir, swarm_home):
    seen = {}
    runner = MagicMock(spec=ProcessRunner)

    def run(cmd, **kwargs):
        source = Path(cmd[-1])
        seen["files"] = sorted(p.name for p in source.iterdir())
        seen["meta"] = (source / "meta-data").read_text()
        Path(cmd[cmd.index("-output") + 1]).write_bytes(b"iso")
        return ProcessResult(0, "", "")

    runner.run.side_effect = run
    with patch("agent_swarm.cloud_init.shutil.which", return_value="/usr/bin/genisoimage"):
        iso = create_cloud_init_iso(temp_dir / "vm", "webapp", runner, platform="linux")

    assert iso == temp_dir / "vm" / "cidata.iso"
    assert iso.read_bytes() == b"iso"
    assert seen["files"] == ["meta-data", "user-data"]
    assert "webapp" in seen["meta"]
    assert (swarm_home / "setup.sh").exists()
    # scratch directory is cleaned up
    assert [p.name for p in (temp_dir / "vm").iterdir()] == ["cidata.iso"]


def test_create_iso_renames_cdr(temp_dir, swarm_home):
    runner = MagicMock(spec=ProcessRunner)

    def run(cmd, **kwargs):
        out = Path(cmd[cmd.index("-o") + 1])
        out.with_name(out.name + ".cdr").write_bytes(b"iso")
        return ProcessResult(0, "", "")

    runner.run.side_effect = run
    iso = create_cloud_init_iso(temp_dir / "vm", "webapp", runner, platform="darwin")
    assert iso.exists()
