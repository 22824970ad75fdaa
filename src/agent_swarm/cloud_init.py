#!/usr/bin/env python3
"""
Cloud-init media for new project VMs.

Writes user-data and meta-data into a scratch directory and packs them into
``cidata.iso`` with whatever ISO tool the host provides. The first-boot
script comes from ``~/.agent-swarm/setup.sh`` so users can edit it.
"""

import shutil
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from agent_swarm.exceptions import UnsupportedPlatformError
from agent_swarm.interfaces.process import ProcessRunner
from agent_swarm.logging import get_logger
from agent_swarm.paths import setup_script_path

log = get_logger(__name__)

DEFAULT_SETUP = """#!/bin/bash
# Agent Swarm VM setup script
# Edit this file to customize what gets installed in new project VMs.
# Runs as root during first boot. The login user already exists.

set -e

# --- System packages ---
apt-get update
apt-get install -y \\
  ca-certificates curl wget git zsh unzip build-essential

# --- Docker (official repo) ---
install -m 0755 -d /etc/apt/keyrings
curl -fsSL https://download.docker.com/linux/ubuntu/gpg -o /etc/apt/keyrings/docker.asc
chmod a+r /etc/apt/keyrings/docker.asc
echo "deb [arch=$(dpkg --print-architecture) signed-by=/etc/apt/keyrings/docker.asc] https://download.docker.com/linux/ubuntu $(. /etc/os-release && echo "$VERSION_CODENAME") stable" > /etc/apt/sources.list.d/docker.list
apt-get update
apt-get install -y docker-ce docker-ce-cli containerd.io docker-buildx-plugin docker-compose-plugin
systemctl enable --now docker
usermod -aG docker {user}

# --- nvm + Node.js LTS ---
su - {user} -c 'curl -o- https://raw.githubusercontent.com/nvm-sh/nvm/v0.40.1/install.sh | bash'
su - {user} -c 'export NVM_DIR="$HOME/.nvm" && . "$NVM_DIR/nvm.sh" && nvm install --lts'
"""

SSH_KEY_CANDIDATES = ("id_ed25519.pub", "id_rsa.pub", "id_ecdsa.pub")


def find_ssh_pubkey(ssh_dir: Optional[Path] = None) -> str:
    """First public key found in ~/.ssh, or empty string."""
    ssh_dir = ssh_dir or Path.home() / ".ssh"
    for name in SSH_KEY_CANDIDATES:
        candidate = ssh_dir / name
        if candidate.exists():
            return candidate.read_text().strip()
    return ""


def ensure_setup_script(user: str = "worker", path: Optional[Path] = None) -> str:
    """Return the setup script, writing the default one on first use."""
    path = path or setup_script_path()
    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(DEFAULT_SETUP.replace("{user}", user))
        log.info("setup_script.created", path=str(path))
    return path.read_text()


def generate_user_data(user: str, ssh_key: str, setup_script: str) -> str:
    """Render the #cloud-config document."""
    user_entry: Dict[str, Any] = {
        "name": user,
        "groups": ["sudo", "adm"],
        "shell": "/bin/bash",
        "sudo": "ALL=(ALL) NOPASSWD:ALL",
        "lock_passwd": True,
    }
    if ssh_key:
        user_entry["ssh_authorized_keys"] = [ssh_key]

    config: Dict[str, Any] = {
        "users": ["default", user_entry],
        "ssh_pwauth": False,
        "write_files": [
            {
                "path": "/opt/agent-swarm/setup.sh",
                "permissions": "0755",
                "content": setup_script,
            }
        ],
        "runcmd": ["/opt/agent-swarm/setup.sh"],
    }
    return "#cloud-config\n" + yaml.dump(config, default_flow_style=False, sort_keys=False)


def generate_meta_data(instance_id: str) -> str:
    return yaml.dump(
        {"instance-id": instance_id, "local-hostname": instance_id},
        default_flow_style=False,
        sort_keys=False,
    )


def iso_command(source_dir: Path, iso_path: Path, platform: str) -> List[str]:
    """Command that packs *source_dir* into a ``cidata`` volume."""
    if platform == "darwin":
        return [
            "hdiutil", "makehybrid", "-iso", "-joliet",
            "-default-volume-name", "cidata",
            "-o", str(iso_path), str(source_dir),
        ]
    if platform.startswith("linux"):
        tool = next(
            (t for t in ("genisoimage", "mkisofs", "xorriso") if shutil.which(t)),
            "genisoimage",
        )
        prefix = ["xorriso", "-as", "mkisofs"] if tool == "xorriso" else [tool]
        return prefix + [
            "-output", str(iso_path), "-volid", "cidata", "-joliet", "-rock", str(source_dir),
        ]
    if platform == "win32":
        return ["oscdimg.exe", "-j1", "-lcidata", str(source_dir), str(iso_path)]
    raise UnsupportedPlatformError(f"Unsupported platform for ISO creation: {platform}")


def create_cloud_init_iso(
    target_dir: Path,
    instance_id: str,
    runner: ProcessRunner,
    user: str = "worker",
    platform: str = sys.platform,
) -> Path:
    """Build ``<target_dir>/cidata.iso`` for *instance_id* and return its path."""
    target_dir = Path(target_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    iso_path = target_dir / "cidata.iso"

    with tempfile.TemporaryDirectory(prefix="cidata-", dir=target_dir) as tmp:
        tmp_dir = Path(tmp)
        (tmp_dir / "meta-data").write_text(generate_meta_data(instance_id))
        (tmp_dir / "user-data").write_text(
            generate_user_data(user, find_ssh_pubkey(), ensure_setup_script(user))
        )
        runner.run(iso_command(tmp_dir, iso_path, platform), timeout=120)

    # hdiutil appends .cdr on some macOS versions
    cdr_path = iso_path.with_name(iso_path.name + ".cdr")
    if cdr_path.exists() and not iso_path.exists():
        cdr_path.rename(iso_path)

    log.info("cloud_init.iso_created", instance_id=instance_id, path=str(iso_path))
    return iso_path
