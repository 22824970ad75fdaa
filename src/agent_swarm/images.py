#!/usr/bin/env python3
"""
Base image location and one-time preparation.

Ubuntu publishes its cloud images as qcow2. KVM uses them as-is; the macOS
helper needs a raw disk and Hyper-V needs VHDX, so ``prepare_base_image``
converts once after download.
"""

import platform as _platform
import shutil
import sys
import urllib.request
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from agent_swarm.exceptions import ProviderOperationError, UnsupportedPlatformError
from agent_swarm.interfaces.process import ProcessRunner
from agent_swarm.logging import get_logger
from agent_swarm.paths import base_images_dir, bin_dir

log = get_logger(__name__)

UBUNTU_RELEASE = "24.04"
IMAGE_URL = (
    "https://cloud-images.ubuntu.com/releases/{release}/release/"
    "ubuntu-{release}-server-cloudimg-{arch}.img"
)

# Checked in order by default_base_image()
CANDIDATE_NAMES = [
    "ubuntu-24.04.img",
    "ubuntu-24.04.qcow2",
    "ubuntu-24.04.vhdx",
    "ubuntu-22.04.img",
    "ubuntu-22.04.qcow2",
    "ubuntu-22.04.vhdx",
]

_FORMAT_BY_PLATFORM = {"darwin": ("img", "raw"), "linux": ("qcow2", "qcow2"), "win32": ("vhdx", "vhdx")}


def host_arch() -> str:
    return "arm64" if _platform.machine().lower() in ("arm64", "aarch64") else "amd64"


def default_base_image(root: Optional[Path] = None) -> Optional[Path]:
    """First prepared base image found, or None."""
    root = root or base_images_dir()
    for name in CANDIDATE_NAMES:
        candidate = root / name
        if candidate.exists():
            return candidate
    return None


def target_format(platform: str = sys.platform) -> Tuple[str, str]:
    """(file extension, disk format) the host's provider boots from."""
    key = "linux" if platform.startswith("linux") else platform
    try:
        return _FORMAT_BY_PLATFORM[key]
    except KeyError:
        raise UnsupportedPlatformError(f"No base image format known for platform {platform}")


def convert_command(
    src: Path, dst: Path, fmt: str, helper: Optional[Path] = None
) -> List[str]:
    if fmt == "raw" and helper is not None:
        return [str(helper), "convert-qcow2", str(src), str(dst)]
    cmd = ["qemu-img", "convert", "-f", "qcow2", "-O", fmt]
    if fmt == "vhdx":
        cmd += ["-o", "subformat=dynamic"]
    return cmd + [str(src), str(dst)]


def convert_image(
    src: Path, dst: Path, fmt: str, runner: ProcessRunner, helper: Optional[Path] = None
) -> Path:
    """Convert a qcow2 image at *src* into *fmt* at *dst*."""
    runner.run(convert_command(src, dst, fmt, helper), timeout=3600)
    if not dst.exists():
        raise ProviderOperationError(f"Image conversion produced no output at {dst}")
    log.info("image.converted", src=str(src), dst=str(dst), format=fmt)
    return dst


def download_file(url: str, dest: Path, chunk_size: int = 1024 * 1024) -> Path:
    """Stream *url* to *dest* via a ``.part`` file."""
    partial = dest.with_name(dest.name + ".part")
    try:
        with urllib.request.urlopen(url, timeout=60) as response, open(partial, "wb") as out:
            shutil.copyfileobj(response, out, chunk_size)
    except OSError as e:
        partial.unlink(missing_ok=True)
        raise ProviderOperationError(f"Download failed: {url}", str(e)) from e
    partial.replace(dest)
    return dest


def prepare_base_image(
    runner: ProcessRunner,
    platform: str = sys.platform,
    root: Optional[Path] = None,
    helper: Optional[Path] = None,
    arch: Optional[str] = None,
    download: Callable[[str, Path], Path] = download_file,
) -> Tuple[Path, bool]:
    """Download and convert the default cloud image.

    Returns ``(path, created)``; an existing image is left untouched.
    """
    root = root or base_images_dir()
    ext, fmt = target_format(platform)
    final = root / f"ubuntu-{UBUNTU_RELEASE}.{ext}"
    if final.exists():
        return final, False

    root.mkdir(parents=True, exist_ok=True)
    arch = arch or host_arch()
    url = IMAGE_URL.format(release=UBUNTU_RELEASE, arch=arch)
    qcow2 = root / f"ubuntu-{UBUNTU_RELEASE}-{arch}.qcow2"

    log.info("image.download", url=url)
    download(url, qcow2)

    if fmt == "qcow2":
        qcow2.replace(final)
    else:
        if fmt == "raw" and helper is None:
            helper = bin_dir() / "vm-helper"
        try:
            convert_image(qcow2, final, fmt, runner, helper=helper)
        finally:
            qcow2.unlink(missing_ok=True)
    return final, True
