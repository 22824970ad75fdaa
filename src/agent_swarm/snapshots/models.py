#!/usr/bin/env python3
"""Data models for checkpoint management."""

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path


@dataclass
class Checkpoint:
    """A named point-in-time copy of a VM's disk."""

    name: str
    vm_id: str
    disk_path: Path
    created_at: datetime
    size_bytes: int = 0
