"""Disk checkpoint storage for agent-swarm VMs."""

from .models import Checkpoint
from .store import CheckpointStore

__all__ = ["Checkpoint", "CheckpointStore"]
