"""Concrete implementations of the agent-swarm interfaces."""

from .detect import PROVIDER_CLASSES, ProviderDetector
from .hyperv import HypervProvider
from .kvm import KvmProvider
from .macos_native import MacNativeProvider
from .subprocess_runner import SubprocessRunner

__all__ = [
    "PROVIDER_CLASSES",
    "HypervProvider",
    "KvmProvider",
    "MacNativeProvider",
    "ProviderDetector",
    "SubprocessRunner",
]
