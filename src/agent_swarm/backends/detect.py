"""Provider detection and lookup by name."""

import sys
import threading
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Type

from ..exceptions import ProviderUnavailableError
from ..interfaces.process import ProcessRunner
from ..interfaces.provider import Provider
from ..logging import get_logger
from ..models import SwarmConfig
from .hyperv import HypervProvider
from .kvm import KvmProvider
from .macos_native import MacNativeProvider

log = get_logger(__name__)

# Detection priority; first available wins.
PROVIDER_CLASSES: Dict[str, Type[Provider]] = {
    MacNativeProvider.name: MacNativeProvider,
    KvmProvider.name: KvmProvider,
    HypervProvider.name: HypervProvider,
}


class ProviderDetector:
    """Builds each provider once and hands out instances by name.

    ``detect`` checks availability in fixed priority order and is only used
    when creating a project; anything already pinned to a provider goes
    through ``get``, which never checks availability.
    """

    def __init__(
        self,
        runner: ProcessRunner,
        config: Optional[SwarmConfig] = None,
        vms_root: Optional[Path] = None,
        snapshots_root: Optional[Path] = None,
        platform: str = sys.platform,
    ):
        self.runner = runner
        self.config = config or SwarmConfig()
        self.vms_root = vms_root
        self.snapshots_root = snapshots_root
        self.platform = platform
        self._instances: Dict[str, Provider] = {}
        self._lock = threading.Lock()

    @staticmethod
    def names() -> List[str]:
        return list(PROVIDER_CLASSES)

    def get(self, name: str) -> Provider:
        cls = PROVIDER_CLASSES.get(name)
        if cls is None:
            raise ProviderUnavailableError(
                f"Unknown provider: {name} (known: {', '.join(PROVIDER_CLASSES)})", hints=False
            )
        with self._lock:
            if name not in self._instances:
                self._instances[name] = cls(
                    self.runner,
                    self.config,
                    vms_root=self.vms_root,
                    snapshots_root=self.snapshots_root,
                    platform=self.platform,
                )
            return self._instances[name]

    def detect(self) -> Provider:
        for name in PROVIDER_CLASSES:
            provider = self.get(name)
            if provider.available():
                log.info("provider.detected", provider=name)
                return provider
        raise ProviderUnavailableError()

    def require(self, name: str) -> Provider:
        provider = self.get(name)
        if not provider.available():
            raise ProviderUnavailableError(f"Provider '{name}' is not available on this host.")
        return provider

    def availability(self) -> List[Tuple[str, bool]]:
        return [(name, self.get(name).available()) for name in PROVIDER_CLASSES]
