"""IoC container wiring the agent-swarm services together."""

import sys
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Type, TypeVar

T = TypeVar("T")


@dataclass
class ServiceRegistration:
    """Registration info for a service."""

    factory: Callable[["DependencyContainer"], Any]
    singleton: bool = True
    instance: Optional[Any] = None


class DependencyContainer:
    """
    IoC container for dependency injection.

    Usage:
        container = DependencyContainer()
        container.register(ProcessRunner, instance=SubprocessRunner())
        container.register(Registry, factory=lambda c: Registry.open())

        orchestrator = container.resolve(Orchestrator)
    """

    def __init__(self):
        self._registrations: Dict[Type, ServiceRegistration] = {}
        self._lock = threading.RLock()

    def register(
        self,
        interface: Type[T],
        factory: Callable[["DependencyContainer"], T] = None,
        singleton: bool = True,
        instance: T = None,
    ) -> "DependencyContainer":
        """
        Register a service.

        Args:
            interface: The interface/base class used as lookup key
            factory: Callable receiving the container, returning an instance
            singleton: If True, reuse same instance
            instance: Pre-created instance to use
        """
        if instance is not None:
            self._registrations[interface] = ServiceRegistration(
                factory=lambda c: instance,
                singleton=True,
                instance=instance,
            )
        elif factory is not None:
            self._registrations[interface] = ServiceRegistration(
                factory=factory,
                singleton=singleton,
            )
        else:
            raise ValueError("Must provide factory or instance")

        return self  # Enable chaining

    def resolve(self, interface: Type[T]) -> T:
        """Resolve a service instance."""
        with self._lock:
            if interface not in self._registrations:
                raise KeyError(f"No registration for {interface}")

            reg = self._registrations[interface]
            if reg.singleton and reg.instance is not None:
                return reg.instance

            instance = reg.factory(self)
            if reg.singleton:
                reg.instance = instance
            return instance

    def has(self, interface: Type) -> bool:
        """Check if service is registered."""
        return interface in self._registrations

    def reset(self) -> None:
        """Drop singleton instances, closing the registry engine if one was built."""
        from .registry import Registry

        with self._lock:
            reg = self._registrations.get(Registry)
            if reg is not None and reg.instance is not None:
                reg.instance.close()
            for reg in self._registrations.values():
                reg.instance = None


def create_default_container(
    config: Optional[Any] = None,
    registry_url: Optional[str] = None,
    platform: str = sys.platform,
) -> DependencyContainer:
    """Create container with default registrations for this host."""
    from .backends.detect import ProviderDetector
    from .backends.subprocess_runner import SubprocessRunner
    from .interfaces.process import ProcessRunner
    from .models import SwarmConfig
    from .orchestrator import Orchestrator
    from .registry import Registry
    from .secrets import KeyCustodian, SecretBackend, create_key_custodian

    container = DependencyContainer()

    container.register(SwarmConfig, factory=lambda c: config or SwarmConfig.load())
    container.register(ProcessRunner, factory=lambda c: SubprocessRunner())
    container.register(Registry, factory=lambda c: Registry.open(registry_url))
    container.register(
        KeyCustodian,
        factory=lambda c: create_key_custodian(c.resolve(ProcessRunner), platform=platform),
    )
    container.register(
        SecretBackend,
        factory=lambda c: SecretBackend(c.resolve(Registry), c.resolve(KeyCustodian)),
    )
    container.register(
        ProviderDetector,
        factory=lambda c: ProviderDetector(
            c.resolve(ProcessRunner), c.resolve(SwarmConfig), platform=platform
        ),
    )
    container.register(
        Orchestrator,
        factory=lambda c: Orchestrator(
            c.resolve(Registry),
            c.resolve(SecretBackend),
            c.resolve(ProviderDetector),
            c.resolve(SwarmConfig),
        ),
    )

    return container
