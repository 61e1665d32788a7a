"""
Capability registry: maps (kind, provider name) to a factory.

A factory takes the provider's access config (credentials) and extended
config (options) and returns a ready capability instance. Registration
happens once at start-up; after freeze() the registry is read-only and
lookups need no locking.
"""

import logging
import threading
from collections.abc import Callable, Mapping
from enum import Enum
from types import MappingProxyType
from typing import Any

from acme_cert_orchestrator import linode, rfc2136, tencentcloud, wecom
from acme_cert_orchestrator.challenge import WebrootHttp01Solver
from acme_cert_orchestrator.exceptions import ConfigError
from acme_cert_orchestrator.utils import get_str

logger = logging.getLogger(__name__)

Factory = Callable[[Mapping[str, Any], Mapping[str, Any]], Any]


class CapabilityKind(str, Enum):
    CERTIFICATE_STORE = "certificate-store"
    DEPLOYER = "deployer"
    NOTIFIER = "notifier"
    DNS01 = "dns-01"
    HTTP01 = "http-01"


class CapabilityRegistry:
    """Factories for vendor capabilities, keyed by kind and provider name."""

    def __init__(self):
        self._lock = threading.Lock()
        self._factories: dict[tuple[CapabilityKind, str], Factory] = {}
        self._frozen: Mapping[tuple[CapabilityKind, str], Factory] | None = None

    def __repr__(self) -> str:
        state = "frozen" if self.frozen else "open"
        return f"<CapabilityRegistry {state} providers={len(self._entries())}>"

    @property
    def frozen(self) -> bool:
        return self._frozen is not None

    def register(self, kind: CapabilityKind | str, provider: str, factory: Factory) -> None:
        """
        Register a factory.

        Raises:
            ValueError: If the provider is already registered for the kind.
            RuntimeError: If the registry is frozen.
        """
        key = (CapabilityKind(kind), provider)
        with self._lock:
            if self._frozen is not None:
                raise RuntimeError(f"Cannot register {key[0].value} provider '{provider}': registry is frozen")
            if key in self._factories:
                raise ValueError(f"{key[0].value} provider '{provider}' is already registered")
            self._factories[key] = factory

        logger.debug(f"Registered {key[0].value} provider '{provider}'")

    def provider(self, kind: CapabilityKind | str, name: str) -> Callable[[Factory], Factory]:
        """
        Decorator form of register().

        Usage:
            @registry.provider(CapabilityKind.NOTIFIER, "my-bot")
            def create(access_config, extended_config):
                ...
        """

        def decorator(factory: Factory) -> Factory:
            self.register(kind, name, factory)
            return factory

        return decorator

    def freeze(self) -> "CapabilityRegistry":
        """Make the registry read-only."""
        with self._lock:
            if self._frozen is None:
                self._frozen = MappingProxyType(dict(self._factories))
        return self

    def _entries(self) -> Mapping[tuple[CapabilityKind, str], Factory]:
        if self._frozen is not None:
            return self._frozen
        with self._lock:
            return dict(self._factories)

    def lookup(self, kind: CapabilityKind | str, provider: str) -> Factory:
        """
        Return the factory for a provider.

        Raises:
            ConfigError: If no such provider is registered.
        """
        try:
            kind = CapabilityKind(kind)
        except ValueError:
            raise ConfigError(f"Unknown capability kind: '{kind}'") from None

        factory = self._entries().get((kind, provider))
        if factory is None:
            raise ConfigError(f"Unsupported {kind.value} provider: '{provider}'")
        return factory

    def providers(self, kind: CapabilityKind | str) -> list[str]:
        kind = CapabilityKind(kind)
        return sorted(name for k, name in self._entries() if k is kind)

    def create(
        self,
        kind: CapabilityKind | str,
        provider: str,
        access_config: Mapping[str, Any] | None = None,
        extended_config: Mapping[str, Any] | None = None,
    ) -> Any:
        """
        Build a capability instance.

        Raises:
            ConfigError: If the provider is unknown or its configuration is invalid.
        """
        factory = self.lookup(kind, provider)
        try:
            return factory(access_config or {}, extended_config or {})
        except ConfigError:
            raise
        except (KeyError, ValueError, TypeError) as e:
            raise ConfigError(f"Invalid configuration for {CapabilityKind(kind).value} provider '{provider}': {e}") from e


def register_builtin_providers(registry: CapabilityRegistry) -> CapabilityRegistry:
    """Register the providers shipped with this package."""
    registry.register(CapabilityKind.DNS01, "rfc2136", rfc2136.create_solver)
    registry.register(
        CapabilityKind.HTTP01,
        "webroot",
        lambda access, extended: WebrootHttp01Solver(get_str(extended, "path")),
    )
    registry.register(CapabilityKind.HTTP01, "linode-objectstorage", linode.create_solver)
    registry.register(CapabilityKind.CERTIFICATE_STORE, "tencentcloud-ssl", tencentcloud.create_store)
    registry.register(CapabilityKind.DEPLOYER, "tencentcloud-cdn", tencentcloud.create_deployer)
    registry.register(CapabilityKind.NOTIFIER, "wecombot", wecom.create_notifier)
    return registry


_default_registry: CapabilityRegistry | None = None
_default_lock = threading.Lock()


def default_registry() -> CapabilityRegistry:
    """Return the process-wide registry with the built-in providers, built on first use."""
    global _default_registry

    if _default_registry is None:
        with _default_lock:
            if _default_registry is None:
                _default_registry = register_builtin_providers(CapabilityRegistry()).freeze()
    return _default_registry
