"""
Provider interface — the external capability that applies operations
against the real managed system.

Concrete providers (cloud APIs, cluster APIs, DNS, secrets) live outside
this package. They subclass `Provider`, or register per-kind providers on
a `ProviderRegistry`.
"""

from enum import Enum
from typing import Any, Dict, Optional

from converge_kernel.errors import ProviderError
from converge_kernel.models.plan import Operation
from converge_kernel.models.values import ResourceRef


class ErrorClass(str, Enum):
    RETRYABLE = "retryable"
    FATAL = "fatal"


class Provider:
    """
    Base provider.

    `apply` performs a create, update or delete and returns the observed
    outputs (ids, endpoints, ...). `classify` decides whether an error is
    worth retrying. Providers that can read live state set
    `supports_read = True` and implement `read`.
    """

    supports_read = False

    async def apply(self, operation: Operation) -> Dict[str, Any]:
        raise NotImplementedError

    def classify(
        self, error: Exception, operation: Optional[Operation] = None
    ) -> ErrorClass:
        """Retryable ProviderErrors (timeouts included) are retried; the rest are fatal."""
        if isinstance(error, ProviderError) and error.retryable:
            return ErrorClass.RETRYABLE
        return ErrorClass.FATAL

    async def read(self, ref: ResourceRef) -> Optional[Dict[str, Any]]:
        """Return live attributes, or None if the resource no longer exists."""
        raise NotImplementedError


class ProviderRegistry(Provider):
    """Dispatches each operation to the provider registered for its kind."""

    def __init__(self, default: Optional[Provider] = None):
        self._providers: Dict[str, Provider] = {}
        self._default = default

    def register(self, kind: str, provider: Provider) -> None:
        """Register a provider for a resource kind."""
        self._providers[kind] = provider

    def provider_for(self, kind: str) -> Provider:
        provider = self._providers.get(kind, self._default)
        if provider is None:
            raise ProviderError(f"No provider registered for kind: {kind}")
        return provider

    @property
    def supports_read(self) -> bool:
        providers = list(self._providers.values())
        if self._default is not None:
            providers.append(self._default)
        return bool(providers) and all(p.supports_read for p in providers)

    async def apply(self, operation: Operation) -> Dict[str, Any]:
        return await self.provider_for(operation.resource.kind).apply(operation)

    def classify(
        self, error: Exception, operation: Optional[Operation] = None
    ) -> ErrorClass:
        if operation is not None and operation.resource.kind in self._providers:
            return self._providers[operation.resource.kind].classify(error, operation)
        return super().classify(error, operation)

    async def read(self, ref: ResourceRef) -> Optional[Dict[str, Any]]:
        return await self.provider_for(ref.kind).read(ref)
