"""Provider capability contract.

A provider is one backend (a VM host, an edge/DNS host, ...). The engine
only talks to backends through this interface: authenticate, observe,
plan, apply, destroy. New backends are added by subclassing CloudProvider
and registering a factory, never by changing the engine.

Backends implement three primitives: `check_auth`, `get_state` and
`execute` (one create/update/delete). Planning and applying default to the
generic Planner and Executor, which gives every backend the same ordering,
retry and partial-failure behaviour.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar

from .actions import Action, ActionType, ApplyResult, Plan
from .errors import InvalidConfig, ProviderNotFound, ResourceNotFound
from .normalizer import DiffNormalizer, PropertyChange
from .resources import ResourceConfig, ResourceSet, resource_key
from .state import ProviderRecord, ProviderState, ResourceState

if TYPE_CHECKING:
    from .config import RetryConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthStatus:
    """Result of a provider credential/tooling check."""

    authenticated: bool
    account_info: str | None = None
    error: str | None = None

    @classmethod
    def ok(cls, account_info: str | None = None) -> AuthStatus:
        return cls(authenticated=True, account_info=account_info)

    @classmethod
    def failed(cls, error: str) -> AuthStatus:
        return cls(authenticated=False, error=error)

    def to_dict(self) -> dict[str, Any]:
        return {
            "authenticated": self.authenticated,
            "account_info": self.account_info,
            "error": self.error,
        }


class CloudProvider(ABC):
    """Base class for every backend."""

    name: ClassVar[str] = ""
    display_name: ClassVar[str] = ""
    supported_resource_types: ClassVar[frozenset[str]] = frozenset()

    def __init__(
        self,
        *,
        normalizer: DiffNormalizer | None = None,
        unmanaged_resource_types: Iterable[str] = (),
    ) -> None:
        self.normalizer = normalizer or DiffNormalizer()
        # Explicit opt-out from deletion, per resource type
        self.unmanaged_resource_types = frozenset(unmanaged_resource_types)

    @abstractmethod
    async def check_auth(self) -> AuthStatus:
        """Verify credentials and tooling. Must not raise for auth failures."""

    @abstractmethod
    async def get_state(self) -> ProviderState:
        """Query the backend for a fresh snapshot. Never mutates anything."""

    @abstractmethod
    async def execute(self, action: Action) -> ResourceState | None:
        """Perform one create/update/delete.

        Returns the resulting observed state, or None for deletes.
        """

    def validate(self, resource: ResourceConfig) -> None:
        """Reject resources this provider cannot manage."""
        if resource.provider != self.name:
            raise InvalidConfig(
                f"Resource '{resource.key}' belongs to provider '{resource.provider}', "
                f"not '{self.name}'",
                {"resource": resource.key, "provider": resource.provider},
            )
        if resource.resource_type not in self.supported_resource_types:
            raise InvalidConfig(
                f"Provider '{self.name}' does not support resource type "
                f"'{resource.resource_type}' (supported: "
                f"{', '.join(sorted(self.supported_resource_types))})",
                {"resource": resource.key},
            )

    def comparable_config(self, resource: ResourceConfig) -> dict[str, Any]:
        """Desired values in the shape of observed attributes."""
        return dict(resource.config)

    def compare(self, resource: ResourceConfig, observed: ResourceState) -> list[PropertyChange]:
        """Differences between a desired resource and its observed state."""
        return self.normalizer.compare_config(
            resource.resource_type,
            self.comparable_config(resource),
            observed.attributes,
        )

    def is_managed(self, observed: ResourceState) -> bool:
        """False for resources that must never be scheduled for deletion."""
        return (
            not observed.externally_managed
            and observed.resource_type not in self.unmanaged_resource_types
        )

    async def plan(self, desired: ResourceSet, base: ProviderRecord | None = None) -> Plan:
        from .planner import Planner

        observed = await self.get_state()
        return Planner().plan(self, desired, observed, base)

    async def apply(
        self,
        plan: Plan,
        retry: RetryConfig | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ApplyResult:
        """Apply without persistence; use a Reconciler for locked, stored runs."""
        from .executor import Executor

        executor = Executor(self, retry=retry, cancel_event=cancel_event)
        return await executor.apply(plan)

    async def destroy(self, resource_id: str) -> None:
        """Delete a single resource, bypassing planning.

        `resource_id` is a canonical key ("server:web-01") or a bare id when
        it is unambiguous.
        """
        observed = await self.get_state()
        target = self._find(observed, resource_id)
        if target is None:
            raise ResourceNotFound(resource_id)
        logger.info(
            "Destroying resource",
            extra={"provider": self.name, "resource": target.key},
        )
        await self.execute(
            Action.build(ActionType.DELETE, target.resource_type, target.name,
                         native_id=target.id)
        )

    async def destroy_all(
        self,
        retry: RetryConfig | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ApplyResult:
        from .planner import Planner

        observed = await self.get_state()
        plan = Planner().plan_destroy(self, observed)
        return await self.apply(plan, retry=retry, cancel_event=cancel_event)

    async def close(self) -> None:
        """Release clients held by the provider."""
        return None

    @staticmethod
    def _find(observed: ProviderState, resource_id: str) -> ResourceState | None:
        if ":" in resource_id:
            return observed.get(resource_id)
        matches = [r for r in observed if r.name == resource_id or r.id == resource_id]
        if len(matches) > 1:
            raise InvalidConfig(
                f"'{resource_id}' is ambiguous; use one of "
                f"{', '.join(sorted(resource_key(r.resource_type, r.name) for r in matches))}"
            )
        return matches[0] if matches else None


ProviderFactory = Callable[..., CloudProvider]


@dataclass
class ProviderRegistry:
    """Name to factory mapping for backends."""

    factories: dict[str, ProviderFactory] = field(default_factory=dict)

    def register(self, name: str, factory: ProviderFactory) -> None:
        self.factories[name] = factory

    def create(self, name: str, **settings: Any) -> CloudProvider:
        factory = self.factories.get(name)
        if factory is None:
            raise ProviderNotFound(name)
        return factory(**settings)

    def names(self) -> list[str]:
        return sorted(self.factories)

    def __contains__(self, name: object) -> bool:
        return name in self.factories


def default_registry() -> ProviderRegistry:
    """Registry with the built-in backends."""
    from .cloudflare import CloudflareProvider
    from .sakura import SakuraCloudProvider

    registry = ProviderRegistry()
    registry.register(SakuraCloudProvider.name, SakuraCloudProvider.from_settings)
    registry.register(CloudflareProvider.name, CloudflareProvider.from_settings)
    return registry
