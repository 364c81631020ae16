"""Desired resource model.

A ResourceSet is the fully resolved desired world for one reconciliation
run. Resources are addressed by the canonical key "{resource_type}:{id}";
adding a resource whose key already exists replaces the earlier entry
(last write wins), so a set never holds duplicates.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any

from .errors import InvalidConfig


def resource_key(resource_type: str, resource_id: str) -> str:
    """Canonical lookup key for a resource."""
    return f"{resource_type}:{resource_id}"


def split_key(key: str) -> tuple[str, str]:
    """Split a canonical key into (resource_type, id).

    Types never contain ":", so the first colon is the separator and ids
    may contain colons of their own.
    """
    resource_type, sep, resource_id = key.partition(":")
    if not sep or not resource_type or not resource_id:
        raise ValueError(f"Not a resource key: {key!r}")
    return resource_type, resource_id


@dataclass(frozen=True)
class ResourceConfig:
    """One desired resource.

    Attributes:
        resource_type: Type tag understood by the owning provider ("server", ...).
        id: Identifier, unique within its type.
        provider: Name of the backend that owns this resource.
        config: Opaque payload interpreted by the provider.
    """

    resource_type: str
    id: str
    provider: str
    config: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.resource_type or ":" in self.resource_type:
            raise InvalidConfig(
                f"Invalid resource type {self.resource_type!r}: must be non-empty without ':'",
                {"resource_type": self.resource_type},
            )
        if not self.id:
            raise InvalidConfig(
                f"Resource of type '{self.resource_type}' has an empty id",
                {"resource_type": self.resource_type},
            )

    @property
    def key(self) -> str:
        return resource_key(self.resource_type, self.id)

    def get_config(self, name: str, default: Any = None) -> Any:
        """Read a config value, falling back to `default` when unset."""
        return self.config.get(name, default)


class ResourceSet:
    """Mapping of canonical key to ResourceConfig."""

    def __init__(self, resources: Iterable[ResourceConfig] = ()) -> None:
        self._resources: dict[str, ResourceConfig] = {}
        for resource in resources:
            self.add(resource)

    def add(self, resource: ResourceConfig) -> None:
        """Add a resource; an existing entry with the same key is replaced."""
        self._resources[resource.key] = resource

    def get(self, resource_type: str, resource_id: str) -> ResourceConfig | None:
        return self._resources.get(resource_key(resource_type, resource_id))

    def keys(self) -> list[str]:
        return list(self._resources)

    def by_type(self, resource_type: str) -> list[ResourceConfig]:
        return [r for r in self._resources.values() if r.resource_type == resource_type]

    def by_provider(self, provider: str) -> ResourceSet:
        """Subset owned by one provider."""
        return ResourceSet(r for r in self._resources.values() if r.provider == provider)

    def providers(self) -> list[str]:
        return sorted({r.provider for r in self._resources.values()})

    def __contains__(self, key: object) -> bool:
        return key in self._resources

    def __iter__(self) -> Iterator[ResourceConfig]:
        return iter(self._resources.values())

    def __len__(self) -> int:
        return len(self._resources)

    def __repr__(self) -> str:
        return f"ResourceSet({sorted(self._resources)})"
