"""Observed and persisted state types.

ProviderState is what a backend reports right now. ProviderRecord is the
durable copy of it kept by the state store, with a serial that increases on
every save. GlobalState aggregates the records of all providers.

SERIALIZATION:
- `to_dict` output is plain JSON-compatible data.
- `from_dict` ignores unknown fields so records written by newer provider
  plugins still load.
- A record whose schema version is newer than STATE_VERSION is refused.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .errors import StateError
from .resources import resource_key

STATE_VERSION = 1


def utcnow() -> datetime:
    return datetime.now(UTC)


def _parse_time(value: Any) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def _format_time(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class ResourceStatus(str, Enum):
    """Lifecycle status reported by a backend."""

    ACTIVE = "active"
    CREATING = "creating"
    DELETING = "deleting"
    ERROR = "error"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> ResourceStatus:
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.UNKNOWN


@dataclass
class ResourceState:
    """One resource as observed in the backend.

    Attributes:
        id: Provider-native identifier (server ID, record ID, bucket name).
        resource_type: Type tag matching ResourceConfig.resource_type.
        name: Logical id matching ResourceConfig.id.
        status: Backend lifecycle status.
        attributes: Observed provider-specific values used for comparison.
        externally_managed: Never scheduled for deletion when True.
    """

    id: str
    resource_type: str
    name: str
    status: ResourceStatus = ResourceStatus.UNKNOWN
    attributes: dict[str, Any] = field(default_factory=dict)
    externally_managed: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def key(self) -> str:
        return resource_key(self.resource_type, self.name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "resource_type": self.resource_type,
            "name": self.name,
            "status": self.status.value,
            "attributes": self.attributes,
            "externally_managed": self.externally_managed,
            "created_at": _format_time(self.created_at),
            "updated_at": _format_time(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResourceState:
        try:
            return cls(
                id=str(data["id"]),
                resource_type=data["resource_type"],
                name=data["name"],
                status=ResourceStatus.parse(data.get("status", "unknown")),
                attributes=dict(data.get("attributes") or {}),
                externally_managed=bool(data.get("externally_managed", False)),
                created_at=_parse_time(data.get("created_at")),
                updated_at=_parse_time(data.get("updated_at")),
            )
        except (KeyError, TypeError) as e:
            raise StateError(f"Malformed resource state entry: {e}") from e


class ProviderState:
    """Snapshot of resources one provider currently has, keyed by canonical key."""

    def __init__(self, resources: Iterable[ResourceState] = ()) -> None:
        self._resources: dict[str, ResourceState] = {}
        for resource in resources:
            self.add(resource)

    def add(self, resource: ResourceState) -> None:
        self._resources[resource.key] = resource

    def get(self, key: str) -> ResourceState | None:
        return self._resources.get(key)

    def remove(self, key: str) -> ResourceState | None:
        return self._resources.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._resources)

    def copy(self) -> ProviderState:
        return ProviderState(self._resources.values())

    def __contains__(self, key: object) -> bool:
        return key in self._resources

    def __iter__(self) -> Iterator[ResourceState]:
        return iter(self._resources.values())

    def __len__(self) -> int:
        return len(self._resources)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ProviderState):
            return NotImplemented
        return self._resources == other._resources

    def to_dict(self) -> dict[str, Any]:
        return {key: self._resources[key].to_dict() for key in sorted(self._resources)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProviderState:
        return cls(ResourceState.from_dict(entry) for entry in data.values())


@dataclass
class ProviderRecord:
    """Durable per-provider record held by the state store.

    Attributes:
        provider: Provider name.
        state: Last persisted ProviderState.
        serial: Incremented on every save; 0 means never saved.
        updated_at: Time of the last save.
        lock_holder: Owner of the current lock, filled in on read.
    """

    provider: str
    state: ProviderState = field(default_factory=ProviderState)
    serial: int = 0
    updated_at: datetime | None = None
    lock_holder: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": STATE_VERSION,
            "provider": self.provider,
            "serial": self.serial,
            "updated_at": _format_time(self.updated_at),
            "resources": self.state.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProviderRecord:
        if not isinstance(data, dict):
            raise StateError("State record must be a JSON object")
        version = data.get("version", STATE_VERSION)
        if not isinstance(version, int) or version > STATE_VERSION:
            raise StateError(
                f"State record version {version} is newer than supported "
                f"version {STATE_VERSION}; upgrade fleetcloud"
            )
        if "provider" not in data:
            raise StateError("State record has no provider name")
        return cls(
            provider=data["provider"],
            state=ProviderState.from_dict(data.get("resources") or {}),
            serial=int(data.get("serial", 0)),
            updated_at=_parse_time(data.get("updated_at")),
        )


@dataclass
class GlobalState:
    """Cross-provider aggregate of persisted records."""

    version: int = STATE_VERSION
    updated_at: datetime | None = None
    providers: dict[str, ProviderRecord] = field(default_factory=dict)

    def get(self, provider: str) -> ProviderRecord | None:
        return self.providers.get(provider)

    def resource_count(self) -> int:
        return sum(len(record.state) for record in self.providers.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "updated_at": _format_time(self.updated_at),
            "providers": {
                name: {**record.to_dict(), "lock_holder": record.lock_holder}
                for name, record in sorted(self.providers.items())
            },
        }
