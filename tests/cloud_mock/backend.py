"""In-memory backend state with failure injection.

Stands in for a real cloud account: resources live in a dict keyed by
canonical key, every mutating call is logged, and tests can make specific
keys fail permanently or a given number of times.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import Any

from fleetcloud.errors import ApiError, CloudError

_native_ids = itertools.count(1000)


@dataclass
class MockResource:
    """A resource held by the mock backend."""

    resource_type: str
    name: str
    attributes: dict[str, Any] = field(default_factory=dict)
    native_id: str = field(default_factory=lambda: f"mock-{next(_native_ids)}")
    externally_managed: bool = False

    @property
    def key(self) -> str:
        return f"{self.resource_type}:{self.name}"


@dataclass
class _Failure:
    error: CloudError
    remaining: int | None  # None = fail forever


class MockBackend:
    """Resources plus failure rules for one mock provider."""

    def __init__(self, resources: list[MockResource] | None = None) -> None:
        self.resources: dict[str, MockResource] = {}
        self.calls: list[tuple[str, str]] = []
        self._failures: dict[str, _Failure] = {}
        for resource in resources or []:
            self.put(resource)

    def put(self, resource: MockResource) -> MockResource:
        self.resources[resource.key] = resource
        return resource

    def add(
        self,
        resource_type: str,
        name: str,
        externally_managed: bool = False,
        **attributes: Any,
    ) -> MockResource:
        """Pre-populate a resource as if it existed in the cloud."""
        return self.put(
            MockResource(
                resource_type=resource_type,
                name=name,
                attributes=attributes,
                externally_managed=externally_managed,
            )
        )

    def fail_always(self, key: str, error: CloudError | None = None) -> None:
        """Every mutating call on `key` fails with a permanent error."""
        self._failures[key] = _Failure(
            error or ApiError(f"Injected permanent failure for {key}", transient=False),
            None,
        )

    def fail_times(self, key: str, times: int, error: CloudError | None = None) -> None:
        """The next `times` mutating calls on `key` fail, then calls succeed."""
        self._failures[key] = _Failure(
            error or ApiError(f"Injected transient failure for {key}"), times
        )

    def clear_failures(self) -> None:
        self._failures.clear()

    def record_call(self, operation: str, key: str) -> None:
        """Log the call and raise if a failure rule matches."""
        self.calls.append((operation, key))
        failure = self._failures.get(key)
        if failure is None:
            return
        if failure.remaining is not None:
            if failure.remaining <= 0:
                return
            failure.remaining -= 1
        raise failure.error

    def call_count(self, operation: str | None = None) -> int:
        return sum(1 for op, _ in self.calls if operation is None or op == operation)

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Attributes by key, for assertions."""
        return {key: dict(r.attributes) for key, r in sorted(self.resources.items())}
