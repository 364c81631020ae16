"""In-memory cloud for engine tests.

Provides a CloudProvider backed by a dict so planning, execution, locking
and persistence can be exercised without any real backend.

Key Features:
- In-memory resources with provider-native ids
- Permanent and N-times transient failure injection per resource key
- Call log for asserting which backend operations ran
- Externally managed resources

Usage:
    from cloud_mock import MockBackend, MockProvider, resource

    backend = MockBackend()
    backend.add("server", "old", core=1)
    provider = MockProvider(backend=backend)
    plan = await provider.plan(ResourceSet([resource("server", "web", core=2)]))
"""

from .backend import MockBackend, MockResource
from .provider import MOCK_RESOURCE_TYPES, MockProvider, resource

__all__ = [
    "MOCK_RESOURCE_TYPES",
    "MockBackend",
    "MockProvider",
    "MockResource",
    "resource",
]
