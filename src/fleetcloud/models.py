"""Pydantic models for the resource file and per-type resource configs.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Normalized values for provider calls and comparison
"""

from __future__ import annotations

import re
from typing import Annotated, Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import InvalidConfig

VALID_ID_PATTERN = r"^[A-Za-z0-9@_][A-Za-z0-9_.@/-]{0,62}$"
PLAN_PATTERN = re.compile(r"^(\d+)core-(\d+)gb$", re.IGNORECASE)

DEFAULT_SERVER_CORE = 1
DEFAULT_SERVER_MEMORY_GB = 1


def format_validation_error(e: ValidationError, source: str) -> str:
    """One line per field error, prefixed with its location."""
    lines = []
    for error in e.errors():
        loc = ".".join(str(x) for x in error["loc"])
        lines.append(f"  - {loc}: {error['msg']}")
    return f"Validation failed for {source}:\n" + "\n".join(lines)


def parse_plan(plan: str | None) -> tuple[int, int]:
    """Parse a plan string like "2core-4gb" into (core, memory_gb).

    Unparseable or missing plans fall back to 1 core / 1 GB.
    """
    if plan:
        match = PLAN_PATTERN.match(plan.strip())
        if match:
            return int(match.group(1)), int(match.group(2))
    return DEFAULT_SERVER_CORE, DEFAULT_SERVER_MEMORY_GB


# =============================================================================
# Resource File
# =============================================================================


class ResourceEntry(BaseModel):
    """One resource declaration in the resource file."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    resource_type: Annotated[str, Field(min_length=1, alias="type")]
    id: str
    provider: Annotated[str, Field(min_length=1)]
    config: dict[str, Any] = Field(default_factory=dict)

    @field_validator("resource_type")
    @classmethod
    def validate_resource_type(cls, v: str) -> str:
        if ":" in v:
            raise ValueError("type must not contain ':'")
        return v

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        if not re.match(VALID_ID_PATTERN, v):
            raise ValueError(f"id must match pattern {VALID_ID_PATTERN}")
        return v

    @field_validator("config", mode="before")
    @classmethod
    def none_to_empty(cls, v: Any) -> Any:
        return v if v is not None else {}


class CloudFile(BaseModel):
    """Top-level resource file.

    Example:
        providers:
          sakura-cloud: {zone: tk1a}
        resources:
          - {type: server, id: web-01, provider: sakura-cloud, config: {plan: 2core-4gb}}
    """

    model_config = {"extra": "ignore"}

    providers: dict[str, dict[str, Any]] = Field(default_factory=dict)
    resources: list[ResourceEntry] = Field(default_factory=list)

    @field_validator("providers", mode="before")
    @classmethod
    def normalize_providers(cls, v: Any) -> Any:
        if v is None:
            return {}
        if isinstance(v, dict):
            return {name: settings or {} for name, settings in v.items()}
        return v


# =============================================================================
# Provider Settings
# =============================================================================


class ProviderSettings(BaseModel):
    """Settings shared by every provider."""

    model_config = {"extra": "ignore"}

    # Resource types never scheduled for deletion
    unmanaged_resource_types: list[str] = Field(default_factory=list)


class SakuraSettings(ProviderSettings):
    zone: Annotated[str, Field(min_length=1)] = "tk1a"


class CloudflareSettings(ProviderSettings):
    account_id: str | None = None
    zone_id: str | None = None
    domain: str | None = None
    api_token: str | None = None


# =============================================================================
# Resource Configs
# =============================================================================


class ServerSpec(BaseModel):
    """Sakura Cloud server.

    `plan` ("2core-4gb") is a shorthand; explicit `core`/`memory` win over it.
    """

    model_config = {"extra": "ignore"}

    plan: str | None = None
    core: Annotated[int, Field(ge=1, le=128)] | None = None
    memory: Annotated[int, Field(ge=1, le=512)] | None = None
    disk_size: Annotated[int, Field(ge=20, le=4096)] | None = None
    os: str | None = None
    ssh_keys: list[str] = Field(default_factory=list)
    startup_scripts: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)

    @field_validator("plan")
    @classmethod
    def validate_plan(cls, v: str | None) -> str | None:
        if v is not None and not PLAN_PATTERN.match(v.strip()):
            raise ValueError("plan must look like '2core-4gb'")
        return v

    def resolved_plan(self) -> tuple[int, int]:
        core, memory = parse_plan(self.plan)
        return self.core or core, self.memory or memory


class DnsRecordSpec(BaseModel):
    """Cloudflare DNS record.

    The resource id is "<name>/<TYPE>" with the name relative to the zone
    domain; `type` may be omitted and then comes from the id.
    """

    model_config = {"extra": "ignore"}

    type: str = "A"
    content: Annotated[str, Field(min_length=1)]
    ttl: Annotated[int, Field(ge=1, le=86400)] = 1
    proxied: bool = False

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        valid_types = {"A", "AAAA", "CNAME", "TXT", "MX"}
        if v.upper() not in valid_types:
            raise ValueError(f"type must be one of {sorted(valid_types)}")
        return v.upper()


class R2BucketSpec(BaseModel):
    """Cloudflare R2 bucket. The resource id is the bucket name."""

    model_config = {"extra": "ignore"}

    location: str | None = None


RESOURCE_SPEC_REGISTRY: dict[str, type[BaseModel]] = {
    "server": ServerSpec,
    "dns-record": DnsRecordSpec,
    "r2-bucket": R2BucketSpec,
}


def get_resource_spec_class(resource_type: str) -> type[BaseModel]:
    """Get the config model for a resource type.

    Raises:
        InvalidConfig: If the resource type is not recognized.
    """
    spec_class = RESOURCE_SPEC_REGISTRY.get(resource_type)
    if spec_class is None:
        raise InvalidConfig(
            f"Unknown resource type '{resource_type}'. "
            f"Valid types: {sorted(RESOURCE_SPEC_REGISTRY)}"
        )
    return spec_class


def parse_resource_config(resource_type: str, resource_id: str, config: dict[str, Any]) -> Any:
    """Validate a resource's config against its type model.

    Raises:
        InvalidConfig: With one line per field error.
    """
    spec_class = get_resource_spec_class(resource_type)
    try:
        return spec_class.model_validate(config)
    except ValidationError as e:
        raise InvalidConfig(
            format_validation_error(e, f"{resource_type}:{resource_id}"),
            {"resource": f"{resource_type}:{resource_id}"},
        ) from e


def parse_provider_settings(model: type[ProviderSettings], name: str, data: dict[str, Any]) -> Any:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise InvalidConfig(
            format_validation_error(e, f"provider '{name}'"), {"provider": name}
        ) from e
