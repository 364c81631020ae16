"""Cloudflare provider: R2 buckets via wrangler, DNS records via the HTTP API.

Resource ids:
- r2-bucket: the bucket name.
- dns-record: "<name>/<TYPE>", the record name relative to the zone domain
  plus its record type ("www/A", "@/TXT"). A name can carry several record
  types, so the type is part of the identity.

DNS support is enabled when an API token, zone id and domain are all
configured; R2 support when wrangler is installed. Buckets have no
updatable attributes, so they are only ever created or deleted.
"""

from __future__ import annotations

import logging
import os
from typing import Any

from .actions import Action, ActionType
from .cloudflare_dns import CloudflareDns, DnsRecord
from .config import DEFAULT_COMMAND_TIMEOUT_SECONDS
from .errors import AuthenticationFailed, CloudError, InvalidConfig, ResourceNotFound
from .models import (
    CloudflareSettings,
    DnsRecordSpec,
    parse_provider_settings,
    parse_resource_config,
)
from .normalizer import DiffNormalizer
from .provider import AuthStatus, CloudProvider
from .resources import ResourceConfig
from .state import ProviderState, ResourceState, ResourceStatus, utcnow
from .wrangler import Wrangler

logger = logging.getLogger(__name__)

R2_BUCKET = "r2-bucket"
DNS_RECORD = "dns-record"
MANAGED_RECORD_TYPES = frozenset({"A", "AAAA", "CNAME", "TXT", "MX"})


def record_resource_id(name: str, record_type: str) -> str:
    return f"{name}/{record_type.upper()}"


def split_record_id(resource_id: str) -> tuple[str, str]:
    """Split "www/A" into ("www", "A").

    Raises:
        InvalidConfig: If the id has no record type suffix.
    """
    name, sep, record_type = resource_id.rpartition("/")
    if not sep or not name or not record_type:
        raise InvalidConfig(
            f"DNS record id '{resource_id}' must look like '<name>/<TYPE>', e.g. 'www/A'",
            {"resource": f"{DNS_RECORD}:{resource_id}"},
        )
    return name, record_type.upper()


def record_spec(resource_id: str, config: dict[str, Any]) -> DnsRecordSpec:
    """Validated record config; `type` defaults to the id's type and must agree with it."""
    _, record_type = split_record_id(resource_id)
    spec: DnsRecordSpec = parse_resource_config(
        DNS_RECORD, resource_id, {**config, "type": config.get("type", record_type)}
    )
    if spec.type != record_type:
        raise InvalidConfig(
            f"DNS record '{resource_id}' declares type {spec.type} in its config",
            {"resource": f"{DNS_RECORD}:{resource_id}"},
        )
    return spec


def record_to_state(dns: CloudflareDns, record: DnsRecord) -> ResourceState:
    now = utcnow()
    return ResourceState(
        id=record.id,
        resource_type=DNS_RECORD,
        name=record_resource_id(dns.record_id(record.name), record.record_type),
        status=ResourceStatus.ACTIVE,
        attributes={
            "type": record.record_type,
            "content": record.content,
            "ttl": record.ttl,
            "proxied": record.proxied,
        },
        created_at=now,
        updated_at=now,
    )


class CloudflareProvider(CloudProvider):
    """R2 buckets and DNS records on Cloudflare."""

    name = "cloudflare"
    display_name = "Cloudflare"
    supported_resource_types = frozenset({R2_BUCKET, DNS_RECORD})

    def __init__(
        self,
        account_id: str | None = None,
        wrangler: Wrangler | None = None,
        dns: CloudflareDns | None = None,
        *,
        command_timeout_seconds: float = DEFAULT_COMMAND_TIMEOUT_SECONDS,
        normalizer: DiffNormalizer | None = None,
        unmanaged_resource_types: tuple[str, ...] | list[str] = (),
    ) -> None:
        super().__init__(normalizer=normalizer, unmanaged_resource_types=unmanaged_resource_types)
        self.account_id = account_id
        self.wrangler = wrangler or Wrangler(account_id, timeout_seconds=command_timeout_seconds)
        self.dns = dns

    @classmethod
    def from_settings(cls, **settings: Any) -> CloudflareProvider:
        """Build from resource file settings.

        Missing values fall back to CLOUDFLARE_ACCOUNT_ID, CLOUDFLARE_API_TOKEN,
        CLOUDFLARE_ZONE_ID and CLOUDFLARE_DOMAIN.
        """
        timeout = settings.pop("command_timeout_seconds", DEFAULT_COMMAND_TIMEOUT_SECONDS)
        parsed: CloudflareSettings = parse_provider_settings(CloudflareSettings, cls.name, settings)

        account_id = parsed.account_id or os.environ.get("CLOUDFLARE_ACCOUNT_ID")
        api_token = parsed.api_token or os.environ.get("CLOUDFLARE_API_TOKEN")
        zone_id = parsed.zone_id or os.environ.get("CLOUDFLARE_ZONE_ID")
        domain = parsed.domain or os.environ.get("CLOUDFLARE_DOMAIN")

        dns = None
        if api_token and zone_id and domain:
            dns = CloudflareDns(api_token, zone_id, domain, timeout=float(timeout))

        return cls(
            account_id=account_id,
            dns=dns,
            command_timeout_seconds=timeout,
            unmanaged_resource_types=parsed.unmanaged_resource_types,
        )

    async def check_auth(self) -> AuthStatus:
        parts: list[str] = []

        if self.dns is not None:
            try:
                status = await self.dns.verify_token()
            except CloudError as e:
                return AuthStatus.failed(f"Cloudflare API token check failed: {e}")
            parts.append(f"zone {self.dns.domain} (token {status})")

        if self.wrangler.is_installed():
            try:
                account = await self.wrangler.whoami()
            except CloudError as e:
                return AuthStatus.failed(str(e))
            if account is None:
                return AuthStatus.failed("wrangler is not authenticated; run 'wrangler login'")
            parts.append(f"account {account}")
        elif self.dns is None:
            return AuthStatus.failed(
                "Neither wrangler nor DNS API credentials are available "
                "(set CLOUDFLARE_API_TOKEN, CLOUDFLARE_ZONE_ID and CLOUDFLARE_DOMAIN)"
            )

        return AuthStatus.ok(", ".join(parts))

    async def get_state(self) -> ProviderState:
        state = ProviderState()

        if self.wrangler.is_installed():
            now = utcnow()
            for bucket in await self.wrangler.list_buckets():
                state.add(
                    ResourceState(
                        id=bucket.name,
                        resource_type=R2_BUCKET,
                        name=bucket.name,
                        status=ResourceStatus.ACTIVE,
                        created_at=now,
                        updated_at=now,
                    )
                )

        if self.dns is not None:
            for record in await self.dns.list_records():
                if record.record_type.upper() not in MANAGED_RECORD_TYPES:
                    continue
                resource = record_to_state(self.dns, record)
                if resource.key in state:
                    logger.warning(
                        "Multiple DNS records share a name and type, keeping the last one",
                        extra={"record": record.name, "record_id": record.id},
                    )
                state.add(resource)

        return state

    def validate(self, resource: ResourceConfig) -> None:
        super().validate(resource)
        if resource.resource_type != DNS_RECORD:
            parse_resource_config(resource.resource_type, resource.id, resource.config)
            return
        if self.dns is None:
            raise InvalidConfig(
                f"Resource '{resource.key}' needs DNS API access; set api_token, zone_id "
                "and domain for the cloudflare provider",
                {"resource": resource.key},
            )
        record_spec(resource.id, resource.config)

    def comparable_config(self, resource: ResourceConfig) -> dict[str, Any]:
        if resource.resource_type != DNS_RECORD:
            return {}
        return record_spec(resource.id, resource.config).model_dump()

    async def execute(self, action: Action) -> ResourceState | None:
        if action.resource_type == R2_BUCKET:
            return await self._execute_bucket(action)
        if action.resource_type == DNS_RECORD:
            return await self._execute_record(action)
        raise InvalidConfig(f"Unsupported resource type: {action.resource_type}")

    async def _execute_bucket(self, action: Action) -> ResourceState | None:
        match action.action_type:
            case ActionType.CREATE:
                location = (action.details.get("config") or {}).get("location")
                bucket = await self.wrangler.create_bucket(action.resource_id, location)
                now = utcnow()
                return ResourceState(
                    id=bucket.name,
                    resource_type=R2_BUCKET,
                    name=bucket.name,
                    status=ResourceStatus.ACTIVE,
                    created_at=now,
                    updated_at=now,
                )
            case ActionType.DELETE:
                await self.wrangler.delete_bucket(action.resource_id)
                return None
            case _:
                return None

    async def _execute_record(self, action: Action) -> ResourceState | None:
        dns = self._require_dns()
        if action.action_type == ActionType.DELETE:
            await dns.delete_record(await self._record_native_id(dns, action))
            return None
        if action.action_type not in (ActionType.CREATE, ActionType.UPDATE):
            return None

        name, _ = split_record_id(action.resource_id)
        spec = record_spec(action.resource_id, action.details.get("config") or {})
        if action.action_type == ActionType.CREATE:
            record = await dns.create_record(name, spec.type, spec.content, spec.ttl, spec.proxied)
        else:
            record = await dns.update_record(
                await self._record_native_id(dns, action),
                type=spec.type,
                content=spec.content,
                ttl=spec.ttl,
                proxied=spec.proxied,
            )
        return record_to_state(dns, record)

    async def _record_native_id(self, dns: CloudflareDns, action: Action) -> str:
        native_id = action.details.get("native_id")
        if native_id:
            return str(native_id)
        name, record_type = split_record_id(action.resource_id)
        record = await dns.find_record(name, record_type)
        if record is None:
            raise ResourceNotFound(f"{DNS_RECORD}:{action.resource_id}")
        return record.id

    def _require_dns(self) -> CloudflareDns:
        if self.dns is None:
            raise AuthenticationFailed("Cloudflare DNS API credentials are not configured")
        return self.dns

    async def close(self) -> None:
        if self.dns is not None:
            await self.dns.aclose()
