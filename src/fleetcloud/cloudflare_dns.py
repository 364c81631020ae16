"""Cloudflare DNS records over the v4 HTTP API.

Every response uses the envelope {success, errors[{code, message}], result};
`success: false` is an ApiError carrying the first error message. Transport
failures and 429/5xx responses are transient, 401/403 are authentication
failures, and other 4xx responses are permanent errors.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import BaseModel, Field, ValidationError

from .errors import ApiError, AuthenticationFailed, OperationTimeout

logger = logging.getLogger(__name__)

CLOUDFLARE_API_BASE = "https://api.cloudflare.com/client/v4"
DEFAULT_TIMEOUT_SECONDS = 30.0
PAGE_SIZE = 100
DEFAULT_USER_AGENT = "fleetcloud-cloudflare/0.1.0"


class DnsRecord(BaseModel):
    """A record as returned by the API."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    id: str
    name: str
    record_type: str = Field(alias="type")
    content: str
    ttl: int = 1
    proxied: bool = False


class CloudflareDns:
    """DNS record operations for one zone."""

    def __init__(
        self,
        api_token: str,
        zone_id: str,
        domain: str,
        *,
        base_url: str = CLOUDFLARE_API_BASE,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.zone_id = zone_id
        self.domain = domain.rstrip(".").lower()
        self._base_url = base_url.rstrip("/")
        self._api_token = api_token
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def full_name(self, record_id: str) -> str:
        """Record name for a resource id ("www" -> "www.example.com", "@" -> apex)."""
        if record_id == "@":
            return self.domain
        return f"{record_id}.{self.domain}"

    def record_id(self, full_name: str) -> str:
        """Resource id for a record name (inverse of full_name)."""
        name = full_name.rstrip(".").lower()
        if name == self.domain:
            return "@"
        suffix = f".{self.domain}"
        if name.endswith(suffix):
            return name[: -len(suffix)]
        return name

    async def verify_token(self) -> str:
        data = await self._request("GET", "/user/tokens/verify")
        result = data.get("result") or {}
        return str(result.get("status", "unknown"))

    async def list_records(self) -> list[DnsRecord]:
        records: list[DnsRecord] = []
        page = 1
        while True:
            data = await self._request(
                "GET",
                f"/zones/{self.zone_id}/dns_records",
                params={"page": page, "per_page": PAGE_SIZE},
            )
            records.extend(_parse_record(item) for item in data.get("result") or [])
            info = data.get("result_info") or {}
            if page >= int(info.get("total_pages", 1) or 1):
                return records
            page += 1

    async def find_record(self, record_id: str, record_type: str = "A") -> DnsRecord | None:
        data = await self._request(
            "GET",
            f"/zones/{self.zone_id}/dns_records",
            params={"type": record_type, "name": self.full_name(record_id)},
        )
        results = data.get("result") or []
        return _parse_record(results[0]) if results else None

    async def create_record(
        self,
        record_id: str,
        record_type: str,
        content: str,
        ttl: int = 1,
        proxied: bool = False,
    ) -> DnsRecord:
        data = await self._request(
            "POST",
            f"/zones/{self.zone_id}/dns_records",
            json={
                "type": record_type,
                "name": self.full_name(record_id),
                "content": content,
                "ttl": ttl,
                "proxied": proxied,
            },
        )
        return _parse_record(data.get("result"))

    async def update_record(self, native_id: str, **fields: Any) -> DnsRecord:
        data = await self._request(
            "PATCH", f"/zones/{self.zone_id}/dns_records/{native_id}", json=fields
        )
        return _parse_record(data.get("result"))

    async def delete_record(self, native_id: str) -> None:
        await self._request("DELETE", f"/zones/{self.zone_id}/dns_records/{native_id}")

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True

        headers = kwargs.pop("headers", {}) or {}
        headers.setdefault("Authorization", f"Bearer {self._api_token}")
        headers.setdefault("Content-Type", "application/json")
        headers.setdefault("User-Agent", DEFAULT_USER_AGENT)

        url = f"{self._base_url}{path}"
        logger.debug("Cloudflare API request", extra={"method": method, "path": path})
        try:
            response = await self._client.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise OperationTimeout(f"Cloudflare API timed out: {method} {path}") from e
        except httpx.HTTPError as e:
            raise ApiError(f"Cloudflare API request failed: {method} {path}: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        status = response.status_code
        if status in (401, 403):
            raise AuthenticationFailed(
                f"Cloudflare API rejected the token ({status}): {_first_error(data)}"
            )
        if not response.is_success or not data.get("success", False):
            raise ApiError(
                f"Cloudflare API error ({status}) on {method} {path}: {_first_error(data)}",
                status_code=status,
                details={"errors": data.get("errors", [])},
                transient=status == 429 or status >= 500,
            )
        return data


def _first_error(data: dict[str, Any]) -> str:
    errors = data.get("errors") or []
    if errors and isinstance(errors[0], dict):
        return str(errors[0].get("message", "Unknown error"))
    return "Unknown error"


def _parse_record(data: Any) -> DnsRecord:
    try:
        return DnsRecord.model_validate(data)
    except ValidationError as e:
        raise ApiError(f"Unexpected DNS record payload: {e}", transient=False) from e
