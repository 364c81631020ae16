"""Async wrapper around the `wrangler` CLI for Cloudflare R2 buckets."""

from __future__ import annotations

import json
import logging
import shutil
from dataclasses import dataclass

from .commands import run_command
from .config import DEFAULT_COMMAND_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

WRANGLER_BINARY = "wrangler"
INSTALL_HINT = "wrangler not found. Install it with: npm install -g wrangler"
NOT_AUTHENTICATED_MARKER = "not authenticated"


@dataclass(frozen=True)
class R2Bucket:
    name: str
    creation_date: str | None = None


def parse_bucket_list(output: str) -> list[R2Bucket]:
    """Parse `wrangler r2 bucket list` output.

    Older wrangler releases print a JSON array; current ones print blocks of
    `name:` / `creation_date:` lines separated by blank lines.
    """
    text = output.strip()
    if text.startswith("["):
        return [
            R2Bucket(name=item["name"], creation_date=item.get("creation_date"))
            for item in json.loads(text)
        ]

    buckets: list[R2Bucket] = []
    name: str | None = None
    created: str | None = None
    for line in text.splitlines() + [""]:
        key, sep, value = line.partition(":")
        if not line.strip():
            if name:
                buckets.append(R2Bucket(name=name, creation_date=created))
            name, created = None, None
        elif sep and key.strip() == "name":
            name = value.strip()
        elif sep and key.strip() == "creation_date":
            created = value.strip()
    return buckets


class Wrangler:
    """wrangler invocations bound to one account."""

    def __init__(
        self,
        account_id: str | None = None,
        binary: str = WRANGLER_BINARY,
        timeout_seconds: float = DEFAULT_COMMAND_TIMEOUT_SECONDS,
    ) -> None:
        self.account_id = account_id
        self.binary = binary
        self.timeout_seconds = timeout_seconds

    def is_installed(self) -> bool:
        return shutil.which(self.binary) is not None

    async def run(self, *args: str) -> str:
        env = {"CLOUDFLARE_ACCOUNT_ID": self.account_id} if self.account_id else None
        return await run_command(
            [self.binary, *args],
            timeout=self.timeout_seconds,
            env=env,
            not_found_message=INSTALL_HINT,
        )

    async def whoami(self) -> str | None:
        """Account description, or None when not logged in."""
        output = await self.run("whoami")
        if NOT_AUTHENTICATED_MARKER in output.lower():
            return None
        return self.account_id or "authenticated"

    async def list_buckets(self) -> list[R2Bucket]:
        return parse_bucket_list(await self.run("r2", "bucket", "list"))

    async def create_bucket(self, name: str, location: str | None = None) -> R2Bucket:
        args = ["r2", "bucket", "create", name]
        if location:
            args += ["--location", location]
        await self.run(*args)
        return R2Bucket(name=name)

    async def delete_bucket(self, name: str) -> None:
        await self.run("r2", "bucket", "delete", name)
