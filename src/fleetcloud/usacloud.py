"""Async wrapper around the `usacloud` CLI for Sakura Cloud.

Every call runs `usacloud --zone <zone> <args...>` as a subprocess and
parses its JSON output into pydantic models. Failures surface as the
CloudErrors raised by `commands.run_command`.
"""

from __future__ import annotations

import json
import logging
import shutil
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from .commands import run_command
from .config import DEFAULT_COMMAND_TIMEOUT_SECONDS
from .errors import ApiError

logger = logging.getLogger(__name__)

USACLOUD_BINARY = "usacloud"
INSTALL_HINT = "usacloud not found. Install it from https://docs.usacloud.jp/usacloud/installation/"


class _UsacloudModel(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}


class AccountInfo(_UsacloudModel):
    id: str = Field(alias="ID")
    name: str = Field(alias="Name")

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> str:
        return str(v)


class AuthInfo(_UsacloudModel):
    account: AccountInfo | None = Field(default=None, alias="Account")


class InterfaceInfo(_UsacloudModel):
    ip_address: str | None = Field(default=None, alias="IPAddress")


class ServerInfo(_UsacloudModel):
    """One entry of `server list --output-type json`."""

    id: str = Field(alias="ID")
    name: str = Field(alias="Name")
    cpu: int | None = Field(default=None, alias="CPU")
    memory_mb: int | None = Field(default=None, alias="MemoryMB")
    instance_status: str | None = Field(default=None, alias="InstanceStatus")
    interfaces: list[InterfaceInfo] = Field(default_factory=list, alias="Interfaces")
    tags: list[str] = Field(default_factory=list, alias="Tags")

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> str:
        return str(v)

    @field_validator("interfaces", "tags", mode="before")
    @classmethod
    def none_to_empty(cls, v: Any) -> Any:
        return v or []

    @property
    def ip_address(self) -> str | None:
        return next((i.ip_address for i in self.interfaces if i.ip_address), None)

    @property
    def is_running(self) -> bool:
        return self.instance_status == "up"

    @property
    def memory_gb(self) -> int | None:
        return self.memory_mb // 1024 if self.memory_mb is not None else None


class SshKeyInfo(_UsacloudModel):
    id: str = Field(alias="ID")
    name: str = Field(alias="Name")

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> str:
        return str(v)


class NoteInfo(_UsacloudModel):
    """A saved startup script (usacloud "note")."""

    id: str = Field(alias="ID")
    name: str = Field(alias="Name")

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> str:
        return str(v)


class Usacloud:
    """usacloud invocations bound to one zone."""

    def __init__(
        self,
        zone: str,
        binary: str = USACLOUD_BINARY,
        timeout_seconds: float = DEFAULT_COMMAND_TIMEOUT_SECONDS,
    ) -> None:
        self.zone = zone
        self.binary = binary
        self.timeout_seconds = timeout_seconds

    def is_installed(self) -> bool:
        return shutil.which(self.binary) is not None

    async def run(self, *args: str) -> str:
        """Run `usacloud --zone <zone> <args>` and return its stdout."""
        return await run_command(
            [self.binary, "--zone", self.zone, *args],
            timeout=self.timeout_seconds,
            not_found_message=INSTALL_HINT,
        )

    async def run_json(self, *args: str) -> Any:
        output = await self.run(*args, "--output-type", "json")
        if not output.strip():
            return None
        try:
            return json.loads(output)
        except json.JSONDecodeError as e:
            raise ApiError(
                f"usacloud returned invalid JSON for '{' '.join(args)}': {e}",
                transient=False,
            ) from e

    async def auth_status(self) -> AuthInfo:
        data = await self.run_json("auth-status")
        return _parse(AuthInfo, data or {})

    async def list_servers(self) -> list[ServerInfo]:
        data = await self.run_json("server", "list")
        return [_parse(ServerInfo, item) for item in data or []]

    async def create_server(
        self,
        name: str,
        core: int,
        memory: int,
        disk_size: int | None = None,
        os_type: str | None = None,
        ssh_key_ids: list[str] | None = None,
        note_ids: list[str] | None = None,
        tags: list[str] | None = None,
    ) -> ServerInfo:
        args = [
            "server", "create",
            "--name", name,
            "--core", str(core),
            "--memory", str(memory),
            "--yes",
        ]
        if disk_size is not None:
            args += ["--disk-size", str(disk_size)]
        if os_type:
            args += ["--os-type", os_type]
        for key_id in ssh_key_ids or []:
            args += ["--disk-edit-ssh-key-id", key_id]
        for note_id in note_ids or []:
            args += ["--disk-edit-note-id", note_id]
        for tag in tags or []:
            args += ["--tags", tag]
        data = await self.run_json(*args)
        # Some usacloud versions wrap single results in a list
        if isinstance(data, list):
            data = data[0] if data else {}
        return _parse(ServerInfo, data or {})

    async def change_plan(self, server_id: str, core: int, memory: int) -> ServerInfo:
        data = await self.run_json(
            "server", "plan-change", server_id,
            "--core", str(core),
            "--memory", str(memory),
            "--yes",
        )
        if isinstance(data, list):
            data = data[0] if data else {}
        return _parse(ServerInfo, data or {})

    async def delete_server(self, server_id: str, with_disks: bool = True) -> None:
        args = ["server", "delete", server_id, "--yes"]
        if with_disks:
            args.append("--with-disks")
        await self.run(*args)

    async def list_ssh_keys(self) -> list[SshKeyInfo]:
        data = await self.run_json("ssh-key", "list")
        return [_parse(SshKeyInfo, item) for item in data or []]

    async def list_notes(self) -> list[NoteInfo]:
        data = await self.run_json("note", "list")
        return [_parse(NoteInfo, item) for item in data or []]


def _parse(model: type[_UsacloudModel], data: Any) -> Any:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ApiError(
            f"Unexpected usacloud output for {model.__name__}: {e}", transient=False
        ) from e
