"""Sakura Cloud provider (resource type "server") backed by usacloud.

Servers are addressed by name: the resource id in the resource file is the
server name in Sakura Cloud. Only core count and memory are compared during
planning; disk, OS, SSH keys and startup scripts are applied at creation time
only. Startup scripts are referenced by the name of an existing usacloud
note.

Servers tagged `fleetcloud-external` are reported as externally managed and
are never scheduled for deletion.
"""

from __future__ import annotations

import logging
import os
from typing import Any

from .actions import Action, ActionType
from .config import DEFAULT_COMMAND_TIMEOUT_SECONDS
from .errors import CloudError, InvalidConfig, ResourceNotFound
from .models import SakuraSettings, ServerSpec, parse_provider_settings, parse_resource_config
from .normalizer import DiffNormalizer
from .provider import AuthStatus, CloudProvider
from .resources import ResourceConfig
from .state import ProviderState, ResourceState, ResourceStatus, utcnow
from .usacloud import INSTALL_HINT, ServerInfo, Usacloud

logger = logging.getLogger(__name__)

MANAGED_TAG = "managed-by=fleetcloud"
EXTERNAL_TAG = "fleetcloud-external"
INTERNAL_TAGS = frozenset({MANAGED_TAG, EXTERNAL_TAG})

INSTANCE_STATUS_MAP = {
    "up": ResourceStatus.ACTIVE,
    "down": ResourceStatus.ACTIVE,
    "migrating": ResourceStatus.CREATING,
    "cleaning": ResourceStatus.DELETING,
}


def server_to_state(server: ServerInfo) -> ResourceState:
    """Observed state of a usacloud server entry."""
    now = utcnow()
    return ResourceState(
        id=server.id,
        resource_type="server",
        name=server.name,
        status=INSTANCE_STATUS_MAP.get(server.instance_status or "", ResourceStatus.UNKNOWN),
        attributes={
            "core": server.cpu,
            "memory": server.memory_gb,
            "ip_address": server.ip_address,
            "running": server.is_running,
            "tags": sorted(t for t in server.tags if t not in INTERNAL_TAGS),
        },
        externally_managed=EXTERNAL_TAG in server.tags,
        created_at=now,
        updated_at=now,
    )


class SakuraCloudProvider(CloudProvider):
    """Servers on Sakura Cloud."""

    name = "sakura-cloud"
    display_name = "Sakura Cloud"
    supported_resource_types = frozenset({"server"})

    def __init__(
        self,
        zone: str = "tk1a",
        usacloud: Usacloud | None = None,
        *,
        command_timeout_seconds: float = DEFAULT_COMMAND_TIMEOUT_SECONDS,
        normalizer: DiffNormalizer | None = None,
        unmanaged_resource_types: tuple[str, ...] | list[str] = (),
    ) -> None:
        super().__init__(normalizer=normalizer, unmanaged_resource_types=unmanaged_resource_types)
        self.zone = zone
        self.usacloud = usacloud or Usacloud(zone, timeout_seconds=command_timeout_seconds)

    @classmethod
    def from_settings(cls, **settings: Any) -> SakuraCloudProvider:
        """Build from resource file settings; SAKURA_ZONE fills in a missing zone."""
        timeout = settings.pop("command_timeout_seconds", DEFAULT_COMMAND_TIMEOUT_SECONDS)
        if "zone" not in settings and os.environ.get("SAKURA_ZONE"):
            settings["zone"] = os.environ["SAKURA_ZONE"]
        parsed: SakuraSettings = parse_provider_settings(SakuraSettings, cls.name, settings)
        return cls(
            zone=parsed.zone,
            command_timeout_seconds=timeout,
            unmanaged_resource_types=parsed.unmanaged_resource_types,
        )

    async def check_auth(self) -> AuthStatus:
        if not self.usacloud.is_installed():
            return AuthStatus.failed(INSTALL_HINT)
        try:
            auth = await self.usacloud.auth_status()
        except CloudError as e:
            return AuthStatus.failed(str(e))
        if auth.account is None:
            return AuthStatus.ok("Unknown")
        return AuthStatus.ok(f"{auth.account.name} ({auth.account.id})")

    async def get_state(self) -> ProviderState:
        state = ProviderState()
        for server in await self.usacloud.list_servers():
            resource = server_to_state(server)
            if resource.key in state:
                logger.warning(
                    "Duplicate server name, keeping the last one",
                    extra={"zone": self.zone, "server": server.name, "server_id": server.id},
                )
            state.add(resource)
        return state

    def validate(self, resource: ResourceConfig) -> None:
        super().validate(resource)
        parse_resource_config(resource.resource_type, resource.id, resource.config)

    def comparable_config(self, resource: ResourceConfig) -> dict[str, Any]:
        spec: ServerSpec = parse_resource_config(
            resource.resource_type, resource.id, resource.config
        )
        core, memory = spec.resolved_plan()
        return {"core": core, "memory": memory}

    async def execute(self, action: Action) -> ResourceState | None:
        match action.action_type:
            case ActionType.CREATE:
                return await self._create(action)
            case ActionType.UPDATE:
                return await self._update(action)
            case ActionType.DELETE:
                await self._delete(action)
                return None
            case _:
                return None

    async def _find_server(self, name: str) -> ServerInfo | None:
        return next((s for s in await self.usacloud.list_servers() if s.name == name), None)

    async def _create(self, action: Action) -> ResourceState:
        spec: ServerSpec = parse_resource_config(
            "server", action.resource_id, action.details.get("config") or {}
        )

        # A previous attempt may have created the server before failing
        existing = await self._find_server(action.resource_id)
        if existing is not None:
            logger.info(
                "Server already exists, adopting it",
                extra={"server": action.resource_id, "server_id": existing.id},
            )
            return server_to_state(existing)

        core, memory = spec.resolved_plan()
        server = await self.usacloud.create_server(
            name=action.resource_id,
            core=core,
            memory=memory,
            disk_size=spec.disk_size,
            os_type=spec.os,
            ssh_key_ids=await self._resolve_ssh_keys(spec.ssh_keys),
            note_ids=await self._resolve_startup_scripts(spec.startup_scripts),
            tags=[*spec.tags, MANAGED_TAG],
        )
        return server_to_state(server)

    async def _update(self, action: Action) -> ResourceState:
        spec: ServerSpec = parse_resource_config(
            "server", action.resource_id, action.details.get("config") or {}
        )
        server_id = await self._server_id(action)
        core, memory = spec.resolved_plan()
        server = await self.usacloud.change_plan(server_id, core, memory)
        return server_to_state(server)

    async def _delete(self, action: Action) -> None:
        await self.usacloud.delete_server(await self._server_id(action), with_disks=True)

    async def _server_id(self, action: Action) -> str:
        native_id = action.details.get("native_id")
        if native_id:
            return str(native_id)
        server = await self._find_server(action.resource_id)
        if server is None:
            raise ResourceNotFound(f"server:{action.resource_id}")
        return server.id

    async def _resolve_ssh_keys(self, names: list[str]) -> list[str]:
        if not names:
            return []
        keys = {k.name: k.id for k in await self.usacloud.list_ssh_keys()}
        missing = [n for n in names if n not in keys]
        if missing:
            raise InvalidConfig(f"SSH keys not found in Sakura Cloud: {', '.join(missing)}")
        return [keys[n] for n in names]

    async def _resolve_startup_scripts(self, names: list[str]) -> list[str]:
        if not names:
            return []
        notes = {n.name: n.id for n in await self.usacloud.list_notes()}
        missing = [n for n in names if n not in notes]
        if missing:
            raise InvalidConfig(
                f"Startup scripts not found in Sakura Cloud: {', '.join(missing)}"
            )
        return [notes[n] for n in names]
