"""Plan and apply result types.

An Action is one unit of planned work; a Plan is an ordered, immutable list
of them for a single provider. ApplyResult is the report an executor hands
back after running a plan.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .state import ProviderState


class ActionType(str, Enum):
    """Kind of change an action makes."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NO_OP = "no_op"

    @property
    def symbol(self) -> str:
        return {"create": "+", "update": "~", "delete": "-", "no_op": " "}[self.value]


@dataclass(frozen=True)
class Action:
    """One planned change.

    Attributes:
        id: Unique within a plan, e.g. "create-server:web-01".
        action_type: Kind of change.
        resource_type: Type tag of the target resource.
        resource_id: Logical id of the target resource.
        description: Human-readable summary.
        details: Provider specific parameters ("config", "changes", ...).
    """

    id: str
    action_type: ActionType
    resource_type: str
    resource_id: str
    description: str
    details: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    @property
    def key(self) -> str:
        return f"{self.resource_type}:{self.resource_id}"

    @classmethod
    def build(
        cls,
        action_type: ActionType,
        resource_type: str,
        resource_id: str,
        description: str | None = None,
        **details: Any,
    ) -> Action:
        """Create an action with its id derived from type and resource key."""
        key = f"{resource_type}:{resource_id}"
        if description is None:
            verb = {
                ActionType.CREATE: "Create",
                ActionType.UPDATE: "Update",
                ActionType.DELETE: "Delete",
                ActionType.NO_OP: "No change for",
            }[action_type]
            description = f"{verb} {resource_type} '{resource_id}'"
        return cls(
            id=f"{action_type.value}-{key}",
            action_type=action_type,
            resource_type=resource_type,
            resource_id=resource_id,
            description=description,
            details=details,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "action_type": self.action_type.value,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "description": self.description,
            "details": self.details,
        }


@dataclass(frozen=True)
class PlanSummary:
    """Change counts of a plan."""

    create: int = 0
    update: int = 0
    delete: int = 0
    no_change: int = 0

    @property
    def total_changes(self) -> int:
        return self.create + self.update + self.delete

    def __str__(self) -> str:
        return (
            f"{self.create} to create, {self.update} to update, "
            f"{self.delete} to delete, {self.no_change} unchanged"
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "create": self.create,
            "update": self.update,
            "delete": self.delete,
            "no_change": self.no_change,
        }


@dataclass(frozen=True)
class Plan:
    """Ordered actions for one provider.

    Attributes:
        provider: Provider the plan targets.
        actions: Actions in execution order.
        base_serial: Serial of the persisted record the plan was computed
            against; the executor refuses to apply if it has moved.
        drift: Keys whose observed state diverged from the persisted record.
        observed: Snapshot the plan was computed from; the executor starts
            from it when persisting results.
    """

    provider: str
    actions: tuple[Action, ...] = ()
    base_serial: int = 0
    drift: tuple[str, ...] = ()
    observed: ProviderState | None = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        ids = [a.id for a in self.actions]
        if len(ids) != len(set(ids)):
            raise ValueError(f"Duplicate action ids in plan for {self.provider}")

    @classmethod
    def empty(cls, provider: str) -> Plan:
        return cls(provider=provider)

    @property
    def has_changes(self) -> bool:
        return any(a.action_type != ActionType.NO_OP for a in self.actions)

    @property
    def has_deletes(self) -> bool:
        return any(a.action_type == ActionType.DELETE for a in self.actions)

    def actions_by_type(self, action_type: ActionType) -> list[Action]:
        return [a for a in self.actions if a.action_type == action_type]

    def summary(self) -> PlanSummary:
        return PlanSummary(
            create=len(self.actions_by_type(ActionType.CREATE)),
            update=len(self.actions_by_type(ActionType.UPDATE)),
            delete=len(self.actions_by_type(ActionType.DELETE)),
            no_change=len(self.actions_by_type(ActionType.NO_OP)),
        )

    def __len__(self) -> int:
        return len(self.actions)

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "has_changes": self.has_changes,
            "base_serial": self.base_serial,
            "drift": list(self.drift),
            "summary": self.summary().to_dict(),
            "actions": [a.to_dict() for a in self.actions],
        }


@dataclass(frozen=True)
class ActionResult:
    """Outcome of one action."""

    action_id: str
    success: bool
    message: str
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "action_id": self.action_id,
            "success": self.success,
            "message": self.message,
            "error": self.error,
        }


@dataclass
class ApplyResult:
    """Outcome of executing a plan.

    Built by the executor during one apply call and handed to the caller
    as a finished report.
    """

    succeeded: list[ActionResult] = field(default_factory=list)
    failed: list[ActionResult] = field(default_factory=list)
    duration_seconds: float = 0.0
    cancelled: bool = False

    def add_success(self, action_id: str, message: str) -> None:
        self.succeeded.append(ActionResult(action_id, True, message))

    def add_failure(self, action_id: str, error: str) -> None:
        self.failed.append(ActionResult(action_id, False, f"Failed: {action_id}", error))

    def merge(self, others: Iterable[ApplyResult]) -> ApplyResult:
        for other in others:
            self.succeeded.extend(other.succeeded)
            self.failed.extend(other.failed)
            self.duration_seconds += other.duration_seconds
            self.cancelled = self.cancelled or other.cancelled
        return self

    def is_success(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.is_success(),
            "cancelled": self.cancelled,
            "duration_seconds": round(self.duration_seconds, 3),
            "succeeded": [r.to_dict() for r in self.succeeded],
            "failed": [r.to_dict() for r in self.failed],
        }
