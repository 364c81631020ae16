"""Differencer: desired ResourceSet vs observed ProviderState to Plan.

Full-state reconciliation: anything a provider reports that is not declared
is deleted, unless the observed resource is externally managed or its type
was explicitly opted out by the provider.

ORDERING:
Creates, then Updates, then Deletes, then NoOps. Each group is sorted by
(resource_type, id), so a plan never depends on mapping iteration order.
Ordering is not dependency-aware: a resource that must exist before another
of a lexicographically smaller type has to be applied in two runs.

Planning is a pure function of its inputs. A resource that names another
provider or an unsupported type aborts planning with InvalidConfig; no
partial plan is returned.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .actions import Action, ActionType, Plan
from .resources import ResourceSet
from .state import ProviderRecord, ProviderState

if TYPE_CHECKING:
    from .provider import CloudProvider

logger = logging.getLogger(__name__)

GROUP_ORDER = (ActionType.CREATE, ActionType.UPDATE, ActionType.DELETE, ActionType.NO_OP)


def _sort_key(action: Action) -> tuple[int, str, str]:
    return (GROUP_ORDER.index(action.action_type), action.resource_type, action.resource_id)


def detect_drift(base: ProviderRecord | None, observed: ProviderState) -> list[str]:
    """Keys whose observed state no longer matches the last persisted snapshot.

    A record that was never saved has no baseline, so nothing counts as drift.
    """
    if base is None or base.serial == 0:
        return []
    drifted: list[str] = []
    for key in sorted(set(base.state.keys()) | set(observed.keys())):
        before = base.state.get(key)
        after = observed.get(key)
        if before is None or after is None:
            drifted.append(key)
        elif before.attributes != after.attributes or before.id != after.id:
            drifted.append(key)
    return drifted


class Planner:
    """Computes deterministic plans using the provider's comparison rules."""

    def plan(
        self,
        provider: CloudProvider,
        desired: ResourceSet,
        observed: ProviderState,
        base: ProviderRecord | None = None,
    ) -> Plan:
        """Compute the plan that moves `observed` to `desired`.

        Raises:
            InvalidConfig: A desired resource does not belong to this provider
                or has an unsupported type.
        """
        for resource in desired:
            provider.validate(resource)

        actions: list[Action] = []

        for resource in desired:
            current = observed.get(resource.key)
            if current is None:
                actions.append(
                    Action.build(
                        ActionType.CREATE, resource.resource_type, resource.id,
                        config=dict(resource.config),
                    )
                )
                continue

            changes = provider.compare(resource, current)
            if changes:
                fields = ", ".join(c.path for c in changes)
                actions.append(
                    Action.build(
                        ActionType.UPDATE, resource.resource_type, resource.id,
                        f"Update {resource.resource_type} '{resource.id}' ({fields})",
                        config=dict(resource.config),
                        changes=[c.to_dict() for c in changes],
                        native_id=current.id,
                    )
                )
            else:
                actions.append(
                    Action.build(
                        ActionType.NO_OP, resource.resource_type, resource.id,
                        native_id=current.id,
                    )
                )

        for current in observed:
            if current.key in desired:
                continue
            if not provider.is_managed(current):
                logger.debug(
                    "Skipping unmanaged resource",
                    extra={"provider": provider.name, "resource": current.key},
                )
                continue
            actions.append(self._delete_action(current.resource_type, current.name, current.id))

        actions.sort(key=_sort_key)
        plan = Plan(
            provider=provider.name,
            actions=tuple(actions),
            base_serial=base.serial if base else 0,
            drift=tuple(detect_drift(base, observed)),
            observed=observed,
        )

        logger.info(
            "Plan computed",
            extra={
                "provider": provider.name,
                "summary": str(plan.summary()),
                "drift_count": len(plan.drift),
            },
        )
        return plan

    def plan_destroy(
        self,
        provider: CloudProvider,
        observed: ProviderState,
        base: ProviderRecord | None = None,
    ) -> Plan:
        """All-Delete plan for every managed observed resource."""
        actions = [
            self._delete_action(r.resource_type, r.name, r.id)
            for r in observed
            if provider.is_managed(r)
        ]
        actions.sort(key=_sort_key)
        return Plan(
            provider=provider.name,
            actions=tuple(actions),
            base_serial=base.serial if base else 0,
            observed=observed,
        )

    @staticmethod
    def _delete_action(resource_type: str, resource_id: str, native_id: str) -> Action:
        return Action.build(
            ActionType.DELETE, resource_type, resource_id, native_id=native_id
        )
