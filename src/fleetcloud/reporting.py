"""Plain-text and JSON rendering of plans, results and state.

Everything here returns strings; printing and colour are left to the caller.
Symbols: "+" create, "~" update, "-" delete.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any, Protocol

from .actions import ActionType, ApplyResult, Plan
from .provider import AuthStatus
from .reconciler import ReconcilePlan, ReconcileResult
from .state import GlobalState

INDENT = "  "


class SupportsToDict(Protocol):
    def to_dict(self) -> dict[str, Any]: ...


def to_json(obj: SupportsToDict) -> str:
    """JSON document for anything with a `to_dict`."""
    return json.dumps(obj.to_dict(), indent=2, sort_keys=True, default=str)


def format_plan(plan: Plan, *, show_unchanged: bool = False) -> str:
    lines = [f"Provider: {plan.provider}"]

    for action in plan.actions:
        if action.action_type == ActionType.NO_OP and not show_unchanged:
            continue
        lines.append(f"{INDENT}{action.action_type.symbol} {action.key}: {action.description}")
        for change in action.details.get("changes", []):
            lines.append(
                f"{INDENT * 3}{change['path']}: {change['observed']!r} -> {change['desired']!r}"
            )

    if not plan.has_changes:
        lines.append(f"{INDENT}No changes.")
    for key in plan.drift:
        lines.append(f"{INDENT}! {key} changed outside fleetcloud since the last apply")

    lines.append(f"Plan: {plan.summary()}")
    return "\n".join(lines)


def format_reconcile_plan(reconcile_plan: ReconcilePlan, *, show_unchanged: bool = False) -> str:
    sections = [
        format_plan(plan, show_unchanged=show_unchanged)
        for _, plan in sorted(reconcile_plan.plans.items())
    ]
    for name, error in sorted(reconcile_plan.errors.items()):
        sections.append(f"Provider: {name}\n{INDENT}Error: {error}")

    sections.append(f"Total: {reconcile_plan.summary()}")
    return "\n\n".join(sections)


def format_apply_result(result: ApplyResult, provider: str | None = None) -> str:
    lines = [f"Provider: {provider}"] if provider else []

    for entry in result.succeeded:
        lines.append(f"{INDENT}ok    {entry.message}")
    for entry in result.failed:
        lines.append(f"{INDENT}FAIL  {entry.message}: {entry.error}")
    if result.cancelled:
        lines.append(f"{INDENT}Cancelled before all actions ran.")

    lines.append(
        f"Apply: {len(result.succeeded)} succeeded, {len(result.failed)} failed "
        f"in {result.duration_seconds:.1f}s"
    )
    return "\n".join(lines)


def format_reconcile_result(result: ReconcileResult) -> str:
    sections = [
        format_apply_result(apply_result, name)
        for name, apply_result in sorted(result.results.items())
    ]
    for name, error in sorted(result.errors.items()):
        sections.append(f"Provider: {name}\n{INDENT}Error: {error}")

    if not sections:
        return "No changes to apply."

    combined = result.combined()
    status = "succeeded" if result.is_success() else "finished with errors"
    sections.append(
        f"Apply {status}: {len(combined.succeeded)} succeeded, {len(combined.failed)} failed, "
        f"{len(result.errors)} provider error(s)"
    )
    return "\n\n".join(sections)


def format_state(state: GlobalState) -> str:
    if not state.providers:
        return "No state recorded."

    sections = []
    for name, record in sorted(state.providers.items()):
        updated = record.updated_at.isoformat() if record.updated_at else "never"
        lines = [f"Provider: {name} (serial {record.serial}, updated {updated})"]
        if record.lock_holder:
            lines.append(f"{INDENT}Locked by {record.lock_holder}")
        for resource in sorted(record.state, key=lambda r: r.key):
            marker = " (external)" if resource.externally_managed else ""
            lines.append(
                f"{INDENT}{resource.key} [{resource.status.value}] id={resource.id}{marker}"
            )
        if not len(record.state):
            lines.append(f"{INDENT}No resources.")
        sections.append("\n".join(lines))

    sections.append(f"Total: {state.resource_count()} resource(s)")
    return "\n\n".join(sections)


def format_auth(statuses: Mapping[str, AuthStatus]) -> str:
    lines = []
    for name, status in sorted(statuses.items()):
        if status.authenticated:
            detail = f" ({status.account_info})" if status.account_info else ""
            lines.append(f"{name}: authenticated{detail}")
        else:
            lines.append(f"{name}: NOT authenticated: {status.error}")
    return "\n".join(lines)
