"""Multi-provider reconciliation.

The Reconciler fans a ResourceSet out to the configured providers:
1. Check credentials per provider (an auth failure only affects that provider)
2. Observe state and compute one Plan per provider
3. Apply the plans concurrently, each under its own state lock
4. Aggregate per-provider results and errors

Actions inside one provider run sequentially in plan order; providers run
in parallel with asyncio.gather since they share nothing but the store.

SAFETY: Configuration problems (unknown provider, invalid resource config)
abort planning before any backend is contacted. Auth, lock and stale-plan
failures are recorded per provider and never stop the other providers.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .actions import ApplyResult, Plan, PlanSummary
from .config import RetryConfig
from .errors import (
    AuthenticationFailed,
    CloudError,
    InvalidConfig,
    ProviderNotFound,
    StateError,
)
from .executor import Executor
from .planner import Planner
from .provider import AuthStatus, CloudProvider
from .resources import ResourceSet
from .state import GlobalState, ProviderState
from .state_store import StateStore

logger = logging.getLogger(__name__)


def _error_dict(error: Exception) -> dict[str, Any]:
    if isinstance(error, CloudError):
        return error.to_dict()
    return {
        "error_type": type(error).__name__,
        "message": str(error),
        "transient": False,
        "details": {},
    }


@dataclass
class ReconcilePlan:
    """Per-provider plans plus the providers that could not be planned."""

    plans: dict[str, Plan] = field(default_factory=dict)
    errors: dict[str, Exception] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def has_changes(self) -> bool:
        return any(plan.has_changes for plan in self.plans.values())

    @property
    def has_deletes(self) -> bool:
        return any(plan.has_deletes for plan in self.plans.values())

    def is_success(self) -> bool:
        return not self.errors

    def summary(self) -> PlanSummary:
        """Totals across every provider."""
        summaries = [plan.summary() for plan in self.plans.values()]
        return PlanSummary(
            create=sum(s.create for s in summaries),
            update=sum(s.update for s in summaries),
            delete=sum(s.delete for s in summaries),
            no_change=sum(s.no_change for s in summaries),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "created_at": self.created_at.isoformat(),
            "has_changes": self.has_changes,
            "summary": self.summary().to_dict(),
            "plans": {name: plan.to_dict() for name, plan in sorted(self.plans.items())},
            "errors": {name: _error_dict(e) for name, e in sorted(self.errors.items())},
        }


@dataclass
class ReconcileResult:
    """Outcome of applying a ReconcilePlan."""

    results: dict[str, ApplyResult] = field(default_factory=dict)
    errors: dict[str, Exception] = field(default_factory=dict)
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def cancelled(self) -> bool:
        return any(result.cancelled for result in self.results.values())

    def is_success(self) -> bool:
        return not self.errors and all(r.is_success() for r in self.results.values())

    def combined(self) -> ApplyResult:
        """All provider results merged into one report."""
        return ApplyResult().merge(self.results[name] for name in sorted(self.results))

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.is_success(),
            "cancelled": self.cancelled,
            "duration_seconds": round(self.duration_seconds, 3),
            "results": {name: r.to_dict() for name, r in sorted(self.results.items())},
            "errors": {name: _error_dict(e) for name, e in sorted(self.errors.items())},
        }


class Reconciler:
    """Plans and applies desired state across providers.

    The state store is passed in explicitly; every apply goes through an
    Executor that holds the provider's lock for the whole run.
    """

    def __init__(
        self,
        providers: Mapping[str, CloudProvider],
        store: StateStore,
        *,
        retry: RetryConfig | None = None,
        owner: str | None = None,
        action_timeout: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._providers = dict(providers)
        self._store = store
        self._retry = retry or RetryConfig()
        self._owner = owner
        self._action_timeout = action_timeout
        self._sleep = sleep
        self._planner = Planner()
        self._shutdown_event = asyncio.Event()

    @property
    def providers(self) -> dict[str, CloudProvider]:
        return dict(self._providers)

    @property
    def store(self) -> StateStore:
        return self._store

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_event.is_set()

    def shutdown(self) -> None:
        """Signal running applies to stop after their in-flight action."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    async def close(self) -> None:
        await asyncio.gather(*(p.close() for p in self._providers.values()))

    async def check_auth(self) -> dict[str, AuthStatus]:
        names = sorted(self._providers)
        statuses = await asyncio.gather(*(self._check_auth(name) for name in names))
        return dict(zip(names, statuses, strict=True))

    async def _check_auth(self, name: str) -> AuthStatus:
        try:
            status = await self._providers[name].check_auth()
        except CloudError as e:
            status = AuthStatus.failed(str(e))
        except Exception as e:
            logger.exception("Unexpected error checking credentials", extra={"provider": name})
            status = AuthStatus.failed(f"Unexpected error: {e}")
        log = logger.info if status.authenticated else logger.warning
        log(
            "Authentication checked",
            extra={
                "provider": name,
                "authenticated": status.authenticated,
                "error": status.error,
            },
        )
        return status

    # =========================================================================
    # Planning
    # =========================================================================

    async def plan(
        self, resources: ResourceSet, provider_names: Iterable[str] | None = None
    ) -> ReconcilePlan:
        """Compute one plan per selected provider.

        Raises:
            InvalidConfig: A resource names an unconfigured provider or has an
                invalid config. Nothing is planned in that case.
            ProviderNotFound: A selected provider is not configured.
        """
        unknown = sorted(set(resources.providers()) - set(self._providers))
        if unknown:
            raise InvalidConfig(
                f"Resources reference unconfigured providers: {', '.join(unknown)}",
                {"providers": unknown},
            )

        names = self._select(provider_names)
        for name in names:
            provider = self._providers[name]
            for resource in resources.by_provider(name):
                provider.validate(resource)

        outcomes = await asyncio.gather(
            *(self._plan_provider(name, resources.by_provider(name)) for name in names)
        )

        reconcile_plan = ReconcilePlan()
        for name, plan, error in outcomes:
            if error is not None:
                reconcile_plan.errors[name] = error
            else:
                reconcile_plan.plans[name] = plan

        logger.info(
            "Reconcile plan computed",
            extra={
                "providers": names,
                "summary": str(reconcile_plan.summary()),
                "failed_providers": sorted(reconcile_plan.errors),
            },
        )
        return reconcile_plan

    async def plan_destroy(self, provider_names: Iterable[str] | None = None) -> ReconcilePlan:
        """All-Delete plans for every managed resource of the selected providers."""
        names = self._select(provider_names)
        outcomes = await asyncio.gather(*(self._plan_provider(name, None) for name in names))

        reconcile_plan = ReconcilePlan()
        for name, plan, error in outcomes:
            if error is not None:
                reconcile_plan.errors[name] = error
            else:
                reconcile_plan.plans[name] = plan
        return reconcile_plan

    async def _plan_provider(
        self, name: str, desired: ResourceSet | None
    ) -> tuple[str, Plan | None, Exception | None]:
        """Plan one provider; `desired=None` plans its destruction."""
        provider = self._providers[name]
        status = await self._check_auth(name)
        if not status.authenticated:
            return name, None, AuthenticationFailed(
                status.error or "Authentication failed", {"provider": name}
            )

        try:
            base = self._store.load(name)
            observed = await self._observe(name)
            if desired is None:
                plan = self._planner.plan_destroy(provider, observed, base)
            else:
                plan = self._planner.plan(provider, desired, observed, base)
        except InvalidConfig:
            raise
        except CloudError as e:
            logger.error("Planning failed", extra={"provider": name, "error": str(e)})
            return name, None, e

        if plan.drift:
            logger.warning(
                "Drift detected since last apply",
                extra={"provider": name, "drift": list(plan.drift)},
            )
        return name, plan, None

    async def _observe(self, name: str) -> ProviderState:
        """Fresh provider state; unexpected backend exceptions become StateError."""
        try:
            return await self._providers[name].get_state()
        except CloudError:
            raise
        except Exception as e:
            logger.exception("Unexpected error reading provider state", extra={"provider": name})
            raise StateError(
                f"Failed to read state for '{name}': {e}", {"provider": name}
            ) from e

    # =========================================================================
    # Applying
    # =========================================================================

    async def apply(self, reconcile_plan: ReconcilePlan) -> ReconcileResult:
        """Apply every plan with changes; providers run concurrently.

        Providers that failed planning are carried over as errors so the
        overall result is not reported as a success.
        """
        result = ReconcileResult(errors=dict(reconcile_plan.errors))

        pending = {
            name: plan for name, plan in sorted(reconcile_plan.plans.items()) if plan.has_changes
        }
        for name in sorted(set(reconcile_plan.plans) - set(pending)):
            logger.info("No changes, skipping provider", extra={"provider": name})

        outcomes = await asyncio.gather(
            *(self._apply_provider(name, plan) for name, plan in pending.items())
        )
        for name, apply_result, error in outcomes:
            if error is not None:
                result.errors[name] = error
            if apply_result is not None:
                result.results[name] = apply_result

        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    async def destroy(self, provider_names: Iterable[str] | None = None) -> ReconcileResult:
        """Delete every managed resource of the selected providers."""
        return await self.apply(await self.plan_destroy(provider_names))

    async def _apply_provider(
        self, name: str, plan: Plan
    ) -> tuple[str, ApplyResult | None, Exception | None]:
        if name not in self._providers:
            return name, None, ProviderNotFound(name)

        executor = Executor(
            self._providers[name],
            self._store,
            self._retry,
            self._shutdown_event,
            owner=self._owner,
            action_timeout=self._action_timeout,
            sleep=self._sleep,
        )
        start = time.monotonic()
        try:
            return name, await executor.apply(plan), None
        except CloudError as e:
            # Lock contention and stale plans: nothing was executed
            logger.error(
                "Apply aborted",
                extra={
                    "provider": name,
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "duration_seconds": round(time.monotonic() - start, 3),
                },
            )
            return name, None, e

    # =========================================================================
    # Status
    # =========================================================================

    def status(self) -> GlobalState:
        """Persisted state of every provider. Never takes a lock."""
        return self._store.load_all()

    def _select(self, provider_names: Iterable[str] | None) -> list[str]:
        if provider_names is None:
            return sorted(self._providers)
        names = sorted(set(provider_names))
        for name in names:
            if name not in self._providers:
                raise ProviderNotFound(name)
        return names

    def _log_result(self, result: ReconcileResult) -> None:
        """Log reconciliation result with structured data."""
        combined = result.combined()
        extra: dict[str, Any] = {
            "providers": sorted(set(result.results) | set(result.errors)),
            "duration_seconds": result.duration_seconds,
            "succeeded": len(combined.succeeded),
            "failed": len(combined.failed),
            "cancelled": result.cancelled,
        }
        if result.errors:
            extra["failed_providers"] = sorted(result.errors)
            logger.error("Reconciliation finished with errors", extra=extra)
        elif not combined.is_success():
            logger.warning("Reconciliation finished with failed actions", extra=extra)
        else:
            logger.info("Reconciliation result", extra=extra)
