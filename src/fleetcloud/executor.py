"""Plan execution with retry, partial-failure isolation and locked persistence.

Actions run sequentially in plan order. Transient failures (API errors,
failed CLI invocations, timeouts) are retried with capped exponential
backoff; a failure that survives its retries is recorded and execution
moves on to the next action.

SAFETY:
- The provider's state lock is taken before the first backend call. If it
  cannot be taken, nothing is executed.
- Under the lock, the stored serial must still match the one the plan was
  computed against. Otherwise StalePlanError is raised, again before any
  backend call. The executor never re-plans.
- State is persisted and the lock released in a `finally`, so an
  interrupted run still records what it completed.
- Cancellation is cooperative: the in-flight attempt finishes, then no
  further retry or action starts.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from .actions import Action, ActionType, ApplyResult, Plan
from .config import RetryConfig
from .errors import CloudError, OperationTimeout, StalePlanError
from .state import ProviderRecord, ProviderState, ResourceState, ResourceStatus, utcnow
from .state_store import StateLock, StateStore

if TYPE_CHECKING:
    from .provider import CloudProvider

logger = logging.getLogger(__name__)


class Executor:
    """Runs one provider's plan."""

    def __init__(
        self,
        provider: CloudProvider,
        store: StateStore | None = None,
        retry: RetryConfig | None = None,
        cancel_event: asyncio.Event | None = None,
        *,
        owner: str | None = None,
        action_timeout: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._provider = provider
        self._store = store
        self._retry = retry or RetryConfig()
        self._cancel_event = cancel_event
        self._owner = owner
        self._action_timeout = action_timeout
        self._sleep = sleep

    @property
    def cancelled(self) -> bool:
        return self._cancel_event is not None and self._cancel_event.is_set()

    async def apply(self, plan: Plan) -> ApplyResult:
        """Execute `plan` and return its report.

        Raises:
            LockError: The provider's lock is held by a live owner.
            StalePlanError: Persisted state moved since planning.
        """
        if plan.provider != self._provider.name:
            raise ValueError(
                f"Plan for '{plan.provider}' cannot run on provider '{self._provider.name}'"
            )

        start = time.monotonic()
        result = ApplyResult()
        lock: StateLock | None = None
        state: ProviderState | None = None

        if self._store is not None:
            lock = self._store.acquire_lock(plan.provider, self._owner)

        try:
            state = self._baseline(plan)

            logger.info(
                "Applying plan",
                extra={"provider": plan.provider, "summary": str(plan.summary())},
            )

            for action in plan.actions:
                if action.action_type == ActionType.NO_OP:
                    continue
                if self.cancelled:
                    result.cancelled = True
                    logger.warning(
                        "Apply cancelled, skipping remaining actions",
                        extra={"provider": plan.provider, "next_action": action.id},
                    )
                    break

                ok, observed = await self._run_action(action, result)
                if ok:
                    self._record(state, action, observed)
        finally:
            result.duration_seconds = time.monotonic() - start
            try:
                if lock is not None and state is not None:
                    self._store.save(ProviderRecord(provider=plan.provider, state=state), lock)
            finally:
                if lock is not None:
                    lock.release()

        self._log_result(plan, result)
        return result

    def _baseline(self, plan: Plan) -> ProviderState:
        """State the run starts from, after checking the plan is still current."""
        if self._store is None:
            return (plan.observed or ProviderState()).copy()

        record = self._store.load(plan.provider)
        if record.serial != plan.base_serial:
            raise StalePlanError(plan.provider, plan.base_serial, record.serial)
        if plan.observed is not None:
            return plan.observed.copy()
        return record.state.copy()

    async def _run_action(
        self, action: Action, result: ApplyResult
    ) -> tuple[bool, ResourceState | None]:
        """Dispatch one action with retry; records success or failure in `result`."""
        max_attempts = self._retry.max_attempts
        last_error: Exception | None = None

        for attempt in range(1, max_attempts + 1):
            try:
                observed = await self._execute(action)
            except CloudError as e:
                last_error = e
                if not e.transient:
                    break
                if attempt >= max_attempts:
                    break

                delay = self._retry.delay_for(attempt)
                logger.warning(
                    "Action failed, retrying",
                    extra={
                        "action_id": action.id,
                        "attempt": attempt,
                        "max_attempts": max_attempts,
                        "wait_seconds": delay,
                        "error": str(e),
                    },
                )
                if await self._backoff(delay):
                    result.cancelled = True
                    break
            except Exception as e:
                # Unexpected provider bug: record, never retry
                logger.exception(
                    "Action raised unexpected error",
                    extra={"action_id": action.id, "error_type": type(e).__name__},
                )
                last_error = e
                break
            else:
                message = self._success_message(action, attempt)
                result.add_success(action.id, message)
                logger.info(message, extra={"action_id": action.id, "attempt": attempt})
                return True, observed

        assert last_error is not None, "Retry loop ended without an error"
        result.add_failure(action.id, str(last_error))
        logger.error(
            "Action failed",
            extra={
                "action_id": action.id,
                "error": str(last_error),
                "error_type": type(last_error).__name__,
            },
        )
        return False, None

    async def _execute(self, action: Action) -> ResourceState | None:
        if self._action_timeout is None:
            return await self._provider.execute(action)
        try:
            return await asyncio.wait_for(
                self._provider.execute(action), timeout=self._action_timeout
            )
        except TimeoutError as e:
            raise OperationTimeout(
                f"{action.description} timed out after {self._action_timeout}s"
            ) from e

    async def _backoff(self, delay: float) -> bool:
        """Wait before the next attempt. Returns True if cancelled meanwhile."""
        if self._cancel_event is None:
            await self._sleep(delay)
            return False
        if self._cancel_event.is_set():
            return True
        try:
            await asyncio.wait_for(self._cancel_event.wait(), timeout=delay)
        except TimeoutError:
            return False
        return True

    @staticmethod
    def _record(state: ProviderState, action: Action, observed: ResourceState | None) -> None:
        if action.action_type == ActionType.DELETE:
            state.remove(action.key)
            return
        if observed is None:
            previous = state.get(action.key)
            now = utcnow()
            observed = ResourceState(
                id=str(action.details.get("native_id") or action.resource_id),
                resource_type=action.resource_type,
                name=action.resource_id,
                status=ResourceStatus.ACTIVE,
                attributes=dict(action.details.get("config") or {}),
                created_at=previous.created_at if previous else now,
                updated_at=now,
            )
        state.add(observed)

    @staticmethod
    def _success_message(action: Action, attempt: int) -> str:
        past = {
            ActionType.CREATE: "Created",
            ActionType.UPDATE: "Updated",
            ActionType.DELETE: "Deleted",
        }[action.action_type]
        message = f"{past} {action.resource_type} '{action.resource_id}'"
        if attempt > 1:
            message += f" after {attempt} attempts"
        return message

    def _log_result(self, plan: Plan, result: ApplyResult) -> None:
        log = logger.info if result.is_success() else logger.error
        log(
            "Apply finished",
            extra={
                "provider": plan.provider,
                "succeeded": len(result.succeeded),
                "failed": len(result.failed),
                "cancelled": result.cancelled,
                "duration_seconds": round(result.duration_seconds, 3),
            },
        )
