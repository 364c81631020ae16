"""Tests for plan execution: retry, isolation, cancellation and persistence."""

from __future__ import annotations

import asyncio

import pytest
from cloud_mock import MockBackend, MockProvider, resource

from fleetcloud.actions import Action, Plan
from fleetcloud.config import RetryConfig
from fleetcloud.errors import LockError, StalePlanError
from fleetcloud.executor import Executor
from fleetcloud.resources import ResourceSet
from fleetcloud.state import ProviderRecord, ResourceState
from fleetcloud.state_store import InMemoryStateStore

NO_JITTER = RetryConfig(max_attempts=3, initial_delay=1.0, max_delay=10.0, jitter=0.0)


class RecordingSleep:
    """Stand-in for asyncio.sleep that remembers requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class SlowProvider(MockProvider):
    """Provider whose mutating calls never finish in time."""

    async def execute(self, action: Action) -> ResourceState | None:
        await asyncio.sleep(10)
        return await super().execute(action)


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


async def _plan(provider: MockProvider, store: InMemoryStateStore, *resources) -> Plan:
    return await provider.plan(ResourceSet(resources), store.load(provider.name))


def _executor(provider, store, sleep, **kwargs) -> Executor:
    kwargs.setdefault("retry", NO_JITTER)
    return Executor(provider, store, sleep=sleep, **kwargs)


class TestExecutorApply:
    """Tests for successful execution and persistence."""

    @pytest.mark.asyncio
    async def test_converges_and_persists(
        self, store: InMemoryStateStore, sleep: RecordingSleep
    ) -> None:
        """Test create, update and delete are applied and stored under serial 1."""
        backend = MockBackend()
        backend.add("server", "resize", core=1)
        backend.add("server", "orphan")
        provider = MockProvider(backend=backend)
        plan = await _plan(
            provider, store,
            resource("server", "new", core=1), resource("server", "resize", core=2),
        )

        result = await _executor(provider, store, sleep).apply(plan)

        assert result.is_success()
        assert [r.action_id for r in result.succeeded] == [
            "create-server:new",
            "update-server:resize",
            "delete-server:orphan",
        ]
        assert backend.snapshot() == {"server:new": {"core": 1}, "server:resize": {"core": 2}}
        record = store.load("mock")
        assert record.serial == 1
        assert sorted(record.state.keys()) == ["server:new", "server:resize"]
        assert store.lock_info("mock") is None

    @pytest.mark.asyncio
    async def test_second_plan_after_apply_is_all_noop(
        self, store: InMemoryStateStore, sleep: RecordingSleep
    ) -> None:
        """Test re-planning after a successful apply finds nothing to do."""
        provider = MockProvider()
        desired = (resource("server", "a", core=1), resource("bucket", "b"))
        await _executor(provider, store, sleep).apply(await _plan(provider, store, *desired))

        second = await _plan(provider, store, *desired)

        assert second.has_changes is False
        assert second.base_serial == 1
        assert second.drift == ()

    @pytest.mark.asyncio
    async def test_noops_are_not_dispatched(
        self, store: InMemoryStateStore, sleep: RecordingSleep
    ) -> None:
        """Test NoOp actions never reach the backend."""
        backend = MockBackend()
        backend.add("server", "same", core=1)
        provider = MockProvider(backend=backend)
        plan = await _plan(provider, store, resource("server", "same", core=1))

        result = await _executor(provider, store, sleep).apply(plan)

        assert result.succeeded == []
        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_without_store_nothing_is_persisted(self, sleep: RecordingSleep) -> None:
        """Test the provider-level apply runs without locking or storage."""
        provider = MockProvider()
        plan = await provider.plan(ResourceSet([resource("server", "a")]))

        result = await provider.apply(plan, retry=NO_JITTER)

        assert result.is_success()
        assert "server:a" in provider.backend.resources

    @pytest.mark.asyncio
    async def test_plan_for_other_provider_rejected(
        self, store: InMemoryStateStore, sleep: RecordingSleep
    ) -> None:
        """Test a plan is only applied by the provider it was made for."""
        provider = MockProvider()

        with pytest.raises(ValueError):
            await _executor(provider, store, sleep).apply(Plan.empty("elsewhere"))


class TestExecutorRetry:
    """Tests for the retry policy."""

    @pytest.mark.asyncio
    async def test_transient_failures_retried_with_backoff(
        self, store: InMemoryStateStore, sleep: RecordingSleep
    ) -> None:
        """Test two transient failures then success, waiting 1s then 2s."""
        provider = MockProvider()
        provider.backend.fail_times("server:web", 2)
        plan = await _plan(provider, store, resource("server", "web"))

        result = await _executor(provider, store, sleep).apply(plan)

        assert result.is_success()
        assert sleep.delays == [1.0, 2.0]
        assert result.succeeded[0].message == "Created server 'web' after 3 attempts"
        assert provider.backend.call_count("create") == 3

    @pytest.mark.asyncio
    async def test_retries_exhausted_records_failure(
        self, store: InMemoryStateStore, sleep: RecordingSleep
    ) -> None:
        """Test an action still failing after max_attempts is recorded as failed."""
        provider = MockProvider()
        provider.backend.fail_times("server:web", 10)
        plan = await _plan(provider, store, resource("server", "web"))

        result = await _executor(provider, store, sleep).apply(plan)

        assert [r.action_id for r in result.failed] == ["create-server:web"]
        assert provider.backend.call_count("create") == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_permanent_failure_not_retried_and_isolated(
        self, store: InMemoryStateStore, sleep: RecordingSleep
    ) -> None:
        """Test a permanent failure is tried once and later actions still run."""
        provider = MockProvider()
        provider.backend.fail_always("server:b")
        plan = await _plan(
            provider, store,
            resource("server", "a"), resource("server", "b"), resource("server", "c"),
        )

        result = await _executor(provider, store, sleep).apply(plan)

        assert [r.action_id for r in result.succeeded] == ["create-server:a", "create-server:c"]
        assert [r.action_id for r in result.failed] == ["create-server:b"]
        assert "Injected permanent failure" in result.failed[0].error
        assert sleep.delays == []
        assert sorted(store.load("mock").state.keys()) == ["server:a", "server:c"]

    @pytest.mark.asyncio
    async def test_failed_delete_stays_in_state(
        self, store: InMemoryStateStore, sleep: RecordingSleep
    ) -> None:
        """Test only successful actions change the persisted record."""
        backend = MockBackend()
        backend.add("server", "stuck")
        backend.fail_always("server:stuck")
        provider = MockProvider(backend=backend)
        plan = await _plan(provider, store)

        result = await _executor(provider, store, sleep).apply(plan)

        assert result.is_success() is False
        assert "server:stuck" in store.load("mock").state

    @pytest.mark.asyncio
    async def test_unexpected_exception_recorded_not_retried(
        self, store: InMemoryStateStore, sleep: RecordingSleep
    ) -> None:
        """Test a provider bug is recorded as a failure without retrying."""
        attempts: list[str] = []

        def explode(action: Action) -> None:
            attempts.append(action.id)
            raise RuntimeError("boom")

        provider = MockProvider(on_execute=explode)
        plan = await _plan(provider, store, resource("server", "web"))

        result = await _executor(provider, store, sleep).apply(plan)

        assert attempts == ["create-server:web"]
        assert result.failed[0].error == "boom"

    @pytest.mark.asyncio
    async def test_action_timeout_is_a_failure(
        self, store: InMemoryStateStore, sleep: RecordingSleep
    ) -> None:
        """Test a call exceeding the action timeout fails as OperationTimeout."""
        provider = SlowProvider()
        plan = await _plan(provider, store, resource("server", "web"))
        executor = _executor(
            provider, store, sleep, retry=RetryConfig(max_attempts=1), action_timeout=0.01
        )

        result = await executor.apply(plan)

        assert "timed out" in result.failed[0].error


class TestExecutorCancellation:
    """Tests for cooperative cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_stops_before_next_action(
        self, store: InMemoryStateStore, sleep: RecordingSleep
    ) -> None:
        """Test the in-flight action completes and no further action starts."""
        cancel = asyncio.Event()
        provider = MockProvider(on_execute=lambda action: cancel.set())
        plan = await _plan(provider, store, resource("server", "a"), resource("server", "b"))

        result = await _executor(provider, store, sleep, cancel_event=cancel).apply(plan)

        assert result.cancelled is True
        assert [r.action_id for r in result.succeeded] == ["create-server:a"]
        assert provider.backend.call_count() == 1
        assert list(store.load("mock").state.keys()) == ["server:a"]
        assert store.lock_info("mock") is None

    @pytest.mark.asyncio
    async def test_cancel_skips_pending_retry(
        self, store: InMemoryStateStore, sleep: RecordingSleep
    ) -> None:
        """Test a cancel during backoff abandons the retry."""
        cancel = asyncio.Event()
        provider = MockProvider(on_execute=lambda action: cancel.set())
        provider.backend.fail_times("server:a", 1)
        plan = await _plan(provider, store, resource("server", "a"))

        result = await _executor(provider, store, sleep, cancel_event=cancel).apply(plan)

        assert result.cancelled is True
        assert [r.action_id for r in result.failed] == ["create-server:a"]
        assert provider.backend.call_count() == 1


class TestExecutorSafety:
    """Tests for the checks made before any backend call."""

    @pytest.mark.asyncio
    async def test_lock_held_elsewhere_blocks_apply(
        self, store: InMemoryStateStore, sleep: RecordingSleep
    ) -> None:
        """Test a live lock raises LockError and nothing is executed."""
        provider = MockProvider()
        plan = await _plan(provider, store, resource("server", "a"))
        other = store.acquire_lock("mock", owner="other-run")

        with pytest.raises(LockError):
            await _executor(provider, store, sleep).apply(plan)

        assert provider.backend.calls == []
        assert store.lock_info("mock").owner == "other-run"
        other.release()

    @pytest.mark.asyncio
    async def test_stale_plan_rejected(
        self, store: InMemoryStateStore, sleep: RecordingSleep
    ) -> None:
        """Test state moving after planning raises StalePlanError before any call."""
        provider = MockProvider()
        plan = await _plan(provider, store, resource("server", "a"))
        with store.acquire_lock("mock") as lock:
            store.save(ProviderRecord(provider="mock"), lock)

        with pytest.raises(StalePlanError) as exc_info:
            await _executor(provider, store, sleep).apply(plan)

        assert exc_info.value.expected_serial == 0
        assert exc_info.value.actual_serial == 1
        assert provider.backend.calls == []
        assert store.lock_info("mock") is None
        assert store.load("mock").serial == 1
