"""Tests for the fleetcloud CLI."""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
import yaml
from click.testing import CliRunner, Result
from cloud_mock import MockProvider

from fleetcloud.cli import CliState, cli
from fleetcloud.config import EngineConfig
from fleetcloud.errors import ExitCode
from fleetcloud.provider import ProviderRegistry
from fleetcloud.state_store import InMemoryStateStore, LockInfo

Invoke = Callable[..., Result]


def _write_resources(dir_path: Path, *resources: dict[str, Any]) -> Path:
    path = dir_path / "fleetcloud.yaml"
    path.write_text(
        yaml.dump({"providers": {"mock": {}}, "resources": list(resources)})
    )
    return path


def _server(name: str, **config: Any) -> dict[str, Any]:
    return {"type": "server", "id": name, "provider": "mock", "config": config}


@pytest.fixture
def provider() -> MockProvider:
    return MockProvider()


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def invoke(tmp_path: Path, provider: MockProvider, store: InMemoryStateStore) -> Invoke:
    registry = ProviderRegistry()
    registry.register("mock", lambda **settings: provider)
    runner = CliRunner()

    def _invoke(*args: str, input: str | None = None) -> Result:
        state = CliState(
            config=EngineConfig(project_dir=tmp_path, log_level="CRITICAL"),
            registry=registry,
            store=store,
        )
        return runner.invoke(cli, list(args), obj=state, input=input)

    return _invoke


class TestPlanCommand:
    """Tests for `fleetcloud plan`."""

    def test_plan_text(self, invoke: Invoke, tmp_path: Path) -> None:
        """Test the plan lists pending creates and a summary."""
        _write_resources(tmp_path, _server("web", core=2))

        result = invoke("plan")

        assert result.exit_code == ExitCode.SUCCESS
        assert "+ server:web: Create server 'web'" in result.output
        assert "Total: 1 to create, 0 to update, 0 to delete, 0 unchanged" in result.output

    def test_plan_json(self, invoke: Invoke, tmp_path: Path) -> None:
        """Test --json emits a parseable plan document."""
        _write_resources(tmp_path, _server("web"))

        result = invoke("plan", "--json")
        data = json.loads(result.output)

        assert data["has_changes"] is True
        assert data["plans"]["mock"]["summary"]["create"] == 1

    def test_plan_never_mutates(
        self, invoke: Invoke, tmp_path: Path, provider: MockProvider
    ) -> None:
        """Test planning makes no backend calls and saves nothing."""
        provider.backend.add("server", "orphan")
        _write_resources(tmp_path, _server("web"))

        invoke("plan")

        assert provider.backend.calls == []
        assert "server:orphan" in provider.backend.resources

    def test_missing_resource_file(self, invoke: Invoke) -> None:
        """Test a missing file is a configuration error."""
        result = invoke("plan")

        assert result.exit_code == ExitCode.CONFIG_ERROR
        assert "Resource file not found" in result.output

    def test_invalid_resource_file(self, invoke: Invoke, tmp_path: Path) -> None:
        """Test validation errors exit with the config code."""
        (tmp_path / "fleetcloud.yaml").write_text("resources:\n  - {type: server}\n")

        result = invoke("plan")

        assert result.exit_code == ExitCode.CONFIG_ERROR
        assert "Validation failed" in result.output

    def test_unregistered_provider(self, invoke: Invoke, tmp_path: Path) -> None:
        """Test a resource for an unknown backend is a configuration error."""
        path = tmp_path / "fleetcloud.yaml"
        path.write_text(
            yaml.dump({"resources": [{"type": "server", "id": "a", "provider": "nope"}]})
        )

        result = invoke("plan")

        assert result.exit_code == ExitCode.CONFIG_ERROR
        assert "Provider not found: nope" in result.output

    def test_explicit_file_option(self, invoke: Invoke, tmp_path: Path) -> None:
        """Test --file points at another resource file."""
        other = tmp_path / "other"
        other.mkdir()
        path = _write_resources(other, _server("api"))

        result = invoke("--file", str(path), "plan")

        assert "server:api" in result.output


class TestApplyCommand:
    """Tests for `fleetcloud apply`."""

    def test_apply_yes(self, invoke: Invoke, tmp_path: Path, provider: MockProvider) -> None:
        """Test --yes applies without prompting."""
        _write_resources(tmp_path, _server("web", core=2))

        result = invoke("apply", "--yes")

        assert result.exit_code == ExitCode.SUCCESS
        assert provider.backend.snapshot() == {"server:web": {"core": 2}}
        assert "Apply succeeded: 1 succeeded, 0 failed" in result.output

    def test_prompt_declined(self, invoke: Invoke, tmp_path: Path, provider: MockProvider) -> None:
        """Test answering no leaves the backend untouched."""
        _write_resources(tmp_path, _server("web"))

        result = invoke("apply", input="n\n")

        assert result.exit_code == ExitCode.SUCCESS
        assert "Apply cancelled." in result.output
        assert provider.backend.resources == {}

    def test_prompt_accepted(self, invoke: Invoke, tmp_path: Path, provider: MockProvider) -> None:
        """Test answering yes applies the plan."""
        _write_resources(tmp_path, _server("web"))

        result = invoke("apply", input="y\n")

        assert result.exit_code == ExitCode.SUCCESS
        assert "server:web" in provider.backend.resources

    def test_prompt_warns_about_deletes(
        self, invoke: Invoke, tmp_path: Path, provider: MockProvider
    ) -> None:
        """Test the confirmation names how many resources will be deleted."""
        provider.backend.add("server", "orphan")
        _write_resources(tmp_path)

        result = invoke("apply", input="n\n")

        assert "1 resource(s) will be DELETED" in result.output

    def test_no_changes(self, invoke: Invoke, tmp_path: Path) -> None:
        """Test a converged system applies nothing."""
        _write_resources(tmp_path, _server("web"))
        invoke("apply", "--yes")

        result = invoke("apply", "--yes")

        assert result.exit_code == ExitCode.SUCCESS
        assert "No changes." in result.output

    def test_json_requires_yes(self, invoke: Invoke, tmp_path: Path) -> None:
        """Test --json without --yes is a usage error."""
        _write_resources(tmp_path, _server("web"))

        result = invoke("apply", "--json")

        assert result.exit_code == 2
        assert "--json requires --yes" in result.output

    def test_json_result(self, invoke: Invoke, tmp_path: Path) -> None:
        """Test --json --yes emits the apply result."""
        _write_resources(tmp_path, _server("web"))

        result = invoke("apply", "--yes", "--json")
        data = json.loads(result.output)

        assert data["success"] is True
        assert data["results"]["mock"]["succeeded"][0]["action_id"] == "create-server:web"

    def test_failed_action_exit_code(
        self, invoke: Invoke, tmp_path: Path, provider: MockProvider
    ) -> None:
        """Test a failed action exits with the apply-failed code."""
        provider.backend.fail_always("server:web")
        _write_resources(tmp_path, _server("web"))

        result = invoke("apply", "--yes")

        assert result.exit_code == ExitCode.APPLY_FAILED
        assert "FAIL  Failed: create-server:web" in result.output

    def test_auth_failure_exit_code(
        self, invoke: Invoke, tmp_path: Path, provider: MockProvider
    ) -> None:
        """Test rejected credentials exit with the auth code."""
        provider.authenticated = False
        _write_resources(tmp_path, _server("web"))

        result = invoke("apply", "--yes")

        assert result.exit_code == ExitCode.AUTH_ERROR
        assert "credentials rejected" in result.output

    def test_locked_exit_code(
        self, invoke: Invoke, tmp_path: Path, store: InMemoryStateStore
    ) -> None:
        """Test a held lock exits with the lock code."""
        store.acquire_lock("mock", owner="ci-job-7")
        _write_resources(tmp_path, _server("web"))

        result = invoke("apply", "--yes")

        assert result.exit_code == ExitCode.LOCK_ERROR
        assert "ci-job-7" in result.output


class TestDestroyCommand:
    """Tests for `fleetcloud destroy`."""

    def test_destroy_provider(
        self, invoke: Invoke, tmp_path: Path, provider: MockProvider
    ) -> None:
        """Test every managed resource of the provider is deleted."""
        provider.backend.add("server", "a")
        provider.backend.add("server", "keep", externally_managed=True)
        _write_resources(tmp_path, _server("a"))

        result = invoke("destroy", "mock", "--yes")

        assert result.exit_code == ExitCode.SUCCESS
        assert sorted(provider.backend.resources) == ["server:keep"]

    def test_destroy_unknown_provider(self, invoke: Invoke, tmp_path: Path) -> None:
        """Test naming an unconfigured provider is a configuration error."""
        _write_resources(tmp_path)

        result = invoke("destroy", "nope", "--yes")

        assert result.exit_code == ExitCode.CONFIG_ERROR


class TestStatusCommand:
    """Tests for `fleetcloud status`."""

    def test_empty(self, invoke: Invoke) -> None:
        """Test status before any apply."""
        result = invoke("status")

        assert result.exit_code == ExitCode.SUCCESS
        assert "No state recorded." in result.output

    def test_after_apply(self, invoke: Invoke, tmp_path: Path) -> None:
        """Test status lists persisted resources."""
        _write_resources(tmp_path, _server("web"))
        invoke("apply", "--yes")

        result = invoke("status")

        assert "Provider: mock (serial 1" in result.output
        assert "server:web [active]" in result.output
        assert "Total: 1 resource(s)" in result.output

    def test_json(self, invoke: Invoke, tmp_path: Path) -> None:
        """Test --json emits the global state document."""
        _write_resources(tmp_path, _server("web"))
        invoke("apply", "--yes")

        data = json.loads(invoke("status", "--json").output)

        assert "server:web" in data["providers"]["mock"]["resources"]


class TestUnlockCommand:
    """Tests for `fleetcloud unlock`."""

    def test_no_lock(self, invoke: Invoke) -> None:
        """Test unlocking a free provider is a no-op."""
        result = invoke("unlock", "mock")

        assert result.exit_code == ExitCode.SUCCESS
        assert "No lock held for 'mock'." in result.output

    def test_live_lock_needs_force(self, invoke: Invoke, store: InMemoryStateStore) -> None:
        """Test a live lock is kept unless --force is given."""
        store.acquire_lock("mock", owner="busy")

        refused = invoke("unlock", "mock")
        forced = invoke("unlock", "mock", "--force")

        assert refused.exit_code == ExitCode.LOCK_ERROR
        assert forced.exit_code == ExitCode.SUCCESS
        assert "Removed lock for 'mock' held by busy." in forced.output
        assert store.lock_info("mock") is None

    def test_stale_lock_removed(self, invoke: Invoke, store: InMemoryStateStore) -> None:
        """Test an expired lock is removed without --force."""
        old = datetime.now(UTC) - timedelta(days=2)
        store.put_lock("mock", LockInfo("crashed", "elsewhere", 1, "tok", old))

        result = invoke("unlock", "mock")

        assert result.exit_code == ExitCode.SUCCESS
        assert store.lock_info("mock") is None


class TestAuthCommand:
    """Tests for `fleetcloud auth`."""

    def test_authenticated(self, invoke: Invoke) -> None:
        """Test auth works without a resource file."""
        result = invoke("auth")

        assert result.exit_code == ExitCode.SUCCESS
        assert "mock: authenticated (mock account for mock)" in result.output

    def test_not_authenticated(self, invoke: Invoke, provider: MockProvider) -> None:
        """Test a failing provider exits with the auth code."""
        provider.authenticated = False

        result = invoke("auth", "--json")

        assert result.exit_code == ExitCode.AUTH_ERROR
        assert json.loads(result.output)["mock"]["authenticated"] is False


def test_version() -> None:
    """Test --version prints the release."""
    result = CliRunner().invoke(cli, ["--version"])

    assert "0.1.0" in result.output
