"""fleetcloud CLI.

Usage:
    fleetcloud auth               # Check credentials for every provider
    fleetcloud plan               # Show what apply would change
    fleetcloud apply --yes        # Reconcile backends with the resource file
    fleetcloud destroy cloudflare # Delete every managed resource of a provider
    fleetcloud status             # Show persisted state and lock holders
    fleetcloud unlock sakura-cloud --force
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import click

from .config import DEFAULT_RESOURCE_FILE, EngineConfig
from .errors import CloudError, ExitCode, LockError
from .loader import CloudDocument, load_cloud_file
from .main import (
    build_reconciler,
    run_apply,
    run_auth,
    run_destroy,
    run_plan,
    run_session,
    setup_logging,
)
from .provider import ProviderRegistry, default_registry
from .reconciler import ReconcilePlan, Reconciler
from .reporting import format_state, to_json
from .resources import ResourceSet
from .state_store import FileStateStore, StateStore


@dataclass
class CliState:
    """Objects shared by all commands; tests pre-populate registry and store."""

    config: EngineConfig | None = None
    resource_file: Path | None = None
    registry: ProviderRegistry | None = None
    store: StateStore | None = None

    def get_config(self) -> EngineConfig:
        assert self.config is not None, "CLI group callback did not run"
        return self.config

    def get_store(self) -> StateStore:
        if self.store is None:
            config = self.get_config()
            self.store = FileStateStore(config.resolved_state_dir, config.lock_ttl_seconds)
        return self.store


def _fail(ctx: click.Context, error: CloudError) -> NoReturn:
    click.secho(f"Error: {error}", err=True, fg="red")
    ctx.exit(int(error.exit_code))


def _load_document(state: CliState, *, required: bool = True) -> CloudDocument:
    path = state.resource_file
    assert path is not None
    if not required and not path.exists():
        registry = state.registry or default_registry()
        return CloudDocument(
            resources=ResourceSet(), providers={name: {} for name in registry.names()}
        )
    return load_cloud_file(path)


def _run(
    ctx: click.Context,
    operation: Callable[[Reconciler, CloudDocument], Awaitable[ExitCode]],
    *,
    document_required: bool = True,
) -> None:
    state: CliState = ctx.obj
    try:
        document = _load_document(state, required=document_required)
        reconciler = build_reconciler(
            document, state.get_config(), registry=state.registry, store=state.get_store()
        )
        code = asyncio.run(run_session(reconciler, lambda r: operation(r, document)))
    except CloudError as e:
        _fail(ctx, e)
    ctx.exit(int(code))


def _confirm(yes: bool, action: str) -> Callable[[ReconcilePlan], bool]:
    def confirm(reconcile_plan: ReconcilePlan) -> bool:
        if yes:
            return True
        prompt = f"Do you want to {action}?"
        if reconcile_plan.has_deletes:
            prompt = f"{reconcile_plan.summary().delete} resource(s) will be DELETED. {prompt}"
        return click.confirm(prompt, default=False)

    return confirm


def _check_json_needs_yes(json_output: bool, yes: bool) -> None:
    if json_output and not yes:
        raise click.UsageError("--json requires --yes (no interactive confirmation)")


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="fleetcloud")
@click.option(
    "--file",
    "-f",
    "resource_file",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar="FLEETCLOUD_FILE",
    help=f"Resource file (default: <project>/{DEFAULT_RESOURCE_FILE})",
)
@click.option("--log-level", default=None, help="Override FLEETCLOUD_LOG_LEVEL")
@click.pass_context
def cli(ctx: click.Context, resource_file: Path | None, log_level: str | None) -> None:
    """fleetcloud: declarative resources across cloud providers.

    \b
    Quick Start:
        fleetcloud auth        # Verify provider credentials
        fleetcloud plan        # Preview changes
        fleetcloud apply       # Apply them
    """
    state = ctx.ensure_object(CliState)
    if state.config is None:
        try:
            state.config = EngineConfig.from_env()
        except CloudError as e:
            _fail(ctx, e)

    config = state.get_config()
    setup_logging(log_level or config.log_level, config.log_json)

    if resource_file is not None:
        state.resource_file = resource_file
    elif state.resource_file is None:
        state.resource_file = config.project_dir / DEFAULT_RESOURCE_FILE


# =============================================================================
# Commands
# =============================================================================


@cli.command()
@click.option("--json", "json_output", is_flag=True, help="Emit JSON")
@click.pass_context
def auth(ctx: click.Context, json_output: bool) -> None:
    """Check credentials and tooling for every provider."""

    async def operation(reconciler: Reconciler, document: CloudDocument) -> ExitCode:
        return await run_auth(reconciler, click.echo, json_output)

    _run(ctx, operation, document_required=False)


@cli.command()
@click.option("--json", "json_output", is_flag=True, help="Emit JSON")
@click.option("--show-unchanged", is_flag=True, help="Also list resources without changes")
@click.pass_context
def plan(ctx: click.Context, json_output: bool, show_unchanged: bool) -> None:
    """Show the changes apply would make."""

    async def operation(reconciler: Reconciler, document: CloudDocument) -> ExitCode:
        return await run_plan(
            reconciler, document, click.echo,
            json_output=json_output, show_unchanged=show_unchanged,
        )

    _run(ctx, operation)


@cli.command()
@click.option("--yes", "-y", is_flag=True, help="Apply without asking for confirmation")
@click.option("--json", "json_output", is_flag=True, help="Emit JSON (requires --yes)")
@click.pass_context
def apply(ctx: click.Context, yes: bool, json_output: bool) -> None:
    """Reconcile every provider with the resource file."""
    _check_json_needs_yes(json_output, yes)

    async def operation(reconciler: Reconciler, document: CloudDocument) -> ExitCode:
        return await run_apply(
            reconciler, document, click.echo, _confirm(yes, "apply these changes"),
            json_output=json_output,
        )

    _run(ctx, operation)


@cli.command()
@click.argument("providers", nargs=-1)
@click.option("--yes", "-y", is_flag=True, help="Destroy without asking for confirmation")
@click.option("--json", "json_output", is_flag=True, help="Emit JSON (requires --yes)")
@click.pass_context
def destroy(ctx: click.Context, providers: tuple[str, ...], yes: bool, json_output: bool) -> None:
    """Delete every managed resource of PROVIDERS (default: all)."""
    _check_json_needs_yes(json_output, yes)

    async def operation(reconciler: Reconciler, document: CloudDocument) -> ExitCode:
        return await run_destroy(
            reconciler, providers or None, click.echo,
            _confirm(yes, "destroy these resources"),
            json_output=json_output,
        )

    _run(ctx, operation)


@cli.command()
@click.option("--json", "json_output", is_flag=True, help="Emit JSON")
@click.pass_context
def status(ctx: click.Context, json_output: bool) -> None:
    """Show persisted state. Never contacts a backend or takes a lock."""
    state: CliState = ctx.obj
    try:
        global_state = state.get_store().load_all()
    except CloudError as e:
        _fail(ctx, e)
    click.echo(to_json(global_state) if json_output else format_state(global_state))


@cli.command()
@click.argument("provider")
@click.option("--force", is_flag=True, help="Remove the lock even if its owner looks alive")
@click.pass_context
def unlock(ctx: click.Context, provider: str, force: bool) -> None:
    """Remove PROVIDER's state lock.

    Without --force only stale locks (expired, or owned by a dead process
    on this host) are removed.
    """
    store = ctx.obj.get_store()
    try:
        info = store.lock_info(provider)
        if info is None:
            click.echo(f"No lock held for '{provider}'.")
            return
        if not force and not store.is_stale(info):
            raise LockError(
                f"Lock for '{provider}' is held by {info.owner} since "
                f"{info.acquired_at.isoformat()}; use --force to remove it",
                {"provider": provider, "owner": info.owner},
            )
        store.force_unlock(provider)
    except CloudError as e:
        _fail(ctx, e)
    click.secho(f"Removed lock for '{provider}' held by {info.owner}.", fg="green")


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
