"""Runtime wiring: logging, provider construction and the async command flows.

The CLI parses arguments and renders output; everything that needs the
event loop lives here so one invocation runs in a single `asyncio.run`
(HTTP clients are bound to the loop that created them).
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from collections.abc import Awaitable, Callable, Iterable, Mapping
from datetime import UTC, datetime

from .config import EngineConfig
from .errors import CloudError, ExitCode
from .loader import CloudDocument
from .provider import CloudProvider, ProviderRegistry, default_registry
from .reconciler import ReconcilePlan, Reconciler, ReconcileResult
from .reporting import (
    format_auth,
    format_reconcile_plan,
    format_reconcile_result,
    to_json,
)
from .state_store import FileStateStore, StateStore

logger = logging.getLogger(__name__)

Echo = Callable[[str], None]
Confirm = Callable[[ReconcilePlan], bool]

# LogRecord attributes that are not user supplied `extra` fields
_RESERVED_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO", json_output: bool = False) -> None:
    """Configure root logging on stderr, keeping stdout for command output."""
    handler = logging.StreamHandler(sys.stderr)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    # Reduce noise from the HTTP stack
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def build_providers(
    document: CloudDocument,
    config: EngineConfig,
    registry: ProviderRegistry | None = None,
) -> dict[str, CloudProvider]:
    """Instantiate every provider that is configured or referenced.

    Raises:
        ProviderNotFound: A provider name has no registered backend.
        InvalidConfig: Provider settings fail validation.
    """
    registry = registry or default_registry()
    providers: dict[str, CloudProvider] = {}
    for name in document.provider_names():
        settings = dict(document.providers.get(name, {}))
        settings.setdefault("command_timeout_seconds", config.command_timeout_seconds)
        providers[name] = registry.create(name, **settings)
    return providers


def build_reconciler(
    document: CloudDocument,
    config: EngineConfig,
    *,
    registry: ProviderRegistry | None = None,
    store: StateStore | None = None,
) -> Reconciler:
    store = store or FileStateStore(config.resolved_state_dir, config.lock_ttl_seconds)
    return Reconciler(
        build_providers(document, config, registry),
        store,
        retry=config.retry,
        action_timeout=float(config.command_timeout_seconds),
    )


def exit_code_for(
    errors: Mapping[str, Exception], result: ReconcileResult | None = None
) -> ExitCode:
    """Most specific exit code for a run.

    Provider-level errors win over failed actions; among provider errors
    the first in provider order decides.
    """
    if errors:
        first = errors[min(errors)]
        return first.exit_code if isinstance(first, CloudError) else ExitCode.APPLY_FAILED
    if result is not None:
        if result.cancelled:
            return ExitCode.INTERRUPTED
        if not result.is_success():
            return ExitCode.APPLY_FAILED
    return ExitCode.SUCCESS


def install_signal_handlers(reconciler: Reconciler) -> None:
    """Route SIGINT/SIGTERM to a cooperative reconciler shutdown."""
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        reconciler.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
        except (NotImplementedError, RuntimeError):
            # Not available on this platform or outside the main thread
            logger.debug("Signal handlers unavailable", extra={"signal": sig.name})


async def run_session(
    reconciler: Reconciler,
    operation: Callable[[Reconciler], Awaitable[ExitCode]],
) -> ExitCode:
    """Run one command against `reconciler` and close its providers."""
    install_signal_handlers(reconciler)
    try:
        return await operation(reconciler)
    finally:
        await reconciler.close()


async def run_auth(reconciler: Reconciler, echo: Echo, json_output: bool = False) -> ExitCode:
    statuses = await reconciler.check_auth()
    if json_output:
        echo(json.dumps({name: s.to_dict() for name, s in sorted(statuses.items())}, indent=2))
    else:
        echo(format_auth(statuses))
    if all(s.authenticated for s in statuses.values()):
        return ExitCode.SUCCESS
    return ExitCode.AUTH_ERROR


async def run_plan(
    reconciler: Reconciler,
    document: CloudDocument,
    echo: Echo,
    *,
    json_output: bool = False,
    show_unchanged: bool = False,
) -> ExitCode:
    reconcile_plan = await reconciler.plan(document.resources)
    if json_output:
        echo(to_json(reconcile_plan))
    else:
        echo(format_reconcile_plan(reconcile_plan, show_unchanged=show_unchanged))
    return exit_code_for(reconcile_plan.errors)


async def run_apply(
    reconciler: Reconciler,
    document: CloudDocument,
    echo: Echo,
    confirm: Confirm,
    *,
    json_output: bool = False,
) -> ExitCode:
    reconcile_plan = await reconciler.plan(document.resources)
    return await _apply_confirmed(reconciler, reconcile_plan, echo, confirm, json_output)


async def run_destroy(
    reconciler: Reconciler,
    provider_names: Iterable[str] | None,
    echo: Echo,
    confirm: Confirm,
    *,
    json_output: bool = False,
) -> ExitCode:
    reconcile_plan = await reconciler.plan_destroy(provider_names)
    return await _apply_confirmed(reconciler, reconcile_plan, echo, confirm, json_output)


async def _apply_confirmed(
    reconciler: Reconciler,
    reconcile_plan: ReconcilePlan,
    echo: Echo,
    confirm: Confirm,
    json_output: bool,
) -> ExitCode:
    if not json_output:
        echo(format_reconcile_plan(reconcile_plan))

    if not reconcile_plan.has_changes:
        if json_output:
            echo(to_json(ReconcileResult(errors=dict(reconcile_plan.errors))))
        return exit_code_for(reconcile_plan.errors)

    if not confirm(reconcile_plan):
        logger.info("Apply declined")
        if not json_output:
            echo("Apply cancelled.")
        return exit_code_for(reconcile_plan.errors)

    result = await reconciler.apply(reconcile_plan)
    echo(to_json(result) if json_output else format_reconcile_result(result))
    return exit_code_for(result.errors, result)
