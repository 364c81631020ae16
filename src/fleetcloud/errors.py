"""Error taxonomy for the reconciliation engine.

Every failure a provider or the engine can raise is a CloudError. The
`transient` flag drives the executor retry policy: only transient errors
(backend API failures, failed CLI invocations, timeouts) are retried.
Everything else is recorded or propagated on the first occurrence.

PROPAGATION:
- AuthenticationFailed / LockError: fatal for one provider, raised before
  any mutating call.
- InvalidConfig during planning: aborts planning, no partial plan.
- Per-action errors during apply: retried, then recorded in ApplyResult.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Any


class ExitCode(IntEnum):
    """Process exit codes used by the CLI."""

    SUCCESS = 0
    APPLY_FAILED = 1
    CONFIG_ERROR = 2
    LOCK_ERROR = 3
    AUTH_ERROR = 4
    INTERRUPTED = 130


class CloudError(Exception):
    """Base class for all engine and provider errors."""

    transient: bool = False
    exit_code: ExitCode = ExitCode.APPLY_FAILED

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize for structured logs and JSON reports."""
        return {
            "error_type": type(self).__name__,
            "message": self.message,
            "transient": self.transient,
            "details": self.details,
        }


class ProviderNotFound(CloudError):
    """A resource or command referenced a provider that is not configured."""

    exit_code = ExitCode.CONFIG_ERROR

    def __init__(self, provider: str) -> None:
        super().__init__(f"Provider not found: {provider}", {"provider": provider})
        self.provider = provider


class ResourceNotFound(CloudError):
    """The backend has no resource with the requested identity."""

    def __init__(self, resource: str) -> None:
        super().__init__(f"Resource not found: {resource}", {"resource": resource})
        self.resource = resource


class ResourceAlreadyExists(CloudError):
    """A create hit a resource that already exists in the backend."""

    def __init__(self, resource: str) -> None:
        super().__init__(f"Resource already exists: {resource}", {"resource": resource})
        self.resource = resource


class AuthenticationFailed(CloudError):
    """Credentials or tooling for a provider are unavailable."""

    exit_code = ExitCode.AUTH_ERROR


class ApiError(CloudError):
    """Backend API returned an error response."""

    transient = True

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
        transient: bool | None = None,
    ) -> None:
        super().__init__(message, details)
        self.status_code = status_code
        if transient is not None:
            self.transient = transient


class CommandFailed(CloudError):
    """An external CLI tool exited non-zero."""

    transient = True

    def __init__(self, command: str, returncode: int | None, stderr: str = "") -> None:
        message = f"Command failed ({returncode}): {command}"
        if stderr:
            message = f"{message}: {stderr.strip()}"
        super().__init__(
            message,
            {"command": command, "returncode": returncode, "stderr": stderr},
        )
        self.command = command
        self.returncode = returncode
        self.stderr = stderr


class InvalidConfig(CloudError):
    """Desired configuration is malformed or inconsistent."""

    exit_code = ExitCode.CONFIG_ERROR


class StateError(CloudError):
    """State store read/write failure or corrupt state record."""


class StalePlanError(StateError):
    """Persisted state changed between planning and apply."""

    def __init__(self, provider: str, expected_serial: int, actual_serial: int) -> None:
        super().__init__(
            f"State for provider '{provider}' changed since the plan was made "
            f"(planned against serial {expected_serial}, found {actual_serial}); "
            "re-run plan",
            {
                "provider": provider,
                "expected_serial": expected_serial,
                "actual_serial": actual_serial,
            },
        )
        self.provider = provider
        self.expected_serial = expected_serial
        self.actual_serial = actual_serial


class LockError(CloudError):
    """State lock is held by a live owner or its status is ambiguous."""

    exit_code = ExitCode.LOCK_ERROR


class OperationTimeout(CloudError):
    """A backend call did not complete within its time budget."""

    transient = True
