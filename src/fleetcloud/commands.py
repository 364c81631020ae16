"""Async subprocess execution for CLI-backed providers."""

from __future__ import annotations

import asyncio
import logging
import os

from .errors import AuthenticationFailed, CommandFailed, OperationTimeout

logger = logging.getLogger(__name__)


async def run_command(
    argv: list[str],
    *,
    timeout: float,
    env: dict[str, str] | None = None,
    not_found_message: str | None = None,
) -> str:
    """Run `argv` and return its stdout.

    Args:
        argv: Command and arguments.
        timeout: Seconds before the process is killed.
        env: Extra environment variables (merged with the current env).
        not_found_message: Error text when the binary is missing.

    Raises:
        AuthenticationFailed: The binary is not installed.
        CommandFailed: Non-zero exit status.
        OperationTimeout: The command exceeded its timeout.
    """
    command = " ".join(argv)
    logger.debug("Running command", extra={"command": command})

    full_env = None
    if env:
        full_env = os.environ.copy()
        full_env.update(env)

    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=full_env,
        )
    except FileNotFoundError as e:
        raise AuthenticationFailed(not_found_message or f"Command not found: {argv[0]}") from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError as e:
        process.kill()
        await process.wait()
        raise OperationTimeout(
            f"Command timed out after {timeout}s: {command}", {"command": command}
        ) from e

    if process.returncode != 0:
        raise CommandFailed(command, process.returncode, stderr.decode(errors="replace"))
    return stdout.decode(errors="replace")
