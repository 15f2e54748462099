"""Async process invocation for the docker, ssh-agent, and ssh-add CLIs.

Commands are always passed as discrete argument lists to
``asyncio.create_subprocess_exec``; nothing is ever interpolated into a shell
string. Secret values that must appear in an argument list are masked in every
log line and in the recorded command.

Example usage:
    >>> runner = CommandRunner()
    >>> result = await runner.run(["docker", "logout", "ghcr.io"], timeout=30)
    >>> if not result.success:
    ...     print(result.stderr)
"""

from __future__ import annotations

import asyncio
import os
import time
from collections.abc import Iterable, Mapping, Sequence

from pydantic import BaseModel, Field

from ecr_deploy.logging import REDACTED, get_logger


class CommandResult(BaseModel):
    """Outcome of one external command.

    Attributes:
        command: Executed argument list with secrets masked
        returncode: Process exit code (None if the process never finished)
        stdout: Captured standard output (empty when streamed)
        stderr: Captured standard error (empty when streamed)
        duration_seconds: Wall-clock duration of the command
        timed_out: Whether the command was killed after its timeout
        tool_available: False when the executable could not be found
    """

    command: list[str] = Field(description="Masked argument list")
    returncode: int | None = Field(default=None, description="Exit code")
    stdout: str = Field(default="", description="Captured stdout")
    stderr: str = Field(default="", description="Captured stderr")
    duration_seconds: float = Field(default=0.0, ge=0.0, description="Command duration")
    timed_out: bool = Field(default=False, description="Timeout flag")
    tool_available: bool = Field(default=True, description="Executable found flag")

    @property
    def success(self) -> bool:
        """True when the command ran to completion with exit code 0."""
        return self.returncode == 0 and not self.timed_out and self.tool_available

    @property
    def details(self) -> str:
        """Best available explanation of a failure."""
        return self.stderr.strip() or self.stdout.strip() or f"exit code {self.returncode}"


def mask_command(command: Sequence[str], secrets: Iterable[str] = ()) -> list[str]:
    """Return a copy of the command with every secret substring masked."""
    masked = list(command)
    for secret in secrets:
        if not secret:
            continue
        masked = [part.replace(secret, REDACTED) for part in masked]
    return masked


class CommandRunner:
    """Runs external commands with captured or streamed output.

    Attributes:
        logger: Structured logger instance
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)

    async def run(
        self,
        command: Sequence[str],
        *,
        input_text: str | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        stream: bool = False,
        secrets: Iterable[str] = (),
    ) -> CommandResult:
        """Run a command and wait for it to finish.

        Args:
            command: Executable and arguments
            input_text: Text written to the process stdin, then closed
            env: Variables added on top of the current process environment
            timeout: Seconds before the process is killed (None waits forever)
            stream: Inherit stdout/stderr instead of capturing them
            secrets: Values masked in logs and in the returned command

        Returns:
            CommandResult describing the outcome; failures are never raised
        """
        secrets = [s for s in secrets if s]
        masked = mask_command(command, secrets)
        start_time = time.monotonic()

        self.logger.debug("running_command", command=" ".join(masked), timeout=timeout)

        process_env = None
        if env:
            process_env = {**os.environ, **env}

        pipe = None if stream else asyncio.subprocess.PIPE

        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE if input_text is not None else asyncio.subprocess.DEVNULL,
                stdout=pipe,
                stderr=pipe,
                env=process_env,
            )
        except FileNotFoundError:
            self.logger.error("command_not_found", executable=command[0])
            return CommandResult(
                command=masked,
                stderr=f"Command not found: {command[0]}",
                duration_seconds=time.monotonic() - start_time,
                tool_available=False,
            )

        stdin_bytes = input_text.encode("utf-8") if input_text is not None else None

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                proc.communicate(stdin_bytes), timeout=timeout
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            self.logger.error("command_timeout", command=" ".join(masked), timeout=timeout)
            return CommandResult(
                command=masked,
                returncode=proc.returncode,
                stderr=f"Command timed out after {timeout} seconds",
                duration_seconds=time.monotonic() - start_time,
                timed_out=True,
            )

        stdout = mask_command([(stdout_bytes or b"").decode("utf-8", errors="replace")], secrets)[0]
        stderr = mask_command([(stderr_bytes or b"").decode("utf-8", errors="replace")], secrets)[0]
        duration = time.monotonic() - start_time

        if proc.returncode != 0:
            self.logger.warning(
                "command_failed",
                command=" ".join(masked),
                returncode=proc.returncode,
                stderr=stderr[:500],
            )
        else:
            self.logger.debug(
                "command_succeeded",
                command=" ".join(masked),
                duration_seconds=round(duration, 2),
            )

        return CommandResult(
            command=masked,
            returncode=proc.returncode,
            stdout=stdout,
            stderr=stderr,
            duration_seconds=duration,
        )
