"""ssh-agent lifecycle for BuildKit SSH forwarding.

When a Dockerfile uses ``RUN --mount=type=ssh``, the private key is loaded
into a dedicated ssh-agent listening on a fixed socket and the build is run
with ``--ssh default=<socket>``. The agent is killed when the build finishes.
"""

from __future__ import annotations

import base64
import binascii
import re
from pathlib import Path
from types import TracebackType

from ecr_deploy.errors import BuildError
from ecr_deploy.logging import get_logger
from ecr_deploy.pipeline.commands import CommandRunner

_AGENT_PID_PATTERN = re.compile(r"SSH_AGENT_PID=(\d+)")


def decode_private_key(encoded: str) -> str:
    """Decode a base64-encoded private key, ensuring a trailing newline for ssh-add."""
    try:
        key = base64.b64decode(encoded, validate=False).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise BuildError(
            "github_ssh_key is not valid base64",
            hint="Encode the private key with `base64 -w0 id_ed25519` before storing it as a secret.",
        ) from e
    return key if key.endswith("\n") else key + "\n"


class SshAgent:
    """A private ssh-agent bound to one socket.

    Attributes:
        runner: Command runner used for ssh-agent and ssh-add
        socket_path: Path of the agent socket
        timeout: Timeout for each ssh command
    """

    def __init__(self, runner: CommandRunner, socket_path: str, timeout: float = 30) -> None:
        self.runner = runner
        self.socket_path = socket_path
        self.timeout = timeout
        self.pid: str | None = None
        self.logger = get_logger(__name__)

    @property
    def env(self) -> dict[str, str]:
        return {"SSH_AUTH_SOCK": self.socket_path}

    async def start(self) -> None:
        # A socket left behind by an earlier run makes ssh-agent fail to bind
        Path(self.socket_path).unlink(missing_ok=True)

        result = await self.runner.run(["ssh-agent", "-a", self.socket_path], timeout=self.timeout)
        if not result.success:
            raise BuildError(
                f"Unable to start ssh-agent: {result.details}",
                hint="SSH forwarding needs openssh-client on the runner.",
            )

        match = _AGENT_PID_PATTERN.search(result.stdout)
        self.pid = match.group(1) if match else None
        self.logger.info("ssh_agent_started", socket=self.socket_path, pid=self.pid)

    async def add_key(self, encoded_key: str) -> None:
        """Load a base64-encoded private key into the agent."""
        key = decode_private_key(encoded_key)
        result = await self.runner.run(
            ["ssh-add", "-"],
            input_text=key,
            env=self.env,
            timeout=self.timeout,
            secrets=[key.strip()],
        )
        if not result.success:
            raise BuildError(
                f"ssh-add rejected github_ssh_key: {result.details}",
                hint="The key must be an unencrypted private key.",
            )
        self.logger.info("ssh_key_added", socket=self.socket_path)

    async def stop(self) -> None:
        if self.pid is None:
            return
        result = await self.runner.run(
            ["ssh-agent", "-k"],
            env={**self.env, "SSH_AGENT_PID": self.pid},
            timeout=self.timeout,
        )
        if result.success:
            self.logger.info("ssh_agent_stopped", pid=self.pid)
        else:
            self.logger.warning("ssh_agent_stop_failed", pid=self.pid, error=result.details)
        self.pid = None

    async def __aenter__(self) -> SshAgent:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.stop()
