"""Docker registry sessions and pushes for ecr-deploy.

Logins, logouts, and pushes go through the docker CLI so that the session is
stored in the same credential store later pipeline steps would read; that is
also why every login made here is logged out again before the run ends.

Key Components:
- RegistryClient: docker login / logout / push --all-tags
- MultiRegistryAuthenticator: exchanges ECR credentials for the primary and
  every extra registry and records successful logins in the RunState

Example usage:
    >>> client = RegistryClient(CommandRunner(), DockerConfig())
    >>> authenticator = MultiRegistryAuthenticator(client, EcrTokenExchange())
    >>> state = RunState()
    >>> await authenticator.authenticate_primary(inputs, state)
    >>> result = await client.push_all_tags("123.dkr.ecr.us-east-1.amazonaws.com/github/org/repo/main")
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from enum import Enum

from pydantic import BaseModel, Field

from ecr_deploy.config import ActionInputs, DockerConfig
from ecr_deploy.errors import AuthError
from ecr_deploy.logging import get_logger
from ecr_deploy.pipeline.commands import CommandRunner
from ecr_deploy.pipeline.ecr import EcrTokenExchange
from ecr_deploy.pipeline.registries import RegistryCredential, region_from_host
from ecr_deploy.pipeline.state import RunState

ECR_USERNAME = "AWS"


class PushStatus(str, Enum):
    """Status of a Docker image push operation.

    Attributes:
        SKIPPED: Push was not attempted
        SUCCEEDED: Push completed successfully
        FAILED: Push encountered an error
    """

    SKIPPED = "skipped"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PushResult(BaseModel):
    """Result of pushing every tag of one repository.

    Attributes:
        success: Whether the push completed successfully
        repository: Repository whose tags were pushed
        duration_seconds: Total push time in seconds
        error: Error message if push failed, None otherwise
        status: Final push status
    """

    success: bool = Field(default=False, description="Push success flag")
    repository: str = Field(description="Repository pushed")
    duration_seconds: float = Field(default=0.0, ge=0.0, description="Push duration")
    error: str | None = Field(default=None, description="Error message if failed")
    status: PushStatus = Field(default=PushStatus.SKIPPED, description="Push status")


class RegistrySession(BaseModel):
    """An authenticated docker CLI session against one registry.

    Attributes:
        host: Registry host logged into
        region: AWS region the password was issued for
        username: Login username
    """

    host: str = Field(description="Registry host")
    region: str = Field(description="AWS region")
    username: str = Field(default=ECR_USERNAME, description="Login username")


class RegistryClient:
    """docker CLI wrapper for registry login, logout, and push.

    Attributes:
        runner: Command runner used for every docker invocation
        config: Docker configuration
        logger: Structured logger instance
    """

    def __init__(self, runner: CommandRunner, config: DockerConfig) -> None:
        self.runner = runner
        self.config = config
        self.logger = get_logger(__name__)

    async def login(self, host: str, password: str, username: str = ECR_USERNAME) -> bool:
        """Log the docker CLI into a registry.

        The password is written to stdin and never appears in the argument list.

        Returns:
            True if the login succeeded
        """
        result = await self.runner.run(
            ["docker", "login", "--username", username, "--password-stdin", host],
            input_text=password,
            timeout=self.config.command_timeout_seconds,
            secrets=[password],
        )

        if result.success:
            self.logger.info("registry_login_succeeded", host=host, username=username)
        else:
            self.logger.error("registry_login_failed", host=host, error=result.details)
        return result.success

    async def logout(self, host: str) -> bool:
        """Log the docker CLI out of a registry.

        Logging out of a host with no stored session is not an error.

        Returns:
            True if docker reported success
        """
        result = await self.runner.run(
            ["docker", "logout", host],
            timeout=self.config.command_timeout_seconds,
        )

        if result.success:
            self.logger.info("registry_logout_succeeded", host=host)
        else:
            self.logger.warning("registry_logout_failed", host=host, error=result.details)
        return result.success

    async def push_all_tags(self, repository: str) -> PushResult:
        """Push every local tag of a repository.

        Args:
            repository: Repository name without tag (host/path)

        Returns:
            PushResult with status and timing
        """
        start_time = time.monotonic()
        self.logger.info("docker_push_started", repository=repository)

        result = await self.runner.run(
            ["docker", "push", "--all-tags", repository],
            timeout=self.config.push_timeout_seconds,
            stream=True,
        )
        duration = time.monotonic() - start_time

        if not result.success:
            self.logger.error(
                "docker_push_failed",
                repository=repository,
                error=result.details,
                duration_seconds=round(duration, 2),
            )
            return PushResult(
                success=False,
                repository=repository,
                duration_seconds=duration,
                error=result.details,
                status=PushStatus.FAILED,
            )

        self.logger.info(
            "docker_push_succeeded",
            repository=repository,
            duration_seconds=round(duration, 2),
        )
        return PushResult(
            success=True,
            repository=repository,
            duration_seconds=duration,
            status=PushStatus.SUCCEEDED,
        )


class MultiRegistryAuthenticator:
    """Authenticates the docker CLI against the primary and extra ECR registries.

    Attributes:
        client: Registry client performing the docker login
        token_exchange: ECR credential exchange
        logger: Structured logger instance
    """

    def __init__(self, client: RegistryClient, token_exchange: EcrTokenExchange) -> None:
        self.client = client
        self.token_exchange = token_exchange
        self.logger = get_logger(__name__)

    async def authenticate(
        self,
        host: str,
        access_key_id: str,
        secret_access_key: str,
        state: RunState,
    ) -> RegistrySession:
        """Exchange credentials for a password and log into one registry.

        Args:
            host: Registry host; the region is its fourth dot-separated field
            access_key_id: AWS access key ID
            secret_access_key: AWS secret access key
            state: Run state recording successful logins

        Returns:
            RegistrySession for the logged-in host

        Raises:
            AuthError: If the exchange fails, returns an empty token, or the
                login is rejected
        """
        region = region_from_host(host)
        password = await self.token_exchange.get_login_password(
            access_key_id, secret_access_key, region
        )

        if not password:
            self.logger.error("ecr_password_empty", host=host, region=region)
            raise AuthError(
                f"Unable to obtain ECR password for {host}",
                hint="The credential exchange returned an empty token; verify the access key pair.",
                exit_code=4,
            )

        if not await self.client.login(host, password):
            raise AuthError(
                f"docker login to {host} was rejected",
                hint="Verify that the registry host matches the account the access key belongs to.",
                exit_code=1,
            )

        state.record_login(host)
        return RegistrySession(host=host, region=region)

    async def authenticate_primary(self, inputs: ActionInputs, state: RunState) -> RegistrySession:
        """Log into the primary registry; any failure is fatal."""
        session = await self.authenticate(
            inputs.registry_host,
            inputs.access_key_id,
            inputs.secret_access_key.get_secret_value(),
            state,
        )
        self.logger.info("primary_registry_authenticated", host=session.host, region=session.region)
        return session

    async def authenticate_extras(
        self,
        credentials: Sequence[RegistryCredential],
        state: RunState,
    ) -> list[RegistrySession]:
        """Log into each extra registry independently.

        A failure is logged and skipped; it never aborts the run.

        Returns:
            Sessions of the registries that logged in, in input order
        """
        sessions: list[RegistrySession] = []
        for credential in credentials:
            try:
                session = await self.authenticate(
                    credential.host,
                    credential.access_key_id,
                    credential.secret_access_key.get_secret_value(),
                    state,
                )
            except AuthError as e:
                self.logger.warning(
                    "extra_registry_auth_failed",
                    host=credential.host,
                    error=e.message,
                )
                continue
            sessions.append(session)

        self.logger.info(
            "extra_registries_authenticated",
            succeeded=[s.host for s in sessions],
            attempted=len(credentials),
        )
        return sessions
