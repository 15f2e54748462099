"""Health check of a freshly built image.

The image is started once as a probe container on the host network and its
HTTP health endpoint is polled a bounded number of times. Whatever the
outcome, including cancellation, the probe container is stopped exactly once
and then removed.

Key Components:
- HealthCheckPolicy: URL and retry bounds of one health check
- ProbeContainer: async context manager owning the probe container
- HealthPoller: single HEAD probe against the health endpoint
- HealthChecker: runs the probe loop and raises HealthError on exhaustion

Example usage:
    >>> checker = HealthChecker(lambda: connect_docker(docker_config))
    >>> policy = HealthCheckPolicy.from_settings(settings, port=3000, path="/healthcheck")
    >>> spec = ProbeRunSpec(image_ref=image_ref, port=3000, healthcheck="/healthcheck")
    >>> await checker.check(policy, spec, state)
"""

from __future__ import annotations

import asyncio
import os
import time
from collections.abc import Callable
from pathlib import Path
from types import TracebackType

import httpx
from docker.errors import APIError, DockerException, NotFound
from pydantic import BaseModel, Field

import docker
from docker.models.containers import Container
from ecr_deploy.config import HealthCheckSettings
from ecr_deploy.errors import ConfigError, HealthError
from ecr_deploy.logging import get_logger
from ecr_deploy.pipeline.state import RunState


class HealthCheckPolicy(BaseModel):
    """Configuration for HTTP health endpoint polling.

    Attributes:
        url: Health check endpoint URL
        max_attempts: Number of probe requests before giving up
        interval_seconds: Time between consecutive probe requests
        timeout_seconds: Maximum time to wait for one probe response
    """

    model_config = {"frozen": True}

    url: str = Field(description="Health check endpoint URL")
    max_attempts: int = Field(default=5, ge=1, description="Probe attempts")
    interval_seconds: float = Field(default=5.0, ge=0.0, description="Poll interval")
    timeout_seconds: float = Field(default=5.0, gt=0.0, description="Request timeout")

    @classmethod
    def from_settings(cls, settings: HealthCheckSettings, *, port: int, path: str) -> HealthCheckPolicy:
        return cls(
            url=f"http://{settings.host}:{port}{path}",
            max_attempts=settings.max_attempts,
            interval_seconds=settings.interval_seconds,
            timeout_seconds=settings.timeout_seconds,
        )


class ProbeRunSpec(BaseModel):
    """How the probe container is started.

    Attributes:
        image_ref: Image to run
        port: Port published and exported as PORT
        healthcheck: Health endpoint path exported as HEALTHCHECK
        env_file: Optional docker --env-file formatted file
        name: Container name
        stop_timeout_seconds: Grace period for docker stop
    """

    model_config = {"frozen": True}

    image_ref: str = Field(description="Image reference")
    port: int = Field(ge=1, le=65535, description="Application port")
    healthcheck: str = Field(description="Health endpoint path")
    env_file: str = Field(default="", description="Environment file")
    name: str = Field(default="test-container", description="Container name")
    stop_timeout_seconds: int = Field(default=10, ge=0, description="Stop timeout")

    def environment(self) -> dict[str, str]:
        """Container environment: the env file's variables, then HEALTHCHECK and PORT."""
        env = read_env_file(Path(self.env_file)) if self.env_file else {}
        env["HEALTHCHECK"] = self.healthcheck
        env["PORT"] = str(self.port)
        return env


class ProbeResult(BaseModel):
    """Result of a single probe request.

    Attributes:
        healthy: Whether the endpoint answered with a non-error status
        url: Probed URL
        response_code: HTTP response code (None if the request failed)
        response_time_seconds: Request duration
        error: Error message if the probe failed
    """

    healthy: bool = Field(default=False, description="Probe success")
    url: str = Field(description="Probed URL")
    response_code: int | None = Field(default=None, description="HTTP status code")
    response_time_seconds: float = Field(default=0.0, ge=0.0, description="Response time")
    error: str | None = Field(default=None, description="Error message")


def read_env_file(path: Path) -> dict[str, str]:
    """Read a file in docker's --env-file format.

    Blank lines and lines starting with ``#`` are skipped. ``KEY=VALUE`` sets
    the value verbatim (no quote processing); a bare ``KEY`` takes its value
    from the current environment and is dropped when unset there.

    Raises:
        ConfigError: If the file cannot be read
    """
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError as e:
        raise ConfigError(
            f"env_file {path} could not be read: {e}",
            hint="The env_file path is relative to the build context.",
        ) from e

    env: dict[str, str] = {}
    for line in lines:
        stripped = line.lstrip()
        if not stripped or stripped.startswith("#"):
            continue
        key, sep, value = stripped.partition("=")
        if sep:
            env[key] = value
        elif key.strip() in os.environ:
            env[key.strip()] = os.environ[key.strip()]
    return env


class ProbeContainer:
    """The ephemeral container started solely for the health check.

    Used as an async context manager: entering runs the container detached,
    leaving stops and removes it. ``stop`` is idempotent, so the container is
    stopped exactly once however the block exits.

    Attributes:
        get_client: Callable returning a Docker SDK client
        spec: How the container is started
        state: Run state recording the probe lifecycle
        logger: Structured logger instance
    """

    def __init__(
        self,
        get_client: Callable[[], docker.DockerClient],
        spec: ProbeRunSpec,
        state: RunState,
    ) -> None:
        self.get_client = get_client
        self.spec = spec
        self.state = state
        self.logger = get_logger(__name__)
        self._container: Container | None = None
        self._stopped = False

    async def start(self) -> None:
        """Run the probe container detached on the host network.

        Raises:
            HealthError: If the container cannot be started
        """
        port = self.spec.port
        client: docker.DockerClient | None = None
        try:
            client = await asyncio.to_thread(self.get_client)
            self._container = await asyncio.to_thread(
                client.containers.run,
                self.spec.image_ref,
                detach=True,
                name=self.spec.name,
                network_mode="host",
                ports={f"{port}/tcp": port},
                environment=self.spec.environment(),
            )
        except DockerException as e:
            self.logger.error(
                "probe_container_start_failed",
                image=self.spec.image_ref,
                error=str(e),
                error_type=type(e).__name__,
            )
            if client is not None:
                await self._remove_by_name(client)
            raise HealthError(
                f"Unable to start probe container from {self.spec.image_ref}: {e}",
                hint=f"A container named '{self.spec.name}' may be left over from an earlier run.",
            ) from e

        self.state.probe_started = True
        self.logger.info(
            "probe_container_started",
            image=self.spec.image_ref,
            name=self.spec.name,
            port=port,
        )

    async def _remove_by_name(self, client: docker.DockerClient) -> None:
        """Remove a container that was created under the probe name but never started."""
        try:
            leftover = await asyncio.to_thread(client.containers.get, self.spec.name)
            await asyncio.to_thread(leftover.remove, force=True)
        except NotFound:
            return
        except DockerException as e:
            self.logger.warning(
                "probe_container_remove_failed",
                name=self.spec.name,
                error=str(e),
            )
            return
        self.logger.info("probe_container_removed", name=self.spec.name)

    async def logs(self) -> str:
        if self._container is None:
            return ""
        try:
            raw: bytes = await asyncio.to_thread(self._container.logs)
        except DockerException as e:
            self.logger.warning("probe_container_logs_failed", error=str(e))
            return ""
        return raw.decode("utf-8", errors="replace")

    async def stop(self) -> None:
        """Stop, then remove, the probe container. Safe to call more than once."""
        if self._container is None or self._stopped:
            return
        self._stopped = True
        container = self._container

        try:
            await asyncio.to_thread(container.stop, timeout=self.spec.stop_timeout_seconds)
            self.logger.info("probe_container_stopped", name=self.spec.name)
        except NotFound:
            self.logger.warning("probe_container_already_gone", name=self.spec.name)
        except APIError as e:
            self.logger.error(
                "probe_container_stop_failed",
                name=self.spec.name,
                error=str(e),
            )
        finally:
            self.state.probe_stopped = True

        try:
            await asyncio.to_thread(container.remove, force=True)
        except DockerException as e:
            self.logger.warning(
                "probe_container_remove_failed",
                name=self.spec.name,
                error=str(e),
            )

    async def __aenter__(self) -> ProbeContainer:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        # Shielded so a cancelled run still stops the container
        await asyncio.shield(self.stop())


class HealthPoller:
    """Single-shot HEAD prober for a health endpoint.

    Attributes:
        policy: Health check policy
        logger: Structured logger instance
    """

    def __init__(self, policy: HealthCheckPolicy) -> None:
        self.policy = policy
        self.logger = get_logger(__name__)
        self._session: httpx.AsyncClient | None = None

    async def _get_session(self) -> httpx.AsyncClient:
        """Get or create the httpx async client.

        Returns:
            Active httpx AsyncClient
        """
        if self._session is None or self._session.is_closed:
            self._session = httpx.AsyncClient(follow_redirects=False)
        return self._session

    async def probe_once(self) -> ProbeResult:
        """Send one HEAD request; any status below 400 is healthy."""
        start_time = time.monotonic()
        try:
            session = await self._get_session()
            response = await session.head(self.policy.url, timeout=self.policy.timeout_seconds)
        except httpx.TimeoutException:
            return ProbeResult(
                url=self.policy.url,
                response_time_seconds=time.monotonic() - start_time,
                error=f"Health check timed out after {self.policy.timeout_seconds}s",
            )
        except httpx.HTTPError as e:
            return ProbeResult(
                url=self.policy.url,
                response_time_seconds=time.monotonic() - start_time,
                error=f"Connection error: {e}",
            )

        status_code = response.status_code
        return ProbeResult(
            healthy=status_code < 400,
            url=self.policy.url,
            response_code=status_code,
            response_time_seconds=time.monotonic() - start_time,
            error=None if status_code < 400 else f"Unexpected status code: {status_code}",
        )

    async def close(self) -> None:
        if self._session is not None and not self._session.is_closed:
            await self._session.aclose()
        self._session = None


class HealthChecker:
    """Runs the bounded health check of a built image.

    Attributes:
        get_client: Callable returning a Docker SDK client
        logger: Structured logger instance
    """

    def __init__(
        self,
        get_client: Callable[[], docker.DockerClient],
        poller_factory: Callable[[HealthCheckPolicy], HealthPoller] = HealthPoller,
    ) -> None:
        self.get_client = get_client
        self.poller_factory = poller_factory
        self.logger = get_logger(__name__)

    async def check(self, policy: HealthCheckPolicy | None, spec: ProbeRunSpec, state: RunState) -> None:
        """Start the probe container and poll until healthy or out of attempts.

        Args:
            policy: Polling policy; None when no health path is configured
            spec: Probe container settings
            state: Run state recording the probe lifecycle

        Raises:
            HealthError: If every attempt failed or the container did not start
        """
        if policy is None or not spec.healthcheck:
            self.logger.warning(
                "healthcheck_skipped",
                reason="No healthcheck specified",
            )
            return

        poller = self.poller_factory(policy)
        try:
            async with ProbeContainer(self.get_client, spec, state) as container:
                await self._poll(policy, poller, container)
        finally:
            await poller.close()

    async def _poll(
        self,
        policy: HealthCheckPolicy,
        poller: HealthPoller,
        container: ProbeContainer,
    ) -> None:
        last: ProbeResult | None = None
        for attempt in range(1, policy.max_attempts + 1):
            last = await poller.probe_once()
            if last.healthy:
                self.logger.info(
                    "healthcheck_passed",
                    url=policy.url,
                    attempts=attempt,
                    status_code=last.response_code,
                )
                return

            self.logger.info(
                "healthcheck_attempt_failed",
                url=policy.url,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                error=last.error,
            )
            if attempt < policy.max_attempts:
                await asyncio.sleep(policy.interval_seconds)

        logs = await container.logs()
        self.logger.error(
            "healthcheck_exhausted",
            url=policy.url,
            max_attempts=policy.max_attempts,
            last_error=last.error if last else None,
            container_logs=logs,
        )
        await container.stop()
        raise HealthError(
            f"Container did not pass healthcheck at {policy.url} after {policy.max_attempts} attempts",
            hint="If your container does not require a healthcheck (most jobs don't), "
            "then set healthcheck to a blank string.",
        )
