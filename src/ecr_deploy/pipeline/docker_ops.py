"""Docker build system for ecr-deploy.

This module inspects the Docker environment (daemon version, buildx support),
scans the Dockerfile for features that change how it must be built, turns the
action inputs into an immutable BuildSpec, and runs the build through the
docker CLI with every tag in a single invocation.

Example usage:
    >>> client = DockerBuildClient(CommandRunner(), DockerConfig())
    >>> health = await client.check_docker_health()
    >>> buildx = await client.buildx_available()
    >>> spec = plan_build(inputs, github, features, tag_set, buildx_available=buildx)
    >>> image_ref = await client.build(spec)
"""

from __future__ import annotations

import asyncio
import os
import re
from pathlib import Path
from typing import Any

from docker.errors import DockerException
from pydantic import BaseModel, Field, SecretStr

import docker
from ecr_deploy.config import ActionInputs, DockerConfig, GithubContext
from ecr_deploy.errors import BuildError, ConfigError, PlatformUnavailableError
from ecr_deploy.logging import get_logger
from ecr_deploy.pipeline.commands import CommandRunner
from ecr_deploy.pipeline.ssh import SshAgent
from ecr_deploy.pipeline.tags import TagSet

DEFAULT_DOCKERFILE = "Dockerfile"

_SSH_MOUNT_MARKER = "mount=type=ssh"
_GITHUB_SHA_MARKER = "GITHUB_SHA"
_HEREDOC_RUN_PATTERN = re.compile(r"^\s*run\s?<<", re.IGNORECASE | re.MULTILINE)

# Image reference (repository:tag) produced by a build
ImageRef = str


class DockerHealth(BaseModel):
    """Health status of the Docker daemon.

    Attributes:
        available: Whether Docker daemon is reachable and responding
        version: Docker engine version string
        api_version: Docker API version string
        buildx: Whether the buildx plugin is available
        error: Error message if health check failed
    """

    available: bool = Field(default=False, description="Daemon availability")
    version: str | None = Field(default=None, description="Docker version")
    api_version: str | None = Field(default=None, description="API version")
    buildx: bool = Field(default=False, description="buildx availability")
    error: str | None = Field(default=None, description="Health check error")


class DockerfileFeatures(BaseModel):
    """Build-relevant features detected in a Dockerfile.

    Attributes:
        ssh_mount: Uses RUN --mount=type=ssh
        references_github_sha: Mentions GITHUB_SHA (so the build arg is wanted)
        heredoc_run: Uses RUN <<EOF syntax, which needs BuildKit
    """

    ssh_mount: bool = False
    references_github_sha: bool = False
    heredoc_run: bool = False

    @classmethod
    def scan(cls, content: str) -> DockerfileFeatures:
        return cls(
            ssh_mount=_SSH_MOUNT_MARKER in content,
            references_github_sha=_GITHUB_SHA_MARKER in content,
            heredoc_run=_HEREDOC_RUN_PATTERN.search(content) is not None,
        )

    @classmethod
    def from_file(cls, path: Path) -> DockerfileFeatures:
        try:
            return cls.scan(path.read_text(encoding="utf-8", errors="replace"))
        except OSError as e:
            raise ConfigError(
                f"{path} could not be read: {e}",
                hint="If your Dockerfile has a custom name, set it with the dockerfile input.",
            ) from e


class SshForward(BaseModel):
    """SSH agent forwarding for the build.

    Attributes:
        socket_path: ssh-agent socket passed as --ssh default=<socket>
        private_key: Base64-encoded private key loaded into the agent
    """

    model_config = {"frozen": True}

    socket_path: str = Field(description="Agent socket path")
    private_key: SecretStr = Field(description="Base64-encoded private key")


class BuildSpec(BaseModel):
    """Everything needed to run one image build.

    Attributes:
        context_path: Build context directory
        dockerfile: Dockerfile path relative to the context
        build_args: KEY=VALUE build arguments in the order they are passed
        tags: Tags applied to the built image
        ssh_forward: SSH agent forwarding, if the Dockerfile asks for it
        platform: Target platform (buildx only)
        buildkit: Whether DOCKER_BUILDKIT=1 is required
        secret_values: Values masked in logs (e.g. a key passed as build arg)
    """

    model_config = {"frozen": True}

    context_path: Path = Field(default=Path("."), description="Build context")
    dockerfile: str = Field(default=DEFAULT_DOCKERFILE, description="Dockerfile path")
    build_args: tuple[str, ...] = Field(default_factory=tuple, description="Build arguments")
    tags: TagSet = Field(description="Image tags")
    ssh_forward: SshForward | None = Field(default=None, description="SSH forwarding")
    platform: str | None = Field(default=None, description="Target platform")
    buildkit: bool = Field(default=False, description="BuildKit required")
    secret_values: tuple[SecretStr, ...] = Field(default_factory=tuple, description="Masked values")

    @property
    def image_ref(self) -> ImageRef:
        """Reference of the first (commit SHA) primary tag."""
        return self.tags.tags[0].reference


def split_build_args(raw: str) -> list[str]:
    """Split the newline-separated build-args input, skipping blank lines."""
    return [line for line in raw.splitlines() if line.strip()]


def validate_build_inputs(inputs: ActionInputs, dockerfile_path: Path, buildx_available: bool) -> None:
    """Pre-flight checks that must pass before any side effect.

    Raises:
        ConfigError: If a required credential is blank or the Dockerfile is unreadable
        PlatformUnavailableError: If a platform is requested without buildx
    """
    if not inputs.ecr_uri:
        raise ConfigError(
            "The ecr_uri input is blank.",
            hint="This probably means that your secret is blank or does not exist. "
            "Make sure the ECR repository is registered for this GitHub repository.",
        )
    if not inputs.access_key_id:
        raise ConfigError(
            "The access_key_id input is blank.",
            hint="This probably means that your secret is blank or does not exist.",
        )
    if not inputs.secret_access_key.get_secret_value():
        raise ConfigError(
            "The secret_access_key input is blank.",
            hint="This probably means that your secret is blank or does not exist.",
        )
    if not os.access(dockerfile_path, os.R_OK):
        raise ConfigError(
            f"{dockerfile_path.name} was not found.",
            hint="If your Dockerfile has a custom name, please specify it using "
            "the `dockerfile: Dockerfile.prod` param.",
        )
    if inputs.platform and not buildx_available:
        raise PlatformUnavailableError(
            "platform requested while buildx is not enabled.",
            hint="Please check your configuration and try again.",
        )


def plan_build(
    inputs: ActionInputs,
    github: GithubContext,
    features: DockerfileFeatures,
    tags: TagSet,
    *,
    buildx_available: bool,
    ssh_auth_sock: str = "/tmp/ssh_agent.sock",
    context_path: Path = Path("."),
) -> BuildSpec:
    """Turn action inputs and Dockerfile features into a BuildSpec.

    Build arguments are ordered: custom build-args, BUILD_CONFIG,
    GITHUB_SSH_KEY (only when SSH forwarding is not used), GITHUB_SHA (only
    when the Dockerfile references it).
    """
    build_args = split_build_args(inputs.build_args)
    secret_values: list[SecretStr] = []
    ssh_forward: SshForward | None = None
    buildkit = features.heredoc_run

    if inputs.build_config:
        build_args.append(f"BUILD_CONFIG={inputs.build_config}")

    ssh_key = inputs.github_ssh_key.get_secret_value()
    if ssh_key:
        if features.ssh_mount:
            ssh_forward = SshForward(socket_path=ssh_auth_sock, private_key=inputs.github_ssh_key)
            buildkit = True
        else:
            build_args.append(f"GITHUB_SSH_KEY={ssh_key}")
            secret_values.append(inputs.github_ssh_key)

    if features.references_github_sha:
        build_args.append(f"GITHUB_SHA={github.sha}")

    platform = inputs.platform if inputs.platform and buildx_available else None

    return BuildSpec(
        context_path=context_path,
        dockerfile=inputs.dockerfile or DEFAULT_DOCKERFILE,
        build_args=tuple(build_args),
        tags=tags,
        ssh_forward=ssh_forward,
        platform=platform,
        buildkit=buildkit,
        secret_values=tuple(secret_values),
    )


def build_command(spec: BuildSpec) -> list[str]:
    """Assemble the docker build argument list for a BuildSpec."""
    command = ["docker", "build"]
    for reference in spec.tags.references():
        command.extend(["--tag", reference])
    if spec.dockerfile != DEFAULT_DOCKERFILE:
        command.extend(["-f", spec.dockerfile])
    for arg in spec.build_args:
        command.extend(["--build-arg", arg])
    if spec.ssh_forward is not None:
        command.extend(["--ssh", f"default={spec.ssh_forward.socket_path}"])
    if spec.platform:
        command.extend(["--platform", spec.platform, "--load"])
    command.append(str(spec.context_path))
    return command


def build_environment(spec: BuildSpec) -> dict[str, str]:
    env = {"BUILDKIT_PROGRESS": "plain"}
    if spec.buildkit:
        env["DOCKER_BUILDKIT"] = "1"
    if spec.ssh_forward is not None:
        env["SSH_AUTH_SOCK"] = spec.ssh_forward.socket_path
    return env


def connect_docker(config: DockerConfig) -> docker.DockerClient:
    """Create a Docker SDK client, honouring DOCKER_HOST and rootless sockets.

    Raises:
        DockerException: If unable to connect to Docker daemon
    """
    docker_host = os.environ.get("DOCKER_HOST")
    if docker_host:
        return docker.DockerClient(base_url=docker_host)
    if config.rootless and hasattr(os, "getuid"):
        xdg_runtime = os.environ.get("XDG_RUNTIME_DIR", f"/run/user/{os.getuid()}")
        try:
            return docker.DockerClient(base_url=f"unix://{xdg_runtime}/docker.sock")
        except DockerException:
            # Fall back to default
            pass
    return docker.DockerClient.from_env()


class DockerBuildClient:
    """Runs image builds through the docker CLI.

    Attributes:
        runner: Command runner for docker and ssh commands
        config: Docker configuration
        logger: Structured logger instance
    """

    def __init__(self, runner: CommandRunner, config: DockerConfig) -> None:
        self.runner = runner
        self.config = config
        self.logger = get_logger(__name__)
        self._client: docker.DockerClient | None = None

    def _get_client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                self._client = connect_docker(self.config)
                self.logger.info("docker_client_connected", rootless=self.config.rootless)
            except DockerException as e:
                self.logger.error(
                    "docker_client_connection_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise
        return self._client

    async def buildx_available(self) -> bool:
        """True when ``docker buildx version`` succeeds."""
        result = await self.runner.run(
            ["docker", "buildx", "version"],
            timeout=self.config.command_timeout_seconds,
        )
        if result.success:
            self.logger.info("buildx_enabled", version=result.stdout.strip())
        else:
            self.logger.info("buildx_unavailable", error=result.details)
        return result.success

    async def check_docker_health(self) -> DockerHealth:
        """Report Docker daemon version and buildx support.

        Returns:
            DockerHealth instance with daemon status information
        """
        buildx = await self.buildx_available()
        try:
            client = await asyncio.to_thread(self._get_client)
            version_info: dict[str, Any] = await asyncio.to_thread(client.version)
        except DockerException as e:
            self.logger.warning(
                "docker_health_check_failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            return DockerHealth(available=False, buildx=buildx, error=str(e))

        health = DockerHealth(
            available=True,
            version=str(version_info.get("Version", "")),
            api_version=str(version_info.get("ApiVersion", "")),
            buildx=buildx,
        )
        self.logger.info(
            "docker_health_check_passed",
            version=health.version,
            api_version=health.api_version,
            buildx=health.buildx,
        )
        return health

    async def build(self, spec: BuildSpec) -> ImageRef:
        """Build the image with every planned tag.

        Args:
            spec: Immutable build specification

        Returns:
            Reference of the primary commit-SHA tag

        Raises:
            BuildError: If the build (or SSH agent setup) fails
        """
        if spec.ssh_forward is None:
            return await self._run_build(spec)

        async with SshAgent(
            self.runner,
            spec.ssh_forward.socket_path,
            timeout=self.config.command_timeout_seconds,
        ) as agent:
            await agent.add_key(spec.ssh_forward.private_key.get_secret_value())
            return await self._run_build(spec)

    async def _run_build(self, spec: BuildSpec) -> ImageRef:
        secrets = [value.get_secret_value() for value in spec.secret_values]
        self.logger.info(
            "docker_build_started",
            dockerfile=spec.dockerfile,
            tags=spec.tags.references(),
            platform=spec.platform,
            buildkit=spec.buildkit,
            ssh_forward=spec.ssh_forward is not None,
            build_args=[arg.split("=", 1)[0] for arg in spec.build_args],
        )

        result = await self.runner.run(
            build_command(spec),
            env=build_environment(spec),
            timeout=self.config.build_timeout_seconds,
            stream=True,
            secrets=secrets,
        )

        if not result.success:
            self.logger.error(
                "docker_build_failed",
                returncode=result.returncode,
                timed_out=result.timed_out,
                duration_seconds=round(result.duration_seconds, 2),
            )
            raise BuildError(
                f"docker build failed: {result.details}",
                hint="See the build output above for the failing step.",
            )

        self.logger.info(
            "docker_build_succeeded",
            image_ref=spec.image_ref,
            duration_seconds=round(result.duration_seconds, 2),
        )
        return spec.image_ref
