"""Pipeline driver for ecr-deploy.

Runs the stages in order: validate, parse registries, authenticate, plan
tags, build, health check, push. Each stage takes the current RunContext and
returns a new one; nothing is passed between stages through environment
variables. Registry logout runs from a ``finally`` block, so a failed build
or health check never leaves a session behind.

Example usage:
    >>> pipeline = DeployPipeline(load_config())
    >>> context = await pipeline.run()
    >>> context.container_path
    'github/org/repo/main'
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Mapping
from pathlib import Path

from pydantic import BaseModel, Field

from ecr_deploy.config import ActionInputs, DeployConfig, GithubContext
from ecr_deploy.errors import BuildError
from ecr_deploy.logging import bind_run_context, get_logger
from ecr_deploy.pipeline.commands import CommandRunner
from ecr_deploy.pipeline.docker_ops import (
    DEFAULT_DOCKERFILE,
    BuildSpec,
    DockerBuildClient,
    DockerfileFeatures,
    connect_docker,
    plan_build,
    validate_build_inputs,
)
from ecr_deploy.pipeline.ecr import EcrTokenExchange
from ecr_deploy.pipeline.health import HealthChecker, HealthCheckPolicy, ProbeRunSpec
from ecr_deploy.pipeline.push import PushCleanupCoordinator
from ecr_deploy.pipeline.registries import ParseWarning, RegistryCredential, parse_registries
from ecr_deploy.pipeline.registry import MultiRegistryAuthenticator, RegistryClient
from ecr_deploy.pipeline.state import RunState
from ecr_deploy.pipeline.tags import TagSet, container_base, container_path, plan_tags


class RunContext(BaseModel):
    """Immutable state threaded through the pipeline stages.

    Attributes:
        inputs: Action inputs
        github: Workflow context
        buildx: Whether the buildx plugin is available
        features: Build-relevant Dockerfile features
        credentials: Parsed extra-registry credentials
        warnings: Malformed registry entries
        container_base: Primary base image path (host/github/owner/repo/branch)
        authenticated_hosts: Extra registry hosts whose login succeeded
        tag_set: Planned image tags
        build_spec: Build specification
        image_ref: Reference of the built image
    """

    model_config = {"frozen": True}

    inputs: ActionInputs
    github: GithubContext
    buildx: bool = False
    features: DockerfileFeatures = Field(default_factory=DockerfileFeatures)
    credentials: tuple[RegistryCredential, ...] = ()
    warnings: tuple[ParseWarning, ...] = ()
    container_base: str = ""
    authenticated_hosts: tuple[str, ...] = ()
    tag_set: TagSet | None = None
    build_spec: BuildSpec | None = None
    image_ref: str | None = None

    @property
    def container_path(self) -> str:
        return container_path(self.container_base)

    @property
    def extra_hosts(self) -> list[str]:
        return [credential.host for credential in self.credentials]

    def outputs(self) -> dict[str, str]:
        """Step outputs published to later workflow steps."""
        return {"container-path": self.container_path, "github-sha": self.github.sha}


def write_github_outputs(output_file: Path, values: Mapping[str, str]) -> None:
    """Append ``name=value`` lines to the step output file."""
    with open(output_file, "a", encoding="utf-8") as handle:
        for key, value in values.items():
            handle.write(f"{key}={value}\n")


class DeployPipeline:
    """Build, health-check, and push one image to ECR.

    Collaborators default to the real implementations and may be replaced,
    which is how tests drive the pipeline without docker or AWS.

    Attributes:
        config: Resolved configuration
        context_path: Build context directory
        builder: Docker build client
        authenticator: Registry authenticator
        health_checker: Probe container health checker
        coordinator: Push and logout coordinator
        logger: Structured logger instance
    """

    def __init__(
        self,
        config: DeployConfig,
        *,
        context_path: Path = Path("."),
        runner: CommandRunner | None = None,
        builder: DockerBuildClient | None = None,
        authenticator: MultiRegistryAuthenticator | None = None,
        health_checker: HealthChecker | None = None,
        coordinator: PushCleanupCoordinator | None = None,
    ) -> None:
        self.config = config
        self.context_path = context_path
        runner = runner or CommandRunner()
        registry_client = RegistryClient(runner, config.docker)
        self.builder = builder or DockerBuildClient(runner, config.docker)
        self.authenticator = authenticator or MultiRegistryAuthenticator(
            registry_client, EcrTokenExchange()
        )
        self.health_checker = health_checker or HealthChecker(lambda: connect_docker(config.docker))
        self.coordinator = coordinator or PushCleanupCoordinator(registry_client)
        self.logger = get_logger(__name__)

    @property
    def dockerfile_path(self) -> Path:
        return self.context_path / (self.config.inputs.dockerfile or DEFAULT_DOCKERFILE)

    async def validate(self) -> RunContext:
        """Pre-flight checks; nothing has side effects before this passes.

        Raises:
            ConfigError: If a required input is blank or the Dockerfile is unreadable
            PlatformUnavailableError: If a platform is requested without buildx
        """
        inputs = self.config.inputs
        docker_health = await self.builder.check_docker_health()
        if not docker_health.available:
            self.logger.warning("docker_daemon_unavailable", error=docker_health.error)
        validate_build_inputs(inputs, self.dockerfile_path, docker_health.buildx)
        features = DockerfileFeatures.from_file(self.dockerfile_path)

        self.logger.info(
            "validation_passed",
            dockerfile=str(self.dockerfile_path),
            buildx=docker_health.buildx,
            ssh_mount=features.ssh_mount,
            heredoc_run=features.heredoc_run,
            references_github_sha=features.references_github_sha,
        )
        return RunContext(
            inputs=inputs,
            github=self.config.github,
            buildx=docker_health.buildx,
            features=features,
        )

    def prepare(self, context: RunContext) -> RunContext:
        """Parse the extra registries and compute the primary base image path."""
        parsed = parse_registries(context.inputs.registries)
        base = container_base(
            context.inputs.ecr_uri,
            context.github.repository,
            context.github.ref,
        )
        self.logger.info("container_base_resolved", container_base=base)
        return context.model_copy(
            update={
                "credentials": tuple(parsed.credentials),
                "warnings": tuple(parsed.warnings),
                "container_base": base,
            }
        )

    def write_outputs(self, context: RunContext) -> dict[str, str]:
        """Write container-path and github-sha to the step output file, if any."""
        outputs = context.outputs()
        if self.config.github.output is not None:
            write_github_outputs(self.config.github.output, outputs)
            self.logger.info("outputs_written", path=str(self.config.github.output), **outputs)
        return outputs

    def plan(self, context: RunContext, authenticated_hosts: Iterable[str] = ()) -> RunContext:
        """Plan tags and the build for the current context."""
        authenticated = tuple(authenticated_hosts)
        tag_set = plan_tags(
            container_base=context.container_base,
            commit_sha=context.github.sha,
            architecture=context.inputs.architecture,
            extra_hosts=context.extra_hosts,
            authenticated_hosts=authenticated,
            policy=self.config.docker.extra_tag_policy,
        )
        build_spec = plan_build(
            context.inputs,
            context.github,
            context.features,
            tag_set,
            buildx_available=context.buildx,
            ssh_auth_sock=self.config.docker.ssh_auth_sock,
            context_path=self.context_path,
        )
        return context.model_copy(
            update={
                "authenticated_hosts": authenticated,
                "tag_set": tag_set,
                "build_spec": build_spec,
            }
        )

    async def authenticate(self, context: RunContext, state: RunState) -> RunContext:
        """Log into the primary registry (fatal) and every extra registry (best effort)."""
        await self.authenticator.authenticate_primary(context.inputs, state)
        sessions = await self.authenticator.authenticate_extras(context.credentials, state)
        return self.plan(context, [session.host for session in sessions])

    async def build(self, context: RunContext) -> RunContext:
        if context.build_spec is None:
            context = self.plan(context)
        build_spec = context.build_spec
        if build_spec is None:
            raise BuildError("No build was planned for this run")
        image_ref = await self.builder.build(build_spec)
        return context.model_copy(update={"image_ref": image_ref})

    async def health_check(self, context: RunContext, state: RunState) -> None:
        inputs = context.inputs
        settings = self.config.health
        policy = (
            HealthCheckPolicy.from_settings(settings, port=inputs.port, path=inputs.healthcheck)
            if inputs.healthcheck
            else None
        )
        spec = ProbeRunSpec(
            image_ref=context.image_ref or "",
            port=inputs.port,
            healthcheck=inputs.healthcheck,
            env_file=str(self.context_path / inputs.env_file) if inputs.env_file else "",
            name=settings.container_name,
            stop_timeout_seconds=settings.stop_timeout_seconds,
        )
        await self.health_checker.check(policy, spec, state)

    async def run(self) -> RunContext:
        """Run the full pipeline.

        Returns:
            Final RunContext

        Raises:
            EcrDeployError: On the first fatal stage failure, after every
                registry session has been logged out
        """
        run_id = uuid.uuid4().hex[:12]
        bind_run_context(run_id, self.config.github.repository)
        self.logger.info("pipeline_started", run_id=run_id, deploy=self.config.inputs.deploy)

        state = RunState()
        context = await self.validate()
        context = self.prepare(context)
        self.write_outputs(context)

        try:
            context = await self.authenticate(context, state)
            context = await self.build(context)
            await self.health_check(context, state)
            await self.coordinator.push_and_cleanup(
                context.inputs.deploy,
                context.container_base,
                context.tag_set or TagSet(),
                state,
            )
        finally:
            if state.probe_running:
                self.logger.error("probe_container_left_running", name=self.config.health.container_name)
            await self.coordinator.logout_all(state)

        self.logger.info(
            "pipeline_completed",
            image_ref=context.image_ref,
            pushed=context.inputs.deploy,
            warnings=len(context.warnings),
        )
        return context
