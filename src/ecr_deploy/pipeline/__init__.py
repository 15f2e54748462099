"""Build-tag-push pipeline for ecr-deploy.

This package implements registry credential parsing, image tag planning,
ECR authentication, Docker builds, probe container health checks, pushes,
and guaranteed registry logout.
"""

from __future__ import annotations

from ecr_deploy.pipeline.commands import CommandResult, CommandRunner
from ecr_deploy.pipeline.docker_ops import (
    BuildSpec,
    DockerBuildClient,
    DockerfileFeatures,
    DockerHealth,
    SshForward,
    build_command,
    plan_build,
)
from ecr_deploy.pipeline.ecr import EcrTokenExchange
from ecr_deploy.pipeline.health import (
    HealthChecker,
    HealthCheckPolicy,
    HealthPoller,
    ProbeContainer,
    ProbeResult,
    ProbeRunSpec,
)
from ecr_deploy.pipeline.push import PushCleanupCoordinator
from ecr_deploy.pipeline.registries import (
    ParseResult,
    ParseWarning,
    RegistryCredential,
    parse_registries,
)
from ecr_deploy.pipeline.registry import (
    MultiRegistryAuthenticator,
    PushResult,
    PushStatus,
    RegistryClient,
    RegistrySession,
)
from ecr_deploy.pipeline.runner import DeployPipeline, RunContext
from ecr_deploy.pipeline.state import RunState
from ecr_deploy.pipeline.tags import ImageTag, TagSet, plan_tags

__all__ = [
    # Commands
    "CommandResult",
    "CommandRunner",
    # Registry parsing
    "ParseResult",
    "ParseWarning",
    "RegistryCredential",
    "parse_registries",
    # Tags
    "ImageTag",
    "TagSet",
    "plan_tags",
    # Authentication and push
    "EcrTokenExchange",
    "MultiRegistryAuthenticator",
    "PushResult",
    "PushStatus",
    "RegistryClient",
    "RegistrySession",
    "PushCleanupCoordinator",
    # Docker build
    "BuildSpec",
    "DockerBuildClient",
    "DockerfileFeatures",
    "DockerHealth",
    "SshForward",
    "build_command",
    "plan_build",
    # Health
    "HealthCheckPolicy",
    "HealthChecker",
    "HealthPoller",
    "ProbeContainer",
    "ProbeResult",
    "ProbeRunSpec",
    # Runner
    "DeployPipeline",
    "RunContext",
    "RunState",
]
