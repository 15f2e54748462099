"""Error taxonomy for ecr-deploy.

Every fatal failure of a pipeline stage is raised as a subclass of
EcrDeployError. Each class carries a short machine-readable classification,
the process exit code reported to the CI host, and an optional remediation
hint shown to the user.

Exit codes:
    1: build, health check, or push failure
    2: missing required input or unreadable Dockerfile
    3: platform requested while buildx is unavailable
    4: registry credential exchange failed or returned an empty token
"""

from __future__ import annotations


class EcrDeployError(Exception):
    """Base exception for fatal pipeline errors.

    Attributes:
        classification: Machine-readable error category
        exit_code: Process exit code for the CI host
        hint: Human-readable remediation hint, if any
    """

    classification: str = "deploy_error"
    exit_code: int = 1

    def __init__(self, message: str, *, hint: str | None = None, exit_code: int | None = None):
        self.message = message
        self.hint = hint
        if exit_code is not None:
            self.exit_code = exit_code
        super().__init__(message)


class ConfigError(EcrDeployError):
    """Raised before any side effect when a required input is missing or invalid."""

    classification = "config_error"
    exit_code = 2


class PlatformUnavailableError(ConfigError):
    """Raised when a platform is requested but the buildx builder is not available."""

    classification = "platform_unavailable"
    exit_code = 3


class AuthError(EcrDeployError):
    """Raised when a registry token exchange or login fails."""

    classification = "auth_error"
    exit_code = 4


class BuildError(EcrDeployError):
    """Raised when the image build invocation fails."""

    classification = "build_error"


class HealthError(EcrDeployError):
    """Raised when the probe container never answers its health endpoint."""

    classification = "health_error"


class PushError(EcrDeployError):
    """Raised when a registry rejects a push."""

    classification = "push_error"
