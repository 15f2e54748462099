"""Integration tests for CLI commands.

This module tests the Typer-based CLI: the run command's exit codes and
overrides, the validate pre-flight, and the read-only registries and tags
commands. Docker and AWS are never contacted.
"""

from __future__ import annotations

import logging
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
import structlog
from typer.testing import CliRunner

from ecr_deploy.config import ActionInputs, GithubContext
from ecr_deploy.errors import AuthError, HealthError
from ecr_deploy.main import app
from ecr_deploy.pipeline.docker_ops import DockerBuildClient, DockerHealth
from ecr_deploy.pipeline.runner import RunContext
from ecr_deploy.pipeline.tags import plan_tags

PRIMARY = "123456789012.dkr.ecr.us-east-1.amazonaws.com"
EXTRA = "111111111111.dkr.ecr.eu-west-1.amazonaws.com"
BASE = f"{PRIMARY}/github/org/repo/main"


@pytest.fixture
def cli_runner():
    """Create a Typer CLI runner.

    Returns:
        CliRunner instance for invoking CLI commands
    """
    return CliRunner()


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop handlers bound to the runner's captured stdout after each test."""
    yield
    logging.getLogger().handlers.clear()
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


@pytest.fixture
def action_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Set the inputs and workflow context a CI host would export."""
    monkeypatch.setenv("INPUT_ECR_URI", PRIMARY)
    monkeypatch.setenv("INPUT_ACCESS_KEY_ID", "AKIA")
    monkeypatch.setenv("INPUT_SECRET_ACCESS_KEY", "secret")
    monkeypatch.setenv("GITHUB_REF", "refs/heads/main")
    monkeypatch.setenv("GITHUB_REPOSITORY", "Org/Repo")
    monkeypatch.setenv("GITHUB_SHA", "abcd123")


def _context(deploy: bool) -> RunContext:
    return RunContext(
        inputs=ActionInputs(ecr_uri=PRIMARY, deploy=deploy),
        github=GithubContext(sha="abcd123"),
        container_base=BASE,
        tag_set=plan_tags(container_base=BASE, commit_sha="abcd123"),
        image_ref=f"{BASE}:abcd123",
    )


@pytest.mark.integration
class TestRunCommand:
    """The run command's overrides, outputs, and exit codes."""

    def test_run_prints_outputs(self, cli_runner, action_env) -> None:
        with patch("ecr_deploy.main.DeployPipeline") as pipeline_cls:
            pipeline_cls.return_value.run = AsyncMock(return_value=_context(deploy=True))
            result = cli_runner.invoke(app, ["run"])

        assert result.exit_code == 0
        assert "container-path=github/org/repo/main" in result.output
        assert "github-sha=abcd123" in result.output
        assert "Pushed 2 tags" in result.output

    def test_run_flags_override_inputs(self, cli_runner, action_env, monkeypatch) -> None:
        monkeypatch.setenv("INPUT_DEPLOY", "true")
        monkeypatch.setenv("INPUT_PORT", "3000")

        with patch("ecr_deploy.main.DeployPipeline") as pipeline_cls:
            pipeline_cls.return_value.run = AsyncMock(return_value=_context(deploy=False))
            result = cli_runner.invoke(
                app,
                ["run", "--no-deploy", "--port", "8080", "--healthcheck", "", "--architecture", "arm64"],
            )

        assert result.exit_code == 0
        assert "Deploy disabled, nothing pushed" in result.output
        inputs = pipeline_cls.call_args.args[0].inputs
        assert inputs.deploy is False
        assert inputs.port == 8080
        assert inputs.healthcheck == ""
        assert inputs.architecture == "arm64"

    @pytest.mark.parametrize(
        ("error", "exit_code"),
        [
            (AuthError("ECR rejected the credentials"), 4),
            (HealthError("Container did not pass healthcheck"), 1),
        ],
    )
    def test_run_failure_exit_codes(self, cli_runner, action_env, error, exit_code) -> None:
        with patch("ecr_deploy.main.DeployPipeline") as pipeline_cls:
            pipeline_cls.return_value.run = AsyncMock(side_effect=error)
            result = cli_runner.invoke(app, ["run"])

        assert result.exit_code == exit_code
        assert error.classification in result.output
        assert error.message in result.output


@pytest.mark.integration
class TestValidateCommand:
    """Pre-flight checks through the CLI."""

    def test_validate_passes(self, cli_runner, action_env, tmp_path: Path) -> None:
        (tmp_path / "Dockerfile").write_text("FROM alpine:3.19\n")

        with patch.object(
            DockerBuildClient,
            "check_docker_health",
            new=AsyncMock(return_value=DockerHealth(available=True, buildx=True)),
        ):
            result = cli_runner.invoke(app, ["validate"])

        assert result.exit_code == 0
        assert "Configuration is valid" in result.output

    def test_validate_missing_dockerfile_exits_2(self, cli_runner, action_env) -> None:
        with patch.object(
            DockerBuildClient,
            "check_docker_health",
            new=AsyncMock(return_value=DockerHealth(available=True)),
        ):
            result = cli_runner.invoke(app, ["validate"])

        assert result.exit_code == 2
        assert "Dockerfile was not found" in result.output

    def test_validate_platform_without_buildx_exits_3(
        self, cli_runner, action_env, monkeypatch, tmp_path: Path
    ) -> None:
        (tmp_path / "Dockerfile").write_text("FROM alpine:3.19\n")
        monkeypatch.setenv("INPUT_PLATFORM", "linux/arm64")

        with patch.object(
            DockerBuildClient,
            "check_docker_health",
            new=AsyncMock(return_value=DockerHealth(available=True, buildx=False)),
        ):
            result = cli_runner.invoke(app, ["validate"])

        assert result.exit_code == 3


@pytest.mark.integration
class TestReadOnlyCommands:
    """registries and tags never touch docker or AWS."""

    def test_registries_table(self, cli_runner) -> None:
        result = cli_runner.invoke(
            app, ["registries", "--registries", f"aws://K1:S1@{EXTRA},not-a-registry"]
        )

        assert result.exit_code == 0
        assert "Extra registries" in result.output
        assert EXTRA in result.output
        assert "eu-west-1" in result.output
        assert "not-a-registry" in result.output
        assert "S1" not in result.output

    def test_registries_empty(self, cli_runner) -> None:
        result = cli_runner.invoke(app, ["registries"])

        assert result.exit_code == 0
        assert "No extra registries configured" in result.output

    def test_tags_preview(self, cli_runner, action_env, monkeypatch) -> None:
        monkeypatch.setenv("INPUT_REGISTRIES", f"aws://K1:S1@{EXTRA}")

        result = cli_runner.invoke(app, ["tags", "--architecture", "arm64"])

        assert result.exit_code == 0
        lines = result.output.splitlines()
        assert f"{BASE}:arm64-abcd123" in lines
        assert f"{BASE}:arm64-latest" in lines
        assert f"{EXTRA}/github/org/repo/main:arm64-latest" in lines
        assert "container-path=github/org/repo/main" in lines


@pytest.mark.integration
class TestGlobalOptions:
    def test_missing_config_file(self, cli_runner, tmp_path: Path) -> None:
        result = cli_runner.invoke(app, ["--config", str(tmp_path / "nope.toml"), "registries"])

        assert result.exit_code == 2

    def test_invalid_config_file_exits_2(self, cli_runner, tmp_path: Path) -> None:
        config_file = tmp_path / "ecr-deploy.toml"
        config_file.write_text("[bogus]\nkey = 1\n")

        result = cli_runner.invoke(app, ["--config", str(config_file), "registries"])

        assert result.exit_code == 2
        assert "Error loading configuration" in result.output

    def test_config_file_values(self, cli_runner, tmp_path: Path) -> None:
        config_file = tmp_path / "custom.toml"
        config_file.write_text(f'[inputs]\nregistries = "aws://K1:S1@{EXTRA}"\n')

        result = cli_runner.invoke(app, ["--config", str(config_file), "registries"])

        assert result.exit_code == 0
        assert EXTRA in result.output
