"""Unit tests for configuration management.

Tests cover:
- Default input values and CI string coercion
- GitHub context from the workflow environment
- TOML file loading and precedence over environment variables
- Validation errors for invalid configurations
"""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from ecr_deploy.config import (
    ActionInputs,
    DeployConfig,
    DockerConfig,
    ExtraTagPolicy,
    GithubContext,
    HealthCheckSettings,
    LoggingConfig,
    load_config,
)


class TestActionInputs:
    """Test ActionInputs defaults and INPUT_* parsing."""

    def test_default_values(self) -> None:
        """Test that unset inputs take the action defaults."""
        inputs = ActionInputs()
        assert inputs.ecr_uri == ""
        assert inputs.dockerfile == "Dockerfile"
        assert inputs.healthcheck == "/healthcheck"
        assert inputs.port == 3000
        assert inputs.deploy is True
        assert inputs.registries == ""
        assert inputs.secret_access_key.get_secret_value() == ""

    def test_reads_input_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that INPUT_<NAME> variables populate the inputs."""
        monkeypatch.setenv("INPUT_ECR_URI", "123.dkr.ecr.us-east-1.amazonaws.com")
        monkeypatch.setenv("INPUT_ACCESS_KEY_ID", "AKIAEXAMPLE")
        monkeypatch.setenv("INPUT_SECRET_ACCESS_KEY", "s3cret")
        monkeypatch.setenv("INPUT_PORT", "8080")

        inputs = ActionInputs()
        assert inputs.ecr_uri == "123.dkr.ecr.us-east-1.amazonaws.com"
        assert inputs.access_key_id == "AKIAEXAMPLE"
        assert inputs.secret_access_key.get_secret_value() == "s3cret"
        assert inputs.port == 8080

    def test_hyphenated_build_args_variable(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that the hyphenated INPUT_BUILD-ARGS variable is honoured."""
        monkeypatch.setenv("INPUT_BUILD-ARGS", "A=1\nB=2")
        assert ActionInputs().build_args == "A=1\nB=2"

    def test_underscored_build_args_variable(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("INPUT_BUILD_ARGS", "A=1")
        assert ActionInputs().build_args == "A=1"

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [("true", True), ("TRUE", True), (" true ", True), ("false", False), ("yes", False), ("", False)],
    )
    def test_deploy_only_enabled_by_literal_true(
        self, monkeypatch: pytest.MonkeyPatch, raw: str, expected: bool
    ) -> None:
        """Test that only the string 'true' enables deploy."""
        monkeypatch.setenv("INPUT_DEPLOY", raw)
        assert ActionInputs().deploy is expected

    def test_blank_port_uses_default(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("INPUT_PORT", "")
        assert ActionInputs().port == 3000

    def test_port_validation(self) -> None:
        """Test that port is validated within range."""
        with pytest.raises(ValidationError):
            ActionInputs(port=0)
        with pytest.raises(ValidationError):
            ActionInputs(port=70000)

    def test_registry_host(self) -> None:
        """Test that the registry host drops any repository path."""
        inputs = ActionInputs(ecr_uri="123.dkr.ecr.us-east-1.amazonaws.com/team")
        assert inputs.registry_host == "123.dkr.ecr.us-east-1.amazonaws.com"

    def test_secrets_hidden_in_repr(self) -> None:
        inputs = ActionInputs(secret_access_key="s3cret", github_ssh_key="a2V5")
        assert "s3cret" not in repr(inputs)
        assert "a2V5" not in repr(inputs)

    def test_unknown_input_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ActionInputs(not_an_input="x")


class TestGithubContext:
    """Test GithubContext environment loading."""

    def test_reads_github_environment(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        output = tmp_path / "output"
        monkeypatch.setenv("GITHUB_REF", "refs/heads/main")
        monkeypatch.setenv("GITHUB_REPOSITORY", "Org/Repo")
        monkeypatch.setenv("GITHUB_SHA", "abcd123")
        monkeypatch.setenv("GITHUB_OUTPUT", str(output))

        github = GithubContext()
        assert github.ref == "refs/heads/main"
        assert github.repository == "Org/Repo"
        assert github.sha == "abcd123"
        assert github.output == output

    def test_defaults_without_environment(self) -> None:
        github = GithubContext()
        assert github.ref == ""
        assert github.output is None


class TestLoggingConfig:
    """Test LoggingConfig defaults and validation."""

    def test_default_values(self) -> None:
        config = LoggingConfig()
        assert config.level == "INFO"
        assert config.format == "console"
        assert config.file is None

    def test_level_is_normalized(self) -> None:
        assert LoggingConfig(level="debug").level == "DEBUG"

    def test_invalid_level(self) -> None:
        with pytest.raises(ValidationError, match="Invalid log level"):
            LoggingConfig(level="LOUD")

    def test_invalid_format(self) -> None:
        with pytest.raises(ValidationError, match="Invalid log format"):
            LoggingConfig(format="xml")


class TestDockerConfig:
    """Test DockerConfig defaults and overrides."""

    def test_default_values(self) -> None:
        config = DockerConfig()
        assert config.rootless is False
        assert config.ssh_auth_sock == "/tmp/ssh_agent.sock"
        assert config.extra_tag_policy is ExtraTagPolicy.ALWAYS

    def test_policy_from_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ECR_DEPLOY_DOCKER__EXTRA_TAG_POLICY", "authenticated_only")
        assert DockerConfig().extra_tag_policy is ExtraTagPolicy.AUTHENTICATED_ONLY

    def test_invalid_policy(self) -> None:
        with pytest.raises(ValidationError):
            DockerConfig(extra_tag_policy="sometimes")


class TestHealthCheckSettings:
    """Test HealthCheckSettings defaults and validation."""

    def test_default_values(self) -> None:
        settings = HealthCheckSettings()
        assert settings.max_attempts == 5
        assert settings.interval_seconds == 5.0
        assert settings.timeout_seconds == 5.0
        assert settings.container_name == "test-container"

    def test_max_attempts_validation(self) -> None:
        with pytest.raises(ValidationError):
            HealthCheckSettings(max_attempts=0)


class TestLoadConfig:
    """Test load_config TOML loading and precedence."""

    def test_defaults_without_file(self) -> None:
        """Test that load_config works with no file present."""
        config = load_config()
        assert isinstance(config, DeployConfig)
        assert config.inputs.dockerfile == "Dockerfile"
        assert config.health.max_attempts == 5

    def test_explicit_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "missing.toml")

    def test_loads_toml_sections(self, tmp_path: Path) -> None:
        config_file = tmp_path / "custom.toml"
        config_file.write_text(
            '[inputs]\n'
            'ecr_uri = "123.dkr.ecr.us-east-1.amazonaws.com"\n'
            'dockerfile = "Dockerfile.prod"\n'
            '\n'
            '[health]\n'
            'max_attempts = 10\n'
            '\n'
            '[logging]\n'
            'format = "json"\n'
        )

        config = load_config(config_file)
        assert config.inputs.ecr_uri == "123.dkr.ecr.us-east-1.amazonaws.com"
        assert config.inputs.dockerfile == "Dockerfile.prod"
        assert config.health.max_attempts == 10
        assert config.logging.format == "json"

    def test_finds_file_in_working_directory(self, tmp_path: Path) -> None:
        """Test that ./ecr-deploy.toml is picked up automatically."""
        (tmp_path / "ecr-deploy.toml").write_text('[inputs]\narchitecture = "arm64"\n')
        assert load_config().inputs.architecture == "arm64"

    def test_finds_file_in_user_config(self, tmp_path: Path) -> None:
        user_dir = tmp_path / "home" / ".config" / "ecr-deploy"
        user_dir.mkdir(parents=True)
        (user_dir / "config.toml").write_text('[health]\ninterval_seconds = 1.5\n')
        assert load_config().health.interval_seconds == 1.5

    def test_environment_fills_keys_missing_from_toml(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("INPUT_ACCESS_KEY_ID", "AKIAENV")
        config_file = tmp_path / "custom.toml"
        config_file.write_text('[inputs]\necr_uri = "toml-host"\n')

        config = load_config(config_file)
        assert config.inputs.ecr_uri == "toml-host"
        assert config.inputs.access_key_id == "AKIAENV"

    def test_toml_overrides_environment(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("INPUT_DOCKERFILE", "Dockerfile.env")
        config_file = tmp_path / "custom.toml"
        config_file.write_text('[inputs]\ndockerfile = "Dockerfile.toml"\n')
        assert load_config(config_file).inputs.dockerfile == "Dockerfile.toml"

    def test_overrides_take_precedence(self, tmp_path: Path) -> None:
        config_file = tmp_path / "custom.toml"
        config_file.write_text('[inputs]\nport = 4000\nhealthcheck = "/health"\n')

        config = load_config(config_file, input_overrides={"port": 5000, "healthcheck": None})
        assert config.inputs.port == 5000
        assert config.inputs.healthcheck == "/health"

    def test_unknown_section(self, tmp_path: Path) -> None:
        config_file = tmp_path / "custom.toml"
        config_file.write_text("[database]\nurl = 'x'\n")
        with pytest.raises(ValueError, match="Unknown configuration sections"):
            load_config(config_file)

    def test_invalid_value(self, tmp_path: Path) -> None:
        config_file = tmp_path / "custom.toml"
        config_file.write_text("[logging]\nlevel = 'LOUD'\n")
        with pytest.raises(ValueError, match="Invalid configuration"):
            load_config(config_file)
