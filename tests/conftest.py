"""Shared fixtures for ecr-deploy tests."""

from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from ecr_deploy.pipeline.commands import CommandResult, CommandRunner

_ENV_PREFIXES = ("INPUT_", "GITHUB_", "ECR_DEPLOY_", "DOCKER_HOST")


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep CI variables and user config files out of every test."""
    for name in list(os.environ):
        if name.upper().startswith(_ENV_PREFIXES):
            monkeypatch.delenv(name, raising=False)
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def mock_runner() -> AsyncMock:
    """CommandRunner double whose run() succeeds unless reconfigured."""
    runner = AsyncMock(spec=CommandRunner)
    runner.run.return_value = CommandResult(command=[], returncode=0)
    return runner
