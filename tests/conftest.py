"""Shared fixtures for the deployment script tests."""
from __future__ import annotations

import io
from typing import Dict, List, Optional

import pytest

from cfn_deploy import CommandResult, DeployArguments


class FakeRunner:
  """Replays scripted results and records every command it receives."""

  def __init__(self, results: Optional[List[CommandResult]] = None, installed: bool = True) -> None:
    self.results = list(results or [])
    self.installed = installed
    self.commands: List[List[str]] = []

  def which(self, executable: str) -> Optional[str]:
    return f"/usr/local/bin/{executable}" if self.installed else None

  def run(self, command: List[str]) -> CommandResult:
    self.commands.append(list(command))
    if self.results:
      return self.results.pop(0)
    return CommandResult(exit_code=0)


@pytest.fixture
def fake_runner():
  return FakeRunner()


@pytest.fixture
def make_runner():
  def factory(*exit_codes_or_results, installed: bool = True) -> FakeRunner:
    results = [
      item if isinstance(item, CommandResult) else CommandResult(exit_code=item)
      for item in exit_codes_or_results
    ]
    return FakeRunner(results, installed=installed)

  return factory


@pytest.fixture
def deploy_arguments():
  return DeployArguments(
    region="us-west-2",
    profile="dev",
    bucket_name="demo-bucket",
    stack_name="demo-stack",
    parameters_file="params.json",
  )


@pytest.fixture
def cli_argv() -> List[str]:
  return [
    "--region", "us-west-2",
    "--profile", "dev",
    "--bucket-name", "demo-bucket",
    "--stack-name", "demo-stack",
    "--parameters-file", "params.json",
  ]


@pytest.fixture
def quiet_environ() -> Dict[str, str]:
  return {"CFN_DEPLOY_COLOR": "never"}


@pytest.fixture
def stdout_buffer():
  return io.StringIO()


@pytest.fixture
def workdir(tmp_path, monkeypatch):
  monkeypatch.chdir(tmp_path)
  (tmp_path / "params.json").write_text(
    '[{"ParameterKey": "Env", "ParameterValue": "prod"}]\n', encoding="utf-8"
  )
  return tmp_path
