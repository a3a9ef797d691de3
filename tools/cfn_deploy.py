#!/usr/bin/env python3
"""CloudFormation deployment script.

Creates a staging S3 bucket, packages the CloudFormation template into it and
deploys the packaged template as a named stack using the AWS CLI.
"""
from __future__ import annotations

import argparse
import json
import os
import shutil
import subprocess
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, TextIO

import yaml

# Re-creating a bucket you already own only succeeds without a location
# constraint, i.e. in us-east-1.
STAGING_BUCKET_REGION = "us-east-1"
CAPABILITIES = "CAPABILITY_NAMED_IAM"
PARAMETER_OVERRIDES_FLAG = "--parameter-overrides"
UP_TO_DATE_EXIT_CODE = 255
BANNER_RULE = "=" * 63

REQUIRED_ARGUMENTS = (
  ("region", "--region"),
  ("profile", "--profile"),
  ("bucket_name", "--bucket-name"),
  ("stack_name", "--stack-name"),
  ("parameters_file", "--parameters-file"),
)

_TRUTHY = {"1", "true", "yes", "on"}


class DeployError(Exception):
  pass


class MissingArgumentError(DeployError):
  def __init__(self, flag: str) -> None:
    super().__init__(f"This script requires the {flag} argument.")
    self.flag = flag


class ParametersLoadError(DeployError):
  def __init__(self, parameters_file: str, reason: str) -> None:
    super().__init__(f"Unable to read the parameters from the --parameters-file named {parameters_file}")
    self.parameters_file = parameters_file
    self.reason = reason


class ExternalToolMissingError(DeployError):
  def __init__(self, executable: str) -> None:
    super().__init__("This script requires the AWS CLI to be installed.")
    self.executable = executable


class DeployState(str, Enum):
  CREATING_BUCKET = "creating-bucket"
  PACKAGING = "packaging"
  DEPLOYING = "deploying"
  DONE = "done"
  FAILED = "failed"


class StageFailureError(DeployError):
  def __init__(self, stage: DeployState, message: str, exit_code: int) -> None:
    super().__init__(message)
    self.stage = stage
    self.exit_code = exit_code


@dataclass(frozen=True)
class DeployArguments:
  region: str
  profile: str
  bucket_name: str
  stack_name: str
  parameters_file: str


@dataclass(frozen=True)
class ParameterOverride:
  key: str
  value: str


@dataclass(frozen=True)
class CommandResult:
  exit_code: int
  stderr: str = ""


@dataclass
class DeploymentOutcome:
  state: DeployState
  failure: Optional[StageFailureError] = None
  results: Dict[DeployState, CommandResult] = field(default_factory=dict)

  @property
  def succeeded(self) -> bool:
    return self.state is DeployState.DONE


class ColorMode(str, Enum):
  AUTO = "auto"
  ALWAYS = "always"
  NEVER = "never"


def _env_flag(environ: Mapping[str, str], name: str) -> bool:
  return environ.get(name, "").strip().lower() in _TRUTHY


@dataclass(frozen=True)
class DeploySettings:
  aws_cli: str = "aws"
  template_file: str = "./cloudformation.yaml"
  packaged_template_file: str = "packaged-cloudformation.yaml"
  color: ColorMode = ColorMode.AUTO
  echo: bool = False
  dry_run: bool = False

  @classmethod
  def from_environment(cls, environ: Optional[Mapping[str, str]] = None) -> "DeploySettings":
    if environ is None:
      environ = os.environ
    try:
      color = ColorMode(environ.get("CFN_DEPLOY_COLOR", "").strip().lower() or ColorMode.AUTO.value)
    except ValueError:
      color = ColorMode.AUTO
    return cls(
      aws_cli=environ.get("CFN_DEPLOY_AWS_CLI") or cls.aws_cli,
      template_file=environ.get("CFN_DEPLOY_TEMPLATE_FILE") or cls.template_file,
      packaged_template_file=environ.get("CFN_DEPLOY_PACKAGED_TEMPLATE_FILE") or cls.packaged_template_file,
      color=color,
      echo=_env_flag(environ, "CFN_DEPLOY_ECHO"),
      dry_run=_env_flag(environ, "CFN_DEPLOY_DRY_RUN"),
    )


PALETTE_KEYS = ("info", "error", "banner", "reset")


def _supports_color_output(stream: TextIO, environ: Mapping[str, str]) -> bool:
  isatty = getattr(stream, "isatty", None)
  return bool(isatty and isatty()) and environ.get("NO_COLOR") is None


def build_console_palette(
  mode: ColorMode, stream: TextIO, environ: Optional[Mapping[str, str]] = None
) -> Dict[str, str]:
  if environ is None:
    environ = os.environ
  use_color = mode is ColorMode.ALWAYS or (mode is ColorMode.AUTO and _supports_color_output(stream, environ))
  palette = {key: "" for key in PALETTE_KEYS}
  if use_color:
    palette.update({
      "info": "\033[36m",
      "error": "\033[31m",
      "banner": "\033[1m",
      "reset": "\033[0m",
    })
  return palette


class Console:
  def __init__(
    self,
    stream: Optional[TextIO] = None,
    mode: ColorMode = ColorMode.AUTO,
    environ: Optional[Mapping[str, str]] = None,
  ) -> None:
    self._stream = stream if stream is not None else sys.stdout
    self._palette = build_console_palette(mode, self._stream, environ)

  def _emit(self, kind: str, text: str) -> None:
    print(f"{self._palette[kind]}{text}{self._palette['reset']}", file=self._stream, flush=True)

  def info(self, message: str) -> None:
    self._emit("info", f"INFO | {message}")

  def error(self, message: str) -> None:
    self._emit("error", f"ERROR | {message}")

  def banner(self, label: str) -> None:
    self._emit("banner", f"{BANNER_RULE} [{label}]")

  def plain(self, message: str) -> None:
    print(message, file=self._stream, flush=True)


def format_command(command: Iterable[str]) -> str:
  return " ".join(json.dumps(arg) for arg in command)


class CommandRunner(Protocol):
  def run(self, command: List[str]) -> CommandResult:
    ...

  def which(self, executable: str) -> Optional[str]:
    ...


class SubprocessRunner:
  """Runs commands synchronously, streaming stdout and capturing stderr."""

  def __init__(self, cwd: Optional[Path] = None, stderr: Optional[TextIO] = None) -> None:
    self._cwd = cwd
    self._stderr = stderr

  def which(self, executable: str) -> Optional[str]:
    return shutil.which(executable)

  def run(self, command: List[str]) -> CommandResult:
    stderr_stream = self._stderr if self._stderr is not None else sys.stderr
    try:
      completed = subprocess.run(
        command,
        cwd=self._cwd,
        check=False,
        stderr=subprocess.PIPE,
        encoding="utf-8",
        errors="replace",
      )
    except FileNotFoundError as exc:
      message = (
        f"Command '{command[0]}' could not be executed ({exc.strerror or 'file not found'}). "
        "Ensure it is installed and available on PATH."
      )
      print(message, file=stderr_stream)
      return CommandResult(exit_code=127, stderr=message)

    captured = completed.stderr or ""
    if captured:
      stderr_stream.write(captured)
      stderr_stream.flush()
    return CommandResult(exit_code=completed.returncode, stderr=captured)


class DryRunRunner:
  def __init__(self, console: Console) -> None:
    self._console = console

  def which(self, executable: str) -> Optional[str]:
    return shutil.which(executable) or executable

  def run(self, command: List[str]) -> CommandResult:
    self._console.plain(f"[dry-run] {format_command(command)}")
    return CommandResult(exit_code=0)


class _ArgumentParser(argparse.ArgumentParser):
  def error(self, message: str) -> None:  # type: ignore[override]
    for _, flag in REQUIRED_ARGUMENTS:
      if flag in message:
        raise MissingArgumentError(flag)
    raise DeployError(message)


def build_argument_parser() -> argparse.ArgumentParser:
  parser = _ArgumentParser(
    description="Package and deploy ./cloudformation.yaml with the AWS CLI.",
    epilog="Values that begin with '-' must be passed as --flag=value, e.g. --stack-name=-blue.",
    allow_abbrev=False,
  )
  parser.add_argument("--region", help="AWS region the stack is deployed to.")
  parser.add_argument("--profile", help="AWS CLI named profile.")
  parser.add_argument("--bucket-name", help="S3 bucket used as the packaging staging area.")
  parser.add_argument("--stack-name", help="CloudFormation stack name.")
  parser.add_argument(
    "--parameters-file",
    help="Parameters file (JSON or YAML list of ParameterKey/ParameterValue), relative to the current directory.",
  )
  return parser


def require_arguments(namespace: argparse.Namespace) -> DeployArguments:
  values: Dict[str, str] = {}
  for attribute, flag in REQUIRED_ARGUMENTS:
    value = getattr(namespace, attribute, None)
    if not value:
      raise MissingArgumentError(flag)
    values[attribute] = value
  return DeployArguments(**values)


def parse_arguments(argv: Optional[List[str]] = None) -> DeployArguments:
  namespace, _ = build_argument_parser().parse_known_args(argv)
  return require_arguments(namespace)


def _parse_parameter_record(row: Any, index: int, parameters_path: Path) -> ParameterOverride:
  if not isinstance(row, dict):
    raise ValueError(f"Parameters file {parameters_path}: entry {index} must be a mapping.")
  key = row.get("ParameterKey")
  if not isinstance(key, str) or not key:
    raise ValueError(f"Parameters file {parameters_path}: entry {index} requires a ParameterKey string.")
  if "ParameterValue" not in row:
    raise ValueError(f"Parameters file {parameters_path}: entry {index} ({key}) requires a ParameterValue.")
  value = row["ParameterValue"]
  if not isinstance(value, str):
    raise ValueError(f"Parameters file {parameters_path}: ParameterValue for '{key}' must be a scalar.")
  return ParameterOverride(key=key, value=value)


def read_parameters_file(parameters_path: Path) -> List[ParameterOverride]:
  # BaseLoader keeps every scalar as the text written (0755 stays "0755").
  with parameters_path.open("r", encoding="utf-8") as handle:
    loaded = yaml.load(handle, Loader=yaml.BaseLoader)

  if not isinstance(loaded, list):
    raise ValueError(f"Parameters file {parameters_path} must contain a list of parameters.")
  return [_parse_parameter_record(row, index, parameters_path) for index, row in enumerate(loaded)]


def load_parameters(
  parameters_file: str,
  *,
  cwd: Optional[Path] = None,
  console: Optional[Console] = None,
) -> List[ParameterOverride]:
  parameters_path = (cwd or Path.cwd()) / parameters_file
  if console is not None:
    console.info(f"Reading parameters file from {parameters_path}")
  try:
    return read_parameters_file(parameters_path)
  except (OSError, yaml.YAMLError, ValueError) as exc:
    raise ParametersLoadError(parameters_file, str(exc)) from exc


def parameter_override_args(parameters: Iterable[ParameterOverride]) -> List[str]:
  tokens = [f"{parameter.key}={parameter.value}" for parameter in parameters]
  if not tokens:
    return []
  return [PARAMETER_OVERRIDES_FLAG] + tokens


def render_parameter_overrides(parameters: Iterable[ParameterOverride]) -> str:
  args = parameter_override_args(parameters)
  if not args:
    return ""
  return " ".join(args) + " "


def build_bucket_command(args: DeployArguments, *, aws_cli: str) -> List[str]:
  return [
    aws_cli,
    "s3",
    "mb",
    f"s3://{args.bucket_name}",
    "--region",
    STAGING_BUCKET_REGION,
    "--profile",
    args.profile,
  ]


def build_package_command(args: DeployArguments, settings: DeploySettings, *, aws_cli: str) -> List[str]:
  return [
    aws_cli,
    "cloudformation",
    "package",
    "--template-file",
    settings.template_file,
    "--s3-bucket",
    args.bucket_name,
    "--output-template-file",
    settings.packaged_template_file,
    "--region",
    args.region,
    "--profile",
    args.profile,
  ]


def build_deploy_command(
  args: DeployArguments,
  settings: DeploySettings,
  parameters: Iterable[ParameterOverride],
  *,
  aws_cli: str,
) -> List[str]:
  command = [
    aws_cli,
    "cloudformation",
    "deploy",
    "--template-file",
    settings.packaged_template_file,
    "--stack-name",
    args.stack_name,
    "--capabilities",
    CAPABILITIES,
  ]
  command.extend(parameter_override_args(parameters))
  command.extend(["--region", args.region, "--profile", args.profile])
  return command


def is_stack_up_to_date(result: CommandResult, stack_name: str) -> bool:
  # The CLI exits 255 when a changeset is empty; that is not a failure.
  return (
    result.exit_code == UP_TO_DATE_EXIT_CODE
    and f"No changes to deploy. Stack {stack_name} is up to date" in result.stderr
  )


@dataclass(frozen=True)
class _Stage:
  state: DeployState
  failure_message: str
  build: Callable[[], List[str]]
  tolerate: Optional[Callable[[CommandResult], bool]] = None


def run_deployment(
  args: DeployArguments,
  parameters: List[ParameterOverride],
  runner: CommandRunner,
  *,
  settings: Optional[DeploySettings] = None,
  aws_cli: Optional[str] = None,
  console: Optional[Console] = None,
) -> DeploymentOutcome:
  settings = settings or DeploySettings()
  cli = aws_cli or settings.aws_cli
  stages = [
    _Stage(
      DeployState.CREATING_BUCKET,
      "CloudFormation staging area S3 bucket creation failed.",
      lambda: build_bucket_command(args, aws_cli=cli),
    ),
    _Stage(
      DeployState.PACKAGING,
      "CloudFormation package failed.",
      lambda: build_package_command(args, settings, aws_cli=cli),
    ),
    _Stage(
      DeployState.DEPLOYING,
      "CloudFormation deploy failed.",
      lambda: build_deploy_command(args, settings, parameters, aws_cli=cli),
      tolerate=lambda result: is_stack_up_to_date(result, args.stack_name),
    ),
  ]

  outcome = DeploymentOutcome(state=DeployState.CREATING_BUCKET)
  for stage in stages:
    outcome.state = stage.state
    command = stage.build()
    if console is not None and settings.echo:
      console.plain(format_command(command))
    result = runner.run(command)
    outcome.results[stage.state] = result
    if result.exit_code == 0:
      continue
    if stage.tolerate is not None and stage.tolerate(result):
      if console is not None:
        console.info(f"No changes to deploy. Stack {args.stack_name} is up to date.")
      continue
    outcome.failure = StageFailureError(stage.state, stage.failure_message, result.exit_code)
    outcome.state = DeployState.FAILED
    return outcome

  outcome.state = DeployState.DONE
  return outcome


def main(
  argv: Optional[List[str]] = None,
  *,
  runner: Optional[CommandRunner] = None,
  environ: Optional[Mapping[str, str]] = None,
  stdout: Optional[TextIO] = None,
) -> int:
  settings = DeploySettings.from_environment(environ)
  console = Console(stdout, settings.color, environ)
  if runner is None:
    runner = DryRunRunner(console) if settings.dry_run else SubprocessRunner()

  try:
    aws_cli = runner.which(settings.aws_cli)
    if aws_cli is None:
      raise ExternalToolMissingError(settings.aws_cli)

    args = parse_arguments(argv)

    try:
      parameters = load_parameters(args.parameters_file, console=console)
    except ParametersLoadError as exc:
      console.plain(exc.reason)
      raise

    overrides = render_parameter_overrides(parameters)
    if overrides:
      console.info(f"Using {overrides.rstrip()}")

    console.banner("START")
    outcome = run_deployment(
      args,
      parameters,
      runner,
      settings=settings,
      aws_cli=aws_cli,
      console=console,
    )
    if outcome.failure is not None:
      raise outcome.failure
  except DeployError as exc:
    console.error(str(exc))
    return 1
  except Exception as exc:  # pylint: disable=broad-except
    console.error(f"Unhandled error: {exc}")
    return 1

  console.banner("END")
  return 0


if __name__ == "__main__":
  sys.exit(main())
