from __future__ import annotations

from dataclasses import dataclass, field
import logging
from pathlib import Path

from pydantic import ValidationError
import yaml

from prenv.models import Config, EnvArgs, PullRequestEnvArgs
from prenv.services.errors import ConfigurationError, VerificationError
from prenv.services.events import GitHubEvent, load_event
from prenv.services.github import GitHubClient
from prenv.services.templates import render_string
from prenv.settings import Settings

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "prenv.yaml"


@dataclass(frozen=True)
class LoadedConfig:
    config: Config
    source: str
    action: str = ""
    triggered_by: list[str] = field(default_factory=list)
    event: GitHubEvent | None = None


def parse_config(text: str, *, source: str) -> Config:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"unable to decode yaml from {source}: {exc}") from exc
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{source} must contain a YAML mapping")
    try:
        return Config.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"invalid configuration in {source}: {exc}") from exc


def load_chain_config(settings: Settings) -> LoadedConfig:
    """Find the configuration for this run.

    Order: PRENV_RAW_CONFIG, workflow_dispatch inputs, repository_dispatch
    client_payload, then prenv.yaml in the working directory.
    """
    event = load_event(settings.event_path)
    action = event.action if event is not None else ""

    if settings.raw_config:
        return LoadedConfig(
            config=parse_config(settings.raw_config, source="PRENV_RAW_CONFIG"),
            source="PRENV_RAW_CONFIG",
            action=action,
            event=event,
        )

    dispatched = event.dispatch_inputs() if event is not None else None
    if dispatched is not None:
        kind, inputs = dispatched
        if not inputs.raw_config:
            raise ConfigurationError(f"missing required input raw_config in {kind} payload")
        logger.info("Using configuration from %s, triggered by %s", kind, inputs.triggered_by or "nobody")
        return LoadedConfig(
            config=parse_config(inputs.raw_config, source=f"{kind} raw_config"),
            source=kind,
            action=action,
            triggered_by=list(inputs.triggered_by),
            event=event,
        )

    path = settings.resolve(Path(CONFIG_FILE_NAME))
    try:
        text = path.read_text()
    except OSError as exc:
        raise ConfigurationError(f"unable to open config file {path}: {exc}") from exc
    return LoadedConfig(config=parse_config(text, source=str(path)), source=str(path), action=action, event=event)


def environment_name_template(config: Config) -> str:
    if config.name_template:
        return config.name_template
    if config.name_prefix:
        return "{{ name_prefix }}{{ pull_request.number }}"
    return "prenv-{{ pull_request.number }}"


def build_pull_request_env_args(
    config: Config,
    *,
    settings: Settings,
    event: GitHubEvent | None,
    github: GitHubClient | None = None,
) -> EnvArgs:
    """Environment parameters for a run started by a pull request event."""
    number = event.pull_request_number() if event is not None else None
    if not number:
        raise VerificationError("pull request number is required; run prenv from a pull_request event")
    if not settings.sha:
        raise VerificationError("head commit SHA is required; set GITHUB_SHA")

    pull_request = PullRequestEnvArgs(number=number, head_sha=settings.sha, repository=settings.repository)
    if github is not None and settings.repository:
        owner, _, repo = settings.repository.partition("/")
        if not owner or not repo or "/" in repo:
            raise VerificationError(f"GITHUB_REPOSITORY must be owner/repo, got {settings.repository!r}")
        pull_request.pull_request_numbers = github.list_open_pull_request_numbers(owner, repo)

    context = {"name_prefix": config.name_prefix, "pull_request": pull_request, "config": config}
    name = render_string(environment_name_template(config), context, name="nameTemplate").strip()
    if not name:
        raise VerificationError("environment name template rendered an empty name")
    return EnvArgs(name=name, pull_request=pull_request)
