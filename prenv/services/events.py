from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from prenv.services.errors import ConfigurationError

logger = logging.getLogger(__name__)

EVENT_TYPE_APPLY = "prenv-apply"
EVENT_TYPE_DESTROY = "prenv-destroy"


class DispatchInputs(BaseModel):
    """``inputs`` of a workflow_dispatch or ``client_payload`` of a repository_dispatch."""

    model_config = ConfigDict(extra="ignore")

    raw_config: str = ""
    triggered_by: list[str] = []

    @field_validator("triggered_by", mode="before")
    @classmethod
    def _split_triggered_by(cls, value: Any) -> Any:
        # workflow_dispatch inputs are always strings
        if value is None:
            return []
        if isinstance(value, str):
            text = value.strip()
            if text.startswith("["):
                return json.loads(text)
            return [part.strip() for part in text.split(",") if part.strip()]
        return value


class GitHubEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    action: str = ""
    number: int | None = None
    inputs: dict[str, Any] | None = None
    client_payload: dict[str, Any] | None = None
    pull_request: dict[str, Any] | None = None

    def dispatch_inputs(self) -> tuple[str, DispatchInputs] | None:
        for kind, payload in (("workflow_dispatch", self.inputs), ("repository_dispatch", self.client_payload)):
            if payload:
                try:
                    return kind, DispatchInputs.model_validate(payload)
                except (ValidationError, ValueError) as exc:
                    raise ConfigurationError(f"invalid {kind} payload: {exc}") from exc
        return None

    def pull_request_number(self) -> int | None:
        if self.pull_request and self.pull_request.get("number"):
            return int(self.pull_request["number"])
        return self.number


def load_event(path: Path | None) -> GitHubEvent | None:
    if path is None:
        return None
    try:
        data = json.loads(path.read_text())
    except (OSError, ValueError) as exc:
        raise ConfigurationError(f"failed to read GitHub event {path}: {exc}") from exc
    try:
        return GitHubEvent.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"unexpected GitHub event payload in {path}: {exc}") from exc
