from __future__ import annotations

import base64
from dataclasses import dataclass, field
import json
import logging
from pathlib import Path
from typing import Any, Iterable, Mapping

from jinja2 import Environment, StrictUndefined, TemplateError, TemplateSyntaxError, UndefinedError

from prenv.services.errors import ConfigurationError, VerificationError

logger = logging.getLogger(__name__)


def _b64enc(value: Any) -> str:
    return base64.b64encode(str(value).encode()).decode()


def _to_json(value: Any) -> str:
    if hasattr(value, "model_dump"):
        value = value.model_dump(mode="json", by_alias=True, exclude_none=True)
    return json.dumps(value)


def _build_environment() -> Environment:
    env = Environment(autoescape=False, undefined=StrictUndefined, keep_trailing_newline=True)
    env.filters["b64enc"] = _b64enc
    env.filters["to_json"] = _to_json
    env.filters["split"] = lambda value, sep=",": str(value).split(sep)
    return env


_ENV = _build_environment()


@dataclass(frozen=True)
class Manifest:
    name: str
    template: str
    data: Mapping[str, Any] = field(default_factory=dict)


def render_string(template: str, context: Mapping[str, Any], *, name: str = "<inline>") -> str:
    try:
        return _ENV.from_string(template).render(**context)
    except TemplateSyntaxError as exc:
        raise ConfigurationError(f"invalid template {name}: {exc}") from exc
    except UndefinedError as exc:
        raise VerificationError(f"missing template value in {name}: {exc}") from exc
    except TemplateError as exc:
        raise VerificationError(f"failed to render {name}: {exc}") from exc


def render_manifest(manifest: Manifest) -> str:
    if not manifest.name:
        raise ConfigurationError("manifest name must not be empty")
    if not manifest.template:
        raise ConfigurationError(f"manifest {manifest.name} has an empty template")
    return render_string(manifest.template, manifest.data, name=manifest.name)


def render_to_dir(directory: Path, manifests: Iterable[Manifest]) -> list[str]:
    """Write every manifest under ``directory`` and return the relative paths written."""
    written: list[str] = []
    root = directory.resolve()
    for manifest in manifests:
        content = render_manifest(manifest)
        target = (root / manifest.name).resolve()
        if root not in target.parents:
            raise ConfigurationError(f"manifest {manifest.name} escapes {directory}")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
        logger.debug("Rendered %s (%d bytes)", target, len(content))
        written.append(manifest.name)
    return written


def remove_from_dir(directory: Path, names: Iterable[str]) -> list[str]:
    """Delete ``names`` under ``directory`` and return the ones that existed."""
    removed: list[str] = []
    for name in names:
        target = directory / name
        if target.is_file():
            target.unlink()
            removed.append(name)
    return removed
