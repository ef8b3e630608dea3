from __future__ import annotations

import logging
import os
import re
import sys
from typing import Mapping

_DEFAULT_LOG_LEVEL = "INFO"
_RESET = "\x1b[0m"
_LEVEL_COLORS = {
    "DEBUG": "\x1b[36m",
    "INFO": "\x1b[32m",
    "WARNING": "\x1b[33m",
    "ERROR": "\x1b[31m",
    "CRITICAL": "\x1b[1;31m",
}
# workflow commands understood by the GitHub Actions runner
_ANNOTATIONS = {
    logging.WARNING: "::warning::",
    logging.ERROR: "::error::",
    logging.CRITICAL: "::error::",
}
# Client libraries that log every request at INFO/DEBUG.
_NOISY_LOGGERS = ("botocore", "boto3", "urllib3", "httpx", "httpcore")

REDACTED = "***"
_SECRET_PATTERNS = (
    re.compile(r"\b(?:ghp|gho|ghu|ghs|ghr|github_pat)_[A-Za-z0-9_]{20,}\b"),
    re.compile(r"(?<=hooks\.slack\.com/services/)[A-Za-z0-9/]+"),
    re.compile(r"(?i)(?<=authorization: basic )[A-Za-z0-9+/=]+"),
    re.compile(r"(?i)(?<=bearer )[A-Za-z0-9._~+/=-]{20,}"),
)


def redact_secrets(text: str) -> str:
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(REDACTED, text)
    return text


class _RedactingFilter(logging.Filter):
    """Masks tokens and webhook URLs before any handler sees the record."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact_secrets(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


class _ColorFormatter(logging.Formatter):
    def __init__(self, fmt: str, datefmt: str, *, use_color: bool) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        levelname = record.levelname
        if self._use_color and levelname in _LEVEL_COLORS:
            record.levelname = f"{_LEVEL_COLORS[levelname]}{levelname}{_RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = levelname


class _ActionsFormatter(logging.Formatter):
    """Turns warnings and errors into workflow annotations on GitHub Actions."""

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        prefix = _ANNOTATIONS.get(record.levelno)
        if prefix is None:
            return text
        # annotations are single-line; the runner decodes %0A
        return prefix + text.replace("%", "%25").replace("\r", "%0D").replace("\n", "%0A")


def _resolve_level(level: str | int | None, environ: Mapping[str, str]) -> int:
    if isinstance(level, int):
        return level
    candidate = (level or environ.get("PRENV_LOG_LEVEL", _DEFAULT_LOG_LEVEL)).upper()
    resolved = logging.getLevelName(candidate)
    if isinstance(resolved, int):
        return resolved
    return logging.INFO


def build_handler(*, level: int, environ: Mapping[str, str] | None = None) -> logging.Handler:
    environ = os.environ if environ is None else environ
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.addFilter(_RedactingFilter())
    if environ.get("GITHUB_ACTIONS") == "true":
        handler.setFormatter(_ActionsFormatter(fmt="%(name)s: %(message)s"))
    else:
        handler.setFormatter(
            _ColorFormatter(
                fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
                use_color=not environ.get("NO_COLOR") and sys.stderr.isatty(),
            )
        )
    return handler


def configure_logging(
    *, level: str | int | None = None, force: bool = False, environ: Mapping[str, str] | None = None
) -> None:
    """Send prenv logs to stderr so stdout stays usable for command output."""
    environ = os.environ if environ is None else environ
    root = logging.getLogger()
    resolved_level = _resolve_level(level, environ)
    root.setLevel(resolved_level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(resolved_level, logging.WARNING))

    if root.handlers and not force:
        for handler in root.handlers:
            handler.setLevel(resolved_level)
        return

    root.handlers.clear()
    root.addHandler(build_handler(level=resolved_level, environ=environ))
