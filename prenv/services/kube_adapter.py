from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
import re
import tempfile
from typing import Sequence

from prenv.proc import AdapterCommandError, CommandRunner, run_command
from prenv.services.templates import Manifest, render_to_dir

logger = logging.getLogger(__name__)

_VALIDATION_ERROR = "error validating data"
_VALIDATING_FILE = re.compile(r'error validating "([^"]+)"')


@dataclass(frozen=True)
class KubectlResult:
    action: str
    files: tuple[str, ...]
    output: str


class KubeAdapter:
    """Renders manifests to a scratch directory and hands them to kubectl."""

    def __init__(self, *, runner: CommandRunner | None = None, kubectl: str = "kubectl") -> None:
        self._runner = runner
        self._kubectl = kubectl

    def apply(self, manifests: Sequence[Manifest]) -> KubectlResult:
        with tempfile.TemporaryDirectory(prefix="prenvrender") as tmp:
            files = render_to_dir(Path(tmp), manifests)
            try:
                result = run_command(
                    [self._kubectl, "apply", "-f", tmp],
                    runner=self._runner,
                    error_message="Failed to apply Kubernetes manifests",
                )
            except AdapterCommandError as exc:
                if _VALIDATION_ERROR in exc.result.stderr:
                    self._log_invalid_manifest(exc.result.stderr)
                raise
        logger.info("kubectl apply: %s", result.stdout.strip() or "no output")
        return KubectlResult(action="apply", files=tuple(files), output=result.stdout)

    def delete(self, manifests: Sequence[Manifest]) -> KubectlResult:
        with tempfile.TemporaryDirectory(prefix="prenvrender") as tmp:
            files = render_to_dir(Path(tmp), manifests)
            result = run_command(
                [self._kubectl, "delete", "--ignore-not-found=true", "-f", tmp],
                runner=self._runner,
                error_message="Failed to delete Kubernetes resources",
            )
        logger.info("kubectl delete: %s", result.stdout.strip() or "no output")
        return KubectlResult(action="delete", files=tuple(files), output=result.stdout)

    def get_configmap_data(self, *, name: str, namespace: str, key: str) -> str | None:
        try:
            result = run_command(
                [
                    self._kubectl,
                    "get",
                    "configmap",
                    name,
                    "--namespace",
                    namespace,
                    "-o",
                    f"go-template={{{{ index .data \"{key}\" }}}}",
                ],
                runner=self._runner,
                error_message=f"Failed to read configmap {namespace}/{name}",
            )
        except AdapterCommandError as exc:
            text = f"{exc.result.stderr}\n{exc.result.stdout}".lower()
            if "not found" in text:
                return None
            raise
        data = result.stdout
        return None if data in ("", "<no value>") else data

    def _log_invalid_manifest(self, stderr: str) -> None:
        match = _VALIDATING_FILE.search(stderr)
        if match is None:
            return
        path = Path(match.group(1))
        try:
            content = path.read_text()
        except OSError as exc:
            logger.error("Manifest %s failed validation and could not be read: %s", path, exc)
            return
        logger.error(
            "Manifest %s failed validation, likely a missing or invalid field:\n%s",
            path,
            content,
        )
