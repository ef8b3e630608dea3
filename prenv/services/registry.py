from __future__ import annotations

from datetime import datetime, timezone
import logging
import os
from pathlib import Path
import threading
from typing import Protocol

import yaml

from prenv.services.errors import VerificationError
from prenv.services.kube_adapter import KubeAdapter
from prenv.services.templates import Manifest
from prenv.settings import Settings
from prenv.store import DEFAULT_BASE_BRANCH, GitStore, RenderResult, clone_dir_name, resolve_repo_url

logger = logging.getLogger(__name__)

DEFAULT_CONFIGMAP_NAME = "prenv-state"
DEFAULT_CONFIGMAP_NAMESPACE = "prenv"
CONFIGMAP_KEY = "state"

CONFIGMAP_TEMPLATE = """\
apiVersion: v1
kind: Namespace
metadata:
  name: {{ namespace }}
---
apiVersion: v1
kind: ConfigMap
metadata:
  name: {{ name }}
  namespace: {{ namespace }}
data:
  {{ key }}: {{ state | to_json }}
"""


class Registry(Protocol):
    def add_name(self, name: str) -> bool: ...

    def delete_name(self, name: str) -> bool: ...

    def list_names(self) -> list[str]: ...


def load_state(text: str | None) -> list[str]:
    if not text or not text.strip():
        return []
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise VerificationError(f"environment registry is not valid YAML: {exc}") from exc
    if data is None:
        return []
    if not isinstance(data, dict):
        raise VerificationError("environment registry must be a mapping with environmentNames")
    names = data.get("environmentNames") or []
    return [str(name) for name in names]


def dump_state(names: list[str]) -> str:
    return yaml.safe_dump({"environmentNames": names}, sort_keys=False)


class _LockedRegistry:
    """Read-modify-write under a process-local lock; last write wins across processes."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def _read(self) -> list[str]:
        raise NotImplementedError

    def _write(self, names: list[str], *, reason: str) -> None:
        raise NotImplementedError

    def list_names(self) -> list[str]:
        with self._lock:
            return self._read()

    def add_name(self, name: str) -> bool:
        with self._lock:
            names = self._read()
            if name in names:
                logger.debug("Environment %s already registered", name)
                return False
            names.append(name)
            self._write(names, reason=f"register environment {name}")
        logger.info("Registered environment %s", name)
        return True

    def delete_name(self, name: str) -> bool:
        with self._lock:
            names = self._read()
            if name not in names:
                return False
            self._write([n for n in names if n != name], reason=f"unregister environment {name}")
        logger.info("Unregistered environment %s", name)
        return True


class YamlFileRegistry(_LockedRegistry):
    def __init__(self, path: Path) -> None:
        super().__init__()
        self.path = path

    def _read(self) -> list[str]:
        if not self.path.exists():
            return []
        return load_state(self.path.read_text())

    def _write(self, names: list[str], *, reason: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f".{self.path.name}.tmp")
        tmp.write_text(dump_state(names))
        os.replace(tmp, self.path)


class ConfigMapRegistry(_LockedRegistry):
    def __init__(
        self,
        kube: KubeAdapter,
        *,
        name: str = DEFAULT_CONFIGMAP_NAME,
        namespace: str = DEFAULT_CONFIGMAP_NAMESPACE,
    ) -> None:
        super().__init__()
        self.kube = kube
        self.name = name
        self.namespace = namespace

    def _read(self) -> list[str]:
        return load_state(self.kube.get_configmap_data(name=self.name, namespace=self.namespace, key=CONFIGMAP_KEY))

    def _write(self, names: list[str], *, reason: str) -> None:
        manifest = Manifest(
            name=f"{self.name}.yaml",
            template=CONFIGMAP_TEMPLATE,
            data={"name": self.name, "namespace": self.namespace, "key": CONFIGMAP_KEY, "state": dump_state(names)},
        )
        self.kube.apply([manifest])


class GitRegistry(_LockedRegistry):
    """State file committed to a Git repository through a :class:`GitStore`."""

    def __init__(self, store: GitStore, *, path: str) -> None:
        super().__init__()
        self.store = store
        self.path = path

    def _read(self) -> list[str]:
        result = self.store.transact(lambda root: RenderResult(root=root))
        state = result.root / self.path
        return load_state(state.read_text()) if state.exists() else []

    def _write(self, names: list[str], *, reason: str) -> None:
        def write(root: Path) -> RenderResult:
            target = root / self.path
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(dump_state(names))
            return RenderResult(root=root, added_or_modified=[self.path])

        self.store.transact(write)
        self.store.commit(f"prenv: {reason}", "n/a")


def registry_from_settings(settings: Settings, *, kube: KubeAdapter) -> Registry:
    """ConfigMap when PRENV_CONFIGMAP_NAME is set, Git when PRENV_GIT_REPO_URL is, else a local YAML file."""
    if settings.configmap_name:
        return ConfigMapRegistry(kube, name=settings.configmap_name)

    if settings.state_git_repo:
        url = resolve_repo_url(settings.state_git_repo, web_url=settings.github.web_url)
        store = GitStore(
            url=url,
            # Own clone: every read resets the worktree.
            clone_dir=settings.resolve(settings.git_root) / "state" / clone_dir_name(url),
            base_branch=settings.base_branch or DEFAULT_BASE_BRANCH,
            push=True,
            author_name=settings.commit_author_name,
            author_email=settings.commit_author_email,
            token=settings.github.token,
            now=datetime.now(timezone.utc),
        )
        return GitRegistry(store, path=settings.state_file_path.as_posix())

    return YamlFileRegistry(settings.resolve(settings.state_file_path))
