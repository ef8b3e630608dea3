from __future__ import annotations

from pathlib import Path
import shutil
import subprocess

import pytest

from prenv.services.github import PullRequestRef
from prenv.services.kube_adapter import KubectlResult
from prenv.services.registry import YamlFileRegistry
from prenv.services.sqs_adapter import QueueResult
from prenv.services.templates import render_manifest
from prenv.settings import Settings

QUEUE_URL_PREFIX = "https://sqs.ap-northeast-1.amazonaws.com/123456789012/"


class FakeKube:
    def __init__(self) -> None:
        self.calls: list[tuple[str, dict]] = []
        self.configmaps: dict[tuple[str, str, str], str] = {}

    def apply(self, manifests):
        rendered = {m.name: render_manifest(m) for m in manifests}
        self.calls.append(("apply", rendered))
        return KubectlResult(action="apply", files=tuple(rendered), output="")

    def delete(self, manifests):
        rendered = {m.name: render_manifest(m) for m in manifests}
        self.calls.append(("delete", rendered))
        return KubectlResult(action="delete", files=tuple(rendered), output="")

    def get_configmap_data(self, *, name: str, namespace: str, key: str):
        self.calls.append(("get_configmap_data", {"name": name, "namespace": namespace, "key": key}))
        return self.configmaps.get((namespace, name, key))


class FakeSqs:
    def __init__(self, existing: dict[str, str] | None = None) -> None:
        self.calls: list[tuple[str, dict]] = []
        self.queues: dict[str, str] = dict(existing or {})

    def ensure_queue_created(self, name_or_url: str, *, create: bool) -> QueueResult:
        self.calls.append(("ensure_queue_created", {"name": name_or_url, "create": create}))
        if name_or_url.startswith("https://"):
            return QueueResult(url=name_or_url, created=False)
        if name_or_url in self.queues:
            return QueueResult(url=self.queues[name_or_url], created=False)
        url = QUEUE_URL_PREFIX + name_or_url
        self.queues[name_or_url] = url
        return QueueResult(url=url, created=True)

    def ensure_queue_deleted(self, name_or_url: str) -> bool:
        self.calls.append(("ensure_queue_deleted", {"name": name_or_url}))
        return self.queues.pop(name_or_url, None) is not None


class FakeGitHub:
    def __init__(self) -> None:
        self.calls: list[tuple[str, dict]] = []
        self.open_pull_requests: list[int] = []

    def send_repository_dispatch(self, owner: str, repo: str, event_type: str, payload: dict) -> None:
        self.calls.append(
            (
                "send_repository_dispatch",
                {"owner": owner, "repo": repo, "event_type": event_type, "payload": payload},
            )
        )

    def create_pull_request(self, owner: str, repo: str, *, title: str, head: str, base: str, body: str):
        self.calls.append(
            (
                "create_pull_request",
                {"owner": owner, "repo": repo, "title": title, "head": head, "base": base, "body": body},
            )
        )
        number = len(self.calls)
        return PullRequestRef(number=number, url=f"https://github.com/{owner}/{repo}/pull/{number}")

    def list_open_pull_request_numbers(self, owner: str, repo: str) -> list[int]:
        self.calls.append(("list_open_pull_request_numbers", {"owner": owner, "repo": repo}))
        return list(self.open_pull_requests)


def git(*args: str, cwd: Path) -> subprocess.CompletedProcess[str]:
    return subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(work_dir=tmp_path)


@pytest.fixture
def kube() -> FakeKube:
    return FakeKube()


@pytest.fixture
def sqs() -> FakeSqs:
    return FakeSqs()


@pytest.fixture
def github() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture
def registry(tmp_path) -> YamlFileRegistry:
    return YamlFileRegistry(tmp_path / "prenv.state.yaml")


@pytest.fixture
def git_remote(tmp_path) -> Path:
    """Bare repository with a single commit on main."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")

    remote = tmp_path / "remote.git"
    git("init", "--quiet", "--bare", str(remote), cwd=tmp_path)
    git("symbolic-ref", "HEAD", "refs/heads/main", cwd=remote)

    seed = tmp_path / "seed"
    git("init", "--quiet", str(seed), cwd=tmp_path)
    git("symbolic-ref", "HEAD", "refs/heads/main", cwd=seed)
    (seed / "README.md").write_text("seed\n")
    git("add", "README.md", cwd=seed)
    git(
        "-c", "user.name=seed", "-c", "user.email=seed@example.com", "-c", "commit.gpgsign=false",
        "commit", "--quiet", "-m", "seed",
        cwd=seed,
    )
    git("push", "--quiet", str(remote), "main", cwd=seed)
    return remote
