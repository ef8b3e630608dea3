from __future__ import annotations

import base64
from dataclasses import dataclass, field
from datetime import datetime
import logging
from pathlib import Path
import re
import threading
from typing import Callable, Protocol

from prenv.models import Delegate
from prenv.proc import CommandResult, CommandRunner, run_command
from prenv.services.errors import CancelledError, ConfigurationError, VerificationError
from prenv.services.github import GitHubClient
from prenv.settings import Settings

logger = logging.getLogger(__name__)

LOCAL_WORK_ROOT = Path(".prenv")
DEFAULT_BASE_BRANCH = "main"
AUTH_USERNAME = "prenvbot"
# index column of `git status --porcelain`
_STAGED_STATUSES = frozenset("AMD")


@dataclass
class RenderResult:
    root: Path
    added_or_modified: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)


RenderFn = Callable[[Path], RenderResult]


class Store(Protocol):
    def transact(self, fn: RenderFn) -> RenderResult: ...

    def commit(self, subject: str, body: str) -> str | None: ...


def raise_if_cancelled(cancel: threading.Event | None, where: str) -> None:
    if cancel is not None and cancel.is_set():
        raise CancelledError(f"cancelled before {where}")


class LocalStore:
    """Persistent local workspace; nothing is versioned."""

    def __init__(self, workspace: Path) -> None:
        self.workspace = workspace

    def transact(self, fn: RenderFn) -> RenderResult:
        self.workspace.mkdir(parents=True, exist_ok=True)
        return fn(self.workspace)

    def commit(self, subject: str, body: str) -> str | None:
        return None


class GitStore:
    """Workspace inside a cached clone of a remote repository.

    ``transact`` syncs the clone to the base branch, optionally switches to a
    feature branch, runs the render function and stages exactly the paths it
    reports. ``commit`` refuses to commit when anything else changed.
    """

    def __init__(
        self,
        *,
        url: str,
        clone_dir: Path,
        base_branch: str,
        path: str = "",
        push: bool = False,
        feature_branch: str = "",
        force_push: bool = False,
        author_name: str,
        author_email: str,
        token: str = "",
        now: datetime,
        runner: CommandRunner | None = None,
        cancel: threading.Event | None = None,
    ) -> None:
        self.url = url
        self.clone_dir = clone_dir
        self.base_branch = base_branch
        self.path = path.strip("/")
        self.push = push
        self.feature_branch = feature_branch
        self.force_push = force_push
        self.author_name = author_name
        self.author_email = author_email
        self.now = now
        self._token = token
        self._runner = runner
        self._cancel = cancel

    @property
    def branch(self) -> str:
        return self.feature_branch or self.base_branch

    @property
    def workspace(self) -> Path:
        return self.clone_dir / self.path if self.path else self.clone_dir

    def transact(self, fn: RenderFn) -> RenderResult:
        raise_if_cancelled(self._cancel, "clone")
        self._ensure_cloned()

        raise_if_cancelled(self._cancel, "checkout")
        self._checkout_base()
        if self.feature_branch:
            self._git("checkout", "-B", self.feature_branch, error_message="Failed to create feature branch")

        raise_if_cancelled(self._cancel, "render")
        self.workspace.mkdir(parents=True, exist_ok=True)
        result = fn(self.workspace)

        raise_if_cancelled(self._cancel, "staging")
        self._stage(result)
        return result

    def commit(self, subject: str, body: str) -> str | None:
        raise_if_cancelled(self._cancel, "commit")
        staged = self.verify_staged()
        if not staged:
            logger.info("Nothing to commit in %s on %s", self.url, self.branch)
            return None

        self._git(
            "-c",
            f"user.name={self.author_name}",
            "-c",
            f"user.email={self.author_email}",
            "-c",
            "commit.gpgsign=false",
            "commit",
            "--quiet",
            f"--date={self.now.isoformat()}",
            "-m",
            subject,
            "-m",
            body,
            error_message="Failed to commit",
        )
        sha = self._git("rev-parse", "HEAD", error_message="Failed to resolve HEAD").stdout.strip()
        logger.info("Committed %s to %s on %s (%d paths)", sha[:12], self.url, self.branch, len(staged))

        if self.push:
            raise_if_cancelled(self._cancel, "push")
            args = ["push"]
            if self.force_push:
                args.append("--force")
            args.extend(["origin", f"HEAD:refs/heads/{self.branch}"])
            self._git(*args, error_message=f"Failed to push {self.branch}", auth=True)
            logger.info("Pushed %s to %s", self.branch, self.url)
        return sha

    def verify_staged(self) -> list[str]:
        """Return staged paths, or raise when the worktree holds anything unstaged."""
        status = self._git(
            "status",
            "--porcelain",
            "--no-renames",
            "--untracked-files=all",
            error_message="Failed to read git status",
        )
        staged: list[str] = []
        unexpected: list[str] = []
        for line in status.stdout.splitlines():
            if not line.strip():
                continue
            index, worktree, path = line[0], line[1], line[3:]
            if index in _STAGED_STATUSES and worktree == " ":
                staged.append(path)
            else:
                unexpected.append(line)
        if unexpected:
            raise VerificationError(
                f"render left changes that were not reported in {self.url}: " + ", ".join(unexpected)
            )
        return staged

    def _stage(self, result: RenderResult) -> None:
        added = [self._repo_path(p) for p in result.added_or_modified]
        deleted = [self._repo_path(p) for p in result.deleted]
        if added:
            self._git("add", "--", *added, error_message="Failed to stage rendered files")
        if deleted:
            self._git(
                "rm", "--quiet", "--ignore-unmatch", "--", *deleted, error_message="Failed to stage deleted files"
            )

    def _repo_path(self, path: str) -> str:
        return f"{self.path}/{path}" if self.path else path

    def _ensure_cloned(self) -> None:
        if (self.clone_dir / ".git").is_dir():
            logger.debug("Reusing clone of %s at %s", self.url, self.clone_dir)
            return
        self.clone_dir.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Cloning %s into %s", self.url, self.clone_dir)
        run_command(
            ["git", *self._auth_args(), "clone", "--quiet", self.url, str(self.clone_dir)],
            runner=self._runner,
            error_message=f"Failed to clone {self.url}",
        )

    def _checkout_base(self) -> None:
        # local branches are scratch; unpushed commits from earlier runs are discarded
        remote_ref = f"refs/remotes/origin/{self.base_branch}"
        self._git(
            "fetch",
            "--quiet",
            "origin",
            f"+refs/heads/{self.base_branch}:{remote_ref}",
            error_message=f"Failed to fetch {self.base_branch}",
            auth=True,
        )
        self._git(
            "checkout",
            "--quiet",
            "--force",
            "-B",
            self.base_branch,
            remote_ref,
            error_message="Failed to checkout base branch",
        )
        self._git("reset", "--quiet", "--hard", remote_ref, error_message="Failed to reset clone")
        self._git("clean", "-d", "--force", "--quiet", error_message="Failed to clean clone")

    def _auth_args(self) -> list[str]:
        if not self._token:
            return []
        credentials = base64.b64encode(f"{AUTH_USERNAME}:{self._token}".encode()).decode()
        return ["-c", f"http.extraHeader=AUTHORIZATION: basic {credentials}"]

    def _git(self, *args: str, error_message: str, auth: bool = False) -> CommandResult:
        command = ["git", *(self._auth_args() if auth else []), "-C", str(self.clone_dir), *args]
        return run_command(command, runner=self._runner, error_message=error_message)


class PullRequestStore:
    """Git store on a fresh feature branch that opens a pull request per commit."""

    def __init__(self, git: GitStore, *, github: GitHubClient, owner: str, repo: str) -> None:
        if not git.feature_branch:
            raise ConfigurationError("pull request store needs a feature branch")
        self.git = git
        self.github = github
        self.owner = owner
        self.repo = repo

    def transact(self, fn: RenderFn) -> RenderResult:
        return self.git.transact(fn)

    def commit(self, subject: str, body: str) -> str | None:
        sha = self.git.commit(subject, body)
        if sha is None:
            return None
        self.github.create_pull_request(
            self.owner,
            self.repo,
            title=subject,
            head=self.git.feature_branch,
            base=self.git.base_branch,
            body=body,
        )
        return sha


def resolve_repo_url(repo: str, *, web_url: str) -> str:
    if repo.startswith(("https://", "file://")):
        return repo
    parts = repo.split("/")
    if len(parts) == 2:
        return f"{web_url.rstrip('/')}/{repo}.git"
    if len(parts) == 3:
        return f"https://{repo}.git"
    raise ConfigurationError(f"unsupported git repository {repo!r}")


def clone_dir_name(url: str) -> str:
    name = re.sub(r"^[a-z][a-z0-9+.-]*://", "", url)
    name = name.removeprefix("git@").removesuffix(".git").replace(":", "/")
    return name.strip("/")


def owner_and_repo(url: str) -> tuple[str, str]:
    parts = clone_dir_name(url).split("/")
    if len(parts) < 2:
        raise ConfigurationError(f"cannot derive owner/repo from {url!r}")
    return parts[-2], parts[-1]


def feature_branch_name(provisioner_name: str, now: datetime) -> str:
    return f"prenv/{provisioner_name}-{now:%Y%m%d%H%M%S}"


def init_store(
    name: str,
    delegate: Delegate | None,
    *,
    settings: Settings,
    now: datetime,
    github: GitHubClient | None = None,
    runner: CommandRunner | None = None,
    cancel: threading.Event | None = None,
) -> Store:
    if delegate is None or not delegate.gitops:
        return LocalStore(settings.resolve(LOCAL_WORK_ROOT) / name)

    if delegate.git is None:
        raise ConfigurationError(f"{name}: gitOps.pullRequest requires gitOps.git")

    url = resolve_repo_url(delegate.git.repo, web_url=settings.github.web_url)
    pull_request = delegate.pull_request is not None
    git = GitStore(
        url=url,
        clone_dir=settings.resolve(settings.git_root) / clone_dir_name(url),
        base_branch=delegate.git.branch or settings.base_branch or DEFAULT_BASE_BRANCH,
        path=delegate.git.path,
        push=delegate.git.push or pull_request,
        feature_branch=feature_branch_name(name, now) if pull_request else "",
        force_push=pull_request,
        author_name=settings.commit_author_name,
        author_email=settings.commit_author_email,
        token=settings.github.token,
        now=now,
        runner=runner,
        cancel=cancel,
    )
    if not pull_request:
        return git

    if github is None:
        raise ConfigurationError(f"{name}: pull request delegation needs a GitHub client")
    owner, repo = owner_and_repo(url)
    return PullRequestStore(git, github=github, owner=owner, repo=repo)
