from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
from typing import Mapping

DEFAULT_GITHUB_API_URL = "https://api.github.com"
DEFAULT_GITHUB_WEB_URL = "https://github.com/"
DEFAULT_GIT_ROOT = ".prenv/repositories"
DEFAULT_STATE_FILE_PATH = "prenv.state.yaml"
DEFAULT_COMMIT_AUTHOR_NAME = "prenv"
DEFAULT_COMMIT_AUTHOR_EMAIL = "prenv@users.noreply.github.com"


@dataclass(frozen=True)
class GitHubClientConfig:
    token: str = ""
    api_url: str = DEFAULT_GITHUB_API_URL
    web_url: str = DEFAULT_GITHUB_WEB_URL


@dataclass(frozen=True)
class Settings:
    """Process-level settings.

    Only the CLI builds this from the environment; everything below it gets
    the values passed in explicitly.
    """

    github: GitHubClientConfig = GitHubClientConfig()
    work_dir: Path = Path(".")
    git_root: Path = Path(DEFAULT_GIT_ROOT)
    commit_author_name: str = DEFAULT_COMMIT_AUTHOR_NAME
    commit_author_email: str = DEFAULT_COMMIT_AUTHOR_EMAIL
    base_branch: str = ""
    raw_config: str = ""
    event_path: Path | None = None
    repository: str = ""
    sha: str = ""
    configmap_name: str = ""
    state_git_repo: str = ""
    state_file_path: Path = Path(DEFAULT_STATE_FILE_PATH)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, *, work_dir: Path | None = None) -> "Settings":
        env = os.environ if environ is None else environ

        def get(name: str, default: str = "") -> str:
            return env.get(name) or default

        event_path = get("GITHUB_EVENT_PATH")
        return cls(
            github=GitHubClientConfig(
                token=get("GITHUB_TOKEN"),
                api_url=get("PRENV_GITHUB_BASE_URL", DEFAULT_GITHUB_API_URL),
                web_url=get("PRENV_GITHUB_ENTERPRISE_URL", DEFAULT_GITHUB_WEB_URL),
            ),
            work_dir=work_dir or Path.cwd(),
            git_root=Path(get("PRENV_GIT_ROOT", DEFAULT_GIT_ROOT)),
            commit_author_name=get("PRENV_COMMIT_AUTHOR_USER_NAME", DEFAULT_COMMIT_AUTHOR_NAME),
            commit_author_email=get("PRENV_COMMIT_AUTHOR_EMAIL", DEFAULT_COMMIT_AUTHOR_EMAIL),
            base_branch=get("PRENV_BASE_BRANCH"),
            raw_config=get("PRENV_RAW_CONFIG"),
            event_path=Path(event_path) if event_path else None,
            repository=get("GITHUB_REPOSITORY"),
            sha=get("GITHUB_SHA"),
            configmap_name=get("PRENV_CONFIGMAP_NAME"),
            state_git_repo=get("PRENV_GIT_REPO_URL"),
            state_file_path=Path(get("PRENV_STATE_FILE_PATH", DEFAULT_STATE_FILE_PATH)),
        )

    def resolve(self, path: Path) -> Path:
        return path if path.is_absolute() else self.work_dir / path
