from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

import httpx

from prenv.services.errors import GitHubAPIError
from prenv.settings import GitHubClientConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PullRequestRef:
    number: int
    url: str


class GitHubClient:
    """Synchronous GitHub REST client.

    Only the handful of calls prenv needs: repository dispatch, pull request
    creation and listing open pull requests. Nothing is retried here; a
    failed call fails the run.
    """

    def __init__(
        self,
        config: GitHubClientConfig,
        *,
        transport: httpx.BaseTransport | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.config = config
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "prenv",
        }
        if config.token:
            headers["Authorization"] = f"Bearer {config.token}"
        self._client = httpx.Client(
            base_url=config.api_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "GitHubClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def send_repository_dispatch(self, owner: str, repo: str, event_type: str, payload: dict[str, Any]) -> None:
        if not self.config.token:
            raise GitHubAPIError(
                f"missing required GitHub token for sending repository_dispatch to {owner}/{repo}"
            )
        self._request(
            "POST",
            f"/repos/{owner}/{repo}/dispatches",
            json={"event_type": event_type, "client_payload": payload},
        )
        logger.info("Sent repository_dispatch %s to %s/%s", event_type, owner, repo)

    def create_pull_request(
        self,
        owner: str,
        repo: str,
        *,
        title: str,
        head: str,
        base: str,
        body: str,
    ) -> PullRequestRef:
        response = self._request(
            "POST",
            f"/repos/{owner}/{repo}/pulls",
            json={"title": title, "head": head, "base": base, "body": body},
        )
        data = response.json()
        ref = PullRequestRef(number=int(data["number"]), url=data.get("html_url", ""))
        logger.info("Opened pull request %s/%s#%d (%s -> %s)", owner, repo, ref.number, head, base)
        return ref

    def list_open_pull_request_numbers(self, owner: str, repo: str) -> list[int]:
        numbers: list[int] = []
        page = 1
        while True:
            response = self._request(
                "GET",
                f"/repos/{owner}/{repo}/pulls",
                params={"state": "open", "per_page": 100, "page": page},
            )
            items = response.json()
            numbers.extend(int(item["number"]) for item in items)
            if len(items) < 100:
                return numbers
            page += 1

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise GitHubAPIError(f"GitHub request {method} {path} failed: {exc}", request_url=path) from exc
        if response.is_success:
            return response
        raise GitHubAPIError(
            f"GitHub request {method} {path} failed",
            status_code=response.status_code,
            response_body=response.text,
            request_url=str(response.request.url),
        )
