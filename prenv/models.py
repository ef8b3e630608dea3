from __future__ import annotations

import re
from typing import Any, Iterator

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

DEFAULT_IMAGE = "mumoshu/prenv:latest"
DEFAULT_NAMESPACE = "prenv"
DEFAULT_AWS_REGION = "ap-northeast-1"

_HOST_OWNER_REPO = re.compile(r"^[^/\s]+/[^/\s]+(/[^/\s]+)?$")


class _Schema(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )


class GitDelegate(_Schema):
    repo: str
    branch: str = ""
    path: str = ""
    push: bool = False

    @model_validator(mode="after")
    def _check_repo(self) -> "GitDelegate":
        if self.repo.startswith(("https://", "file://")):
            return self
        if not _HOST_OWNER_REPO.match(self.repo):
            raise ValueError(
                f"git.repo must be owner/repo, host/owner/repo or an https:// URL, got {self.repo!r}"
            )
        return self


class PullRequestDelegate(_Schema):
    pass


class RepositoryDispatch(_Schema):
    model_config = ConfigDict(frozen=True)

    owner: str = Field(min_length=1)
    repo: str = Field(min_length=1)


class Delegate(_Schema):
    git: GitDelegate | None = None
    pull_request: PullRequestDelegate | None = None
    repository_dispatch: RepositoryDispatch | None = None

    @model_validator(mode="after")
    def _check_layers(self) -> "Delegate":
        if self.git is None and self.pull_request is None and self.repository_dispatch is None:
            raise ValueError("gitOps must set at least one of git, pullRequest or repositoryDispatch")
        if self.pull_request is not None and self.git is None:
            raise ValueError("gitOps.pullRequest requires gitOps.git")
        return self

    @property
    def gitops(self) -> bool:
        return self.git is not None or self.pull_request is not None


class RenderedFile(_Schema):
    name: str = ""
    name_template: str = ""
    content_template: str

    @model_validator(mode="after")
    def _check_name(self) -> "RenderedFile":
        if bool(self.name) == bool(self.name_template):
            raise ValueError("exactly one of name or nameTemplate is required")
        return self


class RenderSpec(_Schema):
    git_ops: Delegate | None = Field(default=None, alias="gitOps")
    files: list[RenderedFile] = Field(default_factory=list)


class KubernetesApp(_Schema):
    name: str
    namespace: str = ""
    replicas: int | None = None
    command: str = ""
    image: str = ""
    args: list[str] = Field(default_factory=list)
    port: int | None = None
    env: dict[str, str] = Field(default_factory=dict)
    secret_env: dict[str, str] = Field(default_factory=dict)


class SQSForwarder(_Schema):
    source_queue_url: str = Field(default="", alias="sourceQueueURL")
    destination_queue_urls: list[str] = Field(default_factory=list, alias="destinationQueueURLs")
    max_number_of_messages: int = 10
    visibility_timeout_seconds: int = Field(default=30, alias="visibilityTimeout")
    wait_time_seconds: int = 20
    sleep_seconds: int = 1
    receive_message_failure_sleep_seconds: int = 5
    send_message_failure_sleep_seconds: int = 5
    delete_message_failure_sleep_seconds: int = 5
    message_attribute_names: list[str] = Field(default_factory=list)
    aws_region: str = DEFAULT_AWS_REGION
    aws_profile: str = ""
    log_level: str = ""

    def problems(self, *, require_urls: bool = True) -> list[str]:
        problems = []
        if require_urls and not self.source_queue_url:
            problems.append("source queue URL is required")
        if require_urls and not self.destination_queue_urls:
            problems.append("at least one destination queue URL is required")
        for field in (
            "max_number_of_messages",
            "visibility_timeout_seconds",
            "wait_time_seconds",
            "sleep_seconds",
            "receive_message_failure_sleep_seconds",
            "send_message_failure_sleep_seconds",
            "delete_message_failure_sleep_seconds",
        ):
            if getattr(self, field) <= 0:
                problems.append(f"{field} must be greater than 0")
        return problems


class OutgoingWebhook(_Schema):
    webhook_url: str = Field(default="", alias="webhookURL")
    channel: str = ""
    username: str = ""

    def problems(self) -> list[str]:
        problems = []
        if not self.webhook_url:
            problems.append("webhookURL is required")
        elif not self.webhook_url.startswith(("http://", "https://")):
            problems.append(f"webhookURL must be an http(s) URL, got {self.webhook_url!r}")
        if not self.channel:
            problems.append("channel is required")
        if not self.username:
            problems.append("username is required")
        return problems


class KubernetesResources(_Schema):
    git_ops: Delegate | None = Field(default=None, alias="gitOps")
    image: str = DEFAULT_IMAGE
    namespace: str = DEFAULT_NAMESPACE
    apps: list[KubernetesApp] = Field(default_factory=list)
    sqs_forwarder: SQSForwarder | None = None
    outgoing_webhook: OutgoingWebhook | None = None


class AWSResources(_Schema):
    git_ops: Delegate | None = Field(default=None, alias="gitOps")
    region: str = DEFAULT_AWS_REGION
    profile: str = ""
    source_queue_create: bool = False
    source_queue_delete: bool = False
    source_queue_url: str = Field(default="", alias="sourceQueueURL")
    destination_queue_create: bool = False
    destination_queue_delete: bool = False
    destination_queue_url: str = Field(default="", alias="destinationQueueURL")
    destination_queues_create: bool = False
    destination_queue_url_template: str = Field(default="", alias="destinationQueueURLTemplate")


class ArgoCDApp(_Schema):
    namespace: str = Field(min_length=1)
    destination_namespace: str = Field(min_length=1)
    destination_server: str = Field(min_length=1)
    path: str = Field(min_length=1)
    repo_url: str = Field(min_length=1, alias="repoURL")
    target_revision: str = Field(min_length=1)
    image: str = Field(min_length=1)


class ArgoCD(_Schema):
    git_ops: Delegate | None = Field(default=None, alias="gitOps")
    app: ArgoCDApp | None = None


class Component(_Schema):
    name_prefix: str = ""
    render: RenderSpec | None = None
    kubernetes_resources: KubernetesResources | None = None
    aws_resources: AWSResources | None = None
    argocd: ArgoCD | None = None
    components: dict[str, "Component"] = Field(default_factory=dict)

    def capability_specs(self) -> Iterator[RenderSpec | KubernetesResources | AWSResources | ArgoCD]:
        for spec in (self.render, self.kubernetes_resources, self.aws_resources, self.argocd):
            if spec is not None:
                yield spec


class PullRequestEnvArgs(_Schema):
    number: int = 0
    head_sha: str = Field(default="", alias="headSHA")
    pull_request_numbers: list[int] = Field(default_factory=list)
    repository: str = ""


class EnvArgs(_Schema):
    name: str = ""
    app_name_template: str = ""
    pull_request: PullRequestEnvArgs | None = None

    def template_context(self, **extra: Any) -> dict[str, Any]:
        context: dict[str, Any] = {
            "name": self.name,
            "environment": self,
            "pull_request": self.pull_request,
        }
        context.update(extra)
        return context


class Config(_Schema):
    name_template: str = ""
    name_prefix: str = ""
    shared: Component | None = None
    dedicated: Component | None = None
    args: EnvArgs | None = None

    def walk_components(self) -> Iterator[Component]:
        stack = [c for c in (self.shared, self.dedicated) if c is not None]
        while stack:
            component = stack.pop(0)
            yield component
            stack.extend(component.components.values())

    def without_repository_dispatch(self) -> "Config":
        """Deep copy with every repositoryDispatch delegate removed.

        A delegate that only carried a repositoryDispatch is dropped entirely.
        """
        stripped = self.model_copy(deep=True)
        for component in stripped.walk_components():
            for spec in component.capability_specs():
                delegate = spec.git_ops
                if delegate is None or delegate.repository_dispatch is None:
                    continue
                if delegate.gitops:
                    spec.git_ops = delegate.model_copy(update={"repository_dispatch": None})
                else:
                    spec.git_ops = None
        return stripped

    def to_yaml(self) -> str:
        data = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        return yaml.safe_dump(data, sort_keys=False)
