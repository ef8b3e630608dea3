from __future__ import annotations

from dataclasses import dataclass, field
import logging
from pathlib import Path
from typing import Any, Literal, Protocol, Sequence

from prenv.models import (
    ArgoCDApp,
    AWSResources,
    EnvArgs,
    KubernetesApp,
    KubernetesResources,
    OutgoingWebhook,
    RenderSpec,
    RepositoryDispatch,
    SQSForwarder,
)
from prenv.services.errors import ConfigurationError, VerificationError
from prenv.services.kube_adapter import KubeAdapter
from prenv.services.registry import Registry
from prenv.services.sqs_adapter import SqsAdapter
from prenv.services.templates import Manifest, remove_from_dir, render_string, render_to_dir
from prenv.store import RenderResult

logger = logging.getLogger(__name__)

Operation = Literal["apply", "destroy"]

DEFAULT_APP_NAME_TEMPLATE = "{{ environment.name }}{% if short_name %}-{{ short_name }}{% endif %}"
AWS_TFVARS_FILE = "aws-resources.auto.tfvars.json"
OUTGOING_WEBHOOK_PORT = 8080

DEPLOYMENT_TEMPLATE = """\
{%- if include_namespace %}
---
apiVersion: v1
kind: Namespace
metadata:
  name: {{ app.namespace }}
{%- endif %}
{%- if app.secret_env %}
---
apiVersion: v1
kind: Secret
metadata:
  name: {{ app.name }}
  namespace: {{ app.namespace }}
type: Opaque
data:
{%- for key, value in app.secret_env | dictsort %}
  {{ key }}: {{ value | b64enc }}
{%- endfor %}
{%- endif %}
---
apiVersion: apps/v1
kind: Deployment
metadata:
  name: {{ app.name }}
  namespace: {{ app.namespace }}
spec:
{%- if app.replicas is not none %}
  replicas: {{ app.replicas }}
{%- endif %}
  selector:
    matchLabels:
      app: {{ app.name }}
  template:
    metadata:
      labels:
        app: {{ app.name }}
    spec:
      containers:
      - name: {{ app.name }}
        image: {{ app.image }}
{%- if app.port %}
        ports:
        - containerPort: {{ app.port }}
{%- endif %}
{%- if app.command %}
        command:
        - {{ app.command | to_json }}
{%- endif %}
{%- if app.args %}
        args:
{%- for arg in app.args %}
        - {{ arg | to_json }}
{%- endfor %}
{%- endif %}
{%- if app.env or app.secret_env %}
        env:
{%- for key, value in app.env | dictsort %}
        - name: {{ key }}
          value: {{ value | to_json }}
{%- endfor %}
{%- for key, value in app.secret_env | dictsort %}
        - name: {{ key }}
          valueFrom:
            secretKeyRef:
              name: {{ app.name }}
              key: {{ key }}
{%- endfor %}
{%- endif %}
{%- if app.port %}
---
apiVersion: v1
kind: Service
metadata:
  name: {{ app.name }}
  namespace: {{ app.namespace }}
spec:
  selector:
    app: {{ app.name }}
  ports:
  - protocol: TCP
    port: {{ app.port }}
    targetPort: {{ app.port }}
{%- endif %}
"""

ARGOCD_APP_TEMPLATE = """\
apiVersion: argoproj.io/v1alpha1
kind: Application
metadata:
  name: {{ name }}
  namespace: {{ app.namespace }}
spec:
  destination:
    namespace: {{ app.destination_namespace }}-{{ pull_request.number }}
    server: {{ app.destination_server }}
  project: default
  source:
    repoURL: {{ app.repo_url }}
    targetRevision: {{ app.target_revision }}
    path: {{ app.path }}
    kustomize:
      namespace: {{ app.destination_namespace }}-{{ pull_request.number }}
      images:
      - '{{ app.image }}:{{ pull_request.head_sha }}'
  syncPolicy:
    automated: {}
    syncOptions:
    - CreateNamespace=true
"""


@dataclass(frozen=True)
class Output:
    type: str
    value: Any


@dataclass
class ProvisionerResult:
    outputs: dict[str, Output] = field(default_factory=dict)
    repository_dispatches: list[RepositoryDispatch] = field(default_factory=list)


class Provisioner(Protocol):
    def render(self, directory: Path, op: Operation) -> RenderResult: ...

    def apply(self, rendered: RenderResult) -> ProvisionerResult: ...

    def destroy(self, rendered: RenderResult) -> ProvisionerResult: ...


class _Capability:
    """Behaviour shared by the built-in provisioners.

    Shared components are reconfigured on destroy (rendered for the remaining
    environments); dedicated ones have their files and resources removed.
    """

    def __init__(self, env: EnvArgs, *, shared: bool = False, registry: Registry | None = None) -> None:
        self.env = env
        self.shared = shared
        self.registry = registry
        self._names: dict[str, list[str]] = {}

    def environment_names(self, op: Operation) -> list[str]:
        if op not in self._names:
            names = list(self.registry.list_names()) if self.registry is not None else []
            if op == "apply" and self.env.name not in names:
                names.append(self.env.name)
            if op == "destroy":
                names = [n for n in names if n != self.env.name]
            self._names[op] = names
        return list(self._names[op])

    def context(self, op: Operation, **extra: Any) -> dict[str, Any]:
        return self.env.template_context(environment_names=self.environment_names(op), **extra)

    def sync_files(self, directory: Path, op: Operation, manifests: Sequence[Manifest]) -> RenderResult:
        if op == "apply" or self.shared:
            return RenderResult(root=directory, added_or_modified=render_to_dir(directory, manifests))
        deleted = remove_from_dir(directory, [m.name for m in manifests])
        return RenderResult(root=directory, deleted=deleted)


class RenderProvisioner(_Capability):
    """Writes arbitrary templated files; has nothing to apply."""

    def __init__(self, spec: RenderSpec, env: EnvArgs, *, shared: bool = False, registry: Registry | None = None) -> None:
        super().__init__(env, shared=shared, registry=registry)
        self.spec = spec

    def manifests(self, op: Operation) -> list[Manifest]:
        context = self.context(op)
        manifests = []
        for f in self.spec.files:
            name = f.name or render_string(f.name_template, context, name="nameTemplate").strip()
            manifests.append(Manifest(name=name, template=f.content_template, data=context))
        return manifests

    def render(self, directory: Path, op: Operation) -> RenderResult:
        return self.sync_files(directory, op, self.manifests(op))

    def apply(self, rendered: RenderResult) -> ProvisionerResult:
        return ProvisionerResult()

    def destroy(self, rendered: RenderResult) -> ProvisionerResult:
        return ProvisionerResult()


class KubernetesProvisioner(_Capability):
    def __init__(
        self,
        spec: KubernetesResources,
        env: EnvArgs,
        *,
        kube: KubeAdapter,
        shared: bool = False,
        registry: Registry | None = None,
        aws: AWSResources | None = None,
    ) -> None:
        super().__init__(env, shared=shared, registry=registry)
        self.spec = spec
        self.kube = kube
        self.aws = aws
        problems = []
        if spec.outgoing_webhook is not None:
            problems.extend(f"outgoingWebhook: {p}" for p in spec.outgoing_webhook.problems())
        if spec.sqs_forwarder is not None:
            problems.extend(
                f"sqsForwarder: {p}" for p in spec.sqs_forwarder.problems(require_urls=False)
            )
        if problems:
            raise ConfigurationError("; ".join(problems))

    def apps(self, op: Operation) -> list[dict[str, Any]]:
        context = self.context(op)
        apps = [self._templated_app(app, context) for app in self.spec.apps]
        if self.spec.sqs_forwarder is not None:
            apps.append(self._forwarder_app(self.spec.sqs_forwarder, op))
        if self.spec.outgoing_webhook is not None:
            apps.append(self._outgoing_webhook_app(self.spec.outgoing_webhook))
        return apps

    def manifests(self, op: Operation) -> list[Manifest]:
        # Namespaces may be shared with other environments; never delete them.
        include_namespace = op == "apply" or self.shared
        return [
            Manifest(
                name=f"{app['name']}.yaml",
                template=DEPLOYMENT_TEMPLATE,
                data={"app": app, "include_namespace": include_namespace},
            )
            for app in self.apps(op)
        ]

    def render(self, directory: Path, op: Operation) -> RenderResult:
        return self.sync_files(directory, op, self.manifests(op))

    def apply(self, rendered: RenderResult) -> ProvisionerResult:
        result = self.kube.apply(self.manifests("apply"))
        return ProvisionerResult(outputs={"manifests": Output(type="[]string", value=list(result.files))})

    def destroy(self, rendered: RenderResult) -> ProvisionerResult:
        manifests = self.manifests("destroy")
        if self.shared:
            result = self.kube.apply(manifests)
        else:
            result = self.kube.delete(manifests)
        return ProvisionerResult(outputs={"manifests": Output(type="[]string", value=list(result.files))})

    def _app_params(self, **overrides: Any) -> dict[str, Any]:
        params: dict[str, Any] = {
            "name": "",
            "namespace": self.spec.namespace,
            "replicas": None,
            "command": "",
            "image": self.spec.image,
            "args": [],
            "port": None,
            "env": {},
            "secret_env": {},
        }
        params.update({k: v for k, v in overrides.items() if v not in (None, "", [], {})})
        return params

    def _templated_app(self, app: KubernetesApp, context: dict[str, Any]) -> dict[str, Any]:
        def render(value: str, field_name: str) -> str:
            return render_string(value, context, name=f"apps[{app.name}].{field_name}")

        return self._app_params(
            name=render(app.name, "name"),
            namespace=render(app.namespace, "namespace") if app.namespace else "",
            replicas=app.replicas,
            command=render(app.command, "command") if app.command else "",
            image=render(app.image, "image") if app.image else "",
            args=[render(arg, "args") for arg in app.args],
            port=app.port,
            env={k: render(v, f"env.{k}") for k, v in app.env.items()},
            secret_env={k: render(v, f"secretEnv.{k}") for k, v in app.secret_env.items()},
        )

    def _forwarder_app(self, forwarder: SQSForwarder, op: Operation) -> dict[str, Any]:
        source = forwarder.source_queue_url
        destinations = list(forwarder.destination_queue_urls)
        if self.aws is not None:
            source = source or self.aws.source_queue_url
            if self.aws.destination_queue_url:
                destinations.append(self.aws.destination_queue_url)
            destinations.extend(derive_queue_url(self.aws, name) for name in self.environment_names(op))
        if not source:
            raise VerificationError("sqsForwarder: source queue URL is required")
        if not destinations:
            raise VerificationError("sqsForwarder: at least one destination queue URL is required")

        args = [
            "sqs-forwarder",
            "--source-queue-url",
            source,
            "--destination-queue-urls",
            ",".join(destinations),
            "--aws-region",
            forwarder.aws_region,
            "--max-number-of-messages",
            str(forwarder.max_number_of_messages),
            "--visibility-timeout",
            str(forwarder.visibility_timeout_seconds),
            "--wait-time-seconds",
            str(forwarder.wait_time_seconds),
            "--sleep-seconds",
            str(forwarder.sleep_seconds),
        ]
        for attribute in forwarder.message_attribute_names:
            args.extend(["--message-attribute-name", attribute])
        env = {"PRENV_LOG_LEVEL": forwarder.log_level.upper()} if forwarder.log_level else {}
        return self._app_params(name="sqs-forwarder", command="prenv", args=args, env=env)

    def _outgoing_webhook_app(self, webhook: OutgoingWebhook) -> dict[str, Any]:
        return self._app_params(
            name="outgoing-webhook",
            command="prenv",
            args=["outgoing-webhook", "--channel", webhook.channel, "--username", webhook.username],
            port=OUTGOING_WEBHOOK_PORT,
            secret_env={"SLACK_WEBHOOK_URL": webhook.webhook_url},
        )


def derive_queue_url(spec: AWSResources, name: str) -> str:
    """Destination for one environment; without a template the queue name itself, resolved by the forwarder."""
    if not spec.destination_queue_url_template:
        return name
    return render_string(spec.destination_queue_url_template, {"name": name}, name="destinationQueueURLTemplate")


class AwsQueueProvisioner(_Capability):
    """SQS queues: the source/destination pair plus one queue per environment on shared components."""

    def __init__(
        self,
        spec: AWSResources,
        env: EnvArgs,
        *,
        sqs: SqsAdapter,
        shared: bool = False,
        registry: Registry | None = None,
    ) -> None:
        super().__init__(env, shared=shared, registry=registry)
        self.spec = spec
        self.sqs = sqs

    def queue_names(self, op: Operation) -> dict[str, Any]:
        context = self.context(op)
        return {
            "source": render_string(self.spec.source_queue_url, context, name="sourceQueueURL"),
            "destination": render_string(self.spec.destination_queue_url, context, name="destinationQueueURL"),
            "environments": self.environment_names(op) if self.shared else [],
        }

    def render(self, directory: Path, op: Operation) -> RenderResult:
        names = self.queue_names(op)
        tfvars = {
            "region": self.spec.region,
            "source_queue": names["source"],
            "source_queue_create": self.spec.source_queue_create,
            "destination_queue": names["destination"],
            "destination_queue_create": self.spec.destination_queue_create,
            "destination_queues": names["environments"],
            "destination_queues_create": self.spec.destination_queues_create,
        }
        manifest = Manifest(
            name=AWS_TFVARS_FILE,
            template="{{ tfvars | to_json }}\n",
            data={"tfvars": tfvars},
        )
        return self.sync_files(directory, op, [manifest])

    def apply(self, rendered: RenderResult) -> ProvisionerResult:
        names = self.queue_names("apply")
        source_url = ""
        destination_url = ""
        if names["source"]:
            source_url = self.sqs.ensure_queue_created(names["source"], create=self.spec.source_queue_create).url
        if names["destination"]:
            destination_url = self.sqs.ensure_queue_created(
                names["destination"], create=self.spec.destination_queue_create
            ).url
        environment_urls = [
            self.sqs.ensure_queue_created(name, create=self.spec.destination_queues_create).url
            for name in names["environments"]
        ]
        # Printed for workflows that pick the URLs up from the job log.
        logger.info("SQS_SOURCE_QUEUE_URL=%s", source_url)
        logger.info("SQS_DESTINATION_QUEUE_URL=%s", destination_url)
        for i, url in enumerate(environment_urls):
            logger.info("SQS_DESTINATION_QUEUE_URL_%d=%s", i, url)
        return ProvisionerResult(
            outputs={
                "sqsSourceQueueURL": Output(type="sqsQueue", value=source_url),
                "sqsDestinationQueueURL": Output(type="sqsQueue", value=destination_url),
                "sqsDestinationQueueURLs": Output(type="[]sqsQueue", value=environment_urls),
            }
        )

    def destroy(self, rendered: RenderResult) -> ProvisionerResult:
        deleted: list[str] = []
        if self.shared:
            if self.spec.destination_queues_create and self.sqs.ensure_queue_deleted(self.env.name):
                deleted.append(self.env.name)
        else:
            names = self.queue_names("destroy")
            if self.spec.source_queue_delete and self.sqs.ensure_queue_deleted(names["source"]):
                deleted.append(names["source"])
            if self.spec.destination_queue_delete and self.sqs.ensure_queue_deleted(names["destination"]):
                deleted.append(names["destination"])
        return ProvisionerResult(outputs={"deletedQueues": Output(type="[]sqsQueue", value=deleted)})


class ArgoCDAppProvisioner(_Capability):
    def __init__(
        self,
        app: ArgoCDApp,
        env: EnvArgs,
        *,
        kube: KubeAdapter,
        short_name: str = "",
        shared: bool = False,
        registry: Registry | None = None,
    ) -> None:
        super().__init__(env, shared=shared, registry=registry)
        self.app = app
        self.kube = kube
        self.short_name = short_name

    def app_name(self) -> str:
        pull_request = self.env.pull_request
        if pull_request is None or not pull_request.number:
            raise VerificationError("argocd app needs the pull request number")
        if not pull_request.head_sha:
            raise VerificationError("argocd app needs the head commit SHA; set GITHUB_SHA")
        template = self.env.app_name_template or DEFAULT_APP_NAME_TEMPLATE
        context = self.env.template_context(short_name=self.short_name)
        name = render_string(template, context, name="appNameTemplate").strip()
        if not name:
            raise VerificationError("appNameTemplate rendered an empty name")
        return name

    def manifests(self) -> list[Manifest]:
        name = self.app_name()
        data = {"name": name, "app": self.app, "pull_request": self.env.pull_request}
        return [Manifest(name=f"{name}.yaml", template=ARGOCD_APP_TEMPLATE, data=data)]

    def render(self, directory: Path, op: Operation) -> RenderResult:
        return self.sync_files(directory, op, self.manifests())

    def apply(self, rendered: RenderResult) -> ProvisionerResult:
        self.kube.apply(self.manifests())
        return ProvisionerResult(outputs={"application": Output(type="string", value=self.app_name())})

    def destroy(self, rendered: RenderResult) -> ProvisionerResult:
        self.kube.delete(self.manifests())
        return ProvisionerResult(outputs={"application": Output(type="string", value=self.app_name())})


def outputs_as_dict(result: ProvisionerResult) -> dict[str, Any]:
    return {key: {"type": o.type, "value": o.value} for key, o in result.outputs.items()}
