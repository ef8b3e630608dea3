from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
import logging
import threading
from typing import Any, Callable, Iterable, Protocol, Sequence

from prenv.delegation import DelegatableProvisioner, StoreFactory
from prenv.models import AWSResources, Component, Config, Delegate, EnvArgs, RepositoryDispatch
from prenv.proc import CommandRunner
from prenv.provisioners import (
    DEFAULT_APP_NAME_TEMPLATE,
    ArgoCDAppProvisioner,
    AwsQueueProvisioner,
    KubernetesProvisioner,
    Operation,
    Provisioner,
    ProvisionerResult,
    RenderProvisioner,
    outputs_as_dict,
)
from prenv.services.errors import ConfigurationError, UnknownActionError, VerificationError
from prenv.services.events import EVENT_TYPE_APPLY, EVENT_TYPE_DESTROY, DispatchInputs
from prenv.services.kube_adapter import KubeAdapter
from prenv.services.registry import Registry
from prenv.services.sqs_adapter import SqsAdapter
from prenv.settings import Settings
from prenv.store import init_store, raise_if_cancelled

logger = logging.getLogger(__name__)

DEDICATED_NAME_PREFIX = "pr-"


class GitHub(Protocol):
    def send_repository_dispatch(self, owner: str, repo: str, event_type: str, payload: dict[str, Any]) -> None: ...


@dataclass(frozen=True)
class DispatchRequest:
    target: RepositoryDispatch
    provisioner_name: str


@dataclass
class MergedDispatch:
    target: RepositoryDispatch
    provisioner_names: list[str] = field(default_factory=list)


def merge_dispatches(requests: Iterable[DispatchRequest]) -> list[MergedDispatch]:
    """Group requests by target, keeping first-seen order of targets and names.

    Targets are compared literally: ``org/repo`` and ``org/repo.git`` are two
    different destinations.
    """
    merged: list[MergedDispatch] = []
    for request in requests:
        for group in merged:
            if group.target == request.target:
                if request.provisioner_name not in group.provisioner_names:
                    group.provisioner_names.append(request.provisioner_name)
                break
        else:
            merged.append(MergedDispatch(target=request.target, provisioner_names=[request.provisioner_name]))
    return merged


@dataclass
class ChainResult:
    event_type: str
    environment: str
    results: dict[str, ProvisionerResult] = field(default_factory=dict)
    dispatches: list[MergedDispatch] = field(default_factory=list)

    def summary(self) -> dict[str, Any]:
        return {
            "action": self.event_type,
            "environment": self.environment,
            "provisioners": {name: outputs_as_dict(result) for name, result in self.results.items()},
            "dispatches": [
                {"owner": d.target.owner, "repo": d.target.repo, "triggered_by": list(d.provisioner_names)}
                for d in self.dispatches
            ],
        }


@dataclass(frozen=True)
class _ComponentEntry:
    prefix: str
    component: Component
    shared: bool
    short_name: str = ""


CapabilityBuilder = Callable[["Chain", _ComponentEntry], "tuple[Delegate | None, Provisioner] | None"]


def _build_render(chain: "Chain", entry: _ComponentEntry) -> tuple[Delegate | None, Provisioner] | None:
    spec = entry.component.render
    if spec is None:
        return None
    return spec.git_ops, RenderProvisioner(spec, chain.env_args, shared=entry.shared, registry=chain.registry)


def _build_kubernetes(chain: "Chain", entry: _ComponentEntry) -> tuple[Delegate | None, Provisioner] | None:
    spec = entry.component.kubernetes_resources
    if spec is None:
        return None
    provisioner = KubernetesProvisioner(
        spec,
        chain.env_args,
        kube=chain.kube,
        shared=entry.shared,
        registry=chain.registry,
        aws=entry.component.aws_resources,
    )
    return spec.git_ops, provisioner


def _build_aws(chain: "Chain", entry: _ComponentEntry) -> tuple[Delegate | None, Provisioner] | None:
    spec = entry.component.aws_resources
    if spec is None:
        return None
    provisioner = AwsQueueProvisioner(
        spec,
        chain.env_args,
        sqs=chain.sqs_factory(spec),
        shared=entry.shared,
        registry=chain.registry,
    )
    return spec.git_ops, provisioner


def _build_argocd_app(chain: "Chain", entry: _ComponentEntry) -> tuple[Delegate | None, Provisioner] | None:
    spec = entry.component.argocd
    if spec is None or spec.app is None:
        return None
    provisioner = ArgoCDAppProvisioner(
        spec.app,
        chain.env_args,
        kube=chain.kube,
        short_name=entry.short_name,
        shared=entry.shared,
        registry=chain.registry,
    )
    return spec.git_ops, provisioner


# Construction order of the chain; changing it changes which provisioner runs first.
CAPABILITIES: tuple[tuple[str, CapabilityBuilder], ...] = (
    ("render", _build_render),
    ("k8s", _build_kubernetes),
    ("aws", _build_aws),
    ("argocdapp", _build_argocd_app),
)


def _default_sqs_factory(spec: AWSResources) -> SqsAdapter:
    return SqsAdapter(region=spec.region, profile=spec.profile)


class Chain:
    """Every delegatable provisioner derived from one configuration, in run order."""

    def __init__(
        self,
        config: Config,
        *,
        settings: Settings,
        registry: Registry,
        kube: KubeAdapter,
        github: GitHub | None = None,
        sqs_factory: Callable[[AWSResources], SqsAdapter] | None = None,
        env_args: EnvArgs | None = None,
        triggered_by: Sequence[str] = (),
        action: str = "",
        now: datetime | None = None,
        git_runner: CommandRunner | None = None,
        store_factory: StoreFactory | None = None,
        cancel: threading.Event | None = None,
    ) -> None:
        self.config = config
        self.settings = settings
        self.registry = registry
        self.kube = kube
        self.github = github
        self.sqs_factory = sqs_factory or _default_sqs_factory
        self.triggered_by = list(triggered_by)
        self.action = action
        self.cancel = cancel
        self.env_args = self._resolve_env_args(env_args)
        self.store_factory: StoreFactory = store_factory or partial(
            init_store,
            settings=settings,
            now=now or datetime.now(timezone.utc),
            github=github,
            runner=git_runner,
            cancel=cancel,
        )
        self.provisioners = self._build_provisioners()

    @property
    def names(self) -> list[str]:
        return [p.name for p in self.provisioners]

    def apply(self) -> ChainResult:
        raise_if_cancelled(self.cancel, "registering the environment")
        self.registry.add_name(self.env_args.name)
        return self._run(EVENT_TYPE_APPLY, "apply")

    def destroy(self) -> ChainResult:
        result = self._run(EVENT_TYPE_DESTROY, "destroy")
        self.registry.delete_name(self.env_args.name)
        return result

    def run_action(self) -> ChainResult:
        if self.action == EVENT_TYPE_APPLY:
            return self.apply()
        if self.action == EVENT_TYPE_DESTROY:
            return self.destroy()
        raise UnknownActionError(self.action)

    def dispatch_config(self) -> Config:
        """The configuration sent downstream: resolved args, no repositoryDispatch anywhere."""
        config = self.config.without_repository_dispatch()
        config.args = self.env_args.model_copy(deep=True)
        return config

    def _run(self, event_type: str, op: Operation) -> ChainResult:
        result = ChainResult(event_type=event_type, environment=self.env_args.name)
        requests: list[DispatchRequest] = []
        for provisioner in self.provisioners:
            raise_if_cancelled(self.cancel, f"provisioner {provisioner.name}")
            logger.info("Running %s for %s", op, provisioner.name)
            outcome = provisioner.apply() if op == "apply" else provisioner.destroy()
            result.results[provisioner.name] = outcome
            requests.extend(DispatchRequest(target, provisioner.name) for target in outcome.repository_dispatches)

        result.dispatches = merge_dispatches(requests)
        if result.dispatches:
            self._send_dispatches(event_type, result.dispatches)
        return result

    def _send_dispatches(self, event_type: str, dispatches: list[MergedDispatch]) -> None:
        if self.github is None:
            raise ConfigurationError("repository_dispatch delegation needs a GitHub client")
        raw_config = self.dispatch_config().to_yaml()
        for dispatch in dispatches:
            raise_if_cancelled(self.cancel, f"dispatch to {dispatch.target.owner}/{dispatch.target.repo}")
            inputs = DispatchInputs(raw_config=raw_config, triggered_by=dispatch.provisioner_names)
            self.github.send_repository_dispatch(
                dispatch.target.owner,
                dispatch.target.repo,
                event_type,
                inputs.model_dump(),
            )

    def _resolve_env_args(self, env_args: EnvArgs | None) -> EnvArgs:
        resolved = self.config.args or env_args
        if resolved is None:
            raise ConfigurationError("environment parameters are required: set args or run from a pull request")
        resolved = resolved.model_copy(deep=True)
        if not resolved.name:
            raise VerificationError("environment name is required")
        if not resolved.app_name_template:
            resolved.app_name_template = DEFAULT_APP_NAME_TEMPLATE
        return resolved

    def _components(self) -> list[_ComponentEntry]:
        entries: list[_ComponentEntry] = []
        if self.config.shared is not None:
            entries.append(_ComponentEntry(prefix="", component=self.config.shared, shared=True))
        dedicated = self.config.dedicated
        if dedicated is not None:
            prefix = dedicated.name_prefix or DEDICATED_NAME_PREFIX
            entries.append(_ComponentEntry(prefix=prefix, component=dedicated, shared=False))
            for child_name, child in dedicated.components.items():
                entries.append(
                    _ComponentEntry(
                        prefix=prefix + (child.name_prefix or f"{child_name}-"),
                        component=child,
                        shared=False,
                        short_name=child_name,
                    )
                )
        return entries

    def _build_provisioners(self) -> list[DelegatableProvisioner]:
        provisioners: list[DelegatableProvisioner] = []
        seen: set[str] = set()
        for entry in self._components():
            for capability, build in CAPABILITIES:
                built = build(self, entry)
                if built is None:
                    continue
                name = entry.prefix + capability
                if name in seen:
                    raise ConfigurationError(f"duplicate provisioner name {name!r}; adjust namePrefix")
                seen.add(name)

                triggered = False
                if self.triggered_by:
                    if name not in self.triggered_by:
                        continue
                    triggered = True

                delegate, provisioner = built
                provisioners.append(
                    DelegatableProvisioner(
                        name,
                        delegate,
                        provisioner,
                        store_factory=self.store_factory,
                        triggered_via_dispatch=triggered,
                    )
                )

        unknown = [name for name in self.triggered_by if name not in seen]
        if unknown:
            logger.warning("triggered_by names no provisioner in this configuration: %s", ", ".join(unknown))
        return provisioners
