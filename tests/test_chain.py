from __future__ import annotations

import threading

import pytest
import yaml

from prenv.chain import Chain, DispatchRequest, merge_dispatches
from prenv.loader import parse_config
from prenv.models import Config, EnvArgs, PullRequestEnvArgs, RepositoryDispatch
from prenv.services.errors import CancelledError, ConfigurationError, UnknownActionError

LOCAL = {
    "dedicated": {
        "render": {"files": [{"nameTemplate": "{{ name }}.txt", "contentTemplate": "{{ pull_request.number }}"}]},
        "kubernetesResources": {"apps": [{"name": "web-{{ name }}", "image": "example/web"}]},
    }
}

DISPATCHED = {
    "shared": {
        "kubernetesResources": {
            "gitOps": {"repositoryDispatch": {"owner": "org", "repo": "infra"}},
            "apps": [{"name": "router"}],
        }
    },
    "dedicated": {
        "namePrefix": "svc-",
        "render": {
            "gitOps": {"repositoryDispatch": {"owner": "org", "repo": "infra"}},
            "files": [{"name": "a.txt", "contentTemplate": "a"}],
        },
        "kubernetesResources": {
            "gitOps": {"repositoryDispatch": {"owner": "org", "repo": "apps"}},
            "apps": [{"name": "web-{{ name }}"}],
        },
    },
}


def _env() -> EnvArgs:
    return EnvArgs(name="pr-42", pull_request=PullRequestEnvArgs(number=42, head_sha="abc123"))


def _chain(data: dict, *, settings, registry, kube, github=None, **kwargs) -> Chain:
    kwargs.setdefault("env_args", _env())
    return Chain(
        Config.model_validate(data),
        settings=settings,
        registry=registry,
        kube=kube,
        github=github,
        **kwargs,
    )


def test_provisioner_order_and_names(settings, registry, kube) -> None:
    data = {
        "shared": {"render": {"files": []}, "kubernetesResources": {}},
        "dedicated": {
            "kubernetesResources": {},
            "render": {"files": []},
            "components": {
                "api": {"render": {"files": []}},
                "worker": {"namePrefix": "bg-", "kubernetesResources": {}},
            },
        },
    }
    chain = _chain(data, settings=settings, registry=registry, kube=kube)

    assert chain.names == ["render", "k8s", "pr-render", "pr-k8s", "pr-api-render", "pr-bg-k8s"]


def test_local_apply_renders_applies_and_registers(tmp_path, settings, registry, kube) -> None:
    result = _chain(LOCAL, settings=settings, registry=registry, kube=kube).apply()

    assert list(result.results) == ["pr-render", "pr-k8s"]
    assert (tmp_path / ".prenv" / "pr-render" / "pr-42.txt").read_text() == "42"
    assert [action for action, _ in kube.calls] == ["apply"]
    assert registry.list_names() == ["pr-42"]
    summary = result.summary()
    assert summary["action"] == "prenv-apply"
    assert summary["provisioners"]["pr-k8s"]["manifests"]["value"] == ["web-pr-42.yaml"]
    assert summary["dispatches"] == []


def test_apply_twice_is_idempotent(tmp_path, settings, registry, kube) -> None:
    first = _chain(LOCAL, settings=settings, registry=registry, kube=kube).apply()
    second = _chain(LOCAL, settings=settings, registry=registry, kube=kube).apply()

    assert first.summary() == second.summary()
    assert kube.calls[0] == kube.calls[1]
    assert registry.list_names() == ["pr-42"]
    assert sorted(p.name for p in (tmp_path / ".prenv" / "pr-render").iterdir()) == ["pr-42.txt"]


def test_destroy_removes_files_and_unregisters(tmp_path, settings, registry, kube) -> None:
    _chain(LOCAL, settings=settings, registry=registry, kube=kube).apply()
    result = _chain(LOCAL, settings=settings, registry=registry, kube=kube).destroy()

    assert result.event_type == "prenv-destroy"
    assert not (tmp_path / ".prenv" / "pr-render" / "pr-42.txt").exists()
    assert [action for action, _ in kube.calls] == ["apply", "delete"]
    assert registry.list_names() == []


def test_dispatches_are_merged_per_target(settings, registry, kube, github) -> None:
    result = _chain(DISPATCHED, settings=settings, registry=registry, kube=kube, github=github).apply()

    assert kube.calls == []
    assert [(d.target.repo, d.provisioner_names) for d in result.dispatches] == [
        ("infra", ["k8s", "svc-render"]),
        ("apps", ["svc-k8s"]),
    ]
    assert [(c["owner"], c["repo"], c["event_type"]) for _, c in github.calls] == [
        ("org", "infra", "prenv-apply"),
        ("org", "apps", "prenv-apply"),
    ]
    payload = github.calls[0][1]["payload"]
    assert payload["triggered_by"] == ["k8s", "svc-render"]
    assert "repositoryDispatch" not in payload["raw_config"]
    sent = yaml.safe_load(payload["raw_config"])
    assert sent["args"]["name"] == "pr-42"
    assert sent["args"]["pullRequest"]["headSHA"] == "abc123"


def test_dispatched_run_executes_only_triggered_provisioners(settings, registry, kube, github) -> None:
    _chain(DISPATCHED, settings=settings, registry=registry, kube=kube, github=github).apply()
    payload = github.calls[1][1]["payload"]

    downstream_github = type(github)()
    downstream = Chain(
        parse_config(payload["raw_config"], source="repository_dispatch"),
        settings=settings,
        registry=registry,
        kube=kube,
        github=downstream_github,
        triggered_by=payload["triggered_by"],
        action="prenv-apply",
    )
    result = downstream.run_action()

    assert downstream.names == ["svc-k8s"]
    assert [p.triggered_via_dispatch for p in downstream.provisioners] == [True]
    assert result.dispatches == []
    assert downstream_github.calls == []
    assert list(kube.calls[0][1]) == ["web-pr-42.yaml"]


def test_dispatch_needs_github_client(settings, registry, kube) -> None:
    with pytest.raises(ConfigurationError, match="GitHub client"):
        _chain(DISPATCHED, settings=settings, registry=registry, kube=kube).apply()


def test_merge_dispatches_compares_targets_literally() -> None:
    infra = RepositoryDispatch(owner="org", repo="infra")
    infra_git = RepositoryDispatch(owner="org", repo="infra.git")
    merged = merge_dispatches(
        [
            DispatchRequest(infra, "a"),
            DispatchRequest(infra_git, "b"),
            DispatchRequest(RepositoryDispatch(owner="org", repo="infra"), "c"),
            DispatchRequest(infra, "a"),
        ]
    )

    assert [(m.target.repo, m.provisioner_names) for m in merged] == [("infra", ["a", "c"]), ("infra.git", ["b"])]


def test_action_dispatches_on_event_type(settings, registry, kube) -> None:
    registry.add_name("pr-42")
    result = _chain(LOCAL, settings=settings, registry=registry, kube=kube, action="prenv-destroy").run_action()

    assert result.event_type == "prenv-destroy"
    assert registry.list_names() == []

    with pytest.raises(UnknownActionError, match="synchronize"):
        _chain(LOCAL, settings=settings, registry=registry, kube=kube, action="synchronize").run_action()


def test_cancellation_stops_before_any_work(settings, registry, kube) -> None:
    cancel = threading.Event()
    cancel.set()
    chain = _chain(LOCAL, settings=settings, registry=registry, kube=kube, cancel=cancel)

    with pytest.raises(CancelledError):
        chain.apply()

    assert kube.calls == []
    assert registry.list_names() == []


def test_args_in_config_win_over_pull_request_args(settings, registry, kube) -> None:
    data = dict(LOCAL, args={"name": "from-config"})
    chain = _chain(data, settings=settings, registry=registry, kube=kube)

    assert chain.env_args.name == "from-config"
    assert chain.env_args.app_name_template


def test_environment_parameters_are_required(settings, registry, kube) -> None:
    with pytest.raises(ConfigurationError, match="environment parameters"):
        _chain(LOCAL, settings=settings, registry=registry, kube=kube, env_args=None)
