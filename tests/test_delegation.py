from __future__ import annotations

from prenv.delegation import COMMIT_SUBJECT, DelegatableProvisioner
from prenv.models import Delegate
from prenv.provisioners import Output, ProvisionerResult
from prenv.store import RenderResult


class FakeProvisioner:
    def __init__(self) -> None:
        self.calls: list[tuple[str, dict]] = []

    def render(self, directory, op):
        self.calls.append(("render", {"directory": directory, "op": op}))
        return RenderResult(root=directory, added_or_modified=["out.yaml"])

    def apply(self, rendered):
        self.calls.append(("apply", {"rendered": rendered.added_or_modified}))
        return ProvisionerResult(outputs={"applied": Output(type="string", value="yes")})

    def destroy(self, rendered):
        self.calls.append(("destroy", {"rendered": rendered.added_or_modified}))
        return ProvisionerResult()


class FakeStore:
    def __init__(self, root) -> None:
        self.root = root
        self.calls: list[tuple[str, dict]] = []

    def transact(self, fn):
        self.calls.append(("transact", {}))
        return fn(self.root)

    def commit(self, subject, body):
        self.calls.append(("commit", {"subject": subject, "body": body}))
        return None


def _factory(store: FakeStore, seen: list):
    def factory(name, delegate):
        seen.append((name, delegate))
        return store

    return factory


def test_without_delegate_renders_then_applies_locally(tmp_path) -> None:
    store, seen = FakeStore(tmp_path), []
    provisioner = FakeProvisioner()

    result = DelegatableProvisioner("pr-k8s", None, provisioner, store_factory=_factory(store, seen)).apply()

    assert result.outputs["applied"].value == "yes"
    assert [name for name, _ in provisioner.calls] == ["render", "apply"]
    assert provisioner.calls[0][1]["op"] == "apply"
    assert store.calls == [("transact", {}), ("commit", {"subject": COMMIT_SUBJECT, "body": "n/a"})]
    assert seen == [("pr-k8s", None)]


def test_git_delegate_stops_after_commit(tmp_path) -> None:
    store, seen = FakeStore(tmp_path), []
    provisioner = FakeProvisioner()
    delegate = Delegate.model_validate({"git": {"repo": "org/manifests"}})

    result = DelegatableProvisioner("pr-k8s", delegate, provisioner, store_factory=_factory(store, seen)).destroy()

    assert result == ProvisionerResult()
    assert [name for name, _ in provisioner.calls] == ["render"]
    assert provisioner.calls[0][1]["op"] == "destroy"
    assert [name for name, _ in store.calls] == ["transact", "commit"]


def test_repository_dispatch_defers_all_work(tmp_path) -> None:
    store, seen = FakeStore(tmp_path), []
    provisioner = FakeProvisioner()
    delegate = Delegate.model_validate(
        {"git": {"repo": "org/manifests"}, "repositoryDispatch": {"owner": "org", "repo": "infra"}}
    )

    result = DelegatableProvisioner("pr-k8s", delegate, provisioner, store_factory=_factory(store, seen)).apply()

    assert [(d.owner, d.repo) for d in result.repository_dispatches] == [("org", "infra")]
    assert provisioner.calls == []
    assert seen == []


def test_triggered_via_dispatch_runs_locally_instead_of_dispatching_again(tmp_path) -> None:
    store, seen = FakeStore(tmp_path), []
    provisioner = FakeProvisioner()
    delegate = Delegate.model_validate({"repositoryDispatch": {"owner": "org", "repo": "infra"}})

    delegatable = DelegatableProvisioner(
        "pr-k8s", delegate, provisioner, store_factory=_factory(store, seen), triggered_via_dispatch=True
    )
    result = delegatable.apply()

    assert delegatable.dispatches is False
    assert result.repository_dispatches == []
    assert [name for name, _ in provisioner.calls] == ["render", "apply"]
