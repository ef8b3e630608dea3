from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable

from prenv.models import Delegate
from prenv.provisioners import Operation, Provisioner, ProvisionerResult
from prenv.store import RenderResult, Store

logger = logging.getLogger(__name__)

COMMIT_SUBJECT = "automated commit"
DEFAULT_COMMIT_BODY = "n/a"

StoreFactory = Callable[[str, Delegate | None], Store]


class DelegatableProvisioner:
    """A provisioner plus the decision of where its work happens.

    Per run it either queues a repository dispatch and stops, or renders into
    a store and commits. After that it stops if the delegate is GitOps style
    (git or pullRequest); otherwise it applies or destroys locally.
    """

    def __init__(
        self,
        name: str,
        delegate: Delegate | None,
        provisioner: Provisioner,
        *,
        store_factory: StoreFactory,
        triggered_via_dispatch: bool = False,
        commit_body: str = DEFAULT_COMMIT_BODY,
    ) -> None:
        self.name = name
        self.delegate = delegate
        self.provisioner = provisioner
        self.store_factory = store_factory
        self.triggered_via_dispatch = triggered_via_dispatch
        self.commit_body = commit_body

    def __repr__(self) -> str:
        return f"DelegatableProvisioner(name={self.name!r}, triggered_via_dispatch={self.triggered_via_dispatch})"

    @property
    def dispatches(self) -> bool:
        return (
            self.delegate is not None
            and self.delegate.repository_dispatch is not None
            and not self.triggered_via_dispatch
        )

    def apply(self) -> ProvisionerResult:
        return self._run("apply")

    def destroy(self) -> ProvisionerResult:
        return self._run("destroy")

    def _run(self, op: Operation) -> ProvisionerResult:
        delegate = self.delegate
        if self.dispatches:
            target = delegate.repository_dispatch
            logger.info("%s: delegating %s to %s/%s via repository_dispatch", self.name, op, target.owner, target.repo)
            return ProvisionerResult(repository_dispatches=[target])

        store = self.store_factory(self.name, delegate)

        def render(workspace: Path) -> RenderResult:
            return self.provisioner.render(workspace, op)

        rendered = store.transact(render)
        logger.info(
            "%s: rendered %d file(s), deleted %d",
            self.name,
            len(rendered.added_or_modified),
            len(rendered.deleted),
        )
        store.commit(COMMIT_SUBJECT, self.commit_body)

        if delegate is not None and delegate.gitops:
            logger.info("%s: %s handed over to GitOps", self.name, op)
            return ProvisionerResult()

        if op == "apply":
            return self.provisioner.apply(rendered)
        return self.provisioner.destroy(rendered)
