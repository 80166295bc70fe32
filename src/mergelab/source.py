from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
import threading

from mergelab.discovery import HeadDiscoveryEngine, HeadObserver, SourceCriteria
from mergelab.gitlab_gateway import GitLabGateway
from mergelab.models import (
    Head,
    HeadMetadataRecord,
    Project,
    Revision,
    SourceSettings,
    WebhookEvent,
)
from mergelab.state import StateStore


@dataclass(frozen=True)
class AcceptMergeRequestAction:
    project_id: int
    iid: int
    remove_source_branch: bool


@dataclass(frozen=True)
class JobActions:
    status_context: str
    update_build_description: bool
    publish_unstable_as_success: bool
    accept: AcceptMergeRequestAction | None


class GitLabSource:
    """A configured discovery source: one GitLab project plus its build settings."""

    def __init__(
        self,
        *,
        source_id: str,
        project: Project,
        settings: SourceSettings,
        gateway: GitLabGateway,
        status_context_prefix: str = "mergelab",
    ) -> None:
        self.source_id = source_id
        self.project = project
        self.settings = settings
        self.gateway = gateway
        self._status_context_prefix = status_context_prefix
        self._engine = HeadDiscoveryEngine(
            gateway=gateway,
            project_id=project.project_id,
            settings=settings,
        )

    @property
    def project_id(self) -> int:
        return self.project.project_id

    def discover(
        self,
        criteria: SourceCriteria | None,
        observer: HeadObserver,
        event: WebhookEvent | None = None,
        *,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self._engine.discover(criteria, observer, event, cancel_event=cancel_event)

    def job_id_for(self, head: Head) -> str:
        return f"{self.source_id}/{head.name}"

    def status_context(self, job_id: str) -> str:
        return f"{self._status_context_prefix}/{job_id}"

    def head_metadata(self, revision: Revision) -> HeadMetadataRecord:
        head = revision.head
        branch = head.source if head.kind == "merge_request" else head
        return HeadMetadataRecord(
            head_name=head.name,
            project_id=branch.project_id,
            branch_name=branch.name,
            commit_hash=revision.hash,
            web_url=self.project.commit_url(revision.hash),
        )

    def actions_for(self, job_id: str, head: Head | None) -> JobActions:
        accept: AcceptMergeRequestAction | None = None
        if head is not None and head.kind == "merge_request":
            strategy = self.settings.strategy_for(head)
            if strategy.accept_merge_requests:
                accept = AcceptMergeRequestAction(
                    project_id=head.project_id,
                    iid=head.iid,
                    remove_source_branch=strategy.remove_source_branch,
                )
        return JobActions(
            status_context=self.status_context(job_id),
            update_build_description=self.settings.update_build_description,
            publish_unstable_as_success=self.settings.publish_unstable_as_success,
            accept=accept,
        )


class JobDirectory(ABC):
    """Maps job ids to the source that owns them and the head they are currently bound to."""

    @abstractmethod
    def find_source(self, job_id: str) -> GitLabSource | None:
        raise NotImplementedError

    @abstractmethod
    def current_revision(self, job_id: str) -> Revision | None:
        raise NotImplementedError


class StateJobDirectory(JobDirectory):
    def __init__(self, state: StateStore, sources: Mapping[str, GitLabSource]) -> None:
        self._state = state
        self._sources = dict(sources)

    def find_source(self, job_id: str) -> GitLabSource | None:
        source_id, sep, _ = job_id.partition("/")
        if not sep:
            return None
        return self._sources.get(source_id)

    def current_revision(self, job_id: str) -> Revision | None:
        record = self._state.get_discovered_head(job_id)
        if record is None:
            return None
        return record.revision
