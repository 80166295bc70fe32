from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
import logging
import threading
from typing import TypeVar

from mergelab.events import EventCorrelator
from mergelab.gitlab_gateway import GitLabGateway
from mergelab.models import (
    BranchHead,
    Head,
    HeadDiscoveryRequest,
    MergeRequestBuildState,
    MergeRequestHead,
    RemoteBranch,
    RemoteMergeRequest,
    RemoteTag,
    Revision,
    SourceSettings,
    TagHead,
    WebhookEvent,
)
from mergelab.observability import log_event
from mergelab.policy import evaluate


LOGGER = logging.getLogger("mergelab.discovery")
_MERGE_REQUEST_VARIANTS: tuple[MergeRequestBuildState, ...] = ("unmerged", "merged")
_T = TypeVar("_T")


class DiscoveryInterrupted(RuntimeError):
    """The caller asked the running pass to stop."""


class HeadProbe(ABC):
    """Read-only view of a revision's tree."""

    @abstractmethod
    def exists(self, path: str) -> bool:
        raise NotImplementedError


class SourceCriteria(ABC):
    @abstractmethod
    def matches(self, probe: HeadProbe) -> bool:
        raise NotImplementedError


class HeadObserver(ABC):
    @abstractmethod
    def observe(self, head: Head, revision: Revision) -> None:
        raise NotImplementedError

    def is_observing(self) -> bool:
        return True


class RemoteHeadProbe(HeadProbe):
    def __init__(self, gateway: GitLabGateway, project_id: int, ref: str) -> None:
        self._gateway = gateway
        self._project_id = project_id
        self._ref = ref

    def exists(self, path: str) -> bool:
        return self._gateway.file_exists(self._project_id, path, self._ref)


class RequiredFilesCriteria(SourceCriteria):
    def __init__(self, paths: tuple[str, ...]) -> None:
        self._paths = paths

    def matches(self, probe: HeadProbe) -> bool:
        return all(probe.exists(path) for path in self._paths)


class CollectingObserver(HeadObserver):
    """Keeps emitted heads in order; stops after ``limit`` heads when one is given."""

    def __init__(self, *, limit: int | None = None) -> None:
        self.observed: list[tuple[Head, Revision]] = []
        self._limit = limit

    def observe(self, head: Head, revision: Revision) -> None:
        self.observed.append((head, revision))

    def is_observing(self) -> bool:
        return self._limit is None or len(self.observed) < self._limit


@dataclass(frozen=True)
class _Listing:
    branches: tuple[RemoteBranch, ...]
    tags: tuple[RemoteTag, ...]
    merge_requests: tuple[RemoteMergeRequest, ...]


class HeadDiscoveryEngine:
    def __init__(
        self,
        *,
        gateway: GitLabGateway,
        project_id: int,
        settings: SourceSettings,
        correlator: EventCorrelator | None = None,
    ) -> None:
        self._gateway = gateway
        self._project_id = project_id
        self._settings = settings
        self._correlator = correlator or EventCorrelator(project_id, settings)

    def discover(
        self,
        criteria: SourceCriteria | None,
        observer: HeadObserver,
        event: WebhookEvent | None = None,
        *,
        cancel_event: threading.Event | None = None,
    ) -> None:
        """Run a full pass when ``event`` is None, otherwise a pass scoped to the event's heads.

        Remote failures abort a full pass and propagate. In an incremental pass they only drop the
        affected head.
        """
        if event is None:
            self._full_pass(criteria, observer, cancel_event)
        else:
            self._incremental_pass(criteria, observer, event, cancel_event)

    def _full_pass(
        self,
        criteria: SourceCriteria | None,
        observer: HeadObserver,
        cancel_event: threading.Event | None,
    ) -> None:
        log_event(LOGGER, "discovery_pass_started", project_id=self._project_id, mode="full")
        if self._settings.parallel_listing:
            listing = self._list_parallel(observer, cancel_event)
        else:
            listing = self._list_sequential(observer, cancel_event)
        if listing is None:
            log_event(LOGGER, "discovery_pass_stopped", project_id=self._project_id)
            return

        index = _open_source_branch_index(listing.merge_requests, self._project_id)
        branch_tips = {branch.name: branch.commit_sha for branch in listing.branches}
        emitted = 0
        for head, revision in self._candidates(listing, index, branch_tips):
            outcome = self._consider(head, revision, criteria, observer, cancel_event)
            if outcome is None:
                break
            emitted += int(outcome)
        log_event(
            LOGGER,
            "discovery_pass_completed",
            project_id=self._project_id,
            mode="full",
            branch_count=len(listing.branches),
            tag_count=len(listing.tags),
            merge_request_count=len(listing.merge_requests),
            emitted_count=emitted,
        )

    def _candidates(
        self,
        listing: _Listing,
        supersession_index: set[tuple[str, str]],
        branch_tips: dict[str, str],
    ) -> list[tuple[Head, Revision]]:
        candidates: list[tuple[Head, Revision]] = []
        for branch in listing.branches:
            branch_head = BranchHead(
                name=branch.name,
                project_id=self._project_id,
                has_open_merge_request=(branch.name, branch.commit_sha) in supersession_index,
            )
            candidates.append((branch_head, Revision(head=branch_head, hash=branch.commit_sha)))
        for tag in listing.tags:
            tag_head = TagHead(name=tag.name, project_id=self._project_id)
            candidates.append((tag_head, Revision(head=tag_head, hash=tag.commit_sha)))
        if self._settings.build_merge_requests:
            for merge_request in listing.merge_requests:
                candidates.extend(
                    _merge_request_candidates(
                        merge_request,
                        target_hash=branch_tips.get(merge_request.target_branch),
                    )
                )
        return candidates

    def _list_sequential(
        self, observer: HeadObserver, cancel_event: threading.Event | None
    ) -> _Listing | None:
        merge_requests: list[RemoteMergeRequest] = []
        branches: list[RemoteBranch] = []
        tags: list[RemoteTag] = []
        if self._needs_merge_requests():
            fetched_mrs = self._call(observer, cancel_event, self._list_open_merge_requests)
            if fetched_mrs is None:
                return None
            merge_requests = fetched_mrs
        if self._settings.build_branches:
            fetched_branches = self._call(
                observer, cancel_event, lambda: self._gateway.list_branches(self._project_id)
            )
            if fetched_branches is None:
                return None
            branches = fetched_branches
        if self._settings.build_tags:
            fetched_tags = self._call(
                observer, cancel_event, lambda: self._gateway.list_tags(self._project_id)
            )
            if fetched_tags is None:
                return None
            tags = fetched_tags
        return _Listing(
            branches=tuple(branches), tags=tuple(tags), merge_requests=tuple(merge_requests)
        )

    def _list_parallel(
        self, observer: HeadObserver, cancel_event: threading.Event | None
    ) -> _Listing | None:
        _check_cancelled(cancel_event)
        if not observer.is_observing():
            return None
        with ThreadPoolExecutor(max_workers=3, thread_name_prefix="mergelab-list") as pool:
            branches_future: Future[list[RemoteBranch]] | None = None
            tags_future: Future[list[RemoteTag]] | None = None
            merge_requests_future: Future[list[RemoteMergeRequest]] | None = None
            if self._settings.build_branches:
                branches_future = pool.submit(self._gateway.list_branches, self._project_id)
            if self._settings.build_tags:
                tags_future = pool.submit(self._gateway.list_tags, self._project_id)
            if self._needs_merge_requests():
                merge_requests_future = pool.submit(self._list_open_merge_requests)
            try:
                branches = branches_future.result() if branches_future else []
                tags = tags_future.result() if tags_future else []
                merge_requests = merge_requests_future.result() if merge_requests_future else []
            except BaseException:
                for future in (branches_future, tags_future, merge_requests_future):
                    if future is not None:
                        future.cancel()
                raise
        _check_cancelled(cancel_event)
        return _Listing(
            branches=tuple(branches), tags=tuple(tags), merge_requests=tuple(merge_requests)
        )

    def _needs_merge_requests(self) -> bool:
        suppression_active = (
            self._settings.build_branches and not self._settings.build_branches_with_merge_requests
        )
        return self._settings.build_merge_requests or suppression_active

    def _list_open_merge_requests(self) -> list[RemoteMergeRequest]:
        return self._gateway.list_merge_requests(self._project_id, state="opened")

    def _incremental_pass(
        self,
        criteria: SourceCriteria | None,
        observer: HeadObserver,
        event: WebhookEvent,
        cancel_event: threading.Event | None,
    ) -> None:
        requests = self._correlator.correlate(event)
        log_event(
            LOGGER,
            "discovery_pass_started",
            project_id=self._project_id,
            mode="incremental",
            event_kind=event.kind,
            request_count=len(requests),
        )
        emitted = 0
        for request in requests:
            if not observer.is_observing():
                break
            try:
                candidates = self._resolve(request, observer, cancel_event)
            except DiscoveryInterrupted:
                raise
            except Exception as exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "incremental_head_unresolved",
                    project_id=self._project_id,
                    request_kind=request.kind,
                    name=request.name,
                    merge_request_iid=request.merge_request_iid,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                continue
            for head, revision in candidates:
                try:
                    outcome = self._consider(head, revision, criteria, observer, cancel_event)
                except DiscoveryInterrupted:
                    raise
                except Exception as exc:  # noqa: BLE001
                    log_event(
                        LOGGER,
                        "incremental_head_unresolved",
                        project_id=self._project_id,
                        head=head.name,
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
                    continue
                if outcome is None:
                    break
                emitted += int(outcome)
        log_event(
            LOGGER,
            "discovery_pass_completed",
            project_id=self._project_id,
            mode="incremental",
            emitted_count=emitted,
        )

    def _resolve(
        self,
        request: HeadDiscoveryRequest,
        observer: HeadObserver,
        cancel_event: threading.Event | None,
    ) -> list[tuple[Head, Revision]]:
        if request.kind == "branch" and request.name is not None:
            name = request.name
            check_supersession = (
                self._settings.build_branches
                and not self._settings.build_branches_with_merge_requests
            )
            branch: RemoteBranch | None
            if check_supersession and request.commit_sha is not None:
                # The push already names the new tip; only the merge request lookup goes remote.
                branch = RemoteBranch(name=name, commit_sha=request.commit_sha)
            else:
                branch = self._call(
                    observer,
                    cancel_event,
                    lambda: self._gateway.get_branch(self._project_id, name),
                )
            if branch is None:
                return []
            superseded = False
            if check_supersession:
                merge_requests = self._call(
                    observer,
                    cancel_event,
                    lambda: self._gateway.list_merge_requests(
                        self._project_id, state="opened", source_branch=name
                    ),
                )
                if merge_requests is None:
                    return []
                superseded = (branch.name, branch.commit_sha) in _open_source_branch_index(
                    merge_requests, self._project_id
                )
            branch_head = BranchHead(
                name=branch.name,
                project_id=self._project_id,
                has_open_merge_request=superseded,
            )
            return [(branch_head, Revision(head=branch_head, hash=branch.commit_sha))]

        if request.kind == "tag" and request.name is not None:
            tag_name = request.name
            tag = self._call(
                observer, cancel_event, lambda: self._gateway.get_tag(self._project_id, tag_name)
            )
            if tag is None:
                return []
            tag_head = TagHead(name=tag.name, project_id=self._project_id)
            return [(tag_head, Revision(head=tag_head, hash=tag.commit_sha))]

        if request.kind == "merge_request" and request.merge_request_iid is not None:
            iid = request.merge_request_iid
            merge_request = self._call(
                observer,
                cancel_event,
                lambda: self._gateway.get_merge_request(self._project_id, iid),
            )
            if merge_request is None:
                return []
            if merge_request.state != "opened":
                log_event(
                    LOGGER,
                    "head_skipped",
                    project_id=self._project_id,
                    head=f"MR-{iid}",
                    reason=f"merge_request_{merge_request.state or 'unknown'}",
                )
                return []
            return _merge_request_candidates(merge_request, target_hash=None)

        return []

    def _consider(
        self,
        head: Head,
        revision: Revision,
        criteria: SourceCriteria | None,
        observer: HeadObserver,
        cancel_event: threading.Event | None,
    ) -> bool | None:
        """Run one candidate through policy, criteria and the observer.

        Returns True when emitted, False when filtered out, and None once the observer has
        stopped observing.
        """
        if not observer.is_observing():
            return None
        decision = evaluate(head, self._settings)
        if not decision.eligible:
            log_event(LOGGER, "head_skipped", head=head.name, kind=head.kind, reason=decision.reason)
            return False
        if criteria is not None:
            _check_cancelled(cancel_event)
            probe_project_id = (
                head.source_project_id if head.kind == "merge_request" else head.project_id
            )
            probe = RemoteHeadProbe(self._gateway, probe_project_id, revision.hash)
            if not criteria.matches(probe):
                log_event(
                    LOGGER, "head_skipped", head=head.name, kind=head.kind, reason="criteria"
                )
                return False
        observer.observe(head, revision)
        log_event(LOGGER, "head_emitted", head=head.name, kind=head.kind, hash=revision.hash)
        return True

    def _call(
        self,
        observer: HeadObserver,
        cancel_event: threading.Event | None,
        fetch: Callable[[], _T],
    ) -> _T | None:
        _check_cancelled(cancel_event)
        if not observer.is_observing():
            return None
        return fetch()


def _merge_request_candidates(
    merge_request: RemoteMergeRequest, *, target_hash: str | None
) -> list[tuple[Head, Revision]]:
    candidates: list[tuple[Head, Revision]] = []
    for state in _MERGE_REQUEST_VARIANTS:
        head = MergeRequestHead(
            iid=merge_request.iid,
            project_id=merge_request.target_project_id,
            source_project_id=merge_request.source_project_id,
            source_branch=merge_request.source_branch,
            target_branch=merge_request.target_branch,
            state=state,
            work_in_progress=merge_request.work_in_progress,
            mergeable=merge_request.mergeable,
        )
        revision = Revision(
            head=head,
            hash=merge_request.sha,
            target_hash=target_hash if state == "merged" else None,
        )
        candidates.append((head, revision))
    return candidates


def _open_source_branch_index(
    merge_requests: tuple[RemoteMergeRequest, ...] | list[RemoteMergeRequest], project_id: int
) -> set[tuple[str, str]]:
    # Only a merge request sitting on the branch tip supersedes the branch build.
    return {
        (merge_request.source_branch, merge_request.sha)
        for merge_request in merge_requests
        if merge_request.source_project_id == project_id and merge_request.state == "opened"
    }


def _check_cancelled(cancel_event: threading.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise DiscoveryInterrupted("discovery pass interrupted")
