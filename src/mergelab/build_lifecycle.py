from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
import logging
from typing import Literal

from mergelab.head_metadata import HeadMetadataStore
from mergelab.models import BuildResult, CommitState, HeadMetadataRecord
from mergelab.observability import log_event, log_warning_event
from mergelab.source import GitLabSource, JobActions, JobDirectory


LOGGER = logging.getLogger("mergelab.build_lifecycle")
BuildCauseKind = Literal["push", "merge_request", "manual", "scan"]


@dataclass(frozen=True)
class BuildCause:
    kind: BuildCauseKind
    branch: str | None = None
    merge_request_iid: int | None = None

    @property
    def description(self) -> str:
        if self.kind == "push" and self.branch:
            return f"Triggered by push to {self.branch}"
        if self.kind == "merge_request" and self.merge_request_iid is not None:
            return f"Triggered by merge request !{self.merge_request_iid}"
        if self.kind == "manual":
            return "Started manually"
        return "Triggered by branch indexing"


class BuildRun(ABC):
    """The job runtime's view of one build."""

    @property
    @abstractmethod
    def job_id(self) -> str:
        raise NotImplementedError

    @property
    @abstractmethod
    def build_number(self) -> int:
        raise NotImplementedError

    @property
    @abstractmethod
    def url(self) -> str | None:
        raise NotImplementedError

    @property
    @abstractmethod
    def result(self) -> BuildResult | None:
        raise NotImplementedError

    @property
    @abstractmethod
    def cause(self) -> BuildCause | None:
        raise NotImplementedError

    @abstractmethod
    def set_description(self, description: str) -> None:
        raise NotImplementedError


@dataclass(frozen=True)
class SideEffectOutcome:
    action: str
    ok: bool
    detail: str


def commit_state_for(result: BuildResult | None, *, unstable_as_success: bool) -> CommitState:
    if result == "success":
        return "success"
    if result == "unstable":
        return "success" if unstable_as_success else "failed"
    if result == "failure":
        return "failed"
    if result in {"aborted", "not_built"}:
        return "canceled"
    return "failed"


class BuildLifecycleOrchestrator:
    """Publishes build progress to GitLab and accepts merge requests after green builds.

    Every remote side effect is best-effort: failures come back as ``SideEffectOutcome`` values
    and are logged, never raised into the build runtime.
    """

    def __init__(self, *, metadata: HeadMetadataStore, jobs: JobDirectory) -> None:
        self._metadata = metadata
        self._jobs = jobs

    def on_started(self, build: BuildRun) -> tuple[SideEffectOutcome, ...]:
        resolved = self._resolve(build, pin=True)
        if resolved is None:
            return ()
        source, actions, metadata = resolved

        description = build.cause.description if build.cause is not None else ""
        outcomes: list[SideEffectOutcome] = []
        if actions.update_build_description and description:
            outcomes.append(self._update_description(build, description))
        outcomes.append(
            self._publish(
                build,
                source=source,
                actions=actions,
                metadata=metadata,
                state="running",
                description=description or "Build started",
            )
        )
        return tuple(outcomes)

    def on_completed(self, build: BuildRun) -> tuple[SideEffectOutcome, ...]:
        outcomes: list[SideEffectOutcome] = []
        built_hash: str | None = None
        resolved = self._resolve(build)
        if resolved is not None:
            source, actions, metadata = resolved
            built_hash = metadata.commit_hash
            state = commit_state_for(
                build.result, unstable_as_success=actions.publish_unstable_as_success
            )
            outcomes.append(
                self._publish(
                    build,
                    source=source,
                    actions=actions,
                    metadata=metadata,
                    state=state,
                    description=f"Build {build.result or 'finished'}",
                )
            )

        if build.result == "success":
            accept_outcome = self._accept_merge_request(build, built_hash=built_hash)
            if accept_outcome is not None:
                outcomes.append(accept_outcome)
        return tuple(outcomes)

    def _resolve(
        self, build: BuildRun, *, pin: bool = False
    ) -> tuple[GitLabSource, JobActions, HeadMetadataRecord] | None:
        source = self._jobs.find_source(build.job_id)
        if source is None:
            log_event(LOGGER, "build_not_from_source", job_id=build.job_id)
            return None
        if pin:
            metadata = self._metadata.pin_to_build(build.job_id, build.build_number)
        else:
            metadata = self._metadata.get(build.job_id, build.build_number)
        if metadata is None:
            log_event(
                LOGGER,
                "commit_status_skipped",
                job_id=build.job_id,
                build_number=build.build_number,
                reason="no_head_metadata",
            )
            return None
        revision = self._jobs.current_revision(build.job_id)
        actions = source.actions_for(build.job_id, revision.head if revision else None)
        return source, actions, metadata

    def _update_description(self, build: BuildRun, description: str) -> SideEffectOutcome:
        try:
            build.set_description(description)
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "build_description_failed",
                job_id=build.job_id,
                build_number=build.build_number,
                error_type=type(exc).__name__,
            )
            return SideEffectOutcome(action="update_description", ok=False, detail=str(exc))
        return SideEffectOutcome(action="update_description", ok=True, detail=description)

    def _publish(
        self,
        build: BuildRun,
        *,
        source: GitLabSource,
        actions: JobActions,
        metadata: HeadMetadataRecord,
        state: CommitState,
        description: str,
    ) -> SideEffectOutcome:
        try:
            source.gateway.set_commit_status(
                metadata.project_id,
                metadata.commit_hash,
                state=state,
                context=actions.status_context,
                description=description,
                target_url=build.url,
                ref=metadata.branch_name,
            )
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "commit_status_publish_failed",
                job_id=build.job_id,
                build_number=build.build_number,
                commit_hash=metadata.commit_hash,
                state=state,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return SideEffectOutcome(action=f"status:{state}", ok=False, detail=str(exc))
        log_event(
            LOGGER,
            "commit_status_published",
            job_id=build.job_id,
            build_number=build.build_number,
            commit_hash=metadata.commit_hash,
            state=state,
            context=actions.status_context,
        )
        return SideEffectOutcome(action=f"status:{state}", ok=True, detail=metadata.commit_hash)

    def _accept_merge_request(
        self, build: BuildRun, *, built_hash: str | None
    ) -> SideEffectOutcome | None:
        source = self._jobs.find_source(build.job_id)
        revision = self._jobs.current_revision(build.job_id)
        if source is None or revision is None:
            return None
        accept = source.actions_for(build.job_id, revision.head).accept
        if accept is None:
            return None
        if built_hash is None:
            # Without the built commit GitLab could merge commits this build never saw.
            log_warning_event(
                LOGGER,
                "merge_request_accept_skipped",
                job_id=build.job_id,
                build_number=build.build_number,
                iid=accept.iid,
                reason="no_built_hash",
            )
            return SideEffectOutcome(
                action="accept_merge_request", ok=False, detail="built commit unknown"
            )
        try:
            source.gateway.accept_merge_request(
                accept.project_id,
                accept.iid,
                sha=built_hash,
                remove_source_branch=accept.remove_source_branch,
            )
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "merge_request_accept_failed",
                job_id=build.job_id,
                build_number=build.build_number,
                iid=accept.iid,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return SideEffectOutcome(action="accept_merge_request", ok=False, detail=str(exc))
        log_event(
            LOGGER,
            "merge_request_accepted",
            job_id=build.job_id,
            build_number=build.build_number,
            iid=accept.iid,
        )
        return SideEffectOutcome(action="accept_merge_request", ok=True, detail=str(accept.iid))
