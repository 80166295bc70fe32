from __future__ import annotations

import logging

from mergelab.models import HeadMetadataRecord
from mergelab.observability import log_event, log_warning_event
from mergelab.source import JobDirectory
from mergelab.state import StatePersistenceError, StateStore


LOGGER = logging.getLogger("mergelab.head_metadata")


class HeadMetadataStore:
    """Resolves the head a build came from, even after that head has disappeared remotely.

    Lookup order is the build's own record, then the job's record, then a record rebuilt from
    the head the job is bound to right now. A rebuilt record is persisted on the job with
    first-writer-wins semantics; any failure yields None so callers skip publishing. Starting
    builds go through ``pin_to_build``, which refreshes the job record from the current head.
    """

    def __init__(self, *, state: StateStore, jobs: JobDirectory) -> None:
        self._state = state
        self._jobs = jobs

    def get(self, job_id: str, build_number: int | None = None) -> HeadMetadataRecord | None:
        try:
            if build_number is not None:
                record = self._state.get_build_metadata(job_id, build_number)
                if record is not None:
                    return record
            record = self._state.get_job_metadata(job_id)
            if record is not None:
                return record
        except StatePersistenceError as exc:
            log_warning_event(
                LOGGER,
                "head_metadata_unavailable",
                job_id=job_id,
                reason="read_failed",
                error=str(exc),
            )
            return None

        source = self._jobs.find_source(job_id)
        revision = self._jobs.current_revision(job_id)
        if source is None or revision is None:
            log_event(
                LOGGER,
                "head_metadata_unavailable",
                job_id=job_id,
                reason="source_missing" if source is None else "head_unresolvable",
            )
            return None

        candidate = source.head_metadata(revision)
        try:
            stored = self._state.resolve_or_create_job_metadata(job_id, candidate)
        except StatePersistenceError as exc:
            log_warning_event(
                LOGGER,
                "head_metadata_unavailable",
                job_id=job_id,
                reason="persist_failed",
                error=str(exc),
            )
            return None
        log_event(
            LOGGER,
            "head_metadata_resolved",
            job_id=job_id,
            head=stored.head_name,
            commit_hash=stored.commit_hash,
            matches_current_head=stored == candidate,
        )
        return stored

    def pin_to_build(self, job_id: str, build_number: int) -> HeadMetadataRecord | None:
        """Fix the record a starting build reports against.

        A build already pinned keeps its record. Otherwise the record comes from the head the job
        is bound to now, and the job's record is brought up to date with it. The stored job
        record is only used when that head can no longer be resolved.
        """
        try:
            pinned = self._state.get_build_metadata(job_id, build_number)
        except StatePersistenceError as exc:
            log_warning_event(
                LOGGER,
                "head_metadata_unavailable",
                job_id=job_id,
                reason="read_failed",
                error=str(exc),
            )
            return None
        if pinned is not None:
            return pinned

        source = self._jobs.find_source(job_id)
        revision = self._jobs.current_revision(job_id)
        if source is None or revision is None:
            record = self.get(job_id)
        else:
            record = source.head_metadata(revision)
            try:
                self._state.save_job_metadata(job_id, record)
            except StatePersistenceError as exc:
                log_warning_event(
                    LOGGER,
                    "head_metadata_refresh_failed",
                    job_id=job_id,
                    error=str(exc),
                )
            else:
                log_event(
                    LOGGER,
                    "head_metadata_refreshed",
                    job_id=job_id,
                    head=record.head_name,
                    commit_hash=record.commit_hash,
                )
        if record is None:
            return None
        return self.attach_to_build(job_id, build_number, record) or record

    def attach_to_build(
        self, job_id: str, build_number: int, record: HeadMetadataRecord
    ) -> HeadMetadataRecord | None:
        try:
            return self._state.attach_build_metadata(job_id, build_number, record)
        except StatePersistenceError as exc:
            log_warning_event(
                LOGGER,
                "head_metadata_attach_failed",
                job_id=job_id,
                build_number=build_number,
                error=str(exc),
            )
            return None
