from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
import logging
import threading

from mergelab.discovery import CollectingObserver, DiscoveryInterrupted, HeadObserver
from mergelab.models import Head, Revision
from mergelab.observability import log_event, log_warning_event, logging_source_context
from mergelab.source import GitLabSource
from mergelab.state import StateStore
from mergelab.webhooks import SourceRegistration


LOGGER = logging.getLogger("mergelab.orchestrator")


class JobSyncObserver(HeadObserver):
    """Records each head from an incremental pass against the job it binds to."""

    def __init__(self, state: StateStore, source: GitLabSource) -> None:
        self._state = state
        self._source = source
        self.emitted: list[str] = []

    def observe(self, head: Head, revision: Revision) -> None:
        job_id = self._source.job_id_for(head)
        self._state.upsert_discovered_heads(self._source.source_id, ((job_id, revision),))
        self.emitted.append(job_id)


class DiscoveryScheduler:
    """Runs periodic full discovery passes for every registered source.

    Each cycle fans out one pass per source on a worker pool and records the outcome, so a
    failing source never stalls the others.
    """

    def __init__(
        self,
        *,
        registrations: tuple[SourceRegistration, ...],
        state: StateStore,
        poll_interval_seconds: int,
        worker_count: int,
    ) -> None:
        self._registrations = {
            registration.source.source_id: registration for registration in registrations
        }
        self._state = state
        self._poll_interval_seconds = poll_interval_seconds
        self._worker_count = max(1, worker_count)

    def observer_for(self, source: GitLabSource) -> HeadObserver:
        return JobSyncObserver(self._state, source)

    def run(self, *, once: bool, stop_event: threading.Event | None = None) -> None:
        stop = stop_event or threading.Event()
        log_event(
            LOGGER,
            "scheduler_started",
            once=once,
            source_count=len(self._registrations),
            poll_interval_seconds=self._poll_interval_seconds,
        )
        while True:
            self.run_cycle(cancel_event=stop)
            if once or stop.wait(self._poll_interval_seconds):
                break
        log_event(LOGGER, "scheduler_stopped", once=once)

    def run_cycle(self, *, cancel_event: threading.Event | None = None) -> dict[str, str]:
        outcomes: dict[str, str] = {}
        with ThreadPoolExecutor(max_workers=self._worker_count) as pool:
            futures: dict[str, Future[str]] = {
                source_id: pool.submit(self._full_pass, registration, cancel_event)
                for source_id, registration in self._registrations.items()
            }
            for source_id, future in futures.items():
                outcomes[source_id] = future.result()
        return outcomes

    def reindex(self, source_id: str) -> str:
        registration = self._registrations.get(source_id)
        if registration is None:
            raise KeyError(f"Unknown source: {source_id}")
        return self._full_pass(registration, None)

    def _full_pass(
        self,
        registration: SourceRegistration,
        cancel_event: threading.Event | None,
    ) -> str:
        source = registration.source
        with logging_source_context(source.source_id):
            self._state.record_pass_started(source.source_id, mode="full", started_at=_utc_now())
            observer = CollectingObserver()
            status = "ok"
            error: str | None = None
            try:
                source.discover(registration.criteria, observer, cancel_event=cancel_event)
            except DiscoveryInterrupted:
                status = "interrupted"
            except Exception as exc:  # noqa: BLE001
                status = "failed"
                error = f"{type(exc).__name__}: {exc}"
                log_warning_event(
                    LOGGER,
                    "discovery_pass_failed",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
            else:
                self._state.replace_discovered_heads(
                    source.source_id,
                    tuple(
                        (source.job_id_for(head), revision) for head, revision in observer.observed
                    ),
                )
            self._state.record_pass_finished(
                source.source_id,
                status=status,
                error=error,
                emitted_count=len(observer.observed),
                finished_at=_utc_now(),
            )
        return status


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")
