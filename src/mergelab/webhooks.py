from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import logging

from mergelab.discovery import DiscoveryInterrupted, HeadObserver, SourceCriteria
from mergelab.events import parse_webhook_event
from mergelab.observability import log_event, log_warning_event, logging_source_context
from mergelab.source import GitLabSource


LOGGER = logging.getLogger("mergelab.webhooks")


@dataclass(frozen=True)
class SourceRegistration:
    source: GitLabSource
    criteria: SourceCriteria | None = None


class WebhookRegistrationManager:
    def __init__(
        self,
        *,
        hook_url: str | None,
        secret: str | None,
        observer_factory: Callable[[GitLabSource], HeadObserver],
        registrations: tuple[SourceRegistration, ...] = (),
    ) -> None:
        self._hook_url = hook_url
        self._secret = secret
        self._observer_factory = observer_factory
        self._registrations: list[SourceRegistration] = list(registrations)

    @property
    def registrations(self) -> tuple[SourceRegistration, ...]:
        return tuple(self._registrations)

    def add(self, registration: SourceRegistration) -> None:
        self._registrations.append(registration)

    def registrations_for_project(self, project_id: int) -> tuple[SourceRegistration, ...]:
        return tuple(
            registration
            for registration in self._registrations
            if registration.source.project_id == project_id
        )

    def ensure_registered(self, source: GitLabSource) -> bool:
        """Create or repair the project hook pointing at this service. Returns True on a write."""
        if not source.settings.register_webhooks or not self._hook_url:
            log_event(
                LOGGER,
                "webhook_registration_skipped",
                source_id=source.source_id,
                reason="disabled" if self._hook_url else "no_hook_url",
            )
            return False

        hooks = source.gateway.list_hooks(source.project_id)
        existing = next((hook for hook in hooks if hook.url == self._hook_url), None)
        if existing is not None and existing.subscribes_to_required_events:
            log_event(
                LOGGER,
                "webhook_already_registered",
                source_id=source.source_id,
                hook_id=existing.hook_id,
            )
            return False

        source.gateway.register_webhook(
            source.project_id,
            self._hook_url,
            token=self._secret,
            hook_id=existing.hook_id if existing is not None else None,
        )
        log_event(
            LOGGER,
            "webhook_registered",
            source_id=source.source_id,
            project_id=source.project_id,
            updated=existing is not None,
        )
        return True

    def dispatch(self, raw_event: object, *, event_header: str | None = None) -> int:
        """Run an incremental pass on every source watching the event's project.

        Returns the number of sources the event was routed to. A failure in one source is
        logged and does not stop the others.
        """
        event = parse_webhook_event(raw_event, event_header=event_header)
        registrations = self.registrations_for_project(event.project_id)
        if not registrations:
            log_event(
                LOGGER,
                "webhook_ignored",
                project_id=event.project_id,
                kind=event.kind,
                reason="unknown_project",
            )
            return 0
        if event.kind == "unsupported":
            log_event(
                LOGGER,
                "webhook_ignored",
                project_id=event.project_id,
                kind=event.kind,
                reason="unsupported_kind",
            )
            return 0

        for registration in registrations:
            source = registration.source
            with logging_source_context(source.source_id):
                try:
                    source.discover(
                        registration.criteria,
                        self._observer_factory(source),
                        event,
                    )
                except DiscoveryInterrupted:
                    log_event(LOGGER, "webhook_dispatch_interrupted", kind=event.kind)
                except Exception as exc:  # noqa: BLE001
                    log_warning_event(
                        LOGGER,
                        "webhook_dispatch_failed",
                        kind=event.kind,
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
        log_event(
            LOGGER,
            "webhook_dispatched",
            project_id=event.project_id,
            kind=event.kind,
            ref=event.ref,
            merge_request_iid=event.merge_request_iid,
            source_count=len(registrations),
        )
        return len(registrations)
