from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import cast

from mergelab.models import (
    HeadDiscoveryRequest,
    SourceSettings,
    WebhookEvent,
    WebhookEventKind,
)
from mergelab.observability import log_event


LOGGER = logging.getLogger("mergelab.events")
_BRANCH_REF_PREFIX = "refs/heads/"
_TAG_REF_PREFIX = "refs/tags/"
_HEADER_KINDS: dict[str, WebhookEventKind] = {
    "push hook": "push",
    "tag push hook": "tag_push",
    "merge request hook": "merge_request",
}


class WebhookPayloadError(ValueError):
    pass


def parse_webhook_event(
    payload: object,
    *,
    event_header: str | None = None,
    received_at: str | None = None,
) -> WebhookEvent:
    """Normalize a GitLab webhook body into a ``WebhookEvent``.

    Unknown kinds still produce an event (``kind="unsupported"``) so callers can log and ignore
    them; only bodies without a project identity are rejected.
    """
    if not isinstance(payload, dict) or not all(isinstance(key, str) for key in payload):
        raise WebhookPayloadError("webhook payload must be a JSON object")
    body = cast(dict[str, object], payload)
    kind = _event_kind(body, event_header)
    timestamp = received_at or _utc_now_iso()

    if kind == "merge_request":
        attributes = _as_object(body.get("object_attributes"))
        if attributes is None:
            raise WebhookPayloadError("merge request payload is missing object_attributes")
        project_id = _as_optional_int(attributes.get("target_project_id"))
        if project_id is None:
            project_id = _project_id(body)
        return WebhookEvent(
            project_id=project_id,
            kind=kind,
            ref=None,
            merge_request_iid=_as_optional_int(attributes.get("iid")),
            timestamp=_as_optional_str(attributes.get("updated_at")) or timestamp,
            source_project_id=_as_optional_int(attributes.get("source_project_id")),
            source_branch=_as_optional_str(attributes.get("source_branch")),
        )

    project_id = _project_id(body)
    ref = _as_optional_str(body.get("ref"))
    if kind == "push" and ref is not None and ref.startswith(_BRANCH_REF_PREFIX):
        ref = ref[len(_BRANCH_REF_PREFIX) :]
    elif kind == "tag_push" and ref is not None and ref.startswith(_TAG_REF_PREFIX):
        ref = ref[len(_TAG_REF_PREFIX) :]
    elif kind in {"push", "tag_push"}:
        kind = "unsupported"
    return WebhookEvent(
        project_id=project_id,
        kind=kind,
        ref=ref,
        merge_request_iid=None,
        timestamp=timestamp,
        commit_sha=_pushed_commit(body) if kind == "push" else None,
    )


class EventCorrelator:
    def __init__(self, project_id: int, settings: SourceSettings) -> None:
        self._project_id = project_id
        self._settings = settings

    def correlate(self, event: WebhookEvent) -> list[HeadDiscoveryRequest]:
        requests = self._requests_for(event)
        if not requests:
            log_event(
                LOGGER,
                "webhook_correlation_miss",
                project_id=event.project_id,
                kind=event.kind,
                ref=event.ref,
                merge_request_iid=event.merge_request_iid,
            )
        return requests

    def _requests_for(self, event: WebhookEvent) -> list[HeadDiscoveryRequest]:
        if event.project_id != self._project_id:
            return []
        if event.kind == "push" and event.ref:
            return [
                HeadDiscoveryRequest(kind="branch", name=event.ref, commit_sha=event.commit_sha)
            ]
        if event.kind == "tag_push" and event.ref:
            return [HeadDiscoveryRequest(kind="tag", name=event.ref)]
        if event.kind == "merge_request" and event.merge_request_iid is not None:
            requests = [
                HeadDiscoveryRequest(
                    kind="merge_request", merge_request_iid=event.merge_request_iid
                )
            ]
            # The source branch's supersession may have flipped with this merge request.
            if (
                self._settings.build_branches
                and event.source_branch
                and event.source_project_id == self._project_id
            ):
                requests.append(HeadDiscoveryRequest(kind="branch", name=event.source_branch))
            return requests
        return []


def _event_kind(body: dict[str, object], event_header: str | None) -> WebhookEventKind:
    object_kind = _as_optional_str(body.get("object_kind"))
    if object_kind in {"push", "tag_push", "merge_request"}:
        return cast(WebhookEventKind, object_kind)
    if event_header is not None:
        return _HEADER_KINDS.get(event_header.strip().lower(), "unsupported")
    return "unsupported"


def _project_id(body: dict[str, object]) -> int:
    project_id = _as_optional_int(body.get("project_id"))
    if project_id is not None:
        return project_id
    project = _as_object(body.get("project"))
    if project is not None:
        project_id = _as_optional_int(project.get("id"))
        if project_id is not None:
            return project_id
    raise WebhookPayloadError("webhook payload does not identify a project")


def _pushed_commit(body: dict[str, object]) -> str | None:
    for key in ("checkout_sha", "after"):
        sha = _as_optional_str(body.get(key))
        # A branch deletion reports an all-zero sha.
        if sha is not None and sha.strip("0"):
            return sha
    return None


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _as_object(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    return cast(dict[str, object], value)


def _as_optional_str(value: object) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None


def _as_optional_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return None
    return None
