from __future__ import annotations

import pytest

from mergelab.events import EventCorrelator, WebhookPayloadError, parse_webhook_event
from mergelab.models import HeadDiscoveryRequest, SourceSettings, WebhookEvent
from mergelab.observability import configure_logging


def _push(ref: str, *, project_id: int = 7, object_kind: str = "push") -> dict[str, object]:
    return {
        "object_kind": object_kind,
        "ref": ref,
        "project_id": project_id,
        "before": "0" * 40,
        "after": "a" * 40,
    }


def _merge_request_hook(
    iid: int = 3, *, source_project_id: int = 7, target_project_id: int = 7
) -> dict[str, object]:
    return {
        "object_kind": "merge_request",
        "project": {"id": target_project_id},
        "object_attributes": {
            "iid": iid,
            "source_project_id": source_project_id,
            "target_project_id": target_project_id,
            "source_branch": "feature",
            "target_branch": "main",
            "updated_at": "2026-10-01 10:00:00 UTC",
        },
    }


def test_parse_push_strips_branch_prefix() -> None:
    event = parse_webhook_event(_push("refs/heads/feature/login"), received_at="t0")

    assert event == WebhookEvent(
        project_id=7,
        kind="push",
        ref="feature/login",
        merge_request_iid=None,
        timestamp="t0",
        commit_sha="a" * 40,
    )


def test_parse_push_prefers_checkout_sha_and_ignores_deletions() -> None:
    payload = {**_push("refs/heads/main"), "checkout_sha": "c" * 40}
    deleted = {**_push("refs/heads/main"), "after": "0" * 40, "checkout_sha": None}

    assert parse_webhook_event(payload).commit_sha == "c" * 40
    assert parse_webhook_event(deleted).commit_sha is None
    assert parse_webhook_event(_push("refs/tags/v1", object_kind="tag_push")).commit_sha is None


def test_parse_tag_push_strips_tag_prefix() -> None:
    event = parse_webhook_event(_push("refs/tags/v1.2", object_kind="tag_push"))

    assert event.kind == "tag_push"
    assert event.ref == "v1.2"
    assert event.timestamp.endswith("Z")


def test_parse_push_with_unexpected_ref_is_unsupported() -> None:
    event = parse_webhook_event(_push("refs/tags/v1.2"))

    assert event.kind == "unsupported"


def test_parse_merge_request_uses_object_attributes() -> None:
    event = parse_webhook_event(_merge_request_hook(source_project_id=99))

    assert event.kind == "merge_request"
    assert event.project_id == 7
    assert event.merge_request_iid == 3
    assert event.source_project_id == 99
    assert event.source_branch == "feature"
    assert event.timestamp == "2026-10-01 10:00:00 UTC"


def test_parse_falls_back_to_event_header() -> None:
    payload = _push("refs/heads/main")
    del payload["object_kind"]

    assert parse_webhook_event(payload, event_header="Push Hook").kind == "push"
    assert parse_webhook_event(payload, event_header="Pipeline Hook").kind == "unsupported"
    assert parse_webhook_event(payload).kind == "unsupported"


def test_parse_reads_nested_project_id() -> None:
    payload = _push("refs/heads/main")
    del payload["project_id"]
    payload["project"] = {"id": "12"}

    assert parse_webhook_event(payload).project_id == 12


@pytest.mark.parametrize(
    "payload",
    [
        [],
        {"object_kind": "push", "ref": "refs/heads/main"},
        {"object_kind": "merge_request", "project": {"id": 1}},
    ],
)
def test_parse_rejects_unusable_payloads(payload: object) -> None:
    with pytest.raises(WebhookPayloadError):
        parse_webhook_event(payload)


def test_correlate_push_and_tag_push() -> None:
    correlator = EventCorrelator(7, SourceSettings(build_tags=True))

    assert correlator.correlate(parse_webhook_event(_push("refs/heads/main"))) == [
        HeadDiscoveryRequest(kind="branch", name="main", commit_sha="a" * 40)
    ]
    assert correlator.correlate(
        parse_webhook_event(_push("refs/tags/v1", object_kind="tag_push"))
    ) == [HeadDiscoveryRequest(kind="tag", name="v1")]


def test_correlate_merge_request_also_rescans_origin_source_branch() -> None:
    correlator = EventCorrelator(7, SourceSettings())

    requests = correlator.correlate(parse_webhook_event(_merge_request_hook()))

    assert requests == [
        HeadDiscoveryRequest(kind="merge_request", merge_request_iid=3),
        HeadDiscoveryRequest(kind="branch", name="feature"),
    ]


def test_correlate_fork_merge_request_skips_source_branch() -> None:
    correlator = EventCorrelator(7, SourceSettings())

    requests = correlator.correlate(parse_webhook_event(_merge_request_hook(source_project_id=99)))

    assert requests == [HeadDiscoveryRequest(kind="merge_request", merge_request_iid=3)]


def test_correlate_merge_request_without_branch_builds() -> None:
    correlator = EventCorrelator(7, SourceSettings(build_branches=False))

    requests = correlator.correlate(parse_webhook_event(_merge_request_hook()))

    assert requests == [HeadDiscoveryRequest(kind="merge_request", merge_request_iid=3)]


def test_correlate_miss_is_logged(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(verbose=True)
    correlator = EventCorrelator(7, SourceSettings())

    assert correlator.correlate(parse_webhook_event(_push("refs/heads/main", project_id=8))) == []
    assert correlator.correlate(parse_webhook_event(_push("refs/heads/main"), event_header=None)) != []
    unsupported = parse_webhook_event({"object_kind": "note", "project_id": 7})
    assert correlator.correlate(unsupported) == []

    stderr = capsys.readouterr().err
    assert stderr.count("event=webhook_correlation_miss") == 2
