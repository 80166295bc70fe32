from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
import sqlite3

import pytest

from mergelab.models import BranchHead, HeadMetadataRecord, MergeRequestHead, Revision, TagHead
from mergelab.state import StatePersistenceError, StateStore, _head_from_json


def _record(commit_hash: str, *, head_name: str = "main") -> HeadMetadataRecord:
    return HeadMetadataRecord(
        head_name=head_name,
        project_id=7,
        branch_name=head_name,
        commit_hash=commit_hash,
        web_url=f"https://gitlab.example/g/p/commits/{commit_hash}",
    )


def _merge_request_head(state: str = "merged") -> MergeRequestHead:
    return MergeRequestHead(
        iid=4,
        project_id=7,
        source_project_id=99,
        source_branch="feature",
        target_branch="main",
        state=state,  # type: ignore[arg-type]
        work_in_progress=True,
        mergeable=False,
    )


def test_state_store_creates_parent_dir(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "nested" / "state.db")

    assert store.db_path.exists()
    assert store.get_job_metadata("web/main") is None
    assert store.list_job_metadata() == ()


def test_job_metadata_first_writer_wins(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")

    first = store.resolve_or_create_job_metadata("web/main", _record("aaa"))
    second = store.resolve_or_create_job_metadata("web/main", _record("bbb"))

    assert first.commit_hash == "aaa"
    assert second.commit_hash == "aaa"
    assert store.get_job_metadata("web/main") == _record("aaa")
    assert store.list_job_metadata() == (("web/main", _record("aaa")),)


def test_save_job_metadata_replaces_the_record(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")

    store.save_job_metadata("web/main", _record("aaa"))
    store.save_job_metadata("web/main", _record("bbb"))

    assert store.get_job_metadata("web/main") == _record("bbb")
    assert store.resolve_or_create_job_metadata("web/main", _record("ccc")) == _record("bbb")


def test_concurrent_resolvers_observe_a_single_record(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(
            pool.map(
                lambda sha: store.resolve_or_create_job_metadata("web/main", _record(sha)),
                [f"sha-{i}" for i in range(8)],
            )
        )

    assert len({result.commit_hash for result in results}) == 1


def test_build_metadata_is_pinned_per_build(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")

    store.attach_build_metadata("web/main", 1, _record("aaa"))
    again = store.attach_build_metadata("web/main", 1, _record("bbb"))
    store.attach_build_metadata("web/main", 2, _record("ccc"))

    assert again.commit_hash == "aaa"
    assert store.get_build_metadata("web/main", 1) == _record("aaa")
    assert store.get_build_metadata("web/main", 2) == _record("ccc")
    assert store.get_build_metadata("web/main", 3) is None


def test_discovery_pass_lifecycle(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")

    store.record_pass_started("web", mode="full", started_at="t0")
    running = store.list_discovery_passes()
    store.record_pass_finished(
        "web", status="failed", error="boom", emitted_count=2, finished_at="t1"
    )
    store.record_pass_started("web", mode="full", started_at="t2")
    restarted = store.list_discovery_passes()

    assert running[0].status == "running"
    assert running[0].finished_at is None
    assert restarted[0].status == "running"
    assert restarted[0].started_at == "t2"
    assert restarted[0].finished_at is None

    store.record_pass_finished("web", status="ok", error=None, emitted_count=3, finished_at="t3")
    finished = store.list_discovery_passes()[0]
    assert finished.status == "ok"
    assert finished.error is None
    assert finished.emitted_count == 3
    assert finished.finished_at == "t3"


def test_replace_discovered_heads_swaps_the_source_set(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")
    main = BranchHead(name="main", project_id=7)
    tag = TagHead(name="v1", project_id=7)
    other = BranchHead(name="dev", project_id=8)

    store.replace_discovered_heads(
        "web",
        (
            ("web/main", Revision(head=main, hash="m1")),
            ("web/v1", Revision(head=tag, hash="t1")),
        ),
    )
    store.replace_discovered_heads("api", (("api/dev", Revision(head=other, hash="d1")),))
    store.replace_discovered_heads("web", (("web/main", Revision(head=main, hash="m2")),))

    web = store.list_discovered_heads("web")
    assert [record.job_id for record in web] == ["web/main"]
    assert web[0].revision.hash == "m2"
    assert store.get_discovered_head("web/v1") is None
    assert [record.job_id for record in store.list_discovered_heads()] == ["api/dev", "web/main"]


def test_upsert_discovered_heads_round_trips_merge_request_heads(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")
    head = _merge_request_head()

    store.upsert_discovered_heads(
        "web", (("web/MR-4-merged", Revision(head=head, hash="x1", target_hash="m1")),)
    )
    store.upsert_discovered_heads(
        "web", (("web/MR-4-merged", Revision(head=head, hash="x2", target_hash="m1")),)
    )

    record = store.get_discovered_head("web/MR-4-merged")
    assert record is not None
    assert record.head == head
    assert record.revision == Revision(head=head, hash="x2", target_hash="m1")
    assert record.observed_at


def test_head_from_json_rejects_bad_payloads() -> None:
    with pytest.raises(StatePersistenceError, match="not a JSON object"):
        _head_from_json("[]")
    with pytest.raises(StatePersistenceError, match="invalid state"):
        _head_from_json('{"kind": "merge_request", "state": "closed"}')
    with pytest.raises(StatePersistenceError):
        _head_from_json('{"kind": "pipeline"}')


def test_sqlite_errors_become_persistence_errors(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    store = StateStore(tmp_path / "state.db")

    def broken_connect(*args: object, **kwargs: object) -> sqlite3.Connection:
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr("mergelab.state.sqlite3.connect", broken_connect)

    with pytest.raises(StatePersistenceError, match="disk I/O error"):
        store.get_job_metadata("web/main")


def test_failed_write_leaves_no_partial_record(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")
    conn = sqlite3.connect(store.db_path)
    try:
        conn.execute(
            """
            CREATE TRIGGER reject_insert BEFORE INSERT ON job_head_metadata
            BEGIN
                SELECT RAISE(ABORT, 'rejected');
            END
            """
        )
        conn.commit()
    finally:
        conn.close()

    with pytest.raises(StatePersistenceError, match="rejected"):
        store.resolve_or_create_job_metadata("web/main", _record("aaa"))
    assert store.get_job_metadata("web/main") is None
