from __future__ import annotations

import json
from urllib.parse import parse_qs, urlparse

import pytest

from mergelab.gitlab_gateway import (
    GitLabAuthenticationError,
    GitLabGateway,
    GitLabNotFoundError,
    GitLabRateLimitError,
    GitLabRejectedError,
    GitLabUnavailableError,
    _as_bool_default,
    _as_int,
    _encode,
    _parse_http_response,
    _preview_for_log,
)
from mergelab.observability import configure_logging
from mergelab.shell import CommandError


@pytest.fixture(autouse=True)
def _disable_gateway_retry_sleep(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("mergelab.gitlab_gateway.time.sleep", lambda _: None)


def _http(status: str, body: object, *headers: str) -> str:
    text = body if isinstance(body, str) else json.dumps(body)
    return "\n".join((f"HTTP/2.0 {status}", *headers, "", text))


def _branch(name: str, sha: str) -> dict[str, object]:
    return {"name": name, "commit": {"id": sha}}


def _merge_request(iid: int, **overrides: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "iid": iid,
        "project_id": 7,
        "source_project_id": 7,
        "target_project_id": 7,
        "source_branch": f"feature-{iid}",
        "target_branch": "main",
        "sha": f"sha-{iid}",
        "state": "opened",
        "draft": False,
        "merge_status": "can_be_merged",
        "web_url": f"https://gitlab.example/g/p/-/merge_requests/{iid}",
    }
    payload.update(overrides)
    return payload


class FakeGlab:
    """Routes glab api invocations to canned HTTP responses keyed by method and path."""

    def __init__(self) -> None:
        self.calls: list[tuple[list[str], str | None]] = []
        self.responses: dict[tuple[str, str], list[str]] = {}

    def add(self, method: str, path: str, *responses: str) -> None:
        self.responses.setdefault((method, path), []).extend(responses)

    def __call__(
        self,
        cmd: list[str],
        *,
        cwd=None,
        input_text: str | None = None,
        check: bool = True,
        timeout_seconds: float | None = None,
    ) -> str:
        _ = cwd, timeout_seconds
        assert check is False
        self.calls.append((cmd, input_text))
        method = cmd[cmd.index("--method") + 1]
        path = cmd[-1]
        queue = self.responses.get((method, path))
        if not queue:
            raise AssertionError(f"unexpected call {method} {path}")
        return queue.pop(0) if len(queue) > 1 else queue[0]


@pytest.fixture
def glab(monkeypatch: pytest.MonkeyPatch) -> FakeGlab:
    fake = FakeGlab()
    monkeypatch.setattr("mergelab.gitlab_gateway.run", fake)
    return fake


def test_api_json_invokes_glab_api_with_hostname(glab: FakeGlab) -> None:
    glab.add("GET", "projects/7", _http("200 OK", {"ok": True}, 'ETag: "e1"'))
    glab.add("POST", "projects/7/hooks", _http("201 Created", {"id": 3}))
    gateway = GitLabGateway(host="gitlab.example", timeout_seconds=12.0)

    assert gateway._api_json("GET", "projects/7") == {"ok": True}
    assert gateway._api_json("POST", "projects/7/hooks", payload={"k": "v"}) == {"id": 3}

    get_cmd, get_input = glab.calls[0]
    assert get_cmd == [
        "glab",
        "api",
        "--hostname",
        "gitlab.example",
        "--method",
        "GET",
        "--include",
        "projects/7",
    ]
    assert get_input is None
    post_cmd, post_input = glab.calls[1]
    assert "--input" in post_cmd
    assert "Content-Type: application/json" in post_cmd
    assert post_input == '{"k": "v"}'


def test_api_json_get_uses_if_none_match_and_reuses_cached_payload(glab: FakeGlab) -> None:
    glab.add(
        "GET",
        "projects/7",
        _http("200 OK", {"value": 7}, 'ETag: "etag-2"'),
        _http("304 Not Modified", ""),
    )
    gateway = GitLabGateway()

    first = gateway._api_json("GET", "projects/7")
    second = gateway._api_json("GET", "projects/7")

    assert first == {"value": 7}
    assert second == {"value": 7}
    assert "--header" not in glab.calls[0][0]
    header_index = glab.calls[1][0].index("--header")
    assert glab.calls[1][0][header_index + 1] == 'If-None-Match: "etag-2"'


def test_api_json_304_without_cache_is_unavailable(glab: FakeGlab) -> None:
    glab.add("GET", "projects/7", _http("304 Not Modified", ""))
    gateway = GitLabGateway(max_retries=0)

    with pytest.raises(GitLabUnavailableError, match="uncached"):
        gateway._api_json("GET", "projects/7")


@pytest.mark.parametrize(
    ("status", "error_type"),
    [
        ("401 Unauthorized", GitLabAuthenticationError),
        ("403 Forbidden", GitLabAuthenticationError),
        ("404 Not Found", GitLabNotFoundError),
        ("429 Too Many Requests", GitLabRateLimitError),
        ("422 Unprocessable Entity", GitLabRejectedError),
    ],
)
def test_api_json_maps_client_errors_without_retry(
    glab: FakeGlab, status: str, error_type: type[Exception]
) -> None:
    glab.add("GET", "projects/7", _http(status, {"message": "nope"}))
    gateway = GitLabGateway(max_retries=3)

    with pytest.raises(error_type, match="failed with status"):
        gateway._api_json("GET", "projects/7")
    assert len(glab.calls) == 1


def test_api_json_retries_server_errors_then_succeeds(
    glab: FakeGlab, monkeypatch: pytest.MonkeyPatch
) -> None:
    delays: list[float] = []
    monkeypatch.setattr("mergelab.gitlab_gateway.time.sleep", delays.append)
    glab.add(
        "GET",
        "projects/7",
        _http("502 Bad Gateway", "upstream"),
        _http("503 Service Unavailable", "busy"),
        _http("200 OK", {"id": 7}),
    )
    gateway = GitLabGateway(max_retries=3, retry_backoff_seconds=0.5)

    assert gateway._api_json("GET", "projects/7") == {"id": 7}
    assert delays == [0.5, 1.0]


def test_api_json_gives_up_after_max_retries(glab: FakeGlab) -> None:
    glab.add("GET", "projects/7", _http("500 Internal Server Error", "boom"))
    gateway = GitLabGateway(max_retries=2)

    with pytest.raises(GitLabUnavailableError) as excinfo:
        gateway._api_json("GET", "projects/7")
    assert excinfo.value.status_code == 500
    assert len(glab.calls) == 3


def test_api_json_wraps_transport_failures(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(cmd: list[str], **kwargs: object) -> str:
        _ = cmd, kwargs
        raise CommandError("glab: connection refused")

    monkeypatch.setattr("mergelab.gitlab_gateway.run", fake_run)
    gateway = GitLabGateway(max_retries=0)

    with pytest.raises(GitLabUnavailableError, match="connection refused"):
        gateway._api_json("GET", "projects/7")


def test_api_json_logs_malformed_responses(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging(verbose=True)
    monkeypatch.setattr("mergelab.gitlab_gateway.run", lambda cmd, **kwargs: "not-http")
    gateway = GitLabGateway(max_retries=0)

    with pytest.raises(GitLabUnavailableError):
        gateway._api_json("GET", "projects/7")

    text = capsys.readouterr().err
    assert "event=gitlab_request_failed" in text
    assert "raw_preview=not-http" in text


def test_api_json_empty_body_is_empty_object(glab: FakeGlab) -> None:
    glab.add("PUT", "projects/7/merge_requests/3/merge", _http("200 OK", ""))
    gateway = GitLabGateway()

    assert gateway._api_json("PUT", "projects/7/merge_requests/3/merge", payload={}) == {}


def test_get_project_encodes_path_and_parses(glab: FakeGlab) -> None:
    glab.add(
        "GET",
        "projects/group%2Fsub%2Fapp",
        _http(
            "200 OK",
            {
                "id": 42,
                "path_with_namespace": "group/sub/app",
                "web_url": "https://gitlab.example/group/sub/app",
                "http_url_to_repo": "https://gitlab.example/group/sub/app.git",
                "ssh_url_to_repo": "git@gitlab.example:group/sub/app.git",
                "default_branch": "main",
            },
        ),
    )

    project = GitLabGateway().get_project("group/sub/app")

    assert project.project_id == 42
    assert project.default_branch == "main"
    assert project.commit_url("abc") == "https://gitlab.example/group/sub/app/commits/abc"


def test_list_branches_paginates(glab: FakeGlab, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("mergelab.gitlab_gateway._PAGE_SIZE", 2)
    glab.add(
        "GET",
        "projects/7/repository/branches?per_page=2&page=1",
        _http("200 OK", [_branch("a", "1"), _branch("b", "2")]),
    )
    glab.add(
        "GET",
        "projects/7/repository/branches?per_page=2&page=2",
        _http("200 OK", [_branch("c", "3"), "garbage"]),
    )
    glab.add("GET", "projects/7/repository/branches?per_page=2&page=3", _http("200 OK", []))

    branches = GitLabGateway().list_branches(7)

    assert [(branch.name, branch.commit_sha) for branch in branches] == [
        ("a", "1"),
        ("b", "2"),
        ("c", "3"),
    ]
    assert len(glab.calls) == 3


def test_list_rejects_non_list_payload(glab: FakeGlab) -> None:
    glab.add("GET", "projects/7/repository/tags?per_page=100&page=1", _http("200 OK", {}))

    with pytest.raises(RuntimeError, match="expected list for tags"):
        GitLabGateway().list_tags(7)


def test_get_branch_and_tag_encode_names(glab: FakeGlab) -> None:
    glab.add(
        "GET",
        "projects/7/repository/branches/feature%2Flogin",
        _http("200 OK", _branch("feature/login", "f1")),
    )
    glab.add(
        "GET",
        "projects/7/repository/tags/v1.0",
        _http("200 OK", {"name": "v1.0", "commit": {"id": "t1"}}),
    )
    gateway = GitLabGateway()

    assert gateway.get_branch(7, "feature/login").commit_sha == "f1"
    assert gateway.get_tag(7, "v1.0").commit_sha == "t1"


def test_list_merge_requests_filters_by_source_branch(glab: FakeGlab) -> None:
    path = (
        "projects/7/merge_requests?state=opened&order_by=created_at&sort=asc"
        "&source_branch=feature-1&per_page=100&page=1"
    )
    glab.add(
        "GET",
        path,
        _http(
            "200 OK",
            [
                _merge_request(1),
                _merge_request(2, draft=None, work_in_progress=True, merge_status="CANNOT_BE_MERGED"),
            ],
        ),
    )

    merge_requests = GitLabGateway().list_merge_requests(7, source_branch="feature-1")

    query = parse_qs(urlparse(glab.calls[0][0][-1]).query)
    assert query["source_branch"] == ["feature-1"]
    assert merge_requests[0].mergeable is True
    assert merge_requests[0].work_in_progress is False
    assert merge_requests[1].work_in_progress is True
    assert merge_requests[1].merge_status == "cannot_be_merged"
    assert merge_requests[1].mergeable is False


def test_get_merge_request_parses_fork_origin(glab: FakeGlab) -> None:
    glab.add(
        "GET",
        "projects/7/merge_requests/5",
        _http("200 OK", _merge_request(5, source_project_id=99)),
    )

    merge_request = GitLabGateway().get_merge_request(7, 5)

    assert merge_request.source_project_id == 99
    assert merge_request.target_project_id == 7


def test_file_exists_maps_not_found_to_false(glab: FakeGlab) -> None:
    glab.add(
        "HEAD",
        "projects/7/repository/files/ci%2Fbuild.yml?ref=main",
        _http("200 OK", "", 'ETag: "f1"', "X-Gitlab-File-Name: build.yml"),
    )
    glab.add(
        "HEAD",
        "projects/7/repository/files/Jenkinsfile?ref=feature%2Fx",
        _http("404 Not Found", ""),
    )
    gateway = GitLabGateway()

    assert gateway.file_exists(7, "ci/build.yml", "main") is True
    assert gateway.file_exists(7, "Jenkinsfile", "feature/x") is False


def test_file_exists_propagates_other_errors(glab: FakeGlab) -> None:
    glab.add(
        "HEAD",
        "projects/7/repository/files/Jenkinsfile?ref=main",
        _http("403 Forbidden", ""),
    )

    with pytest.raises(GitLabAuthenticationError):
        GitLabGateway().file_exists(7, "Jenkinsfile", "main")


def test_file_exists_checks_are_not_cached(glab: FakeGlab) -> None:
    gateway = GitLabGateway()
    for index in range(20):
        glab.add(
            "HEAD",
            f"projects/7/repository/files/Jenkinsfile?ref=sha-{index}",
            _http("200 OK", "", f'ETag: "e{index}"'),
        )

    assert all(gateway.file_exists(7, "Jenkinsfile", f"sha-{index}") for index in range(20))
    assert len(gateway._cached_get_by_path) == 0
    assert all("If-None-Match" not in " ".join(cmd) for cmd, _ in glab.calls)


def test_etag_cache_evicts_least_recently_used(
    glab: FakeGlab, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr("mergelab.gitlab_gateway._MAX_CACHED_RESPONSES", 2)
    gateway = GitLabGateway()
    for project_id in (1, 2, 3):
        glab.add(
            "GET",
            f"projects/{project_id}",
            _http("200 OK", {"id": project_id}, f'ETag: "p{project_id}"'),
            _http("304 Not Modified", ""),
        )

    gateway._api_json("GET", "projects/1")
    gateway._api_json("GET", "projects/2")
    assert gateway._api_json("GET", "projects/1") == {"id": 1}
    gateway._api_json("GET", "projects/3")

    assert list(gateway._cached_get_by_path) == ["projects/1", "projects/3"]


def test_set_commit_status_posts_named_context(glab: FakeGlab) -> None:
    glab.add("POST", "projects/7/statuses/abc", _http("201 Created", {"id": 1}))

    GitLabGateway().set_commit_status(
        7,
        "abc",
        state="running",
        context="mergelab/web/main",
        description="Build started",
        target_url="https://ci.example/1",
        ref="main",
    )

    payload = json.loads(glab.calls[0][1] or "{}")
    assert payload == {
        "state": "running",
        "name": "mergelab/web/main",
        "description": "Build started",
        "target_url": "https://ci.example/1",
        "ref": "main",
    }


def test_set_commit_status_logs_and_reraises(
    glab: FakeGlab, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging(verbose=True)
    glab.add("POST", "projects/7/statuses/abc", _http("400 Bad Request", {"message": "bad"}))

    with pytest.raises(GitLabRejectedError):
        GitLabGateway().set_commit_status(
            7, "abc", state="success", context="c", description="d", target_url=None
        )

    assert "event=gitlab_commit_status_failed" in capsys.readouterr().err
    payload = json.loads(glab.calls[0][1] or "{}")
    assert "target_url" not in payload
    assert "ref" not in payload


def test_accept_merge_request_sends_sha_guard(glab: FakeGlab) -> None:
    glab.add("PUT", "projects/7/merge_requests/3/merge", _http("200 OK", {"state": "merged"}))

    GitLabGateway().accept_merge_request(7, 3, sha="abc", remove_source_branch=True)

    payload = json.loads(glab.calls[0][1] or "{}")
    assert payload == {"should_remove_source_branch": True, "sha": "abc"}


def test_list_hooks_and_register_webhook(glab: FakeGlab) -> None:
    glab.add(
        "GET",
        "projects/7/hooks?per_page=100&page=1",
        _http(
            "200 OK",
            [
                {
                    "id": 11,
                    "url": "https://ci.example/hook",
                    "push_events": True,
                    "tag_push_events": False,
                    "merge_requests_events": True,
                }
            ],
        ),
    )
    glab.add("PUT", "projects/7/hooks/11", _http("200 OK", {"id": 11}))
    glab.add("POST", "projects/7/hooks", _http("201 Created", {"id": 12}))
    gateway = GitLabGateway()

    hooks = gateway.list_hooks(7)
    assert hooks[0].hook_id == 11
    assert hooks[0].subscribes_to_required_events is False

    gateway.register_webhook(7, "https://ci.example/hook", token="s3cret", hook_id=11)
    gateway.register_webhook(7, "http://internal/hook", token=None)

    update_payload = json.loads(glab.calls[1][1] or "{}")
    assert update_payload["token"] == "s3cret"
    assert update_payload["tag_push_events"] is True
    assert update_payload["enable_ssl_verification"] is True
    create_payload = json.loads(glab.calls[2][1] or "{}")
    assert "token" not in create_payload
    assert create_payload["enable_ssl_verification"] is False


def test_parse_http_response_uses_last_status_block() -> None:
    raw = "\r\n".join(
        (
            "HTTP/1.1 100 Continue",
            "",
            "HTTP/2.0 200 OK",
            'ETag: "abc"',
            "Malformed header line",
            "",
            '{"a": 1}',
        )
    )

    status, headers, body = _parse_http_response(raw)

    assert status == 200
    assert headers == {"etag": '"abc"'}
    assert body == '{"a": 1}'


def test_parse_http_response_rejects_bad_status_lines() -> None:
    with pytest.raises(RuntimeError, match="missing HTTP status line"):
        _parse_http_response("nothing here")
    with pytest.raises(RuntimeError, match="status line"):
        _parse_http_response("HTTP/2.0 abc\n\n")


def test_small_helpers() -> None:
    assert _encode("a/b c") == "a%2Fb%20c"
    assert _encode(7) == "7"
    assert _preview_for_log("") == "<empty>"
    assert _preview_for_log("x" * 5, limit=2) == "xx..."
    assert _as_int("12", field="iid") == 12
    with pytest.raises(RuntimeError):
        _as_int(True, field="iid")
    with pytest.raises(RuntimeError):
        _as_int("x", field="iid")
    assert _as_bool_default(None) is False
    assert _as_bool_default(None, True) is True
    with pytest.raises(RuntimeError):
        _as_bool_default("yes")
