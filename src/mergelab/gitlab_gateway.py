from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
import json
import logging
import threading
import time
from typing import cast
from urllib.parse import quote, urlencode

from mergelab.models import (
    CommitState,
    Project,
    ProjectHook,
    RemoteBranch,
    RemoteMergeRequest,
    RemoteTag,
)
from mergelab.observability import log_event
from mergelab.shell import CommandError, run


LOGGER = logging.getLogger("mergelab.gitlab_gateway")
_PAGE_SIZE = 100
_MAX_CACHED_RESPONSES = 256


class GitLabError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class GitLabUnavailableError(GitLabError):
    """Transient failure (5xx, transport, timeout); retried, then surfaced to the caller."""


class GitLabRateLimitError(GitLabError):
    """GitLab answered 429; the caller should back off until the next cycle."""


class GitLabRejectedError(GitLabError):
    """Non-retryable 4xx rejection."""


class GitLabAuthenticationError(GitLabRejectedError):
    pass


class GitLabNotFoundError(GitLabRejectedError):
    pass


@dataclass(frozen=True)
class GitLabGateway:
    host: str = "gitlab.com"
    timeout_seconds: float = 30.0
    max_retries: int = 3
    retry_backoff_seconds: float = 1.0
    # path -> (etag, payload), least recently used first.
    _cached_get_by_path: OrderedDict[str, tuple[str, object]] = field(
        default_factory=OrderedDict,
        init=False,
        repr=False,
        compare=False,
    )
    _cache_lock: threading.Lock = field(
        default_factory=threading.Lock,
        init=False,
        repr=False,
        compare=False,
    )

    def get_project(self, project: int | str) -> Project:
        payload = self._api_json("GET", f"projects/{_encode(project)}")
        payload_obj = _require_object(payload, what="project")
        snapshot = Project(
            project_id=_as_int(payload_obj.get("id"), field="id"),
            path_with_namespace=_as_string(payload_obj.get("path_with_namespace")),
            web_url=_as_string(payload_obj.get("web_url")),
            http_url_to_repo=_as_string(payload_obj.get("http_url_to_repo")),
            ssh_url_to_repo=_as_string(payload_obj.get("ssh_url_to_repo")),
            default_branch=_as_string(payload_obj.get("default_branch")),
        )
        log_event(LOGGER, "gitlab_read", endpoint="project", project_id=snapshot.project_id)
        return snapshot

    def list_branches(self, project_id: int) -> list[RemoteBranch]:
        items = self._api_list(f"projects/{project_id}/repository/branches", {}, what="branches")
        branches = [_parse_branch(item) for item in items]
        log_event(
            LOGGER, "gitlab_read", endpoint="branches", project_id=project_id, count=len(branches)
        )
        return branches

    def get_branch(self, project_id: int, name: str) -> RemoteBranch:
        payload = self._api_json(
            "GET", f"projects/{project_id}/repository/branches/{_encode(name)}"
        )
        branch = _parse_branch(_require_object(payload, what="branch"))
        log_event(LOGGER, "gitlab_read", endpoint="branch", project_id=project_id, branch=name)
        return branch

    def list_tags(self, project_id: int) -> list[RemoteTag]:
        items = self._api_list(f"projects/{project_id}/repository/tags", {}, what="tags")
        tags = [_parse_tag(item) for item in items]
        log_event(LOGGER, "gitlab_read", endpoint="tags", project_id=project_id, count=len(tags))
        return tags

    def get_tag(self, project_id: int, name: str) -> RemoteTag:
        payload = self._api_json("GET", f"projects/{project_id}/repository/tags/{_encode(name)}")
        tag = _parse_tag(_require_object(payload, what="tag"))
        log_event(LOGGER, "gitlab_read", endpoint="tag", project_id=project_id, tag=name)
        return tag

    def list_merge_requests(
        self,
        project_id: int,
        *,
        state: str = "opened",
        source_branch: str | None = None,
    ) -> list[RemoteMergeRequest]:
        query: dict[str, object] = {"state": state, "order_by": "created_at", "sort": "asc"}
        if source_branch is not None:
            query["source_branch"] = source_branch
        items = self._api_list(f"projects/{project_id}/merge_requests", query, what="merge requests")
        merge_requests = [_parse_merge_request(item) for item in items]
        log_event(
            LOGGER,
            "gitlab_read",
            endpoint="merge_requests",
            project_id=project_id,
            state=state,
            source_branch=source_branch,
            count=len(merge_requests),
        )
        return merge_requests

    def get_merge_request(self, project_id: int, iid: int) -> RemoteMergeRequest:
        payload = self._api_json("GET", f"projects/{project_id}/merge_requests/{iid}")
        merge_request = _parse_merge_request(_require_object(payload, what="merge request"))
        log_event(
            LOGGER, "gitlab_read", endpoint="merge_request", project_id=project_id, iid=iid
        )
        return merge_request

    def file_exists(self, project_id: int, path: str, ref: str) -> bool:
        query = urlencode({"ref": ref})
        try:
            # HEAD returns only the file metadata, so no file body is fetched or cached.
            self._api_json(
                "HEAD", f"projects/{project_id}/repository/files/{_encode(path)}?{query}"
            )
        except GitLabNotFoundError:
            return False
        return True

    def set_commit_status(
        self,
        project_id: int,
        sha: str,
        *,
        state: CommitState,
        context: str,
        description: str,
        target_url: str | None,
        ref: str | None = None,
    ) -> None:
        payload: dict[str, object] = {
            "state": state,
            "name": context,
            "description": description,
        }
        if target_url:
            payload["target_url"] = target_url
        if ref:
            payload["ref"] = ref
        try:
            self._api_json("POST", f"projects/{project_id}/statuses/{sha}", payload=payload)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "gitlab_commit_status_failed",
                project_id=project_id,
                sha=sha,
                state=state,
                context=context,
                error_type=type(exc).__name__,
            )
            raise
        log_event(
            LOGGER,
            "gitlab_commit_status_set",
            project_id=project_id,
            sha=sha,
            state=state,
            context=context,
        )

    def accept_merge_request(
        self,
        project_id: int,
        iid: int,
        *,
        sha: str | None = None,
        commit_message: str | None = None,
        remove_source_branch: bool = False,
    ) -> None:
        payload: dict[str, object] = {"should_remove_source_branch": remove_source_branch}
        if sha:
            payload["sha"] = sha
        if commit_message:
            payload["merge_commit_message"] = commit_message
        self._api_json("PUT", f"projects/{project_id}/merge_requests/{iid}/merge", payload=payload)
        log_event(LOGGER, "gitlab_merge_request_merged", project_id=project_id, iid=iid)

    def list_hooks(self, project_id: int) -> list[ProjectHook]:
        items = self._api_list(f"projects/{project_id}/hooks", {}, what="hooks")
        hooks = [
            ProjectHook(
                hook_id=_as_int(item.get("id"), field="id"),
                url=_as_string(item.get("url")),
                push_events=_as_bool_default(item.get("push_events")),
                tag_push_events=_as_bool_default(item.get("tag_push_events")),
                merge_requests_events=_as_bool_default(item.get("merge_requests_events")),
            )
            for item in items
        ]
        log_event(LOGGER, "gitlab_read", endpoint="hooks", project_id=project_id, count=len(hooks))
        return hooks

    def register_webhook(
        self,
        project_id: int,
        url: str,
        *,
        token: str | None,
        hook_id: int | None = None,
    ) -> None:
        payload: dict[str, object] = {
            "url": url,
            "push_events": True,
            "tag_push_events": True,
            "merge_requests_events": True,
            "enable_ssl_verification": url.startswith("https://"),
        }
        if token:
            payload["token"] = token
        if hook_id is None:
            self._api_json("POST", f"projects/{project_id}/hooks", payload=payload)
        else:
            self._api_json("PUT", f"projects/{project_id}/hooks/{hook_id}", payload=payload)
        log_event(
            LOGGER,
            "gitlab_hook_saved",
            project_id=project_id,
            url=url,
            hook_id=hook_id,
            created=hook_id is None,
        )

    def _api_list(
        self, base_path: str, query: dict[str, object], *, what: str
    ) -> list[dict[str, object]]:
        out: list[dict[str, object]] = []
        page = 1
        while True:
            query_items = dict(query)
            query_items["per_page"] = _PAGE_SIZE
            query_items["page"] = page
            payload = self._api_json("GET", f"{base_path}?{urlencode(query_items)}")
            if not isinstance(payload, list):
                raise RuntimeError(f"Unexpected GitLab response: expected list for {what}")
            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is not None:
                    out.append(item_obj)
            if len(payload) < _PAGE_SIZE:
                return out
            page += 1

    def _api_json(self, method: str, path: str, payload: dict[str, object] | None = None) -> object:
        attempt = 0
        while True:
            try:
                return self._api_json_once(method, path, payload)
            except GitLabUnavailableError as exc:
                if attempt >= self.max_retries:
                    raise
                delay = self.retry_backoff_seconds * (2**attempt)
                attempt += 1
                log_event(
                    LOGGER,
                    "gitlab_request_retry",
                    method=method.upper(),
                    path=path,
                    attempt=attempt,
                    delay_seconds=delay,
                    error=str(exc),
                )
                time.sleep(delay)

    def _api_json_once(
        self, method: str, path: str, payload: dict[str, object] | None
    ) -> object:
        method_upper = method.upper()
        cmd = ["glab", "api", "--hostname", self.host, "--method", method_upper, "--include"]
        cached = self._cached(path) if method_upper == "GET" else None
        if cached is not None:
            cmd.extend(["--header", f"If-None-Match: {cached[0]}"])
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--header", "Content-Type: application/json", "--input", "-"])
            stdin_payload = json.dumps(payload)
        cmd.append(path)

        try:
            raw = run(
                cmd,
                input_text=stdin_payload,
                check=False,
                timeout_seconds=self.timeout_seconds,
            )
        except CommandError as exc:
            raise GitLabUnavailableError(f"GitLab {method_upper} {path} failed: {exc}") from exc

        try:
            status_code, headers, body = _parse_http_response(raw)
        except RuntimeError as exc:
            log_event(
                LOGGER,
                "gitlab_request_failed",
                method=method_upper,
                path=path,
                error_type=type(exc).__name__,
                raw_preview=_preview_for_log(raw),
            )
            raise GitLabUnavailableError(f"GitLab {method_upper} {path} failed: {exc}") from exc

        if status_code == 304 and method_upper == "GET":
            if cached is None:
                raise GitLabUnavailableError(f"GitLab returned 304 for uncached path: {path}")
            return cached[1]

        if status_code < 200 or status_code >= 300:
            error = _error_for_status(status_code, method_upper, path, body)
            log_event(
                LOGGER,
                "gitlab_request_failed",
                method=method_upper,
                path=path,
                status_code=status_code,
                error_type=type(error).__name__,
                raw_preview=_preview_for_log(body),
            )
            raise error

        if not body.strip():
            return {}
        payload_obj = json.loads(body)
        if method_upper == "GET":
            etag = headers.get("etag")
            if etag:
                self._remember(path, etag, payload_obj)
        return payload_obj

    def _cached(self, path: str) -> tuple[str, object] | None:
        with self._cache_lock:
            cached = self._cached_get_by_path.get(path)
            if cached is not None:
                self._cached_get_by_path.move_to_end(path)
            return cached

    def _remember(self, path: str, etag: str, payload: object) -> None:
        with self._cache_lock:
            self._cached_get_by_path[path] = (etag, payload)
            self._cached_get_by_path.move_to_end(path)
            while len(self._cached_get_by_path) > _MAX_CACHED_RESPONSES:
                self._cached_get_by_path.popitem(last=False)


def _error_for_status(status_code: int, method: str, path: str, body: str) -> GitLabError:
    message = f"GitLab {method} {path} failed with status {status_code}: {body.strip() or '<empty>'}"
    if status_code in {401, 403}:
        return GitLabAuthenticationError(message, status_code=status_code)
    if status_code == 404:
        return GitLabNotFoundError(message, status_code=status_code)
    if status_code == 429:
        return GitLabRateLimitError(message, status_code=status_code)
    if 400 <= status_code < 500:
        return GitLabRejectedError(message, status_code=status_code)
    return GitLabUnavailableError(message, status_code=status_code)


def _parse_branch(item: dict[str, object]) -> RemoteBranch:
    commit = _as_object_dict(item.get("commit"))
    return RemoteBranch(
        name=_as_string(item.get("name")),
        commit_sha=_as_string(commit.get("id") if commit else None),
    )


def _parse_tag(item: dict[str, object]) -> RemoteTag:
    commit = _as_object_dict(item.get("commit"))
    return RemoteTag(
        name=_as_string(item.get("name")),
        commit_sha=_as_string(commit.get("id") if commit else None),
    )


def _parse_merge_request(item: dict[str, object]) -> RemoteMergeRequest:
    # Newer GitLab versions report "draft"; older ones only "work_in_progress".
    work_in_progress = _as_bool_default(item.get("draft")) or _as_bool_default(
        item.get("work_in_progress")
    )
    return RemoteMergeRequest(
        iid=_as_int(item.get("iid"), field="iid"),
        project_id=_as_int(item.get("project_id"), field="project_id"),
        source_project_id=_as_int(item.get("source_project_id"), field="source_project_id"),
        target_project_id=_as_int(item.get("target_project_id"), field="target_project_id"),
        source_branch=_as_string(item.get("source_branch")),
        target_branch=_as_string(item.get("target_branch")),
        sha=_as_string(item.get("sha")),
        state=_as_string(item.get("state")),
        work_in_progress=work_in_progress,
        merge_status=_as_string(item.get("merge_status")).strip().lower(),
        web_url=_as_string(item.get("web_url")),
    )


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    normalized = raw.replace("\r\n", "\n")
    lines = normalized.split("\n")

    status_line_index = -1
    for index, line in enumerate(lines):
        if line.startswith("HTTP/"):
            status_line_index = index

    if status_line_index < 0:
        raise RuntimeError("Unexpected GitLab response: missing HTTP status line")

    status_line = lines[status_line_index]
    status_parts = status_line.split(" ", 2)
    if len(status_parts) < 2:
        raise RuntimeError(f"Unexpected GitLab response status line: {status_line!r}")

    try:
        status_code = int(status_parts[1])
    except ValueError as exc:
        raise RuntimeError(f"Unexpected GitLab response status line: {status_line!r}") from exc

    headers: dict[str, str] = {}
    body_start = len(lines)
    for index in range(status_line_index + 1, len(lines)):
        line = lines[index]
        if line == "":
            body_start = index + 1
            break
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()

    body = "\n".join(lines[body_start:])
    return status_code, headers, body


def _encode(value: int | str) -> str:
    return quote(str(value), safe="")


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _require_object(value: object, *, what: str) -> dict[str, object]:
    value_obj = _as_object_dict(value)
    if value_obj is None:
        raise RuntimeError(f"Unexpected GitLab response: expected object for {what}")
    return value_obj


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise RuntimeError(f"Unexpected GitLab response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise RuntimeError(f"Unexpected GitLab response value for {field}: {value}") from exc
    raise RuntimeError(f"Unexpected GitLab response type for {field}")


def _as_bool_default(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    raise RuntimeError("Unexpected GitLab response type for bool field")
