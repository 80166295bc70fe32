from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


HeadKind = Literal["branch", "tag", "merge_request"]
MergeRequestBuildState = Literal["merged", "unmerged"]
CommitState = Literal["pending", "running", "success", "failed", "canceled"]
BuildResult = Literal["success", "unstable", "failure", "aborted", "not_built"]
WebhookEventKind = Literal["push", "tag_push", "merge_request", "unsupported"]


@dataclass(frozen=True)
class BranchHead:
    name: str
    project_id: int
    has_open_merge_request: bool = False
    kind: Literal["branch"] = "branch"

    @property
    def identity(self) -> tuple[HeadKind, str]:
        return (self.kind, self.name)


@dataclass(frozen=True)
class TagHead:
    name: str
    project_id: int
    kind: Literal["tag"] = "tag"

    @property
    def identity(self) -> tuple[HeadKind, str]:
        return (self.kind, self.name)


@dataclass(frozen=True)
class MergeRequestHead:
    """One build variant of a merge request.

    ``state`` selects what gets built: ``unmerged`` is the merge request's own head commit,
    ``merged`` is that commit merged onto the target branch. ``project_id`` is the target
    project, which is where the merge request lives.
    """

    iid: int
    project_id: int
    source_project_id: int
    source_branch: str
    target_branch: str
    state: MergeRequestBuildState
    work_in_progress: bool
    mergeable: bool
    kind: Literal["merge_request"] = "merge_request"

    @property
    def name(self) -> str:
        if self.state == "merged":
            return f"MR-{self.iid}-merged"
        return f"MR-{self.iid}"

    @property
    def identity(self) -> tuple[HeadKind, str]:
        return (self.kind, f"{self.iid}:{self.state}")

    @property
    def from_origin(self) -> bool:
        return self.source_project_id == self.project_id

    @property
    def source(self) -> BranchHead:
        return BranchHead(name=self.source_branch, project_id=self.source_project_id)


Head = BranchHead | TagHead | MergeRequestHead


@dataclass(frozen=True)
class Revision:
    head: Head
    hash: str
    target_hash: str | None = None


@dataclass(frozen=True)
class BuildStrategy:
    enabled: bool = True
    build_merged: bool = False
    build_unmerged: bool = True
    ignore_work_in_progress: bool = True
    build_only_mergeable: bool = False
    accept_merge_requests: bool = False
    remove_source_branch: bool = False


@dataclass(frozen=True)
class SourceSettings:
    includes: str = "*"
    excludes: str = ""
    build_branches: bool = True
    build_branches_with_merge_requests: bool = False
    build_tags: bool = False
    origin_strategy: BuildStrategy = BuildStrategy()
    fork_strategy: BuildStrategy = BuildStrategy(enabled=False)
    register_webhooks: bool = True
    update_build_description: bool = True
    publish_unstable_as_success: bool = False
    required_files: tuple[str, ...] = ()
    parallel_listing: bool = True

    @property
    def build_merge_requests(self) -> bool:
        return self.origin_strategy.enabled or self.fork_strategy.enabled

    def strategy_for(self, head: MergeRequestHead) -> BuildStrategy:
        return self.origin_strategy if head.from_origin else self.fork_strategy


@dataclass(frozen=True)
class Project:
    project_id: int
    path_with_namespace: str
    web_url: str
    http_url_to_repo: str
    ssh_url_to_repo: str
    default_branch: str

    def commit_url(self, sha: str) -> str:
        return f"{self.web_url.rstrip('/')}/commits/{sha}"


@dataclass(frozen=True)
class RemoteBranch:
    name: str
    commit_sha: str


@dataclass(frozen=True)
class RemoteTag:
    name: str
    commit_sha: str


@dataclass(frozen=True)
class RemoteMergeRequest:
    iid: int
    project_id: int
    source_project_id: int
    target_project_id: int
    source_branch: str
    target_branch: str
    sha: str
    state: str
    work_in_progress: bool
    merge_status: str
    web_url: str

    @property
    def mergeable(self) -> bool:
        return self.merge_status == "can_be_merged"


@dataclass(frozen=True)
class ProjectHook:
    hook_id: int
    url: str
    push_events: bool
    tag_push_events: bool
    merge_requests_events: bool

    @property
    def subscribes_to_required_events(self) -> bool:
        return self.push_events and self.tag_push_events and self.merge_requests_events


@dataclass(frozen=True)
class HeadMetadataRecord:
    head_name: str
    project_id: int
    branch_name: str
    commit_hash: str
    web_url: str


@dataclass(frozen=True)
class WebhookEvent:
    project_id: int
    kind: WebhookEventKind
    ref: str | None
    merge_request_iid: int | None
    timestamp: str
    source_project_id: int | None = None
    source_branch: str | None = None
    commit_sha: str | None = None


@dataclass(frozen=True)
class HeadDiscoveryRequest:
    """A single head an incremental pass should re-resolve.

    ``name`` is the branch or tag name for ``branch``/``tag`` requests; ``merge_request_iid`` is
    set for ``merge_request`` requests. ``commit_sha`` is the tip a push reported, when known.
    """

    kind: HeadKind
    name: str | None = None
    merge_request_iid: int | None = None
    commit_sha: str | None = None
