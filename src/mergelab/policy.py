from __future__ import annotations

from dataclasses import dataclass
from fnmatch import fnmatchcase

from mergelab.models import Head, MergeRequestHead, SourceSettings


@dataclass(frozen=True)
class PolicyDecision:
    eligible: bool
    reason: str


_ELIGIBLE = PolicyDecision(eligible=True, reason="eligible")


def should_build(head: Head, settings: SourceSettings) -> bool:
    return evaluate(head, settings).eligible


def evaluate(head: Head, settings: SourceSettings) -> PolicyDecision:
    """Decide build eligibility for ``head``; a negative decision is a normal outcome."""
    if not matches_includes(head.name, settings.includes):
        return PolicyDecision(eligible=False, reason="not_included")
    if matches_excludes(head.name, settings.excludes):
        return PolicyDecision(eligible=False, reason="excluded")

    if head.kind == "branch":
        if not settings.build_branches:
            return PolicyDecision(eligible=False, reason="branches_disabled")
        if head.has_open_merge_request and not settings.build_branches_with_merge_requests:
            return PolicyDecision(eligible=False, reason="superseded_by_merge_request")
        return _ELIGIBLE
    if head.kind == "tag":
        if not settings.build_tags:
            return PolicyDecision(eligible=False, reason="tags_disabled")
        return _ELIGIBLE
    return _evaluate_merge_request(head, settings)


def _evaluate_merge_request(head: MergeRequestHead, settings: SourceSettings) -> PolicyDecision:
    strategy = settings.strategy_for(head)
    origin = "origin" if head.from_origin else "fork"
    if not strategy.enabled:
        return PolicyDecision(eligible=False, reason=f"{origin}_merge_requests_disabled")
    if head.state == "merged" and not strategy.build_merged:
        return PolicyDecision(eligible=False, reason="merged_variant_disabled")
    if head.state == "unmerged" and not strategy.build_unmerged:
        return PolicyDecision(eligible=False, reason="unmerged_variant_disabled")
    if head.work_in_progress and strategy.ignore_work_in_progress:
        return PolicyDecision(eligible=False, reason="work_in_progress")
    if not head.mergeable and strategy.build_only_mergeable:
        return PolicyDecision(eligible=False, reason="not_mergeable")
    return _ELIGIBLE


def matches_includes(name: str, includes: str) -> bool:
    patterns = split_patterns(includes)
    if not patterns:
        return True
    return any(fnmatchcase(name, pattern) for pattern in patterns)


def matches_excludes(name: str, excludes: str) -> bool:
    return any(fnmatchcase(name, pattern) for pattern in split_patterns(excludes))


def split_patterns(raw: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in raw.split(",") if part.strip())
