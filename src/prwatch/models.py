from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Literal


IssueKind = Literal["review_comment", "general_comment", "ci_failure"]
BotKind = Literal["cursorbot", "codex", "other"]
QueueState = Literal[
    "queued",
    "awaiting_checks",
    "mergeable",
    "unmergeable",
    "locked",
    "merged",
    "none",
]
QueueTransitionKind = Literal["added", "removed", "merged"]
FetchCategory = Literal["review_comments", "general_comments", "ci"]

IN_QUEUE_STATES: frozenset[QueueState] = frozenset(
    {"queued", "awaiting_checks", "mergeable", "unmergeable", "locked"}
)

_HEADING_PATTERN = re.compile(r"^#+\s*(.+)$", re.MULTILINE)
_BOLD_LINE_PATTERN = re.compile(r"^\*\*(.+?)\*\*", re.MULTILINE)


@dataclass(frozen=True)
class PullRequestRef:
    owner: str
    repo: str
    number: int

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def html_url(self) -> str:
        return f"https://github.com/{self.owner}/{self.repo}/pull/{self.number}"

    def __str__(self) -> str:
        return f"{self.owner}/{self.repo}#{self.number}"


@dataclass(frozen=True)
class RawReviewComment:
    comment_id: int | None
    author_login: str
    body: str
    url: str
    created_at: str
    path: str | None = None
    line: int | None = None
    original_line: int | None = None
    position: int | None = None
    original_position: int | None = None


@dataclass(frozen=True)
class RawReviewThread:
    thread_id: str
    is_resolved: bool
    is_outdated: bool
    path: str | None
    line: int | None
    comments: tuple[RawReviewComment, ...]


@dataclass(frozen=True)
class RawIssueComment:
    comment_id: int | None
    author_login: str
    body: str
    url: str
    created_at: str


@dataclass(frozen=True)
class RawCheckRun:
    run_id: int | None
    name: str
    status: str
    conclusion: str | None
    html_url: str | None
    details_url: str | None = None
    app_name: str | None = None
    output_summary: str | None = None

    @property
    def resolved_url(self) -> str:
        return self.html_url or self.details_url or ""


@dataclass(frozen=True)
class RawCommitStatus:
    status_id: int | None
    context: str
    state: str
    description: str | None
    target_url: str | None


@dataclass(frozen=True)
class RawMergeQueueEntry:
    state: str
    position: int | None
    estimated_time_to_merge: int | None = None
    enqueued_at: str | None = None


@dataclass(frozen=True)
class RawCiStatus:
    check_runs: tuple[RawCheckRun, ...] = ()
    commit_statuses: tuple[RawCommitStatus, ...] = ()
    merge_queue_entry: RawMergeQueueEntry | None = None
    merged: bool = False
    merge_queue_known: bool = True


@dataclass(frozen=True)
class IssueLocation:
    path: str
    line: int | None

    def __str__(self) -> str:
        if self.line is None:
            return self.path
        return f"{self.path}:{self.line}"


@dataclass(frozen=True)
class Issue:
    issue_id: str
    kind: IssueKind
    body: str
    url: str
    blocking: bool
    bot_kind: BotKind | None = None
    location: IssueLocation | None = None
    created_at: str = ""
    resolved: bool = False
    outdated: bool = False
    name: str = ""
    source: str = ""
    conclusion: str | None = None
    description: str | None = None
    author_login: str = ""
    severity: str | None = None

    @property
    def is_comment(self) -> bool:
        return self.kind != "ci_failure"

    @property
    def title(self) -> str:
        if self.kind == "ci_failure":
            return self.name or self.source or "CI"
        return issue_title(self.body)


@dataclass(frozen=True)
class CiAggregate:
    total: int = 0
    pending: int = 0
    passed: int = 0
    failed_blocking: int = 0
    failed_non_blocking: int = 0
    unknown: int = 0

    @property
    def all_green(self) -> bool:
        return self.total > 0 and self.pending == 0 and self.failed_blocking == 0


@dataclass(frozen=True)
class MergeQueueStatus:
    state: QueueState = "none"
    position: int | None = None
    raw_state: str | None = None
    estimated_time_to_merge: int | None = None

    @property
    def merged(self) -> bool:
        return self.state == "merged"

    @property
    def in_queue(self) -> bool:
        return self.state in IN_QUEUE_STATES

    @property
    def recognized(self) -> bool:
        return self.raw_state is None or self.raw_state.lower() == self.state


@dataclass(frozen=True)
class NewIssuesEvent:
    issues: tuple[Issue, ...]
    non_blocking_issues: tuple[Issue, ...] = ()


@dataclass(frozen=True)
class ReadyToMergeEvent:
    pass


@dataclass(frozen=True)
class QueueTransitionEvent:
    kind: QueueTransitionKind
    detail: str
    position: int | None = None


NotificationEvent = NewIssuesEvent | ReadyToMergeEvent | QueueTransitionEvent


@dataclass(frozen=True)
class PollSnapshot:
    active_issues: tuple[Issue, ...]
    new_issues: tuple[Issue, ...]
    ci: CiAggregate
    merge_queue: MergeQueueStatus
    is_first_poll: bool
    degraded_categories: tuple[FetchCategory, ...] = ()
    polled_at: str = ""

    @property
    def blocking_issues(self) -> tuple[Issue, ...]:
        return tuple(issue for issue in self.active_issues if issue.blocking)

    @property
    def degraded(self) -> bool:
        return bool(self.degraded_categories)


def issue_title(body: str, *, limit: int = 80) -> str:
    match = _HEADING_PATTERN.search(body) or _BOLD_LINE_PATTERN.search(body)
    if match is not None:
        return match.group(1).strip()[:limit]
    first_line = body.strip().split("\n", 1)[0].strip()
    return first_line[:limit] or "Issue"
