from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace

from prwatch.models import Issue, QueueState


@dataclass(frozen=True)
class PollState:
    """Everything the watcher remembers between two polls of one pull request.

    ``seen_ids`` only grows: an issue id that was announced once is never
    announced again, even if the platform reports it resolved and later lists it
    again while its eventual consistency settles.

    ``had_blocking_problem`` is set by any poll that saw a blocking issue or a
    blocking CI failure and is cleared when "ready to merge" fires, so the ready
    signal marks a recovery rather than a pull request that was always clean.

    ``last_queue_state`` is ``None`` until a poll has read the merge queue;
    queue transitions treat ``None`` as "not in the queue".
    """

    seen_ids: frozenset[str] = frozenset()
    had_blocking_problem: bool = False
    ready_notified: bool = False
    last_queue_state: QueueState | None = None
    poll_count: int = 0

    @property
    def is_first_poll(self) -> bool:
        return self.poll_count == 0


@dataclass(frozen=True)
class IssueDiff:
    active_issues: tuple[Issue, ...]
    new_issues: tuple[Issue, ...]

    @property
    def new_blocking_issues(self) -> tuple[Issue, ...]:
        return tuple(issue for issue in self.new_issues if issue.blocking)

    @property
    def new_non_blocking_issues(self) -> tuple[Issue, ...]:
        return tuple(issue for issue in self.new_issues if not issue.blocking)

    @property
    def has_active_blocking(self) -> bool:
        return any(issue.blocking for issue in self.active_issues)


def is_active(issue: Issue) -> bool:
    return not (issue.resolved or issue.outdated)


def diff_issues(current: Sequence[Issue], previous_seen: frozenset[str]) -> IssueDiff:
    active = tuple(issue for issue in current if is_active(issue))
    new = tuple(issue for issue in active if issue.issue_id not in previous_seen)
    return IssueDiff(active_issues=active, new_issues=new)


def remember_issues(previous_seen: frozenset[str], active: Iterable[Issue]) -> frozenset[str]:
    return previous_seen | {issue.issue_id for issue in active}


def advance_seen(state: PollState, diff: IssueDiff) -> PollState:
    return replace(state, seen_ids=remember_issues(state.seen_ids, diff.active_issues))
