from __future__ import annotations

from dataclasses import replace

from prwatch.models import (
    CiAggregate,
    NewIssuesEvent,
    NotificationEvent,
    QueueTransitionEvent,
    ReadyToMergeEvent,
)
from prwatch.state import IssueDiff, PollState


def evaluate_notifications(
    state: PollState,
    diff: IssueDiff,
    ci: CiAggregate,
    transition: QueueTransitionEvent | None,
    *,
    is_first_poll: bool,
    degraded: bool = False,
) -> tuple[tuple[NotificationEvent, ...], PollState]:
    """Apply the three edge-triggered rules for one poll.

    Rules run in a fixed order: new blocking issues, ready to merge, merge queue
    transition. Each fires at most once per state change. Returns the events
    and the notification flags to carry into the next poll; ``seen_ids`` and
    ``last_queue_state`` are left for the caller to advance.
    """
    events: list[NotificationEvent] = []
    ready_notified = state.ready_notified
    had_blocking_problem = state.had_blocking_problem

    new_blocking = diff.new_blocking_issues
    if new_blocking and not is_first_poll:
        events.append(
            NewIssuesEvent(issues=new_blocking, non_blocking_issues=diff.new_non_blocking_issues)
        )
        ready_notified = False

    if diff.has_active_blocking or ci.failed_blocking > 0:
        had_blocking_problem = True
    elif (
        ci.all_green
        and not ready_notified
        and state.had_blocking_problem
        and not degraded
    ):
        events.append(ReadyToMergeEvent())
        ready_notified = True
        had_blocking_problem = False

    if transition is not None:
        events.append(transition)

    return tuple(events), replace(
        state, ready_notified=ready_notified, had_blocking_problem=had_blocking_problem
    )
