from __future__ import annotations

import logging

from prwatch.models import (
    IN_QUEUE_STATES,
    MergeQueueStatus,
    QueueState,
    QueueTransitionEvent,
    RawMergeQueueEntry,
)
from prwatch.observability import log_warning_event


LOGGER = logging.getLogger("prwatch.merge_queue")

_GRAPHQL_QUEUE_STATES: dict[str, QueueState] = {
    "QUEUED": "queued",
    "AWAITING_CHECKS": "awaiting_checks",
    "MERGEABLE": "mergeable",
    "UNMERGEABLE": "unmergeable",
    "LOCKED": "locked",
}


def queue_status_from_raw(entry: RawMergeQueueEntry | None, *, merged: bool) -> MergeQueueStatus:
    if merged:
        return MergeQueueStatus(state="merged")
    if entry is None:
        return MergeQueueStatus(state="none")

    raw_state = entry.state.strip().upper()
    state = _GRAPHQL_QUEUE_STATES.get(raw_state)
    if state is None:
        # Unknown entries are treated as unable to merge until a known state shows up.
        log_warning_event(LOGGER, "merge_queue_state_unrecognized", raw_state=entry.state)
        state = "unmergeable"
    return MergeQueueStatus(
        state=state,
        position=entry.position,
        raw_state=raw_state,
        estimated_time_to_merge=entry.estimated_time_to_merge,
    )


def detect_transition(
    last_state: QueueState | None, status: MergeQueueStatus
) -> QueueTransitionEvent | None:
    current = status.state
    # A watcher with no queue history starts from "not in the queue".
    previous: QueueState = "none" if last_state is None else last_state
    if previous == current or previous == "merged":
        return None
    if current == "merged":
        return QueueTransitionEvent(kind="merged", detail="Your PR has been merged!")
    if previous in IN_QUEUE_STATES and current == "none":
        return QueueTransitionEvent(
            kind="removed", detail="Removed from merge queue; check the PR and re-queue"
        )
    if previous == "none" and current in IN_QUEUE_STATES:
        detail = "Added to merge queue"
        if status.position:
            detail += f" (position #{status.position})"
        return QueueTransitionEvent(kind="added", detail=detail, position=status.position)
    return None


def display_state(
    state: QueueState,
    position: int | None,
    *,
    raw_state: str | None = None,
    estimated_time_to_merge: int | None = None,
) -> str:
    ahead = position or 0
    if state == "merged":
        text = "Merged"
    elif state == "none":
        text = "Not in merge queue"
    elif state == "locked":
        text = "Queue is locked"
    elif state == "mergeable":
        text = "Ready to merge (at front of queue)"
    elif state == "awaiting_checks":
        text = f"Waiting ({_ahead(ahead)})" if ahead > 0 else "Running checks (at front of queue)"
    elif state == "queued":
        text = f"In queue ({_ahead(ahead)})" if ahead > 0 else "In queue (next up)"
    elif ahead > 0:
        text = f"Waiting ({_ahead(ahead)})"
    else:
        # The API reports both real conflicts and blocked-by-position as UNMERGEABLE.
        text = "Cannot merge, cause unknown (check for conflicts)"

    if raw_state is not None and raw_state not in _GRAPHQL_QUEUE_STATES:
        text = f"Unrecognized queue state {raw_state}: {text}"
    if state in IN_QUEUE_STATES and estimated_time_to_merge is not None:
        text += _eta_suffix(estimated_time_to_merge)
    return text


def display_status(status: MergeQueueStatus) -> str:
    return display_state(
        status.state,
        status.position,
        raw_state=status.raw_state,
        estimated_time_to_merge=status.estimated_time_to_merge,
    )


def _ahead(count: int) -> str:
    return f"{count} PR{'s' if count > 1 else ''} ahead"


def _eta_suffix(estimated_seconds: int) -> str:
    minutes = round(estimated_seconds / 60)
    if minutes <= 0:
        return ""
    if minutes < 60:
        return f" (~{minutes}m)"
    return f" (~{minutes // 60}h {minutes % 60}m)"
