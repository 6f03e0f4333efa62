from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
import logging
import threading
from typing import Protocol

from prwatch.classifier import BlockingClassifier
from prwatch.github_gateway import GitHubPollingError
from prwatch.merge_queue import detect_transition, queue_status_from_raw
from prwatch.models import (
    CiAggregate,
    FetchCategory,
    Issue,
    MergeQueueStatus,
    NewIssuesEvent,
    NotificationEvent,
    PollSnapshot,
    QueueTransitionEvent,
    RawCiStatus,
    RawIssueComment,
    RawReviewComment,
    RawReviewThread,
    ReadyToMergeEvent,
)
from prwatch.normalizer import (
    aggregate_ci,
    dedupe_issues,
    normalize_ci_failures,
    normalize_issue_comments,
    normalize_review_comments_fallback,
    normalize_review_threads,
)
from prwatch.notifications import evaluate_notifications
from prwatch.observability import log_event, log_warning_event
from prwatch.state import PollState, advance_seen, diff_issues


LOGGER = logging.getLogger("prwatch.watcher")


class PullRequestSource(Protocol):
    def fetch_review_threads(self) -> list[RawReviewThread]: ...

    def fetch_review_comments_fallback(self) -> list[RawReviewComment]: ...

    def fetch_issue_comments(self) -> list[RawIssueComment]: ...

    def fetch_ci_status(self) -> RawCiStatus: ...


PollResultCallback = Callable[[PollSnapshot], None]
NotifyCallback = Callable[[NotificationEvent], None]


class PullRequestWatcher:
    """Runs one poll step at a time for a single pull request.

    Each step fetches every category, normalizes and diffs the result against
    the retained ``PollState``, evaluates the notification rules and only then
    replaces the retained state. Callbacks run inside the step, so a callback
    that calls ``poll()`` again is coalesced instead of re-entering.
    """

    def __init__(
        self,
        source: PullRequestSource,
        *,
        classifier: BlockingClassifier | None = None,
        review_bots: Iterable[str] = (),
        on_poll_result: PollResultCallback | None = None,
        on_notify: NotifyCallback | None = None,
    ) -> None:
        self._source = source
        self._classifier = classifier or BlockingClassifier()
        self._review_bots = tuple(review_bots)
        self._on_poll_result = on_poll_result
        self._on_notify = on_notify
        self._poll_lock = threading.Lock()
        self._state = PollState()
        self._queue_status = MergeQueueStatus()
        self._active_by_id: dict[str, Issue] = {}
        self._last_snapshot: PollSnapshot | None = None

    @property
    def state(self) -> PollState:
        return self._state

    @property
    def last_snapshot(self) -> PollSnapshot | None:
        return self._last_snapshot

    def get_active_issue_by_id(self, issue_id: str) -> Issue | None:
        return self._active_by_id.get(issue_id.strip())

    def poll(self) -> PollSnapshot | None:
        if not self._poll_lock.acquire(blocking=False):
            log_event(LOGGER, "poll_coalesced", poll_count=self._state.poll_count)
            return None
        try:
            return self._poll_locked()
        finally:
            self._poll_lock.release()

    def _poll_locked(self) -> PollSnapshot:
        state = self._state
        degraded: list[FetchCategory] = []

        review_issues = self._fetch_review_issues(degraded)
        general_issues: list[Issue] = []
        try:
            general_issues = normalize_issue_comments(
                self._source.fetch_issue_comments(), extra_bots=self._review_bots
            )
        except GitHubPollingError as exc:
            _mark_degraded(degraded, "general_comments", exc)

        ci_raw: RawCiStatus | None = None
        try:
            ci_raw = self._source.fetch_ci_status()
        except GitHubPollingError as exc:
            _mark_degraded(degraded, "ci", exc)

        ci_issues: list[Issue] = []
        ci = CiAggregate()
        queue_status = self._queue_status
        queue_fresh = False
        if ci_raw is not None:
            ci_issues = normalize_ci_failures(ci_raw, self._classifier)
            ci = aggregate_ci(ci_raw, self._classifier)
            if ci_raw.merged or ci_raw.merge_queue_known:
                queue_status = queue_status_from_raw(ci_raw.merge_queue_entry, merged=ci_raw.merged)
                queue_fresh = True

        transition = None
        if queue_fresh:
            transition = detect_transition(state.last_queue_state, queue_status)
        issues = dedupe_issues([*review_issues, *general_issues, *ci_issues])
        diff = diff_issues(issues, state.seen_ids)
        events, next_state = evaluate_notifications(
            state,
            diff,
            ci,
            transition,
            is_first_poll=state.is_first_poll,
            degraded=bool(degraded),
        )
        next_state = replace(
            advance_seen(next_state, diff),
            last_queue_state=queue_status.state if queue_fresh else state.last_queue_state,
            poll_count=state.poll_count + 1,
        )

        snapshot = PollSnapshot(
            active_issues=diff.active_issues,
            new_issues=diff.new_issues,
            ci=ci,
            merge_queue=queue_status,
            is_first_poll=state.is_first_poll,
            degraded_categories=tuple(degraded),
            polled_at=datetime.now(timezone.utc).isoformat(),
        )
        self._state = next_state
        self._queue_status = queue_status
        self._active_by_id = {issue.issue_id: issue for issue in diff.active_issues}
        self._last_snapshot = snapshot

        log_event(
            LOGGER,
            "poll_completed",
            poll_count=next_state.poll_count,
            active_issue_count=len(snapshot.active_issues),
            new_issue_count=len(snapshot.new_issues),
            blocking_issue_count=len(snapshot.blocking_issues),
            ci_total=ci.total,
            ci_pending=ci.pending,
            ci_failed_blocking=ci.failed_blocking,
            queue_state=queue_status.state,
            degraded_categories=snapshot.degraded_categories,
        )
        if self._on_poll_result is not None:
            self._on_poll_result(snapshot)
        for event in events:
            _log_notification(event)
            if self._on_notify is not None:
                self._on_notify(event)
        return snapshot

    def _fetch_review_issues(self, degraded: list[FetchCategory]) -> list[Issue]:
        try:
            threads = self._source.fetch_review_threads()
        except GitHubPollingError as exc:
            log_warning_event(LOGGER, "review_threads_fallback", error=str(exc))
            try:
                comments = self._source.fetch_review_comments_fallback()
            except GitHubPollingError as fallback_exc:
                _mark_degraded(degraded, "review_comments", fallback_exc)
                return []
            return normalize_review_comments_fallback(comments, extra_bots=self._review_bots)
        return normalize_review_threads(threads, extra_bots=self._review_bots)


@dataclass(frozen=True)
class PollLoop:
    """Interval driver for a watcher outside the TUI.

    A refresh request wakes the sleeping loop early. Requests that arrive while
    a poll is running collapse into one follow-up poll.
    """

    watcher: PullRequestWatcher
    interval_seconds: float
    _stop_event: threading.Event = field(
        default_factory=threading.Event, init=False, repr=False, compare=False
    )
    _wake_event: threading.Event = field(
        default_factory=threading.Event, init=False, repr=False, compare=False
    )

    def run(self, *, once: bool = False) -> None:
        while not self._stop_event.is_set():
            self._wake_event.clear()
            self.watcher.poll()
            if once:
                return
            self._wake_event.wait(self.interval_seconds)

    def request_refresh(self) -> None:
        log_event(LOGGER, "refresh_requested")
        self._wake_event.set()

    def stop(self) -> None:
        self._stop_event.set()
        self._wake_event.set()


def _mark_degraded(
    degraded: list[FetchCategory], category: FetchCategory, exc: GitHubPollingError
) -> None:
    degraded.append(category)
    log_warning_event(
        LOGGER,
        "fetch_degraded",
        category=category,
        status_code=exc.status_code,
        error=str(exc),
    )


def _log_notification(event: NotificationEvent) -> None:
    if isinstance(event, NewIssuesEvent):
        log_event(
            LOGGER,
            "new_blocking_issues",
            count=len(event.issues),
            issue_ids=[issue.issue_id for issue in event.issues],
            non_blocking_count=len(event.non_blocking_issues),
        )
    elif isinstance(event, ReadyToMergeEvent):
        log_event(LOGGER, "ready_to_merge")
    elif isinstance(event, QueueTransitionEvent):
        log_event(
            LOGGER,
            "merge_queue_transition",
            kind=event.kind,
            detail=event.detail,
            position=event.position,
        )
