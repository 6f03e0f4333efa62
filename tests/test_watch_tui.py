from __future__ import annotations

import asyncio

import pytest
from textual.widgets import DataTable

from prwatch import watch_tui as tui
from prwatch.github_gateway import PullRequestNotFoundError
from prwatch.models import (
    CiAggregate,
    Issue,
    MergeQueueStatus,
    NewIssuesEvent,
    PollSnapshot,
    PullRequestRef,
    QueueTransitionEvent,
    RawCheckRun,
    RawCiStatus,
    RawIssueComment,
    RawReviewComment,
    RawReviewThread,
)


PR = PullRequestRef(owner="o", repo="r", number=3)


class StaticSource:
    def __init__(self, *, threads: list[RawReviewThread] | None = None) -> None:
        self._threads = threads or []
        self.polls = 0

    def fetch_review_threads(self) -> list[RawReviewThread]:
        self.polls += 1
        return self._threads

    def fetch_review_comments_fallback(self) -> list[RawReviewComment]:
        return []

    def fetch_issue_comments(self) -> list[RawIssueComment]:
        return []

    def fetch_ci_status(self) -> RawCiStatus:
        return RawCiStatus(
            check_runs=(
                RawCheckRun(
                    run_id=1,
                    name="build",
                    status="completed",
                    conclusion="success",
                    html_url="https://github.com/o/r/actions/runs/1",
                ),
            )
        )


def _thread(comment_id: int) -> RawReviewThread:
    return RawReviewThread(
        thread_id=f"PRRT_{comment_id}",
        is_resolved=False,
        is_outdated=False,
        path="src/app.py",
        line=12,
        comments=(
            RawReviewComment(
                comment_id=comment_id,
                author_login="cursor[bot]",
                body=f"### Bug {comment_id}\n**High Severity**\nDetails here",
                url=f"https://github.com/o/r/pull/3#discussion_r{comment_id}",
                created_at="2026-01-01T00:00:00Z",
            ),
        ),
    )


def _issue(issue_id: str) -> Issue:
    return Issue(
        issue_id=issue_id,
        kind="review_comment",
        body="### Stale cache\nbody",
        url="u",
        blocking=True,
        bot_kind="cursorbot",
    )


def _app(source: StaticSource) -> tui.WatchApp:
    return tui.WatchApp(pr=PR, source=source, poll_interval_seconds=3600)


def test_watch_app_renders_first_poll(monkeypatch: pytest.MonkeyPatch) -> None:
    copied: list[str] = []
    monkeypatch.setattr(tui, "copy_to_clipboard", lambda text: copied.append(text) or True)
    source = StaticSource(threads=[_thread(7)])
    app = _app(source)

    async def run_app() -> None:
        async with app.run_test() as pilot:
            await app.workers.wait_for_complete()
            await pilot.pause()
            table = app.query_one("#issues-table", DataTable)
            assert table.row_count == 1
            assert app.status_text.startswith("1 blocking issue(s) to fix")
            assert "issues=1 blocking=1" in app.summary_text
            assert app.watcher.state.poll_count == 1

            app.action_copy_prompt()
            app.action_copy_url()

    asyncio.run(run_app())

    assert source.polls == 1
    assert copied[0].startswith("Fix these PR issues:")
    assert "- [High] Bug 7" in copied[0]
    assert copied[1] == "https://github.com/o/r/pull/3"
    assert app.fatal_error is None


def test_watch_app_shows_issue_detail_modal(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(tui, "copy_to_clipboard", lambda text: True)
    app = _app(StaticSource(threads=[_thread(7)]))

    async def run_app() -> None:
        async with app.run_test() as pilot:
            await app.workers.wait_for_complete()
            await pilot.pause()
            app.action_show_detail()
            await pilot.pause()
            assert isinstance(app.screen, tui._IssueDetailModal)
            await pilot.press("escape")
            await pilot.pause()
            assert not isinstance(app.screen, tui._IssueDetailModal)

    asyncio.run(run_app())


def test_watch_app_copy_prompt_without_issues(monkeypatch: pytest.MonkeyPatch) -> None:
    copied: list[str] = []
    monkeypatch.setattr(tui, "copy_to_clipboard", lambda text: copied.append(text) or True)
    app = _app(StaticSource())

    async def run_app() -> None:
        async with app.run_test() as pilot:
            await app.workers.wait_for_complete()
            await pilot.pause()
            assert app.status_text.startswith("READY TO MERGE")
            app.action_copy_prompt()
            app.action_show_detail()
            assert not isinstance(app.screen, tui._IssueDetailModal)

    asyncio.run(run_app())

    assert copied == []


def test_watch_app_handles_events_and_snapshots(monkeypatch: pytest.MonkeyPatch) -> None:
    copied: list[str] = []
    monkeypatch.setattr(tui, "copy_to_clipboard", lambda text: copied.append(text) or True)
    app = _app(StaticSource())
    first = _issue("review-1")
    second = _issue("issue-2")

    async def run_app() -> None:
        async with app.run_test() as pilot:
            await app.workers.wait_for_complete()
            await pilot.pause()
            app.apply_snapshot(
                PollSnapshot(
                    active_issues=(first, second),
                    new_issues=(second,),
                    ci=CiAggregate(total=1, pending=1),
                    merge_queue=MergeQueueStatus(state="queued", position=1),
                    is_first_poll=False,
                    polled_at="2026-01-01T00:00:00Z",
                )
            )
            table = app.query_one("#issues-table", DataTable)
            assert table.row_count == 2
            assert table.get_row_at(1)[0] == "* issue-2"
            assert app.status_text.startswith("MERGE QUEUE: In queue (1 PR ahead)")

            app.handle_event(NewIssuesEvent(issues=(second,)))
            app.handle_event(QueueTransitionEvent(kind="removed", detail="Removed"))
            await pilot.pause()

    asyncio.run(run_app())

    assert len(copied) == 1
    assert "Stale cache" in copied[0]


def test_start_poll_coalesces_refresh_while_running() -> None:
    app = _app(StaticSource())
    app._poll_running = True

    app.start_poll()
    app.action_refresh()

    assert app._refresh_pending is True


def test_run_watch_tui_reraises_fatal_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(self: tui.WatchApp) -> None:
        self._fatal_error = PullRequestNotFoundError("Pull request o/r#3 was not found")

    monkeypatch.setattr(tui.WatchApp, "run", fake_run)

    with pytest.raises(PullRequestNotFoundError, match="o/r#3"):
        tui.run_watch_tui(pr=PR, source=StaticSource(), poll_interval_seconds=30)
