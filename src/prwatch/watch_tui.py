from __future__ import annotations

from collections.abc import Iterable
import logging

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical, VerticalScroll
from textual.screen import ModalScreen
from textual.widgets import DataTable, Footer, Header, Static
from textual.worker import Worker, WorkerState

from prwatch.classifier import BlockingClassifier
from prwatch.models import (
    Issue,
    NewIssuesEvent,
    NotificationEvent,
    PollSnapshot,
    PullRequestRef,
    QueueTransitionEvent,
    ReadyToMergeEvent,
)
from prwatch.notifier import DesktopNotifier, copy_to_clipboard
from prwatch.observability import log_event
from prwatch.rendering import (
    generate_fix_prompt,
    issue_kind_label,
    location_text,
    render_issue_detail,
    severity_tag,
    status_line,
)
from prwatch.watcher import PullRequestSource, PullRequestWatcher


LOGGER = logging.getLogger("prwatch.watch_tui")
_POLL_WORKER_GROUP = "poll"
_TITLE_MAX_CHARS = 60


class _IssueDetailModal(ModalScreen[None]):
    BINDINGS = [
        Binding("escape", "close", "Close"),
        Binding("enter", "close", "Close"),
        Binding("q", "close", "Close"),
    ]
    CSS = """
    #detail-dialog {
        width: 90%;
        height: 80%;
        border: round $accent;
        background: $surface;
        padding: 1 2;
    }
    #detail-title {
        text-style: bold;
        margin-bottom: 1;
    }
    #detail-body-scroll {
        height: 1fr;
        border: round $boost;
        padding: 0 1;
    }
    #detail-hint {
        margin-top: 1;
    }
    """

    def __init__(self, *, title: str, body: str) -> None:
        super().__init__()
        self._title = title
        self._body = body

    def compose(self) -> ComposeResult:
        with Vertical(id="detail-dialog"):
            yield Static(self._title, id="detail-title")
            with VerticalScroll(id="detail-body-scroll"):
                yield Static(self._body, id="detail-body", markup=False)
            yield Static("Press Esc, Enter, or q to close.", id="detail-hint")

    def action_close(self) -> None:
        self.dismiss(None)


class _IssueTable(DataTable):
    """Route DataTable's Enter key to the app's detail action."""

    def action_select_cursor(self) -> None:
        super().action_select_cursor()
        app = self.app
        if isinstance(app, WatchApp):
            app.action_show_detail()


class WatchApp(App[None]):
    """Terminal dashboard for one pull request.

    Polls run in a thread worker on a fixed interval. A refresh requested while
    a poll is in flight is remembered and runs once the current poll ends, so
    at most one follow-up poll is ever queued.
    """

    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("r", "refresh", "Refresh"),
        Binding("c", "copy_prompt", "Copy Fix Prompt"),
        Binding("u", "copy_url", "Copy PR URL"),
        Binding("enter", "show_detail", "Details"),
    ]
    CSS = """
    Screen {
        layout: vertical;
    }
    .panel-title {
        text-style: bold;
        padding-left: 1;
    }
    #summary {
        height: 2;
        padding: 0 1;
    }
    #status {
        height: 3;
        padding: 0 1;
        border: round $boost;
    }
    DataTable {
        height: 1fr;
    }
    """

    def __init__(
        self,
        *,
        pr: PullRequestRef,
        source: PullRequestSource,
        poll_interval_seconds: float,
        classifier: BlockingClassifier | None = None,
        review_bots: Iterable[str] = (),
        notifier: DesktopNotifier | None = None,
    ) -> None:
        super().__init__()
        self._pr = pr
        self._poll_interval_seconds = poll_interval_seconds
        self._notifier = notifier or DesktopNotifier(enabled=False)
        self._watcher = PullRequestWatcher(
            source,
            classifier=classifier,
            review_bots=review_bots,
            on_poll_result=self._on_poll_result_from_worker,
            on_notify=self._on_notify_from_worker,
        )
        self._issues: tuple[Issue, ...] = ()
        self._poll_running = False
        self._refresh_pending = False
        self._summary_text = ""
        self._status_text = ""
        self._fatal_error: BaseException | None = None

    @property
    def watcher(self) -> PullRequestWatcher:
        return self._watcher

    @property
    def fatal_error(self) -> BaseException | None:
        return self._fatal_error

    @property
    def status_text(self) -> str:
        return self._status_text

    @property
    def summary_text(self) -> str:
        return self._summary_text

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Vertical():
            yield Static(f"Watching {self._pr} ...", id="summary")
            yield Static("Issues", classes="panel-title")
            yield _IssueTable(id="issues-table", cursor_type="row")
            yield Static("", id="status")
        yield Footer()

    def on_mount(self) -> None:
        self.title = f"prwatch {self._pr}"
        table = self.query_one("#issues-table", DataTable)
        table.add_columns("ID", "Type", "Title", "Location")
        log_event(
            LOGGER,
            "watch_started",
            pr=str(self._pr),
            mode="tui",
            poll_interval_seconds=self._poll_interval_seconds,
        )
        self.start_poll()
        self.set_interval(self._poll_interval_seconds, self.start_poll)

    def start_poll(self) -> None:
        if self._poll_running:
            self._refresh_pending = True
            return
        self._poll_running = True
        self.run_worker(
            self._watcher.poll,
            thread=True,
            group=_POLL_WORKER_GROUP,
            exit_on_error=False,
        )

    def on_worker_state_changed(self, event: Worker.StateChanged) -> None:
        if event.worker.group != _POLL_WORKER_GROUP:
            return
        if event.state not in {WorkerState.SUCCESS, WorkerState.ERROR, WorkerState.CANCELLED}:
            return
        self._poll_running = False
        if event.state == WorkerState.ERROR and event.worker.error is not None:
            self._fatal_error = event.worker.error
            self.exit()
            return
        if self._refresh_pending:
            self._refresh_pending = False
            self.start_poll()

    def action_refresh(self) -> None:
        self.start_poll()

    def action_copy_prompt(self) -> None:
        if not self._issues:
            self.notify("No issues to copy.")
            return
        self._copy(generate_fix_prompt(self._issues))
        self.notify(f"Copied {len(self._issues)} issue(s) to clipboard.")

    def action_copy_url(self) -> None:
        self._copy(self._pr.html_url)
        self.notify(f"Copied {self._pr.html_url}")

    def action_show_detail(self) -> None:
        issue = self._selected_issue()
        if issue is None or not self.is_running:
            return
        self.push_screen(_IssueDetailModal(title=issue.issue_id, body=render_issue_detail(issue)))

    def apply_snapshot(self, snapshot: PollSnapshot) -> None:
        self._issues = snapshot.active_issues
        new_ids = {issue.issue_id for issue in snapshot.new_issues}
        table = self.screen_stack[0].query_one("#issues-table", DataTable)
        table.clear(columns=False)
        for issue in snapshot.active_issues:
            marker = "* " if issue.issue_id in new_ids and not snapshot.is_first_poll else ""
            table.add_row(
                f"{marker}{issue.issue_id}",
                issue_kind_label(issue),
                f"{severity_tag(issue)}{issue.title}"[:_TITLE_MAX_CHARS],
                location_text(issue) or issue.source or "-",
            )

        status = status_line(snapshot)
        self._status_text = f"{status.headline}\n{status.detail}"
        self._summary_text = (
            f"{self._pr}  polled={snapshot.polled_at}  "
            f"issues={len(snapshot.active_issues)} blocking={len(snapshot.blocking_issues)}"
        )
        self.screen_stack[0].query_one("#status", Static).update(self._status_text)
        self.screen_stack[0].query_one("#summary", Static).update(self._summary_text)

    def handle_event(self, event: NotificationEvent) -> None:
        if isinstance(event, NewIssuesEvent):
            self._copy(generate_fix_prompt((*event.issues, *event.non_blocking_issues)))
            self.notify(
                f"{len(event.issues)} new issue(s); fix prompt copied to clipboard.",
                title="New issues",
                severity="warning",
            )
        elif isinstance(event, ReadyToMergeEvent):
            self.notify("All checks passed, no review issues.", title="Ready to merge")
        elif isinstance(event, QueueTransitionEvent):
            self.notify(
                event.detail,
                title="Merge queue",
                severity="warning" if event.kind == "removed" else "information",
            )
        self.bell()

    def _on_poll_result_from_worker(self, snapshot: PollSnapshot) -> None:
        self.call_from_thread(self.apply_snapshot, snapshot)

    def _on_notify_from_worker(self, event: NotificationEvent) -> None:
        self._notifier.notify(self._pr, event)
        self.call_from_thread(self.handle_event, event)

    def _copy(self, text: str) -> None:
        if not copy_to_clipboard(text):
            # Terminal clipboard (OSC 52) when no system tool is installed.
            self.copy_to_clipboard(text)

    def _selected_issue(self) -> Issue | None:
        table = self.screen_stack[0].query_one("#issues-table", DataTable)
        row_index = table.cursor_row
        if row_index < 0 or row_index >= len(self._issues):
            return None
        return self._issues[row_index]


def run_watch_tui(
    *,
    pr: PullRequestRef,
    source: PullRequestSource,
    poll_interval_seconds: float,
    classifier: BlockingClassifier | None = None,
    review_bots: Iterable[str] = (),
    notifier: DesktopNotifier | None = None,
) -> None:
    app = WatchApp(
        pr=pr,
        source=source,
        poll_interval_seconds=poll_interval_seconds,
        classifier=classifier,
        review_bots=review_bots,
        notifier=notifier,
    )
    app.run()
    if app.fatal_error is not None:
        raise app.fatal_error
