from __future__ import annotations

from dataclasses import dataclass, field
import logging
import platform
import shutil

from prwatch.models import (
    NewIssuesEvent,
    NotificationEvent,
    PullRequestRef,
    ReadyToMergeEvent,
)
from prwatch.observability import log_event, log_warning_event
from prwatch.rendering import notification_text
from prwatch.shell import CommandError, run


LOGGER = logging.getLogger("prwatch.notifier")
_NOTIFY_TIMEOUT_SECONDS = 10.0
_CLIPBOARD_COMMANDS: tuple[tuple[str, ...], ...] = (
    ("pbcopy",),
    ("wl-copy",),
    ("xclip", "-selection", "clipboard"),
    ("xsel", "--clipboard", "--input"),
)


@dataclass(frozen=True)
class DesktopMessage:
    title: str
    subtitle: str
    message: str
    sound: str | None = None


def message_for_event(pr: PullRequestRef, event: NotificationEvent) -> DesktopMessage:
    if isinstance(event, NewIssuesEvent):
        subtitle, message = notification_text(pr, event.issues)
        return DesktopMessage(title="PR Watcher", subtitle=subtitle, message=message)
    if isinstance(event, ReadyToMergeEvent):
        return DesktopMessage(
            title="Ready to Merge",
            subtitle=f"PR #{pr.number} is ready!",
            message="All checks passed, no review issues",
            sound="Glass",
        )
    if event.kind == "merged":
        title, sound = "PR Merged!", "Glass"
    elif event.kind == "removed":
        title, sound = "Removed from Queue", "Basso"
    else:
        title, sound = "Added to Queue", "Pop"
    return DesktopMessage(
        title=title, subtitle=f"PR #{pr.number}", message=event.detail, sound=sound
    )


@dataclass(frozen=True)
class DesktopNotifier:
    """Best-effort native notifications; failures are logged and ignored."""

    enabled: bool = True
    system: str = field(default_factory=platform.system)

    def notify(self, pr: PullRequestRef, event: NotificationEvent) -> bool:
        return self.send(message_for_event(pr, event))

    def send(self, message: DesktopMessage) -> bool:
        if not self.enabled:
            return False
        argv = self._command_for(message)
        if argv is None:
            log_warning_event(
                LOGGER,
                "desktop_notification_failed",
                reason="no_notifier",
                system=self.system,
            )
            return False
        try:
            run(argv, timeout_seconds=_NOTIFY_TIMEOUT_SECONDS)
        except CommandError as exc:
            log_warning_event(
                LOGGER,
                "desktop_notification_failed",
                reason="command_failed",
                command=argv[0],
                exit_code=exc.exit_code,
            )
            return False
        log_event(LOGGER, "desktop_notification_sent", title=message.title)
        return True

    def _command_for(self, message: DesktopMessage) -> list[str] | None:
        if self.system.lower() == "darwin":
            script = (
                f"display notification {_applescript_string(message.message)} "
                f"with title {_applescript_string(message.title)} "
                f"subtitle {_applescript_string(message.subtitle)}"
            )
            if message.sound:
                script += f" sound name {_applescript_string(message.sound)}"
            return ["osascript", "-e", script]
        if shutil.which("notify-send") is None:
            return None
        body = f"{message.subtitle}\n{message.message}" if message.subtitle else message.message
        return ["notify-send", "--app-name=prwatch", message.title, body]


def copy_to_clipboard(text: str) -> bool:
    """Copy through the first available system clipboard tool."""
    for argv in _CLIPBOARD_COMMANDS:
        if shutil.which(argv[0]) is None:
            continue
        try:
            run(list(argv), input_text=text, timeout_seconds=_NOTIFY_TIMEOUT_SECONDS)
        except CommandError:
            continue
        log_event(LOGGER, "clipboard_copied", tool=argv[0], chars=len(text))
        return True
    log_warning_event(LOGGER, "clipboard_unavailable")
    return False


def _applescript_string(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", " ")
    return f'"{escaped}"'
