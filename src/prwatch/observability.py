from __future__ import annotations

import json
import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
import sys
from typing import Final, Literal, cast


_LOGGER_NAME: Final[str] = "prwatch"
_EVENT_ATTR: Final[str] = "prwatch_event"
_MAX_VALUE_LEN: Final[int] = 120
_LOG_FORMAT: Final[str] = "%(asctime)s %(levelname)s %(name)s [%(threadName)s] %(message)s"
# Info events ``-v low`` keeps; warnings always pass.
_LOW_VERBOSITY_EVENTS: Final[frozenset[str]] = frozenset(
    {
        "watch_started",
        "poll_completed",
        "new_blocking_issues",
        "ready_to_merge",
        "merge_queue_transition",
        "fetch_degraded",
        "review_threads_fallback",
        "malformed_event_skipped",
        "ci_state_unrecognized",
        "merge_queue_state_unrecognized",
        "desktop_notification_failed",
        "mcp_server_started",
        "mcp_watch_started",
    }
)


VerboseMode = Literal["low", "high"]


def configure_logging(
    verbose: bool | str | None,
    *,
    state_dir: Path | None = None,
    stream: bool = True,
) -> None:
    """Route the ``prwatch`` logger tree to stderr and/or a log file.

    ``None`` or ``False`` silences the package. With ``state_dir`` the lines also
    go to ``<state_dir>/logs/watch.log``, rotated at UTC midnight. The TUI passes
    ``stream=False`` so log lines never draw over the screen.
    """
    logger = logging.getLogger(_LOGGER_NAME)
    logger.propagate = False
    logger.handlers.clear()
    mode = _normalize_verbose_mode(verbose)

    handlers: list[logging.Handler] = []
    if mode is not None:
        if stream:
            handlers.append(logging.StreamHandler(sys.stderr))
        if state_dir is not None:
            handlers.append(_daily_file_handler(state_dir))

    if not handlers:
        logger.addHandler(logging.NullHandler())
        logger.setLevel(logging.CRITICAL + 1)
        return

    for handler in handlers:
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        if mode == "low":
            handler.addFilter(_LowVerbosityFilter())
        logger.addHandler(handler)
    logger.setLevel(logging.INFO)


def log_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.info(_build_event_message(event, fields), extra={_EVENT_ATTR: event})


def log_warning_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.warning(_build_event_message(event, fields), extra={_EVENT_ATTR: event})


def _build_event_message(event: str, fields: dict[str, object]) -> str:
    parts = [f"event={_format_value(event)}"]
    parts.extend(f"{key}={_format_value(fields[key])}" for key in sorted(fields))
    return " ".join(parts)


def _format_value(value: object) -> str:
    if value is None:
        text = "null"
    elif isinstance(value, bool):
        text = "true" if value else "false"
    elif isinstance(value, int | float):
        text = str(value)
    elif isinstance(value, str):
        # Review bodies and gh stderr are multi-line; one event stays on one line.
        text = " ".join(value.split())
        if len(text) > _MAX_VALUE_LEN:
            text = f"{text[:_MAX_VALUE_LEN]}..."
        text = text or "<empty>"
    elif isinstance(value, frozenset | set):
        text = ",".join(sorted(str(item) for item in value)) or "<none>"
    elif isinstance(value, tuple | list):
        text = ",".join(str(item) for item in value) or "<none>"
    else:
        text = f"<{type(value).__name__}>"

    if any(ch.isspace() for ch in text) or "=" in text:
        return json.dumps(text)
    return text


def _normalize_verbose_mode(verbose: bool | str | None) -> VerboseMode | None:
    if verbose is None or verbose is False:
        return None
    if verbose is True:
        return "high"
    normalized = verbose.strip().lower()
    if normalized in {"low", "high"}:
        return cast(VerboseMode, normalized)
    raise ValueError(f"Unsupported verbose mode: {verbose!r}")


def _daily_file_handler(state_dir: Path) -> logging.Handler:
    logs_dir = state_dir / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    return TimedRotatingFileHandler(
        logs_dir / "watch.log", when="midnight", utc=True, encoding="utf-8", delay=True
    )


class _LowVerbosityFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.WARNING:
            return True
        return getattr(record, _EVENT_ATTR, None) in _LOW_VERBOSITY_EVENTS
