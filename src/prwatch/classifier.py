from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
import os


DEFAULT_NON_BLOCKING_CI: tuple[str, ...] = (
    "slack",
    "notification",
    "emoji",
    "add reaction",
    "coverage",
    "codecov",
    "deque_notify",
    "dequeue",
)
NON_BLOCKING_CI_ENV = "NON_BLOCKING_CI"


@dataclass(frozen=True)
class BlockingClassifier:
    """Decide whether a CI job name gates merging.

    Matching is a case-insensitive substring test so that suffixed job variants
    such as ``slack-notify (linux)`` still match ``slack``.
    """

    non_blocking_patterns: tuple[str, ...] = DEFAULT_NON_BLOCKING_CI

    @classmethod
    def with_extra_patterns(cls, extra: Iterable[str]) -> BlockingClassifier:
        return cls(non_blocking_patterns=_merge_patterns(DEFAULT_NON_BLOCKING_CI, extra))

    def is_blocking(self, name: str | None) -> bool:
        if not name:
            return True
        lowered = name.lower()
        return not any(pattern in lowered for pattern in self.non_blocking_patterns)


def patterns_from_env(environ: dict[str, str] | None = None) -> tuple[str, ...]:
    env = os.environ if environ is None else environ
    raw = env.get(NON_BLOCKING_CI_ENV, "")
    return tuple(item.strip().lower() for item in raw.split(",") if item.strip())


def _merge_patterns(base: Iterable[str], extra: Iterable[str]) -> tuple[str, ...]:
    merged: list[str] = []
    for raw in (*base, *extra):
        pattern = raw.strip().lower()
        if pattern and pattern not in merged:
            merged.append(pattern)
    return tuple(merged)
