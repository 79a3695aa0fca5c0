from __future__ import annotations

import re

_WHITESPACE_RUN = re.compile(r"\s{2,}")


def clip(value: str | None, limit: int) -> str:
    """Cut ``value`` to ``limit`` characters, marking the cut with ``...``."""
    if value is None:
        return ""
    if len(value) <= limit:
        return value
    if limit <= 3:
        return value[: max(0, limit)]
    return value[: limit - 3] + "..."


def collapse_whitespace_runs(text: str) -> str:
    return _WHITESPACE_RUN.sub(" ", text)
