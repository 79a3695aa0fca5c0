from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List

from .text import collapse_whitespace_runs

LEARN_TAG = re.compile(r"\[LEARN:([^\]]+)\]", re.IGNORECASE)


@dataclass(slots=True)
class DirectiveExtraction:
    clean_text: str
    candidates: List[str] = field(default_factory=list)


def extract_learn_directives(text: str, max_length: int) -> DirectiveExtraction:
    """Strip every ``[LEARN:...]`` tag from a model reply and collect the usable ones.

    A candidate is kept when its trimmed content is non-blank and at most
    ``max_length`` characters long; oversized tags are still removed from the
    visible text.
    """
    candidates: List[str] = []
    for match in LEARN_TAG.finditer(text or ""):
        content = match.group(1).strip()
        if content and len(content) <= max_length:
            candidates.append(content)
    stripped = LEARN_TAG.sub("", text or "")
    return DirectiveExtraction(clean_text=collapse_whitespace_runs(stripped.strip()), candidates=candidates)
