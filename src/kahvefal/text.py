from __future__ import annotations

import re
from typing import List

TERMINAL_PUNCTUATION = ".!?…:;"


def strip_inline_markdown(text: str) -> str:
    t = text or ""
    # Inline code, bold, italics -> keep text only.
    t = re.sub(r"`([^`]+)`", r"\1", t)
    t = re.sub(r"\*\*([^*]+)\*\*", r"\1", t)
    t = re.sub(r"__([^_]+)__", r"\1", t)
    t = re.sub(r"(?<!\*)\*([^*]+)\*(?!\*)", r"\1", t)
    t = re.sub(r"(?<!_)_([^_]+)_(?!_)", r"\1", t)
    # Unpaired leftovers from truncated completions.
    t = t.replace("**", "").replace("#", "")
    return " ".join(t.split())


def _strip_line(line: str) -> str:
    s = re.sub(r"^\s*#{1,6}\s*", "", line or "")
    s = re.sub(r"^\s*[-*+]\s+", "", s)
    return strip_inline_markdown(s)


def speakable_lines(text: str) -> List[str]:
    return [s for s in (_strip_line(line) for line in (text or "").splitlines()) if s]


def prepare_speech_text(text: str) -> str:
    """Normalize a narrative for speech synthesis and sentence timing.

    Markdown heading and emphasis markers are removed, blank lines dropped and
    the remaining lines joined with ". ". A line that already ends in terminal
    punctuation is joined with a single space so no doubled stops appear.
    """
    lines = speakable_lines(text)
    if not lines:
        return ""
    parts: List[str] = []
    for idx, line in enumerate(lines):
        parts.append(line)
        if idx == len(lines) - 1:
            break
        parts.append(" " if line[-1] in TERMINAL_PUNCTUATION else ". ")
    return "".join(parts)
