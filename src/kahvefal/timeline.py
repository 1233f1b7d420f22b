from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, Iterator, List, Optional, Tuple

import pysbd
import regex
from pysbd.languages import LANGUAGE_CODES

from .text import prepare_speech_text

DEFAULT_SEGMENT_LANGUAGE = "en"

# Period-terminated abbreviations pysbd's rule sets do not know about.
# Titles precede a name and never end a sentence; the rest only continue one
# when a lowercase word or a number follows.
TITLE_ABBREVIATIONS: Dict[str, Tuple[str, ...]] = {
    "tr": ("sn", "av", "doç", "yrd", "prof", "dr"),
}
EXTRA_ABBREVIATIONS: Dict[str, Tuple[str, ...]] = {
    "tr": ("vb", "vs", "bkz", "örn", "mah", "cad", "sok", "no", "çev"),
}
_PROTECTED_PERIOD = "\ue000"


def segment_language(locale: Optional[str]) -> str:
    base = (locale or "").strip().lower().replace("_", "-").split("-")[0]
    if base in LANGUAGE_CODES:
        return base
    return DEFAULT_SEGMENT_LANGUAGE


@lru_cache(maxsize=None)
def _segmenter(language: str) -> pysbd.Segmenter:
    return pysbd.Segmenter(language=language, clean=False)


def _mask(text: str, abbrs: Tuple[str, ...], follow: str) -> str:
    if not abbrs:
        return text
    pattern = r"(?<!\w)((?i:" + "|".join(regex.escape(a) for a in abbrs) + r"))\.(?=" + follow + ")"
    return regex.sub(pattern, lambda m: m.group(1) + _PROTECTED_PERIOD, text)


def _protect_abbreviations(text: str, locale: Optional[str]) -> str:
    base = (locale or "").strip().lower().split("-")[0]
    text = _mask(text, TITLE_ABBREVIATIONS.get(base, ()), r"\s")
    return _mask(text, EXTRA_ABBREVIATIONS.get(base, ()), r"\s+[\p{Ll}\p{Nd}]")


def split_sentences(text: str, locale: Optional[str] = None) -> List[str]:
    if not (text or "").strip():
        return []
    protected = _protect_abbreviations(text, locale)
    out: List[str] = []
    for seg in _segmenter(segment_language(locale)).segment(protected):
        s = seg.replace(_PROTECTED_PERIOD, ".").strip()
        if s:
            out.append(s)
    return out


def char_count(text: str) -> int:
    """Number of user-perceived characters (extended grapheme clusters)."""
    return len(regex.findall(r"\X", text or ""))


@dataclass(frozen=True)
class SentenceTimeline:
    sentences: Tuple[str, ...] = ()
    start_times: Tuple[float, ...] = ()
    duration: float = 0.0

    def __post_init__(self) -> None:
        if len(self.sentences) != len(self.start_times):
            raise ValueError("sentences and start_times must have the same length")

    @classmethod
    def build(cls, text: str, duration: float, *, locale: Optional[str] = None) -> "SentenceTimeline":
        duration = max(0.0, float(duration or 0.0))
        sentences = split_sentences(text, locale)
        counts = [char_count(s) for s in sentences]
        total = sum(counts)
        starts: List[float] = []
        if total <= 0:
            starts = [0.0] * len(sentences)
        else:
            cumulative = 0
            for c in counts:
                starts.append(duration * cumulative / total)
                cumulative += c
        return cls(sentences=tuple(sentences), start_times=tuple(starts), duration=duration)

    @classmethod
    def for_narrative(cls, narrative: str, duration: float, *, locale: Optional[str] = None) -> "SentenceTimeline":
        """Build from raw narrative using the same normalization as speech synthesis."""
        return cls.build(prepare_speech_text(narrative), duration, locale=locale)

    def __len__(self) -> int:
        return len(self.sentences)

    def __iter__(self) -> Iterator[Tuple[str, float]]:
        return iter(zip(self.sentences, self.start_times))

    def active_index(self, current_time: float) -> int:
        starts = self.start_times
        if not starts:
            return -1
        if self.duration <= 0:
            return 0
        t = float(current_time)
        if t <= starts[0]:
            return 0
        if t >= starts[-1]:
            return len(starts) - 1
        lo, hi = 0, len(starts) - 1
        while lo <= hi:
            mid = (lo + hi) // 2
            if starts[mid] <= t:
                lo = mid + 1
            else:
                hi = mid - 1
        return max(0, min(len(starts) - 1, hi))

    def sentence_at(self, current_time: float) -> Optional[str]:
        idx = self.active_index(current_time)
        if idx < 0:
            return None
        return self.sentences[idx]

    def end_time(self, index: int) -> float:
        if index < 0 or index >= len(self.start_times):
            raise IndexError(index)
        if index + 1 < len(self.start_times):
            return self.start_times[index + 1]
        return self.duration

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema": "kahvefal.timeline.v1",
            "duration": round(self.duration, 3),
            "entries": [
                {"index": i, "start": round(start, 3), "end": round(self.end_time(i), 3), "text": sentence}
                for i, (sentence, start) in enumerate(self)
            ],
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "SentenceTimeline":
        entries = payload.get("entries") or []
        return cls(
            sentences=tuple(str(e["text"]) for e in entries),
            start_times=tuple(float(e["start"]) for e in entries),
            duration=float(payload.get("duration", 0.0)),
        )
