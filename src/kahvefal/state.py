from __future__ import annotations

import json
import os
import tempfile
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .errors import PersistenceError, ValidationError
from .prompts import DEFAULT_LOCALE, SUPPORTED_LOCALES

READING_KINDS = ("coffee", "dream")


def default_state_path() -> Path:
    explicit = os.getenv("KAHVEFAL_STATE")
    if explicit:
        return Path(explicit).expanduser()
    return Path.home() / ".config" / "kahvefal" / "state.json"


@dataclass(frozen=True)
class LastReading:
    kind: str
    input: str
    narrative: str
    saved_at: Optional[str] = None


class StateStore:
    """Process-wide key/value state persisted as one JSON document.

    Only the keys the app needs are exposed, each through a typed accessor:
    ``remaining_credits``, ``has_launched_before``, one last-reading slot per
    reading kind and ``active_locale``. Writes go to a temp file first and are
    swapped in with ``os.replace``.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = Path(path) if path is not None else default_state_path()
        self._lock = threading.RLock()

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: Dict[str, Any]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=".state-", suffix=".json", dir=str(self.path.parent))
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp, self.path)
        except OSError as e:
            raise PersistenceError(f"Failed to write state file {self.path}: {e}") from e

    def _update(self, mutate: Callable[[Dict[str, Any]], None]) -> None:
        with self._lock:
            data = self._load()
            mutate(data)
            self._save(data)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return self._load()

    # credits

    def remaining_credits(self) -> int:
        with self._lock:
            try:
                return max(0, int(self._load().get("remaining_credits", 0)))
            except (TypeError, ValueError):
                return 0

    def set_remaining_credits(self, value: int) -> None:
        if int(value) < 0:
            raise ValueError("remaining_credits cannot be negative")
        self._update(lambda d: d.__setitem__("remaining_credits", int(value)))

    def has_launched_before(self) -> bool:
        with self._lock:
            return bool(self._load().get("has_launched_before", False))

    def record_first_launch(self, credits: int) -> None:
        def _mutate(d: Dict[str, Any]) -> None:
            d["has_launched_before"] = True
            d["remaining_credits"] = int(credits)

        self._update(_mutate)

    # last readings

    def last_reading(self, kind: str) -> Optional[LastReading]:
        with self._lock:
            slots = self._load().get("last_readings") or {}
        slot = slots.get(kind) if isinstance(slots, dict) else None
        if not isinstance(slot, dict) or not slot.get("narrative"):
            return None
        return LastReading(
            kind=kind,
            input=str(slot.get("input") or ""),
            narrative=str(slot["narrative"]),
            saved_at=slot.get("saved_at"),
        )

    def save_last_reading(self, kind: str, input_ref: str, narrative: str) -> None:
        if kind not in READING_KINDS:
            raise ValidationError(f"Unknown reading kind '{kind}'. Valid: {', '.join(READING_KINDS)}")

        def _mutate(d: Dict[str, Any]) -> None:
            slots = d.get("last_readings")
            if not isinstance(slots, dict):
                slots = {}
            slots[kind] = {
                "input": input_ref,
                "narrative": narrative,
                "saved_at": datetime.now(timezone.utc).isoformat(timespec="seconds"),
            }
            d["last_readings"] = slots

        self._update(_mutate)

    # locale

    def active_locale(self) -> str:
        with self._lock:
            loc = str(self._load().get("active_locale") or DEFAULT_LOCALE)
        return loc if loc in SUPPORTED_LOCALES else DEFAULT_LOCALE

    def set_active_locale(self, locale: str) -> None:
        loc = (locale or "").strip().lower()
        if loc not in SUPPORTED_LOCALES:
            raise ValidationError(f"Unsupported locale '{locale}'. Valid: {', '.join(SUPPORTED_LOCALES)}")
        self._update(lambda d: d.__setitem__("active_locale", loc))
