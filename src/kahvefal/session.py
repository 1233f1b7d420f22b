from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from .credits import CreditsLedger
from .errors import (
    GenerationFailedError,
    InsufficientCreditError,
    KahveError,
    SessionBusyError,
    SpeechFailedError,
    ValidationError,
)
from .images import EncodedImage, encode_image
from .playback import PlaybackClock
from .prompts import DEFAULT_LOCALE, normalize_locale
from .services import (
    CompletionRequest,
    CompletionService,
    SpeechService,
    coffee_request,
    dream_request,
    speech_request,
)
from .state import LastReading, StateStore
from .timeline import SentenceTimeline, char_count

KIND_COFFEE = "coffee"
KIND_DREAM = "dream"
MIN_DREAM_CHARS = 20
MAX_DREAM_CHARS = 5000


class SessionState(str, Enum):
    IDLE = "idle"
    INPUT_READY = "input_ready"
    DEBITING = "debiting"
    GENERATING_TEXT = "generating_text"
    GENERATING_SPEECH = "generating_speech"
    READY = "ready"
    ERROR = "error"


WORKING_STATES = frozenset({SessionState.DEBITING, SessionState.GENERATING_TEXT, SessionState.GENERATING_SPEECH})


@dataclass(frozen=True)
class ReadingInput:
    dream_text: Optional[str] = None
    cup: Optional[Path] = None
    plate: Optional[Path] = None

    def reference(self) -> str:
        if self.dream_text is not None:
            return self.dream_text.strip()
        return " | ".join(str(p) for p in (self.cup, self.plate) if p is not None)


@dataclass(frozen=True)
class ReadingOutcome:
    ok: bool
    state: SessionState
    text: Optional[str] = None
    audio_path: Optional[Path] = None
    timeline: Optional[SentenceTimeline] = None
    error: Optional[KahveError] = None
    refunded: bool = False
    cancelled: bool = False


def validate_dream_text(text: Optional[str]) -> str:
    body = (text or "").strip()
    n = char_count(body)
    if n < MIN_DREAM_CHARS:
        raise ValidationError(f"Dream description is too short ({n} chars); write at least {MIN_DREAM_CHARS}.")
    if n > MAX_DREAM_CHARS:
        raise ValidationError(f"Dream description is too long ({n} chars); the limit is {MAX_DREAM_CHARS}.")
    return body


class FortuneSession:
    """One reading of one kind, from input to narrated audio bound to a timeline.

    ``submit()`` validates and debits on the calling thread, then runs the
    completion and speech stages on the executor and returns a ``Future`` of a
    ``ReadingOutcome``. Failures of those stages never raise out of the future;
    they land in ``ReadingOutcome.error`` and leave the session in ``ERROR``.

    Each run carries a run id and a cancel event. ``reset()`` bumps the id, so
    whatever a superseded worker produces afterwards is dropped.
    """

    def __init__(
        self,
        kind: str,
        *,
        ledger: CreditsLedger,
        completion: CompletionService,
        speech: SpeechService,
        clock: PlaybackClock,
        audio_dir: Path,
        store: Optional[StateStore] = None,
        executor: Optional[ThreadPoolExecutor] = None,
        locale: Union[str, Callable[[], str], None] = None,
        prompt_table: Optional[Dict[str, Dict[str, Any]]] = None,
        voice: Optional[str] = None,
        speed: float = 1.0,
        refund_on_generation_failure: bool = True,
        on_purchase_required: Optional[Callable[[], None]] = None,
        on_change: Optional[Callable[["FortuneSession"], None]] = None,
        info_cb: Optional[Callable[[str], None]] = None,
    ) -> None:
        if kind not in (KIND_COFFEE, KIND_DREAM):
            raise ValueError(f"Unknown reading kind '{kind}'")
        self.kind = kind
        self.ledger = ledger
        self.completion = completion
        self.speech = speech
        self.clock = clock
        self.audio_dir = Path(audio_dir)
        self.store = store
        self._own_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"kahvefal-{kind}")
        self._locale = locale
        self.prompt_table = prompt_table
        self.voice = voice
        self.speed = float(speed)
        self.refund_on_generation_failure = bool(refund_on_generation_failure)
        self.on_purchase_required = on_purchase_required
        self.on_change = on_change
        self.info_cb = info_cb

        self._lock = threading.RLock()
        self._run_id = 0
        self._cancel: Optional[threading.Event] = None
        self._state = SessionState.IDLE
        self._input: Optional[ReadingInput] = None
        self._text: Optional[str] = None
        self._audio_path: Optional[Path] = None
        self._timeline: Optional[SentenceTimeline] = None
        self._error: Optional[KahveError] = None

    # read-only view

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def input(self) -> Optional[ReadingInput]:
        return self._input

    @property
    def text(self) -> Optional[str]:
        return self._text

    @property
    def audio_path(self) -> Optional[Path]:
        return self._audio_path

    @property
    def timeline(self) -> Optional[SentenceTimeline]:
        return self._timeline

    @property
    def error(self) -> Optional[KahveError]:
        return self._error

    @property
    def is_busy(self) -> bool:
        return self._state in WORKING_STATES

    def active_sentence_index(self) -> int:
        tl = self._timeline
        if tl is None:
            return -1
        return tl.active_index(self.clock.current_time)

    def locale(self) -> str:
        loc = self._locale() if callable(self._locale) else self._locale
        if loc is None and self.store is not None:
            loc = self.store.active_locale()
        return normalize_locale(loc or DEFAULT_LOCALE)

    # plumbing

    def _info(self, message: str) -> None:
        if self.info_cb:
            self.info_cb(f"[{self.kind}] {message}")

    def _changed(self) -> None:
        if self.on_change:
            self.on_change(self)

    def _transition(self, run_id: Optional[int], state: SessionState, **fields: Any) -> bool:
        with self._lock:
            if run_id is not None and run_id != self._run_id:
                return False
            self._state = state
            for name, value in fields.items():
                setattr(self, f"_{name}", value)
        self._info(f"state={state.value}")
        self._changed()
        return True

    def _superseded(self, run_id: int, cancel: threading.Event) -> bool:
        return cancel.is_set() or run_id != self._run_id

    # input

    def set_input(
        self,
        *,
        dream_text: Optional[str] = None,
        cup: Optional[Path] = None,
        plate: Optional[Path] = None,
    ) -> None:
        if self.kind == KIND_DREAM:
            value = ReadingInput(dream_text=dream_text)
        else:
            value = ReadingInput(cup=Path(cup) if cup else None, plate=Path(plate) if plate else None)
        with self._lock:
            if self.is_busy:
                raise SessionBusyError(f"{self.kind} reading is in progress")
            state = self._state
            if state in (SessionState.IDLE, SessionState.INPUT_READY, SessionState.ERROR):
                state = SessionState.INPUT_READY
        self._transition(None, state, input=value)

    def _build_request(self, value: ReadingInput, locale: str) -> CompletionRequest:
        if self.kind == KIND_DREAM:
            return dream_request(validate_dream_text(value.dream_text), locale, self.prompt_table)
        if value.cup is None:
            raise ValidationError("A photo of the coffee cup is required.")
        cup: EncodedImage = encode_image(value.cup)
        plate: Optional[EncodedImage] = encode_image(value.plate) if value.plate is not None else None
        return coffee_request(cup, plate, locale, self.prompt_table)

    # runs

    def submit(self, value: Optional[ReadingInput] = None) -> "Future[ReadingOutcome]":
        with self._lock:
            if self.is_busy:
                raise SessionBusyError(f"{self.kind} reading is already in progress")
            value = value or self._input
            if value is None:
                raise ValidationError("Nothing to read yet; provide input first.")
            locale = self.locale()
            request = self._build_request(value, locale)

            if self._state == SessionState.READY:
                self.clock.stop()
            self._run_id += 1
            run_id = self._run_id
            if self._cancel is not None:
                self._cancel.set()
            cancel = threading.Event()
            self._cancel = cancel
        entered = self._transition(
            run_id,
            SessionState.DEBITING,
            input=value,
            text=None,
            audio_path=None,
            timeline=None,
            error=None,
        )
        if not entered:
            dropped: "Future[ReadingOutcome]" = Future()
            dropped.set_result(ReadingOutcome(ok=False, state=self._state, cancelled=True))
            return dropped

        try:
            debited = self.ledger.debit()
        except KahveError as e:
            self._transition(run_id, SessionState.ERROR, error=e)
            failed: "Future[ReadingOutcome]" = Future()
            failed.set_result(ReadingOutcome(ok=False, state=SessionState.ERROR, error=e))
            return failed
        if not debited:
            err = InsufficientCreditError()
            self._transition(run_id, SessionState.ERROR, error=err)
            if self.on_purchase_required:
                self.on_purchase_required()
            done: "Future[ReadingOutcome]" = Future()
            done.set_result(ReadingOutcome(ok=False, state=SessionState.ERROR, error=err))
            return done

        self._info(f"debited one credit balance={self.ledger.balance} locale={locale}")
        return self._executor.submit(self._run, run_id, cancel, value, request, locale)

    def run(self, value: Optional[ReadingInput] = None, timeout: Optional[float] = None) -> ReadingOutcome:
        """Blocking form of ``submit()``."""
        return self.submit(value).result(timeout=timeout)

    def _refund(self, reason: str) -> bool:
        if not self.refund_on_generation_failure:
            return False
        try:
            balance = self.ledger.refund()
        except KahveError as e:
            self._info(f"refund failed ({reason}): {e}")
            return False
        self._info(f"refunded one credit ({reason}) balance={balance}")
        return True

    def _cancelled(self, text: Optional[str], refunded: bool) -> ReadingOutcome:
        self._info("run superseded; discarding result")
        return ReadingOutcome(ok=False, state=self._state, text=text, refunded=refunded, cancelled=True)

    def _run(
        self,
        run_id: int,
        cancel: threading.Event,
        value: ReadingInput,
        request: CompletionRequest,
        locale: str,
    ) -> ReadingOutcome:
        try:
            return self._produce(run_id, cancel, value, request, locale)
        except Exception as e:
            # A run must never be left in a working state.
            err = e if isinstance(e, KahveError) else KahveError(str(e))
            if err is not e:
                err.__cause__ = e
            if not self._transition(run_id, SessionState.ERROR, error=err):
                return self._cancelled(None, False)
            return ReadingOutcome(ok=False, state=SessionState.ERROR, text=self.text, error=err)

    def _produce(
        self,
        run_id: int,
        cancel: threading.Event,
        value: ReadingInput,
        request: CompletionRequest,
        locale: str,
    ) -> ReadingOutcome:
        if not self._transition(run_id, SessionState.GENERATING_TEXT):
            return self._cancelled(None, self._refund("cancelled before text"))

        try:
            text = self.completion.complete(request, cancel=cancel)
        except Exception as e:
            if self._superseded(run_id, cancel):
                return self._cancelled(None, self._refund("cancelled before text"))
            err = e if isinstance(e, GenerationFailedError) else GenerationFailedError(str(e))
            if err is not e:
                err.__cause__ = e
            refunded = self._refund("generation failed")
            self._transition(run_id, SessionState.ERROR, error=err)
            return ReadingOutcome(ok=False, state=SessionState.ERROR, error=err, refunded=refunded)

        text = (text or "").strip()
        if self._superseded(run_id, cancel):
            return self._cancelled(None, self._refund("cancelled before text"))
        if not text:
            err = GenerationFailedError("Completion returned no content")
            refunded = self._refund("generation failed")
            self._transition(run_id, SessionState.ERROR, error=err)
            return ReadingOutcome(ok=False, state=SessionState.ERROR, error=err, refunded=refunded)

        self._info(f"narrative received chars={len(text):,}")
        if self.store is not None:
            try:
                self.store.save_last_reading(self.kind, value.reference(), text)
            except KahveError as e:
                self._info(f"could not save last reading: {e}")

        if not self._transition(run_id, SessionState.GENERATING_SPEECH, text=text):
            return self._cancelled(text, False)

        out = self.audio_dir / f"{self.kind}-{time.strftime('%Y%m%d-%H%M%S')}-{run_id}.mp3"
        try:
            req = speech_request(text, locale, voice=self.voice, speed=self.speed)
            audio = self.speech.synthesize(req, out, cancel=cancel)
            if self._superseded(run_id, cancel):
                return self._cancelled(text, False)
            self.clock.load(audio, autoplay=False)
        except Exception as e:
            if self._superseded(run_id, cancel):
                return self._cancelled(text, False)
            err = e if isinstance(e, SpeechFailedError) else SpeechFailedError(str(e))
            if err is not e:
                err.__cause__ = e
            self._transition(run_id, SessionState.ERROR, error=err)
            return ReadingOutcome(ok=False, state=SessionState.ERROR, text=text, error=err)

        timeline = SentenceTimeline.for_narrative(text, self.clock.duration, locale=locale)
        if not self._transition(run_id, SessionState.READY, audio_path=audio, timeline=timeline):
            return self._cancelled(text, False)
        self._info(f"ready sentences={len(timeline)} duration={timeline.duration:.1f}s")
        return ReadingOutcome(ok=True, state=SessionState.READY, text=text, audio_path=audio, timeline=timeline)

    def rebuild_timeline(self) -> Optional[SentenceTimeline]:
        """Rebuild from the current text and the clock's duration."""
        with self._lock:
            if self._text is None:
                return None
            self._timeline = SentenceTimeline.for_narrative(self._text, self.clock.duration, locale=self.locale())
            return self._timeline

    # lifecycle

    def reset(self) -> None:
        with self._lock:
            self._run_id += 1
            if self._cancel is not None:
                self._cancel.set()
                self._cancel = None
        self.clock.unload()
        self._transition(
            None,
            SessionState.IDLE,
            input=None,
            text=None,
            audio_path=None,
            timeline=None,
            error=None,
        )

    cancel = reset

    def restore_last(self) -> Optional[LastReading]:
        """Load the persisted last reading of this kind as text without audio."""
        if self.store is None:
            return None
        last = self.store.last_reading(self.kind)
        if last is None:
            return None
        with self._lock:
            if self.is_busy:
                raise SessionBusyError(f"{self.kind} reading is in progress")
            self._text = last.narrative
        self._changed()
        return last

    def outcome(self) -> ReadingOutcome:
        with self._lock:
            return ReadingOutcome(
                ok=self._state == SessionState.READY,
                state=self._state,
                text=self._text,
                audio_path=self._audio_path,
                timeline=self._timeline,
                error=self._error,
            )

    def close(self) -> None:
        self.reset()
        if self._own_executor:
            self._executor.shutdown(wait=False)
