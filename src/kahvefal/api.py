from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .config import DEFAULT_CONFIG, cfg_get, merge_config
from .credits import CreditsLedger
from .playback import AudioBackend, AVAudioBackend, FFplayBackend, PlaybackClock
from .prompts import load_prompt_table
from .services import CompletionService, OpenAICompletionService, OpenAISpeechService, SpeechService
from .session import KIND_COFFEE, KIND_DREAM, FortuneSession, ReadingInput, ReadingOutcome
from .state import LastReading, StateStore
from .store import CreditPack, EntitlementStore, PurchaseProcessor, SandboxPurchaseProcessor


def backend_from_name(name: Optional[str]) -> Optional[AudioBackend]:
    """``auto`` (or nothing) defers the choice to the clock's first load."""
    n = (name or "auto").strip().lower()
    if n == "auto":
        return None
    if n in {"av", "avfoundation"}:
        return AVAudioBackend()
    if n == "ffplay":
        return FFplayBackend()
    raise ValueError(f"Unknown audio backend '{name}'. Valid: auto, avfoundation, ffplay")


class Kahve:
    """Composition root: one state store, one ledger and one session per reading kind.

    Everything a front end needs is constructed here from a config dict (see
    ``kahvefal.config``); tests swap in fakes through the keyword arguments.
    """

    def __init__(
        self,
        cfg: Optional[Dict[str, Any]] = None,
        *,
        store: Optional[StateStore] = None,
        completion: Optional[CompletionService] = None,
        speech: Optional[SpeechService] = None,
        processor: Optional[PurchaseProcessor] = None,
        backend_factory: Optional[Callable[[], Optional[AudioBackend]]] = None,
        info_cb: Optional[Callable[[str], None]] = None,
        on_purchase_required: Optional[Callable[[], None]] = None,
    ) -> None:
        self.cfg = cfg if cfg is not None else merge_config(DEFAULT_CONFIG, {})
        self.info_cb = info_cb
        self.on_purchase_required = on_purchase_required

        state_file = cfg_get(self.cfg, "global.state_file")
        self.store = store or StateStore(Path(state_file).expanduser() if state_file else None)
        self.ledger = CreditsLedger(
            self.store,
            first_launch_bonus=int(cfg_get(self.cfg, "session.first_launch_bonus", 1)),
        )
        self.completion = completion or OpenAICompletionService(
            model=str(cfg_get(self.cfg, "completion.model", "gpt-4o-mini")),
            request_timeout_seconds=float(cfg_get(self.cfg, "completion.request_timeout_seconds", 60)),
            max_retries=int(cfg_get(self.cfg, "completion.max_retries", 3)),
            info_cb=info_cb,
        )
        self.speech = speech or OpenAISpeechService(
            model=str(cfg_get(self.cfg, "speech.model", "tts-1-hd")),
            request_timeout_seconds=float(cfg_get(self.cfg, "speech.request_timeout_seconds", 60)),
            max_retries=int(cfg_get(self.cfg, "speech.max_retries", 3)),
            info_cb=info_cb,
        )
        self.entitlements = EntitlementStore(self.ledger, processor or SandboxPurchaseProcessor(), info_cb=info_cb)
        self._backend_factory = backend_factory or (lambda: backend_from_name(cfg_get(self.cfg, "read.backend", "auto")))
        prompts_file = cfg_get(self.cfg, "global.prompts_file")
        self.prompt_table = load_prompt_table(Path(prompts_file).expanduser() if prompts_file else None)
        self.audio_dir = Path(str(cfg_get(self.cfg, "global.audio_dir", "~/.local/share/kahvefal/audio"))).expanduser()
        self._sessions: Dict[str, FortuneSession] = {}

    def session(self, kind: str) -> FortuneSession:
        s = self._sessions.get(kind)
        if s is None:
            clock = PlaybackClock(
                self._backend_factory(),
                sample_interval=float(cfg_get(self.cfg, "read.sample_interval", 0.1)),
            )
            s = FortuneSession(
                kind,
                ledger=self.ledger,
                completion=self.completion,
                speech=self.speech,
                clock=clock,
                audio_dir=self.audio_dir,
                store=self.store,
                locale=self.store.active_locale,
                prompt_table=self.prompt_table,
                voice=cfg_get(self.cfg, "speech.voice"),
                speed=float(cfg_get(self.cfg, "speech.speed", 1.0)),
                refund_on_generation_failure=bool(cfg_get(self.cfg, "session.refund_on_generation_failure", True)),
                on_purchase_required=self.on_purchase_required,
                info_cb=self.info_cb,
            )
            self._sessions[kind] = s
        return s

    # readings

    def dream(self, text: str, *, timeout: Optional[float] = None) -> ReadingOutcome:
        return self.session(KIND_DREAM).run(ReadingInput(dream_text=text), timeout=timeout)

    def coffee(self, cup: Path, plate: Optional[Path] = None, *, timeout: Optional[float] = None) -> ReadingOutcome:
        value = ReadingInput(cup=Path(cup).expanduser(), plate=Path(plate).expanduser() if plate else None)
        return self.session(KIND_COFFEE).run(value, timeout=timeout)

    def last(self, kind: str) -> Optional[LastReading]:
        return self.store.last_reading(kind)

    # credits

    def credits(self) -> int:
        return self.ledger.balance

    def packs(self) -> List[CreditPack]:
        return self.entitlements.catalog()

    def buy(self, product_id: str) -> int:
        return self.entitlements.purchase(product_id)

    # locale

    def locale(self) -> str:
        return self.store.active_locale()

    def set_locale(self, locale: str) -> str:
        self.store.set_active_locale(locale)
        return self.store.active_locale()

    def close(self) -> None:
        for s in self._sessions.values():
            s.close()
        self._sessions.clear()
