from __future__ import annotations

import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple, Union

from dotenv import load_dotenv
from openai import OpenAI

from .errors import GenerationFailedError, PersistenceError, SpeechFailedError
from .images import EncodedImage
from .prompts import IMAGE_LABELS, normalize_locale, select_prompt, voice_for_locale
from .text import prepare_speech_text

load_dotenv()

DEFAULT_COMPLETION_MODEL = "gpt-4o-mini"
DEFAULT_SPEECH_MODEL = "tts-1-hd"
VALID_VOICES = {"alloy", "echo", "fable", "onyx", "nova", "shimmer"}

UserContent = Union[str, EncodedImage]


@dataclass(frozen=True)
class CompletionRequest:
    system_prompt: str
    user_content: Tuple[UserContent, ...]
    max_output_tokens: int = 750
    temperature: float = 0.7


@dataclass(frozen=True)
class SpeechRequest:
    voice: str
    input: str
    speed: float = 1.0
    format: str = "mp3"


class CompletionService(Protocol):
    def complete(self, request: CompletionRequest, *, cancel: Optional[threading.Event] = None) -> str:
        ...


class SpeechService(Protocol):
    def synthesize(
        self,
        request: SpeechRequest,
        output_path: Path,
        *,
        cancel: Optional[threading.Event] = None,
    ) -> Path:
        ...


def dream_request(dream_text: str, locale: Optional[str], table: Optional[Dict[str, Dict[str, Any]]] = None) -> CompletionRequest:
    profile = select_prompt("dream", locale, table)
    return CompletionRequest(
        system_prompt=profile.system_prompt,
        user_content=(dream_text.strip(),),
        max_output_tokens=profile.max_tokens,
        temperature=profile.temperature,
    )


def coffee_request(
    cup: EncodedImage,
    plate: Optional[EncodedImage],
    locale: Optional[str],
    table: Optional[Dict[str, Dict[str, Any]]] = None,
) -> CompletionRequest:
    profile = select_prompt("cup_only" if plate is None else "cup_plate", locale, table)
    labels = IMAGE_LABELS[normalize_locale(locale)]
    content: List[UserContent] = [labels["cup"], cup]
    if plate is not None:
        content.extend([labels["plate"], plate])
    return CompletionRequest(
        system_prompt=profile.system_prompt,
        user_content=tuple(content),
        max_output_tokens=profile.max_tokens,
        temperature=profile.temperature,
    )


def speech_request(narrative: str, locale: Optional[str], *, voice: Optional[str] = None, speed: float = 1.0) -> SpeechRequest:
    v = (voice or voice_for_locale(locale)).strip().lower()
    if v not in VALID_VOICES:
        raise ValueError(f"Invalid voice '{v}'. Valid: {', '.join(sorted(VALID_VOICES))}")
    return SpeechRequest(voice=v, input=prepare_speech_text(narrative), speed=float(speed), format="mp3")


def build_messages(request: CompletionRequest) -> List[Dict[str, Any]]:
    parts: List[Dict[str, Any]] = []
    for item in request.user_content:
        if isinstance(item, EncodedImage):
            parts.append({"type": "image_url", "image_url": {"url": item.data_url}})
        elif str(item).strip():
            parts.append({"type": "text", "text": str(item)})
    return [
        {"role": "system", "content": request.system_prompt},
        {"role": "user", "content": parts},
    ]


def _backoff(attempt: int) -> float:
    return min(2.0 * attempt, 8.0)


@dataclass
class _OpenAIBase:
    api_key: Optional[str] = None
    request_timeout_seconds: float = 60.0
    max_retries: int = 3
    client: Any = None
    info_cb: Optional[Callable[[str], None]] = None
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def _client(self) -> Any:
        if self.client is None:
            key = self.api_key or os.getenv("OPENAI_API_KEY")
            if not key:
                raise RuntimeError("OPENAI_API_KEY is required for readings.")
            self.client = OpenAI(api_key=key)
        return self.client

    def _info(self, message: str) -> None:
        if self.info_cb:
            self.info_cb(message)


@dataclass
class OpenAICompletionService(_OpenAIBase):
    model: str = DEFAULT_COMPLETION_MODEL

    def complete(self, request: CompletionRequest, *, cancel: Optional[threading.Event] = None) -> str:
        messages = build_messages(request)
        attempts = max(1, int(self.max_retries))
        last_err: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            if cancel is not None and cancel.is_set():
                raise GenerationFailedError("Completion cancelled")
            try:
                resp = self._client().chat.completions.create(
                    model=self.model,
                    messages=messages,
                    max_tokens=int(request.max_output_tokens),
                    temperature=float(request.temperature),
                    timeout=float(self.request_timeout_seconds),
                )
                content = (resp.choices[0].message.content or "").strip() if resp.choices else ""
                if content:
                    return content
                last_err = GenerationFailedError("Completion returned no content")
            except Exception as e:
                last_err = e
            self._info(f"completion retry attempt={attempt}/{attempts} err={type(last_err).__name__}")
            if attempt < attempts:
                self.sleep(_backoff(attempt))
        raise GenerationFailedError(f"Completion failed after {attempts} attempts: {last_err}") from last_err


@dataclass
class OpenAISpeechService(_OpenAIBase):
    model: str = DEFAULT_SPEECH_MODEL

    def synthesize(
        self,
        request: SpeechRequest,
        output_path: Path,
        *,
        cancel: Optional[threading.Event] = None,
    ) -> Path:
        if not request.input.strip():
            raise SpeechFailedError("Nothing to speak after normalization")
        out = Path(output_path)
        attempts = max(1, int(self.max_retries))
        last_err: Optional[Exception] = None
        resp: Any = None
        for attempt in range(1, attempts + 1):
            if cancel is not None and cancel.is_set():
                raise SpeechFailedError("Speech synthesis cancelled")
            try:
                resp = self._client().audio.speech.create(
                    model=self.model,
                    voice=request.voice,
                    input=request.input,
                    speed=float(request.speed),
                    response_format=request.format,
                    timeout=float(self.request_timeout_seconds),
                )
                last_err = None
                break
            except Exception as e:
                last_err = e
                self._info(f"speech retry attempt={attempt}/{attempts} err={type(e).__name__}")
                if attempt < attempts:
                    self.sleep(_backoff(attempt))
        if last_err is not None:
            raise SpeechFailedError(f"Speech synthesis failed after {attempts} attempts: {last_err}") from last_err

        try:
            out.parent.mkdir(parents=True, exist_ok=True)
            resp.write_to_file(str(out))
        except OSError as e:
            raise PersistenceError(f"Failed to save audio to {out}: {e}") from e
        if not out.exists() or out.stat().st_size == 0:
            raise SpeechFailedError(f"Speech synthesis produced an empty file: {out}")
        self._info(f"speech saved voice={request.voice} chars={len(request.input):,} out={out.name}")
        return out
