import threading
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from kahvefal.errors import GenerationFailedError, PersistenceError, SpeechFailedError
from kahvefal.images import EncodedImage
from kahvefal.services import (
    CompletionRequest,
    OpenAICompletionService,
    OpenAISpeechService,
    build_messages,
    coffee_request,
    dream_request,
    speech_request,
)


def _chat_response(text):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=text))])


def _completion_service(client, **kwargs):
    sleeps = []
    svc = OpenAICompletionService(client=client, sleep=sleeps.append, **kwargs)
    return svc, sleeps


def test_completion_sends_model_limits_and_timeout():
    client = MagicMock()
    client.chat.completions.create.return_value = _chat_response("  A calm sea.  ")
    svc, _ = _completion_service(client, request_timeout_seconds=30)

    text = svc.complete(dream_request("I dreamt of a calm sea at night.", "en"))

    assert text == "A calm sea."
    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs["model"] == "gpt-4o-mini"
    assert kwargs["max_tokens"] == 750
    assert kwargs["temperature"] == 0.7
    assert kwargs["timeout"] == 30.0
    assert kwargs["messages"][0]["role"] == "system"


def test_completion_retries_with_backoff():
    client = MagicMock()
    client.chat.completions.create.side_effect = [RuntimeError("502"), _chat_response("ok then")]
    svc, sleeps = _completion_service(client)
    assert svc.complete(CompletionRequest("sys", ("hi",))) == "ok then"
    assert sleeps == [2.0]


def test_completion_gives_up_after_max_retries():
    client = MagicMock()
    client.chat.completions.create.side_effect = RuntimeError("down")
    svc, sleeps = _completion_service(client, max_retries=3)
    with pytest.raises(GenerationFailedError) as exc:
        svc.complete(CompletionRequest("sys", ("hi",)))
    assert client.chat.completions.create.call_count == 3
    assert sleeps == [2.0, 4.0]
    assert isinstance(exc.value.__cause__, RuntimeError)


def test_empty_completion_is_a_failure():
    client = MagicMock()
    client.chat.completions.create.return_value = _chat_response("")
    svc, _ = _completion_service(client, max_retries=1)
    with pytest.raises(GenerationFailedError):
        svc.complete(CompletionRequest("sys", ("hi",)))


def test_cancelled_completion_makes_no_request():
    client = MagicMock()
    cancel = threading.Event()
    cancel.set()
    svc, _ = _completion_service(client)
    with pytest.raises(GenerationFailedError):
        svc.complete(CompletionRequest("sys", ("hi",)), cancel=cancel)
    client.chat.completions.create.assert_not_called()


def test_missing_api_key_fails_generation(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    svc = OpenAICompletionService(max_retries=1)
    with pytest.raises(GenerationFailedError, match="OPENAI_API_KEY"):
        svc.complete(CompletionRequest("sys", ("hi",)))


def test_messages_carry_images_as_data_urls():
    img = EncodedImage(data=b"\xff\xd8jpeg")
    req = coffee_request(img, img, "tr")
    messages = build_messages(req)
    parts = messages[1]["content"]
    assert [p["type"] for p in parts] == ["text", "image_url", "text", "image_url"]
    assert parts[1]["image_url"]["url"].startswith("data:image/jpeg;base64,")
    assert req.temperature == 0.5


def test_cup_only_request_uses_cup_only_prompt():
    req = coffee_request(EncodedImage(data=b"x"), None, "en")
    assert len(req.user_content) == 2
    assert req.user_content[0] == "Here is the coffee cup:"


def test_speech_request_voice_and_normalization():
    req = speech_request("## Title\n**Bold** line", "tr")
    assert req.voice == "shimmer"
    assert req.input == "Title. Bold line"
    assert req.format == "mp3"
    assert speech_request("Hi.", "en").voice == "nova"
    with pytest.raises(ValueError):
        speech_request("Hi.", "en", voice="robot")


def _speech_client(payload=b"ID3audio"):
    client = MagicMock()
    resp = MagicMock()
    resp.write_to_file.side_effect = lambda path: Path(path).write_bytes(payload)
    client.audio.speech.create.return_value = resp
    return client


def test_speech_writes_audio_file(tmp_path):
    client = _speech_client()
    svc = OpenAISpeechService(client=client, sleep=lambda s: None)
    out = svc.synthesize(speech_request("Hello there.", "en"), tmp_path / "out" / "a.mp3")
    assert out.read_bytes() == b"ID3audio"
    kwargs = client.audio.speech.create.call_args.kwargs
    assert kwargs["model"] == "tts-1-hd"
    assert kwargs["voice"] == "nova"
    assert kwargs["response_format"] == "mp3"
    assert kwargs["speed"] == 1.0


def test_speech_empty_audio_is_a_failure(tmp_path):
    svc = OpenAISpeechService(client=_speech_client(b""), sleep=lambda s: None)
    with pytest.raises(SpeechFailedError):
        svc.synthesize(speech_request("Hello there.", "en"), tmp_path / "a.mp3")


def test_speech_write_error_is_persistence_error(tmp_path):
    client = MagicMock()
    client.audio.speech.create.return_value.write_to_file.side_effect = OSError("read-only")
    svc = OpenAISpeechService(client=client, sleep=lambda s: None)
    with pytest.raises(PersistenceError):
        svc.synthesize(speech_request("Hello there.", "en"), tmp_path / "a.mp3")


def test_speech_retries_then_fails(tmp_path):
    client = MagicMock()
    client.audio.speech.create.side_effect = RuntimeError("429")
    svc = OpenAISpeechService(client=client, max_retries=2, sleep=lambda s: None)
    with pytest.raises(SpeechFailedError):
        svc.synthesize(speech_request("Hello there.", "en"), tmp_path / "a.mp3")
    assert client.audio.speech.create.call_count == 2
