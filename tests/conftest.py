import threading
from pathlib import Path

import pytest

from kahvefal.credits import CreditsLedger
from kahvefal.playback import PlaybackClock
from kahvefal.session import FortuneSession
from kahvefal.state import StateStore

DREAM = "I was walking by the sea and a white horse followed me home."
NARRATIVE = "A white horse is a good sign. Your path will open soon."


class FakeBackend:
    def __init__(self, duration=10.0):
        self.duration = duration
        self.pos = 0.0
        self.playing = False
        self.opened = []
        self.closed = 0
        self.fail = None

    def open(self, path):
        if self.fail is not None:
            raise self.fail
        self.opened.append(Path(path))
        self.pos = 0.0
        self.playing = False
        return self.duration

    def play(self):
        self.playing = True

    def pause(self):
        self.playing = False

    def stop(self):
        self.playing = False
        self.pos = 0.0

    def position(self):
        return self.pos

    def set_position(self, seconds):
        self.pos = seconds

    def is_playing(self):
        return self.playing

    def close(self):
        self.closed += 1


class FakeCompletion:
    def __init__(self, text=NARRATIVE, error=None, gate=None):
        self.text = text
        self.error = error
        self.gate = gate
        self.requests = []

    def complete(self, request, *, cancel=None):
        self.requests.append(request)
        if self.gate is not None:
            self.gate.wait(5)
        if self.error is not None:
            raise self.error
        return self.text


class FakeSpeech:
    def __init__(self, error=None):
        self.error = error
        self.requests = []

    def synthesize(self, request, output_path, *, cancel=None):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(b"ID3fake")
        return output_path


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("KAHVEFAL_CONFIG", str(home / "config.json"))
    monkeypatch.setenv("KAHVEFAL_STATE", str(home / "state.json"))
    monkeypatch.delenv("KAHVEFAL_PROMPTS_FILE", raising=False)
    monkeypatch.chdir(tmp_path)
    return home


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def store(tmp_path):
    return StateStore(tmp_path / "state.json")


@pytest.fixture
def make_session(tmp_path):
    sessions = []

    def _make(kind="dream", *, credits=1, completion=None, speech=None, store=None, **kwargs):
        st = store or StateStore(tmp_path / "state.json")
        if not st.has_launched_before():
            st.record_first_launch(credits)
        ledger = kwargs.pop("ledger", None) or CreditsLedger(st)
        s = FortuneSession(
            kind,
            ledger=ledger,
            completion=completion or FakeCompletion(),
            speech=speech or FakeSpeech(),
            clock=PlaybackClock(FakeBackend(), autosample=False),
            audio_dir=tmp_path / "audio",
            store=st,
            **kwargs,
        )
        sessions.append(s)
        return s

    yield _make
    for s in sessions:
        s.close()


@pytest.fixture
def gate():
    return threading.Event()
