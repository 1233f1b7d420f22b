from __future__ import annotations

import shutil
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Protocol

from .errors import PlaybackError

try:
    import AVFoundation  # type: ignore
    from Foundation import NSURL  # type: ignore

    APPLE_AUDIO_AVAILABLE = True
except Exception:
    AVFoundation = None
    NSURL = None
    APPLE_AUDIO_AVAILABLE = False

DEFAULT_SAMPLE_INTERVAL = 0.1


class AudioBackend(Protocol):
    def open(self, path: Path) -> float:
        """Load ``path`` and return its duration in seconds."""
        ...

    def play(self) -> None:
        ...

    def pause(self) -> None:
        ...

    def stop(self) -> None:
        ...

    def position(self) -> float:
        ...

    def set_position(self, seconds: float) -> None:
        ...

    def is_playing(self) -> bool:
        ...

    def close(self) -> None:
        ...


def audio_duration_seconds(path: Path) -> float:
    cmd = [
        "ffprobe",
        "-v",
        "error",
        "-show_entries",
        "format=duration",
        "-of",
        "default=noprint_wrappers=1:nokey=1",
        str(path),
    ]
    p = subprocess.run(cmd, check=True, capture_output=True, text=True)
    try:
        return float((p.stdout or "").strip())
    except ValueError:
        return 0.0


class AVAudioBackend:
    """AVAudioPlayer through pyobjc (macOS)."""

    def __init__(self) -> None:
        if not APPLE_AUDIO_AVAILABLE:
            raise PlaybackError("AVFoundation playback requires macOS with pyobjc installed.")
        self._player = None

    def open(self, path: Path) -> float:
        url = NSURL.fileURLWithPath_(str(Path(path).resolve()))
        player, err = AVFoundation.AVAudioPlayer.alloc().initWithContentsOfURL_error_(url, None)
        if err is not None or player is None:
            raise PlaybackError(f"Failed to load audio: {err}")
        player.prepareToPlay()
        self._player = player
        return float(player.duration())

    def play(self) -> None:
        if self._player is not None:
            self._player.play()

    def pause(self) -> None:
        if self._player is not None:
            self._player.pause()

    def stop(self) -> None:
        if self._player is not None:
            self._player.stop()
            self._player.setCurrentTime_(0.0)

    def position(self) -> float:
        return float(self._player.currentTime()) if self._player is not None else 0.0

    def set_position(self, seconds: float) -> None:
        if self._player is not None:
            self._player.setCurrentTime_(float(seconds))

    def is_playing(self) -> bool:
        return bool(self._player.isPlaying()) if self._player is not None else False

    def close(self) -> None:
        if self._player is not None:
            self._player.stop()
        self._player = None


class FFplayBackend:
    """Plays through an ``ffplay`` subprocess; position is tracked on a monotonic clock.

    ffplay has no pause or seek control over stdin without a window, so pausing
    terminates the process and resuming starts a new one at the saved offset.
    """

    def __init__(self, binary: Optional[str] = None, *, monotonic: Callable[[], float] = time.monotonic) -> None:
        self._binary = binary or shutil.which("ffplay")
        if not self._binary:
            raise PlaybackError("ffplay not found; install ffmpeg to enable playback.")
        self._monotonic = monotonic
        self._path: Optional[Path] = None
        self._duration = 0.0
        self._offset = 0.0
        self._started_at: Optional[float] = None
        self._proc: Optional[subprocess.Popen] = None

    def open(self, path: Path) -> float:
        self.close()
        p = Path(path)
        if not p.exists():
            raise PlaybackError(f"Audio not found: {p}")
        try:
            self._duration = audio_duration_seconds(p)
        except (OSError, subprocess.CalledProcessError) as e:
            raise PlaybackError(f"Failed to probe audio duration for {p.name}: {e}") from e
        self._path = p
        self._offset = 0.0
        return self._duration

    def _running(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    def _kill(self) -> None:
        if self._proc is not None and self._proc.poll() is None:
            self._proc.terminate()
            try:
                self._proc.wait(timeout=2)
            except subprocess.TimeoutExpired:
                self._proc.kill()
        self._proc = None
        self._started_at = None

    def play(self) -> None:
        if self._path is None or self._running():
            return
        if self._offset >= self._duration > 0:
            self._offset = 0.0
        cmd = [
            self._binary,
            "-nodisp",
            "-autoexit",
            "-hide_banner",
            "-loglevel",
            "quiet",
            "-ss",
            f"{self._offset:.3f}",
            str(self._path),
        ]
        self._proc = subprocess.Popen(cmd, stdin=subprocess.DEVNULL, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        self._started_at = self._monotonic()

    def position(self) -> float:
        if self._started_at is None:
            return self._offset
        if self._proc is not None and self._proc.poll() is not None:
            return self._duration
        elapsed = self._monotonic() - self._started_at
        return max(0.0, min(self._duration, self._offset + elapsed))

    def pause(self) -> None:
        self._offset = self.position()
        self._kill()

    def stop(self) -> None:
        self._kill()
        self._offset = 0.0

    def set_position(self, seconds: float) -> None:
        was_running = self._running()
        self._kill()
        self._offset = max(0.0, min(float(seconds), self._duration))
        if was_running:
            self.play()

    def is_playing(self) -> bool:
        return self._running()

    def close(self) -> None:
        self._kill()
        self._path = None
        self._duration = 0.0
        self._offset = 0.0


def default_backend() -> AudioBackend:
    if APPLE_AUDIO_AVAILABLE:
        return AVAudioBackend()
    if shutil.which("ffplay"):
        return FFplayBackend()
    raise PlaybackError("No audio backend available (need macOS AVFoundation or ffplay).")


@dataclass(frozen=True)
class PlaybackState:
    is_playing: bool
    current_time: float
    duration: float

    @property
    def progress(self) -> float:
        if self.duration <= 0:
            return 0.0
        return max(0.0, min(1.0, self.current_time / self.duration))


class PlaybackClock:
    """Owns the single active audio resource and its playback position.

    While playing, a daemon thread samples the backend position every
    ``sample_interval`` seconds and pushes a ``PlaybackState`` to subscribers.
    ``current_time`` never moves backwards between samples; only ``seek`` and
    ``stop`` move it back. Pass ``autosample=False`` to drive ``sample()`` by
    hand.
    """

    def __init__(
        self,
        backend: Optional[AudioBackend] = None,
        *,
        sample_interval: float = DEFAULT_SAMPLE_INTERVAL,
        autosample: bool = True,
    ) -> None:
        self._backend = backend
        self.sample_interval = float(sample_interval)
        self._autosample = autosample
        self._lock = threading.RLock()
        self._listeners: List[Callable[[PlaybackState], None]] = []
        self._source: Optional[Path] = None
        self._duration = 0.0
        self._current = 0.0
        self._playing = False
        self._ticker_stop: Optional[threading.Event] = None

    # state

    @property
    def source(self) -> Optional[Path]:
        return self._source

    @property
    def duration(self) -> float:
        return self._duration

    @property
    def current_time(self) -> float:
        return self._current

    @property
    def is_playing(self) -> bool:
        return self._playing

    @property
    def is_loaded(self) -> bool:
        return self._source is not None

    def state(self) -> PlaybackState:
        with self._lock:
            return PlaybackState(is_playing=self._playing, current_time=self._current, duration=self._duration)

    def subscribe(self, callback: Callable[[PlaybackState], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def _unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _unsubscribe

    def _notify(self, snapshot: PlaybackState) -> None:
        for cb in list(self._listeners):
            cb(snapshot)

    # sampling

    def _start_sampling(self) -> None:
        if not self._autosample:
            return
        if self._ticker_stop is not None and not self._ticker_stop.is_set():
            return
        stop = threading.Event()
        self._ticker_stop = stop
        t = threading.Thread(target=self._run_sampler, args=(stop,), name="kahvefal-playback", daemon=True)
        t.start()

    def _halt_sampling(self) -> None:
        if self._ticker_stop is not None:
            self._ticker_stop.set()
            self._ticker_stop = None

    def _run_sampler(self, stop: threading.Event) -> None:
        while not stop.wait(self.sample_interval):
            self.sample()
            if not self._playing:
                stop.set()
                return

    def sample(self) -> PlaybackState:
        with self._lock:
            if self._playing and self._backend is not None:
                pos = max(0.0, min(float(self._backend.position()), self._duration))
                self._current = max(self._current, pos)
                if not self._backend.is_playing():
                    # Natural end: keep the final position, do not rewind.
                    self._playing = False
                    self._halt_sampling()
            snapshot = PlaybackState(is_playing=self._playing, current_time=self._current, duration=self._duration)
        self._notify(snapshot)
        return snapshot

    # controls

    def load(self, source: Path, autoplay: bool = False) -> float:
        with self._lock:
            self._halt_sampling()
            if self._backend is None:
                self._backend = default_backend()
            elif self._source is not None:
                self._backend.stop()
                self._backend.close()
            self._playing = False
            self._current = 0.0
            self._source = None
            self._duration = 0.0
            try:
                duration = float(self._backend.open(Path(source)))
            except PlaybackError:
                raise
            except Exception as e:
                raise PlaybackError(f"Failed to load audio {source}: {e}") from e
            self._source = Path(source)
            self._duration = max(0.0, duration)
        if autoplay:
            self.play()
        else:
            self._notify(self.state())
        return self._duration

    def play(self) -> None:
        with self._lock:
            if self._source is None or self._backend is None:
                return
            if self._current >= self._duration > 0:
                self._current = 0.0
                self._backend.set_position(0.0)
            self._backend.play()
            self._playing = True
            self._start_sampling()
            snapshot = PlaybackState(is_playing=True, current_time=self._current, duration=self._duration)
        self._notify(snapshot)

    def pause(self) -> None:
        with self._lock:
            if self._source is None or self._backend is None:
                return
            if self._playing:
                pos = max(0.0, min(float(self._backend.position()), self._duration))
                self._current = max(self._current, pos)
            self._backend.pause()
            self._playing = False
            self._halt_sampling()
            snapshot = PlaybackState(is_playing=False, current_time=self._current, duration=self._duration)
        self._notify(snapshot)

    def toggle(self) -> None:
        if self._playing:
            self.pause()
        else:
            self.play()

    def stop(self) -> None:
        with self._lock:
            self._halt_sampling()
            if self._backend is not None and self._source is not None:
                self._backend.stop()
            self._playing = False
            self._current = 0.0
            snapshot = PlaybackState(is_playing=False, current_time=0.0, duration=self._duration)
        self._notify(snapshot)

    def seek(self, fraction: float) -> None:
        with self._lock:
            if self._source is None or self._backend is None:
                return
            f = max(0.0, min(1.0, float(fraction)))
            t = f * self._duration
            was_playing = self._playing
            self._backend.set_position(t)
            self._current = t
            if was_playing and not self._backend.is_playing():
                self._backend.play()
            snapshot = PlaybackState(is_playing=self._playing, current_time=t, duration=self._duration)
        self._notify(snapshot)

    def seek_by(self, seconds: float) -> None:
        if self._duration <= 0:
            return
        self.seek((self._current + float(seconds)) / self._duration)

    def unload(self) -> None:
        with self._lock:
            self._halt_sampling()
            if self._backend is not None and self._source is not None:
                self._backend.stop()
                self._backend.close()
            self._source = None
            self._playing = False
            self._current = 0.0
            self._duration = 0.0
