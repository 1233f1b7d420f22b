from __future__ import annotations

import shutil
import threading
import textwrap
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .playback import PlaybackClock
from .timeline import SentenceTimeline


def _distance_style(dist: int) -> str:
    if dist <= 1:
        return "class:near"
    if dist <= 3:
        return "class:mid"
    return "class:far"


def render_lines(timeline: SentenceTimeline, idx: int, window: int, width: int) -> List[Tuple[str, str]]:
    """Formatted text for the sentences around ``idx``; the active one is highlighted."""
    if idx < 0 or not len(timeline):
        return [("class:meta", "(no text)\n")]
    lo = max(0, idx - window)
    hi = min(len(timeline) - 1, idx + window)
    segments: List[Tuple[str, str]] = []
    if lo > 0:
        segments.append(("class:edge", "...\n"))
    for i in range(lo, hi + 1):
        style = "class:focus" if i == idx else _distance_style(abs(i - idx))
        marker = "> " if i == idx else "  "
        wrapped = textwrap.wrap(timeline.sentences[i], width=max(20, width - 2)) or [""]
        for j, line in enumerate(wrapped):
            segments.append((style, (marker if j == 0 else "  ") + line + "\n"))
    if hi < len(timeline) - 1:
        segments.append(("class:edge", "...\n"))
    return segments


def read_along(
    clock: PlaybackClock,
    timeline: SentenceTimeline,
    *,
    window: int = 8,
    seek_seconds: float = 10.0,
    start_at: float = 0.0,
    title: Optional[str] = None,
) -> Dict[str, Any]:
    from prompt_toolkit.application import Application
    from prompt_toolkit.key_binding import KeyBindings
    from prompt_toolkit.layout import Layout
    from prompt_toolkit.layout.containers import HSplit, Window
    from prompt_toolkit.layout.controls import FormattedTextControl
    from prompt_toolkit.styles import Style

    if not clock.is_loaded:
        raise RuntimeError("Nothing loaded to read along with.")

    if start_at > 0 and clock.duration > 0:
        clock.seek(start_at / clock.duration)
    clock.play()

    state = {"quit": False, "window": max(0, int(window))}
    kb = KeyBindings()

    @kb.add(" ")
    def _(event: Any) -> None:
        clock.toggle()

    @kb.add("q")
    @kb.add("Q")
    @kb.add("escape")
    def _(event: Any) -> None:
        state["quit"] = True
        event.app.exit()

    @kb.add("left")
    @kb.add("b")
    def _(event: Any) -> None:
        clock.seek_by(-float(seek_seconds))

    @kb.add("right")
    @kb.add("f")
    def _(event: Any) -> None:
        clock.seek_by(float(seek_seconds))

    @kb.add("c-left")
    @kb.add("home")
    def _(event: Any) -> None:
        clock.seek(0.0)

    @kb.add("+")
    @kb.add("=")
    def _(event: Any) -> None:
        state["window"] = min(50, int(state["window"]) + 1)

    @kb.add("-")
    @kb.add("_")
    def _(event: Any) -> None:
        state["window"] = max(0, int(state["window"]) - 1)

    def render() -> List[Tuple[str, str]]:
        snap = clock.state()
        idx = timeline.active_index(snap.current_time)
        mode = "PLAY" if snap.is_playing else "PAUSE"
        info = f"{mode} {snap.current_time:6.2f}s/{snap.duration:6.2f}s  sentence={idx+1}/{len(timeline)}"
        controls = "space pause/resume | q/esc quit | <-/-> seek | home start | +/- context"
        cols = max(40, shutil.get_terminal_size((100, 30)).columns)

        body: List[Tuple[str, str]] = []
        if title:
            body.append(("class:header", title + "\n"))
        body.append(("class:header", info + "\n\n"))
        body.extend(render_lines(timeline, idx, int(state["window"]), cols))
        body.append(("", "\n"))
        body.append(("class:meta", controls))
        return body

    control = FormattedTextControl(render)
    root = HSplit([Window(control, wrap_lines=False)])
    style = Style.from_dict(
        {
            "header": "bold",
            "meta": "fg:#888888",
            "focus": "bold fg:#c0813b",
            "near": "fg:#b8b8b8",
            "mid": "fg:#7a7a7a",
            "far": "fg:#4b4b4b",
            "edge": "fg:#2f2f2f",
        }
    )
    app = Application(layout=Layout(root), key_bindings=kb, style=style, full_screen=False)

    def on_tick(snap: Any) -> None:
        app.invalidate()

    unsubscribe = clock.subscribe(on_tick)
    stop = threading.Event()

    def ticker() -> None:
        # Exits the screen once playback finishes on its own.
        while not stop.wait(0.1):
            if state["quit"]:
                return
            snap = clock.state()
            if not snap.is_playing and snap.duration > 0 and snap.current_time >= snap.duration - 0.05:
                state["quit"] = True
                loop = app.loop
                if loop is not None:
                    loop.call_soon_threadsafe(app.exit)
                return

    t = threading.Thread(target=ticker, daemon=True)
    t.start()
    try:
        app.run()
    finally:
        stop.set()
        unsubscribe()
        final = clock.state()
        clock.pause()
    return {
        "window": int(state["window"]),
        "position": round(final.current_time, 3),
        "sentence": timeline.active_index(final.current_time) + 1,
    }


def timeline_sidecar_path(audio_path: Path) -> Path:
    return audio_path.with_suffix(".timeline.json")
