from pathlib import Path

from kahvefal.reader import render_lines, timeline_sidecar_path
from kahvefal.timeline import SentenceTimeline


def _text(segments):
    return "".join(t for _, t in segments)


def test_active_sentence_is_marked():
    tl = SentenceTimeline.build("Hello world. How are you? Fine thanks.", 9.0, locale="en")
    segments = render_lines(tl, 1, 8, 80)
    assert ("class:focus", "> How are you?\n") in segments
    assert "  Hello world." in _text(segments)


def test_window_limits_context():
    tl = SentenceTimeline.build("The cup is full. A bird flies. The road opens. Money comes. Love waits.", 5.0, locale="en")
    text = _text(render_lines(tl, 2, 1, 80))
    assert "The cup is full." not in text
    assert "A bird flies." in text and "Money comes." in text
    assert "Love waits." not in text
    assert text.startswith("...") and text.rstrip().endswith("...")


def test_empty_timeline_renders_placeholder():
    assert _text(render_lines(SentenceTimeline(), -1, 3, 80)) == "(no text)\n"


def test_sidecar_sits_beside_audio():
    assert timeline_sidecar_path(Path("/tmp/dream-1.mp3")) == Path("/tmp/dream-1.timeline.json")
