from kahvefal.text import prepare_speech_text, speakable_lines, strip_inline_markdown


def test_markdown_markers_removed_and_lines_joined():
    raw = "### Fincan\n\n**Kuş** figürü var\nYolculuk görünüyor."
    assert prepare_speech_text(raw) == "Fincan. Kuş figürü var. Yolculuk görünüyor."


def test_lines_ending_in_punctuation_do_not_get_a_second_stop():
    assert prepare_speech_text("Hello there!\nHow are you?\nFine") == "Hello there! How are you? Fine"


def test_blank_and_marker_only_lines_dropped():
    assert speakable_lines("#\n\n  \n- item\n**") == ["item"]
    assert prepare_speech_text("") == ""
    assert prepare_speech_text("###\n\n") == ""


def test_inline_markdown_keeps_text():
    assert strip_inline_markdown("Some `code`, *soft* and __strong__ words") == "Some code, soft and strong words"
    assert strip_inline_markdown("half **open") == "half open"
