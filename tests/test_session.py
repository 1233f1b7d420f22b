import pytest
from PIL import Image

from conftest import DREAM, NARRATIVE, FakeCompletion, FakeSpeech
from kahvefal.errors import (
    GenerationFailedError,
    InsufficientCreditError,
    PersistenceError,
    SessionBusyError,
    SpeechFailedError,
    ValidationError,
)
from kahvefal.images import EncodedImage
from kahvefal.session import ReadingInput, SessionState


def test_dream_reading_end_to_end(make_session):
    completion = FakeCompletion()
    speech = FakeSpeech()
    s = make_session(completion=completion, speech=speech)

    outcome = s.submit(ReadingInput(dream_text=DREAM)).result(timeout=5)

    assert outcome.ok
    assert s.state == SessionState.READY
    assert s.ledger.balance == 0
    assert outcome.text == NARRATIVE
    assert outcome.audio_path.exists()
    assert s.clock.duration == 10.0
    assert not s.clock.is_playing
    assert outcome.timeline.duration == 10.0
    assert outcome.timeline.start_times[0] == 0.0
    assert len(outcome.timeline) == 2
    assert completion.requests[0].temperature == 0.7
    assert completion.requests[0].user_content == (DREAM,)
    assert speech.requests[0].voice == "shimmer"
    assert s.store.last_reading("dream").narrative == NARRATIVE


def test_english_locale_selects_english_voice(make_session):
    speech = FakeSpeech()
    s = make_session(speech=speech)
    s.store.set_active_locale("en")
    assert s.run(ReadingInput(dream_text=DREAM), timeout=5).ok
    assert speech.requests[0].voice == "nova"


def test_states_progress_in_order(make_session):
    seen = []
    s = make_session(on_change=lambda session: seen.append(session.state))
    s.run(ReadingInput(dream_text=DREAM), timeout=5)
    assert seen == [
        SessionState.DEBITING,
        SessionState.GENERATING_TEXT,
        SessionState.GENERATING_SPEECH,
        SessionState.READY,
    ]


def test_no_credit_asks_for_purchase_and_skips_network(make_session):
    prompts = []
    completion = FakeCompletion()
    s = make_session(credits=0, completion=completion, on_purchase_required=lambda: prompts.append(1))

    outcome = s.submit(ReadingInput(dream_text=DREAM)).result(timeout=5)

    assert not outcome.ok
    assert isinstance(outcome.error, InsufficientCreditError)
    assert s.state == SessionState.ERROR
    assert prompts == [1]
    assert completion.requests == []
    assert s.ledger.balance == 0


def test_speech_failure_keeps_text_visible(make_session):
    s = make_session(speech=FakeSpeech(error=SpeechFailedError("voice unavailable")))
    outcome = s.run(ReadingInput(dream_text=DREAM), timeout=5)
    assert s.state == SessionState.ERROR
    assert isinstance(outcome.error, SpeechFailedError)
    assert outcome.text == NARRATIVE
    assert s.text == NARRATIVE
    assert not outcome.refunded
    assert s.ledger.balance == 0
    assert not s.clock.is_loaded


def test_audio_write_failure_reported_as_speech_failure(make_session):
    cause = PersistenceError("disk full")
    s = make_session(speech=FakeSpeech(error=cause))
    outcome = s.run(ReadingInput(dream_text=DREAM), timeout=5)
    assert isinstance(outcome.error, SpeechFailedError)
    assert outcome.error.__cause__ is cause


def test_generation_failure_refunds_the_credit(make_session):
    s = make_session(completion=FakeCompletion(error=GenerationFailedError("timeout")))
    outcome = s.run(ReadingInput(dream_text=DREAM), timeout=5)
    assert s.state == SessionState.ERROR
    assert isinstance(outcome.error, GenerationFailedError)
    assert outcome.text is None
    assert outcome.refunded
    assert s.ledger.balance == 1


def test_refund_can_be_disabled(make_session):
    s = make_session(
        completion=FakeCompletion(error=GenerationFailedError("timeout")),
        refund_on_generation_failure=False,
    )
    outcome = s.run(ReadingInput(dream_text=DREAM), timeout=5)
    assert not outcome.refunded
    assert s.ledger.balance == 0


def test_unexpected_completion_error_is_wrapped(make_session):
    boom = RuntimeError("connection reset")
    s = make_session(completion=FakeCompletion(error=boom))
    outcome = s.run(ReadingInput(dream_text=DREAM), timeout=5)
    assert isinstance(outcome.error, GenerationFailedError)
    assert outcome.error.__cause__ is boom


def test_blank_completion_counts_as_failure(make_session):
    s = make_session(completion=FakeCompletion(text="   "))
    outcome = s.run(ReadingInput(dream_text=DREAM), timeout=5)
    assert isinstance(outcome.error, GenerationFailedError)
    assert s.ledger.balance == 1


@pytest.mark.parametrize("text", ["too short", "x" * 5001, "   "])
def test_invalid_dream_spends_nothing(make_session, text):
    completion = FakeCompletion()
    s = make_session(completion=completion)
    with pytest.raises(ValidationError):
        s.submit(ReadingInput(dream_text=text))
    assert s.state == SessionState.IDLE
    assert s.ledger.balance == 1
    assert completion.requests == []


def test_dream_length_bounds_are_inclusive(make_session):
    s = make_session(credits=2)
    assert s.run(ReadingInput(dream_text="x" * 20), timeout=5).ok
    assert s.run(ReadingInput(dream_text="y" * 5000), timeout=5).ok


def test_coffee_without_cup_is_rejected(make_session):
    s = make_session("coffee")
    with pytest.raises(ValidationError):
        s.submit(ReadingInput())
    assert s.ledger.balance == 1


def test_coffee_reading_sends_images(make_session, tmp_path):
    cup = tmp_path / "cup.png"
    Image.new("RGB", (800, 600), "brown").save(cup)
    completion = FakeCompletion()
    s = make_session("coffee", completion=completion)
    s.set_input(cup=cup)
    assert s.state == SessionState.INPUT_READY

    outcome = s.submit().result(timeout=5)

    assert outcome.ok
    request = completion.requests[0]
    assert request.temperature == 0.5
    images = [c for c in request.user_content if isinstance(c, EncodedImage)]
    assert len(images) == 1
    assert s.store.last_reading("coffee").input == str(cup)


def test_second_submit_while_busy_is_rejected(make_session, gate):
    s = make_session(credits=3, completion=FakeCompletion(gate=gate))
    future = s.submit(ReadingInput(dream_text=DREAM))
    with pytest.raises(SessionBusyError):
        s.submit(ReadingInput(dream_text=DREAM))
    with pytest.raises(SessionBusyError):
        s.set_input(dream_text=DREAM)
    gate.set()
    assert future.result(timeout=5).ok
    assert s.ledger.balance == 2


def test_reset_discards_in_flight_run_and_refunds(make_session, gate):
    speech = FakeSpeech()
    s = make_session(completion=FakeCompletion(gate=gate), speech=speech)
    future = s.submit(ReadingInput(dream_text=DREAM))
    s.reset()
    assert s.state == SessionState.IDLE
    gate.set()
    outcome = future.result(timeout=5)
    assert outcome.cancelled
    assert outcome.refunded
    assert s.state == SessionState.IDLE
    assert s.text is None
    assert speech.requests == []
    assert s.ledger.balance == 1


def test_resubmit_from_ready_replaces_reading(make_session):
    s = make_session(credits=2)
    first = s.run(ReadingInput(dream_text=DREAM), timeout=5)
    s.clock.play()
    s.completion.text = "Another story begins. It ends well."
    second = s.run(ReadingInput(dream_text=DREAM + " Again."), timeout=5)
    assert second.ok
    assert second.audio_path != first.audio_path
    assert s.text == "Another story begins. It ends well."
    assert not s.clock.is_playing
    assert s.ledger.balance == 0


def test_reset_from_ready_stops_clock(make_session):
    s = make_session()
    s.run(ReadingInput(dream_text=DREAM), timeout=5)
    s.clock.play()
    s.reset()
    assert s.state == SessionState.IDLE
    assert not s.clock.is_loaded
    assert s.timeline is None


def test_active_sentence_follows_clock(make_session):
    s = make_session()
    s.run(ReadingInput(dream_text=DREAM), timeout=5)
    assert s.active_sentence_index() == 0
    s.clock.seek(0.95)
    assert s.active_sentence_index() == 1


def test_restore_last_reading(make_session, store):
    first = make_session(store=store)
    first.run(ReadingInput(dream_text=DREAM), timeout=5)
    other = make_session(store=store)
    last = other.restore_last()
    assert last.narrative == NARRATIVE
    assert other.text == NARRATIVE
    assert make_session("coffee", store=store).restore_last() is None


def test_sessions_of_different_kinds_share_the_ledger(make_session, store):
    dream = make_session(store=store, credits=2)
    coffee = make_session("coffee", store=store, ledger=dream.ledger)
    dream.run(ReadingInput(dream_text=DREAM), timeout=5)
    assert coffee.ledger.balance == 1
    assert coffee.state == SessionState.IDLE


def _failing_write(*args, **kwargs):
    raise PersistenceError("read-only disk")


def test_debit_write_failure_ends_in_error(make_session, store, monkeypatch):
    completion = FakeCompletion()
    s = make_session(completion=completion, store=store)
    monkeypatch.setattr(store, "set_remaining_credits", _failing_write)

    outcome = s.submit(ReadingInput(dream_text=DREAM)).result(timeout=5)

    assert not outcome.ok
    assert isinstance(outcome.error, PersistenceError)
    assert s.state == SessionState.ERROR
    assert not s.is_busy
    assert completion.requests == []

    monkeypatch.undo()
    assert s.run(ReadingInput(dream_text=DREAM), timeout=5).ok


def test_refund_write_failure_still_ends_in_error(make_session, store, gate, monkeypatch):
    completion = FakeCompletion(error=GenerationFailedError("timeout"), gate=gate)
    s = make_session(completion=completion, store=store)
    fut = s.submit(ReadingInput(dream_text=DREAM))
    monkeypatch.setattr(store, "set_remaining_credits", _failing_write)
    gate.set()

    outcome = fut.result(timeout=5)

    assert s.state == SessionState.ERROR
    assert isinstance(outcome.error, GenerationFailedError)
    assert not outcome.refunded
    assert s.ledger.balance == 0


def test_unexpected_worker_error_ends_in_error(make_session, monkeypatch):
    s = make_session()
    boom = RuntimeError("timeline exploded")

    def _explode(*args, **kwargs):
        raise boom

    monkeypatch.setattr("kahvefal.session.SentenceTimeline.for_narrative", _explode)
    outcome = s.run(ReadingInput(dream_text=DREAM), timeout=5)

    assert s.state == SessionState.ERROR
    assert outcome.error.__cause__ is boom
    assert outcome.text == NARRATIVE
