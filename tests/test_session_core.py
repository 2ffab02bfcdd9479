from __future__ import annotations

import math
from dataclasses import dataclass, field

import pytest

from nback_trainer.config import SessionTimingConfig
from nback_trainer.domain import Classification, Modality, TrainingMode
from nback_trainer.errors import ConfigurationError, StateError
from nback_trainer.events import ALL_EVENTS, EventType, LocalEventBus
from nback_trainer.ports import NullAudioPlayer
from nback_trainer.sequence import SequenceConfig
from nback_trainer.session import NBackSession, SessionState, build_nback_session


@dataclass
class FakeClock:
    t: float = 0.0

    def now(self) -> float:
        return self.t

    def advance(self, dt: float) -> None:
        self.t += float(dt)


@dataclass
class ScriptedRng:
    """Replays fixed draws so a test can pin down the exact stimulus stream."""

    randoms: list[float] = field(default_factory=list)
    ranges: list[int] = field(default_factory=list)

    def random(self) -> float:
        return self.randoms.pop(0)

    def randrange(self, stop: int) -> int:
        value = self.ranges.pop(0)
        assert 0 <= value < stop
        return value


def _scenario_a_session(clock: FakeClock, audio: NullAudioPlayer | None = None) -> NBackSession:
    # Dual 2-back, 5 trials. Trial 2 matches on both modalities, trial 4 on
    # audio only; everything else is a non-match.
    rng = ScriptedRng(
        randoms=[0.0, 0.0, 0.9, 0.9, 0.9, 0.0],
        ranges=[0, 0, 4, 1, 0, 0, 5],
    )
    return NBackSession(
        config=SequenceConfig(n_back=2, mode=TrainingMode.DUAL, trial_count=5),
        clock=clock,
        rng=rng,
        audio=audio,
    )


def _respond_perfectly(clock: FakeClock, session: NBackSession) -> None:
    for trial in session.trials:
        clock.advance(0.5)
        session.update()
        if trial.is_position_match:
            assert session.respond_position() is True
        if trial.is_audio_match:
            assert session.respond_audio() is True
        clock.advance(2.5)
        session.update()


def test_scripted_stream_has_matches_on_both_modalities() -> None:
    session = _scenario_a_session(FakeClock())
    trials = session.trials
    assert [t.position for t in trials] == [0, 4, 0, 0, 6]
    assert [t.letter for t in trials] == ["C", "H", "C", "C", "C"]
    assert [t.is_position_match for t in trials] == [False, False, True, False, False]
    assert [t.is_audio_match for t in trials] == [False, False, True, False, True]


def test_perfect_dual_session_scores_full_accuracy() -> None:
    clock = FakeClock()
    session = _scenario_a_session(clock)
    session.start()
    _respond_perfectly(clock, session)

    assert session.state is SessionState.COMPLETED
    result = session.result()
    assert result.completed is True
    assert result.combined_accuracy == pytest.approx(100.0)
    assert math.isfinite(result.combined_d_prime)
    assert result.combined_d_prime > 0.0
    assert result.position_stats.hits == 1
    assert result.audio_stats.hits == 2
    assert result.duration_ms == pytest.approx(15000.0)


def test_every_trial_is_classified_for_active_modalities() -> None:
    clock = FakeClock()
    session = build_nback_session(clock=clock, n_back=2, mode=TrainingMode.DUAL, trial_count=12, seed=77)
    session.start()
    for i, trial in enumerate(session.trials):
        clock.advance(1.0)
        if i % 3 == 0:
            session.respond_position()
        if i % 4 == 0:
            session.respond_audio()
        clock.advance(2.0)
        session.update()

    results = session.trial_results()
    assert [r.trial_index for r in results] == list(range(12))
    for r in results:
        assert r.position_classification is not None
        assert r.audio_classification is not None
        expected_pos = Classification.HIT if r.is_position_match else Classification.FALSE_ALARM
        if not r.position_response:
            expected_pos = Classification.MISS if r.is_position_match else Classification.CORRECT_REJECTION
        assert r.position_classification is expected_pos
        assert r.position_response is (r.trial_index % 3 == 0)


def test_single_mode_leaves_inactive_modality_unclassified() -> None:
    clock = FakeClock()
    session = build_nback_session(clock=clock, n_back=1, mode=TrainingMode.SINGLE_POSITION, trial_count=4, seed=1)
    session.start()
    clock.advance(12.0)
    session.update()
    for r in session.trial_results():
        assert r.audio_classification is None
        assert r.position_classification is not None


def test_update_moves_presenting_to_awaiting_response() -> None:
    clock = FakeClock()
    session = build_nback_session(clock=clock, n_back=1, mode=TrainingMode.DUAL, trial_count=5, seed=2)
    assert session.state is SessionState.IDLE
    session.start()
    assert session.state is SessionState.PRESENTING
    session.update()
    assert session.state is SessionState.AWAITING_RESPONSE
    assert session.time_remaining_s() == pytest.approx(3.0)


def test_catch_up_scores_expired_windows_in_order() -> None:
    clock = FakeClock()
    session = build_nback_session(clock=clock, n_back=1, mode=TrainingMode.DUAL, trial_count=20, seed=3)
    session.start()
    clock.advance(10.0)
    session.update()

    assert [r.trial_index for r in session.trial_results()] == [0, 1, 2]
    assert session.current_index == 3
    assert session.state is SessionState.PRESENTING
    assert session.time_remaining_s() == pytest.approx(2.0)


def test_first_response_wins_and_records_latency() -> None:
    clock = FakeClock()
    session = build_nback_session(clock=clock, n_back=1, mode=TrainingMode.DUAL, trial_count=5, seed=4)
    session.start()
    clock.advance(0.75)
    assert session.respond_position() is True
    clock.advance(0.5)
    assert session.respond_position() is False
    clock.advance(2.0)
    session.update()

    first = session.trial_results()[0]
    assert first.position_response is True
    assert first.position_response_time_ms == pytest.approx(750.0)
    assert first.response_time_ms == pytest.approx(750.0)


def test_response_without_open_window_is_ignored() -> None:
    clock = FakeClock()
    session = build_nback_session(clock=clock, n_back=1, mode=TrainingMode.DUAL, trial_count=5, seed=5)
    assert session.respond_position() is False
    session.start()
    session.stop()
    assert session.respond_audio() is False


def test_inactive_modality_response_is_ignored() -> None:
    clock = FakeClock()
    session = build_nback_session(clock=clock, n_back=1, mode=TrainingMode.SINGLE_AUDIO, trial_count=5, seed=6)
    session.start()
    assert session.respond_position() is False
    assert session.respond_audio() is True


def test_strict_mode_raises_state_error() -> None:
    clock = FakeClock()
    session = build_nback_session(
        clock=clock, n_back=1, mode=TrainingMode.SINGLE_POSITION, trial_count=5, seed=6, strict=True
    )
    with pytest.raises(StateError):
        session.respond_position()
    session.start()
    with pytest.raises(StateError):
        session.respond_audio()


def test_submit_answer_routes_text_commands() -> None:
    clock = FakeClock()
    session = build_nback_session(clock=clock, n_back=1, mode=TrainingMode.DUAL, trial_count=5, seed=7)
    session.start()
    assert session.submit_answer(" pos ") is True
    assert session.submit_answer("L") is True
    assert session.submit_answer("x") is False
    snap = session.snapshot()
    assert snap.position_responded is True
    assert snap.audio_responded is True


def test_inactivity_timeout_abandons_without_catch_up() -> None:
    clock = FakeClock()
    session = build_nback_session(clock=clock, n_back=1, mode=TrainingMode.DUAL, trial_count=20, seed=8)
    session.start()
    clock.advance(31.0)
    session.update()

    assert session.state is SessionState.ABANDONED
    assert session.abandon_reason == "timeout"
    assert session.trial_results() == []
    assert session.result().completed is False


def test_stalled_host_sees_abandonment_even_with_closed_windows() -> None:
    clock = FakeClock()
    session = build_nback_session(clock=clock, n_back=1, mode=TrainingMode.DUAL, trial_count=20, seed=8)
    session.start()
    clock.advance(6.5)
    session.update()
    assert len(session.trial_results()) == 2

    # Onset of trial 2 was at 6.0; 30 s later the session times out and the
    # windows that closed meanwhile stay unscored.
    clock.advance(29.5)
    session.update()
    assert session.state is SessionState.ABANDONED
    assert session.abandon_reason == "timeout"
    assert len(session.trial_results()) == 2


def test_stop_records_the_given_reason() -> None:
    session = build_nback_session(clock=FakeClock(), n_back=1, mode=TrainingMode.DUAL, trial_count=5, seed=12)
    session.start()
    session.stop(reason="closed")
    session.stop()
    assert session.abandon_reason == "closed"


def test_stop_does_not_score_in_flight_trial() -> None:
    clock = FakeClock()
    session = build_nback_session(clock=clock, n_back=1, mode=TrainingMode.DUAL, trial_count=20, seed=9)
    session.start()
    clock.advance(4.0)
    session.update()
    session.respond_position()
    session.stop()

    assert session.state is SessionState.ABANDONED
    assert session.can_exit() is True
    assert [r.trial_index for r in session.trial_results()] == [0]
    result = session.result()
    assert result.completed is False
    assert len(result.trials) == 1


def test_pause_freezes_and_resume_represents_current_trial() -> None:
    clock = FakeClock()
    session = build_nback_session(clock=clock, n_back=1, mode=TrainingMode.DUAL, trial_count=5, seed=10)
    session.start()
    clock.advance(1.0)
    session.respond_position()
    assert session.pause() is True
    assert session.state is SessionState.PAUSED

    clock.advance(100.0)
    session.update()
    assert session.state is SessionState.PAUSED
    assert session.trial_results() == []

    assert session.resume() is True
    assert session.state is SessionState.PRESENTING
    assert session.current_index == 0
    assert session.snapshot().position_responded is False

    clock.advance(1.0)
    session.stop()
    assert session.result().duration_ms == pytest.approx(2000.0)


def test_resume_requires_pause() -> None:
    session = build_nback_session(clock=FakeClock(), n_back=1, mode=TrainingMode.DUAL, trial_count=5, seed=11)
    assert session.resume() is False


def test_audio_port_receives_letters_and_feedback() -> None:
    clock = FakeClock()
    audio = NullAudioPlayer()
    session = _scenario_a_session(clock, audio=audio)
    session.start()
    _respond_perfectly(clock, session)

    assert audio.played_letters == ["C", "H", "C", "C", "C"]
    assert audio.played_feedback == ["correct", "correct", "correct"]


def test_position_only_mode_does_not_play_letters() -> None:
    clock = FakeClock()
    audio = NullAudioPlayer()
    session = build_nback_session(
        clock=clock, n_back=1, mode=TrainingMode.SINGLE_POSITION, trial_count=3, seed=12, audio=audio
    )
    session.start()
    clock.advance(9.0)
    session.update()
    assert audio.played_letters == []


def test_feedback_can_be_disabled() -> None:
    clock = FakeClock()
    audio = NullAudioPlayer()
    session = build_nback_session(
        clock=clock,
        n_back=1,
        mode=TrainingMode.DUAL,
        trial_count=3,
        seed=13,
        audio=audio,
        timing=SessionTimingConfig(feedback=False),
    )
    session.start()
    session.respond_position()
    assert audio.played_feedback == []


def test_grace_period_extends_window() -> None:
    clock = FakeClock()
    session = build_nback_session(
        clock=clock,
        n_back=1,
        mode=TrainingMode.DUAL,
        trial_count=3,
        seed=14,
        timing=SessionTimingConfig(trial_duration_s=2.0, response_grace_s=0.5),
    )
    session.start()
    clock.advance(2.25)
    assert session.respond_audio() is True
    clock.advance(0.25)
    session.update()
    assert session.trial_results()[0].audio_response is True


def test_events_are_published_in_order() -> None:
    clock = FakeClock()
    bus = LocalEventBus()
    seen: list[EventType] = []
    bus.subscribe(ALL_EVENTS, lambda e: seen.append(e.type))
    session = build_nback_session(clock=clock, n_back=1, mode=TrainingMode.DUAL, trial_count=3, seed=15, events=bus)
    session.start()
    clock.advance(9.0)
    session.update()

    assert seen == [
        EventType.SESSION_STARTED,
        EventType.TRIAL_COMPLETED,
        EventType.TRIAL_COMPLETED,
        EventType.TRIAL_COMPLETED,
    ]


def test_snapshot_view_model() -> None:
    clock = FakeClock()
    session = build_nback_session(clock=clock, n_back=2, mode=TrainingMode.SINGLE_POSITION, trial_count=4, seed=16)
    session.start()
    snap = session.snapshot()
    assert snap.title == "2-Back Position"
    assert snap.position == session.trials[0].position
    assert snap.letter is None
    assert snap.total_trials == 4
    assert snap.progress == 0.0
    assert "A=position match" in snap.input_hint

    clock.advance(12.0)
    session.update()
    done = session.snapshot()
    assert done.state is SessionState.COMPLETED
    assert done.position is None
    assert done.progress == 1.0


def test_invalid_config_raises_before_any_state() -> None:
    with pytest.raises(ConfigurationError):
        build_nback_session(clock=FakeClock(), n_back=0, mode=TrainingMode.DUAL)
    with pytest.raises(ConfigurationError):
        SessionTimingConfig(trial_duration_s=3.0, inactivity_timeout_s=2.0)


def test_result_before_start_is_empty_and_incomplete() -> None:
    session = build_nback_session(clock=FakeClock(), n_back=1, mode=TrainingMode.DUAL, trial_count=3, seed=17)
    result = session.result()
    assert result.completed is False
    assert result.trials == ()
    assert result.duration_ms == 0.0
    assert result.level_id == "dual-1"
    assert session.trials[0].is_position_match is False
    assert Modality.POSITION in TrainingMode.DUAL.active_modalities
