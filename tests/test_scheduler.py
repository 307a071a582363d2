"""
Tests for the lookahead beat scheduler.

Tests cover:
- Drift-free beat spacing under regular and jittery polling
- Beat index cycling and wrap-around
- Stop semantics (no dispatch after stop, even for a pending poll)
- Tempo-only and beat-count changes via set_rhythm()
- Tick voice: frequency, gain envelope, duration, one-shot tone generators
- Preview tick()
"""

import random

import pytest

from tictac.scheduler import (
    BEAT_DURATION_S,
    BEAT_GAIN,
    FIRST_BEAT_DURATION_S,
    FIRST_BEAT_GAIN,
    IMMEDIATE_DELAY_S,
    START_OFFSET_S,
    BeatEvent,
    beat_interval,
    next_beat,
)


def intervals(times):
    return [b - a for a, b in zip(times, times[1:])]


class TestHelpers:
    """Tests for beat arithmetic helpers."""

    def test_beat_interval(self):
        assert beat_interval(120) == pytest.approx(0.5)
        assert beat_interval(60) == pytest.approx(1.0)

    def test_next_beat_wraps(self):
        assert [next_beat(b, 4) for b in (1, 2, 3, 4)] == [2, 3, 4, 1]
        assert next_beat(1, 1) == 1
        # Start position 0 maps to the downbeat
        assert next_beat(0, 3) == 1


class TestLifecycle:
    """Tests for start/stop/toggle/reset state transitions."""

    def test_initial_state(self, make_metronome, emitter):
        metronome = make_metronome(tempo=100, beats=3)

        assert metronome.is_running() is False
        assert metronome.tempo == 100
        assert metronome.beats == 3
        assert len(metronome.queue) == 0
        assert metronome.timer.pending is False
        # Master gain keeps the loudest tick at unity
        assert emitter.master_gain == pytest.approx(1.0 / max(FIRST_BEAT_GAIN, BEAT_GAIN))
        # One generator pre-allocated and connected
        assert len(emitter.tones) == 1
        assert emitter.tones[0].connected

    def test_start_stages_first_beat_immediately(self, make_metronome, emitter):
        emitter.now = 5.0
        metronome = make_metronome()

        metronome.start()

        assert metronome.is_running()
        assert metronome.timer.pending
        assert list(metronome.queue) == [
            BeatEvent(time=pytest.approx(5.0 + IMMEDIATE_DELAY_S + 0.5), beat=2, tempo=120),
            BeatEvent(time=pytest.approx(5.0 + IMMEDIATE_DELAY_S), beat=1, tempo=120),
        ]

    def test_start_with_beat(self, make_metronome, drive, emitter):
        metronome = make_metronome(beats=4)
        metronome.start(beat=3)

        assert [event.beat for event in reversed(metronome.queue)] == [3, 4]

        drive(metronome, 1.2)
        downbeat = metronome.base_frequency * 2
        other = metronome.base_frequency
        assert emitter.frequencies()[:3] == [other, other, downbeat]

    def test_stop_clears_queue_and_timer(self, make_metronome, drive):
        metronome = make_metronome()
        metronome.start()
        drive(metronome, 0.3)

        metronome.stop()

        assert metronome.is_running() is False
        assert len(metronome.queue) == 0
        assert metronome.timer.pending is False

    def test_toggle(self, make_metronome):
        metronome = make_metronome()

        metronome.toggle()
        assert metronome.is_running()

        metronome.toggle()
        assert not metronome.is_running()
        assert len(metronome.queue) == 0

    def test_reset_while_running_restages_downbeat(self, make_metronome, drive, emitter):
        metronome = make_metronome()
        metronome.start()
        drive(metronome, 0.7)

        metronome.reset()

        assert metronome.is_running()
        nearest = metronome.queue[-1]
        assert nearest.beat == 1
        assert nearest.time == pytest.approx(emitter.now + IMMEDIATE_DELAY_S)
        assert len(metronome.queue) == 2

    def test_reset_while_stopped_stays_stopped(self, make_metronome):
        metronome = make_metronome()

        metronome.reset()

        assert not metronome.is_running()
        assert len(metronome.queue) == 0
        assert metronome.timer.pending is False


class TestTiming:
    """Tests for drift-free beat timing."""

    def test_constant_tempo_spacing_is_exact(self, make_metronome, drive, emitter):
        metronome = make_metronome(tempo=120)
        metronome.start()
        drive(metronome, 5.0)

        times = emitter.beat_times()
        assert len(times) >= 9
        assert times[0] == pytest.approx(IMMEDIATE_DELAY_S)
        for gap in intervals(times):
            assert gap == pytest.approx(0.5, abs=1e-9)

    def test_spacing_survives_poll_jitter(self, make_metronome, drive, emitter):
        rng = random.Random(42)
        metronome = make_metronome(tempo=97)
        metronome.start()
        drive(metronome, steps=[rng.uniform(0.002, 0.03) for _ in range(400)])

        times = emitter.beat_times()
        assert len(times) > 10
        for gap in intervals(times):
            assert gap == pytest.approx(60.0 / 97, abs=1e-9)

    def test_beats_dispatched_ahead_of_time_in_order(self, make_metronome, emitter):
        metronome = make_metronome(tempo=150)
        metronome.start()

        dispatch_lead = []
        for _ in range(300):
            emitter.now += 0.01
            before = len(emitter.played)
            metronome.timer.fire()
            if len(emitter.played) > before:
                # At most one dispatch per poll pass
                assert len(emitter.played) == before + 1
                dispatch_lead.append(emitter.beat_times()[-1] - emitter.now)

        assert dispatch_lead
        assert all(0 < lead < metronome.dispatch_horizon_s for lead in dispatch_lead)
        assert emitter.beat_times() == sorted(emitter.beat_times())

    def test_queue_depth_bounded(self, make_metronome, emitter):
        metronome = make_metronome(tempo=200)
        metronome.start()

        for _ in range(200):
            emitter.now += 0.01
            metronome.timer.fire()
            assert 1 <= len(metronome.queue) <= 2

    def test_beat_index_cycles(self, make_metronome, drive, emitter):
        metronome = make_metronome(tempo=240, beats=3)
        metronome.start()
        drive(metronome, 3.0)

        frequencies = [call[2] for call in _frequency_calls(emitter)]
        expected = [metronome.base_frequency * 2, metronome.base_frequency, metronome.base_frequency]
        assert len(frequencies) >= 9
        for i, frequency in enumerate(frequencies):
            assert frequency == expected[i % 3]


def _frequency_calls(emitter):
    return [call for call in emitter.calls if call[0] == 'frequency']


class TestStop:
    """Tests that nothing reaches the emitter after stop()."""

    def test_no_calls_after_stop(self, make_metronome, drive, emitter):
        metronome = make_metronome()
        metronome.start()
        drive(metronome, 1.0)
        metronome.stop()
        calls_at_stop = len(emitter.calls)

        drive(metronome, 2.0)

        assert len(emitter.calls) == calls_at_stop

    def test_poll_that_slipped_through_does_nothing(self, make_metronome, drive, emitter):
        metronome = make_metronome()
        metronome.start()
        drive(metronome, 0.4)
        metronome.stop()
        calls_at_stop = len(emitter.calls)

        # A poll callback already in flight when stop() ran
        emitter.now += 1.0
        with metronome.lock:
            metronome._on_poll()

        assert len(emitter.calls) == calls_at_stop
        assert len(metronome.queue) == 0
        assert metronome.timer.pending is False


class TestSetRhythm:
    """Tests for tempo and beat-count changes."""

    def test_stopped_only_stores_values(self, make_metronome, emitter):
        metronome = make_metronome()

        metronome.set_rhythm(tempo=90, beats=3)

        assert metronome.tempo == 90
        assert metronome.beats == 3
        assert not metronome.is_running()
        assert len(metronome.queue) == 0
        assert emitter.played == []

    def test_small_tempo_change_keeps_next_beat(self, make_metronome, drive, emitter):
        metronome = make_metronome(tempo=120)
        metronome.start()
        drive(metronome, 0.2)
        next_time = metronome.queue[-1].time

        metronome.set_rhythm(tempo=121, beats=4)

        nearest = metronome.queue[-1]
        assert nearest.time == pytest.approx(next_time)
        assert nearest.beat == 2
        assert nearest.tempo == 121

        drive(metronome, 3.0)
        times = emitter.beat_times()
        assert times[1] == pytest.approx(next_time)
        for gap in intervals(times[1:]):
            assert gap == pytest.approx(60.0 / 121, abs=1e-9)

    def test_large_speedup_pulls_next_beat_earlier(self, make_metronome, drive, emitter):
        metronome = make_metronome(tempo=30)
        metronome.start()
        drive(metronome, 0.5)
        old_next = metronome.queue[-1]
        assert old_next.time == pytest.approx(IMMEDIATE_DELAY_S + 2.0)

        metronome.set_rhythm(tempo=120, beats=4)

        nearest = metronome.queue[-1]
        assert nearest.time == pytest.approx(emitter.now + 0.5)
        assert nearest.time + metronome.snap_threshold_s < old_next.time
        assert nearest.beat == old_next.beat

        drive(metronome, 2.0)
        times = emitter.beat_times()
        assert times[1] == pytest.approx(nearest.time)
        assert times[2] - times[1] == pytest.approx(0.5)

    def test_tempo_change_with_next_beat_inside_horizon(self, make_metronome, drive, emitter):
        metronome = make_metronome(tempo=97, beats=4)
        metronome.start()
        drive(metronome, 0.53)
        emitter.now += 0.009
        next_beat_event = metronome.queue[-1]
        assert next_beat_event.beat == 2
        assert next_beat_event.time - emitter.now < metronome.dispatch_horizon_s

        metronome.set_rhythm(tempo=98, beats=4)

        # Beat 2 went out during the change; beats 3 and 4 follow at the new tempo
        assert [e.beat for e in metronome.queue] == [4, 3]
        assert metronome.queue[-1].time == pytest.approx(next_beat_event.time + 60.0 / 98)

        drive(metronome, 1.5)
        times = emitter.beat_times()
        assert all(gap > 0 for gap in intervals(times))
        assert times[1] == pytest.approx(next_beat_event.time)
        for gap in intervals(times[1:]):
            assert gap == pytest.approx(60.0 / 98, abs=1e-9)

        downbeat = metronome.base_frequency * 2
        other = metronome.base_frequency
        assert emitter.frequencies() == [downbeat, other, other, other]

    def test_slowdown_never_moves_next_beat_later(self, make_metronome, drive):
        metronome = make_metronome(tempo=140)
        metronome.start()

        for new_tempo in (130, 100, 60, 45):
            drive(metronome, 0.13)
            before = metronome.queue[-1].time
            metronome.set_rhythm(tempo=new_tempo, beats=4)
            assert metronome.queue[-1].time <= before + 1e-12

    def test_beat_change_restarts_bar(self, make_metronome, drive, emitter):
        metronome = make_metronome(tempo=120, beats=4)
        metronome.start()
        drive(metronome, 0.7)
        played_before = len(emitter.played)
        change_time = emitter.now

        metronome.set_rhythm(tempo=120, beats=3)

        nearest = metronome.queue[-1]
        assert nearest.beat == 1
        assert nearest.time == pytest.approx(change_time + IMMEDIATE_DELAY_S)
        assert metronome.stats.get('beat_changes') == 1

        drive(metronome, 1.6)
        new_frequencies = emitter.frequencies()[played_before:]
        downbeat = metronome.base_frequency * 2
        other = metronome.base_frequency
        assert new_frequencies[:4] == [downbeat, other, other, downbeat]

    def test_unchanged_rhythm_is_noop(self, make_metronome, drive):
        metronome = make_metronome()
        metronome.start()
        drive(metronome, 0.3)
        queue_before = list(metronome.queue)

        metronome.set_rhythm(tempo=120, beats=4)

        assert list(metronome.queue) == queue_before
        assert metronome.stats.get('tempo_changes') == 0


class TestTickVoice:
    """Tests for the per-beat emitter calls."""

    def test_downbeat_voice(self, make_metronome, drive, emitter):
        metronome = make_metronome(tempo=120, base_frequency=500.0)
        metronome.start()
        drive(metronome, 0.01)

        t = IMMEDIATE_DELAY_S
        duration = FIRST_BEAT_DURATION_S
        tone_id = emitter.played[0].tone_id
        tick_calls = emitter.calls[-8:]
        assert tick_calls == [
            ('cancel_gain',),
            ('cancel_frequency', tone_id),
            ('frequency', tone_id, 1000.0, pytest.approx(t - START_OFFSET_S)),
            ('set_gain', 0.0, pytest.approx(t - START_OFFSET_S)),
            ('ramp', FIRST_BEAT_GAIN, pytest.approx(t)),
            ('ramp', 0.0, pytest.approx(t + duration - START_OFFSET_S)),
            ('start', tone_id, pytest.approx(t - START_OFFSET_S)),
            ('stop', tone_id, pytest.approx(t + duration - START_OFFSET_S)),
        ]

    def test_other_beat_voice(self, make_metronome, drive, emitter):
        metronome = make_metronome(tempo=120, base_frequency=500.0)
        metronome.start()
        drive(metronome, 0.5)

        second = emitter.played[1]
        assert second.frequency.events[-1][1] == 500.0
        assert second.stop_time - second.start_time == pytest.approx(BEAT_DURATION_S)
        ramps = [c for c in emitter.calls if c[0] == 'ramp']
        assert ramps[-2][1] == BEAT_GAIN

    def test_duration_capped_by_beat_interval(self, make_metronome, drive, emitter):
        # 0.7 × (60 / 2000) = 0.021s, shorter than the 0.03s tick
        metronome = make_metronome(tempo=2000)
        metronome.start()
        drive(metronome, 0.1)

        second = emitter.played[1]
        assert second.stop_time - second.start_time == pytest.approx(0.7 * 60.0 / 2000)

    def test_tone_generators_are_one_shot_and_preallocated(self, make_metronome, drive, emitter):
        metronome = make_metronome()
        metronome.start()
        drive(metronome, 2.0)

        played_ids = [t.tone_id for t in emitter.played]
        assert len(set(played_ids)) == len(played_ids)
        # Always one spare generator beyond those played
        assert len(emitter.tones) == len(emitter.played) + 1
        assert metronome._pending_tone.start_time is None
        assert metronome._pending_tone.connected


class TestPreviewTick:
    """Tests for tick()."""

    def test_tick_while_stopped(self, make_metronome, emitter):
        metronome = make_metronome(base_frequency=864.0)
        emitter.now = 3.0

        metronome.tick()

        assert len(emitter.played) == 1
        tone = emitter.played[0]
        assert tone.start_time == pytest.approx(3.0 + IMMEDIATE_DELAY_S - START_OFFSET_S)
        assert tone.frequency.events[-1][1] == 864.0 * 2
        assert not metronome.is_running()
        assert len(metronome.queue) == 0
        assert metronome.timer.pending is False
        assert metronome.stats.get('preview_ticks') == 1

    def test_tick_while_running_leaves_queue(self, make_metronome, drive, emitter):
        metronome = make_metronome()
        metronome.start()
        drive(metronome, 0.2)
        queue_before = list(metronome.queue)

        metronome.tick()

        assert list(metronome.queue) == queue_before
        assert metronome.is_running()
