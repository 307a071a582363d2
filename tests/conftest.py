"""Pytest fixtures for tictac tests.

Provides:
- emitter: FakeEmitter recording every scheduling call, with a settable clock
- make_metronome: Metronome factory driven by a ManualTimer
- drive: Advances the fake clock in poll-sized steps, firing the timer
"""

import pytest

from tictac.emitter import SoundEmitter, ToneGenerator
from tictac.scheduler import Metronome, POLL_INTERVAL_S, START_OFFSET_S


class FakeEmitter(SoundEmitter):
    """SoundEmitter that records calls instead of producing sound."""

    def __init__(self):
        self.now = 0.0
        self.calls = []
        self.tones = []
        self.played = []
        self.master_gain = None

    def create_tone_generator(self):
        tone = ToneGenerator(len(self.tones) + 1)
        self.tones.append(tone)
        self.calls.append(('create', tone.tone_id))
        return tone

    def connect(self, handle, destination=None):
        handle.connected = True
        self.calls.append(('connect', handle.tone_id))

    def set_master_gain(self, value):
        self.master_gain = value

    def set_gain(self, value, at_time):
        self.calls.append(('set_gain', value, at_time))

    def schedule_gain_ramp(self, target, at_time):
        self.calls.append(('ramp', target, at_time))

    def cancel_scheduled_gain_values(self):
        self.calls.append(('cancel_gain',))

    def cancel_scheduled_frequency_values(self, handle):
        handle.frequency.cancel_scheduled_values(0.0)
        self.calls.append(('cancel_frequency', handle.tone_id))

    def set_frequency(self, handle, hz, at_time):
        handle.frequency.set_value_at_time(hz, at_time)
        self.calls.append(('frequency', handle.tone_id, hz, at_time))

    def start(self, handle, at_time):
        handle.start_time = at_time
        self.calls.append(('start', handle.tone_id, at_time))

    def stop(self, handle, at_time):
        handle.stop_time = at_time
        self.played.append(handle)
        self.calls.append(('stop', handle.tone_id, at_time))

    def current_time(self):
        return self.now

    def beat_times(self):
        """Nominal beat times of every played tone."""
        return [tone.start_time + START_OFFSET_S for tone in self.played]

    def frequencies(self):
        return [tone.frequency.events[-1][1] for tone in self.played]


class ManualTimer:
    """PollTimer stand-in whose callback only runs on fire()."""

    def __init__(self, interval_s, callback, lock):
        self.interval_s = interval_s
        self.callback = callback
        self.lock = lock
        self.armed = False
        self.arm_count = 0
        self.closed = False

    @property
    def pending(self):
        return self.armed

    def arm(self):
        self.armed = True
        self.arm_count += 1

    def cancel(self):
        self.armed = False

    def close(self):
        self.armed = False
        self.closed = True

    def fire(self):
        with self.lock:
            if not self.armed:
                return False
            self.armed = False
            self.callback()
            return True


@pytest.fixture
def emitter():
    return FakeEmitter()


@pytest.fixture
def make_metronome(emitter):
    """Factory for metronomes over the shared FakeEmitter and a ManualTimer."""
    def factory(tempo=120, beats=4, base_frequency=864.0, **kwargs):
        return Metronome(emitter, base_frequency=base_frequency, tempo=tempo, beats=beats,
                         timer_factory=ManualTimer, **kwargs)
    return factory


@pytest.fixture
def drive(emitter):
    """Advance the fake clock by `seconds`, firing the poll timer every step.

    `steps` overrides the fixed POLL_INTERVAL_S step with explicit increments.
    """
    def advance(metronome, seconds=0.0, steps=None):
        if steps is None:
            steps = [POLL_INTERVAL_S] * int(round(seconds / POLL_INTERVAL_S))
        for step in steps:
            emitter.now += step
            metronome.timer.fire()
    return advance
