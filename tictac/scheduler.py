#!/usr/bin/env python3
"""
Beat Scheduler - Lookahead metronome driven by a coarse poll timer

Keeps a one-to-two event lookahead queue of future beats and hands each beat
to the sound emitter slightly ahead of its due time, so the emitter can place
the tick at an exact stream time even though the poll itself jitters.

ARCHITECTURE:
- State machine: STOPPED ⇄ RUNNING
- Queue ordered nearest-time-last; at most 2 events at any poll
- Beat times are chained by addition (previous time + 60/tempo), never taken
  from "now", so polling jitter never accumulates into drift
- One PollTimer with a cancellation token; every state change cancels it
  before re-arming, and a stale firing is a no-op
- Tempo-only changes keep the next beat in place unless the new tempo pulls
  it more than SNAP_THRESHOLD_S earlier
- Beat-count changes restart the bar at beat 1

THREADING:
- All public methods and the poll callback run under one RLock
- stop() cancels the timer and clears the queue under that lock; a poll that
  fired concurrently finds a stale token (or running=False) and does nothing

PRECONDITIONS:
- tempo and beats are positive, finite numbers. They are not validated here;
  input validation belongs to the caller (see tictac.config and tictac.cli).

USAGE:
    emitter = create_audio_context()
    metronome = Metronome(emitter, base_frequency=864.0, tempo=120, beats=4)
    metronome.start()
    metronome.set_rhythm(tempo=90, beats=3)
    metronome.stop()
"""

import threading
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Optional

from tictac.emitter import SoundEmitter, ToneGenerator
from tictac.log import get_logger
from tictac.stats import Statistics
from tictac.timer import PollTimer

logger = get_logger(__name__)


# Tick voice
FIRST_BEAT_GAIN = 4            # Gain of the downbeat
BEAT_GAIN = 3                  # Gain of every other beat
FIRST_BEAT_DURATION_S = 0.02   # Downbeat tick length
BEAT_DURATION_S = 0.03         # Other beats' tick length
MAX_DURATION_RATIO = 0.7       # Tick never longer than 70% of the beat interval
START_OFFSET_S = 0.001         # Start/stop this much early to absorb scheduling overhead

# Lookahead
IMMEDIATE_DELAY_S = 0.02       # Delay of the first beat after start/reset
POLL_INTERVAL_S = 0.010        # Poll timer period
DISPATCH_HORIZON_S = 0.1       # Hand a beat to the emitter this far ahead of its time
LOOKAHEAD_EVENTS = 2           # Queue depth kept while running
SNAP_THRESHOLD_S = 0.3         # Move the next beat earlier only beyond this margin

# Preview tick played by tick()
PREVIEW_BEAT = 1
PREVIEW_TEMPO = 120


@dataclass
class BeatEvent:
    """One future tick.

    Attributes:
        time (float): Emitter-clock time in seconds
        beat (int): Position within the bar, 1-based
        tempo (float): Tempo in BPM at which this beat was staged
    """
    time: float
    beat: int
    tempo: float


def beat_interval(tempo: float) -> float:
    """Seconds between consecutive beats at `tempo` BPM."""
    return 60.0 / tempo


def next_beat(previous_beat: int, beats: int) -> int:
    """Beat index following `previous_beat` in a bar of `beats` (wraps to 1)."""
    return 1 + (previous_beat % beats)


class Metronome:
    """Lookahead beat scheduler.

    States:
        STOPPED: Queue empty, no timer armed (initial state)
        RUNNING: Queue holds 1-2 staged beats, timer re-armed every poll

    Attributes:
        emitter (SoundEmitter): Sound output, exclusively driven by this object
        base_frequency (float): Tone of beats 2..N; beat 1 sounds an octave up
        state (str): STATE_STOPPED or STATE_RUNNING
        queue (deque): Staged BeatEvents, nearest-time-last
        stats (Statistics): beats_dispatched, preview_ticks, tempo_changes,
            beat_changes
    """

    STATE_STOPPED = "stopped"
    STATE_RUNNING = "running"

    def __init__(self, emitter: SoundEmitter, base_frequency: float, tempo: float,
                 beats: int = 4, poll_interval_s: float = POLL_INTERVAL_S,
                 dispatch_horizon_s: float = DISPATCH_HORIZON_S,
                 snap_threshold_s: float = SNAP_THRESHOLD_S,
                 timer_factory: Optional[Callable[..., PollTimer]] = None) -> None:
        """Create a stopped metronome over a working emitter.

        Args:
            emitter: Sound emitter; must already be usable
            base_frequency: Frequency in Hz of non-downbeat ticks
            tempo: Beats per minute (> 0)
            beats: Beats per bar (>= 1)
            poll_interval_s: Poll timer period
            dispatch_horizon_s: How far ahead of its time a beat is dispatched
            snap_threshold_s: Minimum gain before a tempo change pulls the
                next beat earlier
            timer_factory: Callable(interval_s, callback, lock) -> PollTimer,
                for tests that drive the poll loop by hand
        """
        self.emitter = emitter
        self.base_frequency = base_frequency
        self.dispatch_horizon_s = dispatch_horizon_s
        self.snap_threshold_s = snap_threshold_s

        self._tempo = tempo
        self._beats = beats
        self.state = self.STATE_STOPPED
        self.queue: Deque[BeatEvent] = deque()
        self.stats = Statistics()

        self.lock = threading.RLock()
        factory = timer_factory if timer_factory is not None else PollTimer
        self.timer = factory(poll_interval_s, self._on_poll, self.lock)

        # Loudest tick must not clip after the gain stage
        self.emitter.set_master_gain(1.0 / max(FIRST_BEAT_GAIN, BEAT_GAIN))

        self._pending_tone: ToneGenerator = self._allocate_tone()

    @property
    def tempo(self) -> float:
        return self._tempo

    @property
    def beats(self) -> int:
        return self._beats

    def is_running(self) -> bool:
        return self.state == self.STATE_RUNNING

    def start(self, beat: int = 1) -> None:
        """Start (or restart) with `beat` sounding IMMEDIATE_DELAY_S from now."""
        with self.lock:
            self.state = self.STATE_RUNNING
            self.queue.clear()
            logger.info(f"Metronome started at {self._tempo:g} BPM, {self._beats} beats")
            self._loop(beat=beat, immediately=True)

    def stop(self) -> None:
        """Stop and discard every staged beat. Nothing is dispatched afterwards."""
        with self.lock:
            self.timer.cancel()
            was_running = self.is_running()
            self.queue.clear()
            self.state = self.STATE_STOPPED
        if was_running:
            logger.info("Metronome stopped")

    def close(self) -> None:
        """Stop and release the poll worker thread."""
        self.stop()
        self.timer.close()

    def toggle(self) -> None:
        with self.lock:
            if self.is_running():
                self.stop()
            else:
                self.start()

    def reset(self) -> None:
        """Drop the queue; when running, restage beat 1 right away."""
        with self.lock:
            self.queue.clear()
            if self.is_running():
                self._loop(beat=1, immediately=True)

    def tick(self) -> None:
        """Play one downbeat tick IMMEDIATE_DELAY_S from now, outside the queue."""
        with self.lock:
            at_time = self.emitter.current_time() + IMMEDIATE_DELAY_S
            self._schedule_tick(PREVIEW_BEAT, at_time, PREVIEW_TEMPO)
            self.stats.increment('preview_ticks')

    def set_rhythm(self, tempo: float, beats: int) -> None:
        """Update tempo and beats per bar.

        While running, a beat-count change restarts the bar at beat 1. A
        tempo-only change replaces the nearest staged beat: its candidate time
        is now + 60/tempo, used only when more than snap_threshold_s earlier
        than the beat it supersedes. The following beat is extrapolated at the
        new tempo by the next poll pass.
        """
        with self.lock:
            beats_changed = beats != self._beats
            tempo_changed = tempo != self._tempo
            self._tempo = tempo
            self._beats = beats

            if not self.is_running() or not (beats_changed or tempo_changed):
                return

            if beats_changed:
                self.stats.increment('beat_changes')
                logger.info(f"Beats per bar → {beats}, restarting bar at {tempo:g} BPM")
                self.queue.clear()
                self._loop(beat=1, immediately=True)
                return

            self.stats.increment('tempo_changes')
            logger.debug(f"Tempo → {tempo:g} BPM")

            if self.queue:
                superseded = self.queue[-1]
                self.queue.clear()
                self._push_if_earlier(superseded.beat - 1, self.emitter.current_time(),
                                      superseded.time)
                # Second lookahead event before polling, so a dispatch of the
                # replacement beat cannot leave the queue empty
                replacement = self.queue[0]
                self._push(replacement.beat, replacement.time)
            self._loop()

    def _on_poll(self) -> None:
        # Runs under self.lock (PollTimer holds it while calling back)
        self._loop()

    def _loop(self, beat: int = 1, immediately: bool = True,
              delay: float = IMMEDIATE_DELAY_S) -> None:
        self.timer.cancel()

        if not self.is_running():
            return

        dispatched = self._poll()

        if not self.queue:
            if dispatched is not None:
                # Continue the bar from the beat just handed to the emitter
                self._push(dispatched.beat, dispatched.time)
            elif immediately:
                self._push_immediately(beat, delay)
            else:
                self._push(beat - 1, self.emitter.current_time())

        if 0 < len(self.queue) < LOOKAHEAD_EVENTS:
            last = self.queue[0]
            self._push(last.beat, last.time)

        self.timer.arm()

    def _poll(self) -> Optional[BeatEvent]:
        """Dispatch the nearest beat if it is due within the horizon.

        Returns the dispatched BeatEvent, or None when nothing was due.
        """
        if not self.queue:
            return None

        nearest = self.queue[-1]
        if nearest.time - self.emitter.current_time() < self.dispatch_horizon_s:
            self.queue.pop()
            self._schedule_tick(nearest.beat, nearest.time, nearest.tempo)
            self.stats.increment('beats_dispatched')
            logger.debug(f"Beat {nearest.beat}/{self._beats} at {nearest.time:.3f}s "
                         f"({nearest.tempo:g} BPM)")
            return nearest
        return None

    def _push(self, prev_beat: int, prev_time: float) -> None:
        time = prev_time + beat_interval(self._tempo)
        self.queue.appendleft(BeatEvent(time=time, beat=next_beat(prev_beat, self._beats),
                                        tempo=self._tempo))

    def _push_if_earlier(self, prev_beat: int, prev_time: float, next_time: float) -> None:
        candidate = prev_time + beat_interval(self._tempo)
        time = candidate if candidate + self.snap_threshold_s < next_time else next_time
        self.queue.appendleft(BeatEvent(time=time, beat=next_beat(prev_beat, self._beats),
                                        tempo=self._tempo))

    def _push_immediately(self, beat: int, delay: float) -> None:
        self.queue.appendleft(BeatEvent(time=self.emitter.current_time() + delay,
                                        beat=beat, tempo=self._tempo))

    def _schedule_tick(self, beat: int, time: float, tempo: float) -> None:
        """Configure one one-shot tone and the gain envelope for a beat at `time`."""
        tone = self._take_tone()
        duration = min(beat_interval(tempo) * MAX_DURATION_RATIO, self._tick_duration(beat))

        self.emitter.cancel_scheduled_gain_values()
        self.emitter.cancel_scheduled_frequency_values(tone)

        self.emitter.set_frequency(tone, self._tick_frequency(beat), time - START_OFFSET_S)
        self.emitter.set_gain(0.0, time - START_OFFSET_S)
        self.emitter.schedule_gain_ramp(self._tick_gain(beat), time)
        self.emitter.schedule_gain_ramp(0.0, time + duration - START_OFFSET_S)

        self.emitter.start(tone, time - START_OFFSET_S)
        self.emitter.stop(tone, time + duration - START_OFFSET_S)

    def _tick_frequency(self, beat: int) -> float:
        return self.base_frequency * 2 if beat == 1 else self.base_frequency

    def _tick_gain(self, beat: int) -> float:
        return FIRST_BEAT_GAIN if beat == 1 else BEAT_GAIN

    def _tick_duration(self, beat: int) -> float:
        return FIRST_BEAT_DURATION_S if beat == 1 else BEAT_DURATION_S

    def _allocate_tone(self) -> ToneGenerator:
        tone = self.emitter.create_tone_generator()
        self.emitter.connect(tone)
        return tone

    def _take_tone(self) -> ToneGenerator:
        """Return the pre-allocated tone and allocate its successor."""
        tone = self._pending_tone
        self._pending_tone = self._allocate_tone()
        return tone
