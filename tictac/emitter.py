#!/usr/bin/env python3
"""
Sound Emitter - Scheduled tick synthesis for the metronome

Defines the contract the beat scheduler drives (SoundEmitter) and a concrete
implementation on top of rtmixer (RtmixerEmitter). The contract mirrors a
node-based audio API: one-shot tone generators with a frequency timeline, a
shared gain stage with time-scheduled ramps, a master gain, and a monotonic
clock in seconds that every scheduling call is expressed in.

ARCHITECTURE:
- Tone generators are one-shot handles: start() and stop() once each
- Gain and frequency automation stored as timelines of set/ramp events
- When a generator's stop time is known, RtmixerEmitter renders the whole tone
  (sine x gain envelope x master gain) into a float32 buffer
- Rendered buffers are queued with rtmixer.Mixer.play_buffer(start=...), so the
  tick lands on the exact stream time regardless of Python thread timing
- current_time() is the mixer's stream clock (Mixer.time)

USAGE:
    emitter = create_audio_context(device=None, samplerate=48000)
    tone = emitter.create_tone_generator()
    emitter.connect(tone)
    t = emitter.current_time() + 0.1
    emitter.set_frequency(tone, 864.0, t)
    emitter.set_gain(0.0, t)
    emitter.schedule_gain_ramp(3.0, t + 0.001)
    emitter.schedule_gain_ramp(0.0, t + 0.03)
    emitter.start(tone, t)
    emitter.stop(tone, t + 0.03)

Environment failures (no PortAudio, no output device) raise
AudioUnavailableError from create_audio_context(); there is no silent mode.
"""

import threading
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

import numpy as np

from tictac.log import get_logger
from tictac.stats import Statistics

logger = get_logger(__name__)


# Audio defaults
DEFAULT_SAMPLERATE = 48000
DEFAULT_BLOCKSIZE = 256        # ~5.3ms at 48kHz
DEFAULT_FREQUENCY_HZ = 440.0   # Tone frequency before any set_frequency()

EVENT_SET = "set"
EVENT_RAMP = "ramp"


class AudioUnavailableError(RuntimeError):
    """Raised when the audio output cannot be constructed."""


class AutomationTimeline:
    """Time-scheduled values for one audio parameter.

    Holds set-value and linear-ramp events in insertion order and evaluates
    them at arbitrary sample times. A ramp runs from the previous event's
    (time, value) to its own; before any event the default value applies.

    Attributes:
        default_value (float): Value before the first event
        events (list): (kind, value, time) tuples
    """

    def __init__(self, default_value: float) -> None:
        self.default_value = default_value
        self.events: List[Tuple[str, float, float]] = []

    def set_value_at_time(self, value: float, at_time: float) -> None:
        self._insert((EVENT_SET, float(value), float(at_time)))

    def linear_ramp_to_value_at_time(self, value: float, at_time: float) -> None:
        self._insert((EVENT_RAMP, float(value), float(at_time)))

    def cancel_scheduled_values(self, start_time: float = 0.0) -> None:
        """Drop every event at or after start_time."""
        self.events = [e for e in self.events if e[2] < start_time]

    def _insert(self, event: Tuple[str, float, float]) -> None:
        # Stable by time: equal times keep insertion order
        index = len(self.events)
        while index > 0 and self.events[index - 1][2] > event[2]:
            index -= 1
        self.events.insert(index, event)

    def values_at(self, times: np.ndarray) -> np.ndarray:
        """Evaluate the timeline at each time in `times` (seconds)."""
        times = np.asarray(times, dtype=np.float64)
        out = np.full(times.shape, self.default_value, dtype=np.float64)

        prev_time, prev_value = 0.0, self.default_value
        for kind, value, at_time in self.events:
            if kind == EVENT_RAMP and at_time > prev_time:
                segment = (times >= prev_time) & (times < at_time)
                fraction = (times[segment] - prev_time) / (at_time - prev_time)
                out[segment] = prev_value + (value - prev_value) * fraction
            out[times >= at_time] = value
            prev_time, prev_value = at_time, value

        return out


class ToneGenerator:
    """One-shot sine generator handle.

    Attributes:
        tone_id (int): Sequence number, for logging
        frequency (AutomationTimeline): Frequency timeline in Hz
        connected (bool): Routed into the emitter's gain stage
        start_time (float): Scheduled start, None until start()
        stop_time (float): Scheduled stop, None until stop()
        action: Backend handle for the queued buffer, if any
    """

    def __init__(self, tone_id: int) -> None:
        self.tone_id = tone_id
        self.frequency = AutomationTimeline(DEFAULT_FREQUENCY_HZ)
        self.connected = False
        self.start_time: Optional[float] = None
        self.stop_time: Optional[float] = None
        self.action = None

    def __repr__(self) -> str:
        return f"ToneGenerator({self.tone_id}, start={self.start_time}, stop={self.stop_time})"


class SoundEmitter(ABC):
    """Interface the beat scheduler drives.

    All times are in seconds on the clock returned by current_time().
    Scheduling calls never block and are assumed not to fail once the
    emitter exists.
    """

    @abstractmethod
    def create_tone_generator(self) -> ToneGenerator:
        """Allocate a new, unconnected one-shot tone generator."""

    @abstractmethod
    def connect(self, handle: ToneGenerator, destination=None) -> None:
        """Route a generator into `destination` (default: the gain stage)."""

    @abstractmethod
    def set_master_gain(self, value: float) -> None:
        """Set the fixed output gain applied after the gain stage."""

    @abstractmethod
    def set_gain(self, value: float, at_time: float) -> None:
        """Jump the gain stage to `value` at `at_time`."""

    @abstractmethod
    def schedule_gain_ramp(self, target: float, at_time: float) -> None:
        """Ramp the gain stage linearly to reach `target` at `at_time`."""

    @abstractmethod
    def cancel_scheduled_gain_values(self) -> None:
        """Drop all scheduled gain automation."""

    @abstractmethod
    def cancel_scheduled_frequency_values(self, handle: ToneGenerator) -> None:
        """Drop all scheduled frequency automation of `handle`."""

    @abstractmethod
    def set_frequency(self, handle: ToneGenerator, hz: float, at_time: float) -> None:
        """Set the frequency of `handle` from `at_time` on."""

    @abstractmethod
    def start(self, handle: ToneGenerator, at_time: float) -> None:
        """Start `handle` at `at_time`."""

    @abstractmethod
    def stop(self, handle: ToneGenerator, at_time: float) -> None:
        """Stop `handle` at `at_time`."""

    @abstractmethod
    def current_time(self) -> float:
        """Monotonic clock shared by all scheduling calls."""


class RtmixerEmitter(SoundEmitter):
    """SoundEmitter that renders ticks into buffers queued on an rtmixer.Mixer.

    The mixer is expected to be a started mono output (see
    create_audio_context). Any object with `time`, `samplerate`,
    `play_buffer(buffer, channels, start)` and `cancel(action)` works.

    Attributes:
        mixer (rtmixer.Mixer): Output mixer
        samplerate (float): Render rate, taken from the mixer by default
        gain (AutomationTimeline): Shared gain stage
        master_gain (float): Fixed output scaling
        stats (Statistics): tones_created, tones_played, tones_belated
    """

    def __init__(self, mixer, samplerate: Optional[float] = None) -> None:
        self.mixer = mixer
        self.samplerate = float(samplerate if samplerate is not None else mixer.samplerate)
        self.gain = AutomationTimeline(1.0)
        self.master_gain = 1.0
        self.stats = Statistics()
        self._next_tone_id = 0
        self._lock = threading.Lock()

    def create_tone_generator(self) -> ToneGenerator:
        with self._lock:
            self._next_tone_id += 1
            tone_id = self._next_tone_id
        self.stats.increment('tones_created')
        return ToneGenerator(tone_id)

    def connect(self, handle: ToneGenerator, destination=None) -> None:
        if destination is not None and destination is not self.gain:
            raise ValueError("RtmixerEmitter only routes into its own gain stage")
        handle.connected = True

    def set_master_gain(self, value: float) -> None:
        self.master_gain = float(value)

    def set_gain(self, value: float, at_time: float) -> None:
        self.gain.set_value_at_time(value, at_time)

    def schedule_gain_ramp(self, target: float, at_time: float) -> None:
        self.gain.linear_ramp_to_value_at_time(target, at_time)

    def cancel_scheduled_gain_values(self) -> None:
        self.gain.cancel_scheduled_values(0.0)

    def cancel_scheduled_frequency_values(self, handle: ToneGenerator) -> None:
        handle.frequency.cancel_scheduled_values(0.0)

    def set_frequency(self, handle: ToneGenerator, hz: float, at_time: float) -> None:
        handle.frequency.set_value_at_time(hz, at_time)

    def start(self, handle: ToneGenerator, at_time: float) -> None:
        if handle.start_time is not None:
            raise RuntimeError(f"Tone {handle.tone_id} already started")
        handle.start_time = float(at_time)

    def stop(self, handle: ToneGenerator, at_time: float) -> None:
        """Fix the stop time and queue the rendered tone on the mixer.

        The gain envelope is captured here, so later cancel/ramp calls on
        the shared gain stage only affect tones stopped afterwards.
        """
        if handle.start_time is None:
            raise RuntimeError(f"Tone {handle.tone_id} stopped before start")
        if handle.stop_time is not None:
            raise RuntimeError(f"Tone {handle.tone_id} already stopped")
        handle.stop_time = float(at_time)

        if not handle.connected:
            logger.debug(f"Tone {handle.tone_id} not connected, nothing to play")
            return

        buffer = self.render(handle)
        now = self.current_time()
        if handle.start_time < now:
            self.stats.increment('tones_belated')
            logger.debug(f"Tone {handle.tone_id} belated by {(now - handle.start_time) * 1000.0:.1f}ms")

        handle.action = self.mixer.play_buffer(buffer, channels=1, start=handle.start_time)
        self.stats.increment('tones_played')

    def current_time(self) -> float:
        return self.mixer.time

    def render(self, handle: ToneGenerator) -> np.ndarray:
        """Render a started and stopped tone to mono float32 samples."""
        duration_s = max(0.0, handle.stop_time - handle.start_time)
        num_samples = max(1, int(round(duration_s * self.samplerate)))
        times = handle.start_time + np.arange(num_samples) / self.samplerate

        # Integrate frequency so automation changes stay phase-continuous
        frequency = handle.frequency.values_at(times)
        phase = 2 * np.pi * np.cumsum(frequency) / self.samplerate
        envelope = self.gain.values_at(times) * self.master_gain

        return np.ascontiguousarray(np.sin(phase) * envelope, dtype=np.float32)

    def close(self) -> None:
        """Stop the mixer."""
        try:
            self.mixer.stop()
        except Exception as e:
            logger.warning(f"Failed to stop mixer: {e}")


def find_audio_device(substring):
    """Find the first output device whose name contains `substring`.

    Args:
        substring (str): Case-insensitive device name fragment

    Returns:
        int: Device index of first match, or None if no match found

    Raises:
        AudioUnavailableError: If sounddevice/PortAudio cannot be loaded
    """
    try:
        import sounddevice as sd
    except (ImportError, OSError) as e:
        raise AudioUnavailableError(f"Audio device query unavailable: {e}") from e

    devices = sd.query_devices()
    substring_lower = substring.lower()

    logger.info(f"Searching for device matching '{substring}'...")
    for i, device in enumerate(devices):
        marker = "*" if i == sd.default.device[1] else " "
        logger.info(f"{marker}{i:2d} {device['name']}")

    for i, device in enumerate(devices):
        if substring_lower in device['name'].lower() and device.get('max_output_channels', 1) > 0:
            logger.info(f"Selected device {i}: {device['name']}")
            return i

    logger.warning(f"No device found matching '{substring}', using default device")
    return None


def create_audio_context(device=None, samplerate: int = DEFAULT_SAMPLERATE,
                         blocksize: int = DEFAULT_BLOCKSIZE) -> RtmixerEmitter:
    """Open a mono rtmixer output and wrap it in an RtmixerEmitter.

    Args:
        device: Device index or name accepted by sounddevice (None = default)
        samplerate: Output sample rate in Hz
        blocksize: Frames per audio callback

    Returns:
        RtmixerEmitter over a started mixer

    Raises:
        AudioUnavailableError: If rtmixer/PortAudio is missing or the stream
            cannot be opened
    """
    # PortAudio is loaded at import time; a missing library raises OSError
    try:
        import rtmixer
    except (ImportError, OSError) as e:
        raise AudioUnavailableError(f"Audio backend unavailable: {e}") from e

    try:
        mixer = rtmixer.Mixer(
            device=device,
            channels=1,
            samplerate=samplerate,
            blocksize=blocksize,
        )
        mixer.start()
    except Exception as e:
        raise AudioUnavailableError(f"Failed to initialize rtmixer: {e}") from e

    logger.info(f"Audio output ready: {mixer.samplerate:.0f}Hz, "
                f"latency {mixer.latency * 1000.0:.1f}ms")
    return RtmixerEmitter(mixer)
