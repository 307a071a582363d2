#!/usr/bin/env python3
"""
Tap Estimator - Tempo from irregular human taps

Turns a stream of tap timestamps into a tempo. The first few intervals give a
fast provisional estimate; once enough intervals are collected, a rolling
window with 3-sigma outlier rejection yields a stabilized tempo that is only
re-announced when it moves by more than 2%.

ARCHITECTURE:
- Intervals (ms) between consecutive taps kept in a window of at most
  2 × min_sample_size samples
- Below min_sample_size samples: "estimate" = 60000 / mean, halves rounded up
- At or above: the new interval is tested against the statistics of the
  previous window (or, on first stabilization, of the current one)
    |interval - mean| > 3σ  → outlier: window reset, tap becomes new first tap
    otherwise               → keep newest 2 × min_sample_size samples, drop any
                              beyond 3σ, refresh mean/σ over what remains
- "tempo" emitted on first stabilization and on changes > 2%
- Silence longer than silence_timeout_ms starts over from this tap
- Once a tempo has been emitted, no provisional estimate is emitted again
  until the next reset

Statistics are population statistics (numpy mean/std, ddof=0).

EVENTS:
    tap        no payload, on every tap, always first
    estimate   int BPM, provisional
    tempo      int BPM, stabilized

USAGE:
    estimator = TapEstimator()
    estimator.on("tempo", lambda bpm: print(f"{bpm} BPM"))
    estimator.tap()                    # timestamp from the monotonic clock
    estimator.tap(timestamp_ms=1500.0) # or explicit
"""

import math
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np

from tictac.log import get_logger
from tictac.stats import Statistics

logger = get_logger(__name__)


# Window parameters
MIN_SAMPLE_SIZE = 4            # Intervals needed before a stabilized tempo
SILENCE_TIMEOUT_MS = 2000.0    # Longer gaps start a fresh tap sequence
OUTLIER_SIGMA = 3.0            # Reject intervals beyond this many std devs
TEMPO_CHANGE_RATIO = 0.02      # Re-announce tempo only when it moves > 2%

EVENT_TAP = "tap"
EVENT_ESTIMATE = "estimate"
EVENT_TEMPO = "tempo"
EVENTS = (EVENT_TAP, EVENT_ESTIMATE, EVENT_TEMPO)


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves going up (2.5 -> 3, unlike round())."""
    return int(math.floor(value + 0.5))


def interval_to_tempo(interval_ms: float) -> int:
    """Convert a beat interval in milliseconds to whole BPM."""
    return round_half_up(60000.0 / interval_ms)


def window_stats(intervals: List[float]) -> Tuple[float, float]:
    """Return (mean, population std) of a non-empty interval list."""
    samples = np.asarray(intervals, dtype=np.float64)
    return float(samples.mean()), float(samples.std())


def monotonic_ms() -> float:
    return time.monotonic() * 1000.0


class TapEstimator:
    """Rolling-window tap tempo estimator with outlier rejection.

    Attributes:
        min_sample_size (int): Intervals before a stabilized tempo
        silence_timeout_ms (float): Gap that restarts the sequence
        intervals (list): Current window of tap intervals (ms)
        cached_mean (float): Window mean after the last accepted update
        cached_std (float): Window std after the last accepted update
        last_tap (float): Timestamp (ms) of the previous tap
        stats (Statistics): taps, estimates, tempos, outlier_resets,
            silence_resets, ignored_taps
    """

    def __init__(self, min_sample_size: int = MIN_SAMPLE_SIZE,
                 silence_timeout_ms: float = SILENCE_TIMEOUT_MS,
                 clock: Optional[Callable[[], float]] = None) -> None:
        """Create an empty estimator.

        Args:
            min_sample_size: Intervals required before stabilization
            silence_timeout_ms: Gap (ms) after which taps start over
            clock: Callable returning now in milliseconds (default: monotonic)
        """
        self.min_sample_size = min_sample_size
        self.silence_timeout_ms = silence_timeout_ms
        self.clock = clock if clock is not None else monotonic_ms

        self.intervals: List[float] = []
        self.cached_mean: Optional[float] = None
        self.cached_std: Optional[float] = None
        self.last_tap: Optional[float] = None
        self._tempo: Optional[int] = None

        self.stats = Statistics()
        self.lock = threading.Lock()
        self._listeners: Dict[str, List[Callable]] = {event: [] for event in EVENTS}

    @property
    def tempo(self) -> Optional[int]:
        """Last stabilized tempo since the last reset, or None."""
        return self._tempo

    def on(self, event: str, callback: Callable) -> None:
        """Subscribe `callback` to "tap", "estimate" or "tempo"."""
        if event not in self._listeners:
            raise ValueError(f"Unknown event '{event}', expected one of {EVENTS}")
        self._listeners[event].append(callback)

    def off(self, event: str, callback: Callable) -> None:
        if event in self._listeners and callback in self._listeners[event]:
            self._listeners[event].remove(callback)

    def tap(self, timestamp_ms: Optional[float] = None) -> None:
        """Record a tap at `timestamp_ms` (default: the clock's now)."""
        now = self.clock() if timestamp_ms is None else timestamp_ms
        self._handle_tap(now)

    def reset(self) -> None:
        """Forget intervals, cached statistics, last tap and tempo."""
        with self.lock:
            self._reset()

    def _reset(self) -> None:
        self.intervals = []
        self.cached_mean = None
        self.cached_std = None
        self.last_tap = None
        self._tempo = None

    def _handle_tap(self, now: float) -> None:
        with self.lock:
            self.stats.increment('taps')
            result = self._process_tap(now)

        # Listeners run outside the lock so they may call back into us
        self._emit(EVENT_TAP)
        if result is not None:
            event, bpm = result
            self.stats.increment('estimates' if event == EVENT_ESTIMATE else 'tempos')
            self._emit(event, bpm)

    def _process_tap(self, now: float) -> Optional[Tuple[str, int]]:
        if self.last_tap is None:
            self.last_tap = now
            return None

        interval = now - self.last_tap

        # Duplicate or out-of-order timestamp carries no tempo information
        if interval <= 0:
            self.stats.increment('ignored_taps')
            return None

        if interval > self.silence_timeout_ms:
            self.stats.increment('silence_resets')
            logger.debug(f"Silence of {interval:.0f}ms, starting over")
            self._reset()
            self.last_tap = now
            return None

        self.last_tap = now
        return self._calculate_tempo(interval, now)

    def _calculate_tempo(self, interval: float, now: float) -> Optional[Tuple[str, int]]:
        self.intervals.append(interval)

        if len(self.intervals) < self.min_sample_size:
            mean, _ = window_stats(self.intervals)
            return EVENT_ESTIMATE, interval_to_tempo(mean)

        if self.cached_mean is None or self.cached_std is None:
            mean, std = window_stats(self.intervals)
        else:
            mean, std = self.cached_mean, self.cached_std

        limit = OUTLIER_SIGMA * std
        if abs(interval - mean) > limit:
            self.stats.increment('outlier_resets')
            logger.debug(f"Interval {interval:.0f}ms is an outlier "
                         f"(mean {mean:.0f}ms, σ {std:.1f}ms), starting over")
            self._reset()
            self.last_tap = now
            return None

        recent = self.intervals[-2 * self.min_sample_size:]
        self.intervals = [x for x in recent if abs(x - mean) <= limit]

        if len(self.intervals) < self.min_sample_size:
            if self._tempo is not None:
                return None
            return EVENT_ESTIMATE, interval_to_tempo(mean)

        self.cached_mean, self.cached_std = window_stats(self.intervals)
        tempo = interval_to_tempo(self.cached_mean)

        if self._tempo is None or abs(tempo - self._tempo) > self._tempo * TEMPO_CHANGE_RATIO:
            logger.debug(f"Tempo {self._tempo} → {tempo} BPM "
                         f"(mean {self.cached_mean:.1f}ms over {len(self.intervals)} taps)")
            self._tempo = tempo
            return EVENT_TEMPO, tempo

        return None

    def _emit(self, event: str, *args) -> None:
        for callback in list(self._listeners[event]):
            callback(*args)
