"""Run counters for the scheduler, the tap estimator and the sound emitter.

Counters are printed at shutdown together with their average rate over the
run, which makes missed polls or belated tones easy to spot:

    ============================================================
    METRONOME STATISTICS (62.4s)
    ============================================================
    Beats Dispatched: 125 (2.00/s)
    Tempo Changes: 3
    ============================================================
"""

import threading
import time
from typing import Dict, Iterable

# Counters that are expected to grow steadily while running; printed with a rate
RATE_COUNTERS = ('beats_dispatched', 'tones_played', 'taps')


class Statistics:
    """Named counters shared between threads.

    Counters used in tictac:
        scheduler: beats_dispatched, preview_ticks, tempo_changes, beat_changes
        tap:       taps, estimates, tempos, outlier_resets, silence_resets,
                   ignored_taps
        emitter:   tones_created, tones_played, tones_belated

    Attributes:
        counters (dict): counter name -> count
        started_at (float): time.monotonic() at creation or last reset()
    """

    def __init__(self, clock=time.monotonic):
        self.clock = clock
        self.counters: Dict[str, int] = {}
        self.started_at = clock()
        self.lock = threading.Lock()

    def increment(self, counter_name: str, amount: int = 1) -> None:
        with self.lock:
            self.counters[counter_name] = self.counters.get(counter_name, 0) + amount

    def get(self, counter_name: str) -> int:
        """Current count, 0 for a counter never incremented."""
        with self.lock:
            return self.counters.get(counter_name, 0)

    def snapshot(self) -> Dict[str, int]:
        with self.lock:
            return dict(self.counters)

    def reset(self) -> None:
        with self.lock:
            self.counters = {}
            self.started_at = self.clock()

    def elapsed(self) -> float:
        return self.clock() - self.started_at

    def format_lines(self, rate_counters: Iterable[str] = RATE_COUNTERS) -> list:
        """One 'Counter Name: value' line per counter, sorted by name."""
        counts = self.snapshot()
        elapsed = self.elapsed()
        lines = []
        for name in sorted(counts):
            line = f"{name.replace('_', ' ').title()}: {counts[name]}"
            if name in rate_counters and elapsed > 0:
                line += f" ({counts[name] / elapsed:.2f}/s)"
            lines.append(line)
        return lines

    def print_stats(self, title: str = "STATISTICS") -> None:
        rule = "=" * 60
        print(f"\n{rule}\n{title} ({self.elapsed():.1f}s)\n{rule}")
        for line in self.format_lines():
            print(line)
        print(rule)
