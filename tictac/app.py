"""
Application wiring between the tap estimator, the rhythm state and the
metronome.

RhythmState is the single source of truth for {tempo, beats, running}.
Front ends change it through MetronomeApp; subscribers are notified with the
full state whenever one of the fields they watch actually changes.

Tempo is stored in beats-per-minute of the scheduled beat. The displayed
tempo is normalised to a four-beat grouping, so doubling the grouping with
apply_multiplier(2) doubles the scheduled tempo while the display stays put.
"""

import threading
from typing import Callable, Dict, Iterable, List, Tuple, Union

from tictac.log import get_logger
from tictac.scheduler import Metronome
from tictac.tap import TapEstimator, round_half_up

logger = get_logger(__name__)


REFERENCE_BEATS = 4            # Display tempo is expressed per 4-beat grouping
MAX_MULTIPLIED_TEMPO = 500     # Multipliers may not push the tempo to this or beyond


class RhythmState:
    """Observable {tempo, beats, running} mapping.

    Examples:
        >>> state = RhythmState(tempo=120, beats=4, running=False)
        >>> state.on('running', lambda data: print(data['running']))
        >>> state.update(running=True)
        True
        >>> state.update(running=True)  # unchanged, no notification
        >>> state.data['running']
        True
    """

    def __init__(self, **data) -> None:
        self.data: Dict = dict(data)
        self.lock = threading.RLock()
        self._subscribers: List[Tuple[Tuple[str, ...], Callable]] = []

    def update(self, **changes) -> None:
        """Apply changes; notify subscribers of fields whose value differs."""
        with self.lock:
            changed = [k for k, v in changes.items() if self.data.get(k) != v]
            if not changed:
                return
            self.data = {**self.data, **changes}
            snapshot = dict(self.data)
            subscribers = list(self._subscribers)

        for keys, callback in subscribers:
            if any(k in changed for k in keys):
                callback(snapshot)

    def on(self, keys: Union[str, Iterable[str]], callback: Callable) -> None:
        """Call `callback(data)` whenever any of `keys` changes."""
        if isinstance(keys, str):
            keys = (keys,)
        with self.lock:
            self._subscribers.append((tuple(keys), callback))

    def start(self) -> None:
        self.update(running=True)

    def stop(self) -> None:
        self.update(running=False)

    def toggle(self) -> None:
        with self.lock:
            running = self.data.get('running', False)
        self.update(running=not running)


def display_tempo(tempo: float, beats: int) -> int:
    """Tempo as shown to the user, normalised to a four-beat grouping."""
    return round_half_up(REFERENCE_BEATS * tempo / beats)


class MetronomeApp:
    """Glue between front end, RhythmState, TapEstimator and Metronome.

    Attributes:
        metronome (Metronome): Beat scheduler
        estimator (TapEstimator): Tap tempo source
        state (RhythmState): tempo / beats / running
        preview_ticks (bool): Play a tick on every tap
    """

    def __init__(self, metronome: Metronome, estimator: TapEstimator,
                 preview_ticks: bool = True) -> None:
        self.metronome = metronome
        self.estimator = estimator
        self.preview_ticks = preview_ticks
        self.state = RhythmState(tempo=metronome.tempo, beats=metronome.beats, running=False)

        self.state.on('running', self._on_running)
        self.state.on(('tempo', 'beats'), self._on_rhythm)

        self.estimator.on('tap', self._on_tap)
        self.estimator.on('estimate', self._on_estimate)
        self.estimator.on('tempo', self._on_tempo)

    @property
    def display_tempo(self) -> int:
        return display_tempo(self.state.data['tempo'], self.state.data['beats'])

    def tap(self) -> None:
        self.estimator.tap()

    def toggle(self) -> None:
        self.state.toggle()

    def set_display_tempo(self, value: float, start: bool = False) -> None:
        """Set the tempo from a display value (per four-beat grouping)."""
        tempo = self.state.data['beats'] * value / REFERENCE_BEATS
        if start:
            self.state.update(tempo=tempo, running=True)
        else:
            self.state.update(tempo=tempo)

    def set_beats(self, beats: int) -> None:
        self.state.update(beats=beats)

    def apply_multiplier(self, multiplier: float) -> bool:
        """Scale the beat grouping by `multiplier`, keeping the display tempo.

        A multiplier of 1 returns to a four-beat grouping. Returns False when
        the change is rejected (tempo would reach MAX_MULTIPLIED_TEMPO, or
        fewer than one beat would remain).
        """
        tempo = self.state.data['tempo']
        beats = self.state.data['beats']

        if multiplier == 1:
            self.state.update(beats=REFERENCE_BEATS, tempo=REFERENCE_BEATS * tempo / beats)
            return True

        if tempo * multiplier >= MAX_MULTIPLIED_TEMPO or beats * multiplier < 1:
            logger.info(f"Multiplier x{multiplier:g} rejected at {tempo:g} BPM, {beats} beats")
            return False

        new_beats = round_half_up(beats * multiplier)
        self.state.update(tempo=new_beats * tempo / beats, beats=new_beats)
        return True

    def shutdown(self) -> None:
        self.metronome.close()

    def _on_running(self, data: Dict) -> None:
        if data['running']:
            self.metronome.start()
        else:
            self.metronome.stop()

    def _on_rhythm(self, data: Dict) -> None:
        self.metronome.set_rhythm(tempo=data['tempo'], beats=data['beats'])

    def _on_tap(self) -> None:
        self.state.stop()
        if self.preview_ticks:
            self.metronome.tick()

    def _on_estimate(self, tempo: int) -> None:
        logger.info(f"Tap estimate: {tempo} BPM")
        self.state.update(tempo=tempo)

    def _on_tempo(self, tempo: int) -> None:
        logger.info(f"Tap tempo: {tempo} BPM")
        self.state.update(tempo=tempo, running=True)
