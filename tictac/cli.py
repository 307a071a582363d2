#!/usr/bin/env python3
"""
Console front end for the tictac metronome.

Usage:
    python -m tictac [--tempo 120] [--beats 4] [--config config/metronome.yaml]
                     [--device pulse] [--log-level INFO]

Commands (one per line on stdin):
    <Enter>    tap; steady taps set the tempo and start the metronome
    s          start / stop
    <number>   set the displayed tempo (per 4-beat grouping) and start
    b <n>      beats per bar
    x<m>       multiply the beat grouping (x2, x0.5); x1 returns to 4 beats
    q          quit
"""

import argparse
import os
import sys
from typing import Optional, Tuple

from tictac import log
from tictac.app import MetronomeApp
from tictac.config import load_config
from tictac.emitter import AudioUnavailableError, create_audio_context, find_audio_device
from tictac.log import get_logger
from tictac.scheduler import Metronome
from tictac.tap import TapEstimator

logger = get_logger(__name__)


CMD_TAP = "tap"
CMD_TOGGLE = "toggle"
CMD_TEMPO = "tempo"
CMD_BEATS = "beats"
CMD_MULTIPLY = "multiply"
CMD_QUIT = "quit"


def parse_command(line: str) -> Tuple[Optional[str], Optional[float]]:
    """Parse one line of console input.

    Returns:
        (command, value) where value is None for commands without argument;
        (None, None) for unrecognised input

    Examples:
        >>> parse_command("")
        ('tap', None)
        >>> parse_command("x2")
        ('multiply', 2.0)
        >>> parse_command("b 3")
        ('beats', 3.0)
    """
    text = line.strip().lower()
    if text == "":
        return CMD_TAP, None
    if text in ("s", "space", "toggle"):
        return CMD_TOGGLE, None
    if text in ("q", "quit", "exit"):
        return CMD_QUIT, None

    try:
        if text.startswith("x"):
            value = float(text[1:])
            return (CMD_MULTIPLY, value) if value > 0 else (None, None)
        if text.startswith("b"):
            value = float(text[1:])
            return (CMD_BEATS, value) if value >= 1 and value == int(value) else (None, None)
        value = float(text)
        return (CMD_TEMPO, value) if value > 0 else (None, None)
    except ValueError:
        return None, None


def handle_command(app: MetronomeApp, command: str, value: Optional[float]) -> None:
    if command == CMD_TAP:
        app.tap()
    elif command == CMD_TOGGLE:
        app.toggle()
    elif command == CMD_TEMPO:
        app.set_display_tempo(value, start=True)
    elif command == CMD_BEATS:
        app.set_beats(int(value))
    elif command == CMD_MULTIPLY:
        app.apply_multiplier(value)


def run(app: MetronomeApp, stream=None) -> None:
    """Read commands from `stream` (default: stdin) until quit or end of input."""
    if stream is None:
        stream = sys.stdin
    logger.info("Enter = tap, s = start/stop, <n> = tempo, b <n> = beats, x<m> = multiplier, q = quit")
    for line in stream:
        command, value = parse_command(line)
        if command is None:
            logger.warning(f"Unrecognised command: {line.strip()!r}")
            continue
        if command == CMD_QUIT:
            break
        handle_command(app, command, value)
        state = app.state.data
        logger.info(f"{app.display_tempo} BPM ({state['tempo']:g} × {state['beats']}), "
                    f"{'running' if state['running'] else 'stopped'}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="tictac - metronome with tap tempo")
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to YAML config file (default: built-in settings)",
    )
    parser.add_argument(
        "--tempo",
        type=float,
        default=None,
        help="Initial tempo in BPM (overrides config)",
    )
    parser.add_argument(
        "--beats",
        type=int,
        default=None,
        help="Beats per bar (overrides config)",
    )
    parser.add_argument(
        "--base-frequency",
        type=float,
        default=None,
        help="Tick frequency in Hz; the downbeat sounds an octave higher (overrides config)",
    )
    parser.add_argument(
        "--device",
        type=str,
        default=None,
        help="Audio device substring to match (e.g., 'pulse'). First matching device is used.",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=os.getenv("TICTAC_LOG_LEVEL", "INFO"),
        help="Logging verbosity (default: INFO)",
    )
    return parser


def main(argv=None):
    """CLI entry point."""
    args = build_parser().parse_args(argv)
    log.set_level(args.log_level)

    try:
        config = load_config(args.config)
    except (FileNotFoundError, ValueError) as e:
        logger.error(f"{e}")
        sys.exit(1)

    settings = config['metronome']
    tempo = args.tempo if args.tempo is not None else settings['tempo']
    beats = args.beats if args.beats is not None else settings['beats']
    base_frequency = args.base_frequency if args.base_frequency is not None else settings['base_frequency']

    if tempo <= 0 or beats < 1 or base_frequency <= 0:
        logger.error("Tempo and base frequency must be positive, beats at least 1")
        sys.exit(1)

    device_name = args.device if args.device is not None else config['audio']['device']

    try:
        device = find_audio_device(device_name) if device_name else None
        emitter = create_audio_context(
            device=device,
            samplerate=config['audio']['samplerate'],
            blocksize=config['audio']['blocksize'],
        )
    except AudioUnavailableError as e:
        logger.error(f"Audio is not available: {e}")
        sys.exit(1)

    metronome = Metronome(
        emitter,
        base_frequency=base_frequency,
        tempo=tempo,
        beats=beats,
        poll_interval_s=settings['poll_interval_ms'] / 1000.0,
    )
    estimator = TapEstimator(
        min_sample_size=config['tap']['min_sample_size'],
        silence_timeout_ms=config['tap']['silence_timeout_ms'],
    )
    app = MetronomeApp(metronome, estimator, preview_ticks=settings['preview_ticks'])

    try:
        run(app)
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    finally:
        app.shutdown()
        emitter.close()
        metronome.stats.print_stats("METRONOME STATISTICS")
        estimator.stats.print_stats("TAP STATISTICS")


if __name__ == "__main__":
    main()
