"""
Configuration loading for the tictac metronome.

Settings live in a YAML file with three optional sections. Every key has a
default, so an empty file (or no file at all) yields a working metronome:

    metronome:
      tempo: 120              # BPM fed to the scheduler
      beats: 4                # Beats per bar
      base_frequency: 864.0   # Hz for beats 2..N (beat 1 sounds an octave up)
      poll_interval_ms: 10    # Lookahead poll period
      preview_ticks: true     # Play a tick on every tap

    tap:
      min_sample_size: 4      # Intervals before a stabilized tempo
      silence_timeout_ms: 2000

    audio:
      device: null            # Output device substring (null = default device)
      samplerate: 48000
      blocksize: 256

Unknown sections and keys are rejected so typos surface at startup.
"""

import copy
import math
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from tictac.log import get_logger

logger = get_logger(__name__)


DEFAULTS: Dict[str, Dict[str, Any]] = {
    'metronome': {
        'tempo': 120.0,
        'beats': 4,
        'base_frequency': 432.0 * 2,
        'poll_interval_ms': 10.0,
        'preview_ticks': True,
    },
    'tap': {
        'min_sample_size': 4,
        'silence_timeout_ms': 2000.0,
    },
    'audio': {
        'device': None,
        'samplerate': 48000,
        'blocksize': 256,
    },
}


def _require_positive(section: str, key: str, value: Any, integer: bool = False) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{section}.{key}' must be a number, got {value!r}")
    if integer and int(value) != value:
        raise ValueError(f"'{section}.{key}' must be an integer, got {value!r}")
    if not math.isfinite(value) or value <= 0:
        raise ValueError(f"'{section}.{key}' must be positive, got {value!r}")


def validate_config(config: Dict[str, Dict[str, Any]]) -> None:
    """Validate a merged configuration.

    Raises:
        ValueError: If any value is missing the expected type or range
    """
    m = config['metronome']
    _require_positive('metronome', 'tempo', m['tempo'])
    _require_positive('metronome', 'beats', m['beats'], integer=True)
    _require_positive('metronome', 'base_frequency', m['base_frequency'])
    _require_positive('metronome', 'poll_interval_ms', m['poll_interval_ms'])
    if not isinstance(m['preview_ticks'], bool):
        raise ValueError(f"'metronome.preview_ticks' must be true or false, got {m['preview_ticks']!r}")

    t = config['tap']
    _require_positive('tap', 'min_sample_size', t['min_sample_size'], integer=True)
    _require_positive('tap', 'silence_timeout_ms', t['silence_timeout_ms'])

    a = config['audio']
    if a['device'] is not None and not isinstance(a['device'], str):
        raise ValueError(f"'audio.device' must be a string or null, got {a['device']!r}")
    _require_positive('audio', 'samplerate', a['samplerate'], integer=True)
    _require_positive('audio', 'blocksize', a['blocksize'], integer=True)


def merge_config(overrides: Optional[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """Merge a parsed YAML mapping over DEFAULTS and validate the result."""
    config = copy.deepcopy(DEFAULTS)
    if overrides is None:
        validate_config(config)
        return config

    if not isinstance(overrides, dict):
        raise ValueError("Config root must be a mapping")

    for section, values in overrides.items():
        if section not in config:
            raise ValueError(f"Unknown config section '{section}'")
        if values is None:
            continue
        if not isinstance(values, dict):
            raise ValueError(f"Config section '{section}' must be a mapping")
        for key, value in values.items():
            if key not in config[section]:
                raise ValueError(f"Unknown config key '{section}.{key}'")
            config[section][key] = value

    validate_config(config)
    return config


def load_config(path: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
    """Load YAML settings from `path`, or return defaults when path is None.

    Raises:
        FileNotFoundError: If path does not exist
        ValueError: If the file is not valid YAML or fails validation
    """
    if path is None:
        return merge_config(None)

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        with open(config_path, 'r') as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"Failed to parse config {path}: {e}")

    config = merge_config(raw)
    logger.debug(f"Loaded config from {path}")
    return config
