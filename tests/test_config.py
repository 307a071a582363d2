"""
Tests for YAML configuration loading and validation.
"""

from pathlib import Path

import pytest

from tictac.config import DEFAULTS, load_config, merge_config

REPO_CONFIG = Path(__file__).parent.parent / "config" / "metronome.yaml"


def write_config(tmp_path, text):
    path = tmp_path / "metronome.yaml"
    path.write_text(text)
    return str(path)


class TestDefaults:

    def test_no_path_returns_defaults(self):
        config = load_config()

        assert config == DEFAULTS
        assert config is not DEFAULTS
        assert config['metronome']['base_frequency'] == 864.0

    def test_empty_file_returns_defaults(self, tmp_path):
        assert load_config(write_config(tmp_path, "")) == DEFAULTS

    def test_repo_config_loads(self):
        config = load_config(str(REPO_CONFIG))

        assert config['metronome']['tempo'] == 120
        assert config['tap']['min_sample_size'] == 4
        assert config['audio']['device'] is None


class TestOverrides:

    def test_partial_section(self, tmp_path):
        path = write_config(tmp_path, "metronome:\n  tempo: 90\n  beats: 3\n")

        config = load_config(path)

        assert config['metronome']['tempo'] == 90
        assert config['metronome']['beats'] == 3
        assert config['metronome']['base_frequency'] == 864.0
        assert config['tap'] == DEFAULTS['tap']

    def test_defaults_not_mutated(self):
        merge_config({'tap': {'min_sample_size': 6}})

        assert DEFAULTS['tap']['min_sample_size'] == 4

    def test_empty_section(self):
        assert merge_config({'audio': None}) == DEFAULTS


class TestErrors:

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "missing.yaml"))

    def test_invalid_yaml(self, tmp_path):
        path = write_config(tmp_path, "metronome: [tempo: 1\n")

        with pytest.raises(ValueError, match="Failed to parse"):
            load_config(path)

    def test_unknown_section(self):
        with pytest.raises(ValueError, match="Unknown config section"):
            merge_config({'lighting': {}})

    def test_unknown_key(self):
        with pytest.raises(ValueError, match="metronome.tempi"):
            merge_config({'metronome': {'tempi': 120}})

    def test_root_must_be_mapping(self):
        with pytest.raises(ValueError, match="mapping"):
            merge_config([1, 2, 3])

    @pytest.mark.parametrize("section,key,value", [
        ('metronome', 'tempo', 0),
        ('metronome', 'tempo', -60),
        ('metronome', 'tempo', "fast"),
        ('metronome', 'beats', 2.5),
        ('metronome', 'beats', True),
        ('metronome', 'base_frequency', float('inf')),
        ('metronome', 'preview_ticks', "yes"),
        ('tap', 'min_sample_size', 0),
        ('tap', 'silence_timeout_ms', -1),
        ('audio', 'device', 3),
        ('audio', 'samplerate', 44100.5),
    ])
    def test_bad_values(self, section, key, value):
        with pytest.raises(ValueError, match=f"{section}.{key}"):
            merge_config({section: {key: value}})
