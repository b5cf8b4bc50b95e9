"""Tests for config module."""

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from speech_relay.config import (
    ApiConfig,
    AudioConfig,
    Config,
    ConfigError,
    QualityConfig,
    TranscriptionConfig,
    TranslationConfig,
    VadConfig,
    discover_audio_devices,
    load_config,
)


@pytest.fixture
def tmp_config_file(tmp_path):
    """Create a temporary TOML config file for testing."""

    def _create(content: str, name: str = "speech-relay.toml") -> Path:
        path = tmp_path / name
        path.write_text(content)
        return path

    return _create


@pytest.fixture
def full_config_content():
    """Full configuration with all sections."""
    return """
[audio]
device = "USB Audio"
block_size = 1024
pre_gain = 1.0

[vad]
gate_high = 0.02
gate_low = 0.005
pad_ms = 100
min_speech_ms = 600
max_segment_ms = 8000

[quality]
min_voiced_fraction = 0.25
short_segment_ms = 1000

[api]
base_url = "https://relay.example"
api_key = "file-key"
timeout = 15.0

[transcription]
language = "ko"
model = "whisper-1"
max_attempts = 3
base_delay = 0.5

[translation]
targets = ["en", "ja"]
model = "gpt-4o"
workers = 2
max_tokens = 512

[general]
verbose = true
"""


class TestConfigDefaults:
    """Tests for default values."""

    def test_defaults(self):
        cfg = Config()
        assert cfg.audio.block_size == 2048
        assert cfg.audio.pre_gain == 1.02
        assert cfg.vad == VadConfig(
            gate_high=0.01, gate_low=0.004, pad_ms=70, min_speech_ms=800, max_segment_ms=5000
        )
        assert cfg.quality.min_voiced_fraction == 0.18
        assert cfg.quality.short_segment_ms == 1200
        assert cfg.api.timeout is None
        assert cfg.transcription.max_attempts == 2
        assert cfg.transcription.base_delay == 0.25
        assert cfg.translation.targets == []
        assert cfg.translation.base_delay == 0.3
        assert (cfg.translation.temperature, cfg.translation.top_p) == (0.0, 1.0)
        assert cfg.translation.max_tokens == 256

    def test_defaults_validate(self):
        Config().validate()

    def test_sections_not_shared(self):
        a, b = Config(), Config()
        a.translation.targets.append("es")
        assert b.translation.targets == []


class TestConfigLoading:
    """Tests for TOML loading."""

    def test_full_config(self, tmp_config_file, full_config_content):
        cfg = load_config(tmp_config_file(full_config_content), env={})

        assert cfg.audio.device == "USB Audio"
        assert cfg.audio.block_size == 1024
        assert cfg.vad.gate_high == 0.02
        assert cfg.vad.max_segment_ms == 8000
        assert cfg.quality.min_voiced_fraction == 0.25
        assert cfg.api.base_url == "https://relay.example"
        assert cfg.api.api_key == "file-key"
        assert cfg.transcription.language == "ko"
        assert cfg.translation.targets == ["en", "ja"]
        assert cfg.translation.workers == 2
        assert cfg.general.verbose is True
        cfg.validate()

    def test_empty_file_uses_defaults(self, tmp_config_file):
        cfg = load_config(tmp_config_file(""), env={})
        assert cfg == Config()

    def test_targets_from_comma_string(self, tmp_config_file):
        cfg = load_config(tmp_config_file('[translation]\ntargets = "es, fr ,de"\n'), env={})
        assert cfg.translation.targets == ["es", "fr", "de"]

    def test_targets_wrong_type(self, tmp_config_file):
        with pytest.raises(ConfigError, match="translation.targets"):
            load_config(tmp_config_file("[translation]\ntargets = 3\n"), env={})

    def test_unknown_key_rejected(self, tmp_config_file):
        with pytest.raises(ConfigError, match="Invalid configuration values"):
            load_config(tmp_config_file("[vad]\nthreshold = 0.5\n"), env={})

    def test_unknown_section_ignored(self, tmp_config_file):
        cfg = load_config(tmp_config_file("[legacy]\nkey = 1\n"), env={})
        assert cfg == Config()

    def test_section_must_be_table(self, tmp_config_file):
        with pytest.raises(ConfigError, match=r"Section \[vad\] must be a table"):
            load_config(tmp_config_file('vad = "loud"\n'), env={})

    def test_invalid_toml(self, tmp_config_file):
        with pytest.raises(ConfigError, match="Failed to parse config file"):
            load_config(tmp_config_file("[vad\n"), env={})

    def test_missing_explicit_path(self, tmp_path):
        with pytest.raises(ConfigError, match="Config file not found"):
            load_config(tmp_path / "nope.toml", env={})


class TestConfigSearch:
    """Tests for config path resolution and environment overrides."""

    def test_env_config_path(self, tmp_config_file):
        path = tmp_config_file('[transcription]\nlanguage = "de"\n', name="custom.toml")
        cfg = load_config(env={"SPEECH_RELAY_CONFIG": str(path)})
        assert cfg.transcription.language == "de"

    def test_current_directory(self, tmp_config_file, tmp_path, monkeypatch):
        tmp_config_file('[transcription]\nlanguage = "fr"\n')
        monkeypatch.chdir(tmp_path)
        cfg = load_config(env={})
        assert cfg.transcription.language == "fr"

    def test_not_found_anywhere(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setattr(Path, "home", lambda: tmp_path / "home")
        with pytest.raises(ConfigError, match="Searched"):
            load_config(env={})

    def test_api_key_from_env(self, tmp_config_file):
        cfg = load_config(tmp_config_file(""), env={"SPEECH_RELAY_API_KEY": "env-key"})
        assert cfg.api.api_key == "env-key"

    def test_file_api_key_wins(self, tmp_config_file, full_config_content):
        cfg = load_config(
            tmp_config_file(full_config_content), env={"SPEECH_RELAY_API_KEY": "env-key"}
        )
        assert cfg.api.api_key == "file-key"

    def test_api_url_from_env(self, tmp_config_file, full_config_content):
        cfg = load_config(
            tmp_config_file(full_config_content),
            env={"SPEECH_RELAY_API_URL": "http://10.0.0.5:3000"},
        )
        assert cfg.api.base_url == "http://10.0.0.5:3000"


class TestConfigValidation:
    """Tests for validate()."""

    @pytest.mark.parametrize(
        "vad,match",
        [
            (VadConfig(gate_high=0.004, gate_low=0.004), "gate_high"),
            (VadConfig(gate_low=-0.1), "gate_low"),
            (VadConfig(pad_ms=0), "pad_ms"),
            (VadConfig(min_speech_ms=-5), "min_speech_ms"),
            (VadConfig(min_speech_ms=6000), "max_segment_ms"),
        ],
    )
    def test_invalid_vad(self, vad, match):
        with pytest.raises(ConfigError, match=match):
            Config(vad=vad).validate()

    def test_invalid_quality(self):
        with pytest.raises(ConfigError, match="min_voiced_fraction"):
            Config(quality=QualityConfig(min_voiced_fraction=-0.1)).validate()

    def test_invalid_audio(self):
        with pytest.raises(ConfigError, match="block_size"):
            Config(audio=AudioConfig(block_size=0)).validate()
        with pytest.raises(ConfigError, match="pre_gain"):
            Config(audio=AudioConfig(pre_gain=0)).validate()

    @pytest.mark.parametrize("url", ["localhost:3000", "ftp://relay", "http://"])
    def test_invalid_base_url(self, url):
        with pytest.raises(ConfigError, match="api.base_url"):
            Config(api=ApiConfig(base_url=url)).validate()

    def test_invalid_timeout(self):
        with pytest.raises(ConfigError, match="api.timeout"):
            Config(api=ApiConfig(timeout=0)).validate()

    def test_invalid_retry(self):
        with pytest.raises(ConfigError, match="transcription.max_attempts"):
            Config(transcription=TranscriptionConfig(max_attempts=0)).validate()
        with pytest.raises(ConfigError, match="translation.base_delay"):
            Config(translation=TranslationConfig(base_delay=-1)).validate()

    def test_invalid_workers(self):
        with pytest.raises(ConfigError, match="translation.workers"):
            Config(translation=TranslationConfig(workers=0)).validate()

    def test_empty_target(self):
        with pytest.raises(ConfigError, match="translation.targets"):
            Config(translation=TranslationConfig(targets=["es", ""])).validate()


class TestDiscoverAudioDevices:
    """Tests for audio device discovery."""

    def test_inputs_only(self):
        mock_sd = MagicMock()
        mock_sd.query_devices.return_value = [
            {"name": "Speakers", "max_input_channels": 0, "default_samplerate": 48000},
            {"name": "Microphone", "max_input_channels": 1, "default_samplerate": 44100},
        ]
        with patch.dict("sys.modules", {"sounddevice": mock_sd}):
            devices = discover_audio_devices()

        assert devices == [
            {"index": 1, "name": "Microphone", "channels": 1, "sample_rate": 44100}
        ]

    def test_query_error(self):
        mock_sd = MagicMock()
        mock_sd.query_devices.side_effect = Exception("PortAudio error")
        with patch.dict("sys.modules", {"sounddevice": mock_sd}):
            assert discover_audio_devices() == []
