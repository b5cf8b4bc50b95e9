"""Configuration loader and validation."""

import logging
import sys
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from pathlib import Path
from urllib.parse import urlparse

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

logger = logging.getLogger(__name__)

__all__ = [
    "AudioConfig",
    "VadConfig",
    "QualityConfig",
    "ApiConfig",
    "TranscriptionConfig",
    "TranslationConfig",
    "GeneralConfig",
    "Config",
    "ConfigError",
    "load_config",
    "discover_audio_devices",
]

SECTIONS = ("audio", "vad", "quality", "api", "transcription", "translation", "general")


class ConfigError(Exception):
    """Configuration loading or validation error."""

    pass


@dataclass
class AudioConfig:
    """Audio capture configuration."""

    device: int | str | None = None
    block_size: int = 2048
    pre_gain: float = 1.02


@dataclass
class VadConfig:
    """Voice activity detection and segmentation thresholds."""

    gate_high: float = 0.01
    gate_low: float = 0.004
    pad_ms: float = 70.0
    min_speech_ms: float = 800.0
    max_segment_ms: float = 5000.0


@dataclass
class QualityConfig:
    """Secondary noise filter applied to finalized segments."""

    min_voiced_fraction: float = 0.18
    short_segment_ms: float = 1200.0


@dataclass
class ApiConfig:
    """Backend endpoint settings shared by transcription and translation."""

    base_url: str = "http://localhost:3000"
    api_key: str | None = None
    timeout: float | None = None


@dataclass
class TranscriptionConfig:
    """Transcription request settings."""

    language: str = "en"
    model: str = "gpt-4o-transcribe"
    max_attempts: int = 2
    base_delay: float = 0.25


@dataclass
class TranslationConfig:
    """Translation fan-out settings."""

    targets: list[str] = field(default_factory=list)
    model: str = "gpt-4o-mini"
    temperature: float = 0.0
    top_p: float = 1.0
    max_tokens: int = 256
    workers: int | None = None
    max_attempts: int = 2
    base_delay: float = 0.3


@dataclass
class GeneralConfig:
    """General application settings."""

    verbose: bool = False
    debug: bool = False


@dataclass
class Config:
    """Main configuration container."""

    audio: AudioConfig = field(default_factory=AudioConfig)
    vad: VadConfig = field(default_factory=VadConfig)
    quality: QualityConfig = field(default_factory=QualityConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    transcription: TranscriptionConfig = field(default_factory=TranscriptionConfig)
    translation: TranslationConfig = field(default_factory=TranslationConfig)
    general: GeneralConfig = field(default_factory=GeneralConfig)

    @classmethod
    def from_toml(
        cls,
        path: Path | None = None,
        *,
        env: Mapping[str, str] | None = None,
    ) -> "Config":
        """Load configuration from TOML file with environment overrides.

        Args:
            path: Explicit config file path. If None, searches in order:
                  1. SPEECH_RELAY_CONFIG env var
                  2. ./speech-relay.toml
                  3. ~/.config/speech-relay.toml
            env: Environment variables for overrides (defaults to os.environ)

        Returns:
            Loaded Config instance

        Raises:
            ConfigError: If config file not found or values are malformed
        """
        if env is None:
            import os

            env = os.environ

        resolved_path = _resolve_config_path(path, env)
        raw_data = _load_toml_file(resolved_path)
        return cls.from_dict(raw_data, env=env)

    @classmethod
    def from_dict(
        cls,
        raw_data: dict,
        *,
        env: Mapping[str, str] | None = None,
    ) -> "Config":
        """Build a Config from already-parsed TOML data."""
        coerced = _coerce_config_values(raw_data, env or {})
        try:
            return cls(
                audio=AudioConfig(**coerced["audio"]),
                vad=VadConfig(**coerced["vad"]),
                quality=QualityConfig(**coerced["quality"]),
                api=ApiConfig(**coerced["api"]),
                transcription=TranscriptionConfig(**coerced["transcription"]),
                translation=TranslationConfig(**coerced["translation"]),
                general=GeneralConfig(**coerced["general"]),
            )
        except TypeError as e:
            raise ConfigError(f"Invalid configuration values: {e}") from e

    def validate(self) -> None:
        """Validate configuration values.

        Raises:
            ConfigError: If any section holds an invalid value
        """
        validate_audio_config(self.audio)
        validate_vad_config(self.vad)
        validate_quality_config(self.quality)
        validate_api_config(self.api)
        validate_transcription_config(self.transcription)
        validate_translation_config(self.translation)


def _resolve_config_path(
    cli_path: Path | None,
    env: Mapping[str, str],
) -> Path:
    """Resolve configuration file path following search order.

    Search order:
    1. CLI-provided path
    2. SPEECH_RELAY_CONFIG environment variable
    3. ./speech-relay.toml (current directory)
    4. ~/.config/speech-relay.toml (user config directory)

    Raises:
        ConfigError: If no config file found in any location
    """
    candidates = []

    if cli_path:
        cli_path = Path(cli_path)
        if cli_path.exists():
            logger.info("Using config file: %s", cli_path.resolve())
            return cli_path.resolve()
        raise ConfigError(f"Config file not found: {cli_path}")

    if env_path := env.get("SPEECH_RELAY_CONFIG"):
        candidates.append(Path(env_path))

    candidates.append(Path("speech-relay.toml"))
    candidates.append(Path.home() / ".config" / "speech-relay.toml")

    for candidate in candidates:
        if candidate.exists():
            logger.info("Using config file: %s", candidate.resolve())
            return candidate.resolve()

    raise ConfigError(
        f"Config file not found. Searched: {', '.join(str(c) for c in candidates)}"
    )


def _load_toml_file(path: Path) -> dict:
    """Load and parse TOML configuration file.

    Raises:
        ConfigError: If file cannot be read or parsed
    """
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except Exception as e:
        raise ConfigError(f"Failed to parse config file {path}: {e}") from e


def _coerce_config_values(raw_data: dict, env: Mapping[str, str]) -> dict:
    """Normalize raw TOML data for dataclass instantiation.

    Unknown sections are ignored with a warning; every known section falls
    back to an empty table.

    Args:
        raw_data: Raw parsed TOML dictionary
        env: Environment variables for overrides

    Returns:
        Coerced dictionary ready for dataclass instantiation
    """
    for section in raw_data:
        if section not in SECTIONS:
            logger.warning("Ignoring unknown config section [%s]", section)

    coerced = {}
    for section in SECTIONS:
        value = raw_data.get(section, {})
        if not isinstance(value, dict):
            raise ConfigError(f"Section [{section}] must be a table")
        coerced[section] = dict(value)

    targets = coerced["translation"].get("targets")
    if targets is not None:
        if isinstance(targets, str):
            targets = [t.strip() for t in targets.split(",") if t.strip()]
        if not isinstance(targets, (list, tuple)):
            raise ConfigError("translation.targets must be a list of language codes")
        coerced["translation"]["targets"] = list(targets)

    api_section = coerced["api"]
    if not api_section.get("api_key"):
        api_section["api_key"] = env.get("SPEECH_RELAY_API_KEY")
    if env_url := env.get("SPEECH_RELAY_API_URL"):
        api_section["base_url"] = env_url

    return coerced


def discover_audio_devices() -> list[dict]:
    """Enumerate available audio capture devices.

    Returns:
        List of device dicts with keys: index, name, channels, sample_rate
        Returns empty list if sounddevice unavailable or no devices found
    """
    try:
        import sounddevice
    except ImportError:
        logger.warning("sounddevice not available, cannot enumerate audio devices")
        return []

    devices = []
    try:
        device_list = sounddevice.query_devices()
        if isinstance(device_list, dict):
            device_list = [device_list]

        for idx, dev_info in enumerate(device_list):
            if dev_info.get("max_input_channels", 0) > 0:
                devices.append(
                    {
                        "index": idx,
                        "name": dev_info.get("name", f"Device {idx}"),
                        "channels": dev_info.get("max_input_channels", 0),
                        "sample_rate": dev_info.get("default_samplerate", 0),
                    }
                )
    except Exception as e:
        logger.warning("Error discovering audio devices: %s", e)

    return devices


def validate_audio_config(audio_cfg: AudioConfig) -> None:
    """Validate audio capture settings.

    Raises:
        ConfigError: If block size or gain is out of range
    """
    if audio_cfg.block_size <= 0:
        raise ConfigError(f"block_size must be positive, got {audio_cfg.block_size}")
    if audio_cfg.pre_gain <= 0:
        raise ConfigError(f"pre_gain must be positive, got {audio_cfg.pre_gain}")


def validate_vad_config(vad_cfg: VadConfig) -> None:
    """Validate VAD thresholds and segment durations.

    Raises:
        ConfigError: If thresholds are not ordered or durations are invalid
    """
    if vad_cfg.gate_low < 0:
        raise ConfigError(f"gate_low must be non-negative, got {vad_cfg.gate_low}")
    if vad_cfg.gate_high <= vad_cfg.gate_low:
        raise ConfigError(
            f"gate_high ({vad_cfg.gate_high}) must be greater than "
            f"gate_low ({vad_cfg.gate_low})"
        )
    for f in fields(VadConfig):
        if f.name.endswith("_ms") and getattr(vad_cfg, f.name) <= 0:
            raise ConfigError(f"{f.name} must be positive, got {getattr(vad_cfg, f.name)}")
    if vad_cfg.max_segment_ms < vad_cfg.min_speech_ms:
        raise ConfigError(
            f"max_segment_ms ({vad_cfg.max_segment_ms}) must be at least "
            f"min_speech_ms ({vad_cfg.min_speech_ms})"
        )


def validate_quality_config(quality_cfg: QualityConfig) -> None:
    """Validate quality gate cutoffs.

    Raises:
        ConfigError: If the voiced-fraction cutoff is outside [0, 1]
    """
    if not 0.0 <= quality_cfg.min_voiced_fraction <= 1.0:
        raise ConfigError(
            f"min_voiced_fraction must be within [0, 1], got {quality_cfg.min_voiced_fraction}"
        )
    if quality_cfg.short_segment_ms < 0:
        raise ConfigError(
            f"short_segment_ms must be non-negative, got {quality_cfg.short_segment_ms}"
        )


def validate_api_config(api_cfg: ApiConfig) -> None:
    """Validate endpoint settings.

    Raises:
        ConfigError: If the base URL is not http(s) or the timeout is invalid
    """
    parsed = urlparse(api_cfg.base_url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigError(f"Invalid api.base_url '{api_cfg.base_url}'")
    if api_cfg.timeout is not None and api_cfg.timeout <= 0:
        raise ConfigError(f"api.timeout must be positive, got {api_cfg.timeout}")


def validate_transcription_config(transcription_cfg: TranscriptionConfig) -> None:
    """Validate transcription retry settings.

    Raises:
        ConfigError: If retry settings are invalid
    """
    _validate_retry("transcription", transcription_cfg.max_attempts, transcription_cfg.base_delay)
    if not transcription_cfg.model:
        raise ConfigError("transcription.model must not be empty")


def validate_translation_config(translation_cfg: TranslationConfig) -> None:
    """Validate translation fan-out settings.

    Raises:
        ConfigError: If worker count, sampling or retry settings are invalid
    """
    _validate_retry("translation", translation_cfg.max_attempts, translation_cfg.base_delay)
    if translation_cfg.workers is not None and translation_cfg.workers <= 0:
        raise ConfigError(
            f"translation.workers must be positive, got {translation_cfg.workers}"
        )
    if translation_cfg.max_tokens <= 0:
        raise ConfigError(
            f"translation.max_tokens must be positive, got {translation_cfg.max_tokens}"
        )
    for target in translation_cfg.targets:
        if not isinstance(target, str) or not target:
            raise ConfigError("translation.targets entries must be non-empty strings")


def _validate_retry(section: str, max_attempts: int, base_delay: float) -> None:
    if max_attempts <= 0:
        raise ConfigError(f"{section}.max_attempts must be positive, got {max_attempts}")
    if base_delay < 0:
        raise ConfigError(f"{section}.base_delay must be non-negative, got {base_delay}")


def load_config(
    path: Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
) -> Config:
    """Load configuration from TOML file.

    Convenience wrapper around Config.from_toml().

    Args:
        path: Explicit config file path (optional)
        env: Environment variables (defaults to os.environ)

    Returns:
        Loaded Config instance

    Raises:
        ConfigError: If config cannot be loaded
    """
    return Config.from_toml(path, env=env)
