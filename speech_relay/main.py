"""Typer CLI entrypoint for speech-relay."""

import asyncio
import json
import logging
from pathlib import Path

import typer

from speech_relay._types import PipelineResult
from speech_relay.audio_source import WavFileSource
from speech_relay.config import (
    Config,
    ConfigError,
    discover_audio_devices,
    load_config,
)
from speech_relay.session import SessionController
from speech_relay.transcriber import TranscriptionClient

app = typer.Typer(help="Live microphone transcription and translation relay")

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    """Setup logging configuration."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _merge_config_overrides(
    cfg: Config,
    *,
    audio_device: int | None = None,
    language: str | None = None,
    targets: list[str] | None = None,
    stt_model: str | None = None,
    llm_model: str | None = None,
) -> Config:
    """Apply CLI overrides to configuration.

    CLI options take precedence over config file values.

    Raises:
        ConfigError: If override values are invalid
    """
    if audio_device is not None:
        available = discover_audio_devices()
        valid_indices = {d["index"] for d in available}
        if audio_device not in valid_indices:
            available_str = ", ".join(str(d["index"]) for d in available)
            raise ConfigError(
                f"Invalid audio device index {audio_device}. "
                f"Available: {available_str or 'none'}"
            )
        logger.debug("Overriding audio device to index %d", audio_device)
        cfg.audio.device = audio_device

    if language is not None:
        logger.debug("Overriding input language to '%s'", language)
        cfg.transcription.language = language

    if targets:
        logger.debug("Overriding translation targets to %s", targets)
        cfg.translation.targets = list(targets)

    if stt_model is not None:
        cfg.transcription.model = stt_model

    if llm_model is not None:
        cfg.translation.model = llm_model

    return cfg


def _format_result(result: PipelineResult, json_output: bool) -> str:
    if json_output:
        return json.dumps(result.to_dict(), ensure_ascii=False)
    lines = [result.original]
    lines.extend(f"  [{t.language}] {t.text}" for t in result.translations)
    return "\n".join(lines)


def _print_error(message: str) -> None:
    typer.echo(f"error: {message}", err=True)


async def _run_live(cfg: Config, json_output: bool) -> None:
    """Listen on the microphone until interrupted."""
    controller = SessionController(
        cfg,
        on_result=lambda r: typer.echo(_format_result(r, json_output)),
        on_error=_print_error,
    )
    try:
        if not await controller.enable():
            raise RuntimeError("Could not start audio capture")
        logger.info("Listening (language=%s, targets=%s)", cfg.transcription.language,
                    ", ".join(cfg.translation.targets) or "none")
        await asyncio.Event().wait()
    finally:
        await controller.shutdown()


async def _run_replay(cfg: Config, path: Path, json_output: bool, realtime: bool) -> int:
    """Feed a WAV file through the pipeline and return the number of results."""
    delivered = 0

    def on_result(result: PipelineResult) -> None:
        nonlocal delivered
        delivered += 1
        typer.echo(_format_result(result, json_output))

    async def settle() -> None:
        # Let each utterance finish before the next one can supersede it
        if controller.session is not None:
            await controller.session.wait_idle()

    source = WavFileSource(
        path,
        block_size=cfg.audio.block_size,
        realtime=realtime,
        trailing_silence_ms=cfg.vad.pad_ms * 2,
        settle=settle,
    )
    controller = SessionController(
        cfg,
        on_result=on_result,
        on_error=_print_error,
        source_factory=lambda _audio: source,
    )
    try:
        if not await controller.enable():
            raise RuntimeError(f"Could not replay {path}")
        await source.finished.wait()
        if controller.session is not None:
            await controller.session.wait_idle()
    finally:
        await controller.shutdown()
    return delivered


def _load(config: Path | None, **overrides) -> Config:
    cfg = load_config(config)
    logger.info("Loaded config from: %s", config or "default locations")
    cfg = _merge_config_overrides(cfg, **overrides)
    cfg.validate()
    logger.debug("Config: %s", cfg)
    return cfg


@app.command()
def run(
    config: Path | None = typer.Option(
        None, "--config", help="Path to configuration file"
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose logging"
    ),
    audio_device: int | None = typer.Option(
        None, "--audio-device", "-a", help="Override audio device by index"
    ),
    language: str | None = typer.Option(
        None, "--language", "-l", help="Override input language hint"
    ),
    target: list[str] | None = typer.Option(
        None, "--target", "-t", help="Translation target language (repeatable)"
    ),
    json_output: bool = typer.Option(
        False, "--json", help="Print results as JSON lines"
    ),
) -> None:
    """Listen to the microphone and relay transcripts and translations."""
    _setup_logging(verbose)
    try:
        cfg = _load(config, audio_device=audio_device, language=language, targets=target)
        logger.info("Configuration validated successfully")
        asyncio.run(_run_live(cfg, json_output))
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        raise typer.Exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        raise typer.Exit(0)
    except Exception as e:
        logger.error("Unexpected error: %s", e, exc_info=True)
        raise typer.Exit(1)


@app.command()
def replay(
    path: Path = typer.Argument(..., help="16-bit PCM WAV file to replay"),
    config: Path | None = typer.Option(
        None, "--config", help="Path to configuration file"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
    language: str | None = typer.Option(None, "--language", "-l"),
    target: list[str] | None = typer.Option(None, "--target", "-t"),
    json_output: bool = typer.Option(False, "--json"),
    realtime: bool = typer.Option(
        False, "--realtime", help="Pace blocks at their recorded duration"
    ),
) -> None:
    """Replay a recorded WAV file through segmentation, transcription and translation."""
    _setup_logging(verbose)
    if not path.exists():
        logger.error("Audio file not found: %s", path)
        raise typer.Exit(1)
    try:
        cfg = _load(config, language=language, targets=target)
        delivered = asyncio.run(_run_replay(cfg, path, json_output, realtime))
        logger.info("Replay finished: %d result(s)", delivered)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        raise typer.Exit(1)
    except Exception as e:
        logger.error("Unexpected error: %s", e, exc_info=True)
        raise typer.Exit(1)


@app.command()
def list_audio(
    verbose: bool = typer.Option(False, "--verbose", "-v"),
    json_output: bool = typer.Option(
        False, "--json", help="Output as JSON instead of table"
    ),
) -> None:
    """List available audio devices."""
    _setup_logging(verbose)
    try:
        devices = discover_audio_devices()
        if not devices:
            logger.warning("No audio devices found")
            return

        if json_output:
            typer.echo(json.dumps(devices, indent=2))
        else:
            typer.echo("Available audio devices:")
            for dev in devices:
                typer.echo(
                    f"  [{dev['index']}] {dev['name']} "
                    f"({dev['channels']}ch, {dev['sample_rate']}Hz)"
                )
    except Exception as e:
        logger.error("Error listing audio devices: %s", e)
        raise typer.Exit(1)


@app.command()
def check(
    config: Path | None = typer.Option(
        None, "--config", help="Path to configuration file"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Validate configuration and probe the backend health endpoint."""
    _setup_logging(verbose)
    try:
        cfg = _load(config)
        logger.info("Configuration validated successfully")

        async def probe() -> bool:
            client = TranscriptionClient.from_config(cfg.api, cfg.transcription)
            try:
                return await client.health_check()
            finally:
                await client.close()

        if not asyncio.run(probe()):
            logger.error("Backend at %s is not healthy", cfg.api.base_url)
            raise typer.Exit(1)
        typer.echo(f"Backend at {cfg.api.base_url} is healthy")
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
