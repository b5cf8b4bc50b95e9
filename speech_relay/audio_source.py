"""Audio capture sources feeding the segmentation pipeline."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from pathlib import Path

import numpy as np
import sounddevice

from speech_relay.codec import decode_wav

logger = logging.getLogger(__name__)

# (mono float32 block, native sample rate)
BlockCallback = Callable[[np.ndarray, int], None]


class AudioSourceError(RuntimeError):
    """Audio device could not be opened or read."""

    pass


class _SourceState(Enum):
    """Internal source state machine."""

    IDLE = "idle"
    RUNNING = "running"


class MicrophoneStream:
    """Live capture via sounddevice at the device's native sample rate.

    The PortAudio callback runs on its own thread. It only copies the first
    channel and hands the block to the event loop with call_soon_threadsafe,
    so every consumer runs on the loop thread.
    """

    def __init__(
        self,
        block_size: int = 2048,
        device: int | str | None = None,
        sample_rate: int | None = None,
    ):
        """Initialize microphone stream.

        Args:
            block_size: Frames per callback block
            device: Audio device index or name (None for default)
            sample_rate: Capture rate in Hz (None for the device default)
        """
        if block_size <= 0:
            raise ValueError("block_size must be positive")
        if sample_rate is not None and sample_rate <= 0:
            raise ValueError("sample_rate must be positive")

        self.block_size = block_size
        self.device = device
        self.sample_rate = sample_rate

        self._state = _SourceState.IDLE
        self._stream = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._on_block: BlockCallback | None = None

        logger.info(
            "MicrophoneStream initialized: block_size=%d, device=%s",
            block_size,
            device if device is not None else "default",
        )

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit; ensure cleanup."""
        self.close()
        return False

    @property
    def is_running(self) -> bool:
        return self._state == _SourceState.RUNNING

    def start(self, on_block: BlockCallback, loop: asyncio.AbstractEventLoop) -> None:
        """Open the input stream and begin delivering blocks.

        Args:
            on_block: Called on the loop thread with (mono samples, sample rate)
            loop: Event loop that receives the blocks

        Raises:
            AudioSourceError: If already running or the stream cannot be opened
        """
        if self._state != _SourceState.IDLE:
            raise AudioSourceError(
                f"Cannot start capture: source in {self._state.value} state"
            )

        resolved_device = self._resolve_device_selection()
        self._loop = loop
        self._on_block = on_block

        try:
            rate = self.sample_rate or self._default_sample_rate(resolved_device)
            self._stream = sounddevice.InputStream(
                device=resolved_device,
                samplerate=rate,
                channels=1,
                blocksize=self.block_size,
                callback=self._callback,
                dtype="float32",
            )
            self._stream.start()
            self.sample_rate = int(self._stream.samplerate)
            self._state = _SourceState.RUNNING
            logger.info(
                "Audio stream started (sample_rate=%d, device=%s)",
                self.sample_rate,
                resolved_device if resolved_device is not None else "default",
            )
        except Exception as e:
            self._state = _SourceState.IDLE
            self._stream = None
            logger.error("Failed to start audio stream: %s", e)
            raise AudioSourceError(f"Failed to start audio stream: {e}") from e

    def close(self) -> None:
        """Stop the stream and release the device. Safe to call repeatedly."""
        if self._stream:
            try:
                self._stream.stop()
                self._stream.close()
            except Exception as e:
                logger.warning("Error closing stream: %s", e)
            finally:
                self._stream = None
                logger.debug("Audio stream closed")

        self._on_block = None
        self._loop = None
        self._state = _SourceState.IDLE

    def _callback(self, indata, frames, time_info, status):
        """Stream callback invoked on audio data arrival (PortAudio thread)."""
        if status:
            logger.warning("Audio stream status: %s", status)

        loop = self._loop
        on_block = self._on_block
        if loop is None or on_block is None or loop.is_closed():
            return

        block = np.array(indata[:, 0] if indata.ndim > 1 else indata, dtype=np.float32)
        try:
            loop.call_soon_threadsafe(on_block, block, self.sample_rate)
        except RuntimeError:
            # Loop closed between the check and the call
            pass

    def _default_sample_rate(self, device: int | None) -> int:
        """Query the device's default input sample rate."""
        info = sounddevice.query_devices(device, "input")
        return int(info["default_samplerate"])

    @staticmethod
    def list_devices() -> dict[int, str]:
        """List available audio capture devices.

        Returns:
            Dict mapping device index to name (e.g., {0: "Default", 2: "USB Audio"})
            Empty dict if no devices found or error occurs
        """
        try:
            devices = sounddevice.query_devices()

            if isinstance(devices, dict):
                devices = [devices]

            result = {}
            for idx, dev_info in enumerate(devices):
                if dev_info.get("max_input_channels", 0) > 0:
                    result[idx] = dev_info.get("name", f"Device {idx}")

            logger.debug("Found %d audio input devices", len(result))
            return result

        except sounddevice.PortAudioError as e:
            logger.warning("PortAudio error querying devices: %s", e)
            return {}
        except Exception as e:
            logger.warning("Error querying audio devices: %s", e)
            return {}

    def _resolve_device_selection(self) -> int | None:
        """Resolve configured device selection to a sounddevice index."""

        if self.device is None or isinstance(self.device, int):
            return self.device

        try:
            device_list = sounddevice.query_devices()
            if isinstance(device_list, dict):
                device_list = [device_list]
        except Exception as e:
            logger.warning(
                "Unable to enumerate audio devices for '%s': %s; using default",
                self.device,
                e,
            )
            return None

        target = self.device.strip().lower()
        partial_matches: list[tuple[int, str]] = []
        available: list[str] = []

        for idx, dev_info in enumerate(device_list):
            if dev_info.get("max_input_channels", 0) <= 0:
                continue

            name = dev_info.get("name", f"Device {idx}")
            normalized = name.strip().lower()
            available.append(f"[{idx}] {name}")

            if normalized == target:
                return idx
            if target in normalized:
                partial_matches.append((idx, name))

        if partial_matches:
            idx, name = partial_matches[0]
            logger.debug("Resolved audio device '%s' to index %d (%s)", self.device, idx, name)
            return idx

        logger.warning(
            "Audio device '%s' not found. Using default input. Available devices: %s",
            self.device,
            "; ".join(available) if available else "none",
        )
        return None


class WavFileSource:
    """Replays a recorded WAV file in fixed-size blocks.

    Blocks are delivered on the event loop with a small yield between them,
    matching the microphone callback contract. Used to tune thresholds
    against recorded traces.

    Outside realtime mode the file is read far faster than requests complete,
    so every utterance would supersede the previous one. Passing ``settle``
    makes the replay await it after each block, letting in-flight requests
    finish before more audio arrives.
    """

    def __init__(
        self,
        path: Path,
        block_size: int = 2048,
        realtime: bool = False,
        trailing_silence_ms: float = 0.0,
        settle: Callable[[], Awaitable[None]] | None = None,
    ):
        """Initialize file source.

        Args:
            path: WAV file to replay
            block_size: Frames per delivered block
            realtime: Pace blocks at their real duration
            trailing_silence_ms: Silence appended so a final utterance can close
            settle: Awaited after each block when not in realtime mode
        """
        if block_size <= 0:
            raise ValueError("block_size must be positive")
        self.path = Path(path)
        self.block_size = block_size
        self.realtime = realtime
        self.trailing_silence_ms = trailing_silence_ms
        self.settle = settle
        self._task: asyncio.Task | None = None
        self.finished = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, on_block: BlockCallback, loop: asyncio.AbstractEventLoop) -> None:
        """Begin replaying the file.

        Raises:
            AudioSourceError: If the file cannot be read or decoded
        """
        try:
            samples, sample_rate = decode_wav(self.path.read_bytes())
        except (OSError, ValueError) as e:
            raise AudioSourceError(f"Cannot read audio file {self.path}: {e}") from e

        if self.trailing_silence_ms > 0:
            pad = int(sample_rate * self.trailing_silence_ms / 1000)
            samples = np.concatenate([samples, np.zeros(pad, dtype=np.float32)])

        logger.info(
            "Replaying %s: %.1fs at %d Hz", self.path, len(samples) / sample_rate, sample_rate
        )
        self.finished.clear()
        self._task = loop.create_task(self._replay(samples, sample_rate, on_block))

    async def _replay(self, samples: np.ndarray, sample_rate: int, on_block: BlockCallback) -> None:
        block_seconds = self.block_size / sample_rate
        try:
            for start in range(0, len(samples), self.block_size):
                on_block(samples[start : start + self.block_size], sample_rate)
                await asyncio.sleep(block_seconds if self.realtime else 0)
                if self.settle is not None and not self.realtime:
                    await self.settle()
        finally:
            self.finished.set()

    def close(self) -> None:
        """Stop replaying. Safe to call repeatedly."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
