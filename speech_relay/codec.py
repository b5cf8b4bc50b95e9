"""PCM16 conversion and WAV container encoding for segment uploads."""

import io
import logging
import wave

import numpy as np

from speech_relay._types import TARGET_SAMPLE_RATE

logger = logging.getLogger(__name__)

WAV_HEADER_SIZE = 44


def float_to_pcm16(samples: np.ndarray) -> np.ndarray:
    """Convert float samples to signed 16-bit PCM.

    Samples are clamped to [-1, 1]; negative values scale by 32768 and
    non-negative values by 32767, truncating toward zero.

    Args:
        samples: Float samples

    Returns:
        int16 array of the same length
    """
    clipped = np.clip(np.asarray(samples, dtype=np.float64), -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * 32768.0, clipped * 32767.0)
    return np.trunc(scaled).astype(np.int16)


def encode_wav(pcm16: np.ndarray, sample_rate: int = TARGET_SAMPLE_RATE) -> bytes:
    """Wrap mono PCM16 samples in a RIFF/WAVE container.

    The output has the standard 44-byte header (format tag 1, mono, 16-bit,
    little-endian) followed by the data chunk. Identical input always yields
    identical bytes.

    Args:
        pcm16: int16 samples
        sample_rate: Sample rate written to the header

    Returns:
        Complete WAV file as bytes

    Raises:
        RuntimeError: If the container cannot be written
    """
    pcm16 = np.asarray(pcm16, dtype="<i2")
    buffer = io.BytesIO()
    try:
        with wave.open(buffer, "wb") as wav_file:
            wav_file.setnchannels(1)
            wav_file.setsampwidth(2)
            wav_file.setframerate(sample_rate)
            wav_file.setnframes(len(pcm16))
            wav_file.writeframes(pcm16.tobytes())
    except Exception as e:
        logger.error("Failed to encode WAV container: %s", e)
        raise RuntimeError(f"Failed to encode WAV container: {e}") from e
    return buffer.getvalue()


def encode_segment(samples: np.ndarray, sample_rate: int = TARGET_SAMPLE_RATE) -> bytes:
    """Encode float samples straight to a WAV container."""
    return encode_wav(float_to_pcm16(samples), sample_rate)


def decode_wav(data: bytes) -> tuple[np.ndarray, int]:
    """Decode a 16-bit PCM WAV container to float samples.

    Multi-channel input is reduced to its first channel.

    Args:
        data: WAV file bytes

    Returns:
        Tuple of (float32 samples in [-1, 1], sample rate)

    Raises:
        ValueError: If the container is unreadable or not 16-bit PCM
    """
    try:
        with wave.open(io.BytesIO(data), "rb") as wav_file:
            channels = wav_file.getnchannels()
            sample_width = wav_file.getsampwidth()
            sample_rate = wav_file.getframerate()
            frames = wav_file.readframes(wav_file.getnframes())
    except (wave.Error, EOFError) as e:
        raise ValueError(f"Invalid WAV data: {e}") from e

    if sample_width != 2:
        raise ValueError(f"Unsupported sample width: {sample_width * 8} bits")

    pcm16 = np.frombuffer(frames, dtype="<i2")
    if channels > 1:
        pcm16 = pcm16.reshape(-1, channels)[:, 0]

    samples = pcm16.astype(np.float32) / 32768.0
    logger.debug("Decoded WAV: %d samples at %d Hz", len(samples), sample_rate)
    return samples, sample_rate
