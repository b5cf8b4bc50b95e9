"""Sample-rate normalization to 16 kHz mono."""

import logging

import numpy as np

from speech_relay._types import TARGET_SAMPLE_RATE

logger = logging.getLogger(__name__)


def to_mono(block: np.ndarray) -> np.ndarray:
    """Return the first channel of a (frames, channels) block as float32.

    Args:
        block: 1-D mono samples or 2-D interleaved-by-column block

    Returns:
        1-D float32 array
    """
    block = np.asarray(block, dtype=np.float32)
    if block.ndim > 1:
        block = block[:, 0]
    return np.ascontiguousarray(block)


def downsample_to_16k(samples: np.ndarray, in_rate: int) -> np.ndarray:
    """Resample a mono buffer to 16 kHz by averaging.

    Each output sample is the mean of the input samples whose positions fall
    in its slot under the linear ratio ``in_rate / 16000``. Slots with no
    input samples are zero.

    Args:
        samples: Mono float samples in [-1, 1]
        in_rate: Native sample rate in Hz

    Returns:
        float32 array of ``floor(len(samples) * 16000 / in_rate)`` samples

    Raises:
        ValueError: If in_rate is not positive
    """
    if in_rate <= 0:
        raise ValueError("in_rate must be positive")

    samples = np.asarray(samples, dtype=np.float32)
    if in_rate == TARGET_SAMPLE_RATE:
        return samples

    n_in = len(samples)
    n_out = (n_in * TARGET_SAMPLE_RATE) // in_rate
    if n_out == 0:
        return np.zeros(0, dtype=np.float32)

    ratio = in_rate / TARGET_SAMPLE_RATE
    # Input index i belongs to the first slot whose upper bound (k + 1) * ratio exceeds i
    bounds = np.ceil(np.arange(1, n_out + 1) * ratio).astype(np.int64)
    bounds = np.minimum(bounds, n_in)
    starts = np.concatenate(([0], bounds[:-1]))
    starts = np.minimum(starts, bounds)

    cumsum = np.concatenate(([0.0], np.cumsum(samples, dtype=np.float64)))
    counts = bounds - starts
    sums = cumsum[bounds] - cumsum[starts]

    out = np.zeros(n_out, dtype=np.float64)
    nonzero = counts > 0
    out[nonzero] = sums[nonzero] / counts[nonzero]
    return out.astype(np.float32)


def apply_pre_gain(samples: np.ndarray, gain: float) -> np.ndarray:
    """Scale samples by a fixed gain and clamp to [-1, 1].

    Gains above 1 may clip loud input.
    """
    if gain == 1:
        return samples
    return np.clip(samples * gain, -1.0, 1.0).astype(np.float32)


def rms_energy(samples: np.ndarray) -> float:
    """Root-mean-square amplitude of a buffer, 0.0 when empty."""
    if len(samples) == 0:
        return 0.0
    values = np.asarray(samples, dtype=np.float64)
    return float(np.sqrt(np.mean(values**2)))
