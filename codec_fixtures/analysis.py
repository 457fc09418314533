"""
Analysis Kernel - Signal measurements used by verification

Pure functions with no I/O:
- compute_rms: root-mean-square amplitude over all channels
- estimate_dominant_frequency: spectral peak with sub-bin interpolation
- trim_edges: drop encoder priming/padding regions before measuring
- calculate_correlation, aligned_correlation: waveform similarity to the reference

All operations are deterministic: same input -> same output.
"""

from typing import Tuple

import numpy as np
from scipy import fft as scipy_fft
from scipy import signal as scipy_signal

import config


def to_mono(samples: np.ndarray) -> np.ndarray:
    """Average (frames, channels) samples down to one channel."""
    if samples.ndim == 1:
        return samples.astype(np.float64)
    return samples.astype(np.float64).mean(axis=1)


def compute_rms(samples: np.ndarray) -> float:
    """
    Compute RMS amplitude.

    CONTRACT:
    - Input: float samples, any shape (all channels contribute equally)
    - Output: float >= 0; 0.0 for an empty buffer
    """
    if samples.size == 0:
        return 0.0
    values = samples.astype(np.float64)
    return float(np.sqrt(np.mean(values ** 2)))


def trim_edges(samples: np.ndarray, fraction: float = config.ANALYSIS_EDGE_TRIM_FRACTION) -> np.ndarray:
    """
    Drop `fraction` of the frames at each end.

    Lossy decoders return priming delay and padding around the tone; measuring
    the steady-state middle keeps RMS and peak estimates unbiased.
    """
    if not (0.0 <= fraction < 0.5):
        raise ValueError(f"fraction must be in [0, 0.5), got {fraction}")
    n = samples.shape[0]
    cut = int(n * fraction)
    return samples[cut:n - cut]


def compute_spectrum(mono: np.ndarray, sr: int, window: str = config.SPECTRAL_WINDOW) -> Tuple[np.ndarray, np.ndarray]:
    """
    Windowed magnitude spectrum.

    Returns:
        Tuple of (magnitude, freqs), both length n // 2 + 1
    """
    n = len(mono)
    win = scipy_signal.get_window(window, n, fftbins=True)
    magnitude = np.abs(scipy_fft.rfft(mono * win))
    freqs = scipy_fft.rfftfreq(n, 1.0 / sr)
    return magnitude, freqs


def estimate_dominant_frequency(samples: np.ndarray, sr: int, window: str = config.SPECTRAL_WINDOW) -> float:
    """
    Estimate the dominant frequency by peak-picking the magnitude spectrum.

    The DC bin is excluded. The peak is refined by fitting a parabola through
    the log magnitudes of the peak bin and its neighbours (accurate to a small
    fraction of a bin for a windowed pure tone).

    Parameters:
        samples: (frames,) or (frames, channels) float samples
        sr: Sample rate in Hz

    Returns:
        Frequency in Hz; 0.0 if the buffer is too short or silent
    """
    mono = to_mono(samples)
    if len(mono) < 4:
        return 0.0

    magnitude, _ = compute_spectrum(mono, sr, window)
    if not np.any(magnitude[1:] > 0):
        return 0.0

    k = int(np.argmax(magnitude[1:])) + 1
    offset = 0.0
    if 0 < k < len(magnitude) - 1:
        eps = 1e-20
        alpha = np.log(magnitude[k - 1] + eps)
        beta = np.log(magnitude[k] + eps)
        gamma = np.log(magnitude[k + 1] + eps)
        denom = alpha - 2.0 * beta + gamma
        if denom != 0.0:
            offset = 0.5 * (alpha - gamma) / denom

    return float((k + offset) * sr / len(mono))


def calculate_correlation(a: np.ndarray, b: np.ndarray) -> float:
    """
    Pearson correlation coefficient of two equal-length buffers.

    CONTRACT:
    - Input: float samples of the same frame count (multichannel buffers are
      mixed to mono first)
    - Output: float in [-1.0, 1.0]; 0.0 when either buffer is empty or constant

    Raises:
        ValueError: If the buffers differ in length
    """
    x = to_mono(a)
    y = to_mono(b)
    if len(x) != len(y):
        raise ValueError(f"cannot correlate buffers of {len(x)} and {len(y)} frames")
    if len(x) == 0:
        return 0.0

    x = x - x.mean()
    y = y - y.mean()
    denom = np.sqrt(np.sum(x ** 2) * np.sum(y ** 2))
    if denom == 0.0:
        return 0.0
    return float(np.clip(np.sum(x * y) / denom, -1.0, 1.0))


def aligned_correlation(candidate: np.ndarray, reference: np.ndarray,
                        max_lag: int = config.CORRELATION_MAX_LAG_FRAMES) -> Tuple[float, int]:
    """
    Correlate a decode with its reference after compensating encoder delay.

    The lag is the offset of the cross-correlation peak, limited to
    |lag| <= max_lag; the Pearson coefficient is then taken over the frames
    both buffers share at that offset.

    Returns:
        Tuple of (correlation, lag in frames); a positive lag means the
        candidate starts later than the reference
    """
    x = to_mono(candidate)
    y = to_mono(reference)
    if len(x) == 0 or len(y) == 0:
        return 0.0, 0

    xcorr = scipy_signal.correlate(x, y, mode='full', method='fft')
    lags = scipy_signal.correlation_lags(len(x), len(y), mode='full')
    window = np.abs(lags) <= max_lag
    lag = int(lags[window][np.argmax(xcorr[window])])

    if lag >= 0:
        x = x[lag:]
    else:
        y = y[-lag:]
    n = min(len(x), len(y))
    return calculate_correlation(x[:n], y[:n]), lag
