"""
Signal Synthesizer Module

Generates reference PCM buffers with known mathematical properties.
All operations are pure and deterministic: identical ReferenceSignal fields
always yield byte-identical PCM.

PCM LAYOUT:
- numpy integer array shaped (frames, channels)
- int16 for 16-bit, int32 for 24/32-bit (values right-justified, i.e. a
  24-bit sample lies in [-2**23, 2**23 - 1])
- to_pcm_bytes() packs the interleaved little-endian stream at the stated
  sample width (3 bytes per sample for 24-bit)
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Tuple

import numpy as np

import config
from codec_fixtures.errors import UnsupportedParameterCombination


class WaveformKind(Enum):
    SINE = 'sine'
    STEREO_SINE = 'stereo_sine'
    SILENCE = 'silence'
    IMPULSE = 'impulse'

    @property
    def tonal(self) -> bool:
        return self in (WaveformKind.SINE, WaveformKind.STEREO_SINE)


@dataclass(frozen=True)
class ReferenceSignal:
    """
    Description of a reference signal.

    Attributes:
        waveform_kind: Shape of the signal
        frequency_hz: Tone frequency (left channel for a stereo sine, forced
            to 0.0 for non-tonal kinds)
        sample_rate_hz: Sample rate in Hz
        channels: Channel count; every channel carries the same waveform
            except for a stereo sine, which needs exactly two
        duration_seconds: Duration in seconds (0 yields an empty buffer)
        bit_depth: Integer PCM width (16, 24 or 32)
        right_frequency_hz: Right channel tone of a stereo sine (0.0 otherwise)
    """
    waveform_kind: WaveformKind = WaveformKind.SINE
    frequency_hz: float = 1000.0
    sample_rate_hz: int = config.DEFAULT_SAMPLE_RATE
    channels: int = config.DEFAULT_CHANNELS
    duration_seconds: float = config.DEFAULT_DURATION_SEC
    bit_depth: int = config.DEFAULT_BIT_DEPTH
    right_frequency_hz: float = 0.0

    def __post_init__(self):
        if not isinstance(self.waveform_kind, WaveformKind):
            object.__setattr__(self, 'waveform_kind', WaveformKind(self.waveform_kind))
        if self.sample_rate_hz <= 0:
            raise ValueError(f"sample_rate_hz must be positive, got {self.sample_rate_hz}")
        if self.channels < 1:
            raise ValueError(f"channels must be >= 1, got {self.channels}")
        if self.duration_seconds < 0:
            raise ValueError(f"duration_seconds must be >= 0, got {self.duration_seconds}")
        if self.bit_depth not in config.SUPPORTED_BIT_DEPTHS:
            raise ValueError(
                f"bit_depth must be one of {config.SUPPORTED_BIT_DEPTHS}, got {self.bit_depth}"
            )

        if self.waveform_kind.tonal:
            self._check_tone('frequency_hz')
            object.__setattr__(self, 'frequency_hz', float(self.frequency_hz))
        else:
            # Frequency is meaningless for non-tonal signals
            object.__setattr__(self, 'frequency_hz', 0.0)

        if self.waveform_kind is WaveformKind.STEREO_SINE:
            if self.channels != 2:
                raise UnsupportedParameterCombination(
                    f"a stereo sine needs exactly 2 channels, got {self.channels}",
                    field='channels',
                )
            self._check_tone('right_frequency_hz')
            object.__setattr__(self, 'right_frequency_hz', float(self.right_frequency_hz))
        else:
            object.__setattr__(self, 'right_frequency_hz', 0.0)

    def _check_tone(self, field_name: str) -> None:
        nyquist = self.sample_rate_hz / 2.0
        value = getattr(self, field_name)
        if not (0.0 < value < nyquist):
            raise UnsupportedParameterCombination(
                f"{field_name} must be in (0, {nyquist}) at {self.sample_rate_hz} Hz, got {value}",
                field=field_name,
            )

    @property
    def num_frames(self) -> int:
        return int(round(self.sample_rate_hz * self.duration_seconds))

    def channel_frequencies(self) -> Tuple[float, ...]:
        """Nominal tone of each channel (empty for non-tonal kinds)."""
        if self.waveform_kind is WaveformKind.STEREO_SINE:
            return (self.frequency_hz, self.right_frequency_hz)
        if self.waveform_kind is WaveformKind.SINE:
            return (self.frequency_hz,) * self.channels
        return ()

    def describe(self) -> str:
        """Short human-readable description, e.g. 'sine_1000hz'."""
        if self.waveform_kind is WaveformKind.SINE:
            return f"sine_{self.frequency_hz:g}hz"
        if self.waveform_kind is WaveformKind.STEREO_SINE:
            return f"stereo_{self.frequency_hz:g}_{self.right_frequency_hz:g}hz"
        return self.waveform_kind.value

    def to_dict(self) -> dict:
        return {
            'waveform_kind': self.waveform_kind.value,
            'frequency_hz': self.frequency_hz,
            'right_frequency_hz': self.right_frequency_hz,
            'sample_rate_hz': self.sample_rate_hz,
            'channels': self.channels,
            'duration_seconds': self.duration_seconds,
            'bit_depth': self.bit_depth,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'ReferenceSignal':
        return cls(
            waveform_kind=WaveformKind(data['waveform_kind']),
            frequency_hz=data.get('frequency_hz', 0.0),
            sample_rate_hz=int(data['sample_rate_hz']),
            channels=int(data['channels']),
            duration_seconds=float(data['duration_seconds']),
            bit_depth=int(data['bit_depth']),
            right_frequency_hz=data.get('right_frequency_hz', 0.0),
        )


# =============================================================================
# QUANTIZATION HELPERS
# =============================================================================

def full_scale(bit_depth: int) -> int:
    """Largest positive sample value at the given bit depth."""
    return (1 << (bit_depth - 1)) - 1


def sample_dtype(bit_depth: int) -> np.dtype:
    return np.dtype(np.int16) if bit_depth == 16 else np.dtype(np.int32)


def quantize(values: np.ndarray, bit_depth: int) -> np.ndarray:
    """Round normalized float samples to integers at the given bit depth."""
    scale = full_scale(bit_depth)
    scaled = np.rint(np.clip(values, -1.0, 1.0) * scale)
    return scaled.astype(sample_dtype(bit_depth))


def pcm_to_float(pcm: np.ndarray, bit_depth: int) -> np.ndarray:
    """Convert integer PCM to float64 in [-1.0, 1.0] using the synthesizer's scale."""
    return pcm.astype(np.float64) / full_scale(bit_depth)


def convert_bit_depth(pcm: np.ndarray, from_bits: int, to_bits: int) -> np.ndarray:
    """
    Convert integer PCM between bit depths.

    Only widening is allowed: it is an exact left shift, the same conversion a
    container performs when storing 16-bit material in a 24-bit stream.

    Raises:
        ValueError: If to_bits < from_bits (narrowing would discard data)
    """
    if to_bits == from_bits:
        return pcm
    if to_bits < from_bits:
        raise ValueError(f"Refusing to narrow PCM from {from_bits} to {to_bits} bits")
    widened = pcm.astype(np.int64) << (to_bits - from_bits)
    return widened.astype(sample_dtype(to_bits))


def to_pcm_bytes(pcm: np.ndarray, bit_depth: int) -> bytes:
    """Pack (frames, channels) PCM as interleaved little-endian bytes."""
    if bit_depth == 16:
        return pcm.astype('<i2').tobytes()
    if bit_depth == 24:
        wide = np.ascontiguousarray(pcm, dtype='<i4').reshape(-1)
        return wide.view(np.uint8).reshape(-1, 4)[:, :3].tobytes()
    return pcm.astype('<i4').tobytes()


# =============================================================================
# SYNTHESIS
# =============================================================================

def _sine_phase(num_frames: int, frequency_hz: float, sample_rate_hz: int) -> np.ndarray:
    """
    Phase in cycles, in [0, 1), for each frame index.

    n * f is exact in float64 for integral frequencies (and any realistic
    buffer length), and reducing it modulo the sample rate before dividing
    keeps the phase of frame n independent of every other frame, so error does
    not accumulate over long buffers.
    """
    n = np.arange(num_frames, dtype=np.float64)
    return np.mod(n * frequency_hz, float(sample_rate_hz)) / float(sample_rate_hz)


def synthesize_float(signal: ReferenceSignal) -> np.ndarray:
    """
    Ideal waveform before quantization.

    Returns:
        float64 array shaped (frames, channels) in [-1.0, 1.0]
    """
    num_frames = signal.num_frames
    mono = np.zeros(num_frames, dtype=np.float64)

    if signal.waveform_kind is WaveformKind.STEREO_SINE:
        columns = [
            config.TARGET_PEAK_AMPLITUDE
            * np.sin(2.0 * np.pi * _sine_phase(num_frames, freq, signal.sample_rate_hz))
            for freq in signal.channel_frequencies()
        ]
        return np.stack(columns, axis=1)

    if signal.waveform_kind is WaveformKind.SINE:
        phase = _sine_phase(num_frames, signal.frequency_hz, signal.sample_rate_hz)
        mono = config.TARGET_PEAK_AMPLITUDE * np.sin(2.0 * np.pi * phase)
    elif signal.waveform_kind is WaveformKind.IMPULSE and num_frames > 0:
        mono[0] = config.TARGET_PEAK_AMPLITUDE

    return np.repeat(mono[:, np.newaxis], signal.channels, axis=1)


def synthesize(signal: ReferenceSignal) -> np.ndarray:
    """
    Synthesize integer PCM for a reference signal.

    CONTRACT:
    - Pure function of its input (no randomness, no clock)
    - Output: (frames, channels) int16/int32 array, frames = signal.num_frames
    - Silence is all zeros; zero duration yields an empty (0, channels) buffer
    """
    return quantize(synthesize_float(signal), signal.bit_depth)


def target_rms(signal: ReferenceSignal) -> float:
    """RMS the synthesized signal is designed to have, in normalized units."""
    if signal.waveform_kind.tonal:
        return config.TARGET_SINE_RMS
    if signal.waveform_kind is WaveformKind.IMPULSE and signal.num_frames > 0:
        return config.TARGET_PEAK_AMPLITUDE / math.sqrt(signal.num_frames)
    return 0.0
