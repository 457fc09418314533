"""
Analysis Kernel and Tolerance Test Suite

Tests for the measurement functions used by lossy verification and for the
per-family tolerance profiles.
"""

import sys
from pathlib import Path

import numpy as np
import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import config
from codec_fixtures.analysis import (
    aligned_correlation,
    calculate_correlation,
    compute_rms,
    estimate_dominant_frequency,
    to_mono,
    trim_edges,
)
from codec_fixtures.formats import ContainerFormat
from codec_fixtures.tolerance import (
    EXACT,
    ToleranceKind,
    is_low_bitrate,
    parse_bitrate_kbps,
    profile_for,
)


def generate_tone(freq: float, duration: float = 1.0, sr: int = 44100,
                  amplitude: float = 0.8) -> np.ndarray:
    """Float sine for testing."""
    t = np.arange(int(duration * sr)) / sr
    return amplitude * np.sin(2 * np.pi * freq * t)


# =============================================================================
# RMS TESTS
# =============================================================================

class TestRms:
    """RMS amplitude measurement."""

    def test_sine_rms(self):
        assert abs(compute_rms(generate_tone(1000.0)) - 0.8 / np.sqrt(2)) < 1e-3

    def test_constant(self):
        assert compute_rms(np.full(100, 0.5)) == pytest.approx(0.5)

    def test_empty_is_zero(self):
        assert compute_rms(np.zeros((0, 2))) == 0.0

    def test_all_channels_contribute(self):
        stereo = np.column_stack([np.full(100, 0.5), np.zeros(100)])
        assert compute_rms(stereo) == pytest.approx(0.5 / np.sqrt(2))


# =============================================================================
# FREQUENCY TESTS
# =============================================================================

class TestDominantFrequency:
    """Spectral peak estimation with sub-bin interpolation."""

    @pytest.mark.parametrize("freq", [440.0, 1000.0, 440.5, 5000.0])
    def test_pure_tone(self, freq):
        estimate = estimate_dominant_frequency(generate_tone(freq), 44100)
        assert abs(estimate - freq) < 0.25

    def test_short_buffer_sub_bin_accuracy(self):
        """0.1 s gives 10 Hz bins; interpolation keeps the error well below a bin."""
        estimate = estimate_dominant_frequency(generate_tone(1000.0, duration=0.1), 44100)
        assert abs(estimate - 1000.0) < 2.0

    def test_stereo_input(self):
        tone = generate_tone(440.0)
        estimate = estimate_dominant_frequency(np.column_stack([tone, tone]), 44100)
        assert abs(estimate - 440.0) < 0.25

    def test_louder_tone_wins(self):
        mix = generate_tone(440.0, amplitude=0.2) + generate_tone(1000.0, amplitude=0.6)
        assert abs(estimate_dominant_frequency(mix, 44100) - 1000.0) < 0.5

    def test_silence_is_zero(self):
        assert estimate_dominant_frequency(np.zeros(44100), 44100) == 0.0

    def test_too_short_is_zero(self):
        assert estimate_dominant_frequency(np.ones(3), 44100) == 0.0

    def test_deterministic(self):
        tone = generate_tone(1000.0)
        assert estimate_dominant_frequency(tone, 44100) == estimate_dominant_frequency(tone, 44100)


# =============================================================================
# TRIMMING TESTS
# =============================================================================

class TestTrimEdges:
    """Priming/padding removal."""

    def test_trims_both_ends(self):
        samples = np.arange(100)
        trimmed = trim_edges(samples, 0.1)
        assert len(trimmed) == 80
        assert trimmed[0] == 10 and trimmed[-1] == 89

    def test_zero_fraction_keeps_all(self):
        samples = np.arange(10)
        np.testing.assert_array_equal(trim_edges(samples, 0.0), samples)

    @pytest.mark.parametrize("fraction", [-0.1, 0.5, 0.9])
    def test_invalid_fraction(self, fraction):
        with pytest.raises(ValueError):
            trim_edges(np.arange(10), fraction)

    def test_to_mono_averages(self):
        stereo = np.array([[1.0, 0.0], [0.5, 0.5]])
        np.testing.assert_allclose(to_mono(stereo), [0.5, 0.5])


# =============================================================================
# CORRELATION TESTS
# =============================================================================

class TestCorrelation:
    """Pearson similarity, with and without delay alignment."""

    def test_identical_signal(self):
        tone = generate_tone(1000.0)
        assert calculate_correlation(tone, tone) > 0.99

    def test_scaled_copy_still_correlates(self):
        tone = generate_tone(1000.0)
        assert calculate_correlation(tone, 0.3 * tone) == pytest.approx(1.0)

    def test_inverted_copy(self):
        tone = generate_tone(1000.0)
        assert calculate_correlation(tone, -tone) == pytest.approx(-1.0)

    def test_different_frequencies(self):
        assert abs(calculate_correlation(generate_tone(440.0), generate_tone(1000.0))) < 0.5

    def test_constant_or_empty_is_zero(self):
        assert calculate_correlation(np.zeros(100), generate_tone(440.0)[:100]) == 0.0
        assert calculate_correlation(np.zeros(0), np.zeros(0)) == 0.0

    def test_length_mismatch_rejected(self):
        with pytest.raises(ValueError):
            calculate_correlation(np.ones(10), np.ones(11))

    def test_stereo_mixed_to_mono(self):
        tone = generate_tone(440.0)
        stereo = np.column_stack([tone, tone])
        assert calculate_correlation(stereo, tone) > 0.99

    def test_aligned_recovers_delay(self):
        tone = generate_tone(1000.0)
        delayed = np.concatenate([np.zeros(1105), tone, np.zeros(1105)])
        correlation, lag = aligned_correlation(delayed, tone)
        assert lag == 1105
        assert correlation > 0.99

    def test_aligned_without_delay(self):
        tone = generate_tone(440.0)
        correlation, lag = aligned_correlation(tone, tone)
        assert lag == 0
        assert correlation == pytest.approx(1.0)

    def test_aligned_empty(self):
        assert aligned_correlation(np.zeros(0), generate_tone(440.0)) == (0.0, 0)


# =============================================================================
# TOLERANCE PROFILE TESTS
# =============================================================================

class TestToleranceProfiles:
    """Per-family thresholds."""

    @pytest.mark.parametrize("fmt", [ContainerFormat.WAV, ContainerFormat.FLAC])
    def test_lossless_is_exact(self, fmt):
        assert profile_for(fmt) is EXACT
        assert profile_for(fmt).kind is ToleranceKind.EXACT

    @pytest.mark.parametrize("fmt", [ContainerFormat.MP3, ContainerFormat.OGG,
                                     ContainerFormat.OPUS, ContainerFormat.M4A])
    def test_lossy_defaults(self, fmt):
        profile = profile_for(fmt, dict(fmt.traits.default_params))
        expected_freq, expected_rms = config.LOSSY_TOLERANCES[fmt.value]
        assert profile.kind is ToleranceKind.AMPLITUDE_AND_FREQUENCY
        assert profile.max_freq_error_hz == expected_freq
        assert profile.max_rms_error == expected_rms

    def test_decoder_frequency_requirement(self):
        """Default lossy encodes must be held to +/-2 Hz."""
        assert profile_for(ContainerFormat.MP3, {'q:a': '2'}).max_freq_error_hz == 2.0

    @pytest.mark.parametrize("fmt,params", [
        (ContainerFormat.MP3, {'b:a': '64k'}),
        (ContainerFormat.MP3, {'q:a': '7'}),
        (ContainerFormat.OGG, {'q:a': '1'}),
        (ContainerFormat.M4A, {'b:a': '48000'}),
    ])
    def test_low_bitrate_loosened(self, fmt, params):
        assert is_low_bitrate(fmt, params)
        profile = profile_for(fmt, params)
        assert (profile.max_freq_error_hz, profile.max_rms_error) == config.LOW_BITRATE_TOLERANCE

    @pytest.mark.parametrize("fmt,params", [
        (ContainerFormat.MP3, {'b:a': '96k'}),
        (ContainerFormat.MP3, {'q:a': '2'}),
        (ContainerFormat.OGG, {'q:a': '5'}),
        (ContainerFormat.OPUS, {'b:a': '128k'}),
    ])
    def test_normal_bitrate(self, fmt, params):
        assert not is_low_bitrate(fmt, params)

    @pytest.mark.parametrize("value,expected", [
        ('128k', 128.0),
        ('1M', 1000.0),
        ('96000', 96.0),
        (' 64K ', 64.0),
        ('fast', None),
    ])
    def test_parse_bitrate(self, value, expected):
        assert parse_bitrate_kbps(value) == expected

    def test_profile_to_dict(self):
        profile = profile_for(ContainerFormat.OPUS, {'b:a': '128k'})
        assert profile.to_dict() == {
            'kind': 'amplitude_and_frequency',
            'max_freq_error_hz': 2.0,
            'max_rms_error': 0.06,
        }
