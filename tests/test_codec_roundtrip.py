"""
Codec Round-Trip Test Suite

Encodes reference signals with the real encoders and verifies the decodes
against the tolerance profiles. ffmpeg-backed formats skip when the encoder
is not compiled in.

Verifies:
- Default lossy encodes stay within +/-2 Hz and their RMS budget
- FLAC decodes bit-exactly through both libsndfile and ffmpeg
"""

import sys
from pathlib import Path

import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from codec_fixtures import external
from codec_fixtures.decoders import FFmpegDecoder, SoundfileDecoder
from codec_fixtures.encoders import FFmpegEncoder, SoundfileEncoder
from codec_fixtures.formats import ContainerFormat
from codec_fixtures.signals import ReferenceSignal, WaveformKind
from codec_fixtures.tolerance import profile_for
from codec_fixtures.verify import verify

HAS_FFMPEG = external.tool_available('ffmpeg') and external.tool_available('ffprobe')

requires_ffmpeg = pytest.mark.skipif(not HAS_FFMPEG, reason="ffmpeg/ffprobe not installed")


def lossy_encoder(fmt: ContainerFormat) -> FFmpegEncoder:
    encoder = FFmpegEncoder(fmt)
    if not encoder.is_available():
        pytest.skip(f"{encoder.describe_requirement()} not compiled into ffmpeg")
    return encoder


def write_encoded(tmp_path: Path, fmt: ContainerFormat, data: bytes) -> Path:
    path = tmp_path / f"fixture.{fmt.extension}"
    path.write_bytes(data)
    return path


# =============================================================================
# LOSSY ROUND-TRIP TESTS
# =============================================================================

@requires_ffmpeg
class TestLossyRoundTrip:
    """Default encodes decode within their tolerance profile."""

    @pytest.mark.parametrize("fmt,sample_rate", [
        (ContainerFormat.MP3, 44100),
        (ContainerFormat.OGG, 44100),
        (ContainerFormat.M4A, 44100),
        (ContainerFormat.OPUS, 48000),
    ])
    def test_default_encode_within_tolerance(self, tmp_path, fmt, sample_rate):
        reference = ReferenceSignal(WaveformKind.SINE, 1000.0, sample_rate_hz=sample_rate)
        params = dict(fmt.traits.default_params)
        data = lossy_encoder(fmt).encode(reference, params)
        path = write_encoded(tmp_path, fmt, data)

        result = verify(path, reference, profile_for(fmt, params), decoder=FFmpegDecoder())
        assert result.passed, result.failure_detail
        assert abs(result.measured_metrics['freq_error_hz']) <= 2.0

    def test_mp3_encode_is_reproducible(self):
        encoder = lossy_encoder(ContainerFormat.MP3)
        reference = ReferenceSignal(WaveformKind.SINE, 1000.0, duration_seconds=0.25)
        assert encoder.encode(reference, {'q:a': '2'}) == encoder.encode(reference, {'q:a': '2'})

    def test_wrong_reference_rejected(self, tmp_path):
        fmt = ContainerFormat.MP3
        params = dict(fmt.traits.default_params)
        data = lossy_encoder(fmt).encode(ReferenceSignal(WaveformKind.SINE, 1000.0), params)
        path = write_encoded(tmp_path, fmt, data)

        result = verify(path, ReferenceSignal(WaveformKind.SINE, 440.0),
                        profile_for(fmt, params), decoder=FFmpegDecoder())
        assert not result.passed
        assert 'dominant frequency' in result.failure_detail


# =============================================================================
# LOSSLESS ROUND-TRIP TESTS
# =============================================================================

class TestLosslessRoundTrip:
    """Exact decodes of natively encoded files."""

    @pytest.mark.parametrize("bit_depth", [16, 24])
    def test_flac_soundfile_exact(self, tmp_path, bit_depth):
        reference = ReferenceSignal(WaveformKind.SINE, 1000.0, bit_depth=bit_depth)
        fmt = ContainerFormat.FLAC
        path = write_encoded(tmp_path, fmt, SoundfileEncoder(fmt).encode(reference))

        result = verify(path, reference, profile_for(fmt), decoder=SoundfileDecoder())
        assert result.passed, result.failure_detail
        assert result.measured_metrics['mismatched_samples'] == 0

    @requires_ffmpeg
    @pytest.mark.parametrize("fmt", [ContainerFormat.FLAC, ContainerFormat.WAV])
    def test_ffmpeg_integer_decode_exact(self, tmp_path, fmt):
        reference = ReferenceSignal(WaveformKind.SINE, 440.0, duration_seconds=0.5)
        path = write_encoded(tmp_path, fmt, SoundfileEncoder(fmt).encode(reference))

        result = verify(path, reference, profile_for(fmt), decoder=FFmpegDecoder(integer=True))
        assert result.passed, result.failure_detail
