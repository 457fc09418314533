"""
codec-fixtures - Configuration

All tunable parameters, thresholds, and constants with documentation.
Every default value includes rationale.
"""

import math
from typing import Dict, Tuple

# =============================================================================
# REFERENCE SIGNAL PARAMETERS
# =============================================================================

# Peak amplitude of synthesized tones (fraction of full scale)
# Why: 0.8 leaves ~2 dB headroom so lossy encoders do not clip on overshoot,
#      while staying loud enough that quantization noise is negligible.
#      Matches boosting ffmpeg's 1/8 default sine by a fixed volume factor.
TARGET_PEAK_AMPLITUDE: float = 0.8

# Target RMS of a full-length sine at TARGET_PEAK_AMPLITUDE
# Why: RMS of a sine is peak / sqrt(2); lossy verification compares against it
TARGET_SINE_RMS: float = TARGET_PEAK_AMPLITUDE / math.sqrt(2.0)

# Default sample rate (Hz)
# Why: 44100 Hz is the CD rate and what most decoder tests assume
DEFAULT_SAMPLE_RATE: int = 44100

# Default channel count
# Why: stereo exercises interleaving in decoders, mono is covered separately
DEFAULT_CHANNELS: int = 2

# Default duration (seconds)
# Why: 1 second keeps fixtures small (committed to repositories) while giving
#      1 Hz spectral resolution for frequency checks
DEFAULT_DURATION_SEC: float = 1.0

# Default bit depth
# Why: 16-bit is universally supported by every container under test
DEFAULT_BIT_DEPTH: int = 16

# Bit depths the synthesizer can quantize to
# Why: covers CD (16), high-resolution (24) and full 32-bit integer PCM
SUPPORTED_BIT_DEPTHS: Tuple[int, ...] = (16, 24, 32)

# =============================================================================
# ENCODING PARAMETERS
# =============================================================================

# Maximum wall-clock time for one external tool invocation (seconds)
# Why: a 1-second fixture encodes in well under a second; 30 s tolerates slow
#      CI machines while still catching a hung encoder
ENCODER_TIMEOUT_SEC: float = 30.0

# Polling interval while waiting on an external process (seconds)
# Why: 0.1 s makes cancellation feel immediate without busy-waiting
PROCESS_POLL_INTERVAL_SEC: float = 0.1

# Number of parallel fixture workers
# Why: encoders are out-of-process, so threads suffice; 4 keeps a laptop
#      responsive while still cutting regeneration time substantially
MAX_WORKERS: int = 4

# Default executable names
# Why: resolved on PATH; overridable from the command line
FFMPEG_BINARY: str = "ffmpeg"
FFPROBE_BINARY: str = "ffprobe"

# Stream tags written on embedded cover art
# Why: decoders under test look for the front-cover description that
#      tagging tools conventionally attach to an attached picture
ARTWORK_TITLE: str = "Album cover"
ARTWORK_COMMENT: str = "Cover (front)"

# =============================================================================
# VERIFICATION PARAMETERS
# =============================================================================

# Fraction of the decoded buffer ignored at each end for lossy analysis
# Why: encoder priming delay and end padding (MP3 ~1105 samples, Opus
#      pre-skip) produce ramps and silence that bias RMS; 10% trims them
ANALYSIS_EDGE_TRIM_FRACTION: float = 0.1

# Window applied before the spectral peak search
# Why: Hann sidelobes fall off fast, so the main lobe stays well defined
#      and parabolic interpolation is accurate to a fraction of a bin
SPECTRAL_WINDOW: str = 'hann'

# Largest encoder delay searched when aligning a decode with its reference
# Why: MP3 priming is ~1105 frames and Opus pre-skip 312 at 48 kHz; 4096
#      covers both with margin while keeping periodic tones from aliasing
#      onto a far-off correlation peak
CORRELATION_MAX_LAG_FRAMES: int = 4096

# Per-family lossy tolerances: (max_freq_error_hz, max_rms_error)
# Why: 2 Hz is the decoder-test requirement for a 1 kHz tone; an RMS error of
#      0.05 (normalized units) is ~0.8 dB at the 0.566 target, well beyond
#      codec gain drift but far below a missing channel or wrong scaling.
#      Opus resamples internally and gets slightly more room.
LOSSY_TOLERANCES: Dict[str, Tuple[float, float]] = {
    'mp3': (2.0, 0.05),
    'ogg': (2.0, 0.05),
    'opus': (2.0, 0.06),
    'm4a': (2.0, 0.05),
}

# Tolerances for low-bitrate lossy encodes: (max_freq_error_hz, max_rms_error)
# Why: below ~96 kbps encoders band-limit and pre-echo more aggressively
LOW_BITRATE_TOLERANCE: Tuple[float, float] = (5.0, 0.10)

# Constant bitrates below this are treated as low-bitrate (kbps)
# Why: 96 kbps is where MP3/AAC start audibly trading tone fidelity
LOW_BITRATE_THRESHOLD_KBPS: int = 96

# VBR quality settings that count as low-bitrate, per family
# Why: LAME -q:a 6 and worse averages under ~120 kbps;
#      Vorbis -q:a 2 and lower averages under ~96 kbps
LOW_QUALITY_VBR: Dict[str, Tuple[str, float]] = {
    'mp3': ('>=', 6.0),
    'ogg': ('<=', 2.0),
}

# =============================================================================
# OUTPUT PARAMETERS
# =============================================================================

# Manifest schema version
# Why: versioning allows future format changes while keeping old manifests readable
SCHEMA_VERSION: str = "1.0.0"

# Manifest file name, written inside the target directory
# Why: fixed location next to the fixtures it describes
MANIFEST_FILENAME: str = "fixtures_manifest.json"

# Prefix of the per-run staging directory inside the target directory
# Why: staging on the same filesystem makes the final os.replace atomic;
#      the leading dot keeps it out of casual directory listings
STAGING_PREFIX: str = ".fixtures-staging-"

# Chunk size for streaming checksums (bytes)
CHECKSUM_CHUNK_SIZE: int = 1 << 16

# =============================================================================
# EXIT CODES
# =============================================================================

# Why: automation must tell environment problems apart from real regressions.
#      2 is left to argparse usage errors.
EXIT_OK: int = 0
EXIT_FAILURE: int = 1
EXIT_MISSING_TOOL: int = 3
EXIT_DRIFT: int = 4
