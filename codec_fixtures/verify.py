"""
Verification Engine

Decodes a candidate file and compares it against the reference signal it was
generated from:

- EXACT (lossless containers): every decoded sample must equal the
  synthesizer's output. Declared bit-depth widening is the only conversion
  applied; nothing is resampled or rescaled.
- AMPLITUDE_AND_FREQUENCY (lossy containers): after trimming encoder
  priming/padding, the dominant frequency and RMS amplitude must lie within
  the profile's thresholds. The delay-aligned Pearson correlation with
  the reference is recorded alongside.

Per fixture the engine walks Loaded -> Decoded -> Compared -> Passed|Failed.
A VerificationResult always carries the measured metrics, pass or fail.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np

import config
from codec_fixtures.analysis import (
    aligned_correlation,
    compute_rms,
    estimate_dominant_frequency,
    trim_edges,
)
from codec_fixtures.decoders import AudioDecoder, DecodedAudio, decoder_for
from codec_fixtures.errors import (
    DecodingFailed,
    FixtureError,
    ManifestDrift,
    MissingTool,
    VerificationMismatch,
)
from codec_fixtures.formats import ContainerFormat
from codec_fixtures.manifest import FixtureManifest, ManifestEntry, entry_drift
from codec_fixtures.params import VerificationConfig, validate_config
from codec_fixtures.signals import (
    ReferenceSignal,
    WaveformKind,
    convert_bit_depth,
    synthesize,
    synthesize_float,
    target_rms,
)
from codec_fixtures.tolerance import ToleranceKind, ToleranceProfile, profile_for

logger = logging.getLogger(__name__)


class VerificationStage(Enum):
    PENDING = 'pending'
    LOADED = 'loaded'
    DECODED = 'decoded'
    COMPARED = 'compared'
    PASSED = 'passed'
    FAILED = 'failed'


_ERRORS = {
    'VerificationMismatch': VerificationMismatch,
    'ManifestDrift': ManifestDrift,
    'DecodingFailed': DecodingFailed,
    'MissingTool': MissingTool,
}


@dataclass
class VerificationResult:
    """
    Outcome of verifying one fixture.

    Attributes:
        fixture_id: Fixture (or file name) that was verified
        passed: True if every check held
        measured_metrics: Values measured along the way (always populated)
        tolerance_used: Profile the comparison ran under
        failure_detail: Human-readable reason when passed is False
        stage: Terminal stage (PASSED or FAILED)
        failed_at: Last stage reached before failing (None on success)
        error_kind: Name of the error type behind a failure
    """
    fixture_id: str
    passed: bool
    measured_metrics: Dict = field(default_factory=dict)
    tolerance_used: Optional[ToleranceProfile] = None
    failure_detail: Optional[str] = None
    stage: VerificationStage = VerificationStage.PENDING
    failed_at: Optional[VerificationStage] = None
    error_kind: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            'fixture_id': self.fixture_id,
            'passed': self.passed,
            'measured_metrics': self.measured_metrics,
            'tolerance_used': self.tolerance_used.to_dict() if self.tolerance_used else None,
            'failure_detail': self.failure_detail,
            'stage': self.stage.value,
            'failed_at': self.failed_at.value if self.failed_at else None,
            'error_kind': self.error_kind,
        }

    def raise_for_status(self) -> None:
        """
        Raises:
            VerificationMismatch, ManifestDrift, DecodingFailed, MissingTool:
                The error matching error_kind, if the fixture failed
        """
        if self.passed:
            return
        error_cls = _ERRORS.get(self.error_kind, FixtureError)
        message = self.failure_detail or f"{self.fixture_id} failed verification"
        if error_cls is VerificationMismatch:
            raise VerificationMismatch(message, metrics=self.measured_metrics,
                                       fixture_id=self.fixture_id)
        raise error_cls(message, fixture_id=self.fixture_id)


class _Failure(Exception):
    """Internal signal: comparison failed with a diagnosable reason."""

    def __init__(self, detail: str, error_kind: str = 'VerificationMismatch'):
        super().__init__(detail)
        self.detail = detail
        self.error_kind = error_kind


# =============================================================================
# COMPARISON
# =============================================================================

def _check_geometry(decoded: DecodedAudio, reference: ReferenceSignal, metrics: Dict) -> None:
    metrics['sample_rate'] = decoded.sample_rate
    metrics['channels'] = decoded.channels
    metrics['frames'] = decoded.frames
    if decoded.sample_rate != reference.sample_rate_hz:
        raise _Failure(f"sample rate {decoded.sample_rate} Hz, expected {reference.sample_rate_hz} Hz")
    if decoded.channels != reference.channels:
        raise _Failure(f"{decoded.channels} channel(s), expected {reference.channels}")


def _compare_exact(decoded: DecodedAudio, reference: ReferenceSignal, metrics: Dict) -> None:
    """
    Sample-for-sample comparison.

    Integer decodes at a deeper bit depth are compared against the widened
    reference. Float decodes must scale back to the reference integers
    exactly, using the power-of-two step decoders divide by.
    """
    _check_geometry(decoded, reference, metrics)
    if decoded.frames != reference.num_frames:
        raise _Failure(f"{decoded.frames} frames, expected {reference.num_frames}")

    expected = synthesize(reference)
    bits = reference.bit_depth

    if decoded.is_integer:
        metrics['bit_depth'] = decoded.bit_depth
        if decoded.bit_depth < bits:
            raise _Failure(f"decoded at {decoded.bit_depth}-bit, reference is {bits}-bit; "
                           f"narrowing is not a lossless conversion")
        expected = convert_bit_depth(expected, bits, decoded.bit_depth)
        actual = decoded.samples.astype(np.int64)
    else:
        metrics['bit_depth'] = None
        if bits > 24:
            raise _Failure(f"a float32 decode cannot represent {bits}-bit PCM exactly")
        scaled = decoded.samples.astype(np.float64) * float(1 << (bits - 1))
        if not np.all(scaled == np.rint(scaled)):
            raise _Failure("float samples are not exact multiples of the "
                           f"{bits}-bit quantization step")
        actual = scaled.astype(np.int64)

    expected = expected.astype(np.int64)
    diff = np.abs(actual - expected)
    mismatched = int(np.count_nonzero(diff))
    metrics['mismatched_samples'] = mismatched
    metrics['max_abs_error'] = int(diff.max()) if diff.size else 0

    if reference.waveform_kind is WaveformKind.SILENCE:
        nonzero = int(np.count_nonzero(actual))
        metrics['nonzero_samples'] = nonzero
        if nonzero:
            raise _Failure(f"silence fixture has {nonzero} non-zero sample(s)")

    if mismatched:
        first = int(np.argwhere(diff)[0][0])
        metrics['first_mismatch_frame'] = first
        raise _Failure(f"{mismatched} sample(s) differ from the reference "
                       f"(first at frame {first}, max error {metrics['max_abs_error']})")


def _to_float(decoded: DecodedAudio) -> np.ndarray:
    if decoded.is_integer:
        return decoded.samples.astype(np.float64) / float(1 << (decoded.bit_depth - 1))
    return decoded.samples.astype(np.float64)


def _compare_tolerance(decoded: DecodedAudio, reference: ReferenceSignal,
                       tolerance: ToleranceProfile, metrics: Dict) -> None:
    """Dominant-frequency and RMS checks on the trimmed steady-state region."""
    _check_geometry(decoded, reference, metrics)
    full = _to_float(decoded)
    samples = trim_edges(full, config.ANALYSIS_EDGE_TRIM_FRACTION)
    if samples.shape[0] == 0:
        raise _Failure("decoded buffer is empty after edge trimming")

    rms = compute_rms(samples)
    expected_rms = target_rms(reference)
    metrics['rms'] = rms
    metrics['target_rms'] = expected_rms
    metrics['rms_error'] = abs(rms - expected_rms)

    failures = []
    if reference.waveform_kind is WaveformKind.SINE:
        freq = estimate_dominant_frequency(samples, decoded.sample_rate)
        metrics['dominant_frequency_hz'] = freq
        metrics['nominal_frequency_hz'] = reference.frequency_hz
        metrics['freq_error_hz'] = abs(freq - reference.frequency_hz)
        if metrics['freq_error_hz'] > tolerance.max_freq_error_hz:
            failures.append(f"dominant frequency {freq:.2f} Hz is "
                            f"{metrics['freq_error_hz']:.2f} Hz from {reference.frequency_hz:g} Hz "
                            f"(max {tolerance.max_freq_error_hz:g} Hz)")
    elif reference.waveform_kind is WaveformKind.STEREO_SINE:
        nominal = reference.channel_frequencies()
        measured = [estimate_dominant_frequency(samples[:, ch], decoded.sample_rate)
                    for ch in range(len(nominal))]
        errors = [abs(m - n) for m, n in zip(measured, nominal)]
        metrics['dominant_frequency_hz'] = measured
        metrics['nominal_frequency_hz'] = list(nominal)
        metrics['freq_error_hz'] = max(errors)
        for ch, (freq, nom, err) in enumerate(zip(measured, nominal, errors)):
            if err > tolerance.max_freq_error_hz:
                failures.append(f"channel {ch} dominant frequency {freq:.2f} Hz is "
                                f"{err:.2f} Hz from {nom:g} Hz "
                                f"(max {tolerance.max_freq_error_hz:g} Hz)")

    if reference.waveform_kind.tonal:
        # Recorded for trend analysis; pass/fail stays on frequency and RMS
        correlation, lag = aligned_correlation(full, synthesize_float(reference))
        metrics['correlation'] = correlation
        metrics['alignment_lag_frames'] = lag

    if metrics['rms_error'] > tolerance.max_rms_error:
        failures.append(f"RMS {rms:.4f} is {metrics['rms_error']:.4f} from target "
                        f"{expected_rms:.4f} (max {tolerance.max_rms_error:g})")

    if failures:
        raise _Failure("; ".join(failures))


def verify(
    candidate: Path,
    reference: ReferenceSignal,
    tolerance: ToleranceProfile,
    decoder: Optional[AudioDecoder] = None,
    fixture_id: Optional[str] = None,
) -> VerificationResult:
    """
    Verify one candidate file against its reference signal.

    Never raises for a per-fixture problem: decode errors, missing decoders
    and tolerance violations all come back as a failed VerificationResult.

    Parameters:
        candidate: Encoded file to decode
        reference: Signal the file was generated from
        tolerance: Comparison profile (see tolerance.profile_for)
        decoder: Decoder under test (picked from the file extension if omitted)
        fixture_id: Id reported in the result (defaults to the file name)
    """
    candidate = Path(candidate)
    result = VerificationResult(
        fixture_id=fixture_id or candidate.name,
        passed=False,
        tolerance_used=tolerance,
    )
    metrics = result.measured_metrics
    reached = VerificationStage.PENDING

    try:
        if not candidate.is_file():
            raise _Failure(f"{candidate} does not exist", 'DecodingFailed')
        metrics['file_size'] = candidate.stat().st_size
        reached = VerificationStage.LOADED

        if decoder is None:
            decoder = decoder_for(ContainerFormat.parse(candidate.suffix))
        metrics['decoder'] = decoder.name
        decoded = decoder.decode(candidate)
        reached = VerificationStage.DECODED

        if tolerance.kind is ToleranceKind.EXACT:
            _compare_exact(decoded, reference, metrics)
        else:
            _compare_tolerance(decoded, reference, tolerance, metrics)
        reached = VerificationStage.COMPARED
    except _Failure as e:
        result.failure_detail = e.detail
        result.error_kind = e.error_kind
    except (DecodingFailed, MissingTool) as e:
        result.failure_detail = str(e)
        result.error_kind = e.kind
    except ValueError as e:
        # Unknown extension when no decoder was given
        result.failure_detail = str(e)
        result.error_kind = 'DecodingFailed'

    if result.error_kind is None:
        result.passed = True
        result.stage = VerificationStage.PASSED
    else:
        result.stage = VerificationStage.FAILED
        result.failed_at = reached
        logger.info("%s failed at %s: %s", result.fixture_id, reached.value, result.failure_detail)
    return result


def verify_entry(
    entry: ManifestEntry,
    target_dir: Path,
    decoder: Optional[AudioDecoder] = None,
    check_drift: bool = True,
) -> VerificationResult:
    """
    Verify one manifest entry, checking for drift before decoding.

    A drifted fixture is reported as ManifestDrift and never decoded, so a
    stale file is not mistaken for a decoder bug.
    """
    spec = entry.spec
    tolerance = profile_for(spec.container_format, spec.params_dict)

    if check_drift:
        record = entry_drift(entry, target_dir)
        if record is not None:
            return VerificationResult(
                fixture_id=spec.id,
                passed=False,
                measured_metrics={'drift': record.kind.value},
                tolerance_used=tolerance,
                failure_detail=record.describe(),
                stage=VerificationStage.FAILED,
                failed_at=VerificationStage.PENDING,
                error_kind='ManifestDrift',
            )

    return verify(
        Path(target_dir) / spec.output_path,
        spec.reference,
        tolerance,
        decoder=decoder,
        fixture_id=spec.id,
    )


def verify_manifest(manifest: FixtureManifest, params: VerificationConfig) -> List[VerificationResult]:
    """
    Verify every manifest entry in a bounded thread pool.

    Returns:
        Results in manifest order
    """
    validate_config(params)
    entries = manifest.entries
    if params.formats is not None:
        wanted = set(params.formats)
        entries = [e for e in entries if e.spec.container_format in wanted]

    def run(entry: ManifestEntry) -> VerificationResult:
        try:
            decoder = decoder_for(
                entry.spec.container_format, params.decoder,
                ffmpeg=params.ffmpeg, ffprobe=params.ffprobe,
                timeout_sec=params.tool_timeout_sec,
            )
            decoder.check_available(entry.spec.container_format)
        except MissingTool as e:
            return VerificationResult(
                fixture_id=entry.spec.id, passed=False,
                tolerance_used=profile_for(entry.spec.container_format, entry.spec.params_dict),
                failure_detail=str(e), stage=VerificationStage.FAILED,
                failed_at=VerificationStage.PENDING, error_kind=e.kind,
            )
        return verify_entry(entry, params.target_dir, decoder=decoder,
                            check_drift=params.check_drift)

    logger.info("Verifying %d fixture(s) with %d worker(s)", len(entries), params.max_workers)
    with ThreadPoolExecutor(max_workers=params.max_workers) as executor:
        return list(executor.map(run, entries))
