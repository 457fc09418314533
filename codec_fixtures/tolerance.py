"""
Tolerance profiles per codec family.

Lossless families always verify exactly. Lossy families verify dominant
frequency and RMS amplitude against thresholds from config.LOSSY_TOLERANCES,
loosened to config.LOW_BITRATE_TOLERANCE for low-bitrate encodes.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional

import config
from codec_fixtures.formats import ContainerFormat


class ToleranceKind(Enum):
    EXACT = 'exact'
    AMPLITUDE_AND_FREQUENCY = 'amplitude_and_frequency'


@dataclass(frozen=True)
class ToleranceProfile:
    """
    Attributes:
        kind: Comparison strategy
        max_freq_error_hz: Allowed |measured - nominal| frequency (lossy only)
        max_rms_error: Allowed |measured - target| RMS, normalized units (lossy only)
    """
    kind: ToleranceKind
    max_freq_error_hz: float = 0.0
    max_rms_error: float = 0.0

    def to_dict(self) -> dict:
        return {
            'kind': self.kind.value,
            'max_freq_error_hz': self.max_freq_error_hz,
            'max_rms_error': self.max_rms_error,
        }


EXACT = ToleranceProfile(ToleranceKind.EXACT)

_BITRATE_RE = re.compile(r'^\s*(\d+(?:\.\d+)?)\s*([kKmM]?)\s*$')


def parse_bitrate_kbps(value: str) -> Optional[float]:
    """'128k' -> 128.0, '1M' -> 1000.0, '96000' -> 96.0; None if unparseable."""
    match = _BITRATE_RE.match(str(value))
    if not match:
        return None
    number = float(match.group(1))
    suffix = match.group(2).lower()
    if suffix == 'k':
        return number
    if suffix == 'm':
        return number * 1000.0
    return number / 1000.0


def is_low_bitrate(fmt: ContainerFormat, codec_params: Mapping[str, str]) -> bool:
    """True if the codec options select a low-bitrate encode for this family."""
    for key in ('b:a', 'b'):
        if key in codec_params:
            kbps = parse_bitrate_kbps(codec_params[key])
            if kbps is not None and kbps < config.LOW_BITRATE_THRESHOLD_KBPS:
                return True

    rule = config.LOW_QUALITY_VBR.get(fmt.value)
    if rule is not None and 'q:a' in codec_params:
        op, limit = rule
        try:
            quality = float(codec_params['q:a'])
        except ValueError:
            return False
        return quality >= limit if op == '>=' else quality <= limit
    return False


def profile_for(fmt: ContainerFormat, codec_params: Optional[Mapping[str, str]] = None) -> ToleranceProfile:
    """Tolerance profile for a fixture of the given format and codec options."""
    if fmt.lossless:
        return EXACT
    params = dict(codec_params or {})
    if is_low_bitrate(fmt, params):
        freq_error, rms_error = config.LOW_BITRATE_TOLERANCE
    else:
        freq_error, rms_error = config.LOSSY_TOLERANCES[fmt.value]
    return ToleranceProfile(ToleranceKind.AMPLITUDE_AND_FREQUENCY, freq_error, rms_error)
