"""
Exception hierarchy for fixture generation and verification.

Each failure kind is its own type so a batch report can tell environment
problems (MissingTool) apart from stale fixtures (ManifestDrift) and from
genuine encode/decode regressions.
"""

from typing import Dict, List, Optional


class FixtureError(Exception):
    """Base exception for all project-specific errors.

    Attributes:
        fixture_id: Id of the fixture the error belongs to (if any).
    """

    def __init__(self, message: str, *, fixture_id: Optional[str] = None):
        super().__init__(message)
        self.fixture_id = fixture_id

    @property
    def kind(self) -> str:
        return type(self).__name__


class MissingTool(FixtureError):
    """Raised when the environment lacks a required encoding/decoding capability.

    Attributes:
        tool: The missing executable or library feature (e.g. 'ffmpeg:libopus').
        format_family: Container format family that cannot be produced.
    """

    def __init__(self, message: str, *, tool: str = "", format_family: str = "",
                 fixture_id: Optional[str] = None):
        super().__init__(message, fixture_id=fixture_id)
        self.tool = tool
        self.format_family = format_family


class UnsupportedParameterCombination(FixtureError, ValueError):
    """Raised at spec construction when a format/parameter pairing is invalid.

    Attributes:
        field: The parameter that violates the format's constraints.
    """

    def __init__(self, message: str, *, field: str = "", fixture_id: Optional[str] = None):
        super().__init__(message, fixture_id=fixture_id)
        self.field = field


class EncodingFailed(FixtureError):
    """Raised when an encoder ran but produced no usable output.

    Attributes:
        stderr: Tail of the tool's diagnostic output, if any.
    """

    def __init__(self, message: str, *, stderr: str = "", fixture_id: Optional[str] = None):
        super().__init__(message, fixture_id=fixture_id)
        self.stderr = stderr


class TagRoundTripMismatch(FixtureError):
    """Raised when tags read back from a container differ from those written.

    Attributes:
        expected: Tags that were written.
        actual: Tags that were read back.
    """

    def __init__(self, message: str, *, expected: Optional[Dict[str, str]] = None,
                 actual: Optional[Dict[str, str]] = None, fixture_id: Optional[str] = None):
        super().__init__(message, fixture_id=fixture_id)
        self.expected = dict(expected or {})
        self.actual = dict(actual or {})

    @property
    def differing_keys(self) -> List[str]:
        keys = list(self.expected) + [k for k in self.actual if k not in self.expected]
        return [k for k in keys if self.expected.get(k) != self.actual.get(k)]


class VerificationMismatch(FixtureError):
    """Raised when a decoded signal is outside its tolerance.

    Attributes:
        metrics: Measured values that led to the failure.
    """

    def __init__(self, message: str, *, metrics: Optional[Dict] = None,
                 fixture_id: Optional[str] = None):
        super().__init__(message, fixture_id=fixture_id)
        self.metrics = dict(metrics or {})


class ManifestDrift(FixtureError):
    """Raised when on-disk fixtures no longer match the manifest checksums.

    Attributes:
        records: DriftRecord entries describing every mismatch.
    """

    def __init__(self, message: str, *, records: Optional[list] = None,
                 fixture_id: Optional[str] = None):
        super().__init__(message, fixture_id=fixture_id)
        self.records = list(records or [])


class DecodingFailed(FixtureError):
    """Raised when a candidate file cannot be decoded at all."""


class ToolTimeout(FixtureError):
    """Raised when an external process exceeds its time budget.

    Attributes:
        timeout_sec: The budget that was exceeded.
    """

    def __init__(self, message: str, *, timeout_sec: float = 0.0, fixture_id: Optional[str] = None):
        super().__init__(message, fixture_id=fixture_id)
        self.timeout_sec = timeout_sec


class GenerationCancelled(FixtureError):
    """Raised when a regeneration run is aborted before it completes."""
