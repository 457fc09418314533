"""
Run Parameters - Explicit configuration threaded through the pipeline

Everything a generation or verification run depends on (target directory,
format filter, overwrite policy, tool locations) lives in one frozen value
instead of process-global state.

USAGE:
    from codec_fixtures.params import GenerationConfig

    params = GenerationConfig(target_dir=Path("fixtures/samples"))
    flac_only = GenerationConfig(
        target_dir=Path("fixtures/samples"),
        formats=(ContainerFormat.FLAC,),
        force=True,
    )
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple

import config
from codec_fixtures.decoders import DECODER_NAMES
from codec_fixtures.formats import ContainerFormat


@dataclass(frozen=True)
class GenerationConfig:
    """
    Parameters of one regeneration run.

    Attributes:
        target_dir: Directory receiving the fixtures and the manifest
        formats: Only regenerate these container formats (None = all)
        force: Overwrite even if on-disk fixtures drifted from the manifest
        dry_run: Validate the matrix and capabilities without writing files
        max_workers: Parallel fixture workers (default config.MAX_WORKERS)
        encoder_timeout_sec: Budget per external tool call
        ffmpeg: ffmpeg executable
        ffprobe: ffprobe executable
    """
    target_dir: Path
    formats: Optional[Tuple[ContainerFormat, ...]] = None
    force: bool = False
    dry_run: bool = False
    max_workers: int = config.MAX_WORKERS
    encoder_timeout_sec: float = config.ENCODER_TIMEOUT_SEC
    ffmpeg: str = config.FFMPEG_BINARY
    ffprobe: str = config.FFPROBE_BINARY

    def __post_init__(self):
        object.__setattr__(self, 'target_dir', Path(self.target_dir))
        if self.formats is not None:
            object.__setattr__(self, 'formats', tuple(self.formats))

    def to_dict(self) -> Dict:
        return {
            'target_dir': str(self.target_dir),
            'formats': None if self.formats is None else [f.value for f in self.formats],
            'force': self.force,
            'dry_run': self.dry_run,
            'max_workers': self.max_workers,
            'encoder_timeout_sec': self.encoder_timeout_sec,
            'ffmpeg': self.ffmpeg,
            'ffprobe': self.ffprobe,
        }


@dataclass(frozen=True)
class VerificationConfig:
    """
    Parameters of one verification run over a manifest.

    Attributes:
        target_dir: Directory holding the fixtures and the manifest
        decoder: Decoder under test ('auto', 'soundfile', 'ffmpeg', 'librosa')
        max_workers: Parallel verification workers
        check_drift: Compare checksums before decoding (drift is reported
            separately from decode failures)
        tool_timeout_sec: Budget per external tool call
    """
    target_dir: Path
    decoder: str = 'auto'
    max_workers: int = config.MAX_WORKERS
    check_drift: bool = True
    tool_timeout_sec: float = config.ENCODER_TIMEOUT_SEC
    ffmpeg: str = config.FFMPEG_BINARY
    ffprobe: str = config.FFPROBE_BINARY
    formats: Optional[Tuple[ContainerFormat, ...]] = field(default=None)

    def __post_init__(self):
        object.__setattr__(self, 'target_dir', Path(self.target_dir))
        if self.formats is not None:
            object.__setattr__(self, 'formats', tuple(self.formats))


def validate_config(params) -> bool:
    """
    Validate a GenerationConfig or VerificationConfig.

    Returns:
        True if the parameters are valid

    Raises:
        ValueError: If a parameter is out of range
    """
    if params.max_workers < 1:
        raise ValueError(f"max_workers must be >= 1, got {params.max_workers}")

    timeout = (params.encoder_timeout_sec if isinstance(params, GenerationConfig)
               else params.tool_timeout_sec)
    if timeout <= 0:
        raise ValueError(f"timeout must be positive, got {timeout}")

    if params.formats is not None and not params.formats:
        raise ValueError("formats filter must name at least one format")

    if isinstance(params, VerificationConfig) and params.decoder not in DECODER_NAMES:
        raise ValueError(f"decoder must be one of {DECODER_NAMES}, got {params.decoder!r}")

    if not params.ffmpeg or not params.ffprobe:
        raise ValueError("ffmpeg and ffprobe executables must be named")

    return True
