"""
Decoder capabilities used by the verification engine.

The decoder is the thing under test, so it is pluggable like the encoders:
- SoundfileDecoder: libsndfile, integer output at the container bit depth
- FFmpegDecoder: any format ffmpeg reads, integer or float output
- LibrosaDecoder: librosa.load at the native rate, float output
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import librosa
import numpy as np
import soundfile as sf

import config
from codec_fixtures import external
from codec_fixtures.errors import DecodingFailed, MissingTool, ToolTimeout
from codec_fixtures.formats import ContainerFormat

logger = logging.getLogger(__name__)


@dataclass
class DecodedAudio:
    """
    Attributes:
        samples: (frames, channels) array; integer PCM if bit_depth is set,
            otherwise float in [-1.0, 1.0]
        sample_rate: Sample rate in Hz
        bit_depth: Integer width of samples, or None for float output
    """
    samples: np.ndarray
    sample_rate: int
    bit_depth: Optional[int] = None

    @property
    def channels(self) -> int:
        return self.samples.shape[1]

    @property
    def frames(self) -> int:
        return self.samples.shape[0]

    @property
    def is_integer(self) -> bool:
        return self.bit_depth is not None


class AudioDecoder(ABC):
    name = 'decoder'

    @abstractmethod
    def is_available(self, fmt: ContainerFormat) -> bool:
        """True if this decoder can read the given container here."""

    @abstractmethod
    def decode(self, path: Path) -> DecodedAudio:
        """
        Raises:
            DecodingFailed: The file could not be decoded
        """

    def check_available(self, fmt: ContainerFormat) -> None:
        if not self.is_available(fmt):
            raise MissingTool(
                f"{self.name} cannot decode {fmt.value} in this environment",
                tool=self.name, format_family=fmt.value,
            )


SUBTYPE_BITS = {'PCM_16': 16, 'PCM_24': 24, 'PCM_32': 32}


class SoundfileDecoder(AudioDecoder):
    """Exact integer decode of PCM WAV and FLAC through libsndfile."""

    name = 'soundfile'

    def is_available(self, fmt: ContainerFormat) -> bool:
        return fmt in (ContainerFormat.WAV, ContainerFormat.FLAC) and \
            fmt.value.upper() in sf.available_formats()

    def decode(self, path: Path) -> DecodedAudio:
        try:
            info = sf.info(str(path))
            bits = SUBTYPE_BITS.get(info.subtype)
            if bits is None:
                raise DecodingFailed(f"{path.name}: unsupported subtype {info.subtype}")
            dtype = 'int16' if bits == 16 else 'int32'
            data, sr = sf.read(str(path), dtype=dtype, always_2d=True)
        except (RuntimeError, ValueError) as e:
            raise DecodingFailed(f"{path.name}: {e}") from e

        if bits == 24:
            # libsndfile left-justifies 24-bit samples in int32
            data = data >> 8
        return DecodedAudio(samples=data, sample_rate=int(sr), bit_depth=bits)


class FFmpegDecoder(AudioDecoder):
    """
    Decode through ffmpeg to raw PCM on stdout.

    Parameters:
        integer: Emit s32le and right-shift to the stream bit depth (for exact
            comparison); otherwise emit f32le floats
    """

    name = 'ffmpeg'

    def __init__(
        self,
        integer: bool = False,
        ffmpeg: str = config.FFMPEG_BINARY,
        ffprobe: str = config.FFPROBE_BINARY,
        timeout_sec: float = config.ENCODER_TIMEOUT_SEC,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.integer = integer
        self.ffmpeg = ffmpeg
        self.ffprobe = ffprobe
        self.timeout_sec = timeout_sec
        self.cancel_event = cancel_event

    def is_available(self, fmt: ContainerFormat) -> bool:
        return external.tool_available(self.ffmpeg) and external.tool_available(self.ffprobe)

    def _stream_info(self, path: Path) -> dict:
        info = external.ffprobe(path, binary=self.ffprobe, timeout_sec=self.timeout_sec,
                                cancel_event=self.cancel_event)
        for stream in info.get('streams', []):
            if stream.get('codec_type') == 'audio':
                return stream
        raise DecodingFailed(f"{path.name}: no audio stream")

    def decode(self, path: Path) -> DecodedAudio:
        try:
            stream = self._stream_info(path)
        except (ValueError, ToolTimeout) as e:
            raise DecodingFailed(f"{path.name}: {e}") from e

        channels = int(stream['channels'])
        sample_rate = int(stream['sample_rate'])
        raw_format, dtype = ('s32le', '<i4') if self.integer else ('f32le', '<f4')

        cmd = [
            self.ffmpeg, '-hide_banner', '-loglevel', 'error',
            '-i', str(path), '-map', '0:a:0',
            '-f', raw_format, '-c:a', f"pcm_{raw_format}", 'pipe:1',
        ]
        try:
            result = external.run_tool(cmd, timeout_sec=self.timeout_sec,
                                       cancel_event=self.cancel_event)
        except ToolTimeout as e:
            raise DecodingFailed(f"{path.name}: {e}") from e
        if result.returncode != 0:
            raise DecodingFailed(f"{path.name}: {external.stderr_tail(result.stderr)}")

        data = np.frombuffer(result.stdout, dtype=dtype)
        if data.size % channels:
            raise DecodingFailed(f"{path.name}: truncated PCM output")
        data = data.reshape(-1, channels)

        if not self.integer:
            return DecodedAudio(samples=data.astype(np.float32), sample_rate=sample_rate)

        bits = (_int_field(stream, 'bits_per_raw_sample')
                or _int_field(stream, 'bits_per_sample') or 32)
        if bits not in (16, 24, 32):
            raise DecodingFailed(f"{path.name}: cannot decode {bits}-bit stream exactly")
        samples = (data.astype(np.int32) >> (32 - bits))
        if bits == 16:
            samples = samples.astype(np.int16)
        return DecodedAudio(samples=samples, sample_rate=sample_rate, bit_depth=bits)


class LibrosaDecoder(AudioDecoder):
    """Float decode via librosa.load at the file's native rate, all channels kept."""

    name = 'librosa'

    def is_available(self, fmt: ContainerFormat) -> bool:
        return True

    def decode(self, path: Path) -> DecodedAudio:
        try:
            audio, sr = librosa.load(str(path), sr=None, mono=False)
        except Exception as e:
            raise DecodingFailed(f"{path.name}: {e}") from e
        audio = np.asarray(audio, dtype=np.float32)
        samples = audio[:, np.newaxis] if audio.ndim == 1 else audio.T
        return DecodedAudio(samples=samples, sample_rate=int(sr))


DECODER_NAMES = ('auto', 'soundfile', 'ffmpeg', 'librosa')


def decoder_for(
    fmt: ContainerFormat,
    choice: str = 'auto',
    ffmpeg: str = config.FFMPEG_BINARY,
    ffprobe: str = config.FFPROBE_BINARY,
    timeout_sec: float = config.ENCODER_TIMEOUT_SEC,
) -> AudioDecoder:
    """
    Pick a decoder for a container.

    'auto' uses libsndfile for lossless containers and ffmpeg (float output)
    for lossy ones. An explicit ffmpeg choice decodes lossless containers to
    integers so exact comparison still applies.
    """
    if choice not in DECODER_NAMES:
        raise ValueError(f"Unknown decoder {choice!r}; choose from {DECODER_NAMES}")
    if choice == 'soundfile' or (choice == 'auto' and fmt.lossless):
        return SoundfileDecoder()
    if choice == 'librosa':
        return LibrosaDecoder()
    return FFmpegDecoder(integer=fmt.lossless, ffmpeg=ffmpeg, ffprobe=ffprobe,
                         timeout_sec=timeout_sec)


def _int_field(stream: dict, key: str) -> int:
    """ffprobe integer field, 0 when absent or 'N/A'."""
    try:
        return int(stream.get(key, 0))
    except (TypeError, ValueError):
        return 0
