"""
Codec Encoder Adapter

Capability interface wrapping native and external encoders. One variant per
container/codec family; orchestration code only sees CodecEncoder.

Every encode runs in its own temporary directory and returns the container
bytes, so encodes share no mutable state and may run in any order or in
parallel. Codec parameters are opaque: each variant forwards them to its
backend without interpreting them.
"""

import functools
import logging
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Mapping, Optional

import numpy as np
import soundfile as sf

import config
from codec_fixtures import external
from codec_fixtures.errors import EncodingFailed, MissingTool, ToolTimeout
from codec_fixtures.formats import ContainerFormat, ffmpeg_codec_for
from codec_fixtures.signals import ReferenceSignal, synthesize, to_pcm_bytes

logger = logging.getLogger(__name__)


class CodecEncoder(ABC):
    """Encodes a reference signal into one container format."""

    def __init__(self, fmt: ContainerFormat):
        self.format = fmt

    @property
    def name(self) -> str:
        return f"{type(self).__name__}({self.format.value})"

    @abstractmethod
    def is_available(self) -> bool:
        """True if the backing capability exists in this environment."""

    @abstractmethod
    def describe_requirement(self) -> str:
        """Name of the capability this encoder needs, for MissingTool reports."""

    @abstractmethod
    def _encode_to_path(
        self,
        signal: ReferenceSignal,
        pcm: np.ndarray,
        codec_params: Mapping[str, str],
        output_path: Path,
        cancel_event: Optional[threading.Event],
    ) -> None:
        """Write the encoded container to output_path."""

    def check_available(self) -> None:
        """
        Raises:
            MissingTool: If the capability is absent
        """
        if not self.is_available():
            raise MissingTool(
                f"{self.describe_requirement()} is not available; "
                f"cannot produce {self.format.value} fixtures",
                tool=self.describe_requirement(),
                format_family=self.format.value,
            )

    def encode(
        self,
        signal: ReferenceSignal,
        codec_params: Optional[Mapping[str, str]] = None,
        pcm: Optional[np.ndarray] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> bytes:
        """
        Encode a reference signal and return the container bytes.

        Parameters:
            signal: Reference signal to encode
            codec_params: Opaque encoder options
            pcm: Pre-synthesized PCM for the signal (synthesized if omitted)
            cancel_event: Set from another thread to abort a running encode

        Raises:
            MissingTool: Capability unavailable
            EncodingFailed: Capability ran but produced no usable output
            GenerationCancelled: cancel_event was set
        """
        self.check_available()
        if pcm is None:
            pcm = synthesize(signal)
        params = dict(codec_params or {})

        with tempfile.TemporaryDirectory(prefix='codec-fixtures-') as tmp:
            output_path = Path(tmp) / f"encoded.{self.format.extension}"
            self._encode_to_path(signal, pcm, params, output_path, cancel_event)

            if not output_path.exists():
                raise EncodingFailed(f"{self.name} produced no output file")
            data = output_path.read_bytes()

        if not data:
            raise EncodingFailed(f"{self.name} produced a zero-byte file")
        logger.debug("%s encoded %s -> %d bytes", self.name, signal.describe(), len(data))
        return data


class SoundfileEncoder(CodecEncoder):
    """
    Native WAV/FLAC encoder backed by libsndfile.

    codec_params are forwarded as keyword arguments to soundfile.write
    (e.g. compression_level for FLAC). The write runs under
    external.run_bounded, so it honours the same timeout and cancellation
    as the ffmpeg encoders.
    """

    SF_FORMATS = {ContainerFormat.WAV: 'WAV', ContainerFormat.FLAC: 'FLAC'}

    def __init__(self, fmt: ContainerFormat, timeout_sec: float = config.ENCODER_TIMEOUT_SEC):
        if fmt not in self.SF_FORMATS:
            raise ValueError(f"soundfile cannot encode {fmt.value}")
        super().__init__(fmt)
        self.timeout_sec = timeout_sec

    def is_available(self) -> bool:
        return self.SF_FORMATS[self.format] in sf.available_formats()

    def describe_requirement(self) -> str:
        return f"libsndfile:{self.SF_FORMATS[self.format]}"

    def _encode_to_path(self, signal, pcm, codec_params, output_path, cancel_event):
        data = pcm
        if signal.bit_depth == 24:
            # libsndfile maps the full int32 range onto 24 bits
            data = pcm.astype(np.int32) << 8
        write = functools.partial(
            sf.write,
            str(output_path),
            data,
            signal.sample_rate_hz,
            subtype=f"PCM_{signal.bit_depth}",
            format=self.SF_FORMATS[self.format],
            **codec_params,
        )
        try:
            external.run_bounded(write, timeout_sec=self.timeout_sec,
                                 cancel_event=cancel_event, label=self.name)
        except ToolTimeout as e:
            raise EncodingFailed(f"{self.name} timed out: {e}") from e
        except (TypeError, ValueError, RuntimeError) as e:
            raise EncodingFailed(f"{self.name} failed: {e}") from e


class FFmpegEncoder(CodecEncoder):
    """
    Process-based encoder: raw PCM is piped to ffmpeg's stdin.

    Every codec parameter becomes a '-key value' pair on the command line.
    Bit-exact flags keep the output independent of the ffmpeg build string.
    """

    def __init__(
        self,
        fmt: ContainerFormat,
        binary: str = config.FFMPEG_BINARY,
        timeout_sec: float = config.ENCODER_TIMEOUT_SEC,
    ):
        super().__init__(fmt)
        self.binary = binary
        self.timeout_sec = timeout_sec

    def is_available(self) -> bool:
        return ffmpeg_codec_for(self.format, 16) in external.ffmpeg_encoders(self.binary)

    def describe_requirement(self) -> str:
        return f"{self.binary}:{self.format.traits.codec}"

    def build_command(self, signal: ReferenceSignal, codec_params: Mapping[str, str],
                      output_path: Path) -> list:
        cmd = [
            self.binary, '-hide_banner', '-loglevel', 'error',
            '-f', f"s{signal.bit_depth}le",
            '-ar', str(signal.sample_rate_hz),
            '-ac', str(signal.channels),
            '-i', 'pipe:0',
            '-c:a', ffmpeg_codec_for(self.format, signal.bit_depth),
        ]
        for key, value in codec_params.items():
            cmd += [f"-{key}", str(value)]
        cmd += [
            '-map_metadata', '-1',
            '-fflags', '+bitexact',
            '-flags:a', '+bitexact',
            '-f', self.format.traits.muxer,
            '-y', str(output_path),
        ]
        return cmd

    def _encode_to_path(self, signal, pcm, codec_params, output_path, cancel_event):
        cmd = self.build_command(signal, codec_params, output_path)
        try:
            result = external.run_tool(
                cmd,
                input=to_pcm_bytes(pcm, signal.bit_depth),
                timeout_sec=self.timeout_sec,
                cancel_event=cancel_event,
            )
        except ToolTimeout as e:
            raise EncodingFailed(f"{self.name} timed out: {e}") from e
        except MissingTool as e:
            e.format_family = self.format.value
            raise

        if result.returncode != 0:
            tail = external.stderr_tail(result.stderr)
            raise EncodingFailed(
                f"{self.name} exited with status {result.returncode}: {tail}",
                stderr=tail,
            )


def default_encoder(
    fmt: ContainerFormat,
    ffmpeg: str = config.FFMPEG_BINARY,
    timeout_sec: float = config.ENCODER_TIMEOUT_SEC,
) -> CodecEncoder:
    """Native encoder for lossless formats, ffmpeg for lossy ones."""
    if fmt in SoundfileEncoder.SF_FORMATS:
        return SoundfileEncoder(fmt, timeout_sec=timeout_sec)
    return FFmpegEncoder(fmt, binary=ffmpeg, timeout_sec=timeout_sec)
