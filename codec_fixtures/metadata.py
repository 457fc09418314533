"""
Metadata Injector

Applies and reads tag dictionaries on encoded containers using ffmpeg
stream copy (the audio payload is never re-encoded) and ffprobe.

Round-trip guarantee checked by apply_verified():
    read(apply(data, tags)) == tags   (byte-for-byte string equality)

Cover art is added as an attached picture stream rendered by ffmpeg and is
checked by its codec and size.
"""

import logging
import tempfile
import threading
from pathlib import Path
from typing import Dict, List, Mapping, Optional

import config
from codec_fixtures import external
from codec_fixtures.errors import (
    EncodingFailed,
    MissingTool,
    TagRoundTripMismatch,
    ToolTimeout,
)
from codec_fixtures.fixture_spec import Artwork
from codec_fixtures.formats import ContainerFormat

logger = logging.getLogger(__name__)

# Keys muxers add on their own; never part of a fixture's declared tag set
IGNORED_TAG_KEYS = frozenset({
    'encoder', 'encoded_by', 'major_brand', 'minor_version', 'compatible_brands',
    'vendor_id', 'handler_name', 'language', 'creation_time',
})

_IMAGE_EXTENSIONS = {'png': 'png', 'mjpeg': 'jpg'}

# mjpeg only takes full-range YUV
_IMAGE_PIXEL_FORMATS = {'png': 'rgb24', 'mjpeg': 'yuvj420p'}


class MetadataInjector:
    """
    Tag writer/reader for every container in ContainerFormat.

    Parameters:
        ffmpeg: ffmpeg executable used to rewrite containers
        ffprobe: ffprobe executable used to read tags back
        timeout_sec: Budget for each tool invocation
    """

    def __init__(
        self,
        ffmpeg: str = config.FFMPEG_BINARY,
        ffprobe: str = config.FFPROBE_BINARY,
        timeout_sec: float = config.ENCODER_TIMEOUT_SEC,
    ):
        self.ffmpeg = ffmpeg
        self.ffprobe = ffprobe
        self.timeout_sec = timeout_sec

    def is_available(self) -> bool:
        return external.tool_available(self.ffmpeg) and external.tool_available(self.ffprobe)

    def check_available(self, fmt: ContainerFormat) -> None:
        if not self.is_available():
            raise MissingTool(
                f"{self.ffmpeg}/{self.ffprobe} are required to tag {fmt.value} fixtures",
                tool=f"{self.ffmpeg},{self.ffprobe}",
                format_family=fmt.value,
            )

    def apply(
        self,
        data: bytes,
        fmt: ContainerFormat,
        tags: Mapping[str, str],
        artwork: Optional[Artwork] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> bytes:
        """
        Return a copy of the container carrying exactly the given tags.

        Existing tags are dropped. With artwork, a rendered cover image is
        added as the attached picture stream. No tags and no artwork returns
        data unchanged.

        Raises:
            MissingTool: ffmpeg/ffprobe unavailable
            EncodingFailed: ffmpeg could not rewrite the container
        """
        if not tags and artwork is None:
            return data
        self.check_available(fmt)

        with tempfile.TemporaryDirectory(prefix='codec-fixtures-tag-') as tmp:
            src = Path(tmp) / f"untagged.{fmt.extension}"
            dst = Path(tmp) / f"tagged.{fmt.extension}"
            src.write_bytes(data)

            cmd = [self.ffmpeg, '-hide_banner', '-loglevel', 'error', '-i', str(src)]
            if artwork is None:
                cmd += ['-map', '0']
            else:
                cover = Path(tmp) / f"cover.{_IMAGE_EXTENSIONS[artwork.codec]}"
                self.render_artwork(artwork, cover, cancel_event=cancel_event)
                cmd += ['-i', str(cover), '-map', '0:a', '-map', '1:v']
            cmd += ['-c', 'copy', '-map_metadata', '-1']
            for key, value in tags.items():
                cmd += ['-metadata', f"{key}={value}"]
            if artwork is not None:
                cmd += [
                    '-disposition:v:0', 'attached_pic',
                    '-metadata:s:v', f"title={config.ARTWORK_TITLE}",
                    '-metadata:s:v', f"comment={config.ARTWORK_COMMENT}",
                ]
            cmd += [
                '-fflags', '+bitexact',
                '-flags:a', '+bitexact',
                '-f', fmt.traits.muxer,
                '-y', str(dst),
            ]

            logger.debug("Tagging %s: %d tag(s), artwork %s", fmt.value, len(tags),
                         artwork.describe() if artwork else "none")
            self._run(cmd, dst, f"Tagging {fmt.value}", cancel_event)
            return dst.read_bytes()

    def render_artwork(self, artwork: Artwork, path: Path,
                       cancel_event: Optional[threading.Event] = None) -> None:
        """Render the cover image to path with ffmpeg's lavfi color source."""
        cmd = [
            self.ffmpeg, '-hide_banner', '-loglevel', 'error',
            '-f', 'lavfi', '-i', artwork.lavfi_source(),
            '-frames:v', '1',
            '-c:v', artwork.codec,
            '-pix_fmt', _IMAGE_PIXEL_FORMATS[artwork.codec],
            '-fflags', '+bitexact',
            '-flags:v', '+bitexact',
            '-f', 'image2',
            '-y', str(path),
        ]
        self._run(cmd, path, f"Rendering {artwork.describe()} artwork", cancel_event)

    def _run(self, cmd: List[str], output: Path, action: str,
             cancel_event: Optional[threading.Event]) -> None:
        try:
            result = external.run_tool(cmd, timeout_sec=self.timeout_sec, cancel_event=cancel_event)
        except ToolTimeout as e:
            raise EncodingFailed(f"{action} timed out: {e}") from e

        if result.returncode != 0 or not output.exists() or output.stat().st_size == 0:
            tail = external.stderr_tail(result.stderr)
            raise EncodingFailed(
                f"{action} failed (status {result.returncode}): {tail}",
                stderr=tail,
            )

    def read(
        self,
        data: bytes,
        fmt: ContainerFormat,
        cancel_event: Optional[threading.Event] = None,
    ) -> Dict[str, str]:
        """
        Read the tag dictionary of a container.

        Stream-level tags (Ogg/Opus comment headers) and format-level tags are
        merged, format-level winning; keys are lower-cased. Tags on an
        attached picture stream are not part of the result.

        Raises:
            MissingTool: ffprobe unavailable
            EncodingFailed: ffprobe could not parse the container
        """
        return _tags_from(self._inspect(data, fmt, cancel_event))

    def read_artwork(
        self,
        data: bytes,
        fmt: ContainerFormat,
        cancel_event: Optional[threading.Event] = None,
    ) -> Optional[str]:
        """
        Describe the embedded cover, e.g. 'png 100x100'.

        Returns:
            Codec and size of the first attached picture, or None
        """
        return _artwork_from(self._inspect(data, fmt, cancel_event))

    def read_file(self, path: Path, cancel_event: Optional[threading.Event] = None) -> Dict[str, str]:
        return _tags_from(self._inspect_file(path, cancel_event))

    def _inspect(self, data: bytes, fmt: ContainerFormat,
               cancel_event: Optional[threading.Event]) -> dict:
        with tempfile.TemporaryDirectory(prefix='codec-fixtures-tag-') as tmp:
            path = Path(tmp) / f"inspect.{fmt.extension}"
            path.write_bytes(data)
            return self._inspect_file(path, cancel_event)

    def _inspect_file(self, path: Path, cancel_event: Optional[threading.Event]) -> dict:
        try:
            return external.ffprobe(
                path, binary=self.ffprobe, timeout_sec=self.timeout_sec,
                cancel_event=cancel_event,
            )
        except (ValueError, ToolTimeout) as e:
            raise EncodingFailed(f"Could not read tags from {path.name}: {e}") from e

    def apply_verified(
        self,
        data: bytes,
        fmt: ContainerFormat,
        tags: Mapping[str, str],
        artwork: Optional[Artwork] = None,
        cancel_event: Optional[threading.Event] = None,
        fixture_id: Optional[str] = None,
    ) -> bytes:
        """
        Apply tags (and artwork), read them back and insist on exact equality.

        Artwork is compared under the 'artwork' key as its codec and size.

        Raises:
            TagRoundTripMismatch: Read-back differs from what was written
        """
        if not tags and artwork is None:
            return data
        tagged = self.apply(data, fmt, tags, artwork=artwork, cancel_event=cancel_event)
        expected = dict(tags)
        actual = self.read(tagged, fmt, cancel_event=cancel_event)
        if artwork is not None:
            expected['artwork'] = artwork.describe()
            actual['artwork'] = self.read_artwork(tagged, fmt, cancel_event=cancel_event)
        if actual != expected:
            error = TagRoundTripMismatch(
                f"{fmt.value} tag round-trip mismatch", expected=expected, actual=actual,
                fixture_id=fixture_id,
            )
            details = ", ".join(
                f"{k}: wrote {expected.get(k)!r}, read {actual.get(k)!r}"
                for k in error.differing_keys
            )
            error.args = (f"{fmt.value} tag round-trip mismatch ({details})",)
            raise error
        return tagged


def _normalize(raw: Mapping[str, str]) -> Dict[str, str]:
    return {
        key.lower(): value
        for key, value in raw.items()
        if key.lower() not in IGNORED_TAG_KEYS
    }


def _tags_from(info: dict) -> Dict[str, str]:
    tags: Dict[str, str] = {}
    for stream in info.get('streams', []):
        if stream.get('codec_type') == 'audio':
            tags.update(_normalize(stream.get('tags', {})))
    tags.update(_normalize(info.get('format', {}).get('tags', {})))
    return tags


def _artwork_from(info: dict) -> Optional[str]:
    for stream in info.get('streams', []):
        if stream.get('disposition', {}).get('attached_pic') == 1:
            return f"{stream.get('codec_name')} {stream.get('width')}x{stream.get('height')}"
    return None
