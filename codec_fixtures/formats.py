"""
Container Format Traits

Static description of every container/codec family the framework can
produce: how ffmpeg names it, whether it is lossless, and which signal
geometries and tag keys it accepts.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple


class ContainerFormat(Enum):
    WAV = 'wav'
    FLAC = 'flac'
    MP3 = 'mp3'
    OGG = 'ogg'
    OPUS = 'opus'
    M4A = 'm4a'

    @property
    def traits(self) -> 'FormatTraits':
        return FORMAT_TRAITS[self]

    @property
    def extension(self) -> str:
        return self.traits.extension

    @property
    def lossless(self) -> bool:
        return self.traits.lossless

    @classmethod
    def parse(cls, name: str) -> 'ContainerFormat':
        """Look up a format by name or extension, case-insensitive."""
        key = name.strip().lower().lstrip('.')
        for fmt in cls:
            if key in (fmt.value, fmt.traits.extension):
                return fmt
        raise ValueError(f"Unknown container format: {name!r}")


# Tags the RIFF INFO chunk can carry (ffmpeg's INFO <-> generic key table)
WAV_TAG_KEYS = frozenset({
    'title', 'artist', 'album', 'genre', 'date', 'comment', 'track', 'copyright',
})

# Generic keys every other container maps natively
GENERIC_TAG_KEYS = frozenset({
    'title', 'artist', 'album', 'album_artist', 'genre', 'date', 'track',
    'disc', 'composer', 'comment', 'copyright',
})

# MPEG-1, MPEG-2 and MPEG-2.5 layer III sample rates
MP3_SAMPLE_RATES = (8000, 11025, 12000, 16000, 22050, 24000, 32000, 44100, 48000)


@dataclass(frozen=True)
class FormatTraits:
    """
    Attributes:
        extension: File extension without the dot
        codec: ffmpeg encoder name
        muxer: ffmpeg output format name
        lossless: True if decode(encode(x)) == x is guaranteed
        bit_depths: Integer PCM widths the container stores losslessly
            (for lossy formats: input widths the encoder accepts)
        sample_rates: Allowed sample rates, or None for any positive rate
        max_channels: Highest channel count the codec accepts
        default_params: Codec options applied when a matrix gives none
        tag_keys: Metadata keys the container can carry
        supports_artwork: True if the container can embed a cover image
    """
    extension: str
    codec: str
    muxer: str
    lossless: bool
    bit_depths: Tuple[int, ...] = (16, 24, 32)
    sample_rates: Optional[Tuple[int, ...]] = None
    max_channels: int = 8
    default_params: Tuple[Tuple[str, str], ...] = ()
    tag_keys: FrozenSet[str] = field(default_factory=lambda: GENERIC_TAG_KEYS)
    supports_artwork: bool = False

    @property
    def required_sample_rate(self) -> Optional[int]:
        """The single sample rate a codec mandates, if it mandates one."""
        if self.sample_rates is not None and len(self.sample_rates) == 1:
            return self.sample_rates[0]
        return None


FORMAT_TRAITS: Dict[ContainerFormat, FormatTraits] = {
    ContainerFormat.WAV: FormatTraits(
        extension='wav', codec='pcm_s16le', muxer='wav', lossless=True,
        bit_depths=(16, 24, 32), tag_keys=WAV_TAG_KEYS,
    ),
    ContainerFormat.FLAC: FormatTraits(
        extension='flac', codec='flac', muxer='flac', lossless=True,
        bit_depths=(16, 24), supports_artwork=True,
    ),
    ContainerFormat.MP3: FormatTraits(
        extension='mp3', codec='libmp3lame', muxer='mp3', lossless=False,
        sample_rates=MP3_SAMPLE_RATES, max_channels=2,
        default_params=(('q:a', '2'),),
        supports_artwork=True,
    ),
    ContainerFormat.OGG: FormatTraits(
        extension='ogg', codec='libvorbis', muxer='ogg', lossless=False,
        default_params=(('q:a', '5'),),
    ),
    ContainerFormat.OPUS: FormatTraits(
        extension='opus', codec='libopus', muxer='opus', lossless=False,
        sample_rates=(48000,),
        default_params=(('b:a', '128k'),),
    ),
    ContainerFormat.M4A: FormatTraits(
        extension='m4a', codec='aac', muxer='ipod', lossless=False,
        default_params=(('b:a', '192k'),),
    ),
}


def ffmpeg_codec_for(fmt: ContainerFormat, bit_depth: int) -> str:
    """ffmpeg encoder name, accounting for PCM width in WAV."""
    if fmt is ContainerFormat.WAV:
        return f"pcm_s{bit_depth}le"
    return fmt.traits.codec
