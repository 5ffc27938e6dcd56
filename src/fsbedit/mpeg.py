from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Optional


_BITRATES_MPEG1_L3 = [0, 32, 40, 48, 56, 64, 80, 96, 112, 128, 160, 192, 224, 256, 320, 0]
_BITRATES_MPEG2_L3 = [0, 8, 16, 24, 32, 40, 48, 56, 64, 80, 96, 112, 128, 144, 160, 0]
_SAMPLE_RATES = {
    3: [44100, 48000, 32000, 0],
    2: [22050, 24000, 16000, 0],
    0: [11025, 12000, 8000, 0],
}

VERSION_MPEG1 = 3
LAYER_III = 1
CHANNEL_MODE_MONO = 3


@dataclass(frozen=True)
class FrameHeader:
    version: int
    layer: int
    crc: bool
    bitrate_index: int
    sample_rate_index: int
    padding: bool
    channel_mode: int
    bitrate: int
    sample_rate: int
    frame_size: int

    @property
    def channels(self) -> int:
        return 1 if self.channel_mode == CHANNEL_MODE_MONO else 2

    @property
    def samples_per_frame(self) -> int:
        return 1152 if self.version == VERSION_MPEG1 else 576


def parse_frame_header(word: int) -> Optional[FrameHeader]:
    """Decode a big-endian 32 bit MPEG audio frame header (Layer III only)."""
    if (word >> 21) & 0x7FF != 0x7FF:
        return None

    version = (word >> 19) & 0x3
    layer = (word >> 17) & 0x3
    bitrate_idx = (word >> 12) & 0xF
    sample_rate_idx = (word >> 10) & 0x3
    padding = (word >> 9) & 0x1

    if layer != LAYER_III:
        return None
    if version not in _SAMPLE_RATES:
        return None

    sample_rate = _SAMPLE_RATES[version][sample_rate_idx]
    if sample_rate == 0:
        return None

    if version == VERSION_MPEG1:
        bitrate = _BITRATES_MPEG1_L3[bitrate_idx] * 1000
        coefficient = 144
    else:
        bitrate = _BITRATES_MPEG2_L3[bitrate_idx] * 1000
        coefficient = 72
    if bitrate == 0:
        return None

    return FrameHeader(
        version=version,
        layer=layer,
        crc=((word >> 16) & 0x1) == 0,
        bitrate_index=bitrate_idx,
        sample_rate_index=sample_rate_idx,
        padding=bool(padding),
        channel_mode=(word >> 6) & 0x3,
        bitrate=bitrate,
        sample_rate=sample_rate,
        frame_size=int(coefficient * bitrate // sample_rate + padding),
    )


def _header_at(data: bytes, pos: int) -> Optional[FrameHeader]:
    if pos + 4 > len(data):
        return None
    return parse_frame_header(int.from_bytes(data[pos : pos + 4], "big"))


def _find_sync(data: bytes, start: int) -> Optional[int]:
    for idx in range(start, len(data) - 3):
        if data[idx] == 0xFF and (data[idx + 1] & 0xE0) == 0xE0 and _header_at(data, idx) is not None:
            return idx
    return None


def iter_frames(data: bytes) -> Iterator[tuple[int, FrameHeader]]:
    """Yield (offset, header) for each complete frame, resyncing past damaged regions."""
    pos = 0
    while pos + 4 <= len(data):
        header = _header_at(data, pos)
        if header is None:
            next_pos = _find_sync(data, pos + 1)
            if next_pos is None:
                return
            pos = next_pos
            continue
        end = pos + header.frame_size
        if end > len(data):
            return
        yield pos, header
        pos = end


def extract_frames(data: bytes) -> bytes:
    """Concatenate every valid Layer III frame, dropping padding and damaged bytes.

    Returns the input untouched when no frame is found at all.
    """
    out = bytearray()
    for pos, header in iter_frames(data):
        out.extend(data[pos : pos + header.frame_size])
    return bytes(out) if out else data


def has_valid_frames(data: bytes) -> bool:
    """True when at least one complete frame is present."""
    return next(iter_frames(data), None) is not None


def get_mpeg_info(data: bytes) -> Optional[tuple[int, int, int]]:
    """Return (sample_rate, channels, bitrate) of the first valid frame."""
    for _, header in iter_frames(data):
        return header.sample_rate, header.channels, header.bitrate
    return None


def count_samples(data: bytes) -> int:
    return sum(header.samples_per_frame for _, header in iter_frames(data))
