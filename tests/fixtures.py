from __future__ import annotations

import struct
import zlib
from dataclasses import dataclass, field
from typing import Optional

from fsbedit import layout

MP3_STEREO_HEADER = b"\xff\xfb\x90\x00"
MP3_MONO_HEADER = b"\xff\xfb\x90\xc0"
MP3_FRAME_SIZE = 417

SETUP_CRC = 0xDEADBEEF
SETUP_PACKET = b"\x05vorbis" + b"\x00" * 24

FSB5_TAIL = bytes(range(1, 25))


@dataclass
class FixtureSample:
    data: bytes
    frequency: int = 44100
    channels: int = 1
    sample_count: int = 1000
    chunks: list[tuple[int, bytes]] = field(default_factory=list)
    name: Optional[str] = None


def mp3_frame(mono: bool = False) -> bytes:
    header = MP3_MONO_HEADER if mono else MP3_STEREO_HEADER
    return header + b"\x00" * (MP3_FRAME_SIZE - 4)


def mp3_stream(frames: int, mono: bool = False) -> bytes:
    return mp3_frame(mono) * frames


def vorbis_stream(*sizes: int) -> bytes:
    out = bytearray()
    for number, size in enumerate(sizes):
        out += struct.pack("<H", size) + bytes([(number + 1) & 0xFF]) * size
    return bytes(out)


def loop_chunk(start: int, end: int) -> tuple[int, bytes]:
    return layout.CHUNK_LOOP, struct.pack("<II", start, end)


def vorbis_chunk(crc: int, *seek_table: int) -> tuple[int, bytes]:
    return layout.CHUNK_VORBISDATA, struct.pack(f"<{len(seek_table) + 1}I", crc, *seek_table)


def _pad(data: bytes, alignment: int) -> bytes:
    return data + b"\x00" * (layout.align(len(data), alignment) - len(data))


def build_fsb5(samples: list[FixtureSample], codec: int = 15, with_names: bool = True) -> bytes:
    audio = bytearray()
    offsets = []
    for sample in samples:
        offsets.append(len(audio))
        audio += _pad(sample.data, layout.FSB5_DATA_ALIGNMENT)

    headers = bytearray()
    for sample, offset in zip(samples, offsets):
        word = layout.SampleMode(
            has_chunks=bool(sample.chunks),
            frequency_index=layout.frequency_to_index(sample.frequency),
            stereo=sample.channels == 2,
            data_offset=offset,
            sample_count=sample.sample_count,
        )
        headers += struct.pack("<Q", word.pack())
        for position, (chunk_type, payload) in enumerate(sample.chunks):
            more = position + 1 < len(sample.chunks)
            headers += struct.pack("<I", layout.ChunkHeader(more, len(payload), chunk_type).pack())
            headers += payload

    names = b""
    if with_names:
        strings = [(sample.name or f"sample{index}").encode("utf-8") + b"\x00" for index, sample in enumerate(samples)]
        table_offsets = []
        position = 4 * len(samples)
        for text in strings:
            table_offsets.append(position)
            position += len(text)
        names = _pad(struct.pack(f"<{len(samples)}I", *table_offsets) + b"".join(strings), 16)

    prologue = layout.FSB5_HEADER_STRUCT.pack(
        layout.FSB5_MAGIC, 1, len(samples), len(headers), len(names), len(audio), codec, 0, 0
    )
    return prologue + FSB5_TAIL + bytes(headers) + names + bytes(audio)


def three_sample_fsb5() -> bytes:
    return build_fsb5(
        [
            FixtureSample(vorbis_stream(40, 12), frequency=44100, chunks=[vorbis_chunk(SETUP_CRC)], name="intro"),
            FixtureSample(
                vorbis_stream(64, 20, 8),
                frequency=48000,
                channels=2,
                chunks=[loop_chunk(10, 900), vorbis_chunk(SETUP_CRC, 0, 64)],
                name="loop",
            ),
            FixtureSample(vorbis_stream(33, 33, 33), frequency=44100, chunks=[vorbis_chunk(SETUP_CRC)], name="outro"),
        ]
    )


def _fsb4_sample(name: str, data: bytes, count: int, frequency: int, channels: int, loop: Optional[tuple[int, int]]) -> bytes:
    mode = layout.FSB4_MODE_STEREO if channels == 2 else layout.FSB4_MODE_MONO
    loop_start, loop_end = 0, count
    if loop is not None:
        mode |= layout.FSB4_MODE_LOOP
        loop_start, loop_end = loop
    fields = layout.FSB4_SAMPLE_STRUCT.pack(
        layout.FSB4_SAMPLE_HEADER_SIZE,
        name.encode("ascii"),
        count,
        len(data),
        loop_start,
        loop_end,
        mode,
        frequency,
    )
    return fields + struct.pack("<HHHHffIHH", 255, 128, 128, channels, 1.0, 10000.0, 0, 0, 0)


def build_fsb4(entries: list[tuple[str, bytes]], mpeg: bool = True, channels: int = 2,
               frequency: int = 44100, loop: Optional[tuple[int, int]] = None) -> bytes:
    headers = b"".join(
        _fsb4_sample(name, data, 1152 * (len(data) // MP3_FRAME_SIZE), frequency, channels, loop)
        for name, data in entries
    )
    audio = b"".join(data for _, data in entries)
    flags = layout.FSB4_FLAG_MPEG if mpeg else 0
    prologue = layout.FSB4_HEADER_STRUCT.pack(layout.FSB4_MAGIC, len(entries), len(headers), len(audio), 0x40000, flags)
    return prologue + b"\xab" * layout.FSB4_TAIL_SIZE + headers + audio


def build_bnd4(entries: list[tuple[str, bytes]], unicode: bool = False, extended: bool = False) -> bytes:
    header_fmt = "<4sBBBBiQ8sQQIB3x"
    entry_fmt = "<B3xiqQQiI8x" if extended else "<B3xiqQiI"
    header_size = struct.calcsize(header_fmt) + (8 if extended else 0)
    entry_size = struct.calcsize(entry_fmt)

    names = []
    for name, _ in entries:
        names.append(name.encode("utf-16-le") + b"\x00\x00" if unicode else name.encode("utf-8") + b"\x00")
    name_offset = header_size + entry_size * len(entries)
    data_offset = name_offset + sum(len(item) for item in names)

    table = b""
    blob = b""
    for index, ((_, data), encoded) in enumerate(zip(entries, names)):
        if extended:
            table += struct.pack(entry_fmt, 0x40, -1, len(data), len(data), data_offset + len(blob), index, name_offset)
        else:
            table += struct.pack(entry_fmt, 0x40, -1, len(data), data_offset + len(blob), index, name_offset)
        name_offset += len(encoded)
        blob += data

    header = struct.pack(
        header_fmt,
        b"BND4",
        0,
        0x54,
        0,
        0,
        len(entries),
        header_size,
        b"07D7R6\x00\x00",
        entry_size,
        data_offset,
        1 if unicode else 0,
        0x10 if extended else 0,
    )
    if extended:
        header += bytes(8)
    return header + table + b"".join(names) + blob


def build_dcx(payload: bytes) -> bytes:
    body = zlib.compress(payload, 9)
    return (
        struct.pack(">4sIII", b"DCX\x00", 0x10000, 0x18, 0x24)
        + struct.pack(">II", 0x24, 0x2C)
        + struct.pack(">4sII", b"DCS\x00", len(payload), len(body))
        + struct.pack(">4s4sIIIIII", b"DCP\x00", b"DFLT", 0x20, 9, 0, 0, 0, 0x00010100)
        + struct.pack(">4sI", b"DCA\x00", 8)
        + body
    )
