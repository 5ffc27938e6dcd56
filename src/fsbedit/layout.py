from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Optional

FSB4_MAGIC = b"FSB4"
FSB5_MAGIC = b"FSB5"
MAGICS = (FSB4_MAGIC, FSB5_MAGIC)

FSB4_HEADER_SIZE = 48
FSB4_SAMPLE_HEADER_SIZE = 80
FSB4_NAME_SIZE = 30
FSB5_HEADER_SIZE = 60
FSB5_DATA_ALIGNMENT = 32
FSB5_OFFSET_UNIT = 16

# magic, sample count, sample header size, data size, version, flags
FSB4_HEADER_STRUCT = struct.Struct("<4sIIIII")
# entry size, name, sample count, compressed size, loop start, loop end, mode, frequency
FSB4_SAMPLE_STRUCT = struct.Struct("<H30sIIIIII")
# magic, version, sample count, sample header size, name table size, data size, codec, mode, flags
FSB5_HEADER_STRUCT = struct.Struct("<4sIIIIIIII")

FSB4_TAIL_SIZE = FSB4_HEADER_SIZE - FSB4_HEADER_STRUCT.size
FSB4_SAMPLE_TAIL_SIZE = FSB4_SAMPLE_HEADER_SIZE - FSB4_SAMPLE_STRUCT.size
FSB5_TAIL_SIZE = FSB5_HEADER_SIZE - FSB5_HEADER_STRUCT.size

FSB4_FLAG_MPEG = 0x00200000
FSB4_MODE_LOOP = 0x00000008
FSB4_MODE_MONO = 0x00020000
FSB4_MODE_STEREO = 0x00400000

FREQUENCY_TABLE = (
    4000, 8000, 11000, 11025, 16000, 22050, 24000, 32000,
    44100, 48000, 96000, 192000, 0, 0, 0, 0,
)
DEFAULT_FREQUENCY = 44100
DEFAULT_FREQUENCY_INDEX = FREQUENCY_TABLE.index(DEFAULT_FREQUENCY)

CHUNK_LOOP = 3
CHUNK_VORBISDATA = 11

_OFFSET_MASK = 0x0FFFFFFF
_SAMPLES_MASK = 0x3FFFFFFF
_CHUNK_SIZE_MASK = 0xFFFFFF
_CHUNK_TYPE_MASK = 0x7F


def frequency_from_index(index: int) -> int:
    frequency = FREQUENCY_TABLE[index & 0xF]
    return frequency or DEFAULT_FREQUENCY


def frequency_to_index(frequency: int) -> int:
    if frequency <= 0:
        return DEFAULT_FREQUENCY_INDEX
    try:
        return FREQUENCY_TABLE.index(frequency)
    except ValueError:
        return DEFAULT_FREQUENCY_INDEX


@dataclass(frozen=True)
class SampleMode:
    """The packed 64-bit FSB5 sample header word.

    bit 0 has chunks, bits 1-4 frequency index, bit 5 stereo,
    bits 6-33 data offset in 16 byte units, bits 34-63 sample count.
    """

    has_chunks: bool
    frequency_index: int
    stereo: bool
    data_offset: int
    sample_count: int

    @classmethod
    def unpack(cls, word: int) -> "SampleMode":
        return cls(
            has_chunks=bool(word & 1),
            frequency_index=(word >> 1) & 0xF,
            stereo=bool((word >> 5) & 1),
            data_offset=((word >> 6) & _OFFSET_MASK) * FSB5_OFFSET_UNIT,
            sample_count=(word >> 34) & _SAMPLES_MASK,
        )

    def pack(self) -> int:
        if self.data_offset % FSB5_OFFSET_UNIT:
            raise ValueError(f"Data offset {self.data_offset} is not a multiple of {FSB5_OFFSET_UNIT}")
        units = self.data_offset // FSB5_OFFSET_UNIT
        if units > _OFFSET_MASK:
            raise ValueError(f"Data offset {self.data_offset} does not fit in 28 bits")
        if not 0 <= self.sample_count <= _SAMPLES_MASK:
            raise ValueError(f"Sample count {self.sample_count} does not fit in 30 bits")
        word = 1 if self.has_chunks else 0
        word |= (self.frequency_index & 0xF) << 1
        word |= (1 if self.stereo else 0) << 5
        word |= units << 6
        word |= self.sample_count << 34
        return word


@dataclass(frozen=True)
class ChunkHeader:
    more: bool
    size: int
    chunk_type: int

    @classmethod
    def unpack(cls, word: int) -> "ChunkHeader":
        return cls(
            more=bool(word & 1),
            size=(word >> 1) & _CHUNK_SIZE_MASK,
            chunk_type=(word >> 25) & _CHUNK_TYPE_MASK,
        )

    def pack(self) -> int:
        if not 0 <= self.size <= _CHUNK_SIZE_MASK:
            raise ValueError(f"Chunk size {self.size} does not fit in 24 bits")
        return (1 if self.more else 0) | (self.size << 1) | ((self.chunk_type & _CHUNK_TYPE_MASK) << 25)


def payload_region(header: bytes) -> Optional[tuple[int, int]]:
    """Return the (start, end) of the sample data described by a plaintext header."""
    magic = bytes(header[:4])
    if magic == FSB5_MAGIC and len(header) >= FSB5_HEADER_STRUCT.size:
        _, _, _, sample_headers_size, name_table_size, data_size, _, _, _ = FSB5_HEADER_STRUCT.unpack_from(header)
        start = FSB5_HEADER_SIZE + sample_headers_size + name_table_size
        return start, start + data_size
    if magic == FSB4_MAGIC and len(header) >= FSB4_HEADER_STRUCT.size:
        _, _, sample_headers_size, data_size, _, _ = FSB4_HEADER_STRUCT.unpack_from(header)
        start = FSB4_HEADER_SIZE + sample_headers_size
        return start, start + data_size
    return None


def align(value: int, alignment: int) -> int:
    return (value + alignment - 1) // alignment * alignment
