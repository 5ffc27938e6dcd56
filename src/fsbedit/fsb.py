from __future__ import annotations

import dataclasses
import io
import logging
import os
import struct
import tempfile
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import TYPE_CHECKING, Optional

from . import layout
from .crypto import Encryption, detect_and_decrypt, encrypt
from .errors import (
    FormatError,
    IoFailure,
    SampleOutOfBounds,
    TooSmall,
    UnknownCodec,
    UnsupportedCompression,
)
from .layout import ChunkHeader, SampleMode
from .mpeg import extract_frames

if TYPE_CHECKING:
    from .vorbis_headers import VorbisSetupDictionary

logger = logging.getLogger(__name__)


class Version(Enum):
    FSB4 = 4
    FSB5 = 5


class Codec(IntEnum):
    NONE = 0
    PCM8 = 1
    PCM16 = 2
    PCM24 = 3
    PCM32 = 4
    PCMFLOAT = 5
    GCADPCM = 6
    IMAADPCM = 7
    VAG = 8
    HEVAG = 9
    XMA = 10
    MPEG = 11
    CELT = 12
    AT9 = 13
    XWMA = 14
    VORBIS = 15

    @property
    def extension(self) -> str:
        if self is Codec.MPEG:
            return "mp3"
        if self is Codec.VORBIS:
            return "ogg"
        if self in _PCM_BITS:
            return "wav"
        return "bin"


_PCM_BITS = {
    Codec.PCM8: 8,
    Codec.PCM16: 16,
    Codec.PCM24: 24,
    Codec.PCM32: 32,
    Codec.PCMFLOAT: 32,
}


@dataclass(frozen=True)
class Fsb4Fields:
    """FSB4 per-sample fields kept verbatim so unchanged samples serialize identically."""

    entry_size: int
    name_field: bytes
    loop_start: int
    loop_end: int
    mode: int
    frequency: int
    tail: bytes

    @property
    def is_stereo(self) -> bool:
        return bool(self.mode & layout.FSB4_MODE_STEREO)

    @property
    def has_loop_points(self) -> bool:
        return bool(self.mode & layout.FSB4_MODE_LOOP)

    @property
    def channels(self) -> int:
        return 2 if self.is_stereo else 1


@dataclass(frozen=True)
class RawChunk:
    chunk_type: int
    payload: bytes


@dataclass
class Sample:
    index: int
    name: Optional[str]
    frequency: int
    channels: int
    sample_count: int
    data_offset: int
    data_size: int
    loop_start: Optional[int] = None
    loop_end: Optional[int] = None
    vorbis_crc: Optional[int] = None
    vorbis_seek_table: Optional[list[int]] = None
    frequency_index: Optional[int] = None
    chunks: list[RawChunk] = field(default_factory=list)
    legacy: Optional[Fsb4Fields] = None

    @property
    def duration(self) -> float:
        if self.frequency > 0:
            return self.sample_count / self.frequency
        return 0.0

    @property
    def data_end(self) -> int:
        return self.data_offset + self.data_size


@dataclass
class Bank:
    version: Version
    codec: Codec
    encryption: Encryption
    samples: list[Sample]
    data: bytes
    header_version: int
    flags: int
    mode: int
    sample_headers_size: int
    name_table_size: int
    data_size: int
    header_tail: bytes

    @property
    def header_size(self) -> int:
        return layout.FSB5_HEADER_SIZE if self.version is Version.FSB5 else layout.FSB4_HEADER_SIZE

    @property
    def data_offset_base(self) -> int:
        return self.header_size + self.sample_headers_size + self.name_table_size

    def sample(self, index: int) -> Sample:
        if not 0 <= index < len(self.samples):
            raise IndexError(f"Sample index {index} out of range (0..{len(self.samples) - 1})")
        return self.samples[index]

    def sample_data(self, index: int) -> bytes:
        sample = self.sample(index)
        if sample.data_end > len(self.data):
            raise SampleOutOfBounds(f"Sample {index} data exceeds buffer ({sample.data_end} > {len(self.data)})")
        return self.data[sample.data_offset : sample.data_end]

    def name_table(self) -> bytes:
        start = self.header_size + self.sample_headers_size
        return self.data[start : start + self.name_table_size]

    def splice(
        self,
        index: int,
        payload: bytes,
        *,
        frequency: int,
        channels: int,
        sample_count: int,
        vorbis_crc: Optional[int] = None,
        vorbis_seek_table: Optional[list[int]] = None,
    ) -> None:
        """Swap one sample's bytes and shift the offsets of every later sample."""
        target = self.sample(index)
        delta = len(payload) - target.data_size
        new_data = self.data[: target.data_offset] + bytes(payload) + self.data[target.data_end :]

        new_samples = []
        for position, sample in enumerate(self.samples):
            if position < index:
                new_samples.append(sample)
            elif position == index:
                new_samples.append(
                    dataclasses.replace(
                        sample,
                        data_size=len(payload),
                        frequency=frequency,
                        channels=channels,
                        sample_count=sample_count,
                        vorbis_crc=vorbis_crc,
                        vorbis_seek_table=list(vorbis_seek_table) if vorbis_seek_table is not None else None,
                    )
                )
            else:
                new_samples.append(dataclasses.replace(sample, data_offset=sample.data_offset + delta))

        self.samples = new_samples
        self.data_size += delta
        self.data = new_data
        logger.debug("Spliced sample %s: %+d bytes", index, delta)


class _BinaryReader:
    def __init__(self, data: bytes, what: str) -> None:
        self._buf = io.BytesIO(data)
        self._what = what

    def tell(self) -> int:
        return self._buf.tell()

    def seek(self, offset: int) -> None:
        self._buf.seek(offset)

    def read(self, size: int) -> bytes:
        data = self._buf.read(size)
        if len(data) != size:
            raise TooSmall(f"Truncated {self._what} at offset {self.tell()}")
        return data

    def read_struct(self, fmt: struct.Struct) -> tuple:
        return fmt.unpack(self.read(fmt.size))

    def read_u32(self) -> int:
        return int.from_bytes(self.read(4), "little")

    def read_u64(self) -> int:
        return int.from_bytes(self.read(8), "little")


def _codec(raw: int) -> Codec:
    try:
        return Codec(raw)
    except ValueError as exc:
        raise UnknownCodec(f"Unknown codec id: {raw}") from exc


def _read_chunks(reader: _BinaryReader, sample: Sample) -> None:
    while True:
        header = ChunkHeader.unpack(reader.read_u32())
        payload = reader.read(header.size)
        sample.chunks.append(RawChunk(header.chunk_type, payload))
        if header.chunk_type == layout.CHUNK_LOOP:
            if header.size < 8:
                raise FormatError(f"Sample {sample.index}: loop chunk too small ({header.size} bytes)")
            sample.loop_start, sample.loop_end = struct.unpack_from("<II", payload)
        elif header.chunk_type == layout.CHUNK_VORBISDATA:
            if header.size < 4:
                raise FormatError(f"Sample {sample.index}: Vorbis chunk too small ({header.size} bytes)")
            count = (header.size - 4) // 4
            values = struct.unpack_from(f"<{count + 1}I", payload)
            sample.vorbis_crc = values[0]
            sample.vorbis_seek_table = list(values[1:])
        if not header.more:
            return


def _read_fsb5_names(plain: bytes, start: int, size: int, samples: list[Sample]) -> None:
    table = plain[start : start + size]
    if len(table) < 4 * len(samples):
        raise TooSmall("Name table shorter than its offset array")
    for sample in samples:
        (offset,) = struct.unpack_from("<I", table, 4 * sample.index)
        end = table.find(b"\0", offset)
        if offset >= len(table) or end < 0:
            raise FormatError(f"Sample {sample.index}: name offset {offset} outside name table")
        try:
            sample.name = table[offset:end].decode("utf-8")
        except UnicodeDecodeError:
            sample.name = None


def _parse_fsb5(plain: bytes, encryption: Encryption) -> Bank:
    if len(plain) < layout.FSB5_HEADER_SIZE:
        raise TooSmall(f"FSB5 header needs {layout.FSB5_HEADER_SIZE} bytes, got {len(plain)}")
    (
        _,
        header_version,
        sample_count,
        sample_headers_size,
        name_table_size,
        data_size,
        codec_raw,
        mode,
        flags,
    ) = layout.FSB5_HEADER_STRUCT.unpack_from(plain)
    codec = _codec(codec_raw)
    header_tail = plain[layout.FSB5_HEADER_STRUCT.size : layout.FSB5_HEADER_SIZE]

    headers_end = layout.FSB5_HEADER_SIZE + sample_headers_size
    base = headers_end + name_table_size
    if base > len(plain):
        raise TooSmall(f"Header blocks end at {base}, file is {len(plain)} bytes")

    reader = _BinaryReader(plain[layout.FSB5_HEADER_SIZE : headers_end], "sample header block")
    samples: list[Sample] = []
    for index in range(sample_count):
        word = SampleMode.unpack(reader.read_u64())
        sample = Sample(
            index=index,
            name=None,
            frequency=layout.frequency_from_index(word.frequency_index),
            frequency_index=word.frequency_index,
            channels=2 if word.stereo else 1,
            sample_count=word.sample_count,
            data_offset=base + word.data_offset,
            data_size=0,
        )
        if word.has_chunks:
            _read_chunks(reader, sample)
        samples.append(sample)

    for position, sample in enumerate(samples):
        if position + 1 < len(samples):
            next_offset = samples[position + 1].data_offset
        else:
            next_offset = base + data_size
        if next_offset < sample.data_offset:
            raise SampleOutOfBounds(f"Sample {sample.index} overlaps the following sample")
        sample.data_size = next_offset - sample.data_offset

    if name_table_size:
        _read_fsb5_names(plain, headers_end, name_table_size, samples)

    return Bank(
        version=Version.FSB5,
        codec=codec,
        encryption=encryption,
        samples=samples,
        data=plain,
        header_version=header_version,
        flags=flags,
        mode=mode,
        sample_headers_size=sample_headers_size,
        name_table_size=name_table_size,
        data_size=data_size,
        header_tail=header_tail,
    )


def _fsb4_frequency(raw: int) -> int:
    return raw if raw > 0 else layout.DEFAULT_FREQUENCY


def _decode_fsb4_name(field_bytes: bytes) -> str:
    return field_bytes.split(b"\0", 1)[0].decode("utf-8", errors="replace")


def _parse_fsb4(plain: bytes, encryption: Encryption) -> Bank:
    _, sample_count, sample_headers_size, data_size, header_version, flags = layout.FSB4_HEADER_STRUCT.unpack_from(plain)
    header_tail = plain[layout.FSB4_HEADER_STRUCT.size : layout.FSB4_HEADER_SIZE]
    base = layout.FSB4_HEADER_SIZE + sample_headers_size
    if base > len(plain):
        raise TooSmall(f"Sample headers end at {base}, file is {len(plain)} bytes")

    reader = _BinaryReader(plain[layout.FSB4_HEADER_SIZE : base], "sample header block")
    samples: list[Sample] = []
    offset = base
    for index in range(sample_count):
        entry_size, name_field, count, compressed, loop_start, loop_end, mode, frequency = reader.read_struct(
            layout.FSB4_SAMPLE_STRUCT
        )
        legacy = Fsb4Fields(
            entry_size=entry_size,
            name_field=name_field,
            loop_start=loop_start,
            loop_end=loop_end,
            mode=mode,
            frequency=frequency,
            tail=reader.read(layout.FSB4_SAMPLE_TAIL_SIZE),
        )
        samples.append(
            Sample(
                index=index,
                name=_decode_fsb4_name(name_field),
                frequency=_fsb4_frequency(frequency),
                channels=legacy.channels,
                sample_count=count,
                data_offset=offset,
                data_size=compressed,
                loop_start=loop_start if legacy.has_loop_points else None,
                loop_end=loop_end if legacy.has_loop_points else None,
                legacy=legacy,
            )
        )
        offset += compressed

    codec = Codec.MPEG if flags & layout.FSB4_FLAG_MPEG else Codec.PCM16
    return Bank(
        version=Version.FSB4,
        codec=codec,
        encryption=encryption,
        samples=samples,
        data=plain,
        header_version=header_version,
        flags=flags,
        mode=0,
        sample_headers_size=sample_headers_size,
        name_table_size=0,
        data_size=data_size,
        header_tail=header_tail,
    )


def parse_bank(data: bytes) -> Bank:
    """Decrypt and parse an FSB4/FSB5 bank. Any failure aborts the whole load."""
    if len(data) < layout.FSB4_HEADER_SIZE:
        raise TooSmall(f"File too small: {len(data)} bytes")
    plain, encryption = detect_and_decrypt(bytes(data))
    if plain[:4] == layout.FSB5_MAGIC:
        bank = _parse_fsb5(plain, encryption)
    else:
        bank = _parse_fsb4(plain, encryption)

    for sample in bank.samples:
        if sample.data_end > len(plain):
            raise SampleOutOfBounds(
                f"Sample {sample.index} data [{sample.data_offset}, {sample.data_end}) exceeds buffer of {len(plain)} bytes"
            )
    logger.debug(
        "Parsed %s bank: codec=%s encryption=%s samples=%s",
        bank.version.name,
        bank.codec.name,
        bank.encryption.name,
        len(bank.samples),
    )
    return bank


def read_bank(path: str) -> Bank:
    try:
        with open(path, "rb") as fp:
            data = fp.read()
    except OSError as exc:
        raise IoFailure(f"Cannot read {path}: {exc}") from exc
    return parse_bank(data)


def _chunk(chunk_type: int, payload: bytes, more: bool) -> bytes:
    return struct.pack("<I", ChunkHeader(more, len(payload), chunk_type).pack()) + payload


def _fsb5_chunks(sample: Sample) -> list[tuple[int, bytes]]:
    loop_payload = None
    if sample.loop_start is not None and sample.loop_end is not None:
        loop_payload = struct.pack("<II", sample.loop_start, sample.loop_end)
    vorbis_payload = None
    if sample.vorbis_crc is not None:
        table = sample.vorbis_seek_table or []
        vorbis_payload = struct.pack(f"<{len(table) + 1}I", sample.vorbis_crc, *table)

    chunks: list[tuple[int, bytes]] = []
    for raw in sample.chunks:
        # fields past the parsed prefix are carried over untouched
        if raw.chunk_type == layout.CHUNK_LOOP:
            if loop_payload is not None:
                chunks.append((raw.chunk_type, loop_payload + raw.payload[8:]))
                loop_payload = None
        elif raw.chunk_type == layout.CHUNK_VORBISDATA:
            if vorbis_payload is not None:
                parsed = 4 + 4 * ((len(raw.payload) - 4) // 4)
                chunks.append((raw.chunk_type, vorbis_payload + raw.payload[parsed:]))
                vorbis_payload = None
        else:
            chunks.append((raw.chunk_type, raw.payload))
    if loop_payload is not None:
        chunks.append((layout.CHUNK_LOOP, loop_payload))
    if vorbis_payload is not None:
        chunks.append((layout.CHUNK_VORBISDATA, vorbis_payload))
    return chunks


def _fsb5_frequency_index(sample: Sample) -> int:
    if sample.frequency_index is not None and layout.frequency_from_index(sample.frequency_index) == sample.frequency:
        return sample.frequency_index
    index = layout.frequency_to_index(sample.frequency)
    if layout.FREQUENCY_TABLE[index] != sample.frequency:
        logger.warning("Sample %s: frequency %s not in FSB5 table, writing %s", sample.index, sample.frequency, layout.FREQUENCY_TABLE[index])
    return index


def _build_fsb5(bank: Bank) -> bytes:
    if any(sample.channels > 2 for sample in bank.samples):
        raise FormatError("FSB5 writer supports mono and stereo samples only")

    audio = bytearray()
    offsets = []
    for sample in bank.samples:
        audio.extend(bytes(layout.align(len(audio), layout.FSB5_DATA_ALIGNMENT) - len(audio)))
        offsets.append(len(audio))
        audio.extend(bank.sample_data(sample.index))
    audio.extend(bytes(layout.align(len(audio), layout.FSB5_DATA_ALIGNMENT) - len(audio)))

    headers = bytearray()
    for sample, offset in zip(bank.samples, offsets):
        chunks = _fsb5_chunks(sample)
        word = SampleMode(
            has_chunks=bool(chunks),
            frequency_index=_fsb5_frequency_index(sample),
            stereo=sample.channels > 1,
            data_offset=offset,
            sample_count=sample.sample_count,
        )
        headers.extend(struct.pack("<Q", word.pack()))
        for position, (chunk_type, payload) in enumerate(chunks):
            headers.extend(_chunk(chunk_type, payload, more=position + 1 < len(chunks)))

    name_table = bank.name_table()
    prologue = layout.FSB5_HEADER_STRUCT.pack(
        layout.FSB5_MAGIC,
        bank.header_version,
        len(bank.samples),
        len(headers),
        len(name_table),
        len(audio),
        int(bank.codec),
        bank.mode,
        bank.flags,
    )
    return prologue + bank.header_tail + bytes(headers) + name_table + bytes(audio)


def _fsb4_sample_header(sample: Sample) -> bytes:
    legacy = sample.legacy
    if legacy is None:
        mode = layout.FSB4_MODE_STEREO if sample.channels == 2 else layout.FSB4_MODE_MONO
        if sample.loop_start is not None:
            mode |= layout.FSB4_MODE_LOOP
        legacy = Fsb4Fields(
            entry_size=layout.FSB4_SAMPLE_HEADER_SIZE,
            name_field=b"",
            loop_start=0,
            loop_end=sample.sample_count,
            mode=mode,
            frequency=sample.frequency,
            tail=struct.pack("<HHHHffIHH", 255, 128, 128, sample.channels, 1.0, 10000.0, 0, 0, 0),
        )

    mode = legacy.mode
    if sample.channels != legacy.channels:
        if sample.channels == 2:
            mode = (mode | layout.FSB4_MODE_STEREO) & ~layout.FSB4_MODE_MONO
        else:
            mode = (mode | layout.FSB4_MODE_MONO) & ~layout.FSB4_MODE_STEREO
    has_loop = sample.loop_start is not None
    if has_loop != legacy.has_loop_points:
        mode = mode | layout.FSB4_MODE_LOOP if has_loop else mode & ~layout.FSB4_MODE_LOOP

    if legacy.name_field and sample.name == _decode_fsb4_name(legacy.name_field):
        name_field = legacy.name_field
    else:
        name_field = (sample.name or "").encode("utf-8")[: layout.FSB4_NAME_SIZE - 1]

    if sample.frequency == _fsb4_frequency(legacy.frequency):
        frequency = legacy.frequency
    else:
        frequency = sample.frequency

    fields = layout.FSB4_SAMPLE_STRUCT.pack(
        legacy.entry_size,
        name_field,
        sample.sample_count,
        sample.data_size,
        sample.loop_start if sample.loop_start is not None else legacy.loop_start,
        sample.loop_end if sample.loop_end is not None else legacy.loop_end,
        mode,
        frequency,
    )
    return fields + legacy.tail


def _build_fsb4(bank: Bank) -> bytes:
    headers = b"".join(_fsb4_sample_header(sample) for sample in bank.samples)
    audio = b"".join(bank.sample_data(sample.index) for sample in bank.samples)
    prologue = layout.FSB4_HEADER_STRUCT.pack(
        layout.FSB4_MAGIC,
        len(bank.samples),
        len(headers),
        len(audio),
        bank.header_version,
        bank.flags,
    )
    return prologue + bank.header_tail + headers + audio


def build_bank(bank: Bank, encryption: Optional[Encryption] = None) -> bytes:
    """Serialize a bank. ``encryption`` overrides the kind recorded at load time."""
    if bank.version is Version.FSB5:
        plain = _build_fsb5(bank)
    else:
        plain = _build_fsb4(bank)
    kind = bank.encryption if encryption is None else encryption
    return encrypt(plain, kind)


def write_bank(bank: Bank, path: str, encryption: Optional[Encryption] = None) -> None:
    data = build_bank(bank, encryption)
    directory = os.path.dirname(os.path.abspath(path))
    tmp_path = None
    try:
        os.makedirs(directory, exist_ok=True)
        with tempfile.NamedTemporaryFile(dir=directory, suffix=".tmp", delete=False) as tmp:
            tmp_path = tmp.name
            tmp.write(data)
        os.replace(tmp_path, path)
        tmp_path = None
    except OSError as exc:
        raise IoFailure(f"Cannot write {path}: {exc}") from exc
    finally:
        if tmp_path and os.path.exists(tmp_path):
            os.remove(tmp_path)


def _wav(pcm: bytes, sample_rate: int, channels: int, bits: int, float_format: bool = False) -> bytes:
    block_align = channels * (bits // 8)
    fmt = struct.pack("<HHIIHH", 3 if float_format else 1, channels, sample_rate, sample_rate * block_align, block_align, bits)
    return (
        b"RIFF"
        + struct.pack("<I", 36 + len(pcm))
        + b"WAVEfmt "
        + struct.pack("<I", len(fmt))
        + fmt
        + b"data"
        + struct.pack("<I", len(pcm))
        + pcm
    )


def extract_audio(
    bank: Bank,
    index: int,
    raw_fallback: bool = True,
    dictionary: Optional["VorbisSetupDictionary"] = None,
) -> tuple[bytes, str]:
    """Return (audio bytes, file extension) for one sample.

    Codecs without a decoder come back as opaque ``bin`` bytes when
    ``raw_fallback`` is set, otherwise they raise UnsupportedCompression.
    """
    sample = bank.sample(index)
    raw = bank.sample_data(index)
    if bank.codec is Codec.MPEG:
        return extract_frames(raw), "mp3"
    if bank.codec is Codec.VORBIS:
        from .vorbis import rebuild_ogg

        return rebuild_ogg(bank, index, dictionary), "ogg"
    if bank.codec in _PCM_BITS:
        return _wav(raw, sample.frequency, sample.channels, _PCM_BITS[bank.codec], bank.codec is Codec.PCMFLOAT), "wav"
    if not raw_fallback:
        raise UnsupportedCompression(f"No decoder for {bank.codec.name} samples")
    logger.warning("Sample %s: %s has no decoder, writing raw bytes", index, bank.codec.name)
    return raw, "bin"
