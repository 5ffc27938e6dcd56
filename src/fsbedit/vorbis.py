from __future__ import annotations

import struct
from enum import IntEnum
from typing import TYPE_CHECKING, Iterator, Optional

from .errors import CodecError, MalformedStream, UnknownSetupChecksum
from .vorbis_headers import VorbisSetupDictionary, default_dictionary

if TYPE_CHECKING:
    from .fsb import Bank

OGG_CAPTURE = b"OggS"
OGG_SERIAL = 0x12345678
VENDOR = b"fsbedit"
# Granule positions advance by this constant per audio packet. This is not the
# real per-packet sample count (that needs the Vorbis mode/blocksize decode), so
# seek and duration metadata in the rebuilt stream are approximate.
GRANULE_STEP = 1024
PACKETS_PER_PAGE = 10
# blocksize_0 = 2^8, blocksize_1 = 2^11
_BLOCKSIZES = 0xB8

_PAGE_HEADER = struct.Struct("<4sBBqIIIB")
_MAX_SEGMENTS = 255
_FLAG_CONTINUED = 0x01
_FLAG_BOS = 0x02
_FLAG_EOS = 0x04


class PageEnd(IntEnum):
    NORMAL = 0
    END_PAGE = 1
    END_STREAM = 2


def iter_packets(raw: bytes) -> Iterator[bytes]:
    """Yield the [u16 length][payload] records of an FSB5 Vorbis stream."""
    pos = 0
    while pos + 2 <= len(raw):
        (size,) = struct.unpack_from("<H", raw, pos)
        pos += 2
        if size == 0 or pos + size > len(raw):
            return
        yield bytes(raw[pos : pos + size])
        pos += size


def has_valid_packets(raw: bytes) -> bool:
    if len(raw) < 2:
        return False
    (size,) = struct.unpack_from("<H", raw, 0)
    return size > 0 and size + 2 <= len(raw)


def build_id_header(sample_rate: int, channels: int) -> bytes:
    return (
        b"\x01vorbis"
        + struct.pack("<IBIiii", 0, channels, sample_rate, 0, 0, 0)
        + bytes([_BLOCKSIZES, 0x01])
    )


def build_comment_header(vendor: bytes = VENDOR) -> bytes:
    return b"\x03vorbis" + struct.pack("<I", len(vendor)) + vendor + struct.pack("<I", 0) + b"\x01"


def _crc_table() -> tuple[int, ...]:
    table = []
    for index in range(256):
        crc = index << 24
        for _ in range(8):
            crc = ((crc << 1) ^ 0x04C11DB7) if crc & 0x80000000 else (crc << 1)
        table.append(crc & 0xFFFFFFFF)
    return tuple(table)


_CRC_TABLE = _crc_table()


def ogg_crc(data: bytes) -> int:
    crc = 0
    for byte in data:
        crc = ((crc << 8) & 0xFFFFFFFF) ^ _CRC_TABLE[((crc >> 24) & 0xFF) ^ byte]
    return crc


class OggWriter:
    """Packet-to-page writer for a single logical Ogg stream."""

    def __init__(self, serial: int = OGG_SERIAL) -> None:
        self.serial = serial
        self._out = bytearray()
        self._sequence = 0
        self._segments: list[int] = []
        self._body = bytearray()
        self._granule = -1
        self._continued = False
        self._finished = False

    def write_packet(self, packet: bytes, granule: int, end: PageEnd = PageEnd.NORMAL) -> None:
        if self._finished:
            raise CodecError("Ogg stream already ended")
        lacing = [255] * (len(packet) // 255) + [len(packet) % 255]
        offset = 0
        while lacing:
            room = _MAX_SEGMENTS - len(self._segments)
            if room == 0:
                self._flush(eos=False)
                self._continued = offset > 0
                continue
            take = lacing[:room]
            lacing = lacing[room:]
            size = sum(take)
            self._segments.extend(take)
            self._body.extend(packet[offset : offset + size])
            offset += size
        self._granule = granule
        if end is PageEnd.END_STREAM:
            self._flush(eos=True)
            self._finished = True
        elif end is PageEnd.END_PAGE:
            self._flush(eos=False)

    def _flush(self, eos: bool) -> None:
        flags = 0
        if self._continued:
            flags |= _FLAG_CONTINUED
        if self._sequence == 0:
            flags |= _FLAG_BOS
        if eos:
            flags |= _FLAG_EOS
        # a page on which no packet completes carries granule -1
        completes = any(value < 255 for value in self._segments)
        granule = self._granule if completes else -1
        header = _PAGE_HEADER.pack(
            OGG_CAPTURE, 0, flags, granule, self.serial, self._sequence, 0, len(self._segments)
        )
        page = bytearray(header + bytes(self._segments) + self._body)
        struct.pack_into("<I", page, 22, ogg_crc(page))
        self._out.extend(page)
        self._sequence += 1
        self._segments = []
        self._body = bytearray()
        self._continued = False

    def getvalue(self) -> bytes:
        if self._segments:
            self._flush(eos=False)
        return bytes(self._out)


def build_ogg(sample_rate: int, channels: int, setup_header: bytes, raw: bytes) -> bytes:
    packets = list(iter_packets(raw))
    if not packets:
        raise MalformedStream("Vorbis sample contains no audio packets")

    writer = OggWriter()
    writer.write_packet(build_id_header(sample_rate, channels), 0, PageEnd.END_PAGE)
    writer.write_packet(build_comment_header(), 0, PageEnd.NORMAL)
    writer.write_packet(setup_header, 0, PageEnd.END_PAGE)

    granule = 0
    last = len(packets) - 1
    for count, packet in enumerate(packets, start=1):
        granule += GRANULE_STEP
        if count - 1 == last:
            end = PageEnd.END_STREAM
        elif count % PACKETS_PER_PAGE == 0:
            end = PageEnd.END_PAGE
        else:
            end = PageEnd.NORMAL
        writer.write_packet(packet, granule, end)
    return writer.getvalue()


def rebuild_ogg(bank: "Bank", index: int, dictionary: Optional[VorbisSetupDictionary] = None) -> bytes:
    """Wrap a Vorbis sample's raw packets into a playable Ogg file."""
    from .fsb import Codec

    if bank.codec != Codec.VORBIS:
        raise CodecError(f"Bank codec is {bank.codec.name}, not VORBIS")
    sample = bank.sample(index)
    if sample.vorbis_crc is None:
        raise CodecError(f"Sample {index} has no Vorbis metadata chunk")
    dictionary = dictionary if dictionary is not None else default_dictionary()
    setup = dictionary.lookup(sample.vorbis_crc)
    if setup is None:
        raise UnknownSetupChecksum(sample.vorbis_crc)
    return build_ogg(sample.frequency, sample.channels, setup, bank.sample_data(index))
