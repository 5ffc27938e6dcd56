from __future__ import annotations

import logging
import os
import struct
import zlib
from dataclasses import dataclass
from typing import List, Optional

from .errors import FormatError, IoFailure, TooSmall, UnknownFormat, UnsupportedCompression

logger = logging.getLogger(__name__)

DCX_MAGIC = b"DCX\0"
DCS_MAGIC = b"DCS\0"
DCP_MAGIC = b"DCP\0"
DCA_MAGIC = b"DCA\0"
BND4_MAGIC = b"BND4"

DCX_DEFLATE = b"DFLT"
DCX_EDGE = b"EDGE"
DCX_KRAKEN = b"KRAK"

_DCX_HEADER_STRUCT = struct.Struct(">4sIII")
_DCS_STRUCT = struct.Struct(">4sII")
_DCP_STRUCT = struct.Struct(">4s4sIIIIII")
_DCA_STRUCT = struct.Struct(">4sI")

_BND4_HEADER = "4sBBBBiQ8sQQIB3x"
_BND4_EXTENDED = 0x10

_FSB_MAGICS = (b"FSB4", b"FSB5")


@dataclass(frozen=True)
class Bnd4Entry:
    flags: int
    id: int
    name: str
    compressed_size: int
    uncompressed_size: int
    data: bytes

    @property
    def basename(self) -> str:
        return self.name.replace("\\", "/").rsplit("/", 1)[-1]


@dataclass(frozen=True)
class Bnd4:
    version: str
    flags: int
    big_endian: bool
    unicode: bool
    extended: int
    entries: List[Bnd4Entry]

    def find(self, name: str) -> Optional[Bnd4Entry]:
        """Look an entry up by full name, then by file name (case-insensitive)."""
        for entry in self.entries:
            if entry.name == name:
                return entry
        wanted = name.replace("\\", "/").rsplit("/", 1)[-1].lower()
        for entry in self.entries:
            if entry.basename.lower() == wanted:
                return entry
        return None


def is_dcx(data: bytes) -> bool:
    return data[:4] == DCX_MAGIC


def is_bnd4(data: bytes) -> bool:
    return data[:4] == BND4_MAGIC


def _unpack_at(fmt: struct.Struct, data: bytes, offset: int, what: str) -> tuple:
    if offset < 0 or offset + fmt.size > len(data):
        raise TooSmall(f"Truncated {what} at offset {offset}")
    return fmt.unpack_from(data, offset)


def decompress_dcx(data: bytes) -> bytes:
    if not is_dcx(data):
        raise UnknownFormat("Not a DCX file")
    _, _, dcs_offset, dcp_offset = _unpack_at(_DCX_HEADER_STRUCT, data, 0, "DCX header")

    magic, uncompressed_size, compressed_size = _unpack_at(_DCS_STRUCT, data, dcs_offset, "DCS block")
    if magic != DCS_MAGIC:
        raise UnknownFormat("Invalid DCS magic")
    magic, compression, *_ = _unpack_at(_DCP_STRUCT, data, dcp_offset, "DCP block")
    if magic != DCP_MAGIC:
        raise UnknownFormat("Invalid DCP magic")
    if compression in (DCX_EDGE, DCX_KRAKEN):
        raise UnsupportedCompression(f"DCX compression {compression.decode('ascii')} is not supported")
    if compression != DCX_DEFLATE:
        raise UnknownFormat(f"Unknown DCX compression: {compression!r}")

    dca_offset = dcp_offset + _DCP_STRUCT.size
    magic, dca_size = _unpack_at(_DCA_STRUCT, data, dca_offset, "DCA block")
    if magic != DCA_MAGIC:
        raise UnknownFormat("Invalid DCA magic")
    start = dca_offset + dca_size
    payload = data[start : start + compressed_size]
    if len(payload) != compressed_size:
        raise TooSmall(f"DCX payload truncated ({len(payload)} of {compressed_size} bytes)")

    try:
        out = zlib.decompress(payload)
    except zlib.error:
        # some files carry a raw deflate stream without the zlib wrapper
        try:
            out = zlib.decompress(payload, -zlib.MAX_WBITS)
        except zlib.error as exc:
            raise FormatError(f"DCX payload does not inflate: {exc}") from exc
    if len(out) != uncompressed_size:
        logger.warning("DCX size mismatch: header says %s, got %s", uncompressed_size, len(out))
    return out


def _read_name(data: bytes, offset: int, unicode: bool) -> str:
    if unicode:
        end = offset
        while end + 1 < len(data) and data[end : end + 2] != b"\0\0":
            end += 2
        if end + 1 >= len(data):
            raise TooSmall(f"Unterminated entry name at offset {offset}")
        return data[offset:end].decode("utf-16-le", errors="replace")
    end = data.find(b"\0", offset)
    if end < 0:
        raise TooSmall(f"Unterminated entry name at offset {offset}")
    return data[offset:end].decode("utf-8", errors="replace")


def parse_bnd4(data: bytes) -> Bnd4:
    if not is_bnd4(data):
        raise UnknownFormat("Not a BND4 file")
    if len(data) < 5:
        raise TooSmall("BND4 header truncated")
    big_endian = bool(data[4] & 0x01)
    order = ">" if big_endian else "<"
    header = struct.Struct(order + _BND4_HEADER)
    (
        _,
        _,
        flags,
        _,
        _,
        entry_count,
        _,
        version_raw,
        _,
        _,
        unicode_raw,
        extended,
    ) = _unpack_at(header, data, 0, "BND4 header")
    if entry_count < 0:
        raise FormatError(f"Negative BND4 entry count: {entry_count}")

    offset = header.size
    if extended == _BND4_EXTENDED:
        offset += 8
    entry_fmt = order + "B3xiq" + ("Q" if extended == _BND4_EXTENDED else "") + "QiI" + ("8x" if extended == _BND4_EXTENDED else "")
    entry_struct = struct.Struct(entry_fmt)

    entries: List[Bnd4Entry] = []
    unicode = unicode_raw == 1
    for _ in range(entry_count):
        fields = _unpack_at(entry_struct, data, offset, "BND4 entry header")
        offset += entry_struct.size
        if extended == _BND4_EXTENDED:
            entry_flags, _, compressed_size, uncompressed_size, data_offset, file_id, name_offset = fields
        else:
            entry_flags, _, compressed_size, data_offset, file_id, name_offset = fields
            uncompressed_size = compressed_size
        size = compressed_size if compressed_size > 0 else uncompressed_size
        payload = data[data_offset : data_offset + size]
        if len(payload) != size:
            raise TooSmall(f"BND4 entry {file_id} data truncated")
        entries.append(
            Bnd4Entry(
                flags=entry_flags,
                id=file_id,
                name=_read_name(data, name_offset, unicode),
                compressed_size=compressed_size,
                uncompressed_size=uncompressed_size,
                data=payload,
            )
        )

    return Bnd4(
        version=version_raw.rstrip(b"\0").decode("ascii", errors="replace"),
        flags=flags,
        big_endian=big_endian,
        unicode=unicode,
        extended=extended,
        entries=entries,
    )


def _unwrap(data: bytes) -> bytes:
    while is_dcx(data):
        data = decompress_dcx(data)
    return data


def _pick_entry(bnd: Bnd4, entry: Optional[str]) -> Bnd4Entry:
    if entry is not None:
        found = bnd.find(entry)
        if found is None:
            raise FormatError(f"No entry named {entry!r} in BND4")
        return found
    banks = [item for item in bnd.entries if item.basename.lower().endswith(".fsb")]
    if len(banks) == 1:
        return banks[0]
    if len(bnd.entries) == 1:
        return bnd.entries[0]
    names = ", ".join(item.name for item in (banks or bnd.entries))
    raise FormatError(f"BND4 holds several entries, choose one: {names}")


def unwrap_bank_bytes(data: bytes, entry: Optional[str] = None) -> bytes:
    """Strip DCX/BND4 wrappers and return the bytes of the bank inside."""
    data = _unwrap(data)
    if is_bnd4(data):
        picked = _pick_entry(parse_bnd4(data), entry)
        logger.debug("Using BND4 entry %s (%s bytes)", picked.name, len(picked.data))
        data = _unwrap(picked.data)
    elif entry is not None:
        raise FormatError(f"Entry {entry!r} requested but input is not a BND4 archive")
    if data[:4] not in _FSB_MAGICS:
        logger.debug("Unwrapped data has no FSB magic, assuming an encrypted bank")
    return data


def read_bank_bytes(path: str, entry: Optional[str] = None) -> bytes:
    try:
        with open(path, "rb") as fp:
            data = fp.read()
    except OSError as exc:
        raise IoFailure(f"Cannot read {path}: {exc}") from exc
    return unwrap_bank_bytes(data, entry)


def read_archive_entries(path: str) -> List[Bnd4Entry]:
    try:
        with open(path, "rb") as fp:
            data = fp.read()
    except OSError as exc:
        raise IoFailure(f"Cannot read {path}: {exc}") from exc
    data = _unwrap(data)
    if not is_bnd4(data):
        raise UnknownFormat(f"{os.path.basename(path)} is not a BND4 archive")
    return parse_bnd4(data).entries
