from __future__ import annotations

import base64
import binascii
import functools
import json
import logging
from collections.abc import Mapping
from typing import Iterator, Optional

from .config import vorbis_headers_path
from .errors import CodecError, IoFailure

HEADER_FIELD = "headerBytes"

logger = logging.getLogger(__name__)


class VorbisSetupDictionary(Mapping):
    """Read-only map of setup header CRC32 to the Vorbis setup packet.

    FSB5 banks never store the setup packet; samples only carry its CRC.
    """

    def __init__(self, headers: Mapping[int, bytes]) -> None:
        self._headers = {int(crc): bytes(data) for crc, data in headers.items()}

    def __getitem__(self, crc: int) -> bytes:
        return self._headers[crc]

    def __iter__(self) -> Iterator[int]:
        return iter(self._headers)

    def __len__(self) -> int:
        return len(self._headers)

    def lookup(self, crc: int) -> Optional[bytes]:
        return self._headers.get(crc)

    @classmethod
    def from_json(cls, text: str) -> "VorbisSetupDictionary":
        try:
            table = json.loads(text)
        except json.JSONDecodeError as exc:
            raise CodecError(f"Vorbis header table is not valid JSON: {exc}") from exc
        if not isinstance(table, dict):
            raise CodecError("Vorbis header table must be a JSON object")

        headers: dict[int, bytes] = {}
        for key, value in table.items():
            try:
                crc = int(key)
                encoded = value[HEADER_FIELD]
                headers[crc] = base64.b64decode(encoded, validate=True)
            except (ValueError, TypeError, KeyError, binascii.Error) as exc:
                logger.warning("Skipping malformed Vorbis header entry %r: %s", key, exc)
        return cls(headers)

    @classmethod
    def from_file(cls, path: str) -> "VorbisSetupDictionary":
        try:
            with open(path, "r", encoding="utf-8") as fp:
                text = fp.read()
        except OSError as exc:
            raise IoFailure(f"Cannot read Vorbis header table {path}: {exc}") from exc
        dictionary = cls.from_json(text)
        logger.debug("Loaded %s Vorbis setup headers from %s", len(dictionary), path)
        return dictionary

    def to_json(self) -> str:
        table = {
            str(crc): {HEADER_FIELD: base64.b64encode(data).decode("ascii")}
            for crc, data in sorted(self._headers.items())
        }
        return json.dumps(table, indent=2)


@functools.lru_cache(maxsize=None)
def _load_default(path: str) -> VorbisSetupDictionary:
    return VorbisSetupDictionary.from_file(path)


def default_dictionary() -> VorbisSetupDictionary:
    return _load_default(vorbis_headers_path())
