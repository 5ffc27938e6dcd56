from __future__ import annotations

import enum
import functools
from typing import Callable, Optional

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .errors import CryptoError, UnknownFormat
from .layout import MAGICS, payload_region

FSB_KEY = b"G0KTrWjS9syqF7vVD6RaVXlFD91gMgkC"
AES_BLOCK_SIZE = 16
AES_KEY_SIZE = 32
HEADER_PREFIX_SIZE = 32


class Encryption(enum.Enum):
    NONE = "none"
    AES_HEADER = "aes"
    BYTE_CIPHER = "fsbext"


def _aes(key: bytes) -> Cipher:
    if len(key) != AES_KEY_SIZE:
        raise CryptoError(f"AES key must be {AES_KEY_SIZE} bytes, got {len(key)}")
    return Cipher(algorithms.AES(key), modes.ECB())


def _whole_blocks(data: bytes) -> int:
    return len(data) - len(data) % AES_BLOCK_SIZE


def aes_decrypt(data: bytes, key: bytes = FSB_KEY) -> bytes:
    """Decrypt every complete 16 byte block; a trailing partial block is left as is."""
    usable = _whole_blocks(data)
    if not usable:
        return bytes(data)
    decryptor = _aes(key).decryptor()
    return decryptor.update(bytes(data[:usable])) + decryptor.finalize() + bytes(data[usable:])


def aes_encrypt(data: bytes, key: bytes = FSB_KEY) -> bytes:
    usable = _whole_blocks(data)
    if not usable:
        return bytes(data)
    encryptor = _aes(key).encryptor()
    return encryptor.update(bytes(data[:usable])) + encryptor.finalize() + bytes(data[usable:])


def _decode_byte(t: int) -> int:
    left = ((((((t & 64) | (t >> 2)) >> 2) | (t & 32)) >> 2) | (t & 16)) >> 1
    right = ((((((t & 2) | (t << 2)) << 2) | (t & 4)) << 2) | (t & 8)) << 1
    return (left | right) & 0xFF


@functools.lru_cache(maxsize=None)
def _decode_table() -> bytes:
    return bytes(_decode_byte(value) for value in range(256))


@functools.lru_cache(maxsize=None)
def _encode_table() -> bytes:
    decode = _decode_table()
    table = bytearray(256)
    for value in range(256):
        table[decode[value]] = value
    return bytes(table)


def byte_cipher_decode(value: int) -> int:
    return _decode_table()[value]


def byte_cipher_encode(value: int) -> int:
    return _encode_table()[value]


def _xor_key(data: bytes, key: bytes) -> bytes:
    if not key:
        raise CryptoError("Byte cipher key must not be empty")
    size = len(data)
    if not size:
        return b""
    stream = (key * (size // len(key) + 1))[:size]
    mixed = int.from_bytes(data, "little") ^ int.from_bytes(stream, "little")
    return mixed.to_bytes(size, "little")


def byte_cipher_decrypt(data: bytes, key: bytes = FSB_KEY) -> bytes:
    return _xor_key(bytes(data).translate(_decode_table()), key)


def byte_cipher_encrypt(data: bytes, key: bytes = FSB_KEY) -> bytes:
    return _xor_key(bytes(data), key).translate(_encode_table())


def _try_plain(data: bytes) -> Optional[tuple[bytes, Encryption]]:
    if bytes(data[:4]) in MAGICS:
        return bytes(data), Encryption.NONE
    return None


def _try_aes_header(data: bytes) -> Optional[tuple[bytes, Encryption]]:
    if len(data) < HEADER_PREFIX_SIZE:
        return None
    header = aes_decrypt(data[:HEADER_PREFIX_SIZE])
    if header[:4] not in MAGICS:
        return None
    buf = bytearray(data)
    buf[:HEADER_PREFIX_SIZE] = header
    region = payload_region(buf)
    if region is not None:
        start, end = region
        end = min(end, len(buf))
        if start < end:
            buf[start:end] = aes_decrypt(buf[start:end])
    return bytes(buf), Encryption.AES_HEADER


def _try_byte_cipher(data: bytes) -> Optional[tuple[bytes, Encryption]]:
    if byte_cipher_decrypt(data[:4]) not in MAGICS:
        return None
    return byte_cipher_decrypt(data), Encryption.BYTE_CIPHER


_DETECTORS: tuple[Callable[[bytes], Optional[tuple[bytes, Encryption]]], ...] = (
    _try_plain,
    _try_aes_header,
    _try_byte_cipher,
)


def detect_and_decrypt(data: bytes) -> tuple[bytes, Encryption]:
    for detector in _DETECTORS:
        result = detector(data)
        if result is not None:
            return result
    raise UnknownFormat("No FSB4/FSB5 magic found under any known encryption")


def encrypt(plain: bytes, kind: Encryption) -> bytes:
    if kind is Encryption.NONE:
        return bytes(plain)
    if kind is Encryption.BYTE_CIPHER:
        return byte_cipher_encrypt(plain)
    if kind is Encryption.AES_HEADER:
        buf = bytearray(plain)
        region = payload_region(buf)
        if region is not None:
            start, end = region
            end = min(end, len(buf))
            if start < end:
                buf[start:end] = aes_encrypt(buf[start:end])
        buf[:HEADER_PREFIX_SIZE] = aes_encrypt(buf[:HEADER_PREFIX_SIZE])
        return bytes(buf)
    raise CryptoError(f"Unknown encryption kind: {kind!r}")


def decrypt(data: bytes, kind: Encryption) -> bytes:
    if kind is Encryption.NONE:
        return bytes(data)
    if kind is Encryption.BYTE_CIPHER:
        return byte_cipher_decrypt(data)
    if kind is Encryption.AES_HEADER:
        result = _try_aes_header(data)
        if result is None:
            raise UnknownFormat("AES header decryption did not yield an FSB magic")
        return result[0]
    raise CryptoError(f"Unknown encryption kind: {kind!r}")
