from __future__ import annotations

from .config import ENV_VORBIS_HEADERS

_SETUP_TABLE_HINT = f"load a setup header table with --vorbis-headers or {ENV_VORBIS_HEADERS}"


class FsbError(Exception):
    pass


class IoFailure(FsbError, OSError):
    pass


class FormatError(FsbError, ValueError):
    pass


class TooSmall(FormatError):
    pass


class UnknownFormat(FormatError):
    pass


class UnknownCodec(FormatError):
    pass


class SampleOutOfBounds(FormatError):
    pass


class UnsupportedCompression(FormatError):
    pass


class CryptoError(FsbError, ValueError):
    pass


class CodecError(FsbError, ValueError):
    pass


class UnknownSetupChecksum(CodecError):
    def __init__(self, crc: int) -> None:
        super().__init__(f"Unknown Vorbis setup checksum 0x{crc:08X} (crc32={crc}); {_SETUP_TABLE_HINT}")
        self.crc = crc


class MalformedStream(CodecError):
    pass


class ReplacementError(FsbError):
    """Raised when a sample replacement cannot be applied.

    The bank is left exactly as it was before the failing replacement.
    """

    def __init__(self, index: int, message: str) -> None:
        super().__init__(f"sample {index}: {message}")
        self.index = index


class IndexOutOfBounds(ReplacementError, IndexError):
    pass


class FormatMismatch(ReplacementError):
    pass


class UnsupportedSetup(ReplacementError):
    def __init__(self, index: int, crc: int) -> None:
        super().__init__(index, f"unsupported Vorbis setup checksum 0x{crc:08X}; {_SETUP_TABLE_HINT}")
        self.crc = crc


class CollaboratorError(FsbError):
    def __init__(self, tool: str, message: str, returncode: int | None = None) -> None:
        super().__init__(f"{tool} failed: {message}")
        self.tool = tool
        self.returncode = returncode
