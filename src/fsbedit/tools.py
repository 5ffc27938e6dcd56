from __future__ import annotations

import abc
import io
import logging
import os
import subprocess
import tempfile
from dataclasses import dataclass
from typing import Optional

from .config import DEFAULT_VORBIS_QUALITY
from .errors import CollaboratorError
from .fsb import Codec

logger = logging.getLogger(__name__)

_WINDOWS_DLL_NOT_FOUND = 3221225781


@dataclass(frozen=True)
class TargetFormat:
    frequency: int
    channels: int
    codec: Codec
    filter_chain: Optional[str] = None


class Resampler(abc.ABC):
    """Converts a source audio file to the target rate/channels (WAV, or MP3 for MPEG targets)."""

    @abc.abstractmethod
    def resample(self, source: str, target: TargetFormat) -> bytes:
        raise NotImplementedError


class Encoder(abc.ABC):
    """Encodes a source audio file into a single-sample FSB bank."""

    @abc.abstractmethod
    def encode(self, source: str, target: TargetFormat) -> bytes:
        raise NotImplementedError


def _run(tool: str, command: list[str], cwd: Optional[str] = None, timeout: Optional[float] = None) -> None:
    logger.debug("Running %s: %s", tool, " ".join(command))
    try:
        result = subprocess.run(command, stdout=subprocess.PIPE, stderr=subprocess.PIPE, cwd=cwd, timeout=timeout)
    except FileNotFoundError as exc:
        raise CollaboratorError(tool, f"executable not found: {command[0]}") from exc
    except subprocess.TimeoutExpired as exc:
        raise CollaboratorError(tool, f"timed out after {timeout}s") from exc
    if result.returncode != 0:
        message = result.stderr.decode("utf-8", errors="replace").strip()
        if not message:
            message = result.stdout.decode("utf-8", errors="replace").strip()
        if not message:
            if result.returncode == _WINDOWS_DLL_NOT_FOUND:
                message = f"{tool} failed to start (missing DLLs)"
            else:
                message = f"{tool} exited with code {result.returncode}"
        raise CollaboratorError(tool, message, result.returncode)


def _read_output(tool: str, path: str) -> bytes:
    if not os.path.exists(path):
        raise CollaboratorError(tool, f"no output file written to {path}")
    with open(path, "rb") as fp:
        data = fp.read()
    if not data:
        raise CollaboratorError(tool, "empty output")
    return data


class FfmpegResampler(Resampler):
    def __init__(self, ffmpeg: str, mp3_bitrate: str = "192k", timeout: Optional[float] = None) -> None:
        self.ffmpeg = ffmpeg
        self.mp3_bitrate = mp3_bitrate
        self.timeout = timeout

    def build_command(self, source: str, target: TargetFormat, output_path: str) -> list[str]:
        command = [self.ffmpeg, "-hide_banner", "-loglevel", "error", "-y", "-i", source]
        filters = []
        if target.filter_chain:
            filters.append(target.filter_chain)
        layout_name = "mono" if target.channels == 1 else "stereo"
        filters.append(f"aresample={target.frequency}:ochl={layout_name}")
        command += ["-af", ",".join(filters), "-ar", str(target.frequency), "-ac", str(target.channels)]
        if target.codec is Codec.MPEG:
            command += ["-acodec", "libmp3lame", "-ab", self.mp3_bitrate]
        else:
            command += ["-f", "wav"]
        command.append(output_path)
        return command

    def resample(self, source: str, target: TargetFormat) -> bytes:
        ext = "mp3" if target.codec is Codec.MPEG else "wav"
        with tempfile.TemporaryDirectory(prefix="fsbedit_") as tmp:
            output_path = os.path.join(tmp, f"resampled.{ext}")
            _run("ffmpeg", self.build_command(source, target, output_path), timeout=self.timeout)
            return _read_output("ffmpeg", output_path)


class FsbankEncoder(Encoder):
    _FORMATS = {
        Codec.VORBIS: "vorbis",
        Codec.PCM16: "pcm",
        Codec.XMA: "xma",
        Codec.AT9: "at9",
    }

    def __init__(self, fsbankcl: str, quality: int = DEFAULT_VORBIS_QUALITY, timeout: Optional[float] = None) -> None:
        self.fsbankcl = fsbankcl
        self.quality = quality
        self.timeout = timeout

    def build_command(self, source: str, target: TargetFormat, output_path: str) -> list[str]:
        fmt = self._FORMATS.get(target.codec)
        if fmt is None:
            raise CollaboratorError("fsbankcl", f"cannot encode {target.codec.name}")
        return [self.fsbankcl, "-format", fmt, "-quality", str(self.quality), "-o", output_path, source]

    def encode(self, source: str, target: TargetFormat) -> bytes:
        with tempfile.TemporaryDirectory(prefix="fsbedit_") as tmp:
            output_path = os.path.join(tmp, "replacement.fsb")
            command = self.build_command(os.path.abspath(source), target, output_path)
            cwd = os.path.dirname(os.path.abspath(self.fsbankcl)) if os.path.isfile(self.fsbankcl) else None
            _run("fsbankcl", command, cwd=cwd, timeout=self.timeout)
            return _read_output("fsbankcl", output_path)


def decode_to_wav(data: bytes, ext: str, ffmpeg: Optional[str] = None) -> bytes:
    """Decode an extracted sample to WAV for listening; ffmpeg first, pydub as fallback."""
    ext_lower = ext.lower()
    if ext_lower == "wav":
        return data
    if ffmpeg:
        with tempfile.TemporaryDirectory(prefix="fsbedit_") as tmp:
            src_path = os.path.join(tmp, f"source.{ext_lower}")
            dst_path = os.path.join(tmp, "decoded.wav")
            with open(src_path, "wb") as fp:
                fp.write(data)
            command = [ffmpeg, "-hide_banner", "-loglevel", "error", "-y", "-i", src_path, "-f", "wav", dst_path]
            _run("ffmpeg", command)
            return _read_output("ffmpeg", dst_path)
    if ext_lower == "mp3":
        raise CollaboratorError("ffmpeg", "not found for mp3 decode. Install ffmpeg or place it under libs/ffmpeg")
    try:
        from pydub import AudioSegment
    except Exception as exc:
        raise CollaboratorError("pydub", "not installed. Run: pip install pydub") from exc
    audio = AudioSegment.from_file(io.BytesIO(data), format=ext_lower)
    out = io.BytesIO()
    audio.export(out, format="wav")
    return out.getvalue()
