from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from typing import Optional

ENV_FFMPEG = "FSBEDIT_FFMPEG"
ENV_FSBANKCL = "FSBEDIT_FSBANKCL"
ENV_VORBIS_HEADERS = "FSBEDIT_VORBIS_HEADERS"
ENV_VORBIS_QUALITY = "FSBEDIT_VORBIS_QUALITY"
ENV_LOG_DIR = "FSBEDIT_LOG_DIR"

DEFAULT_VORBIS_QUALITY = 50


def _package_dir() -> str:
    return os.path.dirname(os.path.abspath(__file__))


def _libs_dir() -> str:
    return os.path.abspath(os.path.join(os.getcwd(), "libs"))


def _first_file(candidates: list[str]) -> Optional[str]:
    for candidate in candidates:
        if os.path.isfile(candidate):
            return candidate
    return None


def _local_candidates(*relative: str) -> list[str]:
    libs = _libs_dir()
    paths = []
    for rel in relative:
        paths.append(os.path.join(libs, rel))
        paths.append(os.path.join(libs, rel + ".exe"))
    return paths


def find_ffmpeg(explicit: Optional[str] = None) -> Optional[str]:
    if explicit:
        return explicit
    env = os.environ.get(ENV_FFMPEG)
    if env:
        return env
    local = _first_file(_local_candidates("ffmpeg", os.path.join("ffmpeg", "ffmpeg"), os.path.join("ffmpeg", "bin", "ffmpeg")))
    return local or shutil.which("ffmpeg")


def find_fsbankcl(explicit: Optional[str] = None) -> Optional[str]:
    if explicit:
        return explicit
    env = os.environ.get(ENV_FSBANKCL)
    if env:
        return env
    local = _first_file(_local_candidates("fsbankcl", os.path.join("fmod", "fsbankcl")))
    return local or shutil.which("fsbankcl")


def vorbis_headers_path(explicit: Optional[str] = None) -> str:
    if explicit:
        return explicit
    return os.environ.get(ENV_VORBIS_HEADERS) or os.path.join(_package_dir(), "data", "vorbis_headers.json")


def vorbis_quality() -> int:
    raw = os.environ.get(ENV_VORBIS_QUALITY)
    if not raw:
        return DEFAULT_VORBIS_QUALITY
    try:
        quality = int(raw)
    except ValueError as exc:
        raise ValueError(f"{ENV_VORBIS_QUALITY} must be an integer, got {raw!r}") from exc
    if not 1 <= quality <= 100:
        raise ValueError(f"{ENV_VORBIS_QUALITY} must be between 1 and 100, got {quality}")
    return quality


def log_dir() -> str:
    return os.path.abspath(os.environ.get(ENV_LOG_DIR) or os.path.join(os.getcwd(), "log"))


@dataclass(frozen=True)
class ToolConfig:
    ffmpeg: Optional[str]
    fsbankcl: Optional[str]
    vorbis_quality: int = DEFAULT_VORBIS_QUALITY

    @classmethod
    def resolve(cls, ffmpeg: Optional[str] = None, fsbankcl: Optional[str] = None) -> "ToolConfig":
        return cls(
            ffmpeg=find_ffmpeg(ffmpeg),
            fsbankcl=find_fsbankcl(fsbankcl),
            vorbis_quality=vorbis_quality(),
        )
