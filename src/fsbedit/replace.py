from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field
from typing import Iterator, Optional

from .errors import (
    CollaboratorError,
    FormatMismatch,
    FsbError,
    IndexOutOfBounds,
    ReplacementError,
    UnsupportedSetup,
)
from .fsb import Bank, Codec, Sample, Version, parse_bank
from .mpeg import count_samples, extract_frames, get_mpeg_info, has_valid_frames
from .tools import Encoder, Resampler, TargetFormat
from .vorbis import has_valid_packets
from .vorbis_headers import VorbisSetupDictionary, default_dictionary

logger = logging.getLogger(__name__)

MIN_SPEED = 0.25
MAX_SPEED = 4.0
_ATEMPO_MIN = 0.5
_ATEMPO_MAX = 2.0


def _num(value: float) -> str:
    return f"{value:g}"


@dataclass(frozen=True)
class AudioSettings:
    gain_db: float = 0.0
    pitch_semitones: float = 0.0
    speed: float = 1.0

    @property
    def needs_processing(self) -> bool:
        return self.gain_db != 0.0 or self.pitch_semitones != 0.0 or self.speed != 1.0

    def to_filter_chain(self, sample_rate: int) -> Optional[str]:
        """Build an ffmpeg ``-af`` chain, or None when the settings are neutral."""
        filters = []
        if self.gain_db != 0.0:
            filters.append(f"volume={_num(self.gain_db)}dB")
        if self.pitch_semitones != 0.0:
            ratio = 2.0 ** (self.pitch_semitones / 12.0)
            filters.append(f"asetrate={int(round(sample_rate * ratio))}")
            filters.append(f"aresample={sample_rate}")
        if self.speed != 1.0:
            # atempo only accepts 0.5..2.0 per instance
            remaining = min(max(self.speed, MIN_SPEED), MAX_SPEED)
            while remaining > _ATEMPO_MAX:
                filters.append(f"atempo={_num(_ATEMPO_MAX)}")
                remaining /= _ATEMPO_MAX
            while remaining < _ATEMPO_MIN:
                filters.append(f"atempo={_num(_ATEMPO_MIN)}")
                remaining /= _ATEMPO_MIN
            if remaining != 1.0:
                filters.append(f"atempo={_num(remaining)}")
        return ",".join(filters) or None


@dataclass(frozen=True)
class Replacement:
    index: int
    source: str
    settings: AudioSettings = field(default_factory=AudioSettings)


class PendingReplacements:
    """Replacements queued against a bank, at most one per sample index."""

    def __init__(self) -> None:
        self._items: dict[int, Replacement] = {}

    def add(self, replacement: Replacement) -> None:
        if replacement.index in self._items:
            logger.debug("Overwriting pending replacement for sample %s", replacement.index)
        self._items[replacement.index] = replacement

    def discard(self, index: int) -> None:
        self._items.pop(index, None)

    def clear(self) -> None:
        self._items.clear()

    def get(self, index: int) -> Optional[Replacement]:
        return self._items.get(index)

    def __contains__(self, index: object) -> bool:
        return index in self._items

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Replacement]:
        for index in sorted(self._items):
            yield self._items[index]

    def commit(
        self,
        bank: Bank,
        *,
        encoder: Optional[Encoder] = None,
        resampler: Optional[Resampler] = None,
        dictionary: Optional[VorbisSetupDictionary] = None,
    ) -> list[int]:
        """Apply every pending replacement in ascending index order.

        Each applied replacement leaves the queue. On failure the replacements
        already applied stay in the bank and the failing one stays queued.
        """
        applied = []
        for replacement in list(self):
            replace_sample(
                bank,
                replacement.index,
                replacement.source,
                replacement.settings,
                encoder=encoder,
                resampler=resampler,
                dictionary=dictionary,
            )
            del self._items[replacement.index]
            applied.append(replacement.index)
        return applied


@dataclass(frozen=True)
class _Encoded:
    payload: bytes
    frequency: int
    channels: int
    sample_count: int
    vorbis_crc: Optional[int] = None
    vorbis_seek_table: Optional[list[int]] = None


def _check_format(index: int, target: Sample, frequency: int, channels: int) -> None:
    if (frequency, channels) != (target.frequency, target.channels):
        raise FormatMismatch(
            index,
            f"encoded audio is {frequency} Hz/{channels} ch, sample expects {target.frequency} Hz/{target.channels} ch",
        )


def _encode_fsb5(
    bank: Bank,
    index: int,
    source: str,
    settings: AudioSettings,
    encoder: Optional[Encoder],
    resampler: Optional[Resampler],
    dictionary: Optional[VorbisSetupDictionary],
) -> _Encoded:
    target_sample = bank.samples[index]
    if encoder is None:
        raise ReplacementError(index, "no bank encoder configured")
    if resampler is None and settings.needs_processing:
        raise ReplacementError(index, "gain/pitch/speed adjustments need a resampler")

    target = TargetFormat(
        frequency=target_sample.frequency,
        channels=target_sample.channels,
        codec=bank.codec,
        filter_chain=settings.to_filter_chain(target_sample.frequency),
    )
    with tempfile.TemporaryDirectory(prefix="fsbedit_") as tmp:
        encode_source = source
        if resampler is not None:
            encode_source = os.path.join(tmp, "resampled.wav")
            with open(encode_source, "wb") as fp:
                fp.write(resampler.resample(source, target))
        encoded = encoder.encode(encode_source, target)

    try:
        result = parse_bank(encoded)
    except FsbError as exc:
        raise ReplacementError(index, f"encoder output is not a valid bank: {exc}") from exc
    if not result.samples:
        raise ReplacementError(index, "encoder output contains no samples")
    if result.codec != bank.codec:
        raise FormatMismatch(index, f"encoder produced {result.codec.name}, bank uses {bank.codec.name}")

    new = result.samples[0]
    _check_format(index, target_sample, new.frequency, new.channels)

    if bank.codec is Codec.VORBIS:
        if new.vorbis_crc is None:
            raise ReplacementError(index, "encoder output has no Vorbis metadata chunk")
        if not has_valid_packets(result.sample_data(0)):
            raise ReplacementError(index, "encoder output holds no Vorbis packets")
        setups = dictionary if dictionary is not None else default_dictionary()
        if new.vorbis_crc not in setups:
            raise UnsupportedSetup(index, new.vorbis_crc)

    return _Encoded(
        payload=result.sample_data(0),
        frequency=new.frequency,
        channels=new.channels,
        sample_count=new.sample_count,
        vorbis_crc=new.vorbis_crc,
        vorbis_seek_table=new.vorbis_seek_table,
    )


def _encode_fsb4(
    bank: Bank,
    index: int,
    source: str,
    settings: AudioSettings,
    resampler: Optional[Resampler],
) -> _Encoded:
    target_sample = bank.samples[index]
    if bank.codec is not Codec.MPEG:
        raise ReplacementError(index, f"FSB4 replacement supports MPEG banks only, not {bank.codec.name}")

    target = TargetFormat(
        frequency=target_sample.frequency,
        channels=target_sample.channels,
        codec=Codec.MPEG,
        filter_chain=settings.to_filter_chain(target_sample.frequency),
    )
    data = None
    if source.lower().endswith(".mp3") and not settings.needs_processing:
        with open(source, "rb") as fp:
            data = fp.read()
        info = get_mpeg_info(extract_frames(data))
        if resampler is not None and (info is None or info[:2] != (target.frequency, target.channels)):
            data = None
    if data is None:
        if resampler is None:
            raise ReplacementError(index, "no resampler configured for MPEG conversion")
        data = resampler.resample(source, target)

    frames = extract_frames(data)
    if not has_valid_frames(frames):
        raise ReplacementError(index, "converted audio contains no complete MPEG frame")
    frequency, channels, _ = get_mpeg_info(frames)
    _check_format(index, target_sample, frequency, channels)
    return _Encoded(
        payload=frames,
        frequency=frequency,
        channels=channels,
        sample_count=count_samples(frames),
    )


def replace_sample(
    bank: Bank,
    index: int,
    source: str,
    settings: Optional[AudioSettings] = None,
    *,
    encoder: Optional[Encoder] = None,
    resampler: Optional[Resampler] = None,
    dictionary: Optional[VorbisSetupDictionary] = None,
) -> Sample:
    """Encode ``source`` and splice it over sample ``index``.

    Nothing in the bank changes unless every step before the splice succeeds.
    """
    settings = settings or AudioSettings()
    if not 0 <= index < len(bank.samples):
        raise IndexOutOfBounds(index, f"index out of range (bank has {len(bank.samples)} samples)")
    if not os.path.isfile(source):
        raise ReplacementError(index, f"source file not found: {source}")

    try:
        if bank.version is Version.FSB5:
            encoded = _encode_fsb5(bank, index, source, settings, encoder, resampler, dictionary)
        else:
            encoded = _encode_fsb4(bank, index, source, settings, resampler)
    except CollaboratorError as exc:
        raise ReplacementError(index, str(exc)) from exc
    except OSError as exc:
        raise ReplacementError(index, f"cannot read {source}: {exc}") from exc

    old_size = bank.samples[index].data_size
    bank.splice(
        index,
        encoded.payload,
        frequency=encoded.frequency,
        channels=encoded.channels,
        sample_count=encoded.sample_count,
        vorbis_crc=encoded.vorbis_crc,
        vorbis_seek_table=encoded.vorbis_seek_table,
    )
    logger.info("Replaced sample %s from %s (%s -> %s bytes)", index, source, old_size, len(encoded.payload))
    return bank.samples[index]
