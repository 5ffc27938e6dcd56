from __future__ import annotations

import argparse
import concurrent.futures
import json
import logging
import os
import re
import sys
import time
from datetime import datetime
from typing import Iterable, Optional

from . import config
from .archives import read_archive_entries, read_bank_bytes
from .crypto import Encryption
from .errors import UnknownSetupChecksum
from .fsb import Bank, Codec, extract_audio, parse_bank, write_bank
from .replace import AudioSettings, PendingReplacements, Replacement
from .tools import FfmpegResampler, FsbankEncoder, decode_to_wav
from .vorbis_headers import VorbisSetupDictionary, default_dictionary


def _sanitize_path_segment(segment: str) -> str:
    segment = segment.strip().replace("/", "_").replace("\\", "_")
    segment = re.sub(r"[<>:\"/\\|?*]", "_", segment)
    return segment or "unnamed"


def _ensure_unique_path(path: str) -> str:
    if not os.path.exists(path):
        return path
    base, ext = os.path.splitext(path)
    index = 1
    while True:
        candidate = f"{base}_{index}{ext}"
        if not os.path.exists(candidate):
            return candidate
        index += 1


def _write_sample(output_dir: str, name: str, ext: str, data: bytes) -> str:
    os.makedirs(output_dir, exist_ok=True)
    path = _ensure_unique_path(os.path.join(output_dir, f"{_sanitize_path_segment(name)}.{ext}"))
    with open(path, "wb") as fp:
        fp.write(data)
    return path


def _get_logger(name: str) -> logging.Logger:
    package_logger = logging.getLogger("fsbedit")
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()
    package_logger.setLevel(logging.INFO)
    log_dir = config.log_dir()
    os.makedirs(log_dir, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_path = os.path.join(log_dir, f"{name}_{timestamp}.log")
    handler = logging.FileHandler(log_path, encoding="utf-8")
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
    handler.setFormatter(formatter)
    package_logger.addHandler(handler)
    package_logger.propagate = False
    logger = logging.getLogger(f"fsbedit.{name}")
    logger.info("Log started: %s", log_path)
    return logger


def _load_bank(path: str, entry: Optional[str]) -> Bank:
    return parse_bank(read_bank_bytes(path, entry))


def _dictionary(bank: Bank, path: Optional[str]) -> Optional[VorbisSetupDictionary]:
    if bank.codec is not Codec.VORBIS:
        return None
    if path:
        return VorbisSetupDictionary.from_file(path)
    return default_dictionary()


def _sample_name(bank: Bank, index: int) -> str:
    name = bank.samples[index].name
    return name if name else f"sample_{index:04d}"


def cmd_info(args: argparse.Namespace) -> int:
    bank = _load_bank(args.input, args.entry)
    if args.json:
        report = {
            "version": bank.version.name,
            "codec": bank.codec.name,
            "encryption": bank.encryption.value,
            "samples": [
                {
                    "index": sample.index,
                    "name": sample.name,
                    "frequency": sample.frequency,
                    "channels": sample.channels,
                    "sample_count": sample.sample_count,
                    "duration": round(sample.duration, 3),
                    "data_offset": sample.data_offset,
                    "data_size": sample.data_size,
                    "loop_start": sample.loop_start,
                    "loop_end": sample.loop_end,
                    "vorbis_crc": sample.vorbis_crc,
                }
                for sample in bank.samples
            ],
        }
        print(json.dumps(report, ensure_ascii=False, indent=2))
        return 0

    print(f"{bank.version.name} {bank.codec.name} encryption={bank.encryption.value} samples={len(bank.samples)}")
    for sample in bank.samples:
        loop = f"\tloop={sample.loop_start}-{sample.loop_end}" if sample.loop_start is not None else ""
        print(
            f"{sample.index}\t{sample.name or '-'}\t{sample.frequency}Hz\t{sample.channels}ch"
            f"\t{sample.duration:.2f}s\t{sample.data_size}{loop}"
        )
    return 0


def cmd_extract(args: argparse.Namespace) -> int:
    logger = _get_logger("extract")
    started = time.time()
    output_dir = os.path.abspath(args.output)
    logger.info("Start extract: input=%s output=%s wav=%s", args.input, output_dir, args.wav)
    bank = _load_bank(args.input, args.entry)
    dictionary = _dictionary(bank, args.vorbis_headers)
    ffmpeg = config.find_ffmpeg(args.ffmpeg)

    def _decode_entry(index: int) -> tuple[bytes, str]:
        data, ext = extract_audio(bank, index, raw_fallback=not args.strict, dictionary=dictionary)
        if args.wav and ext not in ("wav", "bin"):
            return decode_to_wav(data, ext, ffmpeg), "wav"
        return data, ext

    written = 0
    failed = 0
    missing_crc: list[int] = []

    def _record_failure(index: int, exc: Exception) -> None:
        nonlocal failed
        failed += 1
        if isinstance(exc, UnknownSetupChecksum):
            missing_crc.append(exc.crc)
        logger.warning("Extract failed: index=%s error=%s", index, exc)

    indices = range(len(bank.samples))
    jobs = max(1, int(args.jobs or 1))
    if jobs > 1:
        with concurrent.futures.ThreadPoolExecutor(max_workers=jobs) as executor:
            future_map = {executor.submit(_decode_entry, index): index for index in indices}
            results = {}
            for future in concurrent.futures.as_completed(future_map):
                index = future_map[future]
                try:
                    results[index] = future.result()
                except Exception as exc:
                    _record_failure(index, exc)
            for index in sorted(results):
                data, ext = results[index]
                path = _write_sample(output_dir, _sample_name(bank, index), ext, data)
                logger.info("Wrote sample %s: %s", index, path)
                written += 1
    else:
        for index in indices:
            try:
                data, ext = _decode_entry(index)
            except Exception as exc:
                _record_failure(index, exc)
                continue
            path = _write_sample(output_dir, _sample_name(bank, index), ext, data)
            logger.info("Wrote sample %s: %s", index, path)
            written += 1

    if missing_crc:
        missing_path = os.path.join(output_dir, "missing_vorbis_headers.json")
        os.makedirs(output_dir, exist_ok=True)
        with open(missing_path, "w", encoding="utf-8") as fp:
            json.dump(sorted(set(missing_crc)), fp, indent=2)
        print(f"Missing Vorbis headers: {len(set(missing_crc))} (saved to {missing_path})")
    if failed:
        print(f"Extracted {written} samples to {args.output} (skipped {failed})")
    else:
        print(f"Extracted {written} samples to {args.output}")
    logger.info("Done extract in %.2fs", time.time() - started)
    return 0


def cmd_decrypt(args: argparse.Namespace) -> int:
    logger = _get_logger("decrypt")
    bank = _load_bank(args.input, args.entry)
    write_bank(bank, args.output, Encryption.NONE)
    logger.info("Decrypted %s (%s) to %s", args.input, bank.encryption.value, args.output)
    print(f"Wrote {args.output} (was {bank.encryption.value})")
    return 0


def _parse_sample_arg(bank: Bank, value: str) -> tuple[int, str]:
    key, sep, path = value.partition("=")
    if not sep or not key or not path:
        raise ValueError(f"Expected INDEX=PATH, got {value!r}")
    try:
        return int(key), path
    except ValueError:
        pass
    for sample in bank.samples:
        if sample.name == key:
            return sample.index, path
    raise ValueError(f"No sample named {key!r}")


def cmd_replace(args: argparse.Namespace) -> int:
    logger = _get_logger("replace")
    started = time.time()
    bank = _load_bank(args.input, args.entry)
    tools = config.ToolConfig.resolve(args.ffmpeg, args.fsbankcl)
    logger.info("Start replace: input=%s ffmpeg=%s fsbankcl=%s", args.input, tools.ffmpeg, tools.fsbankcl)

    settings = AudioSettings(gain_db=args.gain, pitch_semitones=args.pitch, speed=args.speed)
    pending = PendingReplacements()
    for value in args.sample:
        index, path = _parse_sample_arg(bank, value)
        pending.add(Replacement(index, os.path.abspath(path), settings))

    resampler = FfmpegResampler(tools.ffmpeg) if tools.ffmpeg and not args.no_resample else None
    encoder = FsbankEncoder(tools.fsbankcl, tools.vorbis_quality) if tools.fsbankcl else None
    applied = pending.commit(
        bank,
        encoder=encoder,
        resampler=resampler,
        dictionary=_dictionary(bank, args.vorbis_headers),
    )

    encryption = Encryption.NONE if args.no_encrypt else None
    write_bank(bank, args.output, encryption)
    print(f"Replaced {len(applied)} samples, wrote {args.output}")
    logger.info("Done replace (%s) in %.2fs", applied, time.time() - started)
    return 0


def cmd_unpack(args: argparse.Namespace) -> int:
    logger = _get_logger("unpack")
    output_dir = os.path.abspath(args.output)
    written = 0
    for entry in read_archive_entries(args.input):
        parts = [part for part in entry.name.replace("\\", "/").split("/") if part and not part.endswith(":")]
        relative = os.path.join(*[_sanitize_path_segment(part) for part in parts]) if parts else f"entry_{entry.id}"
        out_path = _ensure_unique_path(os.path.join(output_dir, relative))
        os.makedirs(os.path.dirname(out_path), exist_ok=True)
        with open(out_path, "wb") as fp:
            fp.write(entry.data)
        logger.info("Unpacked %s -> %s", entry.name, out_path)
        written += 1
    print(f"Unpacked {written} entries to {args.output}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fsbedit")
    sub = parser.add_subparsers(dest="command", required=True)

    info_cmd = sub.add_parser("info", help="list samples in an .fsb bank")
    info_cmd.add_argument("input", help="input .fsb file (or DCX/BND4 archive)")
    info_cmd.add_argument("--entry", required=False, help="archive entry holding the bank")
    info_cmd.add_argument("--json", action="store_true", help="print a json report")
    info_cmd.set_defaults(func=cmd_info)

    extract_cmd = sub.add_parser("extract", help="extract playable audio from an .fsb bank")
    extract_cmd.add_argument("input", help="input .fsb file (or DCX/BND4 archive)")
    extract_cmd.add_argument("--output", "-o", required=True, help="output directory")
    extract_cmd.add_argument("--entry", required=False, help="archive entry holding the bank")
    extract_cmd.add_argument("--wav", action="store_true", help="decode samples to wav")
    extract_cmd.add_argument("--strict", action="store_true", help="skip samples without a decoder instead of writing .bin")
    extract_cmd.add_argument("--vorbis-headers", required=False, help="Vorbis setup header table (json)")
    extract_cmd.add_argument("--ffmpeg", required=False, help="ffmpeg executable")
    extract_cmd.add_argument("--jobs", type=int, default=1, help="number of worker threads for wav decoding")
    extract_cmd.set_defaults(func=cmd_extract)

    decrypt_cmd = sub.add_parser("decrypt", help="write an unencrypted copy of a bank")
    decrypt_cmd.add_argument("input", help="input .fsb file (or DCX/BND4 archive)")
    decrypt_cmd.add_argument("--output", "-o", required=True, help="output .fsb file")
    decrypt_cmd.add_argument("--entry", required=False, help="archive entry holding the bank")
    decrypt_cmd.set_defaults(func=cmd_decrypt)

    replace_cmd = sub.add_parser("replace", help="replace samples and write a new bank")
    replace_cmd.add_argument("input", help="input .fsb file (or DCX/BND4 archive)")
    replace_cmd.add_argument("--output", "-o", required=True, help="output .fsb file")
    replace_cmd.add_argument("--entry", required=False, help="archive entry holding the bank")
    replace_cmd.add_argument(
        "--sample",
        action="append",
        required=True,
        metavar="INDEX=PATH",
        help="sample index (or name) and source audio file; repeatable",
    )
    replace_cmd.add_argument("--gain", type=float, default=0.0, help="gain in dB")
    replace_cmd.add_argument("--pitch", type=float, default=0.0, help="pitch shift in semitones")
    replace_cmd.add_argument("--speed", type=float, default=1.0, help="speed multiplier (0.25-4.0)")
    replace_cmd.add_argument("--no-resample", action="store_true", help="do not force source audio to the sample format")
    replace_cmd.add_argument("--no-encrypt", action="store_true", help="write the bank unencrypted")
    replace_cmd.add_argument("--vorbis-headers", required=False, help="Vorbis setup header table (json)")
    replace_cmd.add_argument("--ffmpeg", required=False, help="ffmpeg executable")
    replace_cmd.add_argument("--fsbankcl", required=False, help="FMOD fsbankcl executable")
    replace_cmd.set_defaults(func=cmd_replace)

    unpack_cmd = sub.add_parser("unpack", help="unpack entries of a DCX/BND4 archive")
    unpack_cmd.add_argument("input", help="input archive")
    unpack_cmd.add_argument("--output", "-o", required=True, help="output directory")
    unpack_cmd.set_defaults(func=cmd_unpack)

    return parser


def main(argv: Iterable[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return args.func(args)
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
