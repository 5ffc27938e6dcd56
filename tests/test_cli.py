from __future__ import annotations

import contextlib
import io
import json
import logging
import os
import shutil
import tempfile
import unittest
from unittest import mock

from fsbedit import cli, config
from fsbedit.crypto import Encryption, encrypt
from fsbedit.fsb import read_bank
from fsbedit.vorbis_headers import VorbisSetupDictionary

from fixtures import SETUP_CRC, SETUP_PACKET, build_bnd4, build_fsb4, mp3_stream, three_sample_fsb5


class CliTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.mkdtemp(prefix="fsbedit_cli_")
        self.addCleanup(shutil.rmtree, self.tmp, ignore_errors=True)
        env = mock.patch.dict(os.environ, {config.ENV_LOG_DIR: os.path.join(self.tmp, "log")})
        env.start()
        self.addCleanup(env.stop)
        self.addCleanup(self._close_log_handlers)

    @staticmethod
    def _close_log_handlers() -> None:
        logger = logging.getLogger("fsbedit")
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
        logger.propagate = True

    def write(self, name: str, data: bytes) -> str:
        path = os.path.join(self.tmp, name)
        with open(path, "wb") as fp:
            fp.write(data)
        return path

    def headers(self) -> str:
        path = os.path.join(self.tmp, "headers.json")
        with open(path, "w", encoding="utf-8") as fp:
            fp.write(VorbisSetupDictionary({SETUP_CRC: SETUP_PACKET}).to_json())
        return path

    def run_cli(self, *argv: str) -> tuple[int, str, str]:
        out = io.StringIO()
        err = io.StringIO()
        with contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
            code = cli.main(list(argv))
        return code, out.getvalue(), err.getvalue()


class InfoTests(CliTestCase):
    def test_listing(self) -> None:
        code, out, _ = self.run_cli("info", self.write("bank.fsb", three_sample_fsb5()))
        self.assertEqual(code, 0)
        lines = out.splitlines()
        self.assertEqual(lines[0], "FSB5 VORBIS encryption=none samples=3")
        self.assertIn("loop=10-900", lines[2])
        self.assertIn("48000Hz", lines[2])

    def test_json(self) -> None:
        path = self.write("bank.fsb", encrypt(three_sample_fsb5(), Encryption.BYTE_CIPHER))
        code, out, _ = self.run_cli("info", path, "--json")
        self.assertEqual(code, 0)
        report = json.loads(out)
        self.assertEqual(report["encryption"], "fsbext")
        self.assertEqual(report["samples"][2]["vorbis_crc"], SETUP_CRC)

    def test_error_exit_code(self) -> None:
        code, _, err = self.run_cli("info", os.path.join(self.tmp, "missing.fsb"))
        self.assertEqual(code, 1)
        self.assertTrue(err.startswith("Error: "))


class ExtractTests(CliTestCase):
    def test_extract_ogg(self) -> None:
        out_dir = os.path.join(self.tmp, "out")
        code, out, _ = self.run_cli(
            "extract", self.write("bank.fsb", three_sample_fsb5()), "-o", out_dir, "--vorbis-headers", self.headers()
        )
        self.assertEqual(code, 0)
        self.assertIn("Extracted 3 samples", out)
        self.assertEqual(sorted(os.listdir(out_dir)), ["intro.ogg", "loop.ogg", "outro.ogg"])
        with open(os.path.join(out_dir, "loop.ogg"), "rb") as fp:
            self.assertEqual(fp.read(4), b"OggS")
        self.assertTrue(os.listdir(os.path.join(self.tmp, "log")))

    def test_missing_headers_are_recorded(self) -> None:
        empty = os.path.join(self.tmp, "empty.json")
        with open(empty, "w", encoding="utf-8") as fp:
            fp.write("{}")
        out_dir = os.path.join(self.tmp, "out")
        code, out, _ = self.run_cli(
            "extract", self.write("bank.fsb", three_sample_fsb5()), "-o", out_dir, "--vorbis-headers", empty, "--jobs", "2"
        )
        self.assertEqual(code, 0)
        self.assertIn("skipped 3", out)
        with open(os.path.join(out_dir, "missing_vorbis_headers.json"), encoding="utf-8") as fp:
            self.assertEqual(json.load(fp), [SETUP_CRC])

    def test_extract_mp3(self) -> None:
        out_dir = os.path.join(self.tmp, "out")
        bank = build_fsb4([("shot", mp3_stream(2) + b"\x00" * 5), ("shot", mp3_stream(1))])
        code, _, _ = self.run_cli("extract", self.write("bank.fsb", bank), "-o", out_dir)
        self.assertEqual(code, 0)
        self.assertEqual(sorted(os.listdir(out_dir)), ["shot.mp3", "shot_1.mp3"])
        with open(os.path.join(out_dir, "shot.mp3"), "rb") as fp:
            self.assertEqual(fp.read(), mp3_stream(2))

    def test_mpeg_bank_ignores_header_table(self) -> None:
        out_dir = os.path.join(self.tmp, "out")
        stale = os.path.join(self.tmp, "gone.json")
        bank = self.write("bank.fsb", build_fsb4([("shot", mp3_stream(1))]))
        with mock.patch.dict(os.environ, {config.ENV_VORBIS_HEADERS: stale}):
            code, out, err = self.run_cli("extract", bank, "-o", out_dir)
        self.assertEqual(code, 0, err)
        self.assertIn("Extracted 1 samples", out)

    def test_vorbis_bank_needs_readable_table(self) -> None:
        missing = os.path.join(self.tmp, "gone.json")
        out_dir = os.path.join(self.tmp, "out")
        code, _, err = self.run_cli(
            "extract", self.write("bank.fsb", three_sample_fsb5()), "-o", out_dir, "--vorbis-headers", missing
        )
        self.assertEqual(code, 1)
        self.assertIn("gone.json", err)


class LogFileTests(CliTestCase):
    def test_each_command_gets_its_own_log(self) -> None:
        bank = self.write("bank.fsb", build_fsb4([("shot", mp3_stream(1))]))
        self.assertEqual(self.run_cli("extract", bank, "-o", os.path.join(self.tmp, "out"))[0], 0)
        self.assertEqual(self.run_cli("decrypt", bank, "-o", os.path.join(self.tmp, "plain.fsb"))[0], 0)
        self._close_log_handlers()

        log_dir = os.path.join(self.tmp, "log")
        logs = {}
        for name in os.listdir(log_dir):
            with open(os.path.join(log_dir, name), encoding="utf-8") as fp:
                logs[name.split("_", 1)[0]] = fp.read()
        self.assertEqual(sorted(logs), ["decrypt", "extract"])
        self.assertIn("Start extract", logs["extract"])
        self.assertNotIn("Decrypted", logs["extract"])
        self.assertIn("Decrypted", logs["decrypt"])


class DecryptTests(CliTestCase):
    def test_decrypt_aes(self) -> None:
        plain = three_sample_fsb5()
        output = os.path.join(self.tmp, "plain.fsb")
        code, out, _ = self.run_cli("decrypt", self.write("enc.fsb", encrypt(plain, Encryption.AES_HEADER)), "-o", output)
        self.assertEqual(code, 0)
        self.assertIn("was aes", out)
        with open(output, "rb") as fp:
            self.assertEqual(fp.read(), plain)


class ReplaceTests(CliTestCase):
    def test_replace_fsb4_with_mp3(self) -> None:
        source = self.write("new.mp3", mp3_stream(4))
        bank_path = self.write("bank.fsb", encrypt(build_fsb4([("a", mp3_stream(3)), ("b", mp3_stream(2))]), Encryption.BYTE_CIPHER))
        output = os.path.join(self.tmp, "edited.fsb")
        code, out, err = self.run_cli(
            "replace", bank_path, "-o", output, "--sample", f"b={source}", "--no-resample", "--no-encrypt"
        )
        self.assertEqual(code, 0, err)
        self.assertIn("Replaced 1 samples", out)
        bank = read_bank(output)
        self.assertIs(bank.encryption, Encryption.NONE)
        self.assertEqual(bank.sample_data(1), mp3_stream(4))
        self.assertEqual(bank.samples[1].sample_count, 4 * 1152)

    def test_bad_sample_argument(self) -> None:
        code, _, err = self.run_cli(
            "replace", self.write("bank.fsb", three_sample_fsb5()), "-o", os.path.join(self.tmp, "x.fsb"), "--sample", "nope"
        )
        self.assertEqual(code, 1)
        self.assertIn("INDEX=PATH", err)


class UnpackTests(CliTestCase):
    def test_unpack(self) -> None:
        archive = self.write("sound.bnd", build_bnd4([("N:\\FRPG\\sound\\a.fsb", b"A"), ("N:\\FRPG\\sound\\b.fsb", b"B")]))
        out_dir = os.path.join(self.tmp, "unpacked")
        code, out, _ = self.run_cli("unpack", archive, "-o", out_dir)
        self.assertEqual(code, 0)
        self.assertIn("Unpacked 2 entries", out)
        with open(os.path.join(out_dir, "FRPG", "sound", "b.fsb"), "rb") as fp:
            self.assertEqual(fp.read(), b"B")


if __name__ == "__main__":
    unittest.main()
