from __future__ import annotations

import unittest

from fsbedit import mpeg

from fixtures import MP3_FRAME_SIZE, mp3_frame, mp3_stream


class FrameHeaderTests(unittest.TestCase):
    def test_parse_mpeg1_layer3(self) -> None:
        header = mpeg.parse_frame_header(0xFFFB9000)
        self.assertIsNotNone(header)
        self.assertEqual(header.sample_rate, 44100)
        self.assertEqual(header.bitrate, 128000)
        self.assertEqual(header.channels, 2)
        self.assertEqual(header.frame_size, MP3_FRAME_SIZE)
        self.assertEqual(header.samples_per_frame, 1152)

    def test_mono_and_padding(self) -> None:
        header = mpeg.parse_frame_header(0xFFFB92C0)
        self.assertEqual(header.channels, 1)
        self.assertTrue(header.padding)
        self.assertEqual(header.frame_size, MP3_FRAME_SIZE + 1)

    def test_mpeg2_frame_size(self) -> None:
        # MPEG-2, Layer III, 64 kbit/s, 22050 Hz
        header = mpeg.parse_frame_header(0xFFF38000)
        self.assertEqual(header.sample_rate, 22050)
        self.assertEqual(header.frame_size, 72 * 64000 // 22050)
        self.assertEqual(header.samples_per_frame, 576)

    def test_rejects_other_layers_and_bad_fields(self) -> None:
        self.assertIsNone(mpeg.parse_frame_header(0xFFFD9000))  # Layer II
        self.assertIsNone(mpeg.parse_frame_header(0xFFFBF000))  # bitrate index 15
        self.assertIsNone(mpeg.parse_frame_header(0xFFFB9C00))  # reserved sample rate
        self.assertIsNone(mpeg.parse_frame_header(0x12345678))


class FrameStreamTests(unittest.TestCase):
    def test_resync_after_corrupted_frame(self) -> None:
        corrupted = b"\x00\x00\x00\x00" + b"\x00" * (MP3_FRAME_SIZE - 4)
        stream = mp3_stream(2) + corrupted + mp3_stream(3)
        positions = [pos for pos, _ in mpeg.iter_frames(stream)]
        self.assertEqual(positions, [0, 417, 1251, 1668, 2085])
        self.assertEqual(mpeg.extract_frames(stream), mp3_stream(5))

    def test_leading_garbage_and_padding(self) -> None:
        stream = b"\x12\x34junk" + mp3_frame() + b"\x00" * 9 + mp3_frame(mono=True)
        self.assertEqual(mpeg.extract_frames(stream), mp3_frame() + mp3_frame(mono=True))
        self.assertEqual(mpeg.count_samples(stream), 2304)

    def test_truncated_last_frame_dropped(self) -> None:
        stream = mp3_stream(2) + mp3_frame()[:100]
        self.assertEqual(len(list(mpeg.iter_frames(stream))), 2)

    def test_no_frames_returns_input(self) -> None:
        self.assertEqual(mpeg.extract_frames(b"not audio"), b"not audio")
        self.assertFalse(mpeg.has_valid_frames(b"not audio"))
        self.assertIsNone(mpeg.get_mpeg_info(b"not audio"))

    def test_header_without_complete_frame(self) -> None:
        cut = mp3_frame()[:100]
        self.assertFalse(mpeg.has_valid_frames(cut))
        self.assertIsNone(mpeg.get_mpeg_info(cut))

    def test_info(self) -> None:
        self.assertTrue(mpeg.has_valid_frames(mp3_stream(1)))
        self.assertEqual(mpeg.get_mpeg_info(mp3_stream(2, mono=True)), (44100, 1, 128000))
        self.assertEqual(mpeg.count_samples(mp3_stream(4)), 4 * 1152)


if __name__ == "__main__":
    unittest.main()
