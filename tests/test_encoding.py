import unittest

from fake_engine import FakeEngine
from framecut.encoding import (
    MIN_VIDEO_BITRATE,
    pick_blend_format,
    pick_soundtrack_codec,
    pick_video_codec,
    pick_wav_codec,
    resolve_video_bitrate,
)
from framecut.errors import EncodeCapabilityMissing
from framecut.model import CustomBitrate, Quality, Size, parse_quality


class TestQuality(unittest.TestCase):
    def test_custom_bitrate_passes_through(self):
        self.assertEqual(resolve_video_bitrate(CustomBitrate(2_500_000), Size(1920, 1080)), 2_500_000)

    def test_levels_are_ordered(self):
        size = Size(1280, 720)
        rates = [resolve_video_bitrate(q, size) for q in Quality]
        self.assertEqual(rates, sorted(rates))
        self.assertEqual(len(set(rates)), len(rates))

    def test_reference_point(self):
        self.assertEqual(resolve_video_bitrate(Quality.MEDIUM, Size(1920, 1080), 30, "avc"), 3_000_000)

    def test_smaller_frames_need_less(self):
        big = resolve_video_bitrate(Quality.HIGH, Size(1920, 1080))
        small = resolve_video_bitrate(Quality.HIGH, Size(640, 360))
        self.assertLess(small, big)
        self.assertGreaterEqual(resolve_video_bitrate(Quality.VERY_LOW, Size(2, 2)), MIN_VIDEO_BITRATE)

    def test_parse_quality(self):
        self.assertIs(parse_quality("very-high"), Quality.VERY_HIGH)
        self.assertIs(parse_quality("LOW"), Quality.LOW)
        self.assertEqual(parse_quality(800_000), CustomBitrate(800_000))
        with self.assertRaises(ValueError):
            parse_quality("ultra")
        with self.assertRaises(ValueError):
            parse_quality(0)


class TestCodecChoice(unittest.TestCase):
    def test_video_codec_prefers_requested(self):
        self.assertEqual(pick_video_codec(FakeEngine(encodable={"avc", "vp9"}), "vp9"), "vp9")
        self.assertEqual(pick_video_codec(FakeEngine(encodable={"vp9"}), "avc"), "vp9")

    def test_wav_codec_falls_back_to_s16(self):
        self.assertEqual(pick_wav_codec(FakeEngine(encodable={"pcm-f32"})), "pcm-f32")
        self.assertEqual(pick_wav_codec(FakeEngine(encodable=set())), "pcm-s16")

    def test_blend_format(self):
        self.assertEqual(pick_blend_format(FakeEngine(encodable={"mp3"})), ("mp3", "mp3", 192_000))
        self.assertEqual(pick_blend_format(FakeEngine(encodable=set())), ("wav", "pcm-s16", None))

    def test_soundtrack_codec_order(self):
        self.assertEqual(pick_soundtrack_codec(FakeEngine(encodable={"mp3", "aac"})), "aac")
        self.assertEqual(pick_soundtrack_codec(FakeEngine(encodable={"mp3", "opus"})), "mp3")
        self.assertEqual(pick_soundtrack_codec(FakeEngine(encodable={"opus"})), "opus")
        with self.assertRaises(EncodeCapabilityMissing):
            pick_soundtrack_codec(FakeEngine(encodable={"pcm-s16"}))


if __name__ == "__main__":
    unittest.main()
