import unittest

import numpy as np

from fake_engine import FakeEngine
from framecut.engine import AudioSample, VideoSample, first_encodable
from framecut.errors import EncodeCapabilityMissing, FramecutError, NoDataProduced


class TestSamples(unittest.TestCase):
    def test_close_is_idempotent_and_notifies_once(self):
        calls = []
        s = VideoSample(0.0, 0.1, np.zeros((2, 2, 3), dtype=np.uint8), on_close=calls.append)
        s.close()
        s.close()
        self.assertEqual(len(calls), 1)
        self.assertTrue(s.closed)
        with self.assertRaises(ValueError):
            _ = s.frame

    def test_clone_is_independent(self):
        s = AudioSample(1.0, None, np.zeros((2, 480), dtype=np.float32), sample_rate=48000)
        self.assertAlmostEqual(s.duration, 0.01)
        with s.clone() as c:
            c.timestamp = 5.0
            self.assertEqual(c.sample_rate, 48000)
        self.assertEqual(s.timestamp, 1.0)
        self.assertFalse(s.closed)
        s.close()


class TestOutputLifecycle(unittest.TestCase):
    def setUp(self):
        self.engine = FakeEngine()
        self.out = self.engine.create_output("mp4")

    def test_tracks_only_before_start(self):
        self.out.add_video_track("avc", 1_000_000, 30)
        self.out.start()
        with self.assertRaises(FramecutError):
            self.out.add_audio_track("aac", 128_000)

    def test_single_video_track(self):
        self.out.add_video_track("avc")
        with self.assertRaises(FramecutError):
            self.out.add_video_track("avc")

    def test_writes_require_started_output(self):
        track = self.out.add_video_track("avc")
        with VideoSample(0.0, 0.1, np.zeros((4, 4, 3), dtype=np.uint8)) as s:
            with self.assertRaises(FramecutError):
                track.add(s)

    def test_frame_size_must_not_change(self):
        track = self.out.add_video_track("avc")
        self.out.start()
        with VideoSample(0.0, 0.1, np.zeros((4, 4, 3), dtype=np.uint8)) as s:
            track.add(s)
        with VideoSample(0.1, 0.1, np.zeros((6, 4, 3), dtype=np.uint8)) as s:
            with self.assertRaises(FramecutError):
                track.add(s)

    def test_empty_finalize_raises_no_data(self):
        self.out.add_video_track("avc")
        self.out.start()
        with self.assertRaises(NoDataProduced):
            self.out.finalize()

    def test_finalize_once_then_cancel_is_noop(self):
        track = self.out.add_video_track("avc")
        self.out.start()
        with VideoSample(0.0, 0.1, np.zeros((4, 4, 3), dtype=np.uint8)) as s:
            track.add(s)
        data = self.out.finalize()
        self.assertTrue(data)
        self.out.cancel()
        self.assertEqual(self.out.cancel_calls, 0)
        with self.assertRaises(FramecutError):
            self.out.finalize()

    def test_unknown_container(self):
        with self.assertRaises(ValueError):
            self.engine.create_output("avi")

    def test_mime_and_extension(self):
        self.assertEqual(self.out.mime_type, "video/mp4")
        self.assertEqual(self.out.extension, ".mp4")


class TestFirstEncodable(unittest.TestCase):
    def test_picks_first_supported(self):
        e = FakeEngine(encodable={"vp9", "avc"})
        self.assertEqual(first_encodable(e, ["hevc", "vp9", "avc"]), "vp9")

    def test_fallback_and_missing(self):
        e = FakeEngine(encodable=set())
        self.assertEqual(first_encodable(e, ["pcm-s24"], fallback="pcm-s16"), "pcm-s16")
        with self.assertRaises(EncodeCapabilityMissing):
            first_encodable(e, ["avc"])

    def test_probe_errors_count_as_unsupported(self):
        e = FakeEngine()

        def broken(codec, **params):
            raise RuntimeError("probe crashed")

        e.can_encode = broken
        self.assertEqual(first_encodable(e, ["avc"], fallback="avc"), "avc")


if __name__ == "__main__":
    unittest.main()
