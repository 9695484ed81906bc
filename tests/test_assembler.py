import unittest

import numpy as np

from fake_engine import FakeEngine
from framecut.assembler import AudioPlan, ClipInput, TimelineAssembler
from framecut.audio import PCMBuffer
from framecut.errors import CompositionCancelled, FramecutError, UnsupportedInput
from framecut.model import Size
from framecut.normalizer import ClipPlan


class TestTimelineAssembler(unittest.TestCase):
    def setUp(self):
        self.engine = FakeEngine()

    def _main_output(self):
        # the shared output is created before any re-encode pass
        return self.engine.outputs[0]

    def test_concatenation_is_monotonic_and_gap_free(self):
        e = self.engine
        a = e.add_video(1280, 720, frames=10, fps=10, audio_seconds=1.0)
        b = e.add_video(1280, 720, frames=20, fps=10, audio_seconds=2.0)

        res = TimelineAssembler(e).compose([ClipInput(a, "a.mp4"), ClipInput(b, "b.mp4")])

        self.assertAlmostEqual(res.duration, 3.0, places=6)
        self.assertEqual(res.size, Size(1280, 720))
        written = self._main_output().video_track.written
        self.assertEqual(len(written), 30)
        stamps = [ts for ts, _d, _f in written]
        self.assertEqual(stamps, sorted(stamps))
        self.assertEqual(len(set(stamps)), len(stamps))
        last_ts, last_dur, _f = written[-1]
        self.assertAlmostEqual(last_ts + last_dur, 3.0, delta=0.1)

    def test_audio_stays_monotonic_and_matches_video_length(self):
        e = self.engine
        a = e.add_video(1280, 720, frames=10, fps=10, audio_seconds=1.0)
        b = e.add_video(1280, 720, frames=10, fps=10, audio_seconds=1.0)

        TimelineAssembler(e).compose([ClipInput(a, "a"), ClipInput(b, "b")])

        track = self._main_output().audio_track
        stamps = [ts for ts, _p in track.written]
        self.assertEqual(stamps, sorted(stamps))
        self.assertAlmostEqual(track.covered(), 2.0, places=3)

    def test_audio_longer_than_video_is_cut_at_clip_span(self):
        e = self.engine
        a = e.add_video(1280, 720, frames=10, fps=10, audio_seconds=1.5)
        b = e.add_video(1280, 720, frames=10, fps=10, audio_seconds=1.0)

        TimelineAssembler(e).compose([ClipInput(a, "a"), ClipInput(b, "b")])

        track = self._main_output().audio_track
        first_clip = [ts for ts, _p in track.written if ts < 1.0]
        second_clip = [ts for ts, _p in track.written if ts >= 1.0]
        self.assertTrue(first_clip)
        self.assertAlmostEqual(min(second_clip), 1.0, places=6)

    def test_clip_without_audio_gets_silent_span(self):
        e = self.engine
        a = e.add_video(1280, 720, frames=10, fps=10, audio_seconds=1.0)
        silent = e.add_video(1280, 720, frames=10, fps=10)
        c = e.add_video(1280, 720, frames=10, fps=10, audio_seconds=1.0)

        res = TimelineAssembler(e).compose([ClipInput(a, "a"), ClipInput(silent, "s"), ClipInput(c, "c")])

        self.assertAlmostEqual(res.duration, 3.0, places=6)
        track = self._main_output().audio_track
        gaps = [(ts, p) for ts, p in track.written if abs(ts - 1.0) < 1e-9]
        self.assertEqual(len(gaps), 1)
        ts, pcm = gaps[0]
        self.assertEqual(pcm.shape[1], 48000)
        self.assertFalse(pcm.any())
        self.assertAlmostEqual(track.covered(), 3.0, places=3)

    def test_no_audio_anywhere_means_no_audio_track(self):
        e = self.engine
        a = e.add_video(320, 240, frames=5, fps=10)
        b = e.add_video(320, 240, frames=5, fps=10)

        TimelineAssembler(e).compose([ClipInput(a, "a"), ClipInput(b, "b")])
        self.assertIsNone(self._main_output().audio_track)

    def test_force_audio_writes_silence(self):
        e = self.engine
        a = e.add_video(320, 240, frames=10, fps=10)

        TimelineAssembler(e).compose([ClipInput(a, "a")], force_audio=True)

        track = self._main_output().audio_track
        self.assertIsNotNone(track)
        self.assertAlmostEqual(track.covered(), 1.0, places=3)
        self.assertFalse(any(p.any() for _ts, p in track.written))

    def test_audio_failure_is_swallowed_and_filled_with_silence(self):
        e = self.engine
        a = e.add_video(1280, 720, frames=10, fps=10, audio_seconds=1.0)
        b = e.add_video(1280, 720, frames=20, fps=10, audio_seconds=2.0, audio_error_after=5)

        with self.assertLogs("framecut.assembler", level="WARNING") as logs:
            res = TimelineAssembler(e).compose([ClipInput(a, "a"), ClipInput(b, "b")])

        self.assertTrue(res.data)
        self.assertIn("clip 2", logs.output[0])
        track = self._main_output().audio_track
        self.assertAlmostEqual(track.covered(), 3.0, places=3)
        self.assertEqual(self._main_output().finalize_calls, 1)

    def test_video_failure_aborts_and_cancels_output(self):
        e = self.engine
        a = e.add_video(320, 240, frames=10, fps=10, audio_seconds=1.0)
        b = e.add_video(320, 240, frames=10, fps=10, video_error_after=3)

        with self.assertRaises(FramecutError):
            TimelineAssembler(e).compose([ClipInput(a, "a"), ClipInput(b, "b")])

        out = self._main_output()
        self.assertEqual(out.finalize_calls, 0)
        self.assertEqual(out.cancel_calls, 1)
        self.assertEqual(e.disposals["a"], 1)
        self.assertEqual(e.disposals["b"], 1)
        self.assertEqual(e.samples_created, e.samples_closed)

    def test_mixed_sizes_are_rescaled_to_first_clip(self):
        e = self.engine
        a = e.add_video(1280, 720, frames=5, fps=10, audio_seconds=0.5)
        b = e.add_video(1280, 720, frames=5, fps=10, audio_seconds=0.5)
        c = e.add_video(640, 480, frames=5, fps=10, audio_seconds=0.5)

        res = TimelineAssembler(e).compose([ClipInput(a, "a"), ClipInput(b, "b"), ClipInput(c, "c")])

        self.assertEqual(res.size, Size(1280, 720))
        frames = self._main_output().video_track.written
        self.assertEqual(len(frames), 15)
        for _ts, _d, frame in frames:
            self.assertEqual(frame.shape, (720, 1280, 3))
        # one temporary container for the third clip, disposed after use
        self.assertEqual(len(e.outputs), 2)
        self.assertEqual(e.outputs[1].container, "mkv")
        self.assertEqual(e.disposals["c-normalized.mkv"], 1)

    def test_odd_reference_size_rounds_down_to_even(self):
        e = self.engine
        a = e.add_video(1281, 721, frames=3, fps=10)

        res = TimelineAssembler(e).compose([ClipInput(a, "odd")])

        self.assertEqual(res.size, Size(1280, 720))
        for _ts, _d, frame in self._main_output().video_track.written:
            self.assertEqual(frame.shape, (720, 1280, 3))

    def test_cancel_in_second_of_three_clips(self):
        e = self.engine
        names = ["a", "b", "c"]
        clips = [ClipInput(e.add_video(320, 240, frames=10, fps=10, audio_seconds=1.0), n) for n in names]

        def should_cancel():
            out = e.outputs[0] if e.outputs else None
            return bool(out and out.video_track and len(out.video_track.written) >= 15)

        with self.assertRaises(CompositionCancelled):
            TimelineAssembler(e, should_cancel=should_cancel).compose(clips)

        out = self._main_output()
        self.assertEqual(out.finalize_calls, 0)
        self.assertEqual(out.cancel_calls, 1)
        self.assertEqual(out.state, "cancelled")
        for n in names:
            self.assertEqual(e.disposals[n], 1)
        self.assertEqual(e.samples_created, e.samples_closed)

    def test_progress_is_monotonic_and_capped_until_done(self):
        e = self.engine
        a = e.add_video(320, 240, frames=10, fps=10, audio_seconds=1.0)
        b = e.add_video(320, 240, frames=10, fps=10, audio_seconds=1.0)
        events = []

        TimelineAssembler(e, on_progress=events.append).compose([ClipInput(a, "a"), ClipInput(b, "b")])

        self.assertGreater(len(events), 2)
        self.assertEqual(events, sorted(events))
        self.assertEqual(events[-1], 100.0)
        self.assertEqual(events.count(100.0), 1)
        self.assertTrue(all(v <= 90.0 for v in events[:-1]))

    def test_every_sample_is_closed(self):
        e = self.engine
        a = e.add_video(1280, 720, frames=10, fps=10, audio_seconds=1.0)
        b = e.add_video(640, 360, frames=10, fps=10, audio_seconds=1.0)

        TimelineAssembler(e).compose([ClipInput(a, "a"), ClipInput(b, "b")])

        self.assertGreater(e.samples_created, 0)
        self.assertEqual(e.samples_created, e.samples_closed)
        self.assertTrue(all(m.disposed for m in e.inputs))

    def test_unreadable_input_disposes_already_opened_sources(self):
        e = self.engine
        a = e.add_video(320, 240, frames=3, fps=10)

        with self.assertRaises(UnsupportedInput):
            TimelineAssembler(e).compose([ClipInput(a, "a"), ClipInput(b"not media", "junk.bin")])

        self.assertEqual(e.disposals["a"], 1)
        self.assertEqual(e.outputs, [])

    def test_source_without_video_is_rejected(self):
        e = self.engine
        a = e.add_video(320, 240, frames=3, fps=10)
        music = e.add_audio(1.0)

        with self.assertRaises(UnsupportedInput):
            TimelineAssembler(e).compose([ClipInput(a, "a"), ClipInput(music, "song.mp3")])
        self.assertEqual(e.disposals["song.mp3"], 1)

    def test_trim_range_is_rebased_to_zero(self):
        e = self.engine
        a = e.add_video(320, 240, frames=8, fps=4)

        res = TimelineAssembler(e).compose([ClipInput(a, "a", ClipPlan(in_sec=0.5, out_sec=1.5))])

        stamps = [ts for ts, _d, _f in self._main_output().video_track.written]
        self.assertEqual(stamps, [0.0, 0.25, 0.5, 0.75])
        self.assertAlmostEqual(res.duration, 1.0)

    def test_speed_change_shortens_clip(self):
        e = self.engine
        a = e.add_video(320, 240, frames=8, fps=4, audio_seconds=2.0)

        res = TimelineAssembler(e).compose([ClipInput(a, "a", ClipPlan(speed=2.0))])

        self.assertAlmostEqual(res.duration, 1.0)

    def test_replacement_audio_is_matched_to_video_length(self):
        e = self.engine
        a = e.add_video(320, 240, frames=10, fps=10, audio_seconds=1.0, level=0.9)
        song = PCMBuffer(np.full((2, 24000), 0.25, dtype=np.float32), 48000)

        TimelineAssembler(e).compose(
            [ClipInput(a, "a", ClipPlan(include_audio=False))],
            audio=AudioPlan(song),
        )

        track = self._main_output().audio_track
        self.assertAlmostEqual(track.covered(), 1.0, places=3)
        joined = np.concatenate([p for _ts, p in track.written], axis=1)
        self.assertTrue(np.allclose(joined[:, :24000], 0.25))
        self.assertFalse(joined[:, 24000:].any())

    def test_empty_clip_list_is_rejected(self):
        with self.assertRaises(ValueError):
            TimelineAssembler(self.engine).compose([])


if __name__ == "__main__":
    unittest.main()
