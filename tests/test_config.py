import tempfile
import unittest
from pathlib import Path

from framecut.config import ConfigStore


class TestConfigStore(unittest.TestCase):
    def test_load_default_when_missing(self):
        with tempfile.TemporaryDirectory() as td:
            store = ConfigStore(Path(td) / "cfg")
            cfg = store.load()
            self.assertEqual(cfg["video_codec"], "avc")
            self.assertEqual(cfg["progress_ceiling"], 90)

    def test_saved_values_merge_over_defaults(self):
        with tempfile.TemporaryDirectory() as td:
            store = ConfigStore(Path(td))
            store.save({"frame_rate": 24})
            cfg = store.load()
            self.assertEqual(cfg["frame_rate"], 24)
            self.assertEqual(cfg["audio_codec"], "aac")

    def test_numeric_settings_clamp(self):
        with tempfile.TemporaryDirectory() as td:
            store = ConfigStore(Path(td))
            store.save({"frame_rate": 0, "video_bitrate": 10, "audio_bitrate": 10**9, "progress_ceiling": 100})
            self.assertEqual(store.frame_rate(), 1)
            self.assertEqual(store.video_bitrate(), 100_000)
            self.assertEqual(store.audio_bitrate(), 512_000)
            self.assertEqual(store.progress_ceiling(), 99)

            store.save({"progress_ceiling": "garbage"})
            self.assertEqual(store.progress_ceiling(), 90)

    def test_corrupt_file_falls_back_to_defaults(self):
        with tempfile.TemporaryDirectory() as td:
            store = ConfigStore(Path(td))
            store.root_dir.mkdir(parents=True, exist_ok=True)
            store.path.write_text("not json", encoding="utf-8")
            self.assertEqual(store.frame_rate(), 30)
            store.path.write_text("[1, 2]", encoding="utf-8")
            self.assertEqual(store.load()["video_bitrate"], 4_000_000)

    def test_encode_settings(self):
        with tempfile.TemporaryDirectory() as td:
            store = ConfigStore(Path(td))
            store.save({"video_codec": "hevc", "video_bitrate": 2_000_000, "frame_rate": 25})
            s = store.encode_settings()
            self.assertEqual(s.video_codec, "hevc")
            self.assertEqual(s.video_bitrate, 2_000_000)
            self.assertEqual(s.frame_rate, 25)
            self.assertEqual(s.audio_codec, "aac")

    def test_last_output_dir(self):
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            store = ConfigStore(root / "cfg")
            self.assertEqual(store.last_output_dir(), "")

            out_dir = root / "exports"
            out_dir.mkdir()
            store.set_last_output_dir(str(out_dir / "clip.mp4"))
            self.assertEqual(Path(store.last_output_dir()), out_dir.resolve())

            # a remembered folder that has since vanished is ignored
            store.save({"last_output_dir": str(root / "gone")})
            self.assertEqual(store.last_output_dir(), "")


if __name__ == "__main__":
    unittest.main()
