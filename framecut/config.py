from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict

from .job_io import write_json_atomic
from .model import EncodeSettings


def _clamp_int(raw: Any, default: int, lo: int, hi: int) -> int:
    try:
        v = int(raw)
    except Exception:
        v = default
    return max(lo, min(hi, v))


class ConfigStore:
    """
    Simple JSON config store.

    Default location: ~/.framecut/config.json
    """

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = Path(root_dir)
        self.path = self.root_dir / "config.json"

    @staticmethod
    def default() -> "ConfigStore":
        return ConfigStore(Path.home() / ".framecut")

    def load(self) -> Dict[str, Any]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                return {**self.default_config(), **data}
        except FileNotFoundError:
            return self.default_config()
        except Exception:
            # Corrupted file; fall back to defaults.
            return self.default_config()
        return self.default_config()

    def save(self, data: Dict[str, Any]) -> None:
        write_json_atomic(self.path, data)

    def default_config(self) -> Dict[str, Any]:
        return {
            "video_codec": "avc",
            "video_bitrate": 4_000_000,
            "frame_rate": 30,
            "audio_codec": "aac",
            "audio_bitrate": 192_000,
            "progress_ceiling": 90,
            "last_output_dir": "",
        }

    def frame_rate(self) -> int:
        return _clamp_int(self.load().get("frame_rate", 30), 30, 1, 120)

    def video_bitrate(self) -> int:
        return _clamp_int(self.load().get("video_bitrate", 4_000_000), 4_000_000, 100_000, 100_000_000)

    def audio_bitrate(self) -> int:
        return _clamp_int(self.load().get("audio_bitrate", 192_000), 192_000, 32_000, 512_000)

    def progress_ceiling(self) -> int:
        return _clamp_int(self.load().get("progress_ceiling", 90), 90, 50, 99)

    def encode_settings(self) -> EncodeSettings:
        cfg = self.load()
        return EncodeSettings(
            video_codec=str(cfg.get("video_codec") or "avc"),
            video_bitrate=self.video_bitrate(),
            frame_rate=self.frame_rate(),
            audio_codec=str(cfg.get("audio_codec") or "aac"),
            audio_bitrate=self.audio_bitrate(),
        )

    def last_output_dir(self) -> str:
        raw = str(self.load().get("last_output_dir", "") or "").strip()
        if not raw:
            return ""
        try:
            p = Path(raw)
            return str(p) if p.is_dir() else ""
        except Exception:
            return ""

    def set_last_output_dir(self, path: str) -> None:
        """Remember the directory of an output file (or the directory itself)."""
        p = Path(str(path or "").strip())
        if not str(p):
            return
        folder = p if p.is_dir() else p.parent
        try:
            folder = folder.resolve()
        except Exception:
            pass
        cfg = self.load()
        cfg["last_output_dir"] = str(folder)
        self.save(cfg)
