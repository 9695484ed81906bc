from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import math
import uuid

MIN_CLIP_SPEED = 0.25
MAX_CLIP_SPEED = 4.0


def new_id() -> str:
    """Generate a stable unique id for clip list operations."""
    return uuid.uuid4().hex


def normalize_speed(value: Any, default: float = 1.0) -> float:
    try:
        v = float(value)
    except Exception:
        return default
    if not math.isfinite(v) or v <= 0.0:
        return default
    return max(MIN_CLIP_SPEED, min(MAX_CLIP_SPEED, v))


@dataclass(frozen=True)
class Size:
    width: int
    height: int

    def __str__(self) -> str:
        return f"{self.width}x{self.height}"


@dataclass(frozen=True)
class NormalizedRect:
    """
    Rectangle in [0,1] coordinates relative to a reference frame size.

    Validation (min size, bounds) lives in geometry.clamp_rect; this type only
    carries the four numbers.
    """

    x: float
    y: float
    width: float
    height: float

    def to_pixels(self, size: Size) -> "PixelRect":
        return PixelRect(
            x=self.x * size.width,
            y=self.y * size.height,
            width=self.width * size.width,
            height=self.height * size.height,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "NormalizedRect":
        return NormalizedRect(
            x=float(d.get("x", 0.0) or 0.0),
            y=float(d.get("y", 0.0) or 0.0),
            width=float(d.get("width", 1.0) or 0.0),
            height=float(d.get("height", 1.0) or 0.0),
        )


FULL_FRAME = NormalizedRect(0.0, 0.0, 1.0, 1.0)


@dataclass(frozen=True)
class PixelRect:
    x: float
    y: float
    width: float
    height: float


@dataclass(frozen=True)
class CustomBitrate:
    bits_per_second: int


class Quality(Enum):
    """
    Named quality levels. Together with CustomBitrate this is the closed set of
    quality choices; it is resolved to a concrete bitrate once, before a job
    starts (see encoding.resolve_video_bitrate).
    """

    VERY_LOW = "very_low"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERY_HIGH = "very_high"


QualityValue = Union[Quality, CustomBitrate]


def parse_quality(raw: Any) -> QualityValue:
    """Accept a level name, a CustomBitrate, or a plain integer bitrate."""
    if isinstance(raw, (Quality, CustomBitrate)):
        return raw
    if isinstance(raw, int) and not isinstance(raw, bool):
        if raw <= 0:
            raise ValueError(f"Bitrate must be positive: {raw}")
        return CustomBitrate(int(raw))
    key = str(raw or "").strip().lower().replace("-", "_").replace(" ", "_")
    for q in Quality:
        if q.value == key:
            return q
    raise ValueError(f"Unknown quality: {raw!r}")


@dataclass
class EncodeSettings:
    """
    Output encoding settings shared by every tool.

    Codec names are engine-neutral ("avc", "aac", ...); the engine maps them to
    concrete encoders.
    """

    video_codec: str = "avc"
    video_bitrate: int = 4_000_000
    frame_rate: int = 30
    audio_codec: str = "aac"
    audio_bitrate: int = 192_000
    container: str = "mp4"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "EncodeSettings":
        if not isinstance(d, dict):
            return EncodeSettings()
        out = EncodeSettings()
        out.video_codec = str(d.get("video_codec", out.video_codec) or out.video_codec)
        try:
            out.video_bitrate = max(1, int(d.get("video_bitrate", out.video_bitrate)))
        except Exception:
            out.video_bitrate = 4_000_000
        try:
            out.frame_rate = max(1, int(d.get("frame_rate", out.frame_rate)))
        except Exception:
            out.frame_rate = 30
        out.audio_codec = str(d.get("audio_codec", out.audio_codec) or out.audio_codec)
        try:
            out.audio_bitrate = max(1, int(d.get("audio_bitrate", out.audio_bitrate)))
        except Exception:
            out.audio_bitrate = 192_000
        out.container = str(d.get("container", out.container) or out.container)
        return out


@dataclass
class Clip:
    """
    One source in an ordered composition.

    Attributes:
        src: path to media file (used by job files and the CLI)
        in_sec/out_sec: optional source range; None means the whole track
        speed: playback multiplier applied by the normalizer
    """

    id: str
    src: str
    in_sec: Optional[float] = None
    out_sec: Optional[float] = None
    speed: float = 1.0

    @property
    def name(self) -> str:
        return Path(self.src).name

    @property
    def dur(self) -> float:
        """Timeline length in seconds; 0 while out_sec is unknown."""
        if self.out_sec is None:
            return 0.0
        return max(0.0, (self.out_sec - (self.in_sec or 0.0)) / self.speed)

    @property
    def trimmed(self) -> bool:
        return self.in_sec is not None or self.out_sec is not None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Clip":
        def _opt(key: str) -> Optional[float]:
            raw = d.get(key, None)
            if raw is None or raw == "":
                return None
            return max(0.0, float(raw))

        return Clip(
            id=str(d.get("id") or new_id()),
            src=str(d["src"]),
            in_sec=_opt("in_sec"),
            out_sec=_opt("out_sec"),
            speed=normalize_speed(d.get("speed", 1.0)),
        )


@dataclass
class Job:
    """A merge job: ordered clips plus output encoding settings."""

    clips: List[Clip] = field(default_factory=list)
    settings: EncodeSettings = field(default_factory=EncodeSettings)
    output: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "clips": [c.to_dict() for c in self.clips],
            "settings": self.settings.to_dict(),
            "output": self.output,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Job":
        raw = d.get("clips", [])
        clips = [Clip.from_dict(x) for x in raw if isinstance(x, dict)] if isinstance(raw, list) else []
        return Job(
            clips=clips,
            settings=EncodeSettings.from_dict(d.get("settings", {})),
            output=str(d.get("output", "") or ""),
        )
