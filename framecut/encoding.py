from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from .engine import MediaEngine, first_encodable
from .model import CustomBitrate, Quality, QualityValue, Size

log = logging.getLogger(__name__)

# engine-neutral codec names, in preference order
VIDEO_CODEC_CANDIDATES: List[str] = ["avc", "hevc", "vp9", "av1"]
AUDIO_CODEC_CANDIDATES: List[str] = ["aac", "opus", "mp3"]
WAV_CODEC_CANDIDATES: List[str] = ["pcm-s16", "pcm-s24", "pcm-s32", "pcm-f32", "pcm-u8", "pcm-s8"]

# (container, codec, bitrate) tried in order for audio-only blends
BLEND_CANDIDATES: List[Tuple[str, str, Optional[int]]] = [
    ("mp3", "mp3", 192_000),
    ("wav", "pcm-s16", None),
]

QUALITY_FACTORS = {
    Quality.VERY_LOW: 0.3,
    Quality.LOW: 0.6,
    Quality.MEDIUM: 1.0,
    Quality.HIGH: 2.0,
    Quality.VERY_HIGH: 4.0,
}

# bits per second for avc at 1080p30, medium quality
REFERENCE_BITRATE = 3_000_000
REFERENCE_PIXELS = 1920 * 1080
REFERENCE_FRAME_RATE = 30.0

# relative bitrate needed for the same perceived quality
CODEC_EFFICIENCY = {
    "avc": 1.0,
    "hevc": 0.6,
    "vp9": 0.6,
    "av1": 0.4,
    "vp8": 1.2,
}

MIN_VIDEO_BITRATE = 100_000
COMPRESS_AUDIO_BITRATE = 128_000
SOUNDTRACK_BITRATE = 192_000


def resolve_video_bitrate(
    quality: QualityValue,
    size: Size,
    frame_rate: float = 30.0,
    codec: str = "avc",
) -> int:
    """
    Concrete bitrate for a quality choice.

    CustomBitrate is returned as-is; named levels scale a 1080p30 reference by
    pixel count (slightly sub-linear), frame rate and codec efficiency.
    """
    if isinstance(quality, CustomBitrate):
        if quality.bits_per_second <= 0:
            raise ValueError(f"Bitrate must be positive: {quality.bits_per_second}")
        return int(quality.bits_per_second)

    factor = QUALITY_FACTORS[quality]
    pixels = max(1, size.width * size.height)
    scale = (pixels / REFERENCE_PIXELS) ** 0.95
    fps = max(1.0, float(frame_rate or REFERENCE_FRAME_RATE)) / REFERENCE_FRAME_RATE
    eff = CODEC_EFFICIENCY.get(codec, 1.0)
    bitrate = REFERENCE_BITRATE * factor * scale * fps * eff
    return max(MIN_VIDEO_BITRATE, int(round(bitrate)))


def pick_video_codec(engine: MediaEngine, preferred: str = "avc", **params) -> str:
    candidates = [preferred] + [c for c in VIDEO_CODEC_CANDIDATES if c != preferred]
    return first_encodable(engine, candidates, **params)


def pick_soundtrack_codec(engine: MediaEngine, **params) -> str:
    """aac, then mp3, then any other lossy codec the engine has."""
    preferred = ["aac", "mp3"]
    candidates = preferred + [c for c in AUDIO_CODEC_CANDIDATES if c not in preferred]
    return first_encodable(engine, candidates, **params)


def pick_wav_codec(engine: MediaEngine, **params) -> str:
    return first_encodable(engine, WAV_CODEC_CANDIDATES, fallback="pcm-s16", **params)


def pick_blend_format(engine: MediaEngine, **params) -> Tuple[str, str, Optional[int]]:
    """First (container, codec, bitrate) of BLEND_CANDIDATES the engine can encode; WAV otherwise."""
    for container, codec, bitrate in BLEND_CANDIDATES:
        try:
            if engine.can_encode(codec, bitrate=bitrate, **params):
                return container, codec, bitrate
        except Exception as ex:
            log.debug("encode probe failed for %s: %s", codec, ex)
    return BLEND_CANDIDATES[-1]
