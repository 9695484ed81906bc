from __future__ import annotations

from dataclasses import replace
from typing import List, Optional, Tuple

from .model import Clip, new_id, normalize_speed

MIN_TRIM_SEC = 0.05


def _index_of(clips: List[Clip], clip_id: str) -> int:
    return next((i for i, c in enumerate(clips) if c.id == clip_id), -1)


def _place_before(clips: List[Clip], item: Clip, target_id: str) -> List[Clip]:
    # unknown target: append
    at = _index_of(clips, target_id)
    if at < 0:
        return [*clips, item]
    return [*clips[:at], item, *clips[at:]]


def add_clip_end(clips: List[Clip], src: str, duration: float) -> List[Clip]:
    """Append a full-length clip to the end of the merge list."""
    return _place_before(clips, Clip(id=new_id(), src=src, in_sec=0.0, out_sec=float(duration)), "")


def insert_clip_before(clips: List[Clip], before_clip_id: str, src: str, duration: float) -> List[Clip]:
    """Insert a full-length clip before another clip by id (end if not found)."""
    return _place_before(clips, Clip(id=new_id(), src=src, in_sec=0.0, out_sec=float(duration)), before_clip_id)


def find_clip(clips: List[Clip], clip_id: str) -> Optional[Clip]:
    at = _index_of(clips, clip_id)
    return clips[at] if at >= 0 else None


def move_clip_before(clips: List[Clip], moving_id: str, target_id: str) -> List[Clip]:
    """Move clip `moving_id` to be placed before `target_id` (end if not found)."""
    at = _index_of(clips, moving_id)
    if at < 0 or moving_id == target_id:
        return clips
    rest = [*clips[:at], *clips[at + 1 :]]
    return _place_before(rest, clips[at], target_id)


def remove_clip(clips: List[Clip], clip_id: str) -> List[Clip]:
    return [c for c in clips if c.id != clip_id]


def set_clip_speed(clips: List[Clip], clip_id: str, speed: float) -> List[Clip]:
    """Change one clip's speed (clamped to the supported range)."""
    return [replace(c, speed=normalize_speed(speed, default=c.speed)) if c.id == clip_id else c for c in clips]


def trim_clip(clips: List[Clip], clip_id: str, in_sec: float, out_sec: float) -> Tuple[List[Clip], str]:
    """
    Set the source range of one clip.

    The range must be at least MIN_TRIM_SEC long; the clip list is returned
    unchanged on failure.

    Returns:
        (new_clips, message)
    """
    at = _index_of(clips, clip_id)
    if at < 0:
        return clips, "Trim failed: clip not found"
    ok, msg = validate_cut_range(in_sec, out_sec, 0.0)
    if not ok:
        return clips, f"Trim failed: {msg}"
    if float(out_sec) - float(in_sec) < MIN_TRIM_SEC:
        return clips, f"Trim failed: range shorter than {MIN_TRIM_SEC}s"
    trimmed = replace(clips[at], in_sec=float(in_sec), out_sec=float(out_sec))
    return [*clips[:at], trimmed, *clips[at + 1 :]], "Trimmed"


def total_duration(clips: List[Clip]) -> float:
    """Composed length: clips are concatenated back to back with no overlap."""
    return max(0.0, sum(c.dur for c in clips))


def validate_cut_range(start: float, end: float, duration: float) -> Tuple[bool, str]:
    """
    Check a [start, end) cut against a source duration.

    A duration of 0 means unknown; only the ordering is checked then.

    Returns:
        (ok, message)
    """
    try:
        s = float(start)
        e = float(end)
        d = float(duration)
    except (TypeError, ValueError):
        return False, "Cut range must be numeric"
    if s != s or e != e:
        return False, "Cut range must be numeric"
    if s < 0.0:
        return False, "Start must be >= 0"
    if e <= s:
        return False, "End must be after start"
    if d > 0.0 and e > d + 1e-6:
        return False, f"End is past the end of the video ({d:.2f}s)"
    return True, "OK"
