from __future__ import annotations

import math
from typing import Tuple

from .errors import TooSmallRegion
from .model import NormalizedRect, PixelRect, Size

MIN_SELECTION_PX = 32
MIN_ENCODABLE_PX = 2

HANDLES = (
    "top-left",
    "top",
    "top-right",
    "right",
    "bottom-right",
    "bottom",
    "bottom-left",
    "left",
)

_LEFT = ("left", "top-left", "bottom-left")
_RIGHT = ("right", "top-right", "bottom-right")
_TOP = ("top", "top-left", "top-right")
_BOTTOM = ("bottom", "bottom-left", "bottom-right")


def clamp_number(value: float, lo: float, hi: float) -> float:
    """Clamp with NaN -> lo and an inverted range collapsing to lo."""
    if value is None or math.isnan(value):
        return lo
    if lo > hi:
        return lo
    return min(max(value, lo), hi)


def min_size_ratio(min_px: float, surface: Size) -> Tuple[float, float]:
    """Minimum normalized (width, height) for a pixel minimum on a surface."""
    w = surface.width or 1
    h = surface.height or 1
    return min(min_px / w, 1.0), min(min_px / h, 1.0)


def clamp_rect(rect: NormalizedRect, min_width: float, min_height: float) -> NormalizedRect:
    """
    Force a rect inside [0,1]x[0,1] with at least the given minimum size.

    Size is enforced first; position is then pulled back so the far edge
    never crosses 1.
    """
    width = max(_finite(rect.width, min_width), min_width)
    height = max(_finite(rect.height, min_height), min_height)
    width = clamp_number(width, min_width, 1.0)
    height = clamp_number(height, min_height, 1.0)

    x = clamp_number(_finite(rect.x, 0.0), 0.0, 1.0 - width)
    y = clamp_number(_finite(rect.y, 0.0), 0.0, 1.0 - height)
    return NormalizedRect(x=x, y=y, width=width, height=height)


def build_rect_from_points(
    start: Tuple[float, float],
    current: Tuple[float, float],
    surface: Size,
    min_width: float,
    min_height: float,
) -> NormalizedRect:
    """
    Rect spanned by a drag from `start` to `current` (pixel coordinates).

    When the drag is smaller than the minimum, the rect grows away from the
    anchor in the drag direction.
    """
    sw = float(surface.width or 1)
    sh = float(surface.height or 1)
    sx = clamp_number(start[0], 0.0, sw)
    sy = clamp_number(start[1], 0.0, sh)
    cx = clamp_number(current[0], 0.0, sw)
    cy = clamp_number(current[1], 0.0, sh)

    left, right = min(sx, cx), max(sx, cx)
    top, bottom = min(sy, cy), max(sy, cy)

    min_w_px = min_width * sw
    min_h_px = min_height * sh

    if right - left < min_w_px:
        if sx <= cx:
            right = clamp_number(left + min_w_px, 0.0, sw)
        else:
            left = clamp_number(right - min_w_px, 0.0, sw)

    if bottom - top < min_h_px:
        if sy <= cy:
            bottom = clamp_number(top + min_h_px, 0.0, sh)
        else:
            top = clamp_number(bottom - min_h_px, 0.0, sh)

    normalized = NormalizedRect(
        x=left / sw,
        y=top / sh,
        width=(right - left) / sw,
        height=(bottom - top) / sh,
    )
    return clamp_rect(normalized, min_width, min_height)


def move_rect(initial: NormalizedRect, dx: float, dy: float, min_width: float, min_height: float) -> NormalizedRect:
    moved = NormalizedRect(
        x=initial.x + _finite(dx, 0.0),
        y=initial.y + _finite(dy, 0.0),
        width=initial.width,
        height=initial.height,
    )
    return clamp_rect(moved, min_width, min_height)


def apply_resize(
    initial: NormalizedRect,
    handle: str,
    dx: float,
    dy: float,
    min_width: float,
    min_height: float,
) -> NormalizedRect:
    """
    Resize `initial` by dragging `handle` by (dx, dy) normalized units.

    The edge opposite to each dragged edge stays fixed.
    """
    if handle not in HANDLES:
        raise ValueError(f"Unknown resize handle: {handle!r}")
    dx = _finite(dx, 0.0)
    dy = _finite(dy, 0.0)

    x, y, width, height = initial.x, initial.y, initial.width, initial.height

    if handle in _LEFT:
        max_x = initial.x + initial.width - min_width
        next_x = clamp_number(initial.x + dx, 0.0, max_x)
        width = width + (x - next_x)
        x = next_x

    if handle in _RIGHT:
        width = clamp_number(width + dx, min_width, 1.0 - x)

    if handle in _TOP:
        max_y = initial.y + initial.height - min_height
        next_y = clamp_number(initial.y + dy, 0.0, max_y)
        height = height + (y - next_y)
        y = next_y

    if handle in _BOTTOM:
        height = clamp_number(height + dy, min_height, 1.0 - y)

    return clamp_rect(NormalizedRect(x=x, y=y, width=width, height=height), min_width, min_height)


def round_half_up(value: float) -> int:
    """Nearest integer with halves going up (4.5 -> 5, -4.5 -> -4)."""
    return int(math.floor(float(value) + 0.5))


def ensure_even(value: float) -> int:
    """Round to an integer >= 2; odd results step down (1281 -> 1280)."""
    nxt = max(MIN_ENCODABLE_PX, round_half_up(_finite(value, MIN_ENCODABLE_PX)))
    if nxt % 2 != 0:
        nxt = nxt - 1 if nxt > MIN_ENCODABLE_PX else MIN_ENCODABLE_PX
    return nxt


def ensure_even_within_bounds(value: float, max_value: float) -> int:
    """
    Even integer >= 2 no larger than `max_value`.

    Raises:
        TooSmallRegion: the available bounds cannot hold 2 pixels.
    """
    max_int = int(math.floor(_finite(max_value, 0.0)))
    if max_int < MIN_ENCODABLE_PX:
        raise TooSmallRegion("Selected region is too small to encode.")

    nxt = max(MIN_ENCODABLE_PX, round_half_up(_finite(value, MIN_ENCODABLE_PX)))
    if nxt > max_int:
        nxt = max_int
    if nxt % 2 != 0:
        nxt = nxt + 1 if nxt < max_int else nxt - 1
    if nxt > max_int:
        nxt = max_int - (max_int % 2)
    if nxt < MIN_ENCODABLE_PX:
        raise TooSmallRegion("Selected region is too small to encode.")
    return nxt


def even_size(width: float, height: float) -> Size:
    return Size(ensure_even(width), ensure_even(height))


def crop_box(rect: PixelRect, frame: Size, desired: Size) -> Tuple[int, int, int, int]:
    """
    Integer crop box (x, y, w, h) for a pixel selection on a frame.

    The offset is clamped inside the frame and the size to even values that
    still fit between the offset and the frame edge.
    """
    sx = int(clamp_number(round_half_up(rect.x), 0, max(0, frame.width - 1)))
    sy = int(clamp_number(round_half_up(rect.y), 0, max(0, frame.height - 1)))
    w = ensure_even_within_bounds(desired.width, frame.width - sx)
    h = ensure_even_within_bounds(desired.height, frame.height - sy)
    return sx, sy, w, h


def placement_box(rect: NormalizedRect, frame: Size) -> Tuple[int, int, int, int]:
    """Pixel box (x, y, w, h) of a normalized overlay rect, kept inside the frame."""
    w = int(clamp_number(round_half_up(rect.width * frame.width), 1, frame.width))
    h = int(clamp_number(round_half_up(rect.height * frame.height), 1, frame.height))
    x = int(clamp_number(round_half_up(rect.x * frame.width), 0, frame.width - w))
    y = int(clamp_number(round_half_up(rect.y * frame.height), 0, frame.height - h))
    return x, y, w, h


def fit_inside(source: Size, target: Size) -> Tuple[int, int, int, int]:
    """Letterbox placement (dx, dy, w, h) of `source` scaled to fit `target`."""
    src_ratio = source.width / float(source.height or 1)
    dst_ratio = target.width / float(target.height or 1)
    w, h = target.width, target.height
    if src_ratio > dst_ratio:
        h = round_half_up(target.width / src_ratio)
    else:
        w = round_half_up(target.height * src_ratio)
    w = max(1, w)
    h = max(1, h)
    return (target.width - w) // 2, (target.height - h) // 2, w, h


def _finite(value: float, default: float) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        return default
    return v if math.isfinite(v) else default
