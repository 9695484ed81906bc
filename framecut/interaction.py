from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Tuple

from .geometry import (
    HANDLES,
    MIN_SELECTION_PX,
    apply_resize,
    build_rect_from_points,
    clamp_number,
    clamp_rect,
    min_size_ratio,
    move_rect,
)
from .model import NormalizedRect, Size

IDLE = "idle"
CREATING = "creating"
MOVING = "moving"
RESIZING = "resizing"

Point = Tuple[float, float]


@dataclass(frozen=True)
class _Gesture:
    kind: str  # creating | moving | resizing
    origin: Point
    initial_rect: Optional[NormalizedRect] = None
    handle: Optional[str] = None


def hit_test(
    rect: Optional[NormalizedRect],
    point: Point,
    surface: Size,
    tolerance_px: float = 8.0,
) -> Optional[str]:
    """
    Classify a pointer position against a rect drawn on `surface`.

    Returns:
        a handle name, "body" when inside the rect, or None for empty space.
    """
    if rect is None:
        return None
    px, py = point
    if not (math.isfinite(px) and math.isfinite(py)):
        return None
    sw = float(surface.width or 1)
    sh = float(surface.height or 1)
    left = rect.x * sw
    top = rect.y * sh
    right = (rect.x + rect.width) * sw
    bottom = (rect.y + rect.height) * sh
    mid_x = (left + right) / 2.0
    mid_y = (top + bottom) / 2.0

    anchors = {
        "top-left": (left, top),
        "top": (mid_x, top),
        "top-right": (right, top),
        "right": (right, mid_y),
        "bottom-right": (right, bottom),
        "bottom": (mid_x, bottom),
        "bottom-left": (left, bottom),
        "left": (left, mid_y),
    }
    for name in HANDLES:
        ax, ay = anchors[name]
        if abs(px - ax) <= tolerance_px and abs(py - ay) <= tolerance_px:
            return name

    if left <= px <= right and top <= py <= bottom:
        return "body"
    return None


class RectInteraction:
    """
    Pointer gesture state machine producing a validated NormalizedRect.

    idle -> creating|moving|resizing -> idle. Exactly one gesture is tracked at
    a time; pointer_up() and cancel() always end it.
    """

    def __init__(
        self,
        surface: Size,
        rect: Optional[NormalizedRect] = None,
        min_px: float = MIN_SELECTION_PX,
        allowed_handles: Tuple[str, ...] = HANDLES,
    ) -> None:
        self.surface = surface
        self.min_px = float(min_px)
        self.allowed_handles = tuple(allowed_handles)
        self._gesture: Optional[_Gesture] = None
        self.rect: Optional[NormalizedRect] = None
        if rect is not None:
            self.rect = clamp_rect(rect, *self.min_size())

    @property
    def state(self) -> str:
        return self._gesture.kind if self._gesture else IDLE

    def min_size(self) -> Tuple[float, float]:
        return min_size_ratio(self.min_px, self.surface)

    def resize_surface(self, surface: Size) -> None:
        """The surface changed size (e.g. layout); re-validate the current rect."""
        self.surface = surface
        if self.rect is not None:
            self.rect = clamp_rect(self.rect, *self.min_size())

    def pointer_down(self, point: Point, handle: Optional[str] = None, on_rect: Optional[bool] = None) -> str:
        """
        Begin a gesture.

        `handle`/`on_rect` come from the caller's own hit-testing (e.g. the
        element under the pointer); when both are omitted hit_test() decides.
        A non-finite point starts nothing and leaves the rect as it was.
        """
        point = self._sanitize(point, fallback=(math.nan, math.nan))
        if not (math.isfinite(point[0]) and math.isfinite(point[1])):
            return self.state
        if handle is None and on_rect is None:
            hit = hit_test(self.rect, point, self.surface)
            if hit == "body":
                on_rect = True
            elif hit is not None:
                handle = hit

        if handle is not None and handle not in self.allowed_handles:
            handle = None

        if handle and self.rect is not None:
            self._gesture = _Gesture(RESIZING, point, self.rect, handle)
        elif on_rect and self.rect is not None:
            self._gesture = _Gesture(MOVING, point, self.rect)
        else:
            self._gesture = _Gesture(CREATING, point)
            # Anchored at the down point; minimum size until the first move.
            self.rect = build_rect_from_points(point, point, self.surface, *self.min_size())
        return self.state

    def pointer_move(self, point: Point) -> Optional[NormalizedRect]:
        g = self._gesture
        if g is None:
            return self.rect

        # Non-finite input behaves like "no movement since pointer_down".
        point = self._sanitize(point, fallback=g.origin)
        sw = float(self.surface.width or 1)
        sh = float(self.surface.height or 1)
        point = (clamp_number(point[0], 0.0, sw), clamp_number(point[1], 0.0, sh))
        min_w, min_h = self.min_size()

        if g.kind == CREATING:
            self.rect = build_rect_from_points(g.origin, point, self.surface, min_w, min_h)
            return self.rect

        dx = (point[0] - g.origin[0]) / sw
        dy = (point[1] - g.origin[1]) / sh
        if g.kind == MOVING:
            self.rect = move_rect(g.initial_rect, dx, dy, min_w, min_h)
        else:
            self.rect = apply_resize(g.initial_rect, g.handle, dx, dy, min_w, min_h)
        return self.rect

    def pointer_up(self) -> Optional[NormalizedRect]:
        self._gesture = None
        return self.rect

    cancel = pointer_up

    def clear(self) -> None:
        self._gesture = None
        self.rect = None

    @staticmethod
    def _sanitize(point: Point, fallback: Point) -> Point:
        try:
            x, y = float(point[0]), float(point[1])
        except (TypeError, ValueError, IndexError):
            return fallback
        if not math.isfinite(x):
            x = fallback[0]
        if not math.isfinite(y):
            y = fallback[1]
        return x, y
