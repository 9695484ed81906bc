"""
Per-frame pixel transforms.

Every transform has the signature (frame, source_rect, target_size) -> frame
where frame is an RGB uint8 array (H, W, 3), source_rect selects the part of
the frame to use and the result is exactly target_size. Transforms are pure.
"""

from __future__ import annotations

from typing import Callable, Optional

import numpy as np
from PIL import Image

from .geometry import clamp_number, fit_inside, placement_box
from .model import FULL_FRAME, NormalizedRect, Size

FrameTransform = Callable[[np.ndarray, NormalizedRect, Size], np.ndarray]

LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114], dtype=np.float32)


def frame_size(frame: np.ndarray) -> Size:
    return Size(int(frame.shape[1]), int(frame.shape[0]))


def region(frame: np.ndarray, rect: NormalizedRect) -> np.ndarray:
    """Pixel region of `frame` covered by a normalized rect (at least 1x1)."""
    h, w = frame.shape[:2]
    x0 = int(clamp_number(round(rect.x * w), 0, w - 1))
    y0 = int(clamp_number(round(rect.y * h), 0, h - 1))
    x1 = int(clamp_number(round((rect.x + rect.width) * w), x0 + 1, w))
    y1 = int(clamp_number(round((rect.y + rect.height) * h), y0 + 1, h))
    return frame[y0:y1, x0:x1]


def scale(frame: np.ndarray, size: Size) -> np.ndarray:
    if frame.shape[1] == size.width and frame.shape[0] == size.height:
        return frame
    img = Image.fromarray(np.ascontiguousarray(frame))
    return np.asarray(img.resize((size.width, size.height), Image.BILINEAR), dtype=np.uint8)


def draw(frame: np.ndarray, source_rect: NormalizedRect = FULL_FRAME, target_size: Optional[Size] = None) -> np.ndarray:
    """Copy `source_rect` of the frame into a target_size frame (plain scale)."""
    src = frame if source_rect == FULL_FRAME else region(frame, source_rect)
    if target_size is None:
        return np.ascontiguousarray(src)
    return scale(src, target_size)


def grayscale(frame: np.ndarray, source_rect: NormalizedRect = FULL_FRAME, target_size: Optional[Size] = None) -> np.ndarray:
    rgb = draw(frame, source_rect, target_size).astype(np.float32)
    luma = np.clip(rgb @ LUMA_WEIGHTS, 0.0, 255.0)
    gray = luma.astype(np.uint8)
    return np.repeat(gray[:, :, np.newaxis], 3, axis=2)


class Watermark:
    """Alpha-composite an RGBA image over each frame at a normalized rect."""

    def __init__(self, image: Image.Image, rect: NormalizedRect, opacity: float = 1.0) -> None:
        self.image = image.convert("RGBA")
        self.rect = rect
        self.opacity = float(clamp_number(opacity, 0.0, 1.0))
        self._cache_key = None
        self._cache = None

    def _overlay(self, size: Size):
        key = (size.width, size.height)
        if self._cache_key != key:
            x, y, w, h = placement_box(self.rect, size)
            mark = np.asarray(self.image.resize((w, h), Image.BILINEAR), dtype=np.float32)
            alpha = (mark[:, :, 3:4] / 255.0) * self.opacity
            self._cache = (x, y, w, h, mark[:, :, :3], alpha)
            self._cache_key = key
        return self._cache

    def __call__(self, frame: np.ndarray, source_rect: NormalizedRect = FULL_FRAME, target_size: Optional[Size] = None) -> np.ndarray:
        out = np.array(draw(frame, source_rect, target_size), dtype=np.uint8, copy=True)
        x, y, w, h, rgb, alpha = self._overlay(frame_size(out))
        base = out[y : y + h, x : x + w].astype(np.float32)
        out[y : y + h, x : x + w] = np.clip(rgb * alpha + base * (1.0 - alpha), 0, 255).astype(np.uint8)
        return out


def letterbox(image: Image.Image, size: Size) -> np.ndarray:
    """Fit an image inside `size` on black, preserving aspect ratio."""
    rgb = image.convert("RGB")
    dx, dy, w, h = fit_inside(Size(rgb.width, rgb.height), size)
    canvas = Image.new("RGB", (size.width, size.height), (0, 0, 0))
    canvas.paste(rgb.resize((w, h), Image.BILINEAR), (dx, dy))
    return np.asarray(canvas, dtype=np.uint8)
