from __future__ import annotations

from contextlib import closing
from typing import Iterator, List, Optional

import numpy as np

from .engine import MediaEngine
from .errors import DecodeFailure, FramecutError, IncompatibleFormat


class PCMBuffer:
    """
    Decoded audio held per channel.

    data: float32 array shaped (channels, length).
    """

    def __init__(self, data: np.ndarray, sample_rate: int) -> None:
        arr = np.asarray(data, dtype=np.float32)
        if arr.ndim == 1:
            arr = arr[np.newaxis, :]
        if arr.ndim != 2 or arr.shape[0] < 1:
            raise ValueError(f"PCM data must be (channels, frames), got shape {arr.shape}")
        if int(sample_rate) <= 0:
            raise ValueError(f"Invalid sample rate: {sample_rate}")
        self.data = arr
        self.sample_rate = int(sample_rate)

    @property
    def channels(self) -> int:
        return int(self.data.shape[0])

    @property
    def length(self) -> int:
        return int(self.data.shape[1])

    @property
    def duration(self) -> float:
        return self.length / float(self.sample_rate)

    def channel(self, index: int) -> np.ndarray:
        return self.data[index]

    def peak(self) -> float:
        if self.length == 0:
            return 0.0
        return float(np.max(np.abs(self.data)))

    def chunks(self, frames: int = 4096) -> Iterator["PCMBuffer"]:
        """Consecutive views of at most `frames` frames each."""
        step = max(1, int(frames))
        for start in range(0, self.length, step):
            yield PCMBuffer(self.data[:, start : start + step], self.sample_rate)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PCMBuffer):
            return NotImplemented
        return self.sample_rate == other.sample_rate and np.array_equal(self.data, other.data)

    def __repr__(self) -> str:
        return f"PCMBuffer(channels={self.channels}, length={self.length}, sample_rate={self.sample_rate})"


def silence(seconds: float, sample_rate: int, channels: int = 2) -> PCMBuffer:
    n = max(0, int(round(float(seconds) * sample_rate)))
    return PCMBuffer(np.zeros((max(1, int(channels)), n), dtype=np.float32), sample_rate)


def decode(engine: MediaEngine, data: bytes, name: str = "", sample_rate: Optional[int] = None) -> PCMBuffer:
    """
    Decode the first audio track of a file into one PCMBuffer.

    With `sample_rate` set, the result is resampled to that rate.

    Raises:
        DecodeFailure: unsupported container/codec, or no audio track.
    """
    try:
        source = engine.open_input(data, name=name)
    except FramecutError as ex:
        raise DecodeFailure(f"Unable to decode audio from {name or 'input'}: {ex}") from ex

    with source:
        track = source.primary_audio()
        if track is None:
            raise DecodeFailure(f"{name or 'Input'} has no audio track.")

        parts: List[np.ndarray] = []
        rate = track.sample_rate
        try:
            with closing(track.samples()) as it:
                for sample in it:
                    try:
                        parts.append(np.array(sample.pcm, dtype=np.float32, copy=True))
                        rate = sample.sample_rate
                    finally:
                        sample.close()
        except FramecutError as ex:
            raise DecodeFailure(f"Unable to decode audio from {name or 'input'}: {ex}") from ex

    if not parts:
        buffer = PCMBuffer(np.zeros((max(1, track.channels), 0), dtype=np.float32), rate)
    else:
        width = max(p.shape[0] for p in parts)
        parts = [p if p.shape[0] == width else _widen(p, width) for p in parts]
        buffer = PCMBuffer(np.concatenate(parts, axis=1), rate)
    if sample_rate is not None:
        buffer = resample(buffer, sample_rate)
    return buffer


def stretch(pcm: np.ndarray, frames: int) -> np.ndarray:
    """Linearly interpolate every channel of `pcm` to exactly `frames` frames."""
    pcm = np.asarray(pcm, dtype=np.float32)
    n = pcm.shape[1]
    frames = max(0, int(frames))
    if frames == n:
        return pcm
    out = np.zeros((pcm.shape[0], frames), dtype=np.float32)
    if n == 0 or frames == 0:
        return out
    if n == 1:
        out[:] = pcm[:, :1]
        return out
    # sample positions in source frames, endpoints aligned
    at = np.linspace(0.0, n - 1, frames)
    src = np.arange(n, dtype=np.float64)
    for ch in range(pcm.shape[0]):
        out[ch] = np.interp(at, src, pcm[ch])
    return out


def resample(buffer: PCMBuffer, sample_rate: int) -> PCMBuffer:
    """Same audio at another rate; the duration is kept to the nearest frame."""
    rate = int(sample_rate)
    if rate <= 0:
        raise ValueError(f"Invalid sample rate: {sample_rate}")
    if rate == buffer.sample_rate:
        return buffer
    frames = int(round(buffer.length * rate / float(buffer.sample_rate)))
    return PCMBuffer(stretch(buffer.data, frames), rate)


def match_duration(buffer: PCMBuffer, target_seconds: float) -> PCMBuffer:
    """
    Truncate or silence-pad `buffer` to `target_seconds`. Never resamples.

    Returns the same object when the length already matches.
    """
    target_length = max(1, int(round(buffer.sample_rate * float(target_seconds))))
    if target_length == buffer.length:
        return buffer

    out = np.zeros((buffer.channels, target_length), dtype=np.float32)
    n = min(buffer.length, target_length)
    out[:, :n] = buffer.data[:, :n]
    return PCMBuffer(out, buffer.sample_rate)


def mix(a: PCMBuffer, b: PCMBuffer, gain_a: float, gain_b: float) -> PCMBuffer:
    """
    Weighted sum of two buffers, stopping at the shorter one.

    A channel missing from one input counts as silence. If the result peaks
    above 1.0 the whole buffer is divided by that peak.
    """
    if a.sample_rate != b.sample_rate:
        raise IncompatibleFormat("Both tracks must share the same sample rate.")

    channels = max(a.channels, b.channels)
    length = min(a.length, b.length)
    out = np.zeros((channels, length), dtype=np.float32)

    for ch in range(channels):
        if ch < a.channels:
            out[ch] += a.data[ch, :length] * np.float32(gain_a)
        if ch < b.channels:
            out[ch] += b.data[ch, :length] * np.float32(gain_b)

    mixed = PCMBuffer(out, a.sample_rate)
    peak = mixed.peak()
    if peak > 1.0:
        mixed.data *= np.float32(1.0 / peak)
    return mixed


def _widen(pcm: np.ndarray, channels: int) -> np.ndarray:
    out = np.zeros((channels, pcm.shape[1]), dtype=np.float32)
    out[: pcm.shape[0]] = pcm
    return out
