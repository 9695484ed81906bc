"""
In-memory media engine for tests.

Sources are registered up front and addressed by opaque byte tokens.
Finalized outputs are registered the same way, so a re-encode pass can be
reopened like a real file. Every sample handed out is counted when created
and when closed.
"""

from __future__ import annotations

from collections import Counter
from typing import Dict, Iterator, List, Optional, Set, Tuple

import numpy as np

from framecut.engine import (
    AudioSample,
    AudioTrack,
    MediaEngine,
    MediaInput,
    MediaOutput,
    OutputAudioTrack,
    OutputVideoTrack,
    VideoSample,
    VideoTrack,
)
from framecut.errors import DecodeFailure, UnsupportedInput

AUDIO_CHUNK = 1024


class FakeSource:
    def __init__(
        self,
        frames: List[Tuple[float, float, np.ndarray]],
        audio: Optional[List[Tuple[float, np.ndarray]]] = None,
        sample_rate: int = 48000,
        channels: int = 2,
        fps: float = 10.0,
        video_error_after: Optional[int] = None,
        audio_error_after: Optional[int] = None,
    ) -> None:
        self.frames = frames
        self.audio = audio
        self.sample_rate = sample_rate
        self.channels = channels
        self.fps = fps
        self.video_error_after = video_error_after
        self.audio_error_after = audio_error_after


class FakeVideoTrack(VideoTrack):
    def __init__(self, engine: "FakeEngine", src: FakeSource) -> None:
        h, w = src.frames[0][2].shape[:2] if src.frames else (0, 0)
        duration = max((ts + d for ts, d, _f in src.frames), default=0.0)
        super().__init__("avc", w, h, src.fps, duration)
        self.engine = engine
        self.src = src

    def samples(self, start: Optional[float] = None, end: Optional[float] = None) -> Iterator[VideoSample]:
        for i, (ts, dur, frame) in enumerate(self.src.frames):
            if self.src.video_error_after is not None and i >= self.src.video_error_after:
                raise DecodeFailure("broken video packet")
            if start is not None and ts + dur <= start:
                continue
            if end is not None and ts >= end:
                break
            yield self.engine._track(VideoSample(ts, dur, frame, on_close=self.engine._closed))


class FakeAudioTrack(AudioTrack):
    def __init__(self, engine: "FakeEngine", src: FakeSource) -> None:
        duration = max((ts + pcm.shape[1] / src.sample_rate for ts, pcm in src.audio), default=0.0)
        super().__init__("aac", src.sample_rate, src.channels, duration)
        self.engine = engine
        self.src = src

    def samples(self, start: Optional[float] = None, end: Optional[float] = None) -> Iterator[AudioSample]:
        for i, (ts, pcm) in enumerate(self.src.audio):
            if self.src.audio_error_after is not None and i >= self.src.audio_error_after:
                raise DecodeFailure("broken audio packet")
            dur = pcm.shape[1] / float(self.sample_rate)
            if start is not None and ts + dur <= start:
                continue
            if end is not None and ts >= end:
                break
            sample = AudioSample(ts, dur, pcm, on_close=self.engine._closed, sample_rate=self.sample_rate)
            yield self.engine._track(sample)


class FakeInput(MediaInput):
    def __init__(self, engine: "FakeEngine", src: FakeSource, name: str) -> None:
        super().__init__(name)
        self.engine = engine
        self._video = [FakeVideoTrack(engine, src)] if src.frames else []
        self._audio = [FakeAudioTrack(engine, src)] if src.audio is not None else []

    def video_tracks(self) -> List[VideoTrack]:
        return list(self._video)

    def audio_tracks(self) -> List[AudioTrack]:
        return list(self._audio)

    def _release(self) -> None:
        self.engine.disposals[self.name] += 1


class FakeOutputVideoTrack(OutputVideoTrack):
    def __init__(self, output: "FakeOutput", codec: str, bitrate: Optional[int], frame_rate: float) -> None:
        super().__init__(output, codec, bitrate, frame_rate)
        self.written: List[Tuple[float, float, np.ndarray]] = []

    def _write(self, sample: VideoSample) -> None:
        self.written.append((sample.timestamp, sample.duration, np.array(sample.frame, copy=True)))


class FakeOutputAudioTrack(OutputAudioTrack):
    def __init__(self, output, codec, bitrate, sample_rate=None, channels=None) -> None:
        super().__init__(output, codec, bitrate, sample_rate, channels)
        self.written: List[Tuple[float, np.ndarray]] = []

    def _write_pcm(self, pcm: np.ndarray, sample_rate: int, timestamp: float) -> None:
        self.written.append((timestamp, np.array(pcm, dtype=np.float32, copy=True)))

    def covered(self) -> float:
        """Seconds covered by written PCM, assuming no overlap."""
        return sum(p.shape[1] for _ts, p in self.written) / float(self.sample_rate or 1)


class FakeOutput(MediaOutput):
    def __init__(self, engine: "FakeEngine", container: str) -> None:
        super().__init__(container)
        self.engine = engine
        self.finalize_calls = 0
        self.cancel_calls = 0

    def _make_video_track(self, codec, bitrate, frame_rate):
        return FakeOutputVideoTrack(self, codec, bitrate, frame_rate)

    def _make_audio_track(self, codec, bitrate, sample_rate, channels):
        return FakeOutputAudioTrack(self, codec, bitrate, sample_rate, channels)

    def _finalize(self) -> bytes:
        self.finalize_calls += 1
        v = self.video_track
        a = self.audio_track
        frames = list(v.written) if v is not None else []
        audio = list(a.written) if a is not None and a.written else None
        if not frames and not audio:
            return b""
        src = FakeSource(
            frames,
            audio,
            sample_rate=(a.sample_rate if a is not None and a.sample_rate else 48000),
            channels=(a.channels if a is not None and a.channels else 2),
            fps=(v.frame_rate if v is not None else 30.0),
        )
        return self.engine.register(src)

    def _cancel(self) -> None:
        self.cancel_calls += 1


class FakeEngine(MediaEngine):
    def __init__(self, encodable: Optional[Set[str]] = None) -> None:
        self.sources: Dict[bytes, FakeSource] = {}
        self.outputs: List[FakeOutput] = []
        self.inputs: List[FakeInput] = []
        self.disposals: Counter = Counter()
        self.samples_created = 0
        self.samples_closed = 0
        self.encodable = encodable if encodable is not None else {"avc", "aac", "mp3", "pcm-s16"}

    # --- source builders ---

    def register(self, src: FakeSource) -> bytes:
        token = f"fake-media-{len(self.sources)}".encode("ascii")
        self.sources[token] = src
        return token

    def add_video(
        self,
        width: int,
        height: int,
        frames: int = 10,
        fps: float = 10.0,
        audio_seconds: Optional[float] = None,
        sample_rate: int = 48000,
        channels: int = 2,
        level: float = 0.5,
        fill: int = 128,
        video_error_after: Optional[int] = None,
        audio_error_after: Optional[int] = None,
    ) -> bytes:
        frame = np.full((height, width, 3), fill, dtype=np.uint8)
        step = 1.0 / fps
        video = [(i * step, step, frame) for i in range(frames)]
        audio = None
        if audio_seconds is not None:
            audio = _tone(audio_seconds, sample_rate, channels, level)
        src = FakeSource(video, audio, sample_rate, channels, fps, video_error_after, audio_error_after)
        return self.register(src)

    def add_audio(self, seconds: float, sample_rate: int = 48000, channels: int = 2, level: float = 0.5) -> bytes:
        return self.register(FakeSource([], _tone(seconds, sample_rate, channels, level), sample_rate, channels))

    # --- MediaEngine ---

    def open_input(self, data: bytes, name: str = "") -> MediaInput:
        src = self.sources.get(data)
        if src is None:
            raise UnsupportedInput(f'"{name or "Input"}" is not a readable media file.')
        media = FakeInput(self, src, name or data.decode("ascii", errors="replace"))
        self.inputs.append(media)
        return media

    def create_output(self, container: str = "mp4") -> MediaOutput:
        out = FakeOutput(self, container)
        self.outputs.append(out)
        return out

    def can_encode(self, codec: str, **params) -> bool:
        return codec in self.encodable

    # --- bookkeeping ---

    def _track(self, sample):
        self.samples_created += 1
        return sample

    def _closed(self, _sample) -> None:
        self.samples_closed += 1


def _tone(seconds: float, sample_rate: int, channels: int, level: float) -> List[Tuple[float, np.ndarray]]:
    total = int(round(seconds * sample_rate))
    out: List[Tuple[float, np.ndarray]] = []
    for start in range(0, total, AUDIO_CHUNK):
        n = min(AUDIO_CHUNK, total - start)
        out.append((start / float(sample_rate), np.full((channels, n), level, dtype=np.float32)))
    return out
