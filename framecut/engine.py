"""
Boundary with the media engine.

The composition core only talks to the classes below. A concrete engine
(see ffmpeg.FFmpegEngine) subclasses MediaInput/MediaOutput and the track
types; tests use an in-memory engine.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from .errors import EncodeCapabilityMissing, FramecutError, NoDataProduced

log = logging.getLogger(__name__)

# container -> (mime type, file extension)
CONTAINERS: Dict[str, Tuple[str, str]] = {
    "mp4": ("video/mp4", ".mp4"),
    "mov": ("video/quicktime", ".mov"),
    "webm": ("video/webm", ".webm"),
    "mkv": ("video/x-matroska", ".mkv"),
    "wav": ("audio/wav", ".wav"),
    "mp3": ("audio/mpeg", ".mp3"),
    "m4a": ("audio/mp4", ".m4a"),
}


class Sample:
    """
    One timestamped unit of media owned by whoever pulled it.

    close() must be called exactly once; a closed sample has no payload.
    clone() gives an independent sample (own timestamp/duration, shared
    read-only payload) that must be closed as well.
    """

    def __init__(
        self,
        timestamp: float,
        duration: float,
        payload: Any,
        on_close: Optional[Callable[["Sample"], None]] = None,
    ) -> None:
        self.timestamp = float(timestamp)
        self.duration = max(0.0, float(duration))
        self._payload = payload
        self._on_close = on_close
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def end(self) -> float:
        return self.timestamp + self.duration

    @property
    def payload(self) -> Any:
        if self._closed:
            raise ValueError("Sample is closed")
        return self._payload

    def clone(self) -> "Sample":
        return self.__class__(self.timestamp, self.duration, self.payload)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._payload = None
        cb = self._on_close
        self._on_close = None
        if cb is not None:
            cb(self)

    def __enter__(self) -> "Sample":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


class VideoSample(Sample):
    """Decoded frame: payload is an RGB uint8 array of shape (height, width, 3)."""

    @property
    def frame(self) -> np.ndarray:
        return self.payload

    @property
    def width(self) -> int:
        return int(self.payload.shape[1])

    @property
    def height(self) -> int:
        return int(self.payload.shape[0])


class AudioSample(Sample):
    """Decoded audio chunk: payload is float32 PCM of shape (channels, frames)."""

    def __init__(
        self,
        timestamp: float,
        duration: Optional[float],
        payload: Any,
        on_close: Optional[Callable[["Sample"], None]] = None,
        sample_rate: int = 48000,
    ) -> None:
        self.sample_rate = int(sample_rate)
        if duration is None:
            duration = payload.shape[1] / float(self.sample_rate or 1)
        super().__init__(timestamp, duration, payload, on_close)

    @property
    def pcm(self) -> np.ndarray:
        return self.payload

    @property
    def channels(self) -> int:
        return int(self.payload.shape[0])

    @property
    def frames(self) -> int:
        return int(self.payload.shape[1])

    def clone(self) -> "AudioSample":
        return AudioSample(self.timestamp, self.duration, self.payload, sample_rate=self.sample_rate)


class VideoTrack:
    """Read-only descriptor of a source video track."""

    kind = "video"

    def __init__(
        self,
        codec: str,
        width: int,
        height: int,
        frame_rate: float = 30.0,
        duration: Optional[float] = None,
    ) -> None:
        self.codec = codec
        self.width = int(width)
        self.height = int(height)
        self.frame_rate = float(frame_rate or 30.0)
        self.duration = duration

    def samples(self, start: Optional[float] = None, end: Optional[float] = None) -> Iterator[VideoSample]:
        """New lazy, forward-only iterator over decoded frames in [start, end)."""
        raise NotImplementedError


class AudioTrack:
    """Read-only descriptor of a source audio track."""

    kind = "audio"

    def __init__(
        self,
        codec: str,
        sample_rate: int,
        channels: int,
        duration: Optional[float] = None,
    ) -> None:
        self.codec = codec
        self.sample_rate = int(sample_rate)
        self.channels = int(channels)
        self.duration = duration

    def samples(self, start: Optional[float] = None, end: Optional[float] = None) -> Iterator[AudioSample]:
        raise NotImplementedError


class MediaInput:
    """An opened source container. dispose() is idempotent."""

    def __init__(self, name: str = "") -> None:
        self.name = name
        self.disposed = False

    def video_tracks(self) -> List[VideoTrack]:
        raise NotImplementedError

    def audio_tracks(self) -> List[AudioTrack]:
        raise NotImplementedError

    def primary_video(self) -> Optional[VideoTrack]:
        tracks = self.video_tracks()
        return tracks[0] if tracks else None

    def primary_audio(self) -> Optional[AudioTrack]:
        tracks = self.audio_tracks()
        return tracks[0] if tracks else None

    def dispose(self) -> None:
        if self.disposed:
            return
        self.disposed = True
        self._release()

    def _release(self) -> None:
        pass

    def __enter__(self) -> "MediaInput":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.dispose()


class OutputTrack:
    def __init__(self, output: "MediaOutput", codec: str, bitrate: Optional[int]) -> None:
        self.output = output
        self.codec = codec
        self.bitrate = bitrate
        self.closed = False
        self.last_end = 0.0

    def _check_writable(self) -> None:
        if self.closed:
            raise FramecutError(f"{self.kind} output track is closed")
        if self.output.state != "started":
            raise FramecutError(f"Cannot write samples while output is {self.output.state}")

    def close(self) -> None:
        self.closed = True


class OutputVideoTrack(OutputTrack):
    kind = "video"

    def __init__(self, output: "MediaOutput", codec: str, bitrate: Optional[int], frame_rate: float) -> None:
        super().__init__(output, codec, bitrate)
        self.frame_rate = float(frame_rate)
        self.size: Optional[Tuple[int, int]] = None

    def add(self, sample: VideoSample) -> None:
        """Encode one frame at sample.timestamp. The caller keeps ownership of `sample`."""
        self._check_writable()
        size = (sample.width, sample.height)
        if self.size is None:
            self.size = size
        elif size != self.size:
            raise FramecutError(f"Frame size {size[0]}x{size[1]} does not match track size {self.size[0]}x{self.size[1]}")
        self._write(sample)
        self.last_end = max(self.last_end, sample.end)

    def _write(self, sample: VideoSample) -> None:
        raise NotImplementedError


class OutputAudioTrack(OutputTrack):
    kind = "audio"

    def __init__(
        self,
        output: "MediaOutput",
        codec: str,
        bitrate: Optional[int],
        sample_rate: Optional[int] = None,
        channels: Optional[int] = None,
    ) -> None:
        super().__init__(output, codec, bitrate)
        self.sample_rate = sample_rate
        self.channels = channels

    def add(self, sample: AudioSample) -> None:
        self._check_writable()
        self._configure(sample.sample_rate, sample.channels)
        self._write_pcm(sample.pcm, sample.sample_rate, sample.timestamp)
        self.last_end = max(self.last_end, sample.end)

    def add_buffer(self, buffer: Any, timestamp: float = 0.0) -> None:
        """Write a whole PCMBuffer starting at `timestamp` seconds."""
        self._check_writable()
        self._configure(buffer.sample_rate, buffer.channels)
        self._write_pcm(buffer.data, buffer.sample_rate, float(timestamp))
        self.last_end = max(self.last_end, float(timestamp) + buffer.duration)

    def _configure(self, sample_rate: int, channels: int) -> None:
        if self.sample_rate is None:
            self.sample_rate = int(sample_rate)
        if self.channels is None:
            self.channels = int(channels)

    def _write_pcm(self, pcm: np.ndarray, sample_rate: int, timestamp: float) -> None:
        raise NotImplementedError


class MediaOutput:
    """
    Single destination container.

    Tracks can only be added before start(); finalize() runs at most once and
    cancel() is a no-op after finalize.
    """

    def __init__(self, container: str = "mp4") -> None:
        if container not in CONTAINERS:
            raise ValueError(f"Unknown container: {container}")
        self.container = container
        self.state = "pending"  # pending | started | finalized | cancelled
        self.video_track: Optional[OutputVideoTrack] = None
        self.audio_track: Optional[OutputAudioTrack] = None

    @property
    def mime_type(self) -> str:
        return CONTAINERS[self.container][0]

    @property
    def extension(self) -> str:
        return CONTAINERS[self.container][1]

    def add_video_track(self, codec: str, bitrate: Optional[int] = None, frame_rate: float = 30.0) -> OutputVideoTrack:
        self._check_pending("video")
        if self.video_track is not None:
            raise FramecutError("Output already has a video track")
        self.video_track = self._make_video_track(codec, bitrate, frame_rate)
        return self.video_track

    def add_audio_track(
        self,
        codec: str,
        bitrate: Optional[int] = None,
        sample_rate: Optional[int] = None,
        channels: Optional[int] = None,
    ) -> OutputAudioTrack:
        self._check_pending("audio")
        if self.audio_track is not None:
            raise FramecutError("Output already has an audio track")
        self.audio_track = self._make_audio_track(codec, bitrate, sample_rate, channels)
        return self.audio_track

    def start(self) -> None:
        if self.state != "pending":
            raise FramecutError(f"Output cannot start from state {self.state}")
        if self.video_track is None and self.audio_track is None:
            raise FramecutError("Output has no tracks")
        self.state = "started"
        self._start()

    def finalize(self) -> bytes:
        if self.state != "started":
            raise FramecutError(f"Output cannot finalize from state {self.state}")
        for t in (self.video_track, self.audio_track):
            if t is not None:
                t.close()
        data = self._finalize()
        self.state = "finalized"
        if not data:
            raise NoDataProduced("No media data produced.")
        return data

    def cancel(self) -> None:
        if self.state in ("finalized", "cancelled"):
            return
        self.state = "cancelled"
        self._cancel()

    def _check_pending(self, kind: str) -> None:
        if self.state != "pending":
            raise FramecutError(f"Cannot add a {kind} track after the output has started")

    def _make_video_track(self, codec: str, bitrate: Optional[int], frame_rate: float) -> OutputVideoTrack:
        raise NotImplementedError

    def _make_audio_track(
        self,
        codec: str,
        bitrate: Optional[int],
        sample_rate: Optional[int],
        channels: Optional[int],
    ) -> OutputAudioTrack:
        raise NotImplementedError

    def _start(self) -> None:
        pass

    def _finalize(self) -> bytes:
        raise NotImplementedError

    def _cancel(self) -> None:
        pass


class MediaEngine:
    def open_input(self, data: bytes, name: str = "") -> MediaInput:
        raise NotImplementedError

    def create_output(self, container: str = "mp4") -> MediaOutput:
        raise NotImplementedError

    def can_encode(self, codec: str, **params: Any) -> bool:
        raise NotImplementedError


def first_encodable(
    engine: MediaEngine,
    candidates: Sequence[str],
    fallback: Optional[str] = None,
    **params: Any,
) -> str:
    """
    First codec in `candidates` the engine can encode with `params`.

    Probe errors count as "cannot encode". When nothing matches, `fallback`
    is returned if given, otherwise EncodeCapabilityMissing is raised.
    """
    for codec in candidates:
        try:
            if engine.can_encode(codec, **params):
                return codec
        except Exception as ex:
            log.debug("encode probe failed for %s: %s", codec, ex)
    if fallback is not None:
        log.info("no candidate codec encodable (%s); falling back to %s", ", ".join(candidates), fallback)
        return fallback
    raise EncodeCapabilityMissing(f"None of these codecs can be encoded here: {', '.join(candidates)}")
