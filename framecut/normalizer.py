"""
Track normalization.

Decides per source whether its frames can go straight to the shared output
or need a re-encode sub-pass (size mismatch, pixel transform, speed change),
and runs that sub-pass into a temporary container that is reopened as the
clip's new source.
"""

from __future__ import annotations

import logging
from contextlib import ExitStack, closing
from dataclasses import dataclass
from pathlib import PurePath
from typing import Iterator, Optional

from .audio import stretch
from .engine import AudioSample, AudioTrack, MediaEngine, MediaInput, VideoSample, VideoTrack
from .errors import CompositionCancelled, DecodeFailure, FramecutError, UnsupportedInput
from .frames import FrameTransform, draw
from .geometry import even_size
from .model import FULL_FRAME, EncodeSettings, NormalizedRect, Size
from .progress import ProgressReporter

log = logging.getLogger(__name__)

TEMP_CONTAINER = "mkv"


def temp_name(name: str) -> str:
    """File name for a re-encoded source; the suffix matches TEMP_CONTAINER."""
    stem = PurePath(name).stem if name else ""
    return f"{stem or 'clip'}-normalized.{TEMP_CONTAINER}"


@dataclass
class ClipPlan:
    """
    What to do with one source before it joins the timeline.

    transform: per-frame pixel transform; None means plain scaling
    source_rect: part of the source frame fed to the transform
    speed: playback multiplier (>1 shortens, <1 lengthens)
    in_sec/out_sec: optional source range
    include_audio: False drops the source's audio (the span becomes silent)
    """

    transform: Optional[FrameTransform] = None
    source_rect: NormalizedRect = FULL_FRAME
    speed: float = 1.0
    in_sec: Optional[float] = None
    out_sec: Optional[float] = None
    include_audio: bool = True

    def __post_init__(self) -> None:
        if not self.speed or self.speed <= 0:
            raise ValueError(f"Speed must be positive: {self.speed}")
        if self.in_sec is not None and self.out_sec is not None and self.out_sec <= self.in_sec:
            raise ValueError("Clip range end must be after its start.")


def probe_size(track: VideoTrack) -> Size:
    """
    Size of the first decoded frame.

    The peeked sample and its iterator are both closed before returning.
    """
    with closing(track.samples()) as it:
        first = next(it, None)
        if first is None:
            raise DecodeFailure("Unable to read the first video frame.")
        try:
            return Size(first.width, first.height)
        finally:
            first.close()


def reencode_reason(source: Size, target: Size, plan: ClipPlan) -> Optional[str]:
    """Why a re-encode sub-pass is needed, or None for the direct path."""
    if source != target:
        return f"size {source} -> {target}"
    if plan.transform is not None:
        return "pixel transform"
    if plan.source_rect != FULL_FRAME:
        return "source region"
    if plan.speed != 1.0:
        return f"speed x{plan.speed:g}"
    return None


class NormalizedClip:
    """
    Ready-to-write tracks for one clip.

    Sample timestamps plus `time_offset` start at 0 for the clip. Owns the
    temporary input of a re-encode pass and disposes it on close().
    """

    def __init__(
        self,
        video: VideoTrack,
        audio: Optional[AudioTrack],
        start: Optional[float] = None,
        end: Optional[float] = None,
        reencoded: bool = False,
    ) -> None:
        self.video = video
        self.audio = audio
        self.start = start
        self.end = end
        self.reencoded = reencoded
        self._stack = ExitStack()

    @property
    def time_offset(self) -> float:
        return -float(self.start or 0.0)

    @property
    def duration(self) -> Optional[float]:
        total = self.video.duration
        if self.end is not None:
            total = self.end if total is None else min(total, self.end)
        if total is None:
            return None
        return max(0.0, total - float(self.start or 0.0))

    def own(self, source: MediaInput) -> None:
        self._stack.callback(source.dispose)

    def video_samples(self) -> Iterator[VideoSample]:
        return _ranged(self.video.samples(self.start, self.end), self.start, self.end)

    def audio_samples(self) -> Iterator[AudioSample]:
        if self.audio is None:
            return _ranged(iter(()), None, None)
        return _ranged(self.audio.samples(self.start, self.end), self.start, self.end)

    def close(self) -> None:
        self._stack.close()

    def __enter__(self) -> "NormalizedClip":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class TrackNormalizer:
    def __init__(self, engine: MediaEngine, settings: Optional[EncodeSettings] = None) -> None:
        self.engine = engine
        self.settings = settings or EncodeSettings()

    def prepare(
        self,
        source: MediaInput,
        plan: ClipPlan,
        target: Size,
        reporter: Optional[ProgressReporter] = None,
    ) -> NormalizedClip:
        """
        Normalize `source` to `target` (rounded to even dimensions).

        Raises:
            UnsupportedInput: the source has no video track.
            TooSmallRegion: target collapses below 2px.
        """
        video = source.primary_video()
        if video is None:
            raise UnsupportedInput(f'"{source.name or "Input"}" does not contain a video track.')
        audio = source.primary_audio() if plan.include_audio else None
        target = even_size(target.width, target.height)

        size = probe_size(video)
        reason = reencode_reason(size, target, plan)
        if reason is None:
            log.debug("direct path for %s (%s)", source.name or "clip", size)
            return NormalizedClip(video, audio, plan.in_sec, plan.out_sec)

        log.debug("re-encode for %s: %s", source.name or "clip", reason)
        temp = self.reencode(video, audio, plan, target, reporter, name=source.name)
        try:
            new_video = temp.primary_video()
            if new_video is None:
                raise DecodeFailure("Re-encoded clip has no video track.")
            clip = NormalizedClip(new_video, temp.primary_audio() if audio is not None else None, reencoded=True)
        except BaseException:
            temp.dispose()
            raise
        clip.own(temp)
        return clip

    def reencode(
        self,
        video: VideoTrack,
        audio: Optional[AudioTrack],
        plan: ClipPlan,
        target: Size,
        reporter: Optional[ProgressReporter] = None,
        name: str = "",
    ) -> MediaInput:
        """
        Decode -> transform -> encode into a temporary container, then reopen it.

        Timestamps in the new source start at 0 and are divided by plan.speed.
        Audio is best-effort: a failure leaves the temporary clip silent.
        """
        transform = plan.transform or draw
        speed = float(plan.speed)
        start = float(plan.in_sec or 0.0)
        s = self.settings

        output = self.engine.create_output(TEMP_CONTAINER)
        try:
            vt = output.add_video_track(s.video_codec, s.video_bitrate, s.frame_rate)
            at = None
            if audio is not None:
                at = output.add_audio_track(s.audio_codec, s.audio_bitrate, audio.sample_rate, audio.channels)
            output.start()

            with closing(_ranged(video.samples(plan.in_sec, plan.out_sec), plan.in_sec, plan.out_sec)) as it:
                for sample in it:
                    try:
                        if reporter is not None:
                            reporter.check_cancelled()
                        frame = transform(sample.frame, plan.source_rect, target)
                        if frame.shape[1] != target.width or frame.shape[0] != target.height:
                            raise FramecutError(
                                f"Transform produced {frame.shape[1]}x{frame.shape[0]}, expected {target}"
                            )
                        with VideoSample((sample.timestamp - start) / speed, sample.duration / speed, frame) as out:
                            vt.add(out)
                    finally:
                        sample.close()

            if at is not None:
                try:
                    with closing(_ranged(audio.samples(plan.in_sec, plan.out_sec), plan.in_sec, plan.out_sec)) as it:
                        for sample in it:
                            try:
                                if reporter is not None:
                                    reporter.check_cancelled()
                                rate = sample.sample_rate
                                first = int(round((sample.timestamp - start) / speed * rate))
                                last = int(round((sample.end - start) / speed * rate))
                                if last <= first:
                                    continue
                                pcm = sample.pcm if speed == 1.0 else stretch(sample.pcm, last - first)
                                retimed = AudioSample(first / float(rate), None, pcm, sample_rate=rate)
                                with retimed:
                                    at.add(retimed)
                            finally:
                                sample.close()
                except CompositionCancelled:
                    raise
                except Exception as ex:
                    log.warning("audio of %s skipped during re-encode: %s", name or "clip", ex)

            data = output.finalize()
        except BaseException:
            output.cancel()
            raise

        return self.engine.open_input(data, name=temp_name(name))


def _ranged(samples: Iterator, start: Optional[float], end: Optional[float]) -> Iterator:
    """
    Drop samples outside [start, end) and close them; closes `samples` when done.
    """
    try:
        for sample in samples:
            if (start is not None and sample.end <= start) or (end is not None and sample.timestamp >= end):
                sample.close()
                continue
            yield sample
    finally:
        close = getattr(samples, "close", None)
        if close is not None:
            close()
