"""
Timeline assembly.

Concatenates any number of sources into one output, normalizing each to the
reference size of the first clip and rebasing sample timestamps with a
running cursor so every track stays monotonic.
"""

from __future__ import annotations

import logging
from contextlib import ExitStack, closing
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .audio import PCMBuffer, match_duration, silence
from .engine import MediaEngine, MediaInput, OutputAudioTrack, OutputVideoTrack
from .errors import CompositionCancelled, CompositionError, DecodeFailure, FramecutError, UnsupportedInput
from .model import EncodeSettings, Size
from .normalizer import ClipPlan, NormalizedClip, TrackNormalizer, probe_size
from .progress import CancelCheck, ProgressCallback, ProgressReporter

log = logging.getLogger(__name__)

DEFAULT_SAMPLE_RATE = 48000
DEFAULT_CHANNELS = 2


@dataclass
class ClipInput:
    """Bytes of one source plus what to do with it."""

    data: bytes
    name: str = ""
    plan: ClipPlan = field(default_factory=ClipPlan)


@dataclass
class AudioPlan:
    """
    Replacement soundtrack: when given, per-clip audio is ignored and this
    buffer, matched to the composed duration, is written from t=0.
    """

    buffer: PCMBuffer


@dataclass
class ComposeResult:
    data: bytes
    size: Size
    duration: float
    container: str
    mime_type: str
    extension: str


class TimelineAssembler:
    def __init__(
        self,
        engine: MediaEngine,
        settings: Optional[EncodeSettings] = None,
        on_progress: Optional[ProgressCallback] = None,
        should_cancel: Optional[CancelCheck] = None,
        progress_ceiling: float = 90.0,
    ) -> None:
        self.engine = engine
        self.settings = settings or EncodeSettings()
        self.on_progress = on_progress
        self.should_cancel = should_cancel
        self.progress_ceiling = progress_ceiling

    def compose(
        self,
        clips: Sequence[ClipInput],
        container: Optional[str] = None,
        target_size: Optional[Size] = None,
        audio: Optional[AudioPlan] = None,
        force_audio: bool = False,
    ) -> ComposeResult:
        """
        Compose `clips` in order into one container and return its bytes.

        target_size overrides the first clip's frame size as the reference.
        force_audio adds a (silent where needed) audio track even when no
        clip carries audio.

        Raises:
            UnsupportedInput: a source cannot be opened or has no video.
            CompositionCancelled: should_cancel() returned True.
            CompositionError: a video step failed (wraps the cause).
        """
        if not clips:
            raise ValueError("No clips to compose.")
        container = container or self.settings.container
        reporter = ProgressReporter(self.on_progress, self.progress_ceiling, self.should_cancel)
        normalizer = TrackNormalizer(self.engine, self.settings)

        with ExitStack() as stack:
            sources: List[MediaInput] = []
            for clip in clips:
                reporter.check_cancelled()
                source = self.engine.open_input(clip.data, name=clip.name)
                stack.callback(source.dispose)
                if source.primary_video() is None:
                    raise UnsupportedInput(f'"{clip.name or "Input"}" does not contain a video track.')
                sources.append(source)

            output = self.engine.create_output(container)
            try:
                reference = target_size or probe_size(sources[0].primary_video())
                log.info("composing %d clip(s) at %s into %s", len(clips), reference, container)
                result = self._compose(clips, sources, output, reference, normalizer, reporter, audio, force_audio)
            except FramecutError:
                output.cancel()
                raise
            except Exception as ex:
                output.cancel()
                raise CompositionError(f"Composition failed: {ex}") from ex

        reporter.complete()
        log.info("composed %.3fs, %d bytes", result.duration, len(result.data))
        return result

    def _compose(
        self,
        clips: Sequence[ClipInput],
        sources: List[MediaInput],
        output,
        reference: Size,
        normalizer: TrackNormalizer,
        reporter: ProgressReporter,
        audio: Optional[AudioPlan],
        force_audio: bool,
    ) -> ComposeResult:
        s = self.settings
        vtrack = output.add_video_track(s.video_codec, s.video_bitrate, s.frame_rate)

        atrack: Optional[OutputAudioTrack] = None
        if audio is not None:
            atrack = output.add_audio_track(s.audio_codec, s.audio_bitrate, audio.buffer.sample_rate, audio.buffer.channels)
        else:
            first_audio = next(
                (src.primary_audio() for clip, src in zip(clips, sources) if clip.plan.include_audio and src.primary_audio()),
                None,
            )
            if first_audio is not None:
                atrack = output.add_audio_track(s.audio_codec, s.audio_bitrate, first_audio.sample_rate, first_audio.channels)
            elif force_audio:
                atrack = output.add_audio_track(s.audio_codec, s.audio_bitrate, DEFAULT_SAMPLE_RATE, DEFAULT_CHANNELS)
        output.start()

        n = len(clips)
        cursor = 0.0
        size = reference
        for i, (clip, source) in enumerate(zip(clips, sources)):
            reporter.check_cancelled()
            reporter.fraction(i, n)
            with normalizer.prepare(source, clip.plan, reference, reporter) as norm:
                span = self._write_video(norm, vtrack, cursor, reporter, i, n, clip.name)
                if i == 0 and vtrack.size is not None:
                    size = Size(*vtrack.size)
                if atrack is not None and audio is None:
                    self._write_audio(norm, atrack, cursor, span, reporter, i, clip.name)
            log.debug("clip %d/%d %s: %.3fs at %.3fs", i + 1, n, clip.name or "", span, cursor)
            cursor += span
            reporter.fraction(i + 1, n)

        if audio is not None and atrack is not None:
            soundtrack = match_duration(audio.buffer, cursor)
            for chunk_start, chunk in _chunked(soundtrack):
                reporter.check_cancelled()
                atrack.add_buffer(chunk, chunk_start)

        reporter.check_cancelled()
        data = output.finalize()
        return ComposeResult(
            data=data,
            size=size,
            duration=cursor,
            container=output.container,
            mime_type=output.mime_type,
            extension=output.extension,
        )

    def _write_video(
        self,
        norm: NormalizedClip,
        vtrack: OutputVideoTrack,
        cursor: float,
        reporter: ProgressReporter,
        index: int,
        count: int,
        name: str,
    ) -> float:
        """Append the clip's frames at `cursor`; returns the clip's span (max end)."""
        offset = norm.time_offset
        expected = norm.duration
        max_end = 0.0
        with closing(norm.video_samples()) as it:
            for sample in it:
                try:
                    reporter.check_cancelled()
                    rel = max(0.0, sample.timestamp + offset)
                    with sample.clone() as moved:
                        moved.timestamp = cursor + rel
                        vtrack.add(moved)
                    max_end = max(max_end, rel + sample.duration)
                finally:
                    sample.close()
                if expected:
                    reporter.fraction(index + min(1.0, max_end / expected), count)
        if max_end <= 0.0:
            raise DecodeFailure(f"No video frames decoded from {name or 'clip'}.")
        return max_end

    def _write_audio(
        self,
        norm: NormalizedClip,
        atrack: OutputAudioTrack,
        cursor: float,
        span: float,
        reporter: ProgressReporter,
        index: int,
        name: str,
    ) -> None:
        """
        Append the clip's audio at `cursor`, best-effort, then fill whatever
        part of [cursor, cursor + span) got no audio with silence.
        """
        offset = norm.time_offset
        written = 0.0
        try:
            with closing(norm.audio_samples()) as it:
                for sample in it:
                    try:
                        reporter.check_cancelled()
                        rel = sample.timestamp + offset
                        if rel >= span:
                            continue
                        if rel < 0.0:
                            continue
                        with sample.clone() as moved:
                            moved.timestamp = cursor + rel
                            atrack.add(moved)
                        written = max(written, min(span, rel + sample.duration))
                    finally:
                        sample.close()
        except CompositionCancelled:
            raise
        except Exception as ex:
            log.warning("audio of clip %d (%s) skipped: %s", index + 1, name or "clip", ex)

        gap = span - written
        if gap > 1.0 / (atrack.sample_rate or DEFAULT_SAMPLE_RATE):
            pad = silence(gap, atrack.sample_rate or DEFAULT_SAMPLE_RATE, atrack.channels or DEFAULT_CHANNELS)
            atrack.add_buffer(pad, cursor + written)


def _chunked(buffer: PCMBuffer, frames: int = 48000):
    start = 0
    for chunk in buffer.chunks(frames):
        yield start / float(buffer.sample_rate), chunk
        start += chunk.length
