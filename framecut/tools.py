"""
Editing operations built on the composition core.

Every operation takes the input bytes and a media engine, and returns a
ToolResult holding the output bytes and a suggested file name. Long
operations accept on_progress(pct) and should_cancel() callbacks; run them
on a worker thread if the caller must stay responsive.
"""

from __future__ import annotations

import io
import logging
import math
import re
from contextlib import closing, contextmanager
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Tuple, Union

from PIL import Image, UnidentifiedImageError

from .assembler import AudioPlan, ClipInput, ComposeResult, TimelineAssembler
from .audio import PCMBuffer, decode, match_duration, mix
from .encoding import (
    COMPRESS_AUDIO_BITRATE,
    SOUNDTRACK_BITRATE,
    pick_blend_format,
    pick_soundtrack_codec,
    pick_wav_codec,
    resolve_video_bitrate,
)
from .engine import MediaEngine, MediaOutput, VideoSample
from .errors import CompositionError, FramecutError, TooSmallRegion, UnsupportedInput
from .frames import Watermark, draw, grayscale, letterbox
from .geometry import MIN_ENCODABLE_PX, clamp_number, clamp_rect, crop_box, ensure_even
from .model import (
    MAX_CLIP_SPEED,
    MIN_CLIP_SPEED,
    EncodeSettings,
    Job,
    NormalizedRect,
    QualityValue,
    Size,
    parse_quality,
)
from .normalizer import ClipPlan, probe_size
from .progress import CancelCheck, ProgressCallback, ProgressReporter
from .timeline import validate_cut_range

log = logging.getLogger(__name__)

MIN_CUT_SEC = 0.05
MAX_DIMENSION = 8192
WATERMARK_MIN_RATIO = 0.08
DEFAULT_BLEND_RATIO = 0.3
IMAGE_VIDEO_FPS = 30
MIN_IMAGE_VIDEO_SEC = 1
MAX_IMAGE_VIDEO_SEC = 60

RESIZE_PRESETS = {
    "1080p": Size(1920, 1080),
    "720p": Size(1280, 720),
    "480p": Size(854, 480),
    "square": Size(1080, 1080),
    "vertical": Size(1080, 1920),
}

SPEED_PRESETS = (0.5, 0.75, 1.25, 1.5, 2.0)

ImageInput = Union[bytes, Image.Image]


@dataclass
class ToolResult:
    data: bytes
    filename: str
    width: int = 0
    height: int = 0
    duration: float = 0.0
    mime_type: str = ""


def output_base(name: str) -> str:
    """File name without its last extension ("clip.final.mp4" -> "clip.final")."""
    base = Path(str(name or "")).name
    base = re.sub(r"\.[^/.]+$", "", base)
    return base or "output"


def build_output_name(name: str, suffix: str, extension: str) -> str:
    return f"{output_base(name)}{suffix}{extension}"


def merged_output_name(names: Sequence[str], extension: str) -> str:
    base = "-".join(re.sub(r"\s+", "-", output_base(n)).lower() for n in names)
    return f"{base or 'output'}-merged{extension}"


def derive_locked_dimension(value: float, source: Size, axis: str = "width") -> int:
    """
    Other dimension for an aspect-locked resize.

    axis names the dimension `value` sets; the result is the even counterpart.
    """
    if source.width <= 0 or source.height <= 0:
        raise ValueError("Source size must be positive.")
    if axis == "width":
        return ensure_even(float(value) * source.height / source.width)
    if axis == "height":
        return ensure_even(float(value) * source.width / source.height)
    raise ValueError(f"Unknown axis: {axis}")


def locked_size(engine: MediaEngine, data: bytes, name: str, value: float, axis: str = "width") -> Size:
    """Target size keeping the source aspect, with `axis` set to `value`."""
    source, _duration = _source_info(engine, data, name)
    other = derive_locked_dimension(value, source, axis)
    if axis == "width":
        return Size(ensure_even(value), other)
    return Size(other, ensure_even(value))


def _result(res: ComposeResult, filename: str) -> ToolResult:
    return ToolResult(
        data=res.data,
        filename=filename,
        width=res.size.width,
        height=res.size.height,
        duration=res.duration,
        mime_type=res.mime_type,
    )


def _compose_one(
    engine: MediaEngine,
    data: bytes,
    name: str,
    plan: ClipPlan,
    settings: Optional[EncodeSettings],
    on_progress: Optional[ProgressCallback],
    should_cancel: Optional[CancelCheck],
    progress_ceiling: float = 90.0,
    target_size: Optional[Size] = None,
    audio: Optional[AudioPlan] = None,
) -> ComposeResult:
    assembler = TimelineAssembler(
        engine, settings, on_progress=on_progress, should_cancel=should_cancel, progress_ceiling=progress_ceiling
    )
    return assembler.compose([ClipInput(data, name, plan)], target_size=target_size, audio=audio)


def _source_info(engine: MediaEngine, data: bytes, name: str) -> Tuple[Size, Optional[float]]:
    """(first frame size, video duration) of a video input."""
    with engine.open_input(data, name=name) as source:
        video = source.primary_video()
        if video is None:
            raise UnsupportedInput(f'"{name or "Input"}" does not contain a video track.')
        return probe_size(video), video.duration


def _open_image(image: ImageInput, name: str = "") -> Image.Image:
    if isinstance(image, Image.Image):
        return image
    try:
        img = Image.open(io.BytesIO(image))
        img.load()
    except (UnidentifiedImageError, OSError) as ex:
        raise UnsupportedInput(f'"{name or "Image"}" is not a readable image.') from ex
    return img


@contextmanager
def _output_job(engine: MediaEngine, container: str) -> Iterator[MediaOutput]:
    """Create an output that is cancelled if the body raises."""
    output = engine.create_output(container)
    try:
        yield output
    except FramecutError:
        output.cancel()
        raise
    except Exception as ex:
        output.cancel()
        raise CompositionError(f"Conversion failed: {ex}") from ex


def _write_pcm(
    engine: MediaEngine,
    buffer: PCMBuffer,
    container: str,
    codec: str,
    bitrate: Optional[int],
    reporter: ProgressReporter,
) -> bytes:
    with _output_job(engine, container) as output:
        track = output.add_audio_track(codec, bitrate, buffer.sample_rate, buffer.channels)
        output.start()
        done = 0
        for chunk in buffer.chunks(buffer.sample_rate):
            reporter.check_cancelled()
            track.add_buffer(chunk, done / float(buffer.sample_rate))
            done += chunk.length
            reporter.fraction(done, buffer.length)
        reporter.check_cancelled()
        return output.finalize()


def cut_video(
    engine: MediaEngine,
    data: bytes,
    name: str,
    start: float,
    end: float,
    settings: Optional[EncodeSettings] = None,
    on_progress: Optional[ProgressCallback] = None,
    should_cancel: Optional[CancelCheck] = None,
    progress_ceiling: float = 90.0,
) -> ToolResult:
    """Keep [start, end) seconds of a video."""
    _size, duration = _source_info(engine, data, name)
    ok, msg = validate_cut_range(start, end, duration or 0.0)
    if not ok:
        raise ValueError(msg)
    if float(end) - float(start) <= MIN_CUT_SEC:
        raise ValueError(f"Cut must be longer than {MIN_CUT_SEC}s")

    plan = ClipPlan(in_sec=float(start), out_sec=float(end))
    res = _compose_one(engine, data, name, plan, settings, on_progress, should_cancel, progress_ceiling)
    ext = res.extension
    return _result(res, build_output_name(name, f"-{float(start):.2f}s-{float(end):.2f}s", ext))


def crop_video(
    engine: MediaEngine,
    data: bytes,
    name: str,
    rect: NormalizedRect,
    settings: Optional[EncodeSettings] = None,
    on_progress: Optional[ProgressCallback] = None,
    should_cancel: Optional[CancelCheck] = None,
    progress_ceiling: float = 90.0,
) -> ToolResult:
    """
    Crop to a normalized selection.

    The pixel box is rounded to even dimensions that stay inside the frame.

    Raises:
        TooSmallRegion: the selection cannot hold 2x2 pixels.
    """
    size, _duration = _source_info(engine, data, name)
    pixels = rect.to_pixels(size)
    desired = Size(ensure_even(pixels.width), ensure_even(pixels.height))
    x, y, w, h = crop_box(pixels, size, desired)
    source_rect = NormalizedRect(x / size.width, y / size.height, w / size.width, h / size.height)
    target = Size(w, h)

    plan = ClipPlan(transform=draw, source_rect=source_rect)
    res = _compose_one(
        engine, data, name, plan, settings, on_progress, should_cancel, progress_ceiling, target_size=target
    )
    return _result(res, build_output_name(name, f"-cropped-{w}x{h}", res.extension))


def resize_video(
    engine: MediaEngine,
    data: bytes,
    name: str,
    width: float,
    height: float,
    settings: Optional[EncodeSettings] = None,
    on_progress: Optional[ProgressCallback] = None,
    should_cancel: Optional[CancelCheck] = None,
    progress_ceiling: float = 90.0,
) -> ToolResult:
    """
    Scale every frame to width x height (rounded to even values).

    Raises:
        TooSmallRegion: a dimension is below 2 pixels.
        ValueError: a dimension exceeds MAX_DIMENSION.
    """
    for v in (width, height):
        if not math.isfinite(float(v)) or float(v) < MIN_ENCODABLE_PX:
            raise TooSmallRegion(f"Dimensions must be at least {MIN_ENCODABLE_PX}px.")
        if float(v) > MAX_DIMENSION:
            raise ValueError(f"Dimensions must be at most {MAX_DIMENSION}px.")
    target = Size(ensure_even(width), ensure_even(height))

    res = _compose_one(
        engine, data, name, ClipPlan(), settings, on_progress, should_cancel, progress_ceiling, target_size=target
    )
    return _result(res, build_output_name(name, f"-resized-{target.width}x{target.height}", res.extension))


def gray_video(
    engine: MediaEngine,
    data: bytes,
    name: str,
    settings: Optional[EncodeSettings] = None,
    on_progress: Optional[ProgressCallback] = None,
    should_cancel: Optional[CancelCheck] = None,
    progress_ceiling: float = 90.0,
) -> ToolResult:
    plan = ClipPlan(transform=grayscale)
    res = _compose_one(engine, data, name, plan, settings, on_progress, should_cancel, progress_ceiling)
    return _result(res, build_output_name(name, "-grayscale", res.extension))


def add_watermark(
    engine: MediaEngine,
    data: bytes,
    name: str,
    image: ImageInput,
    rect: NormalizedRect,
    opacity: float = 1.0,
    settings: Optional[EncodeSettings] = None,
    on_progress: Optional[ProgressCallback] = None,
    should_cancel: Optional[CancelCheck] = None,
    progress_ceiling: float = 90.0,
) -> ToolResult:
    """Overlay `image` at a normalized rect (at least 8% of each dimension)."""
    placed = clamp_rect(rect, WATERMARK_MIN_RATIO, WATERMARK_MIN_RATIO)
    mark = Watermark(_open_image(image, "watermark"), placed, clamp_number(opacity, 0.0, 1.0))
    plan = ClipPlan(transform=mark)
    res = _compose_one(engine, data, name, plan, settings, on_progress, should_cancel, progress_ceiling)
    return _result(res, build_output_name(name, "-watermarked", res.extension))


def change_speed(
    engine: MediaEngine,
    data: bytes,
    name: str,
    speed: float,
    settings: Optional[EncodeSettings] = None,
    on_progress: Optional[ProgressCallback] = None,
    should_cancel: Optional[CancelCheck] = None,
    progress_ceiling: float = 90.0,
) -> ToolResult:
    """
    Play back `speed` times faster (clamped to [0.25, 4]).

    Audio is retimed with the video, not pitch-corrected.
    """
    v = float(speed)
    if not math.isfinite(v) or v <= 0:
        raise ValueError(f"Speed must be a positive number: {speed}")
    v = clamp_number(v, MIN_CLIP_SPEED, MAX_CLIP_SPEED)

    res = _compose_one(engine, data, name, ClipPlan(speed=v), settings, on_progress, should_cancel, progress_ceiling)
    return _result(res, build_output_name(name, f"-{v:.2f}x", res.extension))


def merge_videos(
    engine: MediaEngine,
    clips: Sequence[Tuple[bytes, str]],
    settings: Optional[EncodeSettings] = None,
    on_progress: Optional[ProgressCallback] = None,
    should_cancel: Optional[CancelCheck] = None,
    progress_ceiling: float = 90.0,
) -> ToolResult:
    """Concatenate (data, name) videos; later clips are scaled to the first one's size."""
    if len(clips) < 2:
        raise ValueError("Select at least two videos to merge.")
    inputs = [ClipInput(d, n) for d, n in clips]
    res = TimelineAssembler(
        engine, settings, on_progress=on_progress, should_cancel=should_cancel, progress_ceiling=progress_ceiling
    ).compose(inputs)
    return _result(res, merged_output_name([n for _d, n in clips], res.extension))


def merge_job(
    engine: MediaEngine,
    job: Job,
    on_progress: Optional[ProgressCallback] = None,
    should_cancel: Optional[CancelCheck] = None,
    progress_ceiling: float = 90.0,
) -> ToolResult:
    """Run a saved job: clips read from disk with their ranges and speeds."""
    if not job.clips:
        raise ValueError("Job has no clips.")
    inputs: List[ClipInput] = []
    for c in job.clips:
        plan = ClipPlan(speed=c.speed, in_sec=c.in_sec, out_sec=c.out_sec)
        inputs.append(ClipInput(Path(c.src).read_bytes(), c.name, plan))
    res = TimelineAssembler(
        engine, job.settings, on_progress=on_progress, should_cancel=should_cancel, progress_ceiling=progress_ceiling
    ).compose(inputs)
    filename = Path(job.output).name if job.output else merged_output_name([c.name for c in job.clips], res.extension)
    return _result(res, filename)


def replace_audio(
    engine: MediaEngine,
    video: bytes,
    video_name: str,
    audio: bytes,
    audio_name: str,
    settings: Optional[EncodeSettings] = None,
    on_progress: Optional[ProgressCallback] = None,
    should_cancel: Optional[CancelCheck] = None,
    progress_ceiling: float = 90.0,
) -> ToolResult:
    """Swap the soundtrack; the new audio is trimmed or silence-padded to the video length."""
    buffer = decode(engine, audio, audio_name)
    plan = ClipPlan(include_audio=False)
    res = _compose_one(
        engine, video, video_name, plan, settings, on_progress, should_cancel, progress_ceiling, audio=AudioPlan(buffer)
    )
    return _result(res, build_output_name(video_name, "-with-replaced-audio", res.extension))


def extract_audio(
    engine: MediaEngine,
    data: bytes,
    name: str,
    on_progress: Optional[ProgressCallback] = None,
    should_cancel: Optional[CancelCheck] = None,
    progress_ceiling: float = 90.0,
) -> ToolResult:
    """
    Write the first audio track to a WAV file.

    Raises:
        UnsupportedInput: the input has no audio track.
    """
    reporter = ProgressReporter(on_progress, progress_ceiling, should_cancel)
    with engine.open_input(data, name=name) as source:
        track = source.primary_audio()
        if track is None:
            raise UnsupportedInput(f'"{name or "Input"}" does not contain an audio track.')
        codec = pick_wav_codec(engine, sample_rate=track.sample_rate, channels=track.channels)
        log.info("extracting audio of %s as %s", name or "input", codec)

        with _output_job(engine, "wav") as output:
            out_track = output.add_audio_track(codec, None, track.sample_rate, track.channels)
            output.start()
            with closing(track.samples()) as it:
                for sample in it:
                    try:
                        reporter.check_cancelled()
                        out_track.add(sample)
                        if track.duration:
                            reporter.fraction(sample.end, track.duration)
                    finally:
                        sample.close()
            reporter.check_cancelled()
            out = output.finalize()
            ext = output.extension

    reporter.complete()
    return ToolResult(data=out, filename=build_output_name(name, "-audio", ext), mime_type="audio/wav")


def blend_tracks(
    engine: MediaEngine,
    primary: bytes,
    primary_name: str,
    secondary: bytes,
    secondary_name: str,
    ratio: float = DEFAULT_BLEND_RATIO,
    on_progress: Optional[ProgressCallback] = None,
    should_cancel: Optional[CancelCheck] = None,
    progress_ceiling: float = 90.0,
) -> ToolResult:
    """
    Mix two audio files: primary at gain 1-ratio, secondary at gain ratio.

    Output is MP3 when the engine can encode it, WAV otherwise.
    """
    r = clamp_number(ratio, 0.0, 1.0)
    reporter = ProgressReporter(on_progress, progress_ceiling, should_cancel)
    a = decode(engine, primary, primary_name)
    reporter.check_cancelled()
    # the secondary track follows the primary rate so the two can be mixed
    b = decode(engine, secondary, secondary_name, sample_rate=a.sample_rate)
    reporter.check_cancelled()
    mixed = mix(a, b, 1.0 - r, r)

    container, codec, bitrate = pick_blend_format(engine, sample_rate=mixed.sample_rate, channels=mixed.channels)
    out = _write_pcm(engine, mixed, container, codec, bitrate, reporter)
    reporter.complete()

    ext = "." + container
    filename = f"{output_base(primary_name)}-{output_base(secondary_name)}-blend{ext}"
    return ToolResult(data=out, filename=filename, duration=mixed.duration, mime_type="audio/mpeg" if container == "mp3" else "audio/wav")


def compress_video(
    engine: MediaEngine,
    data: bytes,
    name: str,
    quality: Union[QualityValue, str, int],
    settings: Optional[EncodeSettings] = None,
    on_progress: Optional[ProgressCallback] = None,
    should_cancel: Optional[CancelCheck] = None,
    progress_ceiling: float = 90.0,
) -> ToolResult:
    """Re-encode at a bitrate resolved once from `quality`; audio at 128 kbps."""
    q = parse_quality(quality)
    base = settings or EncodeSettings()
    size, _duration = _source_info(engine, data, name)
    bitrate = resolve_video_bitrate(q, size, base.frame_rate, base.video_codec)
    log.info("compressing %s at %d bps", name or "input", bitrate)
    tuned = replace(base, video_bitrate=bitrate, audio_bitrate=COMPRESS_AUDIO_BITRATE)

    res = _compose_one(engine, data, name, ClipPlan(), tuned, on_progress, should_cancel, progress_ceiling)
    return _result(res, build_output_name(name, "-compressed", res.extension))


def soundtrack_duration(buffer: PCMBuffer) -> float:
    """Audio length rounded to 1/100 s and clamped to the image video range."""
    return clamp_number(round(buffer.duration, 2), MIN_IMAGE_VIDEO_SEC, MAX_IMAGE_VIDEO_SEC)


def image_to_video(
    engine: MediaEngine,
    image: ImageInput,
    name: str,
    duration: float = 5,
    size: Optional[Size] = None,
    settings: Optional[EncodeSettings] = None,
    on_progress: Optional[ProgressCallback] = None,
    should_cancel: Optional[CancelCheck] = None,
    progress_ceiling: float = 90.0,
    audio: Optional[bytes] = None,
    audio_name: str = "",
    match_audio: bool = False,
) -> ToolResult:
    """
    Still image shown for `duration` seconds (1..60) at 30 fps.

    The image is fitted inside `size` (default: its own size, made even) on black.
    An optional `audio` file is trimmed or silence-padded to the video length;
    with `match_audio` the duration follows the audio instead.
    """
    soundtrack = decode(engine, audio, audio_name) if audio is not None else None
    if soundtrack is not None and match_audio:
        duration = soundtrack_duration(soundtrack)
    seconds = float(duration)
    if not (MIN_IMAGE_VIDEO_SEC <= seconds <= MAX_IMAGE_VIDEO_SEC):
        raise ValueError(f"Duration must be between {MIN_IMAGE_VIDEO_SEC} and {MAX_IMAGE_VIDEO_SEC} seconds.")
    img = _open_image(image, name)
    if size is None:
        size = Size(img.width, img.height)
    target = Size(ensure_even(min(size.width, MAX_DIMENSION)), ensure_even(min(size.height, MAX_DIMENSION)))
    frame = letterbox(img, target)

    s = settings or EncodeSettings()
    reporter = ProgressReporter(on_progress, progress_ceiling, should_cancel)
    count = int(round(seconds * IMAGE_VIDEO_FPS))
    step = 1.0 / IMAGE_VIDEO_FPS
    with _output_job(engine, s.container) as output:
        track = output.add_video_track(s.video_codec, s.video_bitrate, IMAGE_VIDEO_FPS)
        sound = None
        if soundtrack is not None:
            codec = pick_soundtrack_codec(
                engine, sample_rate=soundtrack.sample_rate, channels=soundtrack.channels, bitrate=SOUNDTRACK_BITRATE
            )
            sound = output.add_audio_track(codec, SOUNDTRACK_BITRATE, soundtrack.sample_rate, soundtrack.channels)
        output.start()
        for i in range(count):
            reporter.check_cancelled()
            with VideoSample(i * step, step, frame) as sample:
                track.add(sample)
            reporter.fraction(i + 1, count)
        if sound is not None:
            reporter.check_cancelled()
            sound.add_buffer(match_duration(soundtrack, count * step), 0.0)
        reporter.check_cancelled()
        out = output.finalize()
        ext = output.extension
        mime = output.mime_type

    reporter.complete()
    return ToolResult(
        data=out,
        filename=build_output_name(name, f"-{seconds:g}s", ext),
        width=target.width,
        height=target.height,
        duration=count * step,
        mime_type=mime,
    )
