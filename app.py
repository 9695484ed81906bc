from __future__ import annotations

import argparse
import logging
import sys
import threading
import time
from pathlib import Path
from typing import Callable, List, Optional

from framecut.config import ConfigStore
from framecut.errors import CompositionCancelled, FramecutError, UnsupportedInput
from framecut.ffmpeg import FFmpegEngine, FFmpegNotFound
from framecut.job_io import load_job, save_job
from framecut.model import Clip, Job, NormalizedRect, Size, new_id
from framecut.timeline import (
    add_clip_end,
    find_clip,
    insert_clip_before,
    move_clip_before,
    remove_clip,
    set_clip_speed,
    total_duration,
    trim_clip,
)
from framecut import tools

logging.basicConfig(level=logging.INFO)
log = logging.getLogger("framecut")


def _rect(raw: str) -> NormalizedRect:
    """"x,y,w,h" in 0..1 coordinates."""
    try:
        x, y, w, h = (float(p) for p in raw.split(","))
    except ValueError as ex:
        raise argparse.ArgumentTypeError(f"expected x,y,w,h in 0..1, got {raw!r}") from ex
    return NormalizedRect(x, y, w, h)


def _size(raw: str) -> Size:
    """"WxH" or a preset name."""
    if raw in tools.RESIZE_PRESETS:
        return tools.RESIZE_PRESETS[raw]
    try:
        w, h = raw.lower().split("x", 1)
        return Size(int(w), int(h))
    except ValueError as ex:
        presets = ", ".join(tools.RESIZE_PRESETS)
        raise argparse.ArgumentTypeError(f"expected WxH or one of {presets}, got {raw!r}") from ex


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="framecut", description="Edit and combine local video files.")
    p.add_argument("-o", "--output", help="output file or directory (default: last output dir, else cwd)")
    p.add_argument("--ffmpeg", help="path to ffmpeg (default: ./bin, then PATH)")
    p.add_argument("--ffprobe", help="path to ffprobe (default: ./bin, then PATH)")
    p.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = p.add_subparsers(dest="command", required=True)

    s = sub.add_parser("cut", help="keep a time range")
    s.add_argument("input")
    s.add_argument("start", type=float)
    s.add_argument("end", type=float)

    s = sub.add_parser("crop", help="crop to a normalized rect")
    s.add_argument("input")
    s.add_argument("rect", type=_rect, help="x,y,w,h in 0..1")

    s = sub.add_parser("resize", help="scale to WxH, a preset, or one side keeping the aspect")
    s.add_argument("input")
    s.add_argument("size", type=_size, nargs="?")
    locked = s.add_mutually_exclusive_group()
    locked.add_argument("--width", type=float, help="target width; height follows the source aspect")
    locked.add_argument("--height", type=float, help="target height; width follows the source aspect")

    s = sub.add_parser("gray", help="convert to grayscale")
    s.add_argument("input")

    s = sub.add_parser("watermark", help="overlay an image")
    s.add_argument("input")
    s.add_argument("image")
    s.add_argument("--rect", type=_rect, default=NormalizedRect(0.75, 0.75, 0.2, 0.2))
    s.add_argument("--opacity", type=float, default=1.0)

    s = sub.add_parser("speed", help="change playback speed")
    s.add_argument("input")
    presets = ", ".join(f"{v:g}" for v in tools.SPEED_PRESETS)
    s.add_argument("speed", type=float, help=f"multiplier, e.g. {presets}")

    s = sub.add_parser("merge", help="concatenate videos or run a job file")
    s.add_argument("inputs", nargs="*")
    s.add_argument("--job", help="job file to run")
    s.add_argument("--save-job", help="write the inputs as a job file instead of running")

    s = sub.add_parser("job", help="edit a saved merge job")
    s.add_argument("file")
    acts = s.add_subparsers(dest="action", required=True)
    acts.add_parser("list", help="show the clips and the composed length")
    a = acts.add_parser("add", help="add a clip at the end, or before another clip")
    a.add_argument("src")
    a.add_argument("--before", help="clip id, id prefix or 1-based position")
    a.add_argument("--duration", type=float, help="source length in seconds (default: probed)")
    a = acts.add_parser("move", help="move a clip before another clip, or to the end")
    a.add_argument("clip")
    a.add_argument("--before")
    a = acts.add_parser("remove", help="drop a clip")
    a.add_argument("clip")
    a = acts.add_parser("trim", help="set the source range of a clip")
    a.add_argument("clip")
    a.add_argument("start", type=float)
    a.add_argument("end", type=float)
    a = acts.add_parser("speed", help="set the playback speed of a clip")
    a.add_argument("clip")
    a.add_argument("speed", type=float)

    s = sub.add_parser("replace-audio", help="swap the soundtrack")
    s.add_argument("input")
    s.add_argument("audio")

    s = sub.add_parser("extract-audio", help="write the audio track as WAV")
    s.add_argument("input")

    s = sub.add_parser("blend", help="mix two audio files")
    s.add_argument("primary")
    s.add_argument("secondary")
    s.add_argument("--ratio", type=float, default=tools.DEFAULT_BLEND_RATIO)

    s = sub.add_parser("compress", help="re-encode at a quality level or bitrate")
    s.add_argument("input")
    s.add_argument("quality", help="very_low|low|medium|high|very_high or bits per second")

    s = sub.add_parser("image", help="turn a still image into a video")
    s.add_argument("input")
    s.add_argument("--duration", type=float, default=5.0)
    s.add_argument("--size", type=_size)
    s.add_argument("--audio", help="soundtrack, trimmed or padded to the video length")
    s.add_argument("--match-audio", action="store_true", help="use the soundtrack length as the duration")

    return p


def _read(path: str) -> bytes:
    return Path(path).read_bytes()


def _quality(raw: str):
    return int(raw) if raw.isdigit() else raw


def run_command(
    args: argparse.Namespace,
    engine: FFmpegEngine,
    cfg: ConfigStore,
    on_progress: Optional[Callable[[float], None]] = None,
    should_cancel: Optional[Callable[[], bool]] = None,
) -> tools.ToolResult:
    settings = cfg.encode_settings()
    kw = dict(on_progress=on_progress, should_cancel=should_cancel, progress_ceiling=cfg.progress_ceiling())
    cmd = args.command
    if cmd == "cut":
        return tools.cut_video(engine, _read(args.input), Path(args.input).name, args.start, args.end, settings, **kw)
    if cmd == "crop":
        return tools.crop_video(engine, _read(args.input), Path(args.input).name, args.rect, settings, **kw)
    if cmd == "resize":
        data, name = _read(args.input), Path(args.input).name
        size = args.size
        if args.width is not None:
            size = tools.locked_size(engine, data, name, args.width, "width")
        elif args.height is not None:
            size = tools.locked_size(engine, data, name, args.height, "height")
        if size is None:
            raise ValueError("resize needs WxH, a preset, --width or --height")
        return tools.resize_video(engine, data, name, size.width, size.height, settings, **kw)
    if cmd == "gray":
        return tools.gray_video(engine, _read(args.input), Path(args.input).name, settings, **kw)
    if cmd == "watermark":
        return tools.add_watermark(
            engine, _read(args.input), Path(args.input).name, _read(args.image), args.rect, args.opacity, settings, **kw
        )
    if cmd == "speed":
        return tools.change_speed(engine, _read(args.input), Path(args.input).name, args.speed, settings, **kw)
    if cmd == "merge":
        if args.job:
            return tools.merge_job(engine, load_job(args.job), **kw)
        return tools.merge_videos(engine, [(_read(p), Path(p).name) for p in args.inputs], settings, **kw)
    if cmd == "replace-audio":
        return tools.replace_audio(
            engine, _read(args.input), Path(args.input).name, _read(args.audio), Path(args.audio).name, settings, **kw
        )
    if cmd == "extract-audio":
        return tools.extract_audio(engine, _read(args.input), Path(args.input).name, **kw)
    if cmd == "blend":
        return tools.blend_tracks(
            engine, _read(args.primary), Path(args.primary).name, _read(args.secondary), Path(args.secondary).name,
            args.ratio, **kw
        )
    if cmd == "compress":
        return tools.compress_video(engine, _read(args.input), Path(args.input).name, _quality(args.quality), settings, **kw)
    if cmd == "image":
        audio = _read(args.audio) if args.audio else None
        return tools.image_to_video(
            engine, _read(args.input), Path(args.input).name, args.duration, args.size, settings, **kw,
            audio=audio, audio_name=Path(args.audio).name if args.audio else "", match_audio=args.match_audio,
        )
    raise ValueError(f"Unknown command: {cmd}")


def resolve_output_path(output: Optional[str], filename: str, cfg: ConfigStore) -> Path:
    if output:
        p = Path(output)
        return p / filename if p.is_dir() else p
    base = cfg.last_output_dir() or str(Path.cwd())
    return Path(base) / filename


def write_job_file(inputs: List[str], path: str, cfg: ConfigStore) -> Job:
    clips = [Clip(id=new_id(), src=str(Path(p).resolve())) for p in inputs]
    job = Job(clips=clips, settings=cfg.encode_settings())
    save_job(job, path)
    return job


def _clip_id(clips: List[Clip], ref: str) -> str:
    """Resolve a clip id, unique id prefix or 1-based position."""
    if find_clip(clips, ref) is not None:
        return ref
    if ref.isdigit() and 1 <= int(ref) <= len(clips):
        return clips[int(ref) - 1].id
    found = [c for c in clips if c.id.startswith(ref)]
    if len(found) != 1:
        raise ValueError(f"No single clip matches {ref!r}")
    return found[0].id


def format_job(job: Job) -> str:
    lines = []
    for i, c in enumerate(job.clips, 1):
        span = "whole"
        if c.trimmed:
            end = "end" if c.out_sec is None else f"{c.out_sec:.2f}s"
            span = f"{c.in_sec or 0.0:.2f}s-{end}"
        lines.append(f"{i:>3}  {c.id[:8]}  {c.name}  {span}  x{c.speed:g}")
    lines.append(f"{len(job.clips)} clips, {total_duration(job.clips):.2f}s of known length")
    return "\n".join(lines)


def edit_job(args: argparse.Namespace, probe_duration: Callable[[str], float]) -> Job:
    """
    Apply one `job` action to a job file and save it.

    Raises:
        ValueError: unknown clip reference or a rejected trim.
    """
    job = load_job(args.file)
    clips = job.clips
    action = args.action
    if action == "list":
        return job
    if action == "add":
        duration = args.duration if args.duration is not None else probe_duration(args.src)
        src = str(Path(args.src).resolve())
        if args.before:
            clips = insert_clip_before(clips, _clip_id(clips, args.before), src, duration)
        else:
            clips = add_clip_end(clips, src, duration)
    else:
        clip_id = _clip_id(clips, args.clip)
        if action == "move":
            clips = move_clip_before(clips, clip_id, _clip_id(clips, args.before) if args.before else "")
        elif action == "remove":
            clips = remove_clip(clips, clip_id)
        elif action == "speed":
            clips = set_clip_speed(clips, clip_id, args.speed)
        elif action == "trim":
            clips, msg = trim_clip(clips, clip_id, args.start, args.end)
            if clips is job.clips:
                raise ValueError(msg)
        else:
            raise ValueError(f"Unknown job action: {action}")
    job.clips = clips
    save_job(job, args.file)
    log.info("job saved: %s (%d clips, %.2fs)", args.file, len(clips), total_duration(clips))
    return job


def _probe_duration(args: argparse.Namespace, path: str) -> float:
    engine = FFmpegEngine(args.ffmpeg, args.ffprobe, project_root=Path(__file__).resolve().parent)
    with engine.open_input(_read(path), name=Path(path).name) as source:
        video = source.primary_video()
        if video is None:
            raise UnsupportedInput(f'"{Path(path).name}" does not contain a video track.')
        if not video.duration:
            raise ValueError(f"Unknown length for {Path(path).name}; pass --duration")
        return float(video.duration)


def _print_progress(pct: float) -> None:
    sys.stderr.write(f"\r{pct:5.1f}%")
    if pct >= 100.0:
        sys.stderr.write("\n")
    sys.stderr.flush()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    cfg = ConfigStore.default()

    if args.command == "merge" and args.save_job:
        job = write_job_file(args.inputs, args.save_job, cfg)
        log.info("job saved: %s (%d clips)", args.save_job, len(job.clips))
        return 0

    if args.command == "job":
        try:
            job = edit_job(args, lambda path: _probe_duration(args, path))
        except (FramecutError, ValueError, OSError) as ex:
            log.error("job %s failed: %s", args.action, ex)
            return 1
        if args.action == "list":
            print(format_job(job))
        return 0

    try:
        engine = FFmpegEngine(args.ffmpeg, args.ffprobe, project_root=Path(__file__).resolve().parent)
    except FFmpegNotFound as ex:
        log.error("%s", ex)
        return 2

    cancel_requested = threading.Event()
    outcome: dict = {}

    def _do_run() -> None:
        try:
            outcome["result"] = run_command(args, engine, cfg, _print_progress, cancel_requested.is_set)
        except CompositionCancelled:
            outcome["cancelled"] = True
        except Exception as ex:
            outcome["error"] = ex

    worker = threading.Thread(target=_do_run, name="framecut-job", daemon=True)
    worker.start()
    try:
        while worker.is_alive():
            time.sleep(0.1)
    except KeyboardInterrupt:
        log.info("cancelling...")
        cancel_requested.set()
        worker.join()

    if outcome.get("cancelled"):
        log.info("cancelled")
        return 130
    err = outcome.get("error")
    if err is not None:
        if isinstance(err, (FramecutError, ValueError, OSError)):
            log.error("%s failed: %s", args.command, err)
        else:
            log.error("%s failed", args.command, exc_info=err)
        return 1

    result: tools.ToolResult = outcome["result"]
    out_path = resolve_output_path(args.output, result.filename, cfg)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_bytes(result.data)
    cfg.set_last_output_dir(str(out_path))
    dims = f" {result.width}x{result.height}" if result.width else ""
    log.info("wrote %s (%d bytes%s)", out_path, len(result.data), dims)
    return 0


if __name__ == "__main__":
    sys.exit(main())
