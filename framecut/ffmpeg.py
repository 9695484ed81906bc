"""
ffmpeg/ffprobe backed media engine.

Inputs are written to a private temp directory and decoded through pipes
(rgb24 frames, f32le audio). Outputs encode video through a long-running
ffmpeg process, collect audio as raw PCM and mux both on finalize().
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

import numpy as np

from .engine import (
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
from .errors import DecodeFailure, FramecutError, UnsupportedInput

log = logging.getLogger(__name__)

AUDIO_CHUNK_FRAMES = 1024

VIDEO_ENCODERS: Dict[str, str] = {
    "avc": "libx264",
    "hevc": "libx265",
    "vp8": "libvpx",
    "vp9": "libvpx-vp9",
    "av1": "libaom-av1",
}

AUDIO_ENCODERS: Dict[str, str] = {
    "aac": "aac",
    "opus": "libopus",
    "mp3": "libmp3lame",
    "vorbis": "libvorbis",
    "flac": "flac",
    "pcm-s16": "pcm_s16le",
    "pcm-s24": "pcm_s24le",
    "pcm-s32": "pcm_s32le",
    "pcm-f32": "pcm_f32le",
    "pcm-u8": "pcm_u8",
    "pcm-s8": "pcm_s8",
}

# ffprobe codec_name -> engine-neutral name
CODEC_NAMES: Dict[str, str] = {
    "h264": "avc",
    "hevc": "hevc",
    "vp8": "vp8",
    "vp9": "vp9",
    "av1": "av1",
    "aac": "aac",
    "opus": "opus",
    "mp3": "mp3",
    "vorbis": "vorbis",
    "flac": "flac",
    "pcm_s16le": "pcm-s16",
    "pcm_s24le": "pcm-s24",
    "pcm_s32le": "pcm-s32",
    "pcm_f32le": "pcm-f32",
    "pcm_u8": "pcm-u8",
    "pcm_s8": "pcm-s8",
}

# container -> ffmpeg muxer
MUXERS: Dict[str, str] = {
    "mp4": "mp4",
    "mov": "mov",
    "webm": "webm",
    "mkv": "matroska",
    "wav": "wav",
    "mp3": "mp3",
    "m4a": "ipod",
}


class FFmpegNotFound(FramecutError):
    """Raised when ffmpeg/ffprobe cannot be located."""
    pass


@dataclass(frozen=True)
class StreamInfo:
    index: int
    kind: str  # "video" | "audio"
    codec: str
    width: int = 0
    height: int = 0
    frame_rate: float = 0.0
    sample_rate: int = 0
    channels: int = 0
    duration: Optional[float] = None


@dataclass(frozen=True)
class MediaInfo:
    duration: float
    streams: Tuple[StreamInfo, ...] = ()

    @property
    def has_video(self) -> bool:
        return any(s.kind == "video" for s in self.streams)

    @property
    def has_audio(self) -> bool:
        return any(s.kind == "audio" for s in self.streams)


def _which(name: str, local_bin: Path) -> Optional[str]:
    local = local_bin / name
    if local.exists():
        return str(local)
    return shutil.which(name)


def resolve_ffmpeg_bins(project_root: Path) -> Tuple[str, str]:
    """Return (ffmpeg_path, ffprobe_path). Prefer ./bin, fallback to PATH."""
    local_bin = project_root / "bin"
    if os.name == "nt":
        ffmpeg = _which("ffmpeg.exe", local_bin) or _which("ffmpeg", local_bin)
        ffprobe = _which("ffprobe.exe", local_bin) or _which("ffprobe", local_bin)
    else:
        ffmpeg = _which("ffmpeg", local_bin)
        ffprobe = _which("ffprobe", local_bin)

    if not ffmpeg or not ffprobe:
        raise FFmpegNotFound(f"ffmpeg/ffprobe not found in {local_bin} or on PATH")
    return ffmpeg, ffprobe


def _parse_rate(raw: Any) -> float:
    """ffprobe rates look like "30000/1001"; 0 when unknown."""
    text = str(raw or "")
    try:
        if "/" in text:
            num, den = text.split("/", 1)
            den_f = float(den)
            return float(num) / den_f if den_f else 0.0
        return float(text)
    except ValueError:
        return 0.0


def _opt_float(raw: Any) -> Optional[float]:
    try:
        v = float(raw)
    except (TypeError, ValueError):
        return None
    return v if v > 0 else None


def probe_media(ffprobe_path: str, src: str) -> MediaInfo:
    """Use ffprobe to get duration and the video/audio streams."""
    cmd = [
        ffprobe_path,
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_format",
        "-show_streams",
        src,
    ]
    p = subprocess.run(cmd, capture_output=True, text=True, check=True)
    data = json.loads(p.stdout or "{}")

    fmt = data.get("format", {}) or {}
    dur = float(fmt.get("duration", 0.0) or 0.0)

    streams: List[StreamInfo] = []
    for s in data.get("streams", []) or []:
        kind = s.get("codec_type")
        raw_codec = str(s.get("codec_name") or "")
        codec = CODEC_NAMES.get(raw_codec, raw_codec)
        if kind == "video":
            # cover art shows up as a one-frame video stream
            if (s.get("disposition") or {}).get("attached_pic"):
                continue
            fps = _parse_rate(s.get("avg_frame_rate")) or _parse_rate(s.get("r_frame_rate")) or 30.0
            streams.append(
                StreamInfo(
                    index=int(s.get("index", len(streams))),
                    kind="video",
                    codec=codec,
                    width=int(s.get("width") or 0),
                    height=int(s.get("height") or 0),
                    frame_rate=fps,
                    duration=_opt_float(s.get("duration")) or _opt_float(dur),
                )
            )
        elif kind == "audio":
            streams.append(
                StreamInfo(
                    index=int(s.get("index", len(streams))),
                    kind="audio",
                    codec=codec,
                    sample_rate=int(s.get("sample_rate") or 48000),
                    channels=int(s.get("channels") or 2),
                    duration=_opt_float(s.get("duration")) or _opt_float(dur),
                )
            )

    return MediaInfo(duration=dur, streams=tuple(streams))


def _range_args(start: Optional[float], end: Optional[float]) -> Tuple[List[str], List[str]]:
    """(input args, output args) selecting [start, end) of an input."""
    pre: List[str] = []
    post: List[str] = []
    if start:
        pre += ["-ss", f"{start:.6f}"]
    if end is not None:
        post += ["-t", f"{max(0.0, end - (start or 0.0)):.6f}"]
    return pre, post


def _stderr_tail(raw: bytes, limit: int = 600) -> str:
    text = (raw or b"").decode("utf-8", errors="replace").strip()
    return text[-limit:]


class FFmpegVideoTrack(VideoTrack):
    def __init__(self, media: "FFmpegInput", info: StreamInfo) -> None:
        super().__init__(info.codec, info.width, info.height, info.frame_rate, info.duration)
        self.media = media
        self.info = info

    def samples(self, start: Optional[float] = None, end: Optional[float] = None) -> Iterator[VideoSample]:
        pre, post = _range_args(start, end)
        cmd = [
            self.media.ffmpeg_path,
            "-v",
            "error",
            "-nostdin",
            *pre,
            "-i",
            str(self.media.path),
            *post,
            "-map",
            f"0:{self.info.index}",
            "-an",
            "-r",
            f"{self.frame_rate:.6f}",
            "-f",
            "rawvideo",
            "-pix_fmt",
            "rgb24",
            "pipe:1",
        ]
        return self._read(cmd, float(start or 0.0))

    def _read(self, cmd: List[str], origin: float) -> Iterator[VideoSample]:
        w, h = self.width, self.height
        frame_bytes = w * h * 3
        step = 1.0 / self.frame_rate
        proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        count = 0
        try:
            while True:
                buf = proc.stdout.read(frame_bytes)
                if len(buf) < frame_bytes:
                    break
                frame = np.frombuffer(buf, dtype=np.uint8).reshape(h, w, 3)
                yield VideoSample(origin + count * step, step, frame)
                count += 1
            err = proc.stderr.read()
            if proc.wait() != 0:
                raise DecodeFailure(f"Video decode failed for {self.media.name or 'input'}: {_stderr_tail(err)}")
        finally:
            if proc.poll() is None:
                proc.kill()
                proc.wait()
            proc.stdout.close()
            proc.stderr.close()


class FFmpegAudioTrack(AudioTrack):
    def __init__(self, media: "FFmpegInput", info: StreamInfo) -> None:
        super().__init__(info.codec, info.sample_rate, info.channels, info.duration)
        self.media = media
        self.info = info

    def samples(self, start: Optional[float] = None, end: Optional[float] = None) -> Iterator[AudioSample]:
        pre, post = _range_args(start, end)
        cmd = [
            self.media.ffmpeg_path,
            "-v",
            "error",
            "-nostdin",
            *pre,
            "-i",
            str(self.media.path),
            *post,
            "-map",
            f"0:{self.info.index}",
            "-vn",
            "-ac",
            str(self.channels),
            "-ar",
            str(self.sample_rate),
            "-f",
            "f32le",
            "pipe:1",
        ]
        return self._read(cmd, float(start or 0.0))

    def _read(self, cmd: List[str], origin: float) -> Iterator[AudioSample]:
        ch = self.channels
        rate = self.sample_rate
        chunk_bytes = AUDIO_CHUNK_FRAMES * ch * 4
        proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        done = 0
        try:
            while True:
                buf = proc.stdout.read(chunk_bytes)
                usable = len(buf) - len(buf) % (ch * 4)
                if usable <= 0:
                    break
                pcm = np.frombuffer(buf[:usable], dtype="<f4").reshape(-1, ch).T.copy()
                yield AudioSample(origin + done / rate, None, pcm, sample_rate=rate)
                done += pcm.shape[1]
                if len(buf) < chunk_bytes:
                    break
            err = proc.stderr.read()
            if proc.wait() != 0 and done == 0:
                raise DecodeFailure(f"Audio decode failed for {self.media.name or 'input'}: {_stderr_tail(err)}")
        finally:
            if proc.poll() is None:
                proc.kill()
                proc.wait()
            proc.stdout.close()
            proc.stderr.close()


class FFmpegInput(MediaInput):
    def __init__(self, engine: "FFmpegEngine", data: bytes, name: str = "") -> None:
        super().__init__(name)
        self.ffmpeg_path = engine.ffmpeg_path
        self._dir = Path(tempfile.mkdtemp(prefix="framecut-in-"))
        suffix = Path(name).suffix if name else ""
        self.path = self._dir / f"source{suffix}"
        try:
            self.path.write_bytes(data)
            self.info = probe_media(engine.ffprobe_path, str(self.path))
        except subprocess.CalledProcessError as ex:
            self.dispose()
            raise UnsupportedInput(f'"{name or "Input"}" is not a readable media file.') from ex
        except BaseException:
            self.dispose()
            raise
        self._video = [FFmpegVideoTrack(self, s) for s in self.info.streams if s.kind == "video"]
        self._audio = [FFmpegAudioTrack(self, s) for s in self.info.streams if s.kind == "audio"]

    def video_tracks(self) -> List[VideoTrack]:
        return list(self._video)

    def audio_tracks(self) -> List[AudioTrack]:
        return list(self._audio)

    def _release(self) -> None:
        shutil.rmtree(self._dir, ignore_errors=True)


class FFmpegOutputVideoTrack(OutputVideoTrack):
    """
    Frames are placed on a constant frame-rate grid: gaps repeat the previous
    frame, frames landing on an already written slot are dropped.
    """

    def __init__(self, output: "FFmpegOutput", codec: str, bitrate: Optional[int], frame_rate: float) -> None:
        super().__init__(output, codec, bitrate, frame_rate)
        self.path = output.workdir / "video.mkv"
        self.frames_written = 0
        self._proc: Optional[subprocess.Popen] = None
        self._last: Optional[bytes] = None
        self._log = None

    def _spawn(self, width: int, height: int) -> None:
        out: "FFmpegOutput" = self.output
        encoder = VIDEO_ENCODERS.get(self.codec, self.codec)
        cmd = [
            out.ffmpeg_path,
            "-y",
            "-v",
            "error",
            "-f",
            "rawvideo",
            "-pix_fmt",
            "rgb24",
            "-s",
            f"{width}x{height}",
            "-r",
            f"{self.frame_rate:g}",
            "-i",
            "pipe:0",
            "-c:v",
            encoder,
        ]
        if self.bitrate:
            cmd += ["-b:v", str(int(self.bitrate))]
        cmd += ["-pix_fmt", "yuv420p", str(self.path)]
        self._log = open(out.workdir / "video.log", "wb")
        self._proc = subprocess.Popen(cmd, stdin=subprocess.PIPE, stdout=subprocess.DEVNULL, stderr=self._log)

    def _put(self, buf: bytes) -> None:
        try:
            self._proc.stdin.write(buf)
        except (BrokenPipeError, OSError) as ex:
            raise FramecutError(f"Video encoder stopped: {self._read_log()}") from ex
        self.frames_written += 1

    def _write(self, sample: VideoSample) -> None:
        if self._proc is None:
            self._spawn(sample.width, sample.height)
        slot = int(round(sample.timestamp * self.frame_rate))
        if slot < self.frames_written:
            return
        filler = self._last
        buf = np.ascontiguousarray(sample.frame, dtype=np.uint8).tobytes()
        while self.frames_written < slot:
            self._put(filler if filler is not None else buf)
        self._put(buf)
        self._last = buf

    def close(self) -> None:
        if self.closed:
            return
        super().close()
        if self._proc is None or self.output.state == "cancelled":
            return
        tail = int(round(self.last_end * self.frame_rate))
        while self._last is not None and self.frames_written < tail:
            self._put(self._last)
        self._proc.stdin.close()
        rc = self._proc.wait()
        self._log.close()
        if rc != 0:
            raise FramecutError(f"Video encoder failed: {self._read_log()}")

    def kill(self) -> None:
        if self._proc is not None and self._proc.poll() is None:
            self._proc.kill()
            self._proc.wait()
        if self._log is not None:
            self._log.close()

    def _read_log(self) -> str:
        try:
            return _stderr_tail((self.output.workdir / "video.log").read_bytes())
        except OSError:
            return ""


class FFmpegOutputAudioTrack(OutputAudioTrack):
    """Raw float32 PCM written at sample offsets; unwritten ranges read back as silence."""

    def __init__(
        self,
        output: "FFmpegOutput",
        codec: str,
        bitrate: Optional[int],
        sample_rate: Optional[int] = None,
        channels: Optional[int] = None,
    ) -> None:
        super().__init__(output, codec, bitrate, sample_rate, channels)
        self.path = output.workdir / "audio.f32"
        self.frames_written = 0
        self._fh = open(self.path, "w+b")

    def _write_pcm(self, pcm: np.ndarray, sample_rate: int, timestamp: float) -> None:
        data = _conform(np.asarray(pcm, dtype=np.float32), int(sample_rate), self.sample_rate, self.channels)
        offset = max(0, int(round(timestamp * self.sample_rate)))
        self._fh.seek(offset * self.channels * 4)
        self._fh.write(np.ascontiguousarray(data.T, dtype="<f4").tobytes())
        self.frames_written = max(self.frames_written, offset + data.shape[1])

    def close(self) -> None:
        if self.closed:
            return
        super().close()
        self._fh.close()


def _conform(pcm: np.ndarray, src_rate: int, dst_rate: int, channels: int) -> np.ndarray:
    """Resample (linear) and up/down-mix `pcm` of shape (channels, frames)."""
    if src_rate != dst_rate and pcm.shape[1] > 0:
        n = max(1, int(round(pcm.shape[1] * dst_rate / float(src_rate))))
        src_t = np.arange(pcm.shape[1]) / float(src_rate)
        dst_t = np.arange(n) / float(dst_rate)
        pcm = np.stack([np.interp(dst_t, src_t, row) for row in pcm]).astype(np.float32)
    have = pcm.shape[0]
    if have == channels:
        return pcm
    if channels == 1:
        return pcm.mean(axis=0, keepdims=True)
    if have == 1:
        return np.repeat(pcm, channels, axis=0)
    if have > channels:
        return pcm[:channels]
    return np.concatenate([pcm, np.repeat(pcm[-1:], channels - have, axis=0)], axis=0)


class FFmpegOutput(MediaOutput):
    def __init__(self, engine: "FFmpegEngine", container: str = "mp4") -> None:
        super().__init__(container)
        self.ffmpeg_path = engine.ffmpeg_path
        self.workdir = Path(tempfile.mkdtemp(prefix="framecut-out-"))

    def _make_video_track(self, codec: str, bitrate: Optional[int], frame_rate: float) -> OutputVideoTrack:
        return FFmpegOutputVideoTrack(self, codec, bitrate, frame_rate)

    def _make_audio_track(
        self,
        codec: str,
        bitrate: Optional[int],
        sample_rate: Optional[int],
        channels: Optional[int],
    ) -> OutputAudioTrack:
        return FFmpegOutputAudioTrack(self, codec, bitrate, sample_rate, channels)

    def build_mux_command(self, out_path: Path) -> List[str]:
        v: Optional[FFmpegOutputVideoTrack] = self.video_track
        a: Optional[FFmpegOutputAudioTrack] = self.audio_track
        has_v = v is not None and v.frames_written > 0
        has_a = a is not None and a.frames_written > 0

        args: List[str] = [self.ffmpeg_path, "-y", "-v", "error"]
        maps: List[str] = []
        if has_v:
            args += ["-i", str(v.path)]
            maps += ["-map", "0:v:0"]
        if has_a:
            args += ["-f", "f32le", "-ar", str(a.sample_rate), "-ac", str(a.channels), "-i", str(a.path)]
            maps += ["-map", f"{1 if has_v else 0}:a:0"]
        args += maps
        if has_v:
            args += ["-c:v", "copy"]
        if has_a:
            args += ["-c:a", AUDIO_ENCODERS.get(a.codec, a.codec)]
            if a.bitrate and not a.codec.startswith("pcm-"):
                args += ["-b:a", str(int(a.bitrate))]
        if self.container in ("mp4", "mov", "m4a"):
            args += ["-movflags", "+faststart"]
        args += ["-f", MUXERS[self.container], str(out_path)]
        return args

    def _finalize(self) -> bytes:
        try:
            v = self.video_track
            a = self.audio_track
            if (v is None or v.frames_written == 0) and (a is None or a.frames_written == 0):
                return b""
            out_path = self.workdir / f"out{self.extension}"
            p = subprocess.run(self.build_mux_command(out_path), capture_output=True)
            if p.returncode != 0:
                raise FramecutError(f"Muxing failed: {_stderr_tail(p.stderr)}")
            return out_path.read_bytes()
        finally:
            shutil.rmtree(self.workdir, ignore_errors=True)

    def _cancel(self) -> None:
        v = self.video_track
        if v is not None:
            v.kill()
        a = self.audio_track
        if a is not None:
            a.close()
        shutil.rmtree(self.workdir, ignore_errors=True)


class FFmpegEngine(MediaEngine):
    def __init__(
        self,
        ffmpeg_path: Optional[str] = None,
        ffprobe_path: Optional[str] = None,
        project_root: Optional[Path] = None,
    ) -> None:
        if not ffmpeg_path or not ffprobe_path:
            found_ffmpeg, found_ffprobe = resolve_ffmpeg_bins(project_root or Path.cwd())
            ffmpeg_path = ffmpeg_path or found_ffmpeg
            ffprobe_path = ffprobe_path or found_ffprobe
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self._encoders: Optional[Set[str]] = None

    def open_input(self, data: bytes, name: str = "") -> MediaInput:
        if not data:
            raise UnsupportedInput(f'"{name or "Input"}" is empty.')
        return FFmpegInput(self, data, name)

    def create_output(self, container: str = "mp4") -> MediaOutput:
        return FFmpegOutput(self, container)

    def encoders(self) -> Set[str]:
        """Encoder names reported by `ffmpeg -encoders` (cached)."""
        if self._encoders is None:
            p = subprocess.run(
                [self.ffmpeg_path, "-hide_banner", "-encoders"],
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                check=True,
            )
            names: Set[str] = set()
            for line in p.stdout.splitlines():
                parts = line.split()
                # " V....D libx264   H.264 ..." ; the legend lines use "=" as name
                if len(parts) >= 2 and len(parts[0]) == 6 and parts[1] != "=":
                    names.add(parts[1])
            self._encoders = names
        return self._encoders

    def can_encode(self, codec: str, **params: Any) -> bool:
        encoder = VIDEO_ENCODERS.get(codec) or AUDIO_ENCODERS.get(codec)
        if encoder is None:
            return False
        return encoder in self.encoders()
