import asyncio
import contextlib
import logging
import math
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional

from ..app import config
from ..app.errors import EncodingError
from ..app.models import ConversionOptions

logger = logging.getLogger("webm-converter.worker")

_PROGRESS_US_KEYS = ("out_time_us=", "out_time_ms=")  # ffmpeg reports both in microseconds


def truncate_diagnostic(text: str, limit: int = config.DIAGNOSTIC_LIMIT) -> str:
    """Keep the tail of an encoder log; the last lines carry the actual error."""
    text = (text or "").strip()
    if len(text) <= limit:
        return text
    return "..." + text[-max(0, limit - 3):]


def _parse_clock(value: str) -> Optional[float]:
    sign = 1.0
    if value.startswith("-"):
        sign, value = -1.0, value[1:]
    parts = value.split(":")
    if len(parts) != 3:
        return None
    try:
        h, m, s = int(parts[0]), int(parts[1]), float(parts[2])
    except ValueError:
        return None
    return sign * (h * 3600 + m * 60 + s)


def parse_progress_line(line: str) -> Optional[float]:
    """Return processed seconds from one `-progress` line, or None if it carries none."""
    line = line.strip()
    seconds = None
    for key in _PROGRESS_US_KEYS:
        if line.startswith(key):
            try:
                seconds = int(line[len(key):]) / 1_000_000
            except ValueError:
                return None
            break
    else:
        if line.startswith("out_time="):
            seconds = _parse_clock(line[len("out_time="):])
    if seconds is None:
        return None
    return max(0.0, seconds)


def compute_progress(processed: float, total: float) -> int:
    if not total or total <= 0:
        return 0
    return max(0, min(99, math.floor(100 * processed / total)))


@dataclass
class CompletedRun:
    returncode: int
    stdout: bytes
    stderr: bytes


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
    await proc.wait()


async def run_capture(cmd: List[str], timeout: float) -> CompletedRun:
    """Run a short-lived helper (ffprobe, frame grab) and collect its output."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise EncodingError(f"binary not found: {cmd[0]}") from e
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
    except asyncio.TimeoutError:
        await _terminate(proc)
        raise EncodingError(f"{cmd[0]} timed out after {timeout:g}s")
    except BaseException:
        await _terminate(proc)
        raise
    return CompletedRun(proc.returncode, stdout, stderr)


class _DiagnosticTail:
    def __init__(self, limit: int):
        self.limit = limit
        self._buf = bytearray()

    async def consume(self, stream: asyncio.StreamReader) -> None:
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                return
            self._buf.extend(chunk)
            # 4 bytes per char covers any utf-8 sequence
            overflow = len(self._buf) - self.limit * 4
            if overflow > 0:
                del self._buf[:overflow]

    def text(self) -> str:
        return truncate_diagnostic(self._buf.decode("utf-8", "replace"), self.limit)


class FfmpegEncoder:
    """VP9/Opus WebM encoder driven through the ffmpeg CLI."""

    def __init__(
        self,
        ffmpeg_bin: str = config.FFMPEG_BIN,
        ffprobe_bin: str = config.FFPROBE_BIN,
        threads: int = config.ENCODER_THREADS,
        probe_timeout: float = config.PROBE_TIMEOUT_SECONDS,
        diagnostic_limit: int = config.DIAGNOSTIC_LIMIT,
    ):
        self.ffmpeg_bin = ffmpeg_bin
        self.ffprobe_bin = ffprobe_bin
        self.threads = threads
        self.probe_timeout = probe_timeout
        self.diagnostic_limit = diagnostic_limit

    async def probe_duration(self, input_path: str) -> float:
        cmd = [
            self.ffprobe_bin,
            "-v", "error",
            "-show_entries", "format=duration",
            "-of", "default=noprint_wrappers=1:nokey=1",
            str(input_path),
        ]
        try:
            run = await run_capture(cmd, self.probe_timeout)
        except EncodingError as e:
            raise EncodingError(f"could not probe input duration: {e.diagnostic}") from e
        if run.returncode != 0:
            detail = truncate_diagnostic(run.stderr.decode("utf-8", "replace"), self.diagnostic_limit)
            raise EncodingError(f"could not probe input duration: {detail or 'ffprobe failed'}")
        raw = run.stdout.decode("utf-8", "replace").strip()
        try:
            duration = float(raw.splitlines()[0]) if raw else float("nan")
        except ValueError:
            duration = float("nan")
        if not math.isfinite(duration) or duration <= 0:
            raise EncodingError(f"could not probe input duration: unusable value {raw!r}")
        return duration

    def build_command(self, input_path: str, output_path: str, options: ConversionOptions) -> List[str]:
        return [
            self.ffmpeg_bin,
            "-hide_banner",
            "-nostdin",
            "-y",
            "-i", str(input_path),
            "-c:v", "libvpx-vp9",
            "-pix_fmt", "yuv420p",
            "-crf", str(options.crf),
            "-b:v", "0",
            "-deadline", "realtime",
            "-cpu-used", "5",
            "-row-mt", "1",
            "-threads", str(self.threads),
            "-tile-columns", "1",
            "-lag-in-frames", "0",
            "-c:a", "libopus",
            "-b:a", options.audio_bitrate,
            "-f", "webm",
            "-progress", "pipe:1",
            "-nostats",
            str(output_path),
        ]

    async def transcode(
        self, input_path: str, output_path: str, options: ConversionOptions
    ) -> AsyncIterator[float]:
        """Run the encoder, yielding processed seconds as ffmpeg reports them.

        The subprocess is killed if the caller stops iterating early or is
        cancelled. Raises EncodingError on a non-zero exit.
        """
        cmd = self.build_command(input_path, output_path, options)
        logger.info("Running ffmpeg: %s", " ".join(cmd))
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise EncodingError(f"encoder binary not found: {self.ffmpeg_bin}") from e

        tail = _DiagnosticTail(self.diagnostic_limit)
        stderr_task = asyncio.create_task(tail.consume(proc.stderr))
        exited = False
        try:
            async for raw in proc.stdout:
                processed = parse_progress_line(raw.decode("utf-8", "replace"))
                if processed is not None:
                    yield processed
            await stderr_task
            await proc.wait()
            exited = True
        finally:
            if not exited:
                stderr_task.cancel()
                await _terminate(proc)
                await asyncio.gather(stderr_task, return_exceptions=True)

        if proc.returncode != 0:
            raise EncodingError(
                f"ffmpeg exited with status {proc.returncode}: {tail.text() or 'no diagnostic output'}"
            )
