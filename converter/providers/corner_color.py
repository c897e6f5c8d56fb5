import io
import logging
from typing import List, Tuple

import numpy as np
from PIL import Image, UnidentifiedImageError

from ..app import config
from ..app.errors import ColorSamplingError, EncodingError
from .ffmpeg import run_capture

logger = logging.getLogger("webm-converter.worker")

PATCH_SIZE = 20
MARGIN = 10
# The source sampled at 0.5s first; short clips fall back to their midpoint.
SAMPLE_AT_SECONDS = 0.5


def corner_patches(frame: np.ndarray, patch: int = PATCH_SIZE, margin: int = MARGIN) -> List[np.ndarray]:
    """Cut the four corner regions (TL, TR, BL, BR) out of an HxWx3 frame.

    Patch and margin shrink together on frames too small to hold them, down
    to a single pixel in each corner.
    """
    if frame.ndim != 3 or frame.shape[2] < 3 or frame.shape[0] == 0 or frame.shape[1] == 0:
        raise ColorSamplingError(f"unexpected frame shape {frame.shape}")
    h, w = frame.shape[:2]
    limit = min(h, w)
    while patch > 1 and 2 * (patch + margin) > limit:
        patch = max(1, patch // 2)
        margin = margin // 2
    if 2 * (patch + margin) > limit:
        margin = 0
    top, left = margin, margin
    bottom, right = h - margin - patch, w - margin - patch
    return [
        frame[top:top + patch, left:left + patch, :3],
        frame[top:top + patch, right:right + patch, :3],
        frame[bottom:bottom + patch, left:left + patch, :3],
        frame[bottom:bottom + patch, right:right + patch, :3],
    ]


def dominant_corner_color(frame: np.ndarray) -> Tuple[int, int, int]:
    """Average each corner, then take the per-channel median across corners.

    The median keeps one corner covered by the subject from dragging the
    backdrop color off.
    """
    means = np.array(
        [p.reshape(-1, 3).astype(np.float64).mean(axis=0) for p in corner_patches(frame)]
    )
    r, g, b = np.clip(np.rint(np.median(means, axis=0)), 0, 255).astype(int)
    return int(r), int(g), int(b)


def format_color(rgb: Tuple[int, int, int]) -> str:
    r, g, b = rgb
    return f"0x{r:02X}{g:02X}{b:02X}"


def decode_frame(png_bytes: bytes) -> np.ndarray:
    if not png_bytes:
        raise ColorSamplingError("no frame decoded")
    try:
        img = Image.open(io.BytesIO(png_bytes)).convert("RGB")
    except (UnidentifiedImageError, OSError) as e:
        raise ColorSamplingError(f"could not decode frame: {e}") from e
    return np.array(img)


class CornerColorSampler:
    """Best-effort backdrop color estimate for chroma-key callers."""

    def __init__(
        self,
        ffmpeg_bin: str = config.FFMPEG_BIN,
        timeout: float = config.SAMPLE_TIMEOUT_SECONDS,
    ):
        self.ffmpeg_bin = ffmpeg_bin
        self.timeout = timeout

    async def extract_frame(self, input_path: str, at_seconds: float) -> np.ndarray:
        cmd = [
            self.ffmpeg_bin,
            "-v", "error",
            "-nostdin",
            "-ss", f"{at_seconds:.3f}",
            "-i", str(input_path),
            "-frames:v", "1",
            "-f", "image2pipe",
            "-vcodec", "png",
            "-",
        ]
        try:
            run = await run_capture(cmd, self.timeout)
        except EncodingError as e:
            raise ColorSamplingError(e.diagnostic) from e
        if run.returncode != 0:
            raise ColorSamplingError(f"frame extraction exited with status {run.returncode}")
        return decode_frame(run.stdout)

    async def sample(self, input_path: str, duration: float) -> str:
        at = min(SAMPLE_AT_SECONDS, max(0.0, duration / 2))
        try:
            frame = await self.extract_frame(input_path, at)
        except ColorSamplingError:
            if at == 0:
                raise
            logger.info("No frame at %.3fs in %s, retrying from the start", at, input_path)
            frame = await self.extract_frame(input_path, 0.0)
        return format_color(dominant_corner_color(frame))
