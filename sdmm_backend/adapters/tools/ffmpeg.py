"""
FFmpeg adapter: extracts a single still frame from a video.
"""
import asyncio
import os
from pathlib import Path
from typing import List, Optional

from ...config import FFMPEG_BIN, TOOL_TIMEOUT
from ...shared import ErrorCode, Result, get_logger
from .executables import resolve_executable

logger = get_logger(__name__)

# ffmpeg's `thumbnail` filter picks the most representative frame of each batch.
FRAME_FILTER = "thumbnail"


class FFmpeg:
    """
    FFmpeg wrapper.

    Never raises exceptions - always returns Result.
    """

    def __init__(self, bin_name: str = "ffmpeg", timeout: Optional[float] = None):
        self.bin = bin_name or FFMPEG_BIN or "ffmpeg"
        self.timeout = float(timeout) if timeout is not None else float(TOOL_TIMEOUT)
        self._resolved_bin = resolve_executable(self.bin, "ffmpeg")

    def is_available(self) -> bool:
        return self._resolved_bin is not None

    def _build_extract_cmd(self, src: Path, dst: Path) -> List[str]:
        return [
            self._resolved_bin or self.bin,
            "-hide_banner",
            "-loglevel", "error",
            "-y",
            "-i", str(src),
            "-vf", FRAME_FILTER,
            "-frames:v", "1",
            "-update", "1",
            str(dst),
        ]

    async def extract_frame(self, src: Path, dst: Path) -> Result[Path]:
        """
        Write one representative frame of `src` to `dst` (format from dst's extension).
        """
        if not self.is_available():
            return Result.Err(ErrorCode.TOOL_MISSING, "ffmpeg not found in PATH")

        try:
            process = await asyncio.create_subprocess_exec(
                *self._build_extract_cmd(src, dst),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                close_fds=os.name != "nt",
            )
        except OSError as exc:
            logger.error("ffmpeg spawn failed: %s", exc)
            return Result.Err(ErrorCode.FFMPEG_ERROR, str(exc))

        try:
            _, stderr_b = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.error("ffmpeg timeout for %s", src)
            return Result.Err(ErrorCode.TIMEOUT, f"ffmpeg timeout after {self.timeout}s")

        if process.returncode != 0:
            stderr = (stderr_b or b"").decode("utf-8", errors="replace").strip()
            logger.warning("ffmpeg failed for %s: %s", src, stderr)
            return Result.Err(ErrorCode.FFMPEG_ERROR, stderr or f"ffmpeg exited with {process.returncode}")
        if not dst.is_file():
            return Result.Err(ErrorCode.FFMPEG_ERROR, "ffmpeg produced no output")
        return Result.Ok(dst)
