"""
FFprobe adapter used to sniff downloaded preview assets.
"""
import asyncio
import json
import os
from typing import List, Optional

from ...config import FFPROBE_BIN, TOOL_TIMEOUT
from ...shared import ErrorCode, Result, get_logger
from .executables import resolve_executable

logger = get_logger(__name__)


class FFProbe:
    """
    FFprobe wrapper.

    Never raises exceptions - always returns Result.
    """

    def __init__(self, bin_name: str = "ffprobe", timeout: Optional[float] = None):
        self.bin = bin_name or FFPROBE_BIN or "ffprobe"
        self.timeout = float(timeout) if timeout is not None else float(TOOL_TIMEOUT)
        self._resolved_bin = resolve_executable(self.bin, "ffprobe")

    def is_available(self) -> bool:
        return self._resolved_bin is not None

    def _build_cmd(self, path: str) -> List[str]:
        return [
            self._resolved_bin or self.bin,
            "-v", "error",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            path,
        ]

    async def aread(self, path: str) -> Result[dict]:
        """
        Read container/stream information for `path`.

        Returns:
            Result with a dict containing 'format', 'streams' and 'video_stream'
        """
        if not self.is_available():
            return Result.Err(ErrorCode.TOOL_MISSING, "ffprobe not found in PATH")

        try:
            process = await asyncio.create_subprocess_exec(
                *self._build_cmd(path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                close_fds=os.name != "nt",
            )
        except OSError as exc:
            logger.error("ffprobe spawn failed: %s", exc)
            return Result.Err(ErrorCode.FFPROBE_ERROR, str(exc))

        try:
            stdout_b, stderr_b = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.error("ffprobe timeout for %s", path)
            return Result.Err(ErrorCode.TIMEOUT, f"ffprobe timeout after {self.timeout}s")

        stdout = (stdout_b or b"").decode("utf-8", errors="replace")
        stderr = (stderr_b or b"").decode("utf-8", errors="replace")
        return self._parse_output(stdout, stderr, process.returncode, path)

    def _parse_output(self, stdout: str, stderr: str, returncode: Optional[int], path: str) -> Result[dict]:
        if returncode != 0:
            logger.debug("ffprobe error for %s: %s", path, stderr.strip())
            return Result.Err(ErrorCode.FFPROBE_ERROR, stderr.strip() or "ffprobe command failed")
        if not stdout.strip():
            return Result.Err(ErrorCode.FFPROBE_ERROR, "No ffprobe output")
        try:
            data = json.loads(stdout)
        except json.JSONDecodeError as exc:
            return Result.Err(ErrorCode.PARSE_ERROR, f"Failed to parse ffprobe output: {exc}")
        if not isinstance(data, dict):
            return Result.Err(ErrorCode.PARSE_ERROR, "Invalid ffprobe output format")
        streams = data.get("streams") or []
        return Result.Ok({
            "format": data.get("format") or {},
            "streams": streams,
            "video_stream": self._find_video_stream(streams),
        })

    @staticmethod
    def _find_video_stream(streams: list) -> Optional[dict]:
        for stream in streams:
            if not isinstance(stream, dict) or stream.get("codec_type") != "video":
                continue
            # Cover art in audio files is reported as a video stream with this flag
            if (stream.get("disposition") or {}).get("attached_pic"):
                continue
            return stream
        return None

    async def ahas_video_stream(self, path: str) -> Result[bool]:
        """Ok(True) when ffprobe reports a real (non cover-art) video stream."""
        res = await self.aread(path)
        if not res.ok:
            return Result.Err(res.code, res.error or "ffprobe failed")
        data = res.data or {}
        fmt = str((data.get("format") or {}).get("format_name") or "")
        # Still images are reported as single-frame "video"; the image sniff runs first.
        if fmt in ("image2", "png_pipe", "jpeg_pipe", "webp_pipe"):
            return Result.Ok(False)
        return Result.Ok(data.get("video_stream") is not None)
