"""
Preview normalization: make sure a model's preview sits at its canonical
still-image path (`X.jpeg` by default).

Downloaded previews are sniffed by content, not by extension, because the
registry serves videos under image URLs and vice versa.
"""
import asyncio
import os
from pathlib import Path
from typing import Any, Dict, Optional

from PIL import Image, UnidentifiedImageError

from ...adapters.tools import FFmpeg, FFProbe
from ...shared import ErrorCode, PreviewKind, Result, get_logger

logger = get_logger(__name__)

VIDEO_ASIDE_EXT = ".mp4"


def _is_image(path: Path) -> bool:
    try:
        with Image.open(path) as im:
            im.verify()
        return True
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError):
        return False


class ThumbnailPipeline:
    def __init__(self, ffprobe: Optional[FFProbe] = None, ffmpeg: Optional[FFmpeg] = None):
        self.ffprobe = ffprobe or FFProbe()
        self.ffmpeg = ffmpeg or FFmpeg()

    async def sniff(self, path: Path) -> PreviewKind:
        if await asyncio.to_thread(_is_image, path):
            return "image"
        probe = await self.ffprobe.ahas_video_stream(str(path))
        if probe.ok and probe.data:
            return "video"
        if not probe.ok:
            logger.debug("ffprobe could not classify %s: %s", path, probe.error)
        return "unknown"

    async def normalize(self, asset_path: Path, canonical_path: Path, overwrite: bool = False) -> Result[Dict[str, Any]]:
        """
        Bring `asset_path` to `canonical_path`.

        - image: renamed onto the canonical path;
        - video: one frame extracted to the canonical path, the video is kept
          (moved aside to `X.mp4` first when it was saved at the canonical path);
        - unknown: left untouched.

        Tool failures are logged and reported through `action`, not as errors.
        """
        asset = Path(asset_path)
        canonical = Path(canonical_path)
        if not asset.is_file():
            return Result.Err(ErrorCode.NOT_FOUND, f"Preview asset not found: {asset.name}")

        kind = await self.sniff(asset)
        out: Dict[str, Any] = {"kind": kind, "asset": str(asset), "canonical": str(canonical)}

        if kind == "image":
            if asset == canonical:
                return Result.Ok({**out, "action": "kept"})
            if canonical.exists() and not overwrite:
                return Result.Ok({**out, "action": "skipped"})
            try:
                os.replace(asset, canonical)
            except OSError as exc:
                return Result.Err(ErrorCode.IO_ERROR, f"Failed to rename preview: {exc}")
            return Result.Ok({**out, "asset": str(canonical), "action": "renamed"})

        if kind == "video":
            return await self._normalize_video(asset, canonical, overwrite, out)

        logger.info("Preview %s is neither image nor video, left as is", asset.name)
        return Result.Ok({**out, "action": "ignored"})

    async def _normalize_video(
        self, asset: Path, canonical: Path, overwrite: bool, out: Dict[str, Any]
    ) -> Result[Dict[str, Any]]:
        video = asset
        if asset == canonical:
            video = canonical.with_suffix(VIDEO_ASIDE_EXT)
            try:
                os.replace(asset, video)
            except OSError as exc:
                return Result.Err(ErrorCode.IO_ERROR, f"Failed to move video preview aside: {exc}")
            out["asset"] = str(video)
        elif canonical.exists() and not overwrite:
            return Result.Ok({**out, "action": "skipped"})

        frame = await self.ffmpeg.extract_frame(video, canonical)
        if not frame.ok:
            logger.warning("Frame extraction failed for %s: %s", video.name, frame.error)
            return Result.Ok({**out, "action": "extract_failed", "error": frame.error, "error_code": frame.code})
        return Result.Ok({**out, "action": "extracted"})
