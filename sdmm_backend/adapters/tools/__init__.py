"""Command-line tool adapters."""
from .ffmpeg import FFmpeg
from .ffprobe import FFProbe

__all__ = ["FFmpeg", "FFProbe"]
