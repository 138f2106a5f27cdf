"""
Executable resolution shared by the tool adapters.
"""
import shutil
from pathlib import Path
from typing import Optional


def is_safe_executable_token(raw: str) -> bool:
    if not raw:
        return False
    if "\x00" in raw or "\n" in raw or "\r" in raw:
        return False
    return not any(ch in raw for ch in ("&", "|", ";", ">", "<"))


def resolve_executable(bin_name: str, expected_prefix: str) -> Optional[str]:
    """
    Resolve a configured binary to an absolute path.

    Rejects shell metacharacters and anything whose file name does not start
    with `expected_prefix` (so `ffmpeg_bin` cannot point at an arbitrary program).
    """
    raw = (bin_name or "").strip()
    if not is_safe_executable_token(raw):
        return None
    resolved = shutil.which(raw)
    if not resolved:
        try:
            candidate = Path(raw)
            if candidate.is_file():
                resolved = str(candidate.resolve(strict=True))
        except (OSError, RuntimeError, ValueError):
            return None
    if not resolved:
        return None
    return resolved if Path(resolved).name.lower().startswith(expected_prefix) else None
