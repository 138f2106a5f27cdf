"""
Content identity: a short digest of a file's bytes.

The token is the first 10 hex characters of the SHA-256 digest, the "AutoV2"
convention Civitai indexes model versions by, so it doubles as a change
detector and as the registry lookup key.
"""
import hashlib
from pathlib import Path

CONTENT_ID_LENGTH = 10
CHUNK_SIZE = 1024 * 1024


def compute_content_id(path: Path) -> str:
    """
    Stream `path` through SHA-256 and return the truncated hex token.

    Raises:
        OSError: the file cannot be opened or read.
    """
    h = hashlib.sha256()
    with Path(path).open("rb") as f:
        while True:
            chunk = f.read(CHUNK_SIZE)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()[:CONTENT_ID_LENGTH]


def file_state(path: Path) -> str:
    """`mtime_ns:size` fingerprint used to skip rehashing unchanged files."""
    st = Path(path).stat()
    return f"{st.st_mtime_ns}:{st.st_size}"
