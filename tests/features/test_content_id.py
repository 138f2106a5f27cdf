from pathlib import Path

import pytest

from sdmm_backend.features.index import content_id as cid_mod
from sdmm_backend.features.index.content_id import CONTENT_ID_LENGTH, compute_content_id, file_state


def test_empty_file_content_id(tmp_path: Path) -> None:
    f = tmp_path / "empty.safetensors"
    f.write_bytes(b"")
    assert compute_content_id(f) == "e3b0c44298"


def test_known_digest_prefix(tmp_path: Path) -> None:
    f = tmp_path / "abc.ckpt"
    f.write_bytes(b"abc")
    out = compute_content_id(f)
    assert out == "ba7816bf8f"
    assert len(out) == CONTENT_ID_LENGTH


def test_content_id_independent_of_chunking(tmp_path: Path, monkeypatch) -> None:
    f = tmp_path / "big.pt"
    f.write_bytes(b"x" * 5000)
    whole = compute_content_id(f)
    monkeypatch.setattr(cid_mod, "CHUNK_SIZE", 7)
    assert compute_content_id(f) == whole


def test_content_id_changes_with_content(tmp_path: Path) -> None:
    f = tmp_path / "m.safetensors"
    f.write_bytes(b"one")
    first = compute_content_id(f)
    f.write_bytes(b"two")
    assert compute_content_id(f) != first


def test_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(OSError):
        compute_content_id(tmp_path / "nope.safetensors")


def test_file_state_tracks_size(tmp_path: Path) -> None:
    f = tmp_path / "m.safetensors"
    f.write_bytes(b"1234")
    state = file_state(f)
    mtime_ns, size = state.split(":")
    assert int(size) == 4
    assert int(mtime_ns) > 0
