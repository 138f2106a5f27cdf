"""
Soft delete: move a model and its sidecars into the root's trash directory
and drop its catalog row. Emptying the trash removes those directories.
"""
import asyncio
import shutil
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping

from ...adapters.db.sqlite import Sqlite
from ...shared import DEFAULT_MODEL_EXTENSIONS, ErrorCode, Result, get_logger, log_success
from ..catalog.items import ItemStore, parent_path
from ..thumbnails.pipeline import VIDEO_ASIDE_EXT

logger = get_logger(__name__)

DEFAULT_TRASH_DIR = ".trash"


def _move(src: Path, dst: Path) -> None:
    dst.parent.mkdir(parents=True, exist_ok=True)
    if dst.is_file():
        dst.unlink()
    shutil.move(str(src), str(dst))


class TrashService:
    def __init__(
        self,
        db: Sqlite,
        base_paths: Mapping[str, Any],
        *,
        trash_dir: str = DEFAULT_TRASH_DIR,
        metadata_ext: str = "json",
        preview_ext: str = "jpeg",
        extensions: Iterable[str] = DEFAULT_MODEL_EXTENSIONS,
    ):
        self.db = db
        self.items = ItemStore(db)
        self.base_paths = {str(k): Path(v) for k, v in (base_paths or {}).items()}
        self.trash_dir = str(trash_dir or DEFAULT_TRASH_DIR)
        self.metadata_ext = str(metadata_ext).lstrip(".")
        self.preview_ext = str(preview_ext).lstrip(".")
        self.extensions = frozenset(str(e).lower().lstrip(".") for e in extensions if e)

    def trash_path(self, label: str) -> Path:
        return self.base_paths[label] / self.trash_dir

    def is_model(self, item: Mapping[str, Any]) -> bool:
        if item.get("content_hash"):
            return True
        return Path(str(item.get("path") or "")).suffix.lower().lstrip(".") in self.extensions

    def _companions(self, model: Path) -> List[Path]:
        """The model file followed by the files that travel with it."""
        return [
            model,
            model.with_suffix(f".{self.metadata_ext}"),
            model.with_suffix(f".{self.preview_ext}"),
            model.with_suffix(VIDEO_ASIDE_EXT),
        ]

    async def soft_delete(self, item_id: int) -> Result[Dict[str, Any]]:
        """
        Move item `item_id` to `<base>/.trash/<relative dir>/`, then delete its row.

        A model takes its sidecar and previews along (missing ones are ignored);
        any other file is moved alone.
        """
        current = await self.items.get(item_id)
        if not current.ok:
            return Result.Err(current.code, current.error or "Failed to read item")
        if current.data is None:
            return Result.Err(ErrorCode.NOT_FOUND, f"Item not found: {item_id}")
        if current.data.get("is_dir"):
            return Result.Err(ErrorCode.INVALID_INPUT, "Only files can be moved to the trash")
        label = str(current.data.get("base_label") or "")
        if label not in self.base_paths:
            return Result.Err(ErrorCode.NOT_FOUND, f"Root is not configured: {label}")

        marked = await self.items.mark_unchecked(item_id)
        if not marked.ok:
            return Result.Err(marked.code, marked.error or "Failed to mark item")
        rel = str(marked.data["path"])
        base = self.base_paths[label]
        dest_dir = self.trash_path(label) / parent_path(rel)

        moved: List[str] = []
        sources = self._companions(base / rel) if self.is_model(current.data) else [base / rel]
        for src in sources:
            if not src.exists():
                continue
            try:
                await asyncio.to_thread(_move, src, dest_dir / src.name)
            except OSError as exc:
                logger.error("Failed to move %s to trash: %s", src.name, exc)
                return Result.Err(ErrorCode.TRASH_FAILED, f"Failed to move {src.name} to trash: {exc}", moved=moved)
            moved.append(src.name)

        deleted = await self.items.delete(item_id)
        if not deleted.ok:
            return Result.Err(deleted.code, deleted.error or "Failed to delete item row", moved=moved)
        logger.info("Moved %s/%s to trash (%d file(s))", label, rel, len(moved))
        return Result.Ok({"item_id": int(item_id), "root": label, "path": rel, "moved": moved, "trash_dir": str(dest_dir)})

    async def empty_trash(self) -> Result[Dict[str, Any]]:
        """Remove every root's trash directory; a failing root does not stop the others."""
        emptied: List[str] = []
        errors: Dict[str, str] = {}
        for label in self.base_paths:
            trash = self.trash_path(label)
            if not trash.is_dir():
                continue
            try:
                await asyncio.to_thread(shutil.rmtree, trash)
            except OSError as exc:
                logger.warning("Failed to empty trash of %s: %s", label, exc)
                errors[label] = str(exc)
                continue
            emptied.append(label)
        if emptied:
            log_success(logger, f"Emptied trash for {', '.join(emptied)}")
        return Result.Ok({"emptied": emptied, "errors": errors})
