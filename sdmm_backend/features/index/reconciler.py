"""
Catalog reconciler: mark-and-sweep synchronization of the catalog with disk.

A pass clears every checked flag, walks each configured root marking what is
still present (creating rows and parent links on the way), then deletes what
stayed unchecked. Only the catalog is written; the filesystem is read-only here.
"""
import asyncio
import logging
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from ...adapters.db.sqlite import Sqlite
from ...shared import DEFAULT_MODEL_EXTENSIONS, ErrorCode, Result, get_logger, log_structured, timer
from ..catalog.items import ROOT_NODE_PATH, ItemStore, parent_path
from ..catalog.roots import RootStore
from .content_id import compute_content_id, file_state
from .fs_walker import FileSystemWalker, WalkEntry

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 64

COUNTER_KEYS = ("roots", "entries", "hashed", "reused", "skipped", "errors", "swept_items", "swept_roots")


def _new_counters() -> Dict[str, int]:
    return {key: 0 for key in COUNTER_KEYS}


class _RootContext:
    """Per-root state shared by the entry tasks of one walk."""

    __slots__ = ("label", "base", "base_id", "hash_states", "parents")

    def __init__(self, label: str, base: Path, base_id: int, root_node_id: int, hash_states: Dict[str, Tuple[str, str]]):
        self.label = label
        self.base = base
        self.base_id = base_id
        self.hash_states = hash_states
        self.parents: Dict[str, int] = {ROOT_NODE_PATH: root_node_id}


class CatalogReconciler:
    def __init__(
        self,
        db: Sqlite,
        *,
        walker: Optional[FileSystemWalker] = None,
        extensions: Iterable[str] = DEFAULT_MODEL_EXTENSIONS,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        self.db = db
        self.roots = RootStore(db)
        self.items = ItemStore(db)
        self.walker = walker or FileSystemWalker()
        self.extensions = frozenset(str(e).lower().lstrip(".") for e in extensions if e)
        self.batch_size = max(1, int(batch_size))

    def _log_event(self, pass_id: str, level: int, message: str, **context: Any) -> None:
        log_structured(logger, level, message, pass_id=pass_id, **context)

    def is_accepted(self, path: Path) -> bool:
        return path.suffix.lower().lstrip(".") in self.extensions

    # ------------------------------------------------------------------
    # Pass
    # ------------------------------------------------------------------

    async def run_pass(
        self,
        roots: Mapping[str, Any],
        *,
        counters: Optional[Dict[str, int]] = None,
    ) -> Result[Dict[str, int]]:
        """
        Synchronize the catalog with every root in `roots` (label -> base path).

        Args:
            roots: configured roots; labels not listed here are swept.
            counters: optional dict updated in place while the pass runs
                (lets a caller report progress).

        Returns:
            Result with the pass counters. A failed reset aborts the pass;
            a failing root or entry is logged and skipped.
        """
        stats = counters if counters is not None else {}
        stats.update(_new_counters())
        pass_id = uuid.uuid4().hex[:8]

        with timer("reconcile pass", logger) as elapsed:
            reset = await self._reset()
            if not reset.ok:
                self._log_event(pass_id, logging.ERROR, "Reset failed, pass aborted", error=reset.error)
                return Result.Err(ErrorCode.DB_ERROR, f"Failed to reset catalog: {reset.error}", counters=dict(stats))

            for label, base in roots.items():
                synced = await self._sync_root(str(label), Path(base), stats)
                if not synced.ok:
                    stats["errors"] += 1
                    self._log_event(pass_id, logging.WARNING, "Root skipped", root=label, error=synced.error)
                    continue
                stats["roots"] += 1

            swept = await self.sweep()
            if swept.ok:
                stats.update(swept.data or {})

        self._log_event(pass_id, logging.INFO, "Reconcile pass finished", elapsed=round(elapsed.get("elapsed", 0.0), 3), **stats)
        if not swept.ok:
            return Result.Err(swept.code, swept.error or "Sweep failed", counters=dict(stats))
        return Result.Ok(dict(stats))

    async def _reset(self) -> Result[int]:
        items = await self.items.reset_checked()
        if not items.ok:
            return items
        return await self.roots.reset_checked()

    async def sweep(self) -> Result[Dict[str, int]]:
        """Delete unchecked items, then unchecked roots."""
        items = await self.items.sweep_unchecked()
        if not items.ok:
            return Result.Err(ErrorCode.DB_ERROR, f"Failed to sweep items: {items.error}")
        roots = await self.roots.sweep_unchecked()
        if not roots.ok:
            return Result.Err(ErrorCode.DB_ERROR, f"Failed to sweep roots: {roots.error}")
        return Result.Ok({"swept_items": int(items.data or 0), "swept_roots": int(roots.data or 0)})

    # ------------------------------------------------------------------
    # Root
    # ------------------------------------------------------------------

    async def _sync_root(self, label: str, base: Path, stats: Dict[str, int]) -> Result[bool]:
        base_id = await self.roots.find_or_create(label)
        if not base_id.ok:
            return Result.Err(base_id.code, base_id.error or "Failed to register root")
        node = await self.items.find_or_create_node(base_id.data, ROOT_NODE_PATH, None)
        if not node.ok:
            return Result.Err(node.code, node.error or "Failed to create root node")

        states = await self.items.load_hash_states(base_id.data)
        if not states.ok:
            logger.warning("Could not load stored hashes for %s, rehashing: %s", label, states.error)
        ctx = _RootContext(label, base, base_id.data, node.data, states.data if states.ok else {})

        if not base.is_dir():
            logger.warning("Root %s does not exist or is not a directory: %s", label, base)

        async for batch in self.walker.iter_batches(base, self.batch_size):
            outcomes = await asyncio.gather(
                *(self._apply_entry(ctx, entry, stats) for entry in batch),
                return_exceptions=True,
            )
            for entry, outcome in zip(batch, outcomes):
                if isinstance(outcome, Exception):
                    stats["errors"] += 1
                    logger.warning("Unexpected failure for %s: %s", entry.path, outcome)
        return Result.Ok(True)

    # ------------------------------------------------------------------
    # Entry
    # ------------------------------------------------------------------

    async def _apply_entry(self, ctx: _RootContext, entry: WalkEntry, stats: Dict[str, int]) -> None:
        try:
            rel = entry.path.relative_to(ctx.base).as_posix()
        except ValueError:
            stats["skipped"] += 1
            logger.warning("Entry %s is outside root %s, skipped", entry.path, ctx.base)
            return
        stats["entries"] += 1

        content_hash: Optional[str] = None
        hash_state: Optional[str] = None
        if not entry.is_dir and self.is_accepted(entry.path):
            try:
                content_hash, hash_state = await self._identify(ctx, rel, entry.path, stats)
            except OSError as exc:
                stats["errors"] += 1
                logger.warning("Cannot hash %s, keeping stored identity: %s", entry.path, exc)
                known = ctx.hash_states.get(rel)
                if known:
                    hash_state, content_hash = known

        parent_id = await self._ensure_parent(ctx, parent_path(rel))
        if parent_id is None:
            stats["errors"] += 1
            return

        res = await self.items.upsert_entry(
            ctx.base_id,
            rel,
            parent_id,
            is_dir=entry.is_dir,
            content_hash=content_hash,
            hash_state=hash_state,
        )
        if not res.ok:
            stats["errors"] += 1
            logger.warning("Failed to record %s/%s: %s", ctx.label, rel, res.error)
            return
        if entry.is_dir:
            ctx.parents[rel] = int(res.data)

    async def _identify(self, ctx: _RootContext, rel: str, path: Path, stats: Dict[str, int]) -> Tuple[str, str]:
        state = await asyncio.to_thread(file_state, path)
        known = ctx.hash_states.get(rel)
        if known and known[0] == state and known[1]:
            stats["reused"] += 1
            return known[1], state
        content_hash = await asyncio.to_thread(compute_content_id, path)
        stats["hashed"] += 1
        return content_hash, state

    async def _ensure_parent(self, ctx: _RootContext, rel_dir: str) -> Optional[int]:
        """Id of the directory node `rel_dir`, creating it (and its ancestors) when missing."""
        cached = ctx.parents.get(rel_dir)
        if cached is not None:
            return cached
        grandparent = await self._ensure_parent(ctx, parent_path(rel_dir))
        if grandparent is None:
            return None
        node = await self.items.find_or_create_node(ctx.base_id, rel_dir, grandparent)
        if not node.ok:
            logger.warning("Failed to create parent node %s/%s: %s", ctx.label, rel_dir, node.error)
            return None
        ctx.parents[rel_dir] = int(node.data)
        return ctx.parents[rel_dir]
