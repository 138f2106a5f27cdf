"""
Index Service - catalog synchronization and enrichment runs.

Coordinates:
- CatalogReconciler: mark-and-sweep passes over the configured roots
- CivitaiEnricher: registry enrichment of hashed files

Runs triggered over HTTP are detached asyncio tasks; `get_status()` reports
their progress.
"""
import asyncio
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from ...adapters.db.sqlite import Sqlite
from ...config import AppConfig
from ...shared import Result, get_logger, log_success
from ..catalog.items import ItemStore
from .fs_walker import FileSystemWalker
from .reconciler import CatalogReconciler

if TYPE_CHECKING:
    from ..civitai.enricher import CivitaiEnricher

logger = get_logger(__name__)


class IndexService:
    """
    Handles catalog synchronization and enrichment.

    A sync trigger while a pass is running starts another pass (passes are
    idempotent upserts) unless the caller asks for `exclusive`.
    """

    def __init__(
        self,
        db: Sqlite,
        config: AppConfig,
        *,
        reconciler: Optional[CatalogReconciler] = None,
        enricher: Optional["CivitaiEnricher"] = None,
    ):
        self.db = db
        self.config = config
        self.items = ItemStore(db)
        self.reconciler = reconciler or CatalogReconciler(
            db,
            walker=FileSystemWalker(config.walkdir_parallel),
            extensions=config.accepted_extensions,
        )
        self.enricher = enricher
        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()
        self._sync_running = 0
        self._enrich_task: Optional[asyncio.Task] = None
        self._status: Dict[str, Dict[str, Any]] = {
            "sync": {"running": False, "passes": 0, "progress": {}, "last_result": None, "last_error": None},
            "enrich": {"running": False, "runs": 0, "progress": {}, "last_result": None, "last_error": None},
        }

    @property
    def roots(self) -> Dict[str, Path]:
        return {label: Path(path) for label, path in self.config.model_paths.items()}

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ==================== Foreground operations ====================

    async def reload_from_disk(self, *, enrich: bool = False) -> Result[Dict[str, Any]]:
        """Run one reconciliation pass over every configured root, optionally followed by enrichment."""
        progress: Dict[str, Any] = {}
        self._status["sync"]["progress"] = progress
        result = await self.reconciler.run_pass(self.roots, counters=progress)
        if not result.ok or not enrich:
            return result
        data = dict(result.data or {})
        enriched = await self.update_model_info()
        data["enrich"] = enriched.data if enriched.ok else {"error": enriched.error, "code": enriched.code}
        return Result.Ok(data)

    async def update_model_info(self, labels: Optional[List[str]] = None) -> Result[Dict[str, Any]]:
        """Enrich every hashed file of the configured roots (or of `labels`)."""
        if self.enricher is None:
            return Result.Err("SERVICE_UNAVAILABLE", "Enrichment is not configured")
        rows = await self.items.list_hashed_files(labels or list(self.config.model_paths))
        if not rows.ok:
            return Result.Err(rows.code, rows.error or "Failed to list files")
        progress: Dict[str, Any] = {}
        self._status["enrich"]["progress"] = progress
        return await self.enricher.enrich_all(rows.data or [], counters=progress)

    async def clean(self) -> Result[Dict[str, int]]:
        """Sweep unchecked rows without walking the disk."""
        return await self.reconciler.sweep()

    # ==================== Background operations ====================

    async def start_background_sync(self, *, enrich: bool = False, exclusive: bool = False) -> Result[Dict[str, Any]]:
        async with self._lock:
            if exclusive and self._sync_running:
                return Result.Ok({"started": False, "running": True, "status": self._snapshot()})
            self._sync_running += 1
            self._status["sync"]["running"] = True
            self._track(asyncio.create_task(self._run_sync(enrich)))
            return Result.Ok({"started": True, "running": True, "status": self._snapshot()})

    async def _run_sync(self, enrich: bool) -> None:
        status = self._status["sync"]
        try:
            result = await self.reload_from_disk(enrich=enrich)
            status["passes"] += 1
            if result.ok:
                status["last_result"] = result.data
                status["last_error"] = None
                log_success(logger, f"Sync pass done: {result.data}")
            else:
                status["last_error"] = result.error
                logger.error("Sync pass failed: %s", result.error)
        except Exception as exc:
            status["last_error"] = str(exc)
            logger.exception("Sync pass crashed")
        finally:
            self._sync_running = max(0, self._sync_running - 1)
            status["running"] = self._sync_running > 0

    async def start_background_enrich(self) -> Result[Dict[str, Any]]:
        async with self._lock:
            if self._enrich_task and not self._enrich_task.done():
                return Result.Ok({"started": False, "running": True, "status": self._snapshot()})
            self._status["enrich"]["running"] = True
            self._enrich_task = asyncio.create_task(self._run_enrich())
            self._track(self._enrich_task)
            return Result.Ok({"started": True, "running": True, "status": self._snapshot()})

    async def _run_enrich(self) -> None:
        status = self._status["enrich"]
        try:
            result = await self.update_model_info()
            status["runs"] += 1
            if result.ok:
                status["last_result"] = result.data
                status["last_error"] = None
            else:
                status["last_error"] = result.error
                logger.error("Enrichment run failed: %s", result.error)
        except Exception as exc:
            status["last_error"] = str(exc)
            logger.exception("Enrichment run crashed")
        finally:
            status["running"] = False

    def _snapshot(self) -> Dict[str, Any]:
        return {key: {**value, "progress": dict(value.get("progress") or {})} for key, value in self._status.items()}

    async def get_status(self) -> Result[Dict[str, Any]]:
        self._status["sync"]["running"] = self._sync_running > 0
        self._status["enrich"]["running"] = bool(self._enrich_task and not self._enrich_task.done())
        return Result.Ok(self._snapshot())

    async def wait_idle(self) -> None:
        """Wait for every background run started so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def stop(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
