"""
FileSystemWalker - bounded-parallel directory traversal for sync passes.

Each directory is listed by one task on a private thread pool; discovered
subdirectories are fed back as new tasks. Entries reach the async
reconciler through a thread-safe Queue terminated by a `None` sentinel.
"""
import asyncio
import os
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path
from queue import Empty, Full, Queue
from typing import AsyncIterator, Iterator, Optional

from ...config import WALK_MAX_WORKERS_CAP
from ...shared import get_logger

logger = get_logger(__name__)

_QUEUE_POLL_S = 0.25


@dataclass(frozen=True)
class WalkEntry:
    path: Path
    is_dir: bool
    depth: int


class FileSystemWalker:
    """
    Walks a directory tree with at most `max_workers` directories listed at once.

    The root itself is not yielded. Entries that fail (permission denied,
    vanished, dangling symlink) are skipped.
    """

    def __init__(self, max_workers: int = 4, *, skip_hidden: bool = True, follow_symlinks: bool = True) -> None:
        self._max_workers = max(1, min(WALK_MAX_WORKERS_CAP, int(max_workers or 1)))
        self._skip_hidden = bool(skip_hidden)
        self._follow_symlinks = bool(follow_symlinks)

    @property
    def max_workers(self) -> int:
        return self._max_workers

    # ------------------------------------------------------------------
    # Directory listing
    # ------------------------------------------------------------------

    def _classify(self, entry: os.DirEntry) -> Optional[bool]:
        """True for directory, False for file, None to skip."""
        try:
            if entry.is_symlink() and not self._follow_symlinks:
                return None
            if entry.is_dir(follow_symlinks=self._follow_symlinks):
                return True
            if entry.is_file(follow_symlinks=self._follow_symlinks):
                return False
        except OSError:
            return None
        return None

    def _scan_dir(self, directory: Path, depth: int) -> list[WalkEntry]:
        out: list[WalkEntry] = []
        try:
            with os.scandir(directory) as it:
                for entry in it:
                    if self._skip_hidden and entry.name.startswith("."):
                        continue
                    kind = self._classify(entry)
                    if kind is None:
                        logger.debug("Skipping entry %s", entry.path)
                        continue
                    out.append(WalkEntry(Path(entry.path), kind, depth))
        except OSError as exc:
            logger.debug("Cannot list %s: %s", directory, exc)
        return out

    @staticmethod
    def _real_dir(path: Path) -> Optional[str]:
        try:
            return os.path.realpath(path)
        except (OSError, ValueError):
            return None

    # ------------------------------------------------------------------
    # Walk
    # ------------------------------------------------------------------

    def walk(self, root: Path) -> Iterator[WalkEntry]:
        """
        Generator - lazily yield every entry below `root` in no particular order.
        """
        root = Path(root)
        if not root.is_dir():
            logger.warning("Walk root is not a directory: %s", root)
            return
        root_real = self._real_dir(root)

        pool = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="sdmm-walk")
        first = pool.submit(self._scan_dir, root, 1)
        # Resolved paths of the directories above each pending listing.
        ancestors: dict[Future, frozenset[str]] = {first: frozenset([root_real] if root_real else [])}
        pending: set[Future] = {first}
        try:
            while pending:
                done, pending = wait(pending, return_when=FIRST_COMPLETED)
                for fut in done:
                    chain = ancestors.pop(fut)
                    for entry in fut.result():
                        yield entry
                        if not entry.is_dir:
                            continue
                        real = self._real_dir(entry.path)
                        # A symlink back up the tree would loop; aliases elsewhere are walked.
                        if real is None or real in chain:
                            continue
                        child = pool.submit(self._scan_dir, entry.path, entry.depth + 1)
                        ancestors[child] = chain | {real}
                        pending.add(child)
        finally:
            for fut in pending:
                fut.cancel()
            pool.shutdown(wait=True)

    # ------------------------------------------------------------------
    # Walk + queue
    # ------------------------------------------------------------------

    @staticmethod
    def _put(q: "Queue[WalkEntry | None]", item: "WalkEntry | None", stop_event: threading.Event) -> bool:
        while True:
            try:
                q.put(item, timeout=_QUEUE_POLL_S)
                return True
            except Full:
                if stop_event.is_set():
                    return False

    def walk_and_enqueue(self, root: Path, stop_event: threading.Event, q: "Queue[WalkEntry | None]") -> None:
        """Producer running on an executor thread: walks `root` and pushes entries into `q`."""
        try:
            for entry in self.walk(root):
                if stop_event.is_set() or not self._put(q, entry, stop_event):
                    break
        except Exception:
            logger.warning("Filesystem walk failed for %s", root, exc_info=True)
        finally:
            self._put(q, None, stop_event)

    @staticmethod
    def drain_queue(
        q: "Queue[WalkEntry | None]",
        max_items: int,
        stop_event: threading.Event,
    ) -> list["WalkEntry | None"]:
        """Block for one item, then take up to `max_items` without blocking."""
        items: list[WalkEntry | None] = []
        while not items:
            try:
                items.append(q.get(timeout=_QUEUE_POLL_S))
            except Empty:
                if stop_event.is_set():
                    return [None]
        limit = max(1, int(max_items or 1))
        while len(items) < limit:
            try:
                items.append(q.get_nowait())
            except Empty:
                break
        return items

    async def iter_batches(self, root: Path, batch_size: int = 64) -> AsyncIterator[list[WalkEntry]]:
        """
        Async bridge: yield batches of entries without blocking the event loop.
        """
        q: "Queue[WalkEntry | None]" = Queue(maxsize=max(256, batch_size * 4))
        stop_event = threading.Event()
        loop = asyncio.get_running_loop()
        producer = loop.run_in_executor(None, self.walk_and_enqueue, Path(root), stop_event, q)
        try:
            finished = False
            while not finished:
                items = await asyncio.to_thread(self.drain_queue, q, batch_size, stop_event)
                batch: list[WalkEntry] = []
                for item in items:
                    if item is None:
                        finished = True
                        break
                    batch.append(item)
                if batch:
                    yield batch
        finally:
            stop_event.set()
            await producer

    async def iter_walk_async(self, root: Path) -> AsyncIterator[WalkEntry]:
        """Entry-at-a-time variant of `iter_batches`."""
        async for batch in self.iter_batches(root):
            for entry in batch:
                yield entry
