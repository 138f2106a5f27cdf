"""
Civitai enrichment of catalog items.

For one model file `X.<ext>` this writes `X.json` (the registry document),
fetches the first preview into `X.<url ext>` and normalizes it to
`X.<preview_ext>`, derives tags, and stores the registry model name.
"""
import asyncio
import json
import logging
from pathlib import Path, PurePosixPath
from typing import Any, Dict, Iterable, List, Mapping, Optional
from urllib.parse import urlparse

from ...adapters.db.sqlite import Sqlite
from ...shared import ErrorCode, Result, get_logger, log_structured
from ..catalog.items import ItemStore
from ..index.content_id import compute_content_id, file_state
from ..tags.graph import TagGraph, normalize_tags
from ..thumbnails.pipeline import ThumbnailPipeline
from .client import CivitaiClient

logger = get_logger(__name__)

DEFAULT_PREVIEW_EXT = "jpeg"


def first_image_url(doc: Dict[str, Any]) -> Optional[str]:
    for image in doc.get("images") or []:
        if isinstance(image, dict) and image.get("url"):
            return str(image["url"])
    return None


def url_extension(url: str, default: str = DEFAULT_PREVIEW_EXT) -> str:
    suffix = PurePosixPath(urlparse(url).path).suffix.lstrip(".").lower()
    return suffix if suffix.isalnum() else default


def pick_file(doc: Dict[str, Any], content_id: Optional[str] = None) -> Dict[str, Any]:
    """The `files[]` entry matching `content_id`, else the primary one, else the first."""
    files = [f for f in doc.get("files") or [] if isinstance(f, dict)]
    if not files:
        return {}
    if content_id:
        wanted = content_id.lower()
        for f in files:
            hashes = f.get("hashes") or {}
            if str(hashes.get("AutoV2") or "").lower() == wanted:
                return f
    for f in files:
        if f.get("primary"):
            return f
    return files[0]


def derive_tags(doc: Dict[str, Any], extra_tags: Iterable[str] = (), content_id: Optional[str] = None) -> List[str]:
    """
    Tags implied by a registry document: model type, `nsfw`/`poi` flags,
    file format and precision, followed by `extra_tags`. Normalized, deduplicated.
    """
    model = doc.get("model") or {}
    meta = pick_file(doc, content_id).get("metadata") or {}
    raw: List[Any] = [model.get("type")]
    if model.get("nsfw"):
        raw.append("nsfw")
    if model.get("poi"):
        raw.append("poi")
    raw.append(meta.get("format"))
    raw.append(meta.get("fp"))
    raw.extend(extra_tags or ())
    return normalize_tags(t for t in raw if t)


def _write_json(path: Path, doc: Dict[str, Any]) -> None:
    path.write_text(json.dumps(doc, indent=2, ensure_ascii=False), encoding="utf-8")


class CivitaiEnricher:
    def __init__(
        self,
        db: Sqlite,
        client: CivitaiClient,
        *,
        base_paths: Optional[Mapping[str, Any]] = None,
        thumbnails: Optional[ThumbnailPipeline] = None,
        overwrite_thumbnail: bool = False,
        metadata_ext: str = "json",
        preview_ext: str = DEFAULT_PREVIEW_EXT,
    ):
        self.db = db
        self.client = client
        self.items = ItemStore(db)
        self.tags = TagGraph(db)
        self.thumbnails = thumbnails or ThumbnailPipeline()
        self.base_paths = {str(k): Path(v) for k, v in (base_paths or {}).items()}
        self.overwrite_thumbnail = bool(overwrite_thumbnail)
        self.metadata_ext = str(metadata_ext).lstrip(".")
        self.preview_ext = str(preview_ext).lstrip(".").lower()

    async def _ensure_content_id(self, item: Dict[str, Any], model_path: Path) -> Result[str]:
        existing = item.get("content_hash")
        if existing:
            return Result.Ok(str(existing))
        try:
            content_id = await asyncio.to_thread(compute_content_id, model_path)
            state = await asyncio.to_thread(file_state, model_path)
        except OSError as exc:
            return Result.Err(ErrorCode.IO_ERROR, f"Cannot hash {model_path.name}: {exc}")
        if item.get("id") is not None:
            stored = await self.items.set_content_hash(int(item["id"]), content_id, state)
            if not stored.ok:
                logger.warning("Could not store content id for item %s: %s", item.get("id"), stored.error)
        return Result.Ok(content_id)

    async def _fetch_preview(self, doc: Dict[str, Any], model_path: Path) -> Dict[str, Any]:
        canonical = model_path.with_suffix(f".{self.preview_ext}")
        if canonical.exists() and not self.overwrite_thumbnail:
            return {"action": "exists", "canonical": str(canonical)}
        url = first_image_url(doc)
        if not url:
            return {"action": "no_image"}

        asset = model_path.with_suffix(f".{url_extension(url, self.preview_ext)}")
        downloaded = await self.client.download(url, asset)
        if not downloaded.ok:
            logger.warning("Preview download failed for %s: %s", model_path.name, downloaded.error)
            return {"action": "download_failed", "error": downloaded.error, "error_code": downloaded.code}

        normalized = await self.thumbnails.normalize(asset, canonical, overwrite=self.overwrite_thumbnail)
        if not normalized.ok:
            logger.warning("Preview normalization failed for %s: %s", model_path.name, normalized.error)
            return {"action": "normalize_failed", "error": normalized.error, "error_code": normalized.code}
        return dict(normalized.data or {})

    async def enrich_item(
        self,
        item: Dict[str, Any],
        base_path: Path,
        extra_tags: Iterable[str] = (),
    ) -> Result[Dict[str, Any]]:
        """
        Enrich one file item.

        Args:
            item: catalog row (needs `id`, `path`; `content_hash` is computed when missing)
            base_path: filesystem path of the item's root
            extra_tags: additional tags to associate

        Returns:
            Result with the content id, sidecar path, preview outcome, tags and model name.
        """
        if item.get("is_dir"):
            return Result.Err(ErrorCode.INVALID_INPUT, "Directories cannot be enriched")
        model_path = Path(base_path) / str(item.get("path") or "")
        if not model_path.is_file():
            return Result.Err(ErrorCode.NOT_FOUND, f"Model file missing: {model_path.name}")

        content_id = await self._ensure_content_id(item, model_path)
        if not content_id.ok:
            return Result.Err(content_id.code, content_id.error or "Cannot compute content id")

        doc_res = await self.client.lookup_by_hash(content_id.data)
        if not doc_res.ok:
            return Result.Err(doc_res.code, doc_res.error or "Lookup failed")
        doc = doc_res.data or {}

        sidecar = model_path.with_suffix(f".{self.metadata_ext}")
        try:
            await asyncio.to_thread(_write_json, sidecar, doc)
        except OSError as exc:
            return Result.Err(ErrorCode.IO_ERROR, f"Failed to write {sidecar.name}: {exc}")

        preview = await self._fetch_preview(doc, model_path)

        tags = derive_tags(doc, extra_tags, content_id.data)
        model_name = (doc.get("model") or {}).get("name") or None
        if item.get("id") is not None:
            item_id = int(item["id"])
            tagged = await self.tags.add(item_id, tags)
            if not tagged.ok:
                return Result.Err(tagged.code, tagged.error or "Failed to tag item")
            if model_name:
                named = await self.items.set_model_name(item_id, str(model_name))
                if not named.ok:
                    return Result.Err(named.code, named.error or "Failed to store model name")

        return Result.Ok(
            {
                "item_id": item.get("id"),
                "content_id": content_id.data,
                "sidecar": str(sidecar),
                "preview": preview,
                "tags": tags,
                "model_name": model_name,
            }
        )

    async def enrich_all(
        self,
        items: Iterable[Dict[str, Any]],
        *,
        counters: Optional[Dict[str, Any]] = None,
    ) -> Result[Dict[str, Any]]:
        """
        Enrich many items concurrently (bounded by the client's concurrency cap).

        Per-item failures are counted and logged; the call itself only fails
        when nothing could be attempted.
        """
        stats = counters if counters is not None else {}
        stats.update({"total": 0, "enriched": 0, "not_found": 0, "failed": 0, "skipped": 0})
        gate = asyncio.Semaphore(self.client.concurrency)

        async def _one(item: Dict[str, Any]) -> None:
            base = self.base_paths.get(str(item.get("base_label") or ""))
            if base is None:
                stats["skipped"] += 1
                logger.debug("No base path for item %s (root %s)", item.get("id"), item.get("base_label"))
                return
            async with gate:
                res = await self.enrich_item(item, base)
            if res.ok:
                stats["enriched"] += 1
            elif res.code == ErrorCode.NOT_FOUND.value:
                stats["not_found"] += 1
                logger.info("No Civitai entry for %s", item.get("path"))
            else:
                stats["failed"] += 1
                logger.warning("Enrichment failed for %s: %s", item.get("path"), res.error)

        batch = [i for i in items or [] if not i.get("is_dir")]
        stats["total"] = len(batch)
        outcomes = await asyncio.gather(*(_one(i) for i in batch), return_exceptions=True)
        for item, outcome in zip(batch, outcomes):
            if isinstance(outcome, Exception):
                stats["failed"] += 1
                logger.warning("Unexpected enrichment failure for %s: %s", item.get("path"), outcome)

        log_structured(logger, logging.INFO, "Enrichment finished", **stats)
        return Result.Ok(dict(stats))
