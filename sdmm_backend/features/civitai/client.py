"""
Civitai REST client (aiohttp).

Endpoint used: GET {base_url}/model-versions/by-hash/{content_id}

Concurrency is capped with a semaphore shared by lookups and downloads.
Rate limiting (429), server errors (5xx) and timeouts are retried with
exponential backoff; every other status is final.
"""
from __future__ import annotations

import asyncio
import json
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout, ContentTypeError

from ...config import CIVITAI_BASE_URL, CIVITAI_USER_AGENT, CivitaiConfig
from ...shared import ErrorCode, Result, get_logger

logger = get_logger(__name__)

DOWNLOAD_CHUNK_BYTES = 64 * 1024
DEFAULT_RETRY_BACKOFF_S = 0.5
MAX_RETRY_AFTER_S = 30.0
_CONTENT_ID_RE = re.compile(r"^[0-9A-Fa-f]{8,64}$")


class _Retryable(Exception):
    def __init__(self, result: Result[Any], retry_after: Optional[float] = None):
        super().__init__(result.error or "retryable")
        self.result = result
        self.retry_after = retry_after


def _retry_after_seconds(raw: Optional[str]) -> Optional[float]:
    if not raw:
        return None
    try:
        return max(0.0, min(MAX_RETRY_AFTER_S, float(raw)))
    except (TypeError, ValueError):
        return None


class CivitaiClient:
    def __init__(
        self,
        api_key: str = "",
        *,
        base_url: str = CIVITAI_BASE_URL,
        timeout: float = 30.0,
        concurrency: int = 4,
        max_retries: int = 2,
        retry_backoff: float = DEFAULT_RETRY_BACKOFF_S,
        session: Optional[ClientSession] = None,
    ):
        self.api_key = str(api_key or "")
        self.base_url = str(base_url or CIVITAI_BASE_URL).rstrip("/")
        self.timeout = float(timeout)
        self.concurrency = max(1, int(concurrency))
        self.max_retries = max(0, int(max_retries))
        self.retry_backoff = max(0.0, float(retry_backoff))
        self._session = session
        self._owns_session = session is None
        self._semaphore: Optional[asyncio.Semaphore] = None

    @classmethod
    def from_config(cls, cfg: CivitaiConfig) -> "CivitaiClient":
        return cls(
            cfg.api_key,
            base_url=cfg.base_url,
            timeout=cfg.timeout,
            concurrency=cfg.concurrency,
            max_retries=cfg.max_retries,
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json", "User-Agent": CIVITAI_USER_AGENT}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _sem(self) -> asyncio.Semaphore:
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.concurrency)
        return self._semaphore

    def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession(timeout=ClientTimeout(total=self.timeout))
            self._owns_session = True
        return self._session

    async def aclose(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    # ------------------------------------------------------------------
    # Retry loop
    # ------------------------------------------------------------------

    def _status_error(self, status: int, what: str, retry_after: Optional[str] = None) -> Result[Any]:
        if status == 404:
            return Result.Err(ErrorCode.NOT_FOUND, f"{what}: not found on Civitai", status=status)
        if status == 429:
            raise _Retryable(
                Result.Err(ErrorCode.RATE_LIMITED, f"{what}: rate limited", status=status, retry_after=retry_after),
                _retry_after_seconds(retry_after),
            )
        if status >= 500:
            raise _Retryable(Result.Err(ErrorCode.NETWORK_ERROR, f"{what}: HTTP {status}", status=status))
        return Result.Err(ErrorCode.NETWORK_ERROR, f"{what}: HTTP {status}", status=status)

    async def _with_retries(self, what: str, attempt_fn) -> Result[Any]:
        last: Result[Any] = Result.Err(ErrorCode.NETWORK_ERROR, f"{what}: no attempt made")
        for attempt in range(self.max_retries + 1):
            delay: Optional[float] = None
            try:
                async with self._sem():
                    return await attempt_fn()
            except _Retryable as exc:
                last = exc.result
                delay = exc.retry_after
            except asyncio.TimeoutError:
                last = Result.Err(ErrorCode.TIMEOUT, f"{what}: timed out after {self.timeout}s")
            except ClientError as exc:
                logger.warning("%s failed: %s", what, exc)
                return Result.Err(ErrorCode.NETWORK_ERROR, f"{what}: {exc}")
            if attempt < self.max_retries:
                wait_s = delay if delay is not None else self.retry_backoff * (2 ** attempt)
                logger.debug("%s retry %d/%d in %.2fs (%s)", what, attempt + 1, self.max_retries, wait_s, last.error)
                await asyncio.sleep(wait_s)
        logger.warning("%s gave up: %s", what, last.error)
        return last

    # ------------------------------------------------------------------
    # API
    # ------------------------------------------------------------------

    async def lookup_by_hash(self, content_id: str) -> Result[Dict[str, Any]]:
        """Fetch the model-version document Civitai holds for `content_id`."""
        cid = str(content_id or "").strip()
        if not _CONTENT_ID_RE.match(cid):
            return Result.Err(ErrorCode.INVALID_INPUT, f"Invalid content id: {content_id!r}")
        url = f"{self.base_url}/model-versions/by-hash/{cid}"
        what = f"Lookup {cid}"

        async def _attempt() -> Result[Dict[str, Any]]:
            session = self._get_session()
            async with session.get(url, headers=self._headers(), timeout=ClientTimeout(total=self.timeout)) as resp:
                if resp.status != 200:
                    return self._status_error(resp.status, what, resp.headers.get("Retry-After"))
                try:
                    payload = await resp.json(content_type=None)
                except (ContentTypeError, json.JSONDecodeError, ValueError) as exc:
                    return Result.Err(ErrorCode.PARSE_ERROR, f"{what}: invalid JSON ({exc})")
            if not isinstance(payload, dict):
                return Result.Err(ErrorCode.PARSE_ERROR, f"{what}: expected a JSON object")
            return Result.Ok(payload)

        return await self._with_retries(what, _attempt)

    async def download(self, url: str, dest: Path) -> Result[Path]:
        """
        Stream `url` to `dest` through a `.part` file replaced on success.
        """
        if not str(url or "").startswith(("http://", "https://")):
            return Result.Err(ErrorCode.INVALID_INPUT, f"Unsupported URL: {url!r}")
        dest = Path(dest)
        tmp = dest.with_name(dest.name + ".part")
        what = f"Download {dest.name}"

        async def _attempt() -> Result[Path]:
            session = self._get_session()
            async with session.get(url, headers=self._headers(), timeout=ClientTimeout(total=self.timeout)) as resp:
                if resp.status != 200:
                    return self._status_error(resp.status, what, resp.headers.get("Retry-After"))
                try:
                    with tmp.open("wb") as f:
                        async for chunk in resp.content.iter_chunked(DOWNLOAD_CHUNK_BYTES):
                            f.write(chunk)
                    os.replace(tmp, dest)
                except OSError as exc:
                    tmp.unlink(missing_ok=True)
                    return Result.Err(ErrorCode.IO_ERROR, f"{what}: {exc}")
            return Result.Ok(dest)

        res = await self._with_retries(what, _attempt)
        if not res.ok:
            tmp.unlink(missing_ok=True)
        return res
