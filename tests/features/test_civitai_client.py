import asyncio
import json
from pathlib import Path

import pytest
from aiohttp import ClientConnectionError

from sdmm_backend.features.civitai.client import CivitaiClient


class _Content:
    def __init__(self, body: bytes):
        self._body = body

    async def iter_chunked(self, size: int):
        for i in range(0, len(self._body), size):
            yield self._body[i:i + size]


class _Response:
    def __init__(self, status=200, payload=None, body=b"", headers=None, raw_text=None):
        self.status = status
        self.headers = headers or {}
        self._payload = payload
        self._raw_text = raw_text
        self.content = _Content(body)

    async def json(self, content_type="application/json"):
        _ = content_type
        if self._raw_text is not None:
            return json.loads(self._raw_text)
        return self._payload

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class _Session:
    """Replays queued responses (or raises queued exceptions) in order."""

    def __init__(self, *responses):
        self._responses = list(responses)
        self.calls = []
        self.closed = False

    def get(self, url, headers=None, timeout=None):
        self.calls.append({"url": url, "headers": headers or {}, "timeout": timeout})
        item = self._responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self):
        self.closed = True


def _client(session, **kw) -> CivitaiClient:
    kw.setdefault("retry_backoff", 0.0)
    return CivitaiClient(session=session, **kw)


@pytest.mark.asyncio
async def test_lookup_success_sends_headers():
    session = _Session(_Response(payload={"id": 1, "model": {"name": "Dream"}}))
    client = _client(session, api_key="secret", base_url="https://example.test/api/v1/")

    res = await client.lookup_by_hash("ABCDEF0123")

    assert res.ok
    assert res.data["model"]["name"] == "Dream"
    call = session.calls[0]
    assert call["url"] == "https://example.test/api/v1/model-versions/by-hash/ABCDEF0123"
    assert call["headers"]["Authorization"] == "Bearer secret"
    assert "User-Agent" in call["headers"]


@pytest.mark.asyncio
async def test_lookup_without_key_sends_no_authorization():
    session = _Session(_Response(payload={}))
    await _client(session).lookup_by_hash("abcdef0123")
    assert "Authorization" not in session.calls[0]["headers"]


@pytest.mark.asyncio
async def test_lookup_rejects_malformed_id():
    session = _Session()
    res = await _client(session).lookup_by_hash("../etc")
    assert res.code == "INVALID_INPUT"
    assert session.calls == []


@pytest.mark.asyncio
async def test_lookup_404_is_not_found_without_retry():
    session = _Session(_Response(status=404))
    res = await _client(session, max_retries=3).lookup_by_hash("abcdef0123")
    assert res.code == "NOT_FOUND"
    assert len(session.calls) == 1


@pytest.mark.asyncio
async def test_lookup_retries_rate_limit_then_succeeds(monkeypatch):
    sleeps = []

    async def _sleep(delay):
        sleeps.append(delay)

    monkeypatch.setattr(asyncio, "sleep", _sleep)
    session = _Session(
        _Response(status=429, headers={"Retry-After": "2"}),
        _Response(status=503),
        _Response(payload={"id": 7}),
    )

    res = await _client(session, max_retries=2, retry_backoff=0.5).lookup_by_hash("abcdef0123")

    assert res.ok and res.data == {"id": 7}
    assert sleeps == [2.0, 1.0]


@pytest.mark.asyncio
async def test_lookup_gives_up_with_rate_limited():
    session = _Session(_Response(status=429), _Response(status=429))
    res = await _client(session, max_retries=1).lookup_by_hash("abcdef0123")
    assert res.code == "RATE_LIMITED"
    assert len(session.calls) == 2


@pytest.mark.asyncio
async def test_lookup_timeout_is_retried_then_reported():
    session = _Session(asyncio.TimeoutError(), asyncio.TimeoutError())
    res = await _client(session, max_retries=1).lookup_by_hash("abcdef0123")
    assert res.code == "TIMEOUT"


@pytest.mark.asyncio
async def test_lookup_connection_error_is_final():
    session = _Session(ClientConnectionError("refused"), _Response(payload={}))
    res = await _client(session, max_retries=2).lookup_by_hash("abcdef0123")
    assert res.code == "NETWORK_ERROR"
    assert len(session.calls) == 1


@pytest.mark.asyncio
async def test_lookup_bad_json_and_non_object():
    bad = await _client(_Session(_Response(raw_text="<html>"))).lookup_by_hash("abcdef0123")
    listed = await _client(_Session(_Response(payload=[1, 2]))).lookup_by_hash("abcdef0123")
    assert bad.code == "PARSE_ERROR"
    assert listed.code == "PARSE_ERROR"


@pytest.mark.asyncio
async def test_lookup_client_error_status_is_final():
    session = _Session(_Response(status=401), _Response(payload={}))
    res = await _client(session, max_retries=2).lookup_by_hash("abcdef0123")
    assert res.code == "NETWORK_ERROR"
    assert res.meta.get("status") == 401
    assert len(session.calls) == 1


@pytest.mark.asyncio
async def test_download_streams_to_destination(tmp_path: Path):
    body = b"\x89PNG" + b"0" * 200_000
    dest = tmp_path / "model.png"
    res = await _client(_Session(_Response(body=body))).download("https://img.test/a.png", dest)

    assert res.ok and res.data == dest
    assert dest.read_bytes() == body
    assert not (tmp_path / "model.png.part").exists()


@pytest.mark.asyncio
async def test_download_failure_leaves_no_partial_file(tmp_path: Path):
    dest = tmp_path / "model.png"
    res = await _client(_Session(_Response(status=404))).download("https://img.test/a.png", dest)

    assert res.code == "NOT_FOUND"
    assert not dest.exists()
    assert not (tmp_path / "model.png.part").exists()


@pytest.mark.asyncio
async def test_download_rejects_non_http_url(tmp_path: Path):
    res = await _client(_Session()).download("file:///etc/passwd", tmp_path / "x.png")
    assert res.code == "INVALID_INPUT"


@pytest.mark.asyncio
async def test_aclose_leaves_injected_session_open():
    session = _Session()
    client = _client(session)
    await client.aclose()
    assert session.closed is False
