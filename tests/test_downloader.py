from __future__ import annotations

import asyncio
from pathlib import Path
from types import SimpleNamespace

import aiohttp
import pytest
from aioresponses import aioresponses
from playwright.async_api import Error as PlaywrightError

from feewatch.core.downloader import (
    EventDownloadStrategy,
    HttpFetcher,
    RequestDownloadStrategy,
    retry,
    strategy_for,
)
from feewatch.core.errors import AcquisitionError, ExtractionError
from feewatch.core.utils import backoff_delay

PDF = b"%PDF-1.7\n%\xe2\xe3\xcf\xd3\n1 0 obj\n<<>>\nendobj\ntrailer\n<<>>\n%%EOF"


def test_backoff_delay_doubles() -> None:
    assert [backoff_delay(a, 1.0) for a in range(4)] == [1.0, 2.0, 4.0, 8.0]
    assert backoff_delay(2, 0.5) == 2.0


@pytest.mark.asyncio
async def test_retry_reraises_last_error_after_exhaustion() -> None:
    calls = 0

    async def op() -> bytes:
        nonlocal calls
        calls += 1
        raise AcquisitionError(f"timeout {calls}")

    with pytest.raises(AcquisitionError, match="timeout 3"):
        await retry(op, 3, base_seconds=0)
    assert calls == 3


@pytest.mark.asyncio
async def test_retry_returns_first_success() -> None:
    calls = 0

    async def op() -> bytes:
        nonlocal calls
        calls += 1
        if calls < 2:
            raise AcquisitionError("flaky")
        return PDF

    assert await retry(op, 3, base_seconds=0) == PDF
    assert calls == 2


@pytest.mark.asyncio
async def test_retry_does_not_retry_other_errors() -> None:
    calls = 0

    async def op() -> bytes:
        nonlocal calls
        calls += 1
        raise ExtractionError("bad document")

    with pytest.raises(ExtractionError):
        await retry(op, 3, base_seconds=0)
    assert calls == 1


@pytest.mark.asyncio
async def test_retry_rejects_zero_attempts() -> None:
    async def op() -> bytes:
        return PDF

    with pytest.raises(ValueError):
        await retry(op, 0)


def test_strategy_for_engine() -> None:
    assert isinstance(strategy_for("chromium"), RequestDownloadStrategy)
    assert isinstance(strategy_for("firefox"), EventDownloadStrategy)
    with pytest.raises(AcquisitionError):
        strategy_for("webkit")


class _FakeApiResponse:
    def __init__(self, status: int, body: bytes = b"", status_text: str = "") -> None:
        self.status = status
        self.ok = 200 <= status < 300
        self.status_text = status_text
        self._body = body

    async def body(self) -> bytes:
        return self._body


def _request_page(response: _FakeApiResponse) -> SimpleNamespace:
    async def get(url: str, timeout: float | None = None) -> _FakeApiResponse:
        return response

    return SimpleNamespace(request=SimpleNamespace(get=get))


@pytest.mark.asyncio
async def test_request_strategy_returns_body() -> None:
    page = _request_page(_FakeApiResponse(200, PDF))
    assert await RequestDownloadStrategy().download(page, "https://example.gov/fees.pdf") == PDF


@pytest.mark.asyncio
async def test_request_strategy_raises_on_http_error() -> None:
    page = _request_page(_FakeApiResponse(403, status_text="Forbidden"))
    with pytest.raises(AcquisitionError) as exc:
        await RequestDownloadStrategy().download(page, "https://example.gov/fees.pdf")
    assert exc.value.status == 403
    assert "HTTP 403" in str(exc.value)


class _FakeDownload:
    def __init__(self, path: Path, failure: str | None = None) -> None:
        self.url = "https://example.gov/fees.pdf"
        self._path = path
        self._failure = failure

    async def failure(self) -> str | None:
        return self._failure

    async def path(self) -> Path:
        return self._path


class _EventPage:
    def __init__(self, *, download=None, download_error=None, response=None, nav_error=None) -> None:
        self._download = download
        self._download_error = download_error
        self._response = response
        self._nav_error = nav_error

    async def wait_for_event(self, event: str, timeout: float | None = None):
        assert event == "download"
        if self._download is not None:
            await asyncio.sleep(0)
            return self._download
        if self._download_error is not None:
            await asyncio.sleep(0)
            raise self._download_error
        await asyncio.sleep(3600)

    async def goto(self, url: str, timeout: float | None = None):
        if self._nav_error is not None:
            raise self._nav_error
        return self._response


@pytest.mark.asyncio
async def test_event_strategy_download_after_navigation_error(tmp_path: Path) -> None:
    saved = tmp_path / "download.pdf"
    saved.write_bytes(PDF)
    page = _EventPage(download=_FakeDownload(saved), nav_error=PlaywrightError("Download is starting"))

    assert await EventDownloadStrategy().download(page, "https://example.gov/fees.pdf") == PDF


@pytest.mark.asyncio
async def test_event_strategy_falls_back_to_response_body() -> None:
    page = _EventPage(response=_FakeApiResponse(200, PDF))
    assert await EventDownloadStrategy().download(page, "https://example.gov/fees.pdf") == PDF


@pytest.mark.asyncio
async def test_event_strategy_no_download_and_no_response() -> None:
    page = _EventPage(
        download_error=PlaywrightError("Timeout 1000ms exceeded"),
        nav_error=PlaywrightError("net::ERR_ABORTED"),
    )
    with pytest.raises(AcquisitionError, match="No download or response received"):
        await EventDownloadStrategy(timeout_ms=1_000).download(page, "https://example.gov/fees.pdf")


@pytest.mark.asyncio
async def test_event_strategy_failed_download(tmp_path: Path) -> None:
    page = _EventPage(download=_FakeDownload(tmp_path / "x.pdf", failure="canceled"), nav_error=PlaywrightError("Download is starting"))
    with pytest.raises(AcquisitionError, match="Download failed"):
        await EventDownloadStrategy().download(page, "https://example.gov/fees.pdf")


@pytest.mark.asyncio
async def test_http_fetcher_follows_single_redirect(tmp_path: Path) -> None:
    url = "https://example.gov/fees"
    with aioresponses() as m:
        m.get(url, status=302, headers={"Location": "/docs/fees.pdf"})
        m.get("https://example.gov/docs/fees.pdf", status=200, body=PDF, headers={"Content-Type": "application/pdf"})
        async with aiohttp.ClientSession() as s:
            fetcher = HttpFetcher(session=s, user_agent="test-agent")
            dest = await fetcher.download_to(url, tmp_path / "fees.pdf")

    assert dest.read_bytes() == PDF
    assert not (tmp_path / "fees.pdf.part").exists()


@pytest.mark.asyncio
async def test_http_fetcher_fetch_returns_document() -> None:
    url = "https://example.gov/fees.pdf"
    with aioresponses() as m:
        m.get(url, status=200, body=PDF)
        async with aiohttp.ClientSession() as s:
            doc = await HttpFetcher(session=s, user_agent="test-agent").fetch(url)

    assert doc.content == PDF
    assert doc.source_url == url
    assert doc.retrieved_at


@pytest.mark.asyncio
async def test_http_fetcher_error_leaves_no_partial_file(tmp_path: Path) -> None:
    url = "https://example.gov/missing.pdf"
    with aioresponses() as m:
        m.get(url, status=404)
        async with aiohttp.ClientSession() as s:
            fetcher = HttpFetcher(session=s, user_agent="test-agent")
            with pytest.raises(AcquisitionError) as exc:
                await fetcher.download_to(url, tmp_path / "missing.pdf")

    assert exc.value.status == 404
    assert not (tmp_path / "missing.pdf").exists()
    assert not (tmp_path / "missing.pdf.part").exists()


@pytest.mark.asyncio
async def test_http_fetcher_redirect_without_location() -> None:
    url = "https://example.gov/fees"
    with aioresponses() as m:
        m.get(url, status=301)
        async with aiohttp.ClientSession() as s:
            with pytest.raises(AcquisitionError, match="without Location"):
                await HttpFetcher(session=s, user_agent="test-agent").fetch(url)
