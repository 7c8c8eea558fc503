from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol, TypeVar
from urllib.parse import urljoin

import aiohttp
from playwright.async_api import Error as PlaywrightError

from feewatch.core.browser_session import capabilities_for
from feewatch.core.errors import AcquisitionError
from feewatch.core.models import AcquiredDocument
from feewatch.core.utils import async_backoff_sleep, atomic_rename, utc_now_iso

logger = logging.getLogger(__name__)

T = TypeVar("T")

REDIRECT_STATUSES = {301, 302}


class DownloadStrategy(Protocol):
    async def download(self, page: Any, url: str) -> bytes: ...


class EventDownloadStrategy:
    """For engines that surface documents as download events (Firefox).

    Navigation to the document is started while a download listener is
    armed. Once navigation settles, the outcome is decided in a fixed order:
    a completed download wins, then a navigation response body, then (when
    navigation produced no response) the still-pending download listener
    gets the rest of the timeout. Navigation errors are not fatal on their
    own because Playwright aborts `goto` with an error when the target
    turns into a download.
    """

    def __init__(self, *, timeout_ms: int = 30_000) -> None:
        self._timeout_ms = timeout_ms

    async def download(self, page: Any, url: str) -> bytes:
        logger.info("Downloading %s (download event)", url)
        download_task = asyncio.ensure_future(page.wait_for_event("download", timeout=self._timeout_ms))
        nav_error: Exception | None = None
        response = None
        try:
            try:
                response = await page.goto(url, timeout=self._timeout_ms)
            except PlaywrightError as e:
                nav_error = e
                logger.debug("Navigation to %s ended with %s; waiting for download event", url, e)

            if download_task.done() and download_task.exception() is None:
                return await self._read_download(download_task.result())
            if response is not None:
                body = await response.body()
                logger.info("Downloaded %d bytes (navigation response)", len(body))
                return body
            try:
                download = await download_task
            except PlaywrightError as e:
                detail = f" (navigation error: {nav_error})" if nav_error else ""
                raise AcquisitionError(f"No download or response received{detail}", url=url) from e
            return await self._read_download(download)
        finally:
            if not download_task.done():
                download_task.cancel()
            try:
                await download_task
            except (asyncio.CancelledError, PlaywrightError):
                pass

    @staticmethod
    async def _read_download(download: Any) -> bytes:
        failure = await download.failure()
        if failure:
            raise AcquisitionError(f"Download failed: {failure}", url=getattr(download, "url", None))
        path = await download.path()
        body = Path(path).read_bytes()
        logger.info("Downloaded %d bytes (download event)", len(body))
        return body


class RequestDownloadStrategy:
    """Fetch through the page's context so cookies and headers ride along."""

    def __init__(self, *, timeout_ms: int = 30_000) -> None:
        self._timeout_ms = timeout_ms

    async def download(self, page: Any, url: str) -> bytes:
        logger.info("Downloading %s (context request)", url)
        try:
            response = await page.request.get(url, timeout=self._timeout_ms)
        except PlaywrightError as e:
            raise AcquisitionError(f"Request failed: {e}", url=url) from e
        if not response.ok:
            raise AcquisitionError(
                f"HTTP {response.status}: {response.status_text}",
                url=url,
                status=response.status,
            )
        body = await response.body()
        logger.info("Downloaded %d bytes", len(body))
        return body


def strategy_for(engine: str, *, timeout_ms: int = 30_000) -> DownloadStrategy:
    if capabilities_for(engine).event_downloads:
        return EventDownloadStrategy(timeout_ms=timeout_ms)
    return RequestDownloadStrategy(timeout_ms=timeout_ms)


async def retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int,
    *,
    base_seconds: float = 1.0,
    retry_on: tuple[type[BaseException], ...] = (AcquisitionError,),
) -> T:
    """Run `operation` up to `max_attempts` times with exponential backoff.

    Waits `2**attempt * base_seconds` between attempts and re-raises the last
    error unchanged once attempts run out. Errors outside `retry_on` are not
    retried.
    """

    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    last_exc: BaseException | None = None
    for attempt in range(max_attempts):
        try:
            return await operation()
        except retry_on as e:
            last_exc = e
            logger.warning("Attempt %d/%d failed: %s", attempt + 1, max_attempts, e)
            if attempt < max_attempts - 1:
                await async_backoff_sleep(attempt, base_seconds)

    assert last_exc is not None
    raise last_exc


class HttpFetcher:
    """Plain HTTP path for documents that don't need a browser session."""

    def __init__(
        self,
        *,
        session: aiohttp.ClientSession,
        user_agent: str,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._session = session
        self._headers = {
            "User-Agent": user_agent,
            "Accept": "application/pdf,application/octet-stream,text/html,*/*",
        }
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def download_to(self, url: str, dest: Path) -> Path:
        """Stream `url` into `dest`, leaving nothing behind on failure."""

        part_path = dest.with_name(f"{dest.name}.part")
        part_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            await self._request(url, part_path=part_path, follow_redirect=True)
        except BaseException:
            part_path.unlink(missing_ok=True)
            raise
        atomic_rename(part_path, dest)
        return dest

    async def fetch(self, url: str) -> AcquiredDocument:
        body = await self._request(url, part_path=None, follow_redirect=True)
        return AcquiredDocument(content=body, source_url=url, retrieved_at=utc_now_iso())

    async def _request(self, url: str, *, part_path: Path | None, follow_redirect: bool) -> bytes:
        redirect_to: str | None = None
        try:
            async with self._session.get(
                url,
                headers=self._headers,
                timeout=self._timeout,
                allow_redirects=False,
            ) as resp:
                if resp.status in REDIRECT_STATUSES and follow_redirect:
                    location = resp.headers.get("Location")
                    if not location:
                        raise AcquisitionError(f"HTTP {resp.status} without Location header", url=url, status=resp.status)
                    redirect_to = urljoin(url, location)
                elif resp.status != 200:
                    raise AcquisitionError(f"HTTP {resp.status}: {resp.reason}", url=url, status=resp.status)
                else:
                    return await self._read_body(resp, part_path)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise AcquisitionError(f"Request failed: {e!r}", url=url) from e

        logger.info("Redirected to %s", redirect_to)
        return await self._request(redirect_to, part_path=part_path, follow_redirect=False)

    @staticmethod
    async def _read_body(resp: aiohttp.ClientResponse, part_path: Path | None) -> bytes:
        if part_path is None:
            return await resp.read()
        chunks: list[bytes] = []
        with part_path.open("wb") as f:
            async for chunk in resp.content.iter_chunked(256 * 1024):
                if not chunk:
                    continue
                f.write(chunk)
                chunks.append(chunk)
        return b"".join(chunks)
