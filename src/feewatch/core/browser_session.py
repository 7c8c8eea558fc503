from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from feewatch.core.config import ENGINE_CHROMIUM, ENGINE_FIREFOX, ScrapeSettings
from feewatch.core.errors import AcquisitionError
from feewatch.core.utils import random_delay

logger = logging.getLogger(__name__)


# Runs before any page script. Hides the webdriver flag, provides the
# window.chrome object real Chrome exposes, and answers notification
# permission queries the way a normal profile does.
STEALTH_INIT_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
window.chrome = { runtime: {}, loadTimes: function() {}, csi: function() {}, app: {} };
const originalQuery = window.navigator.permissions.query;
window.navigator.permissions.query = (parameters) => (
    parameters.name === 'notifications'
        ? Promise.resolve({ state: Notification.permission })
        : originalQuery(parameters)
);
"""

DEFAULT_HEADERS = {
    "Accept-Language": "en-US,en;q=0.9",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,application/pdf,*/*;q=0.8",
    "Upgrade-Insecure-Requests": "1",
}


@dataclass(frozen=True)
class EngineCapabilities:
    # True when the engine hands documents to us as download events rather
    # than letting us query authenticated bytes through the context.
    event_downloads: bool
    launch_args: tuple[str, ...] = ()


ENGINE_CAPABILITIES: dict[str, EngineCapabilities] = {
    ENGINE_CHROMIUM: EngineCapabilities(
        event_downloads=False,
        launch_args=(
            "--no-sandbox",
            "--disable-setuid-sandbox",
            "--disable-blink-features=AutomationControlled",
            "--disable-dev-shm-usage",
        ),
    ),
    ENGINE_FIREFOX: EngineCapabilities(event_downloads=True),
}


def capabilities_for(engine: str) -> EngineCapabilities:
    try:
        return ENGINE_CAPABILITIES[engine]
    except KeyError:
        raise AcquisitionError(f"Unsupported browser engine: {engine!r}") from None


@dataclass(frozen=True)
class StealthProfile:
    user_agent: str
    viewport: tuple[int, int]
    locale: str
    timezone_id: str
    extra_headers: Mapping[str, str] = field(default_factory=lambda: dict(DEFAULT_HEADERS))
    init_script: str = STEALTH_INIT_SCRIPT

    @classmethod
    def from_settings(cls, settings: ScrapeSettings) -> "StealthProfile":
        return cls(
            user_agent=settings.user_agent,
            viewport=(settings.viewport_width, settings.viewport_height),
            locale=settings.locale,
            timezone_id=settings.timezone_id,
        )


@dataclass
class Session:
    engine: str
    profile: StealthProfile
    timeout_ms: int
    driver: Any = None
    browser: Any = None
    context: Any = None
    pages: list[Any] = field(default_factory=list)
    closed: bool = False


DriverFactory = Callable[[], Awaitable[Any]]


async def _start_playwright() -> Any:
    return await async_playwright().start()


async def open_session(
    engine: str,
    profile: StealthProfile,
    *,
    headless: bool = True,
    timeout_ms: int = 30_000,
    driver_factory: DriverFactory | None = None,
) -> Session:
    caps = capabilities_for(engine)
    session = Session(engine=engine, profile=profile, timeout_ms=timeout_ms)
    logger.info("Launching %s (headless=%s)", engine, headless)
    try:
        session.driver = await (driver_factory or _start_playwright)()
        browser_type = getattr(session.driver, engine)
        session.browser = await browser_type.launch(
            headless=headless,
            args=list(caps.launch_args),
            timeout=timeout_ms,
        )
        session.context = await session.browser.new_context(
            user_agent=profile.user_agent,
            viewport={"width": profile.viewport[0], "height": profile.viewport[1]},
            locale=profile.locale,
            timezone_id=profile.timezone_id,
            permissions=[],
            accept_downloads=caps.event_downloads,
            extra_http_headers=dict(profile.extra_headers),
        )
        await session.context.add_init_script(profile.init_script)
    except Exception as e:
        await close_session(session)
        raise AcquisitionError(f"Failed to launch {engine}: {e}") from e
    return session


async def new_page(session: Session) -> Any:
    if session.closed or session.context is None:
        raise AcquisitionError("Browser session is not open")
    page = await session.context.new_page()
    page.set_default_timeout(session.timeout_ms)
    session.pages.append(page)
    return page


async def _release(label: str, closer: Callable[[], Awaitable[Any]]) -> None:
    try:
        await closer()
    except Exception as e:
        logger.debug("Ignoring error while closing %s: %s", label, e)


async def close_session(session: Session) -> None:
    """Release page(s), context, browser and driver in that order.

    Safe to call repeatedly and on sessions that failed halfway through
    :func:`open_session`.
    """

    if session.closed:
        return
    session.closed = True

    for page in reversed(session.pages):
        await _release("page", page.close)
    session.pages.clear()

    if session.context is not None:
        await _release("context", session.context.close)
        session.context = None
    if session.browser is not None:
        await _release("browser", session.browser.close)
        session.browser = None
        logger.info("Browser closed")
    if session.driver is not None:
        await _release("driver", session.driver.stop)
        session.driver = None


@asynccontextmanager
async def browser_session(
    engine: str,
    profile: StealthProfile,
    *,
    headless: bool = True,
    timeout_ms: int = 30_000,
    driver_factory: DriverFactory | None = None,
) -> AsyncIterator[Session]:
    session = await open_session(
        engine,
        profile,
        headless=headless,
        timeout_ms=timeout_ms,
        driver_factory=driver_factory,
    )
    try:
        yield session
    finally:
        await close_session(session)


async def goto(
    page: Any,
    url: str,
    *,
    timeout_ms: int,
    wait_until: str = "networkidle",
    pause_ms: tuple[int, int] = (500, 1500),
) -> Any:
    """Navigate like a person would: short random pause, then wait for the network to settle."""

    await random_delay(*pause_ms)
    logger.info("Navigating to %s", url)
    try:
        response = await page.goto(url, wait_until=wait_until, timeout=timeout_ms)
    except PlaywrightError as e:
        raise AcquisitionError(f"Navigation failed: {e}", url=url) from e
    if response is not None and response.status == 403:
        logger.warning("403 Forbidden from %s - possible bot detection", url)
    return response
