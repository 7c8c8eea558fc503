from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncContextManager, AsyncIterator, Callable, Sequence

import aiohttp

from feewatch.core.browser_session import Session, StealthProfile, browser_session, goto, new_page
from feewatch.core.config import ScrapeSettings
from feewatch.core.downloader import DownloadStrategy, HttpFetcher, retry, strategy_for
from feewatch.core.errors import AcquisitionError, FeeWatchError, PersistenceError, ValidationError
from feewatch.core.fees import extract_category, extract_effective_date, hash_pdf
from feewatch.core.history import HistoryStore, commit, detect_changes
from feewatch.core.models import (
    DOCUMENT_UPDATED,
    AcquiredDocument,
    BatchResult,
    ChangeEvent,
    ExtractedText,
    FeeStructure,
    PipelineState,
    ScrapeResult,
    ScrapeTarget,
    TargetFailure,
)
from feewatch.core.parser import DocumentParser
from feewatch.core.robots import RobotsCache
from feewatch.core.storage import StoragePlan, save_document
from feewatch.core.utils import atomic_write_text, random_delay, utc_now_iso

logger = logging.getLogger(__name__)

SessionFactory = Callable[[ScrapeSettings], AsyncContextManager[Session]]


def default_session_factory(settings: ScrapeSettings) -> AsyncContextManager[Session]:
    return browser_session(
        settings.engine,
        StealthProfile.from_settings(settings),
        headless=settings.headless,
        timeout_ms=settings.timeout_ms,
    )


class _StateTracker:
    def __init__(self, jurisdiction: str) -> None:
        self.jurisdiction = jurisdiction
        self.state = PipelineState.IDLE

    def enter(self, state: PipelineState) -> None:
        logger.debug("%s: %s -> %s", self.jurisdiction, self.state.value, state.value)
        self.state = state


class BatchOrchestrator:
    """Runs every target one after another and keeps the history current.

    Each target gets its own browser session, opened and closed inside
    :meth:`scrape_target`; targets marked ``browser: false`` are fetched over
    plain HTTP instead. A failing target is recorded with the pipeline state
    it reached and never stops the batch.
    """

    def __init__(
        self,
        *,
        settings: ScrapeSettings,
        storage: StoragePlan,
        parser: DocumentParser | None = None,
        session_factory: SessionFactory | None = None,
        strategy: DownloadStrategy | None = None,
        http_session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._settings = settings
        self._storage = storage
        self._parser = parser or DocumentParser(
            ocr_text_threshold=settings.ocr_text_threshold,
            ocr_dpi=settings.ocr_dpi,
            ocr_preprocess=settings.ocr_preprocess,
            ocr_median_filter=settings.ocr_median_filter,
            ocr_threshold=settings.ocr_threshold,
            low_confidence=settings.ocr_low_confidence,
        )
        self._session_factory = session_factory or default_session_factory
        self._strategy = strategy
        self._http = http_session
        self._robots = RobotsCache(user_agent=settings.user_agent, timeout_seconds=settings.timeout_ms / 1000.0)

    @asynccontextmanager
    async def _http_scope(self) -> AsyncIterator[aiohttp.ClientSession]:
        # Reentrant: nested scopes share the outer session.
        if self._http is not None:
            yield self._http
            return
        async with aiohttp.ClientSession() as session:
            self._http = session
            try:
                yield session
            finally:
                self._http = None

    async def run(self, targets: Sequence[ScrapeTarget]) -> BatchResult:
        history = HistoryStore.load(self._storage.history_path)
        batch = BatchResult(timestamp=utc_now_iso())
        logger.info("Starting batch of %d target(s)", len(targets))

        async with self._http_scope():
            for idx, target in enumerate(targets):
                if idx:
                    waited = await random_delay(self._settings.delay_min_ms, self._settings.delay_max_ms)
                    logger.debug("Waited %d ms before %s", waited, target.jurisdiction)

                outcome = await self.scrape_target(target)
                batch.outcomes[target.jurisdiction] = outcome
                if isinstance(outcome, ScrapeResult):
                    changes = detect_changes(target.jurisdiction, outcome, history)
                    if changes:
                        batch.changes[target.jurisdiction] = changes
                    commit(target.jurisdiction, outcome, history)

        self.save_results(batch, history)
        logger.info(
            "Batch finished: %d total, %d successful, %d failed, %d with changes",
            len(batch.outcomes),
            batch.successful,
            batch.failed,
            len(batch.changes),
        )
        return batch

    async def run_one(self, target: ScrapeTarget) -> tuple[ScrapeResult | TargetFailure, list[ChangeEvent]]:
        """Scrape a single target and diff it against history without persisting anything."""

        history = HistoryStore.load(self._storage.history_path)
        outcome = await self.scrape_target(target)
        if isinstance(outcome, TargetFailure):
            return outcome, []
        return outcome, detect_changes(target.jurisdiction, outcome, history)

    async def scrape_target(self, target: ScrapeTarget) -> ScrapeResult | TargetFailure:
        tracker = _StateTracker(target.jurisdiction)
        logger.info("Scraping %s", target.jurisdiction)
        try:
            async with self._http_scope() as http:
                result = await self._attempt(target, tracker, http)
        except FeeWatchError as e:
            logger.error("%s failed during %s: %s", target.jurisdiction, tracker.state.value, e)
            return self._failure(target, tracker, e)
        except Exception as e:
            logger.exception("%s failed unexpectedly during %s", target.jurisdiction, tracker.state.value)
            return self._failure(target, tracker, e)
        tracker.enter(PipelineState.COMPLETE)
        logger.info("%s complete", target.jurisdiction)
        return result

    @staticmethod
    def _failure(target: ScrapeTarget, tracker: _StateTracker, error: BaseException) -> TargetFailure:
        failed_at = tracker.state
        tracker.enter(PipelineState.FAILED)
        return TargetFailure(
            jurisdiction=target.jurisdiction,
            state=failed_at,
            error=str(error) or type(error).__name__,
            error_type=type(error).__name__,
        )

    async def _attempt(
        self,
        target: ScrapeTarget,
        tracker: _StateTracker,
        http: aiohttp.ClientSession,
    ) -> ScrapeResult:
        s = self._settings
        tracker.enter(PipelineState.SESSION_INIT)
        if s.respect_robots:
            for url in filter(None, (target.landing_url, target.url)):
                if not await self._robots.allowed(http, url):
                    raise AcquisitionError("Disallowed by robots.txt", url=url)

        if not target.browser:
            tracker.enter(PipelineState.DOWNLOADING)
            fetcher = HttpFetcher(session=http, user_agent=s.user_agent, timeout_seconds=s.timeout_ms / 1000.0)
            document = await retry(lambda: fetcher.fetch(target.url), s.retries, base_seconds=s.backoff_base_seconds)
            return await self._process(target, tracker, document)

        async with self._session_factory(s) as session:
            tracker.enter(PipelineState.NAVIGATING)
            page = await new_page(session)
            if target.landing_url:
                await goto(page, target.landing_url, timeout_ms=s.timeout_ms)

            tracker.enter(PipelineState.DOWNLOADING)
            strategy = self._strategy or strategy_for(session.engine, timeout_ms=s.timeout_ms)
            content = await retry(
                lambda: strategy.download(page, target.url),
                s.retries,
                base_seconds=s.backoff_base_seconds,
            )
            document = AcquiredDocument(content=content, source_url=target.url, retrieved_at=utc_now_iso())
            return await self._process(target, tracker, document)

    async def _process(self, target: ScrapeTarget, tracker: _StateTracker, document: AcquiredDocument) -> ScrapeResult:
        if not document.content:
            raise AcquisitionError("Downloaded document is empty", url=target.url)
        try:
            pdf_path = save_document(
                self._storage.documents_dir,
                jurisdiction=target.jurisdiction,
                document_type=target.document_type,
                content=document.content,
            )
        except OSError as e:
            raise PersistenceError(f"Failed to store document: {e}") from e

        tracker.enter(PipelineState.PARSING)
        extracted = await self._parser.extract_text_async(
            document.content,
            on_ocr=lambda: tracker.enter(PipelineState.OCR_FALLBACK),
        )

        tracker.enter(PipelineState.EXTRACTING)
        fees, notes = self._extract_fees(target, extracted)
        effective_date = extract_effective_date(extracted.text)

        tracker.enter(PipelineState.HASHING)
        pdf_hash = hash_pdf(document.content)

        return ScrapeResult(
            jurisdiction=target.jurisdiction,
            source=target.source or target.jurisdiction,
            source_url=target.url,
            scraped_at=document.retrieved_at,
            fees=fees,
            effective_date=effective_date,
            pdf_hash=pdf_hash,
            pdf_path=str(pdf_path),
            extraction_method=extracted.method,
            notes=tuple(notes),
        )

    def _extract_fees(
        self,
        target: ScrapeTarget,
        extracted: ExtractedText,
    ) -> tuple[dict[str, FeeStructure | None], list[str]]:
        fees: dict[str, FeeStructure | None] = {}
        notes: list[str] = []
        if extracted.low_confidence_pages:
            notes.append(f"OCR confidence low on {extracted.low_confidence_pages}/{extracted.page_count} page(s)")

        for category, aliases in target.category_aliases.items():
            found = extract_category(extracted.text, category, aliases, window=self._settings.section_window)
            fallback = target.defaults.get(category)
            if found is None:
                # Reported, not fatal.
                missing = ValidationError(target.jurisdiction, category)
                logger.warning("%s", missing)
                notes.append(str(missing))
                fees[category] = FeeStructure(category=category).with_defaults(fallback) if fallback else None
                continue
            fees[category] = found.with_defaults(fallback) if fallback else found
        return fees, notes

    def save_results(self, batch: BatchResult, history: HistoryStore) -> Path | None:
        """Write the run snapshot and the merged history; failures are logged only."""

        snapshot_path: Path | None = self._storage.results_dir / f"scrape-{batch.timestamp.replace(':', '-')}.json"
        try:
            atomic_write_text(snapshot_path, json.dumps(batch.to_dict(), indent=2))
            logger.info("Results saved: %s", snapshot_path)
        except OSError as e:
            logger.error("%s", PersistenceError(f"Failed to save results: {e}", path=str(snapshot_path)))
            snapshot_path = None
        try:
            history.save(self._storage.history_path)
        except PersistenceError as e:
            logger.error("%s", e)
        return snapshot_path


def _money(value: Any) -> str:
    if value is None:
        return "n/a"
    value = float(value)
    return f"${value:,.0f}" if value.is_integer() else f"${value:,.2f}"


def _format_change(change: ChangeEvent) -> str:
    if change.kind == DOCUMENT_UPDATED or change.field is None:
        return f"- {change.category}: {change.message or 'document updated'}"
    if change.field == "valuation_rate":
        old = "n/a" if change.old is None else f"{change.old * 100:g}%"
        new = "n/a" if change.new is None else f"{change.new * 100:g}%"
        return f"- {change.category} (valuation rate): {old} → {new}"
    if change.field == "base_fee":
        return f"- {change.category}: {_money(change.old)} → {_money(change.new)}"
    return f"- {change.category} ({change.field.replace('_', ' ')}): {_money(change.old)} → {_money(change.new)}"


def render_digest(batch: BatchResult) -> str | None:
    """Plain-text alert listing every change, one paragraph per jurisdiction."""

    changed = {name: events for name, events in batch.changes.items() if events}
    if not changed:
        return None

    lines = ["Permit Fee Changes Detected", "", f"Scrape Date: {batch.timestamp}", ""]
    for name, events in changed.items():
        lines.append(f"{name}:")
        lines.extend(_format_change(c) for c in events)
        lines.append("")
    lines.append("Action Required: Review changes and update database.")
    return "\n".join(lines) + "\n"
