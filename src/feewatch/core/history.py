from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Iterator

from feewatch.core.errors import PersistenceError
from feewatch.core.models import (
    DOCUMENT_CATEGORY,
    DOCUMENT_UPDATED,
    FIELD_CHANGE,
    TRACKED_FIELDS,
    ChangeEvent,
    FeeStructure,
    ScrapeResult,
)
from feewatch.core.utils import atomic_write_text

logger = logging.getLogger(__name__)


class HistoryStore:
    """Latest successful result per jurisdiction, used as the change baseline."""

    def __init__(self, entries: dict[str, ScrapeResult] | None = None) -> None:
        self._entries: dict[str, ScrapeResult] = dict(entries or {})

    def get(self, jurisdiction: str) -> ScrapeResult | None:
        return self._entries.get(jurisdiction)

    def commit(self, jurisdiction: str, result: ScrapeResult) -> None:
        self._entries[jurisdiction] = result

    def __contains__(self, jurisdiction: object) -> bool:
        return jurisdiction in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def items(self) -> list[tuple[str, ScrapeResult]]:
        return list(self._entries.items())

    def to_dict(self) -> dict[str, dict]:
        return {name: result.to_dict() for name, result in self._entries.items()}

    @classmethod
    def load(cls, path: Path) -> "HistoryStore":
        if not path.exists():
            logger.info("No previous scrape history at %s", path)
            return cls()
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Unreadable history file %s (%s); starting from an empty baseline", path, e)
            return cls()
        if not isinstance(data, dict):
            logger.warning("History file %s is not a JSON object; ignoring it", path)
            return cls()

        entries: dict[str, ScrapeResult] = {}
        for name, raw in data.items():
            if not isinstance(raw, dict):
                logger.warning("Skipping malformed history entry for %s", name)
                continue
            try:
                entries[str(name)] = ScrapeResult.from_dict(raw)
            except (TypeError, ValueError) as e:
                logger.warning("Skipping malformed history entry for %s: %s", name, e)
        return cls(entries)

    def save(self, path: Path) -> None:
        try:
            atomic_write_text(path, json.dumps(self.to_dict(), indent=2))
        except OSError as e:
            raise PersistenceError(f"Failed to write history: {e}", path=str(path)) from e
        logger.info("History updated: %s (%d jurisdictions)", path, len(self))


def _field_events(
    jurisdiction: str,
    category: str,
    old: FeeStructure | None,
    new: FeeStructure | None,
) -> list[ChangeEvent]:
    events = []
    for name in TRACKED_FIELDS:
        old_value = getattr(old, name) if old is not None else None
        new_value = getattr(new, name) if new is not None else None
        if old_value != new_value:
            events.append(
                ChangeEvent(
                    jurisdiction=jurisdiction,
                    category=category,
                    kind=FIELD_CHANGE,
                    field=name,
                    old=old_value,
                    new=new_value,
                )
            )
    return events


def detect_changes(jurisdiction: str, new_result: ScrapeResult, store: HistoryStore) -> list[ChangeEvent]:
    previous = store.get(jurisdiction)
    if previous is None:
        logger.info("No previous data for %s; recording baseline", jurisdiction)
        return []

    categories = list(new_result.fees)
    categories += [c for c in previous.fees if c not in new_result.fees]

    changes: list[ChangeEvent] = []
    for category in categories:
        changes.extend(
            _field_events(
                jurisdiction,
                category,
                previous.fees.get(category),
                new_result.fees.get(category),
            )
        )

    if previous.pdf_hash and new_result.pdf_hash and previous.pdf_hash != new_result.pdf_hash:
        changes.append(
            ChangeEvent(
                jurisdiction=jurisdiction,
                category=DOCUMENT_CATEGORY,
                kind=DOCUMENT_UPDATED,
                old=previous.pdf_hash,
                new=new_result.pdf_hash,
                message="PDF content has changed",
            )
        )

    if changes:
        logger.warning("%d change(s) detected for %s", len(changes), jurisdiction)
        for c in changes:
            logger.info("  %s %s.%s: %r -> %r", c.kind, c.category, c.field or "-", c.old, c.new)
    else:
        logger.info("No changes detected for %s", jurisdiction)
    return changes


def commit(jurisdiction: str, result: ScrapeResult, store: HistoryStore) -> None:
    store.commit(jurisdiction, result)
