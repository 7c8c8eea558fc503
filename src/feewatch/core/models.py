from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Mapping


EXTRACTION_NATIVE = "native"
EXTRACTION_OCR = "ocr"

FIELD_CHANGE = "field_change"
DOCUMENT_UPDATED = "document_updated"
DOCUMENT_CATEGORY = "document"

# Compared field-by-field by the change detector, in this order.
TRACKED_FIELDS = ("base_fee", "valuation_rate", "min_fee", "max_fee")


class PipelineState(str, Enum):
    IDLE = "idle"
    SESSION_INIT = "session_init"
    NAVIGATING = "navigating"
    DOWNLOADING = "downloading"
    PARSING = "parsing"
    OCR_FALLBACK = "ocr_fallback"
    EXTRACTING = "extracting"
    HASHING = "hashing"
    COMPLETE = "complete"
    FAILED = "failed"


def _opt_float(value: Any) -> float | None:
    if value is None:
        return None
    return float(value)


@dataclass(frozen=True)
class ScrapeTarget:
    jurisdiction: str
    url: str
    category_aliases: Mapping[str, tuple[str, ...]]
    source: str = ""
    document_type: str = "fee-schedule"
    # Page visited before the download so the context picks up cookies.
    landing_url: str | None = None
    # Per-category fallback values, e.g. {"electrical": {"base_fee": 85.0}}.
    defaults: Mapping[str, Mapping[str, float]] = field(default_factory=dict)
    # False: fetch over plain HTTP without opening a browser session.
    browser: bool = True

    @classmethod
    def from_dict(cls, jurisdiction: str, data: Mapping[str, Any]) -> "ScrapeTarget":
        url = str(data.get("url") or "").strip()
        if not url:
            raise ValueError(f"Target {jurisdiction!r} has no url")
        raw_categories = data.get("categories") or data.get("category_aliases") or {}
        aliases: dict[str, tuple[str, ...]] = {}
        for category, names in raw_categories.items():
            if isinstance(names, str):
                names = [names]
            cleaned = tuple(str(n).strip() for n in (names or []) if str(n).strip())
            aliases[str(category)] = cleaned or (str(category),)
        defaults = {
            str(cat): {str(k): float(v) for k, v in (vals or {}).items()}
            for cat, vals in (data.get("defaults") or {}).items()
        }
        return cls(
            jurisdiction=jurisdiction,
            url=url,
            category_aliases=aliases,
            source=str(data.get("source") or ""),
            document_type=str(data.get("document_type") or "fee-schedule"),
            landing_url=(str(data["landing_url"]).strip() or None) if data.get("landing_url") else None,
            defaults=defaults,
            browser=bool(data.get("browser", True)),
        )


@dataclass(frozen=True)
class AcquiredDocument:
    content: bytes
    source_url: str
    retrieved_at: str


@dataclass(frozen=True)
class ExtractedText:
    text: str
    page_count: int
    method: str
    low_confidence_pages: int | None = None
    # "pdf" or "html"; only rendered PDF pages can be OCRed.
    source_kind: str = "pdf"


@dataclass(frozen=True)
class FeeStructure:
    category: str | None = None
    base_fee: float | None = None
    valuation_rate: float | None = None
    min_fee: float | None = None
    max_fee: float | None = None
    raw: tuple[float, ...] = ()

    def with_category(self, category: str) -> "FeeStructure":
        return replace(self, category=category)

    def with_defaults(self, defaults: Mapping[str, float]) -> "FeeStructure":
        """Fill absent fields from configured fallbacks; extracted values always win."""
        updates = {
            name: float(defaults[name])
            for name in TRACKED_FIELDS
            if getattr(self, name) is None and defaults.get(name) is not None
        }
        return replace(self, **updates) if updates else self

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "base_fee": self.base_fee,
            "valuation_rate": self.valuation_rate,
            "min_fee": self.min_fee,
            "max_fee": self.max_fee,
            "raw": list(self.raw),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FeeStructure":
        return cls(
            category=data.get("category"),
            base_fee=_opt_float(data.get("base_fee")),
            valuation_rate=_opt_float(data.get("valuation_rate")),
            min_fee=_opt_float(data.get("min_fee")),
            max_fee=_opt_float(data.get("max_fee")),
            raw=tuple(float(v) for v in (data.get("raw") or [])),
        )


@dataclass(frozen=True)
class ScrapeResult:
    jurisdiction: str
    source: str
    source_url: str
    scraped_at: str
    fees: Mapping[str, FeeStructure | None]
    effective_date: str | None
    pdf_hash: str
    pdf_path: str
    extraction_method: str = EXTRACTION_NATIVE
    notes: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "jurisdiction": self.jurisdiction,
            "source": self.source,
            "source_url": self.source_url,
            "scraped_at": self.scraped_at,
            "fees": {cat: (fs.to_dict() if fs is not None else None) for cat, fs in self.fees.items()},
            "effective_date": self.effective_date,
            "pdf_hash": self.pdf_hash,
            "pdf_path": self.pdf_path,
            "extraction_method": self.extraction_method,
            "notes": list(self.notes),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ScrapeResult":
        fees = {
            str(cat): (FeeStructure.from_dict(fs) if isinstance(fs, Mapping) else None)
            for cat, fs in (data.get("fees") or {}).items()
        }
        return cls(
            jurisdiction=str(data.get("jurisdiction") or ""),
            source=str(data.get("source") or ""),
            source_url=str(data.get("source_url") or ""),
            scraped_at=str(data.get("scraped_at") or ""),
            fees=fees,
            effective_date=data.get("effective_date"),
            pdf_hash=str(data.get("pdf_hash") or ""),
            pdf_path=str(data.get("pdf_path") or ""),
            extraction_method=str(data.get("extraction_method") or EXTRACTION_NATIVE),
            notes=tuple(str(n) for n in (data.get("notes") or [])),
        )


@dataclass(frozen=True)
class TargetFailure:
    jurisdiction: str
    state: PipelineState
    error: str
    error_type: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "jurisdiction": self.jurisdiction,
            "state": self.state.value,
            "error": self.error,
            "error_type": self.error_type,
        }


@dataclass(frozen=True)
class ChangeEvent:
    jurisdiction: str
    category: str
    kind: str
    field: str | None = None
    old: Any = None
    new: Any = None
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "jurisdiction": self.jurisdiction,
            "category": self.category,
            "kind": self.kind,
            "field": self.field,
            "old": self.old,
            "new": self.new,
            "message": self.message,
        }


@dataclass
class BatchResult:
    timestamp: str
    outcomes: dict[str, ScrapeResult | TargetFailure] = field(default_factory=dict)
    changes: dict[str, list[ChangeEvent]] = field(default_factory=dict)

    @property
    def successful(self) -> int:
        return sum(1 for o in self.outcomes.values() if isinstance(o, ScrapeResult))

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes.values() if isinstance(o, TargetFailure))

    def to_dict(self) -> dict[str, Any]:
        cities: dict[str, Any] = {}
        for name, outcome in self.outcomes.items():
            if isinstance(outcome, ScrapeResult):
                cities[name] = {"status": "success", "data": outcome.to_dict(), "error": None, "state": PipelineState.COMPLETE.value}
            else:
                cities[name] = {"status": "failed", "data": None, "error": outcome.error, "state": outcome.state.value}
        return {
            "timestamp": self.timestamp,
            "cities": cities,
            "summary": {
                "total": len(self.outcomes),
                "successful": self.successful,
                "failed": self.failed,
                "changes": [
                    {"city": name, "changes": [c.to_dict() for c in events]}
                    for name, events in self.changes.items()
                    if events
                ],
            },
        }
