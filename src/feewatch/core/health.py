from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from feewatch.core.history import HistoryStore

HEALTHY = "healthy"
STALE = "stale"
OUTDATED = "outdated"
NEVER_RUN = "never_run"
UNKNOWN = "unknown"


@dataclass(frozen=True)
class TargetHealth:
    jurisdiction: str
    status: str
    last_run: str | None
    days_since_run: int | None
    source_url: str | None
    categories_covered: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "jurisdiction": self.jurisdiction,
            "status": self.status,
            "last_run": self.last_run,
            "days_since_run": self.days_since_run,
            "source_url": self.source_url,
            "categories_covered": list(self.categories_covered),
        }


@dataclass(frozen=True)
class RunFile:
    filename: str
    path: Path
    size_kb: int


def _parse_ts(value: str) -> datetime | None:
    try:
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return None
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def build_health_report(
    history: HistoryStore,
    *,
    now: datetime | None = None,
    expected: Iterable[str] | None = None,
    stale_after_days: int = 30,
    outdated_after_days: int = 90,
) -> dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    names = list(expected) if expected is not None else []
    names += [n for n in history if n not in names]

    entries: list[TargetHealth] = []
    for name in names:
        result = history.get(name)
        if result is None:
            entries.append(TargetHealth(name, NEVER_RUN, None, None, None, ()))
            continue
        covered = tuple(cat for cat, fs in result.fees.items() if fs is not None)
        scraped = _parse_ts(result.scraped_at)
        if scraped is None:
            entries.append(TargetHealth(name, UNKNOWN, result.scraped_at, None, result.source_url, covered))
            continue
        days = (now - scraped).days
        if days <= stale_after_days:
            status = HEALTHY
        elif days <= outdated_after_days:
            status = STALE
        else:
            status = OUTDATED
        entries.append(TargetHealth(name, status, result.scraped_at, days, result.source_url, covered))

    counts = {s: sum(1 for e in entries if e.status == s) for s in (HEALTHY, STALE, OUTDATED, NEVER_RUN)}
    if counts[NEVER_RUN] > 0 or counts[OUTDATED] > 2:
        overall = "warning"
    elif counts[STALE] > 3:
        overall = "caution"
    else:
        overall = "good"

    return {
        "summary": {"total": len(entries), **counts, "overall_status": overall},
        "cities": [e.to_dict() for e in entries],
    }


def list_runs(results_dir: Path, limit: int = 20) -> list[RunFile]:
    """Most recent run snapshots first; the history file is not a run."""

    if not results_dir.exists():
        return []
    files = sorted(
        (p for p in results_dir.glob("scrape-*.json") if p.name != "scrape-history.json"),
        key=lambda p: p.name,
        reverse=True,
    )
    return [RunFile(filename=p.name, path=p, size_kb=round(p.stat().st_size / 1024)) for p in files[:limit]]
