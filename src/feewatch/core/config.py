from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

from feewatch.core.models import ScrapeTarget
from feewatch.core.utils import atomic_write_text

logger = logging.getLogger(__name__)

ENGINE_CHROMIUM = "chromium"
ENGINE_FIREFOX = "firefox"
SUPPORTED_ENGINES = (ENGINE_CHROMIUM, ENGINE_FIREFOX)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


@dataclass(frozen=True)
class ScrapeSettings:
    engine: str = ENGINE_CHROMIUM
    headless: bool = True
    timeout_ms: int = 30_000
    delay_min_ms: int = 1_000
    delay_max_ms: int = 3_000
    retries: int = 3
    backoff_base_seconds: float = 1.0
    user_agent: str = DEFAULT_USER_AGENT
    viewport_width: int = 1920
    viewport_height: int = 1080
    locale: str = "en-US"
    timezone_id: str = "America/Los_Angeles"
    ocr_text_threshold: int = 100
    ocr_dpi: int = 200
    ocr_preprocess: bool = True
    ocr_median_filter: bool = True
    ocr_threshold: int | None = None
    ocr_low_confidence: float = 60.0
    respect_robots: bool = True
    section_window: int = 1200

    def __post_init__(self) -> None:
        if self.engine not in SUPPORTED_ENGINES:
            raise ValueError(f"Unsupported engine {self.engine!r}; expected one of {SUPPORTED_ENGINES}")
        if self.delay_max_ms < self.delay_min_ms:
            raise ValueError("delay_max_ms must be >= delay_min_ms")
        if self.retries < 1:
            raise ValueError("retries must be >= 1")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ScrapeSettings":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass(frozen=True)
class Paths:
    app_dir: Path
    output_dir: Path
    log_path: Path
    targets_path: Path

    @property
    def results_dir(self) -> Path:
        return self.output_dir / "scraper-results"

    @property
    def documents_dir(self) -> Path:
        return self.output_dir / "fee-schedule-pdfs"

    @classmethod
    def default(cls) -> "Paths":
        app_dir = Path(os.environ.get("FEEWATCH_HOME") or (Path.home() / ".feewatch"))
        return cls(
            app_dir=app_dir,
            output_dir=app_dir / "output",
            log_path=app_dir / "feewatch.log",
            targets_path=app_dir / "targets.json",
        )


@dataclass(frozen=True)
class AppConfig:
    paths: Paths
    scrape: ScrapeSettings = field(default_factory=ScrapeSettings)

    @staticmethod
    def config_path(app_dir: Path) -> Path:
        return app_dir / "config.json"

    @classmethod
    def load(cls, paths: Paths | None = None) -> "AppConfig":
        paths = paths or Paths.default()
        paths.app_dir.mkdir(parents=True, exist_ok=True)
        cfg_path = cls.config_path(paths.app_dir)
        if not cfg_path.exists():
            return cls(paths=paths)
        try:
            data = json.loads(cfg_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable config %s (%s)", cfg_path, e)
            return cls(paths=paths)

        raw_paths = data.get("paths") or {}
        if raw_paths:
            paths = Paths(
                app_dir=paths.app_dir,
                output_dir=Path(raw_paths.get("output_dir") or paths.output_dir),
                log_path=Path(raw_paths.get("log_path") or paths.log_path),
                targets_path=Path(raw_paths.get("targets_path") or paths.targets_path),
            )
        return cls(paths=paths, scrape=ScrapeSettings.from_dict(data.get("scrape") or {}))

    def to_dict(self) -> dict[str, Any]:
        return {
            "paths": {
                "output_dir": str(self.paths.output_dir),
                "log_path": str(self.paths.log_path),
                "targets_path": str(self.paths.targets_path),
            },
            "scrape": asdict(self.scrape),
        }

    def save(self) -> None:
        atomic_write_text(self.config_path(self.paths.app_dir), json.dumps(self.to_dict(), indent=2))


def load_targets(path: Path) -> list[ScrapeTarget]:
    """Read the ordered jurisdiction -> target mapping from a JSON file."""

    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a JSON object keyed by jurisdiction")
    return [ScrapeTarget.from_dict(name, raw) for name, raw in data.items()]
