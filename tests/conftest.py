from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable

import fitz
import pytest

from feewatch.core.config import ScrapeSettings
from feewatch.core.storage import StoragePlan, plan_storage


@pytest.fixture()
def make_pdf() -> Callable[..., bytes]:
    def _make(*pages: str) -> bytes:
        doc = fitz.open()
        for text in pages or ("",):
            page = doc.new_page()
            if text:
                page.insert_text((72, 72), text, fontsize=11)
        data = doc.tobytes()
        doc.close()
        return data

    return _make


@pytest.fixture()
def fast_settings() -> ScrapeSettings:
    return ScrapeSettings(
        timeout_ms=1_000,
        delay_min_ms=0,
        delay_max_ms=0,
        retries=1,
        backoff_base_seconds=0.0,
        respect_robots=False,
    )


@pytest.fixture()
def storage(tmp_path: Path) -> StoragePlan:
    return plan_storage(tmp_path / "scraper-results", tmp_path / "fee-schedule-pdfs")


@pytest.fixture()
def restore_root_logging():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for h in root.handlers:
        if h not in handlers:
            h.close()
    root.handlers[:] = handlers
    root.setLevel(level)


class FakeTesseract:
    """Stands in for the tesseract binary behind pytesseract."""

    def __init__(self) -> None:
        self.lines: list[tuple[str, str]] = []
        self.error: Exception | None = None
        self.calls = 0

    def page(self, *lines: tuple[str, str]) -> None:
        # (text, confidence) per line, every page gets the same result.
        self.lines = list(lines)

    def image_to_data(self, image, output_type=None, **kwargs) -> dict[str, list]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        data: dict[str, list] = {k: [] for k in ("text", "conf", "block_num", "par_num", "line_num")}
        for n, (text, conf) in enumerate(self.lines, start=1):
            for word in text.split():
                data["text"].append(word)
                data["conf"].append(conf)
                data["block_num"].append(1)
                data["par_num"].append(1)
                data["line_num"].append(n)
        return data


@pytest.fixture()
def tesseract(monkeypatch) -> FakeTesseract:
    import pytesseract

    fake = FakeTesseract()
    monkeypatch.setattr(pytesseract, "get_tesseract_version", lambda: "5.3.0")
    monkeypatch.setattr(pytesseract, "image_to_data", fake.image_to_data)
    return fake
