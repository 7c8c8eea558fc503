from __future__ import annotations

import pytesseract
import pytest
from PIL import Image

from feewatch.core.errors import ExtractionError
from feewatch.core.models import EXTRACTION_NATIVE, EXTRACTION_OCR
from feewatch.core.parser import DocumentParser, otsu_threshold

LONG_PAGE = (
    "CITY OF EXAMPLE FEE SCHEDULE\n"
    "Effective Date: July 1, 2024\n"
    "ELECTRICAL PERMITS\n"
    "Base fee: $150.00\n"
    "Plus 1.6% of job cost\n"
    "PLUMBING PERMITS\n"
    "Base fee: $90.00\n"
)


def test_pdf_text_extraction(make_pdf) -> None:
    parser = DocumentParser()
    extracted = parser.extract_text(make_pdf(LONG_PAGE))
    assert extracted.method == EXTRACTION_NATIVE
    assert extracted.page_count == 1
    assert "Base fee: $150.00" in extracted.text
    assert not parser.needs_ocr(extracted)


def test_pages_are_joined(make_pdf) -> None:
    extracted = DocumentParser(ocr_enabled=False).extract_native(make_pdf("Page one text", "Page two text"))
    assert extracted.page_count == 2
    assert extracted.text.index("Page one") < extracted.text.index("Page two")


def test_short_text_triggers_ocr_fallback(make_pdf, tesseract) -> None:
    tesseract.page(("ELECTRICAL PERMITS", "91"), ("Base fee $150", "88"))
    entered: list[str] = []

    extracted = DocumentParser().extract_text(make_pdf(), on_ocr=lambda: entered.append("ocr"))

    assert extracted.method == EXTRACTION_OCR
    assert extracted.text == "ELECTRICAL PERMITS\nBase fee $150"
    assert extracted.page_count == 1
    assert extracted.low_confidence_pages == 0
    assert entered == ["ocr"]
    assert tesseract.calls == 1


def test_ocr_counts_low_confidence_pages(make_pdf, tesseract) -> None:
    tesseract.page(("Base fee $150", "40"))
    extracted = DocumentParser(low_confidence=60.0).extract_ocr(make_pdf("", ""))
    assert extracted.method == EXTRACTION_OCR
    assert extracted.page_count == 2
    assert extracted.low_confidence_pages == 2


def test_tesseract_error_becomes_extraction_error(make_pdf, tesseract) -> None:
    tesseract.error = pytesseract.TesseractError(1, "boom")
    with pytest.raises(ExtractionError, match="OCR failed on page 1"):
        DocumentParser().extract_text(make_pdf())


def test_missing_tesseract_binary_becomes_extraction_error(make_pdf, monkeypatch) -> None:
    def _missing() -> str:
        raise pytesseract.TesseractNotFoundError()

    monkeypatch.setattr(pytesseract, "get_tesseract_version", _missing)
    with pytest.raises(ExtractionError, match="tesseract executable"):
        DocumentParser().extract_ocr(make_pdf())


def test_empty_ocr_keeps_native_text(make_pdf, tesseract) -> None:
    extracted = DocumentParser().extract_text(make_pdf("Fee $10"))
    assert tesseract.calls == 1
    assert extracted.method == EXTRACTION_NATIVE
    assert "Fee $10" in extracted.text


def test_no_text_anywhere_raises(make_pdf, tesseract) -> None:
    with pytest.raises(ExtractionError):
        DocumentParser().extract_text(make_pdf())


def test_ocr_disabled_blank_document_raises(make_pdf) -> None:
    with pytest.raises(ExtractionError):
        DocumentParser(ocr_enabled=False).extract_text(make_pdf())


def test_invalid_pdf_raises_extraction_error() -> None:
    with pytest.raises(ExtractionError):
        DocumentParser().extract_native(b"this is not a pdf")


def test_html_document_text() -> None:
    html = b"<!doctype html><html><head><script>var x = 1;</script></head><body><h1>Fees</h1><p>Base fee $150</p></body></html>"
    extracted = DocumentParser().extract_native(html)
    assert extracted.method == EXTRACTION_NATIVE
    assert "Base fee $150" in extracted.text
    assert "var x" not in extracted.text


@pytest.mark.asyncio
async def test_extract_text_async(make_pdf) -> None:
    extracted = await DocumentParser().extract_text_async(make_pdf(LONG_PAGE))
    assert "ELECTRICAL PERMITS" in extracted.text


def test_ocr_preprocess_binarizes() -> None:
    img = Image.new("L", (32, 32))
    for y in range(32):
        for x in range(32):
            img.putpixel((x, y), int((x / 31) * 255))

    p = DocumentParser(ocr_preprocess=True, ocr_median_filter=False, ocr_threshold=128)
    out = p._preprocess_for_ocr(img.convert("RGB"))
    assert set(out.getdata()).issubset({0, 255})


def test_otsu_threshold_splits_bimodal_image() -> None:
    img = Image.new("L", (20, 10), 30)
    for y in range(10):
        for x in range(10, 20):
            img.putpixel((x, y), 220)
    t = otsu_threshold(img)
    assert 30 <= t < 220


def test_assemble_page_rebuilds_lines_and_confidence() -> None:
    data = {
        "text": ["Base", "fee", "", "$150"],
        "conf": ["90", "80", "-1", "70"],
        "block_num": [1, 1, 1, 1],
        "par_num": [1, 1, 1, 1],
        "line_num": [1, 1, 1, 2],
    }
    text, confidence = DocumentParser._assemble_page(data)
    assert text == "Base fee\n$150"
    assert confidence == pytest.approx(80.0)


def test_short_html_is_never_sent_to_ocr(tesseract) -> None:
    html = b"<!doctype html><html><body><p>Electrical base fee $150</p></body></html>"
    parser = DocumentParser()
    extracted = parser.extract_text(html)
    assert extracted.method == EXTRACTION_NATIVE
    assert extracted.source_kind == "html"
    assert extracted.text == "Electrical base fee $150"
    assert not parser.needs_ocr(extracted)
    assert tesseract.calls == 0
