from __future__ import annotations

import asyncio
import logging
from typing import Callable

import fitz  # PyMuPDF
import pytesseract
from bs4 import BeautifulSoup
from PIL import Image, ImageFilter, ImageOps

from feewatch.core.errors import ExtractionError
from feewatch.core.models import EXTRACTION_NATIVE, EXTRACTION_OCR, ExtractedText
from feewatch.core.storage import sniff_suffix

logger = logging.getLogger(__name__)


class DocumentParser:
    """Turn document bytes into text.

    PDFs go through PyMuPDF first. When that yields fewer than
    `ocr_text_threshold` characters the document is treated as scanned and
    every page is rendered and run through Tesseract instead.
    """

    def __init__(
        self,
        *,
        ocr_enabled: bool = True,
        ocr_text_threshold: int = 100,
        ocr_dpi: int = 200,
        ocr_preprocess: bool = True,
        ocr_median_filter: bool = True,
        ocr_threshold: int | None = None,
        low_confidence: float = 60.0,
    ) -> None:
        self._ocr_enabled = ocr_enabled
        self._ocr_text_threshold = int(ocr_text_threshold)
        self._ocr_dpi = max(72, min(600, int(ocr_dpi)))
        self._ocr_preprocess = bool(ocr_preprocess)
        self._ocr_median_filter = bool(ocr_median_filter)
        self._ocr_threshold = ocr_threshold
        self._low_confidence = float(low_confidence)

    def extract_text(self, content: bytes, *, on_ocr: Callable[[], None] | None = None) -> ExtractedText:
        """Native text first, OCR when that is too short.

        `on_ocr` is invoked right before the OCR pass starts.
        """

        native = self.extract_native(content)
        if self.needs_ocr(native):
            if on_ocr is not None:
                on_ocr()
            return self.ocr_fallback(native, content)
        if not native.text.strip():
            raise ExtractionError("Document contains no extractable text")
        return native

    def ocr_fallback(self, native: ExtractedText, content: bytes) -> ExtractedText:
        logger.info(
            "Native text too short (%d chars < %d); falling back to OCR",
            len(native.text.strip()),
            self._ocr_text_threshold,
        )
        ocr = self.extract_ocr(content)
        if ocr.text.strip():
            return ocr
        if native.text.strip():
            logger.warning("OCR produced no text; keeping %d native characters", len(native.text.strip()))
            return native
        raise ExtractionError("No text could be extracted (native and OCR both empty)")

    async def extract_text_async(self, content: bytes, *, on_ocr: Callable[[], None] | None = None) -> ExtractedText:
        return await asyncio.to_thread(self.extract_text, content, on_ocr=on_ocr)

    def needs_ocr(self, extracted: ExtractedText) -> bool:
        if extracted.method != EXTRACTION_NATIVE or extracted.source_kind != "pdf" or extracted.page_count == 0:
            return False
        return self._ocr_enabled and len(extracted.text.strip()) < self._ocr_text_threshold

    def extract_native(self, content: bytes) -> ExtractedText:
        if sniff_suffix(content) == ".html":
            return self._extract_html(content)
        try:
            doc = fitz.open(stream=content, filetype="pdf")
        except (RuntimeError, ValueError) as e:
            raise ExtractionError(f"Could not open document as PDF: {e}") from e
        try:
            page_texts = [page.get_text("text") for page in doc]
            text = "\n\n".join(t for t in page_texts if t and t.strip())
            logger.info("PDF parsed: %d pages, %d characters", len(page_texts), len(text))
            return ExtractedText(text=text, page_count=len(page_texts), method=EXTRACTION_NATIVE)
        finally:
            doc.close()

    @staticmethod
    def _extract_html(content: bytes) -> ExtractedText:
        soup = BeautifulSoup(content, "lxml")
        for tag in soup(["script", "style", "noscript"]):
            tag.decompose()
        text = "\n".join(s.strip() for s in soup.get_text("\n").splitlines() if s.strip())
        if not text:
            raise ExtractionError("HTML document contains no text")
        return ExtractedText(text=text, page_count=1, method=EXTRACTION_NATIVE, source_kind="html")

    def extract_ocr(self, content: bytes) -> ExtractedText:
        try:
            pytesseract.get_tesseract_version()
        except pytesseract.TesseractNotFoundError as e:
            raise ExtractionError("OCR needed but the tesseract executable was not found on PATH") from e

        try:
            doc = fitz.open(stream=content, filetype="pdf")
        except (RuntimeError, ValueError) as e:
            raise ExtractionError(f"Could not render document for OCR: {e}") from e

        texts: list[str] = []
        low_pages = 0
        try:
            for page_no, page in enumerate(doc, start=1):
                pix = page.get_pixmap(dpi=self._ocr_dpi)
                img = Image.frombytes("RGB", (pix.width, pix.height), pix.samples)
                try:
                    data = pytesseract.image_to_data(
                        self._preprocess_for_ocr(img),
                        output_type=pytesseract.Output.DICT,
                    )
                except (pytesseract.TesseractError, RuntimeError, OSError) as e:
                    raise ExtractionError(f"OCR failed on page {page_no}: {e}") from e
                page_text, confidence = self._assemble_page(data)
                if confidence is None or confidence < self._low_confidence:
                    low_pages += 1
                logger.info(
                    "OCR page %d/%d: %d characters (confidence %s)",
                    page_no,
                    doc.page_count,
                    len(page_text),
                    "n/a" if confidence is None else f"{confidence:.1f}",
                )
                if page_text.strip():
                    texts.append(page_text)
            page_count = doc.page_count
        finally:
            doc.close()

        return ExtractedText(
            text="\n\n".join(texts),
            page_count=page_count,
            method=EXTRACTION_OCR,
            low_confidence_pages=low_pages,
        )

    @staticmethod
    def _assemble_page(data: dict[str, list]) -> tuple[str, float | None]:
        """Rebuild line-oriented text and mean word confidence from image_to_data output."""

        lines: dict[tuple[int, int, int], list[str]] = {}
        confidences: list[float] = []
        for i, word in enumerate(data.get("text") or []):
            word = (word or "").strip()
            if not word:
                continue
            try:
                conf = float(data["conf"][i])
            except (KeyError, IndexError, TypeError, ValueError):
                conf = -1.0
            if conf >= 0:
                confidences.append(conf)
            key = (int(data["block_num"][i]), int(data["par_num"][i]), int(data["line_num"][i]))
            lines.setdefault(key, []).append(word)
        text = "\n".join(" ".join(words) for _, words in sorted(lines.items()))
        mean = sum(confidences) / len(confidences) if confidences else None
        return text, mean

    def _preprocess_for_ocr(self, img: Image.Image) -> Image.Image:
        if not self._ocr_preprocess:
            return img

        out = ImageOps.autocontrast(img.convert("L"))
        if self._ocr_median_filter:
            out = out.filter(ImageFilter.MedianFilter(size=3))

        threshold = self._ocr_threshold if self._ocr_threshold is not None else otsu_threshold(out)
        threshold = int(max(0, min(255, threshold)))
        return out.point(lambda p: 255 if p > threshold else 0)


def otsu_threshold(img_l: Image.Image) -> int:
    """Otsu's method on an L-mode image; returns a threshold in [0, 255]."""

    hist = img_l.histogram()
    total = sum(hist[:256]) if hist else 0
    if len(hist) < 256 or total <= 0:
        return 128

    sum_total = sum(i * hist[i] for i in range(256))
    sum_b = 0.0
    w_b = 0.0
    best_var = -1.0
    best_t = 128
    for t in range(256):
        w_b += hist[t]
        if w_b == 0:
            continue
        w_f = total - w_b
        if w_f == 0:
            break
        sum_b += t * hist[t]
        m_b = sum_b / w_b
        m_f = (sum_total - sum_b) / w_f
        between = w_b * w_f * (m_b - m_f) ** 2
        if between > best_var:
            best_var = between
            best_t = t
    return best_t
