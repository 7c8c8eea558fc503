from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from feewatch.core.utils import atomic_write_bytes, slugify

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoragePlan:
    results_dir: Path
    documents_dir: Path
    history_path: Path


def plan_storage(results_dir: Path, documents_dir: Path) -> StoragePlan:
    results_dir.mkdir(parents=True, exist_ok=True)
    documents_dir.mkdir(parents=True, exist_ok=True)
    return StoragePlan(
        results_dir=results_dir,
        documents_dir=documents_dir,
        history_path=results_dir / "scrape-history.json",
    )


def document_path(documents_dir: Path, *, jurisdiction: str, document_type: str, suffix: str = ".pdf") -> Path:
    """Deterministic on-disk name for a jurisdiction's document.

    `Austin, TX` + `residential-fees` -> `austin-tx-residential-fees.pdf`.
    Re-running overwrites the previous copy; history keeps the fingerprint.
    """

    suf = suffix if suffix.startswith(".") or suffix == "" else f".{suffix}"
    return documents_dir / f"{slugify(jurisdiction)}-{slugify(document_type)}{suf}"


def sniff_suffix(content: bytes) -> str:
    head = content[:2048].lstrip(b"\r\n\t ")
    if head.startswith(b"%PDF-"):
        return ".pdf"
    low = head.lower()
    if low.startswith(b"<!doctype html") or b"<html" in low:
        return ".html"
    return ".bin"


def save_document(documents_dir: Path, *, jurisdiction: str, document_type: str, content: bytes) -> Path:
    path = document_path(
        documents_dir,
        jurisdiction=jurisdiction,
        document_type=document_type,
        suffix=sniff_suffix(content),
    )
    atomic_write_bytes(path, content)
    logger.info("Saved %d bytes to %s", len(content), path)
    return path
