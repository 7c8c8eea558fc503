from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from typing import Iterable, Sequence

from feewatch.core.models import FeeStructure

logger = logging.getLogger(__name__)


CURRENCY_RE = re.compile(r"\$\s*(\d[\d,]*(?:\.\d+)?)")

# "1.6% of job cost", "2% of the total project valuation"
VALUATION_RE = re.compile(
    r"(\d+(?:\.\d+)?)\s*%\s*of\s+(?:the\s+)?(?:[a-z\-]+\s+){0,3}?(?:valuation|value|cost)s?\b",
    re.IGNORECASE,
)

BASE_LABEL = r"\bbase\s+(?:permit\s+)?fee\b"
MIN_LABEL = r"\bmin(?:imum\b|\.)(?:\s+fee\b)?"
MAX_LABEL = r"(?:\bmax(?:imum\b|\.)(?:\s+fee\b)?|\bnot\s+to\s+exceed\b)"

# Label followed (on the same line, no other amount in between) by the token.
_LABEL_GAP = r"([^\n$]{0,40})\Z"
_DIRECT_GAP_RE = re.compile(r"[ \t]*[:\-]?[ \t]*")
_NEXT_AMOUNT_RE = re.compile(r"[ \t]*[:\-]?[ \t]*\$")
_PREV_AMOUNT_RE = re.compile(r"\$\s*\d[\d,]*(?:\.\d+)?[ \t]*\)?[ \t]*\Z")

HEADING_RE = re.compile(r"^[A-Z][A-Z\s]{10,}$")

_MONTH = (
    r"(?:jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?|aug(?:ust)?"
    r"|sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?)\.?"
)
_MONTH_DATE = rf"{_MONTH}\s+\d{{1,2}}(?:st|nd|rd|th)?,?\s+\d{{4}}"
_NUMERIC_DATE = r"\b\d{1,2}/\d{1,2}(?:/\d{2,4})?\b"
_MONTH_YEAR = rf"{_MONTH}\s+\d{{4}}"
_YEAR = r"(?<![$\d,.])\b(?:19|20)\d{2}\b"

LABELLED_DATE_RE = re.compile(
    rf"\b(?:effective|revised|dated?|adopted)(?:\s+date)?\s*:?\s*(?:on\s+|as\s+of\s+)?({_MONTH_DATE}|{_NUMERIC_DATE})",
    re.IGNORECASE,
)
# Alternatives are tried in order at each position, so the earliest position
# wins and the most specific form wins at a given position.
ANY_DATE_RE = re.compile(
    rf"\b(?:{_MONTH_DATE}|{_MONTH_YEAR})|{_NUMERIC_DATE}|{_YEAR}",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class CurrencyToken:
    value: float
    start: int
    end: int


def _to_number(raw: str) -> float:
    return float(raw.replace(",", "").rstrip("."))


def currency_tokens(text: str) -> list[CurrencyToken]:
    tokens: list[CurrencyToken] = []
    for m in CURRENCY_RE.finditer(text):
        digits = m.group(1).rstrip(",")
        if not digits:
            continue
        tokens.append(CurrencyToken(value=_to_number(digits), start=m.start(), end=m.end()))
    return tokens


def _label_before(text: str, token: CurrencyToken, label: str) -> bool:
    before = text[max(0, token.start - 80) : token.start]
    m = re.search("(?:" + label + ")" + _LABEL_GAP, before, re.IGNORECASE)
    if m is None:
        return False
    if _DIRECT_GAP_RE.fullmatch(m.group(1)):
        return True
    # "$50 minimum, $500": the label trails the previous amount.
    return _PREV_AMOUNT_RE.search(before, 0, m.start()) is None


def _label_after(text: str, token: CurrencyToken, label: str) -> bool:
    # "$50 minimum", "($1,800 maximum)"
    after = text[token.end : token.end + 60]
    m = re.match(r"[ \t]*\)?[ \t]*(?:" + label + ")", after, re.IGNORECASE)
    if m is None:
        return False
    # "$50 Maximum fee $500": that label introduces the next amount.
    return _NEXT_AMOUNT_RE.match(after, m.end()) is None


def _first_labelled(text: str, tokens: Sequence[CurrencyToken], label: str) -> CurrencyToken | None:
    """Amount carrying `label`; a label written before an amount outranks one written after."""

    for token in tokens:
        if _label_before(text, token, label):
            return token
    for token in tokens:
        if _label_after(text, token, label):
            return token
    return None


def extract_fees(text: str) -> FeeStructure:
    """Mine one fee record out of a chunk of schedule text.

    `raw` holds every dollar amount in document order. The base fee is the
    amount labelled "base fee", else the one labelled "minimum", else the
    first amount. Min/max come only from explicitly labelled amounts, so
    every reported number is also present in `raw`. The category is left
    unset; callers assign it.
    """

    tokens = currency_tokens(text)
    raw = tuple(t.value for t in tokens)

    base_tok = _first_labelled(text, tokens, BASE_LABEL)
    min_tok = _first_labelled(text, tokens, MIN_LABEL)
    max_tok = _first_labelled(text, tokens, MAX_LABEL)

    if base_tok is not None:
        base_fee: float | None = base_tok.value
    elif min_tok is not None:
        base_fee = min_tok.value
    else:
        base_fee = raw[0] if raw else None

    valuation_rate = None
    m = VALUATION_RE.search(text)
    if m:
        valuation_rate = float(m.group(1)) / 100.0

    return FeeStructure(
        base_fee=base_fee,
        valuation_rate=valuation_rate,
        min_fee=min_tok.value if min_tok is not None else None,
        max_fee=max_tok.value if max_tok is not None else None,
        raw=raw,
    )


def find_section(text: str, aliases: Iterable[str], *, window: int = 1200) -> str | None:
    """Return the text following the earliest alias mention, or None.

    The window starts at the beginning of the matching line and stops at the
    next ALL-CAPS heading line or after `window` characters.
    """

    best: int | None = None
    for alias in aliases:
        alias = (alias or "").strip()
        if not alias:
            continue
        m = re.search(re.escape(alias), text, re.IGNORECASE)
        if m and (best is None or m.start() < best):
            best = m.start()
    if best is None:
        return None

    start = text.rfind("\n", 0, best) + 1
    limit = min(len(text), start + max(1, window))
    first_nl = text.find("\n", best)
    if first_nl == -1 or first_nl >= limit:
        return text[start:limit]

    pos = first_nl + 1
    while pos < limit:
        nl = text.find("\n", pos)
        line_end = nl if nl != -1 else len(text)
        if HEADING_RE.match(text[pos:line_end].strip()):
            return text[start:pos].rstrip("\n")
        if nl == -1:
            break
        pos = nl + 1
    return text[start:limit]


def extract_category(text: str, category: str, aliases: Iterable[str], *, window: int = 1200) -> FeeStructure | None:
    section = find_section(text, aliases, window=window)
    if section is None:
        return None
    return extract_fees(section).with_category(category)


def extract_effective_date(text: str) -> str | None:
    m = LABELLED_DATE_RE.search(text)
    if m:
        return m.group(1)
    m = ANY_DATE_RE.search(text)
    if m:
        return m.group(0)
    return None


def hash_pdf(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()
