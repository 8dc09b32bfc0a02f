# Overview: Pure fuzzy matching of product names against the supplier code catalog.

"""
Product Code Matcher

Used to self-heal product codes: when a supplier rejects a code, the product's
display name is matched against the supplier catalog to find the code the
supplier actually knows.

SCORING (highest wins, ties keep the earlier catalog entry):
- Exact match after normalize_name, or after strict_normalize: immediate win.
- Containment (one normalized name inside the other): score = shorter/longer,
  counted only above MATCH_THRESHOLD.
- Strict containment, tried only when the above scored below the threshold
  and the strict product name is longer than 5 chars: shorter/longer above
  0.8, discounted by 0.9.
- A best score below MATCH_THRESHOLD is no match.
"""

from __future__ import annotations

import re
from dataclasses import dataclass


MATCH_THRESHOLD = 0.6
STRICT_RATIO_FLOOR = 0.8
STRICT_PENALTY = 0.9
STRICT_MIN_LENGTH = 5
MIN_NAME_LENGTH = 3

_CURRENCY_SYMBOLS = re.compile(r"[$€£¥]")
_CURRENCY_CODES = re.compile(r"(?<![a-z])(sar|aed|usd|eur|gbp|jpy|omr|bhd|kwd|qar)(?![a-z])")
_PARENTHETICAL = re.compile(r"\([^)]*\)")
_WHITESPACE = re.compile(r"\s+")
_NON_ALNUM = re.compile(r"[^a-z0-9]")


@dataclass(frozen=True)
class CatalogEntry:
    product_code: str
    name_en: str | None = None
    name_ar: str | None = None


@dataclass(frozen=True)
class CodeMatch:
    product_code: str
    score: float
    exact: bool = False


def normalize_name(name: str | None) -> str:
    """Lowercase, drop currency markers and parenthetical notes, collapse spaces."""
    if not name:
        return ""
    text = name.lower()
    text = _CURRENCY_SYMBOLS.sub("", text)
    text = _CURRENCY_CODES.sub("", text)
    text = _PARENTHETICAL.sub("", text)
    return _WHITESPACE.sub(" ", text).strip()


def strict_normalize(name: str | None) -> str:
    if not name:
        return ""
    return _NON_ALNUM.sub("", name.lower())


def similarity(a: str, b: str) -> float:
    """Length ratio when one string contains the other, else 0."""
    if not a or not b:
        return 0.0
    if a in b or b in a:
        return min(len(a), len(b)) / max(len(a), len(b))
    return 0.0


def _score(name: str, strict_name: str, entry) -> tuple[float, bool]:
    candidates = [n for n in (entry.name_en, entry.name_ar) if n]

    for candidate in candidates:
        if name == normalize_name(candidate):
            return 1.0, True
    for candidate in candidates:
        strict_candidate = strict_normalize(candidate)
        if strict_name and strict_candidate and strict_name == strict_candidate:
            return 1.0, True

    score = 0.0
    for candidate in candidates:
        ratio = similarity(name, normalize_name(candidate))
        if ratio > MATCH_THRESHOLD:
            score = max(score, ratio)

    if score < MATCH_THRESHOLD and len(strict_name) > STRICT_MIN_LENGTH and entry.name_en:
        ratio = similarity(strict_name, strict_normalize(entry.name_en))
        if ratio > STRICT_RATIO_FLOOR:
            score = max(score, ratio * STRICT_PENALTY)

    return score, False


def match_product_code(name: str | None, catalog) -> CodeMatch | None:
    """
    Find the catalog code that best matches a product display name.

    Args:
        name: Product display name
        catalog: Iterable of objects exposing product_code, name_en, name_ar

    Returns:
        CodeMatch, or None when nothing clears MATCH_THRESHOLD
    """
    normalized = normalize_name(name)
    if len(normalized) < MIN_NAME_LENGTH:
        return None
    strict_name = strict_normalize(name)

    best: CodeMatch | None = None
    for entry in catalog:
        if not entry.product_code:
            continue
        score, exact = _score(normalized, strict_name, entry)
        if exact:
            return CodeMatch(entry.product_code, 1.0, exact=True)
        if score > 0 and (best is None or score > best.score):
            best = CodeMatch(entry.product_code, score)

    if best is not None and best.score >= MATCH_THRESHOLD:
        return best
    return None
