from __future__ import annotations

import hashlib
import re
import unicodedata
from dataclasses import dataclass
from datetime import timedelta

from rapidfuzz.distance import Levenshtein

_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")

TITLE_WEIGHT = 0.7
DESCRIPTION_WEIGHT = 0.3


def normalize_text(text: str) -> str:
    """Casefold, drop accents and punctuation; letters of every script survive."""

    decomposed = unicodedata.normalize("NFD", text.casefold())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    cleaned = _PUNCTUATION.sub("", stripped).replace("_", " ")
    return _WHITESPACE.sub(" ", cleaned).strip()


def _fingerprint_text(text: str) -> str:
    return " ".join(text.casefold().split())


def content_hash(title: str, description: str) -> str:
    payload = f"{_fingerprint_text(title)}|{_fingerprint_text(description)}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def jaccard_similarity(left: str, right: str) -> float:
    tokens_left = set(normalize_text(left).split())
    tokens_right = set(normalize_text(right).split())
    if not tokens_left or not tokens_right:
        return 0.0
    return len(tokens_left & tokens_right) / len(tokens_left | tokens_right)


def levenshtein_similarity(left: str, right: str) -> float:
    norm_left = normalize_text(left)
    norm_right = normalize_text(right)
    if not norm_left or not norm_right:
        return 0.0
    return Levenshtein.normalized_similarity(norm_left, norm_right)


def field_similarity(left: str, right: str) -> float:
    return max(jaccard_similarity(left, right), levenshtein_similarity(left, right))


def similarity_score(
    title: str,
    description: str,
    other_title: str,
    other_description: str,
) -> int:
    """Combined 0-100 score; the title carries most of the weight.

    When neither side has a description the title is scored alone.
    """

    title_similarity = field_similarity(title, other_title)
    if not normalize_text(description) and not normalize_text(other_description):
        return round(title_similarity * 100)
    combined = TITLE_WEIGHT * title_similarity + DESCRIPTION_WEIGHT * field_similarity(
        description, other_description
    )
    return round(combined * 100)


@dataclass(frozen=True)
class DuplicateGateConfig:
    block_threshold: int = 70
    warn_threshold: int = 60
    display_threshold: int = 50
    min_title_length: int = 10
    lookback: timedelta | None = timedelta(days=90)
    candidate_limit: int = 500
    max_matches: int = 5
    suggestion_min_length: int = 5
    suggestion_threshold: int = 40
