"""Scored company-name matching for contact reconciliation.

Implements a tiered matching strategy:
- exact: names equal after case/whitespace normalization
- high: equal after dropping punctuation and company suffixes, equal after
  known word substitutions (and/&, limited/ltd, ...), same words reordered,
  or a blended similarity of at least 0.9
- medium / low: blended similarity above 0.75 / 0.65
- none: below 0.65

The blended similarity averages a normalized Levenshtein similarity and the
Jaccard overlap of the name tokens. Matching is deterministic: the single
highest score wins and ties prefer a candidate already linked to a remote id.
"""

from __future__ import annotations

import logging
import re
import unicodedata
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

from rapidfuzz.distance import Levenshtein

logger = logging.getLogger(__name__)

T = TypeVar("T")

HIGH_THRESHOLD = 0.9
MEDIUM_THRESHOLD = 0.75
LOW_THRESHOLD = 0.65

NORMALIZED_EQUAL_SCORE = 0.95
SUBSTITUTION_SCORE = 0.95
REORDERED_SCORE = 0.9

# Trailing legal-form tokens dropped before comparison
COMPANY_SUFFIXES = frozenset(
    {
        "pte",
        "pvt",
        "pty",
        "private",
        "ltd",
        "limited",
        "inc",
        "incorporated",
        "llc",
        "llp",
        "plc",
        "corp",
        "corporation",
        "co",
        "company",
        "sdn",
        "bhd",
        "berhad",
        "gmbh",
        "bv",
        "sa",
    }
)

# Word variants folded onto one canonical token
WORD_SUBSTITUTIONS = {
    "&": "and",
    "n": "and",
    "company": "co",
    "private": "pte",
    "pvt": "pte",
    "limited": "ltd",
    "corporation": "corp",
    "incorporated": "inc",
    "international": "intl",
    "brothers": "bros",
    "services": "svcs",
    "engineering": "eng",
    "enterprises": "ent",
    "enterprise": "ent",
}

_PUNCTUATION = re.compile(r"[^\w\s&]")


class MatchConfidence(Enum):
    """Confidence tier of a name match."""

    EXACT = "exact"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NONE = "none"

    @property
    def is_linkable(self) -> bool:
        """Whether a match this strong may attach a remote id to a local record."""
        return self in (MatchConfidence.EXACT, MatchConfidence.HIGH)


@dataclass
class MatchResult(Generic[T]):
    """Outcome of matching one name against a candidate set."""

    candidate: T | None
    confidence: MatchConfidence
    score: float

    @property
    def is_linkable(self) -> bool:
        return self.candidate is not None and self.confidence.is_linkable


def simple_normalize(name: str) -> str:
    """Lowercase, trim and collapse whitespace."""
    return " ".join((name or "").lower().split())


def _strip_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def business_tokens(name: str) -> list[str]:
    """Tokens of a company name without punctuation or trailing legal suffixes."""
    text = _strip_accents(simple_normalize(name)).replace("&", " & ")
    tokens = _PUNCTUATION.sub(" ", text).split()
    stripped = list(tokens)
    while stripped and stripped[-1] in COMPANY_SUFFIXES:
        stripped.pop()
    # A name made only of suffix words keeps them
    return stripped or tokens


def business_normalize(name: str) -> str:
    return " ".join(business_tokens(name))


def _substituted(tokens: list[str]) -> list[str]:
    return [WORD_SUBSTITUTIONS.get(token, token) for token in tokens]


def _jaccard(left: set[str], right: set[str]) -> float:
    if not left and not right:
        return 1.0
    return len(left & right) / len(left | right)


def _tier(score: float) -> MatchConfidence:
    if score >= HIGH_THRESHOLD:
        return MatchConfidence.HIGH
    if score >= MEDIUM_THRESHOLD:
        return MatchConfidence.MEDIUM
    if score >= LOW_THRESHOLD:
        return MatchConfidence.LOW
    return MatchConfidence.NONE


def score_names(left: str, right: str) -> tuple[float, MatchConfidence]:
    """Score two names.

    Returns:
        Tuple of (score in 0..1, confidence tier).
    """
    plain_left, plain_right = simple_normalize(left), simple_normalize(right)
    if not plain_left or not plain_right:
        return 0.0, MatchConfidence.NONE
    if plain_left == plain_right:
        return 1.0, MatchConfidence.EXACT

    tokens_left, tokens_right = business_tokens(left), business_tokens(right)
    if tokens_left == tokens_right:
        return NORMALIZED_EQUAL_SCORE, MatchConfidence.HIGH

    sub_left, sub_right = _substituted(tokens_left), _substituted(tokens_right)
    if sub_left == sub_right:
        return SUBSTITUTION_SCORE, MatchConfidence.HIGH
    if sorted(sub_left) == sorted(sub_right):
        return REORDERED_SCORE, MatchConfidence.HIGH

    levenshtein = Levenshtein.normalized_similarity(" ".join(sub_left), " ".join(sub_right))
    jaccard = _jaccard(set(sub_left), set(sub_right))
    score = round(0.5 * levenshtein + 0.5 * jaccard, 4)
    return score, _tier(score)


def _has_remote_link(candidate: Any) -> bool:
    return bool(getattr(candidate, "remote_contact_id", None))


class ContactMatcher:
    """Picks the best candidate for a name among local or remote contacts."""

    def __init__(
        self,
        name_of: Callable[[Any], str] = lambda c: c.name,
        is_linked: Callable[[Any], bool] = _has_remote_link,
        identity: Callable[[Any], Any] = lambda c: c.id,
    ) -> None:
        """Initialize the matcher.

        Args:
            name_of: Returns the name of a candidate.
            is_linked: Whether a candidate already carries a remote link.
            identity: Stable id used as the last tie-breaker (lowest wins).
        """
        self._name_of = name_of
        self._is_linked = is_linked
        self._identity = identity

    def match(self, name: str, candidates: Iterable[T]) -> MatchResult[T]:
        """Find the best match for a name.

        Args:
            name: Name to look up.
            candidates: Records to compare against.

        Returns:
            MatchResult; candidate is None when the best tier is NONE.
        """
        best: T | None = None
        best_key: tuple[float, bool] | None = None
        best_confidence = MatchConfidence.NONE
        best_score = 0.0

        for candidate in candidates:
            score, confidence = score_names(name, self._name_of(candidate))
            key = (score, self._is_linked(candidate))
            if best_key is None or key > best_key or (
                key == best_key and self._identity(candidate) < self._identity(best)
            ):
                best, best_key = candidate, key
                best_confidence, best_score = confidence, score

        if best is None or best_confidence is MatchConfidence.NONE:
            return MatchResult(None, MatchConfidence.NONE, best_score)

        logger.debug(
            "Matched %r to %r (%s, %.2f)",
            name,
            self._name_of(best),
            best_confidence.value,
            best_score,
        )
        return MatchResult(best, best_confidence, best_score)
