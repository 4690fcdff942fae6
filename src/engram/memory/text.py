"""Text normalization and lexical heuristics.

Pure functions used on both the write and read paths:
- normalize_text / truncate_text / compress_text: canonical stored forms
- estimate_importance: 0-1 importance heuristic from lexical signals
- estimate_tokens / keyword_overlap: token budgeting and lexical fallback
"""

import math
import re
from typing import Optional, Union

from engram.memory.types import ImportanceHint

_WHITESPACE = re.compile(r"\s+")

_NUMBER_PATTERN = re.compile(r"\d{2,}")
_MONEY_PATTERN = re.compile(r"(\$|€|£|¥|kr|sek|usd|eur)\s?\d+", re.IGNORECASE)
_DATE_PATTERN = re.compile(
    r"(\d{4}-\d{2}-\d{2}|\d{1,2}/\d{1,2}/\d{2,4}|yesterday|today|tomorrow|"
    r"monday|tuesday|wednesday|thursday|friday|saturday|sunday)",
    re.IGNORECASE,
)
_DECISION_PATTERN = re.compile(
    r"(bought|purchased|decided|planned|scheduled|deadline|deliver|ordered|signed|contract)",
    re.IGNORECASE,
)
_BRAND_PATTERN = re.compile(
    r"(iphone|samsung|pixel|macbook|tesla|gpt|chatgpt|azure|aws|google|microsoft|apple)",
    re.IGNORECASE,
)
# Two or more consecutive capitalized words ("Model Three", "Jane Doe")
_PROPER_NOUN_PATTERN = re.compile(r"[A-Z][a-z]+(?:\s[A-Z][a-z]+)+")

# Signal weights of the base importance score
_BASE_FLOOR = 0.2
_LENGTH_WEIGHT = 0.25
_NUMBER_WEIGHT = 0.08
_MONEY_WEIGHT = 0.10
_DATE_WEIGHT = 0.08
_DECISION_WEIGHT = 0.15
_ENTITY_WEIGHT = 0.12

# Length at which the length factor saturates (capped by max_text_length)
_LENGTH_SATURATION = 800

_HINT_PRIORS = {
    ImportanceHint.HIGH: 0.9,
    ImportanceHint.MEDIUM: 0.6,
    ImportanceHint.LOW: 0.3,
}
_NO_HINT_PRIOR = 0.5


def normalize_text(text: str) -> str:
    """Trim and collapse internal whitespace runs to single spaces."""
    return _WHITESPACE.sub(" ", text).strip()


def truncate_text(text: str, max_length: int) -> str:
    """Hard-cut text to at most max_length characters."""
    if len(text) <= max_length:
        return text
    return text[:max_length]


def compress_text(text: str, max_length: int = 220) -> str:
    """Build a short display summary of text.

    Text within max_length is returned unchanged; longer text becomes
    ``head + " ... " + tail`` where each half holds max_length/2 characters
    trimmed of surrounding whitespace.

    Args:
        text: Text to compress
        max_length: Length above which the text is shortened (default: 220)

    Returns:
        The compressed text
    """
    if len(text) <= max_length:
        return text
    half = max_length // 2
    return f"{text[:half].strip()} ... {text[-half:].strip()}"


def importance_hint_prior(hint: Optional[Union[ImportanceHint, str]]) -> float:
    """Map an optional importance hint to its prior.

    Args:
        hint: ImportanceHint, its string value, or None

    Returns:
        0.9 for high, 0.6 for medium, 0.3 for low, 0.5 when absent

    Raises:
        ValueError: If hint is a string that is not a known hint value
    """
    if hint is None:
        return _NO_HINT_PRIOR
    if not isinstance(hint, ImportanceHint):
        hint = ImportanceHint(str(hint).lower())
    return _HINT_PRIORS[hint]


def estimate_importance(
    text: str,
    hint: Optional[Union[ImportanceHint, str]] = None,
    max_text_length: int = 4000,
) -> float:
    """Estimate how important a memory is from lexical signals.

    The base score is a constant floor plus weighted signals:

    - length factor: min(len / min(max_text_length, 800), 1) * 0.25
    - a number of two or more digits: +0.08
    - a currency amount: +0.10
    - a date or day name: +0.08
    - a decision/transaction keyword (bought, decided, deadline, ...): +0.15
    - a known product/brand or a capitalized multi-word name: +0.12

    The final score averages the base with the hint prior and is clamped to
    [0, 1]. Longer text never scores lower than shorter text with the same
    signals, and a ``high`` hint always scores above ``low``.

    Args:
        text: Memory text (normalized before scoring)
        hint: Optional caller-supplied importance hint
        max_text_length: Configured maximum text length

    Returns:
        Importance score in [0, 1]

    Example:
        >>> estimate_importance("User bought a Tesla Model 3 for $45,000", "high") > 0.7
        True
    """
    normalized = normalize_text(text)
    saturation = max(min(max_text_length, _LENGTH_SATURATION), 1)
    length_factor = min(len(normalized) / saturation, 1.0)

    base = _BASE_FLOOR + length_factor * _LENGTH_WEIGHT
    if _NUMBER_PATTERN.search(normalized):
        base += _NUMBER_WEIGHT
    if _MONEY_PATTERN.search(normalized):
        base += _MONEY_WEIGHT
    if _DATE_PATTERN.search(normalized):
        base += _DATE_WEIGHT
    if _DECISION_PATTERN.search(normalized):
        base += _DECISION_WEIGHT
    if _BRAND_PATTERN.search(normalized) or _PROPER_NOUN_PATTERN.search(text):
        base += _ENTITY_WEIGHT

    combined = (base + importance_hint_prior(hint)) / 2
    return min(1.0, max(0.0, combined))


def estimate_tokens(text: str) -> int:
    """Estimate the token cost of text as ceil(len / 4)."""
    return math.ceil(len(text) / 4)


def keyword_overlap(text: str, query: str) -> float:
    """Fraction of query terms that occur in text.

    Both sides are normalized and lower-cased; the query is split on
    whitespace and each term counts as a hit when it appears as a substring
    of the text.

    Returns:
        Overlap ratio in [0, 1]; 0 for an empty query
    """
    tokens = [token for token in normalize_text(query).lower().split(" ") if token]
    if not tokens:
        return 0.0
    haystack = normalize_text(text).lower()
    hits = sum(1 for token in tokens if token in haystack)
    return hits / len(tokens)
