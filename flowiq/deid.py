"""Regex based de-identification for free text.

Two modes are offered.  :func:`deidentify` is one-way and replaces every
detected identifier with ``[TAG:hash]`` so audit trails can correlate values
without storing them.  :func:`tokenize` is reversible: detected identifiers are
swapped for random ``[TAG_xxxxxxxx]`` placeholders and recorded in a token map
that :func:`detokenize` uses to restore the original text.
"""

from __future__ import annotations

import hashlib
import re
import secrets
from typing import Callable, Dict, List, MutableMapping, Optional, Tuple

SSN_PATTERN = re.compile(r"\b\d{3}-?\d{2}-?\d{4}\b")
EMAIL_PATTERN = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
DOB_PATTERN = re.compile(r"\bDOB[:\s]+(\d{1,2}/\d{1,2}/\d{2,4}|\d{4}-\d{2}-\d{2})\b", re.IGNORECASE)
DATE_PATTERN = re.compile(
    r"\b(\d{1,2}[/-]\d{1,2}[/-]\d{2,4}|\d{4}-\d{2}-\d{2}"
    r"|(?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Sept|Oct|Nov|Dec)[a-z]*\s+\d{1,2}(?:st|nd|rd|th)?,\s+\d{4})\b",
    re.IGNORECASE,
)
PHONE_PATTERN = re.compile(r"(?:(?:\+?\d{1,3}[\s-]?)?(?:\(\d{2,4}\)|\d{2,4})[\s-])\d{3,4}[\s-]\d{3,4}")
ADDRESS_PATTERN = re.compile(
    r"\b\d{1,5}\s+(?:[A-Za-z0-9'.]+\s){0,4}(?:St\.?|Street|Ave\.?|Avenue|Rd\.?|Road|Blvd\.?|Lane|Ln\.?|Drive|Way|Court|Ct\.?)(?!\w)",
    re.IGNORECASE,
)
URL_PATTERN = re.compile(r"(?:(?:https?://|www\.)[^\s@]+)")
IP_PATTERN = re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b")
MRN_PATTERN = re.compile(r"\bMRN[:#\s]*(\d{5,10})\b", re.IGNORECASE)
# Names are only detected with an honorific or an explicit label; bare
# capitalised words are left alone.
NAME_PATTERN = re.compile(
    r"\b(?:Dr|Mr|Mrs|Ms|Miss)\.?\s+([A-Z][a-z]+(?:\s+[A-Z][a-z]+)?)"
    r"|\b(?:[Pp]atient|[Nn]ame)\s*:\s*([A-Z][a-z]+(?:\s+[A-Z][a-z]+)?)"
)

TOKEN_ORDER: List[Tuple[re.Pattern, str]] = [
    (SSN_PATTERN, "SSN"),
    (EMAIL_PATTERN, "EMAIL"),
    (DOB_PATTERN, "DOB"),
    (DATE_PATTERN, "DATE"),
    (PHONE_PATTERN, "PHONE"),
    (ADDRESS_PATTERN, "ADDRESS"),
    (URL_PATTERN, "URL"),
    (IP_PATTERN, "IP"),
    (MRN_PATTERN, "MRN"),
    (NAME_PATTERN, "NAME"),
]

TOKEN_RE = re.compile(r"\[[A-Z][A-Z0-9_]*_[0-9a-f]{8}\]")
_HASH_TOKEN_RE = re.compile(r"\[[A-Z]+:[0-9a-f]+\]")


def _hash(value: str) -> str:
    return hashlib.sha1(value.encode()).hexdigest()[:10]


def make_token(tag: str) -> str:
    """Return a fresh placeholder such as ``[PHONE_1a2b3c4d]``."""

    return f"[{tag.upper()}_{secrets.token_hex(4)}]"


def _is_token(raw: str) -> bool:
    return bool(TOKEN_RE.fullmatch(raw) or _HASH_TOKEN_RE.fullmatch(raw))


def _capture_group(match: re.Match) -> int:
    for index in range(1, (match.re.groups or 0) + 1):
        if match.group(index) is not None:
            return index
    return 0


def _apply(text: str, replace: Callable[[str, str], str]) -> str:
    for pattern, tag in TOKEN_ORDER:

        def inner(match: re.Match, tag: str = tag) -> str:
            group = _capture_group(match)
            whole = match.group(0)
            segment = match.group(group)
            raw = segment.strip().rstrip(".,;:")
            if not raw or _is_token(raw) or "[" in raw:
                return whole
            rel_start = match.start(group) - match.start(0)
            rel_end = match.end(group) - match.start(0)
            replaced = segment.replace(raw, replace(tag, raw), 1)
            return whole[:rel_start] + replaced + whole[rel_end:]

        text = pattern.sub(inner, text)
    return text


def deidentify(text: str, hash_tokens: bool = True) -> str:
    """Return *text* with identifiers replaced by ``[TAG:hash]`` markers."""

    if not text:
        return text
    return _apply(text, lambda tag, raw: f"[{tag}:{_hash(raw) if hash_tokens else raw}]")


def tokenize(
    text: str,
    token_map: MutableMapping[str, str],
    token_factory: Optional[Callable[[str], str]] = None,
) -> str:
    """Reversibly replace identifiers in *text*, recording them in *token_map*.

    Repeated values reuse the placeholder already present in the map so the
    same phone number is always represented by the same token.
    """

    if not text:
        return text
    factory = token_factory or make_token
    reverse: Dict[str, str] = {value: token for token, value in token_map.items()}

    def replace(tag: str, raw: str) -> str:
        existing = reverse.get(raw)
        if existing is not None:
            return existing
        token = factory(tag)
        token_map[token] = raw
        reverse[raw] = token
        return token

    return _apply(text, replace)


def detokenize(text: str, token_map: MutableMapping[str, str]) -> str:
    """Substitute every known placeholder in *text* with its original value."""

    if not text or not token_map:
        return text
    return TOKEN_RE.sub(lambda m: str(token_map.get(m.group(0), m.group(0))), text)


__all__ = ["TOKEN_ORDER", "TOKEN_RE", "deidentify", "detokenize", "make_token", "tokenize"]
