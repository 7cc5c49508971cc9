"""Response text normalization and core-answer extraction for similarity comparison."""

import json
import re
from collections.abc import Mapping
from typing import Any

_FIELD_PRIORITY = ("text", "content", "message")

_CORE_ANSWER_RE = re.compile(
    r"CORE_ANSWER:\s*(.+?)(?=\n\n|\nEXPLANATION:|\nAGREE_WITH:|$)",
    re.IGNORECASE | re.DOTALL,
)
_AGREE_WITH_RE = re.compile(r"AGREE_WITH:\s*(\S+)", re.IGNORECASE)

_META_PATTERNS = [
    re.compile(p, re.IGNORECASE | re.MULTILINE)
    for p in (
        r"\*\*Deliberation Response:.*?\*\*",
        r"^#+\s*Deliberation.*$",
        r"Round \d+.*?:",
        r"Council Member \d+.*?responses?:?",
        r"\*\*(Analysis|Critique|Observations?).*?\*\*",
        r"tiered.*?structure",
        r"modular.*?approach",
        r"the debate has shifted",
        r"we.*?reached.*?consensus",
    )
]
_SKIP_PREFIXES = ("let me", "i will", "i'll")
_SKIP_PHRASES = (
    "council member",
    "round ",
    "deliberation",
    "negotiate",
    "consensus",
    "agree with",
)

MAX_CORE_ANSWER_CHARS = 800


def normalize_content(payload: Any) -> str:
    """Flatten a provider payload to plain text.

    Priority for mappings: ``text`` -> ``content`` -> ``message`` -> JSON dump.
    Sequences are normalized item by item and joined with newlines.
    Never raises; ``normalize_content(normalize_content(x)) == normalize_content(x)``.
    """
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload
    if isinstance(payload, Mapping):
        for key in _FIELD_PRIORITY:
            value = payload.get(key)
            if value is not None:
                return normalize_content(value)
        return _dump(payload)
    if isinstance(payload, (list, tuple)):
        return "\n".join(normalize_content(item) for item in payload)
    return str(payload)


def _dump(payload: Any) -> str:
    try:
        return json.dumps(payload, sort_keys=True, default=str)
    except (TypeError, ValueError):
        return str(payload)


def extract_words(content: str) -> list[str]:
    """Lowercase word tokens longer than two characters."""
    cleaned = re.sub(r"[^\w\s]", " ", content.lower())
    return [w for w in cleaned.split() if len(w) > 2]


def agreed_member(content: str) -> str | None:
    """Return the member id named in an ``AGREE_WITH:`` marker, if any."""
    match = _AGREE_WITH_RE.search(content)
    if not match or match.group(1).lower() == "none":
        return None
    return match.group(1).strip("[]()'\".,")


def substantive_sentences(content: str, limit: int = 3) -> str:
    """First few sentences after removing process/format meta-commentary."""
    cleaned = content
    for pattern in _META_PATTERNS:
        cleaned = pattern.sub("", cleaned)
    cleaned = cleaned.replace("**", "")
    cleaned = re.sub(r"^[-*]\s+", "", cleaned, flags=re.MULTILINE).strip()

    sentences = []
    for sentence in re.split(r"(?<=[.!?])\s+", cleaned):
        sentence = sentence.strip()
        lower = sentence.lower()
        if len(sentence) <= 15:
            continue
        if lower.startswith(_SKIP_PREFIXES):
            continue
        if any(phrase in lower for phrase in _SKIP_PHRASES):
            continue
        sentences.append(sentence)

    result = " ".join(sentences[:limit])
    if not result:
        # Everything looked like meta-commentary; compare on the raw text instead
        result = cleaned
    return result[:MAX_CORE_ANSWER_CHARS]


def extract_core_answer(content: str) -> str:
    """Reduce a response to the part that carries its actual answer."""
    match = _CORE_ANSWER_RE.search(content)
    if match:
        return match.group(1).strip()[:MAX_CORE_ANSWER_CHARS]

    agreed = agreed_member(content)
    if agreed:
        return f"[AGREES:{agreed}] {substantive_sentences(content)}"[:MAX_CORE_ANSWER_CHARS]

    return substantive_sentences(content)
