"""In-memory store of past negotiation resolutions, used as few-shot guidance."""

import logging
import re
import threading

from config.config_loader import NegotiationExample
from council.similarity import tokenize

logger = logging.getLogger(__name__)

_PII_PATTERNS = [
    (re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), "[EMAIL]"),
    (re.compile(r"\bhttps?://\S+"), "[URL]"),
    (re.compile(r"\b\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}\b"), "[IP_ADDRESS]"),
    (re.compile(r"\b\d{3}-\d{2}-\d{4}\b"), "[SSN]"),
    (re.compile(r"\b\d{4}[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{4}\b"), "[CREDIT_CARD]"),
    (re.compile(r"(?:\(\d{3}\)\s?|\b\d{3}[-.])\d{3}[-.]\d{4}\b"), "[PHONE]"),
]

# Words too common to signal relevance
_STOPWORDS = frozenset(
    "the a an and or of to in on for is are was be should what which how why when with it this that".split()
)


def anonymize(text: str) -> str:
    for pattern, replacement in _PII_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def _terms(text: str) -> set[str]:
    return {t for t in tokenize(text) if t not in _STOPWORDS and len(t) > 2}


class ExampleRepository:
    """Examples ranked by term overlap with the query."""

    def __init__(self, examples: list[NegotiationExample] | None = None) -> None:
        self._examples: list[NegotiationExample] = []
        self._lock = threading.Lock()
        for example in examples or []:
            self.store_example(example)

    def __len__(self) -> int:
        return len(self._examples)

    def store_example(self, example: NegotiationExample) -> None:
        """Store an anonymized copy of the example."""
        stored = NegotiationExample(
            category=example.category,
            query=anonymize(example.query),
            discussion=anonymize(example.discussion),
            consensus=anonymize(example.consensus),
        )
        with self._lock:
            self._examples.append(stored)

    def get_relevant_examples(self, query: str, count: int = 2) -> list[NegotiationExample]:
        if count <= 0:
            return []
        query_terms = _terms(query)
        with self._lock:
            examples = list(self._examples)

        scored = []
        for index, example in enumerate(examples):
            overlap = len(query_terms & _terms(f"{example.query} {example.discussion}"))
            scored.append((overlap, -index, example))
        scored.sort(key=lambda item: (item[0], item[1]), reverse=True)

        relevant = [example for overlap, _, example in scored if overlap > 0][:count]
        if not relevant:
            # Nothing related: fall back to general endorsement examples
            relevant = self.get_examples_by_category("endorsement", count)
        logger.debug("Selected %d negotiation examples for query", len(relevant))
        return relevant

    def get_examples_by_category(self, category: str, count: int = 2) -> list[NegotiationExample]:
        with self._lock:
            return [e for e in self._examples if e.category == category][:count]
