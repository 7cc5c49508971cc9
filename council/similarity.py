"""TF-IDF vectors and cosine similarity for lexical agreement between responses."""

import math
import re
from collections import Counter

from council.models import clamp_unit

_TOKEN_RE = re.compile(r"\w+")


def tokenize(text: str) -> list[str]:
    return _TOKEN_RE.findall(text.lower())


def tfidf_vectors(texts: list[str]) -> list[dict[str, float]]:
    """One sparse TF-IDF vector per text.

    tf is the raw count divided by document length; idf is smoothed as
    ``ln(N / (df + 1)) + 1`` so terms shared by every document keep a
    positive weight.
    """
    docs = [tokenize(t) for t in texts]
    n_docs = len(docs)
    df: Counter[str] = Counter()
    for tokens in docs:
        df.update(set(tokens))

    vectors = []
    for tokens in docs:
        if not tokens:
            vectors.append({})
            continue
        counts = Counter(tokens)
        length = len(tokens)
        vectors.append(
            {
                term: (count / length) * (math.log(n_docs / (df[term] + 1)) + 1)
                for term, count in counts.items()
            }
        )
    return vectors


def cosine(a: dict[str, float], b: dict[str, float]) -> float:
    if not a or not b:
        return 0.0
    if len(a) > len(b):
        a, b = b, a
    dot = sum(weight * b.get(term, 0.0) for term, weight in a.items())
    norm_a = math.sqrt(sum(w * w for w in a.values()))
    norm_b = math.sqrt(sum(w * w for w in b.values()))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return clamp_unit(dot / (norm_a * norm_b))


def similarity_matrix(texts: list[str]) -> list[list[float]]:
    """Symmetric pairwise TF-IDF cosine matrix with 1.0 on the diagonal."""
    vectors = tfidf_vectors(texts)
    n = len(texts)
    matrix = [[1.0] * n for _ in range(n)]
    for i in range(n):
        for j in range(i + 1, n):
            if not vectors[i] and not vectors[j]:
                # Nothing tokenizable in either text: fall back to exact comparison
                sim = 1.0 if texts[i].strip() == texts[j].strip() else 0.0
            else:
                sim = cosine(vectors[i], vectors[j])
            matrix[i][j] = sim
            matrix[j][i] = sim
    return matrix


def average_pairwise(matrix: list[list[float]]) -> float:
    """Mean of the upper triangle; 1.0 for fewer than two items."""
    n = len(matrix)
    if n < 2:
        return 1.0
    values = [matrix[i][j] for i in range(n) for j in range(i + 1, n)]
    return clamp_unit(sum(values) / len(values))


def agreement_score(texts: list[str]) -> float:
    """Average pairwise TF-IDF cosine similarity across all texts, in [0, 1]."""
    if len(texts) <= 1:
        return 1.0
    return average_pairwise(similarity_matrix(texts))
