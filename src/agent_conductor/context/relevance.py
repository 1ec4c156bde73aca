"""Relevance scoring of context items against the current task."""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass

from agent_conductor.context.embedder import Embedder, cosine_similarity

logger = logging.getLogger(__name__)

EMBEDDING_WEIGHT = 0.6
KEYWORD_WEIGHT = 0.3
RECENCY_WEIGHT = 0.1
DEFAULT_MAX_AGE_SECONDS = 3600.0

_WORD_RE = re.compile(r"[^a-z0-9\s]")
_STOP_WORDS = frozenset(
    """
    the a an is are was were be been being have has had do does did will would could
    should may might must shall can need dare ought used to of in for on with at by
    from as into through during before after above below between under again further
    then once and but or nor so yet both either neither not only own same than too
    very just also now here there when where why how all each every few more most
    other some such no any this that these those i you he she it we they what which
    who whom
    """.split(),
)


@dataclass(frozen=True, slots=True)
class RelevanceItem:
    """Scored candidate; ``timestamp`` is seconds on the caller's clock."""

    id: str
    content: str
    timestamp: float


@dataclass(frozen=True, slots=True)
class RelevanceScore:
    item_id: str
    score: float
    method: str


def extract_keywords(text: str) -> set[str]:
    normalized = _WORD_RE.sub(" ", text.lower())
    return {word for word in normalized.split() if len(word) > 2 and word not in _STOP_WORDS}


def keyword_score(task_keywords: set[str], item_keywords: set[str]) -> float:
    """Jaccard similarity of two keyword sets."""

    if not task_keywords or not item_keywords:
        return 0.0
    return len(task_keywords & item_keywords) / len(task_keywords | item_keywords)


def recency_score(timestamp: float, *, now: float, max_age: float) -> float:
    """Linear decay from 1 (now) to 0 (``max_age`` old)."""

    age = now - timestamp
    if age <= 0:
        return 1.0
    if age >= max_age:
        return 0.0
    return 1.0 - age / max_age


def score_relevance(  # noqa: PLR0913
    items: Sequence[RelevanceItem],
    task: str,
    *,
    now: float,
    embedder: Embedder | None = None,
    max_age: float = DEFAULT_MAX_AGE_SECONDS,
) -> list[RelevanceScore]:
    """Score items against ``task``, most relevant first.

    With an embedder the score mixes cosine similarity, keyword overlap and
    recency. Without one the embedding weight is redistributed between
    keyword overlap and recency.
    """

    if not items:
        return []

    task_keywords = extract_keywords(task)
    keyword_scores = [keyword_score(task_keywords, extract_keywords(item.content)) for item in items]
    recency_scores = [recency_score(item.timestamp, now=now, max_age=max_age) for item in items]

    embedding_scores: list[float] | None = None
    if embedder is not None:
        vectors = embedder.embed([task, *(item.content for item in items)])
        embedding_scores = [cosine_similarity(vectors[0], vector) for vector in vectors[1:]]

    scores: list[RelevanceScore] = []
    for index, item in enumerate(items):
        if embedding_scores is not None:
            value = (
                embedding_scores[index] * EMBEDDING_WEIGHT
                + keyword_scores[index] * KEYWORD_WEIGHT
                + recency_scores[index] * RECENCY_WEIGHT
            )
            method = "embedding"
        else:
            total = KEYWORD_WEIGHT + RECENCY_WEIGHT
            value = (
                keyword_scores[index] * (KEYWORD_WEIGHT / total)
                + recency_scores[index] * (RECENCY_WEIGHT / total)
            )
            method = "keyword" if keyword_scores[index] > recency_scores[index] else "recency"
        scores.append(
            RelevanceScore(item_id=item.id, score=min(1.0, max(0.0, value)), method=method),
        )

    return sorted(scores, key=lambda score: score.score, reverse=True)
