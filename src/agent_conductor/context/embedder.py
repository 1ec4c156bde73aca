"""Embedding backends used for relevance scoring of context chunks."""

from __future__ import annotations

import hashlib
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

logger = logging.getLogger(__name__)

Vector = list[float]
HASHING_MODEL = "hashing"
_WORD_PATTERN = re.compile(r"[a-z0-9_]+")


class Embedder(Protocol):
    """Anything turning chunk texts into comparable vectors."""

    model_name: str

    def embed(self, texts: list[str]) -> list[Vector]:
        """Return one unit-length vector per text."""
        raise NotImplementedError


@dataclass(slots=True)
class HashingEmbedder:
    """Local feature-hashing embedder over words and character trigrams.

    Words carry more weight than trigrams so identifiers shared between a query
    and a chunk dominate the score. Each feature lands in a signed bucket,
    which keeps unrelated texts close to orthogonal.
    """

    model_name: str = HASHING_MODEL
    dimensions: int = 256
    word_weight: float = 2.0

    def embed(self, texts: list[str]) -> list[Vector]:
        return [self._vectorize(text) for text in texts]

    def _vectorize(self, text: str) -> Vector:
        vector = [0.0] * self.dimensions
        lowered = (text or "").lower()
        for word in _WORD_PATTERN.findall(lowered):
            self._add_feature(vector, f"w:{word}", self.word_weight)
            padded = f" {word} "
            for start in range(len(padded) - 2):
                self._add_feature(vector, f"c:{padded[start : start + 3]}", 1.0)
        return _normalize(vector)

    def _add_feature(self, vector: Vector, feature: str, weight: float) -> None:
        digest = hashlib.blake2b(feature.encode("utf-8"), digest_size=8).digest()
        bucket = int.from_bytes(digest[:4], "little") % self.dimensions
        sign = 1.0 if digest[4] & 1 else -1.0
        vector[bucket] += sign * weight


@dataclass(slots=True)
class SentenceTransformerEmbedder:
    """sentence-transformers model, imported on first construction."""

    model_name: str
    _model: Any = field(init=False, repr=False)

    def __post_init__(self) -> None:
        from sentence_transformers import SentenceTransformer  # type: ignore

        logger.info("Loading embedding model %s", self.model_name)
        self._model = SentenceTransformer(self.model_name)

    def embed(self, texts: list[str]) -> list[Vector]:
        if not texts:
            return []
        encoded = self._model.encode(texts, normalize_embeddings=True, show_progress_bar=False)
        return [row.tolist() for row in encoded]


def build_embedder(model_name: str, *, allow_fallback: bool = False) -> Embedder | None:
    """Build the configured embedder; an empty name disables embeddings.

    ``hashing`` selects the local embedder. Any other name is loaded with
    sentence-transformers, and a load failure is an error unless
    ``allow_fallback`` accepts the hashing embedder instead.
    """

    name = model_name.strip()
    if not name:
        return None
    if name == HASHING_MODEL:
        return HashingEmbedder()
    try:
        return SentenceTransformerEmbedder(model_name=name)
    except (ImportError, OSError, RuntimeError, ValueError) as error:
        if allow_fallback:
            logger.warning("Embedding model %s unavailable, using hashing embedder", name)
            return HashingEmbedder()
        raise RuntimeError(
            f"Failed to initialize embedding model {name}. "
            "Install the 'embeddings' extra or set AGENT_CONDUCTOR_EMBEDDING_MODEL=hashing.",
        ) from error


def cosine_similarity(left: Vector, right: Vector) -> float:
    """Cosine similarity clamped to [-1, 1]; mismatched or zero vectors score 0."""

    if len(left) != len(right):
        return 0.0
    dot = math.fsum(a * b for a, b in zip(left, right, strict=True))
    norm = math.hypot(*left) * math.hypot(*right)
    if norm == 0:
        return 0.0
    return max(-1.0, min(1.0, dot / norm))


def _normalize(vector: Vector) -> Vector:
    norm = math.hypot(*vector)
    if norm == 0:
        return vector
    return [value / norm for value in vector]
