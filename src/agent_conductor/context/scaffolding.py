"""Scaffolded context windows for oversized fragments.

A large fragment is split into overlapping chunks along natural boundaries,
each chunk gets a short summary, and a reconstruction picks the most relevant
chunks (or their summaries) that fit a token limit.
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass

from agent_conductor.context.embedder import Embedder, cosine_similarity
from agent_conductor.context.relevance import RelevanceItem, score_relevance
from agent_conductor.context.summarizer import Summarizer
from agent_conductor.context.tokens import CHARS_PER_TOKEN, estimate_tokens

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 512
DEFAULT_OVERLAP = 50
DEFAULT_SUMMARIZE_THRESHOLD = 128
_FIRST_LINE_LIMIT = 100
_SEPARATOR = "\n\n"

_FENCE_RE = re.compile(r"```(\w+)?")
_FENCED_BLOCK_RE = re.compile(r"```[\s\S]*?```")
_INLINE_CODE_RE = re.compile(r"`[^`]+`")
_HEADING_RE = re.compile(r"\n#{2,3} ")
_CSV_LINE_RE = re.compile(r"^\s*\d+[,\t]")


@dataclass(frozen=True, slots=True)
class ScaffoldChunk:
    index: int
    content: str
    summary: str
    tokens: int
    type: str
    language: str | None = None


@dataclass(frozen=True, slots=True)
class Scaffold:
    id: str
    chunks: tuple[ScaffoldChunk, ...]
    summary: str
    total_tokens: int
    original_tokens: int


def detect_chunk_type(content: str) -> tuple[str, str | None]:
    """Classify a chunk as ``code``, ``text``, ``data`` or ``mixed`` (with fence language)."""

    fence = _FENCE_RE.search(content)
    stripped = content.strip()
    looks_like_json = bool(stripped) and stripped[0] in "[{" and stripped[-1] in "]}"
    looks_like_data = (
        looks_like_json
        or ("|" in content and "---" in content)
        or _CSV_LINE_RE.match(content) is not None
    )
    if looks_like_data and fence is None:
        return "data", None

    if fence is not None:
        language = fence.group(1) or None
        text_length = len(_FENCED_BLOCK_RE.sub("", content).strip())
        code_ratio = 1 - text_length / len(content)
        return ("code" if code_ratio > 0.7 else "mixed"), language

    inline_count = len(_INLINE_CODE_RE.findall(content))
    if inline_count > 5 and inline_count * 10 > len(content) / 100:
        return "mixed", None
    return "text", None


def split_into_chunks(
    content: str,
    target_tokens: int = DEFAULT_CHUNK_SIZE,
    overlap_tokens: int = 0,
    *,
    chars_per_token: int = CHARS_PER_TOKEN,
) -> list[str]:
    """Split ``content`` into overlapping chunks of about ``target_tokens``.

    Break points are searched in order: end of a code fence, a ``##``/``###``
    heading, a paragraph break, a sentence end. Without any of them the
    chunk is cut at the target size.
    """

    target = target_tokens * chars_per_token
    overlap = overlap_tokens * chars_per_token
    if len(content) <= target:
        return [content]

    chunks: list[str] = []
    position = 0
    while position < len(content):
        remaining = content[position:]
        if len(remaining) <= target:
            tail = remaining.strip()
            if tail:
                chunks.append(tail)
            break

        break_point = _find_break_point(remaining, target)
        piece = remaining[:break_point].strip()
        if piece:
            chunks.append(piece)
        position += max(break_point - overlap, 1)
    return chunks


def _find_break_point(remaining: str, target: int) -> int:
    fence_end = remaining.rfind("```\n", 0, target + 4)
    if fence_end > target * 0.3:
        next_newline = remaining.find("\n", fence_end + 3)
        if 0 < next_newline < target * 1.2:
            return next_newline + 1

    headings = list(_HEADING_RE.finditer(remaining[:target]))
    if headings and headings[-1].start() > target * 0.5:
        return headings[-1].start()

    paragraph = remaining.rfind("\n\n", 0, target + 2)
    if paragraph > target * 0.5:
        return paragraph + 2

    sentence = remaining.rfind(". ", 0, target + 2)
    if sentence > target * 0.7:
        return sentence + 2

    return target


def _first_line(text: str) -> str:
    line = text.split("\n", 1)[0]
    return line[:_FIRST_LINE_LIMIT] + "..." if len(line) > _FIRST_LINE_LIMIT else line


class ContextScaffolder:
    """Builds scaffolds and reconstructs them within a token limit."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        chunk_size_tokens: int = DEFAULT_CHUNK_SIZE,
        overlap_tokens: int = DEFAULT_OVERLAP,
        summarize_threshold_tokens: int = DEFAULT_SUMMARIZE_THRESHOLD,
        chars_per_token: int = CHARS_PER_TOKEN,
        summarizer: Summarizer | None = None,
        embedder: Embedder | None = None,
    ) -> None:
        self.chunk_size_tokens = chunk_size_tokens
        self.chars_per_token = chars_per_token
        self.overlap_tokens = overlap_tokens
        self.summarize_threshold_tokens = summarize_threshold_tokens
        self.summarizer = summarizer
        self.embedder = embedder

    async def scaffold(self, content: str, *, scaffold_id: str | None = None) -> Scaffold:
        raw_chunks = split_into_chunks(
            content,
            self.chunk_size_tokens,
            self.overlap_tokens,
            chars_per_token=self.chars_per_token,
        )
        chunks: list[ScaffoldChunk] = []
        for index, chunk_content in enumerate(raw_chunks):
            tokens = estimate_tokens(chunk_content, self.chars_per_token)
            chunk_type, language = detect_chunk_type(chunk_content)
            chunks.append(
                ScaffoldChunk(
                    index=index,
                    content=chunk_content,
                    summary=await self._chunk_summary(chunk_content, tokens),
                    tokens=tokens,
                    type=chunk_type,
                    language=language,
                ),
            )

        digest = hashlib.sha1(content.encode("utf-8"), usedforsecurity=False).hexdigest()  # noqa: S324
        scaffold = Scaffold(
            id=scaffold_id or f"scaffold_{digest[:12]}",
            chunks=tuple(chunks),
            summary=await self._overall_summary(chunks),
            total_tokens=sum(chunk.tokens for chunk in chunks),
            original_tokens=estimate_tokens(content, self.chars_per_token),
        )
        logger.debug(
            "Scaffolded %d tokens into %d chunks (id=%s)",
            scaffold.original_tokens,
            len(chunks),
            scaffold.id,
        )
        return scaffold

    async def _chunk_summary(self, content: str, tokens: int) -> str:
        if self.summarizer is None or tokens <= self.summarize_threshold_tokens:
            return _first_line(content)
        target = min(200, tokens // 5)
        try:
            return await self.summarizer.summarize(content, target)
        except Exception:  # noqa: BLE001
            logger.warning("Chunk summary failed, using first line", exc_info=True)
            return _first_line(content)

    async def _overall_summary(self, chunks: list[ScaffoldChunk]) -> str:
        if not chunks:
            return ""
        if len(chunks) == 1:
            return chunks[0].summary
        combined = "\n".join(f"[{chunk.index + 1}] {chunk.summary}" for chunk in chunks)
        if self.summarizer is None:
            return combined
        try:
            return await self.summarizer.summarize(combined, 300)
        except Exception:  # noqa: BLE001
            logger.warning("Scaffold summary failed, using chunk summaries", exc_info=True)
            return combined

    def reconstruct(
        self,
        scaffold: Scaffold,
        token_limit: int,
        *,
        query: str | None = None,
        include_summaries: bool = True,
    ) -> str:
        """Render the best chunks that fit into ``token_limit`` tokens."""

        if scaffold.total_tokens <= token_limit:
            return _SEPARATOR.join(chunk.content for chunk in scaffold.chunks)

        char_limit = token_limit * self.chars_per_token
        parts: dict[int, str] = {}
        used = 0

        overview = f"<context_summary>\n{scaffold.summary}\n</context_summary>"
        if scaffold.summary and len(overview) < char_limit * 0.2:
            parts[-1] = overview
            used += len(overview)

        for chunk in self._rank(scaffold.chunks, query):
            full = _format_chunk(chunk, summary=False)
            cost = len(full) + (len(_SEPARATOR) if parts else 0)
            if used + cost <= char_limit:
                parts[chunk.index] = full
                used += cost
            elif include_summaries:
                brief = _format_chunk(chunk, summary=True)
                cost = len(brief) + (len(_SEPARATOR) if parts else 0)
                if used + cost <= char_limit:
                    parts[chunk.index] = brief
                    used += cost
            if used >= char_limit * 0.95:
                break

        return _SEPARATOR.join(parts[index] for index in sorted(parts))

    def _rank(self, chunks: tuple[ScaffoldChunk, ...], query: str | None) -> list[ScaffoldChunk]:
        if not chunks:
            return []
        if not query:
            scored = [
                (1 - index / len(chunks) * 0.3 + _CODE_BONUS.get(chunk.type, 0.0), chunk)
                for index, chunk in enumerate(chunks)
            ]
            return [chunk for _, chunk in sorted(scored, key=lambda pair: -pair[0])]

        if self.embedder is not None:
            vectors = self.embedder.embed([query, *(chunk.content for chunk in chunks)])
            scored = [
                (cosine_similarity(vectors[0], vector), chunk)
                for vector, chunk in zip(vectors[1:], chunks, strict=True)
            ]
            return [chunk for _, chunk in sorted(scored, key=lambda pair: -pair[0])]

        # Later chunks count as more recent.
        items = [
            RelevanceItem(id=str(chunk.index), content=chunk.content, timestamp=float(chunk.index))
            for chunk in chunks
        ]
        ranked = score_relevance(
            items,
            query,
            now=float(len(chunks) - 1),
            max_age=float(len(chunks)),
        )
        by_index = {str(chunk.index): chunk for chunk in chunks}
        return [by_index[score.item_id] for score in ranked]


_CODE_BONUS = {"code": 0.3, "mixed": 0.15}


def _format_chunk(chunk: ScaffoldChunk, *, summary: bool) -> str:
    label = f"{chunk.type}:{chunk.language}" if chunk.type == "code" and chunk.language else chunk.type
    if summary:
        return f'<chunk index="{chunk.index}" type="{label}" mode="summary">\n{chunk.summary}\n</chunk>'
    return f'<chunk index="{chunk.index}" type="{label}">\n{chunk.content}\n</chunk>'
