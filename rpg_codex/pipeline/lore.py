"""Lore injection — selects world knowledge to re-inject into each turn prompt.

Two passes, merged under one section header:

  keyword  (term, line) pairs from factions, initial entities, relationships
           and (when dynamic reference is on) codex entry names. A line is
           included when its term occurs, case-insensitively, in the last two
           turns or the latest input.
  vector   codex entries embedded into a VectorStore keyed by entry id; the
           query (latest input + last turn) returns the top-k entries by cosine
           similarity, with no score threshold.

Embedding is lazy: sync() embeds only entries whose text changed since the
last sync. Any embedding failure degrades the turn to keyword-only lore.
"""

from __future__ import annotations

import logging

from rpg_codex.llm import Embedder, LLMError
from rpg_codex.models import CodexEntry, GameTurn, WorldConfig
from rpg_codex.vectors import InMemoryVectorStore, VectorStore

logger = logging.getLogger(__name__)

LORE_HEADER = (
    "--- RELEVANT WORLD INFORMATION (LORE / CODEX) ---\n"
    "To keep the story consistent, keep the following in mind if it comes up:"
)
KEYWORD_SCAN_TURNS = 2
VECTOR_TOP_K = 3


# ---------------------------------------------------------------------------
# Keyword pass
# ---------------------------------------------------------------------------

def codex_line(entry: CodexEntry) -> str:
    return f"[Codex: {entry.type}] {entry.name}: {entry.description}"


def keyword_terms(
    config: WorldConfig, codex: list[CodexEntry], include_codex: bool = True
) -> list[tuple[str, str]]:
    """Build (term, lore line) pairs. Terms are matched as substrings."""
    terms: list[tuple[str, str]] = []
    for f in config.world_lore.factions:
        terms.append((f.name, f"[Faction] {f.name}: {f.description}"))
    for e in config.initial_entities:
        terms.append((e.name, f"[{e.type}] {e.name}: {e.description} (Personality: {e.personality or 'N/A'})"))
    for r in config.character.relationships:
        terms.append((r.name, f"[Relationship] {r.name} ({r.type}): {r.description}"))
    if include_codex:
        for c in codex:
            terms.append((c.name, codex_line(c)))
    return [(term, line) for term, line in terms if term.strip()]


def match_keywords(
    config: WorldConfig,
    recent_history: list[GameTurn],
    latest_input: str,
    codex: list[CodexEntry],
    include_codex: bool = True,
) -> list[str]:
    """Lore lines whose term appears in the scanned text, deduplicated in order."""
    recent = recent_history[-KEYWORD_SCAN_TURNS:]
    text = " ".join([*(t.content for t in recent), latest_input]).lower()
    lines: list[str] = []
    for term, line in keyword_terms(config, codex, include_codex):
        if term.lower() in text and line not in lines:
            lines.append(line)
    return lines


# ---------------------------------------------------------------------------
# Vector pass
# ---------------------------------------------------------------------------

def entry_text(entry: CodexEntry) -> str:
    """Text that gets embedded for a codex entry."""
    return f"{entry.name}: {entry.description} Tags: {', '.join(entry.tags)}"


class LoreRetriever:
    """Owns the vector index for one game session.

    Args:
        embedder: anything with `async embed(text)`; None disables the vector pass.
        store:    VectorStore implementation (defaults to InMemoryVectorStore).
        top_k:    number of codex entries returned by the vector pass.
    """

    def __init__(
        self,
        embedder: Embedder | None,
        store: VectorStore | None = None,
        top_k: int = VECTOR_TOP_K,
    ) -> None:
        self.embedder = embedder
        self.store: VectorStore = store if store is not None else InMemoryVectorStore()
        self.top_k = top_k

    def _metadata(self, entry: CodexEntry, text: str) -> dict:
        return {"text": text, "name": entry.name, "type": entry.type, "line": codex_line(entry)}

    def load_embeddings(self, codex: list[CodexEntry]) -> int:
        """Index entries that already carry a vector. Returns how many were loaded."""
        loaded = 0
        for entry in codex:
            if entry.embedding:
                text = entry_text(entry)
                self.store.upsert(entry.id, entry.embedding, self._metadata(entry, text))
                loaded += 1
        return loaded

    async def sync(self, codex: list[CodexEntry]) -> int:
        """Embed entries that are new or whose text changed. Returns how many were embedded.

        A failing entry is logged and skipped; the others still sync.
        """
        if self.embedder is None:
            return 0
        embedded = 0
        for entry in codex:
            text = entry_text(entry)
            existing = self.store.get(entry.id)
            if existing is not None and existing.metadata.get("text") == text:
                continue
            if entry.embedding and existing is None:
                self.store.upsert(entry.id, entry.embedding, self._metadata(entry, text))
                continue
            try:
                vector = await self.embedder.embed(text)
            except LLMError as e:
                logger.warning("Failed to embed codex entry %r: %s", entry.id, e)
                continue
            self.store.upsert(entry.id, vector, self._metadata(entry, text))
            embedded += 1
        if embedded:
            logger.debug("Embedded %d codex entries (%d indexed)", embedded, len(codex))
        return embedded

    async def search(self, query: str, k: int | None = None) -> list[str]:
        """Lore lines for the k codex entries most similar to query."""
        if self.embedder is None or not query.strip():
            return []
        vector = await self.embedder.embed(query)
        hits = self.store.query(vector, k or self.top_k)
        return [record.metadata.get("line", record.id) for record, _score in hits]

    async def build_context(
        self,
        config: WorldConfig,
        recent_history: list[GameTurn],
        latest_input: str,
        codex: list[CodexEntry],
        include_codex: bool = True,
    ) -> str:
        return await build_lore_context(
            config, recent_history, latest_input, codex,
            retriever=self, include_codex=include_codex,
        )


async def build_lore_context(
    config: WorldConfig,
    recent_history: list[GameTurn],
    latest_input: str,
    codex: list[CodexEntry],
    retriever: LoreRetriever | None = None,
    include_codex: bool = True,
) -> str:
    """Keyword + vector lore for one turn, or "" when nothing matched."""
    lines = match_keywords(config, recent_history, latest_input, codex, include_codex)

    if retriever is not None and codex:
        last = recent_history[-1].content if recent_history else ""
        query = f"{latest_input} {last}".strip()
        try:
            await retriever.sync(codex)
            for line in await retriever.search(query):
                if line not in lines:
                    lines.append(line)
        except LLMError as e:
            logger.warning("Vector retrieval failed, using keyword lore only: %s", e)

    if not lines:
        return ""
    return LORE_HEADER + "\n" + "\n".join(f"- {line}" for line in lines)
