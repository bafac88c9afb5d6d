"""In-memory vector store with a JSON snapshot on disk."""
import asyncio
import json
import logging
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional
import numpy as np

from models.chunk import Chunk, ScoredChunk
from services.embedding_model import EmbeddingModel, cosine_similarity
from config import INDEX_PATH, INDEX_VERSION, VECTOR_WEIGHT, KEYWORD_WEIGHT

logger = logging.getLogger(__name__)

QUERY_SPLIT = re.compile(r"[\s,;.!?]+")


@dataclass
class StoreStats:
    """Operational summary of the store contents."""
    total_chunks: int
    categories: Dict[str, int] = field(default_factory=dict)
    has_embeddings: bool = False

    def to_dict(self) -> Dict[str, object]:
        return {
            "totalChunks": self.total_chunks,
            "categories": dict(self.categories),
            "hasEmbeddings": self.has_embeddings,
        }


def tokenize_query(query: str) -> List[str]:
    """Lower-case the query and split it on whitespace and punctuation, keeping tokens longer than one character."""
    return [t for t in QUERY_SPLIT.split(query.lower()) if len(t) > 1]


class VectorStore:
    """
    Store chunks in memory and search them by vector, keyword or both.

    The store starts unloaded; ``load()`` reads the snapshot at most once
    and leaves the store loaded (possibly empty) whatever it finds.
    """

    def __init__(
        self,
        embedding_model: Optional[EmbeddingModel],
        index_path: Path = INDEX_PATH
    ):
        """
        Initialize the vector store.

        Args:
            embedding_model: Client used to embed chunks and queries; None
                restricts the store to keyword search
            index_path: Location of the JSON snapshot
        """
        self.embedding_model = embedding_model
        self.index_path = Path(index_path)
        self.chunks: List[Chunk] = []
        self.loaded = False

        logger.info(f"Initialized VectorStore with index: {self.index_path}")

    async def load(self) -> None:
        """
        Load the persisted snapshot if it exists and matches INDEX_VERSION.

        Idempotent. A missing, corrupt, empty or wrong-version snapshot
        leaves the store empty so the caller rebuilds it.
        """
        if self.loaded:
            return

        if self.index_path.exists():
            try:
                raw = await asyncio.to_thread(self.index_path.read_text, encoding="utf-8")
                data = json.loads(raw)
                if data.get("version") == INDEX_VERSION and data.get("chunks"):
                    self.chunks = [Chunk.from_dict(item) for item in data["chunks"]]
                    self.loaded = True
                    logger.info(f"Loaded {len(self.chunks)} chunks from index")
                    return
                logger.warning(
                    f"Ignoring index with version {data.get('version')} "
                    f"(expected {INDEX_VERSION}), will rebuild"
                )
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning(f"Failed to load index, will rebuild: {e}")

        self.loaded = True

    async def add_chunks(self, chunks: List[Chunk], embed: bool = True) -> None:
        """
        Replace the store contents with ``chunks``.

        Chunks without an embedding are embedded first; chunks that already
        carry one are kept as they are.

        Args:
            chunks: Full new contents of the store
            embed: False stores the chunks as given (keyword-only index)

        Raises:
            EmbeddingError: If the embedding API fails; the store is left unchanged
        """
        missing = [i for i, chunk in enumerate(chunks) if chunk.embedding is None] if embed else []
        result = list(chunks)

        if missing and self.embedding_model is not None:
            logger.info(f"Generating embeddings for {len(missing)} chunks...")
            vectors = await self.embedding_model.embed_batch([chunks[i].content for i in missing])
            for i, vector in zip(missing, vectors):
                result[i] = replace(chunks[i], embedding=np.asarray(vector, dtype=float))
        elif missing:
            logger.warning(f"No embedding model configured; {len(missing)} chunks stored without vectors")

        self.chunks = result
        self.loaded = True

    async def search(
        self,
        query: str,
        top_k: int = 5,
        category: Optional[str] = None,
        tags: Optional[List[str]] = None
    ) -> List[ScoredChunk]:
        """
        Rank chunks by cosine similarity to the query embedding.

        Chunks without an embedding are never returned.

        Args:
            query: User question
            top_k: Number of results
            category: Only consider chunks in this category
            tags: Only consider chunks carrying at least one of these tags

        Returns:
            Up to ``top_k`` results, highest score first
        """
        await self.load()

        candidates = [c for c in self._filter(category, tags) if c.embedding is not None]
        if not candidates or self.embedding_model is None:
            return []

        query_embedding = await self.embedding_model.embed_text(query)

        scored = [
            ScoredChunk(chunk=chunk, score=cosine_similarity(query_embedding, chunk.embedding))
            for chunk in candidates
        ]
        scored.sort(key=lambda r: r.score, reverse=True)
        return scored[:top_k]

    async def keyword_search(
        self,
        query: str,
        top_k: int = 5,
        category: Optional[str] = None
    ) -> List[ScoredChunk]:
        """
        Rank chunks by weighted term matches.

        Per query token: 2 points for every occurrence in the content,
        5 if it appears in the chunk's tags and 3 if it appears in the
        section title. Chunks scoring 0 are dropped.
        """
        await self.load()

        terms = tokenize_query(query)
        scored = []

        for chunk in self._filter(category, None):
            content_lower = chunk.content.lower()
            tag_str = " ".join(chunk.tags).lower()
            section_lower = chunk.section.lower()
            score = 0

            for term in terms:
                score += content_lower.count(term) * 2
                if term in tag_str:
                    score += 5
                if term in section_lower:
                    score += 3

            if score > 0:
                scored.append(ScoredChunk(chunk=chunk, score=float(score)))

        scored.sort(key=lambda r: r.score, reverse=True)
        return scored[:top_k]

    async def hybrid_search(
        self,
        query: str,
        top_k: int = 5,
        category: Optional[str] = None
    ) -> List[ScoredChunk]:
        """
        Blend vector and keyword rankings.

        Falls back to ``keyword_search`` when no chunk has an embedding.
        Otherwise both searches fetch ``2 * top_k`` candidates; the vector
        score contributes 0.7 and the keyword score, normalized by the best
        keyword score in the batch (floored at 1), contributes 0.3.
        """
        await self.load()

        if not self.has_embeddings():
            return await self.keyword_search(query, top_k=top_k, category=category)

        vector_results, keyword_results = await asyncio.gather(
            self.search(query, top_k=top_k * 2, category=category),
            self.keyword_search(query, top_k=top_k * 2, category=category),
        )

        merged: Dict[str, ScoredChunk] = {}

        for r in vector_results:
            weighted = r.score * VECTOR_WEIGHT
            existing = merged.get(r.chunk.id)
            if existing is None or weighted > existing.score:
                merged[r.chunk.id] = ScoredChunk(chunk=r.chunk, score=weighted)

        max_keyword = max([r.score for r in keyword_results] + [1.0])
        for r in keyword_results:
            contribution = (r.score / max_keyword) * KEYWORD_WEIGHT
            existing = merged.get(r.chunk.id)
            if existing is not None:
                existing.score += contribution
            else:
                merged[r.chunk.id] = ScoredChunk(chunk=r.chunk, score=contribution)

        results = sorted(merged.values(), key=lambda r: r.score, reverse=True)
        return results[:top_k]

    async def persist(self) -> None:
        """Write the full chunk list, embeddings included, to the snapshot file."""
        data = {
            "version": INDEX_VERSION,
            "createdAt": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "chunks": [chunk.to_dict() for chunk in self.chunks],
        }
        payload = json.dumps(data, ensure_ascii=False)

        def write() -> None:
            self.index_path.parent.mkdir(parents=True, exist_ok=True)
            self.index_path.write_text(payload, encoding="utf-8")

        await asyncio.to_thread(write)
        logger.info(f"Persisted {len(self.chunks)} chunks to {self.index_path}")

    def clear(self) -> None:
        """Drop all chunks from memory; the snapshot on disk is untouched."""
        self.chunks = []

    def chunk_count(self) -> int:
        return len(self.chunks)

    def is_ready(self) -> bool:
        return self.loaded and len(self.chunks) > 0

    def has_embeddings(self) -> bool:
        return any(c.embedding is not None for c in self.chunks)

    def get_stats(self) -> StoreStats:
        categories: Dict[str, int] = {}
        for chunk in self.chunks:
            categories[chunk.category] = categories.get(chunk.category, 0) + 1

        return StoreStats(
            total_chunks=len(self.chunks),
            categories=categories,
            has_embeddings=self.has_embeddings(),
        )

    def _filter(self, category: Optional[str], tags: Optional[List[str]]) -> List[Chunk]:
        candidates = self.chunks
        if category:
            candidates = [c for c in candidates if c.category == category]
        if tags:
            candidates = [c for c in candidates if any(t in c.tags for t in tags)]
        return candidates
