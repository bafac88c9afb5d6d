"""Unit tests for VectorStore class."""
import sys
import json
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

import pytest
import pytest_asyncio
from unittest.mock import AsyncMock, Mock
import numpy as np
from models.chunk import Chunk
from models.document import Document
from services.chunking_engine import ChunkingEngine
from services.embedding_model import EmbeddingModel, EmbeddingError
from services.vector_store import VectorStore, tokenize_query


def make_chunk(chunk_id, content, section="Section", category="general", tags=None, embedding=None):
    return Chunk(
        id=chunk_id,
        content=content,
        source=f"documents/{chunk_id}",
        section=section,
        category=category,
        tags=tags or [],
        embedding=np.asarray(embedding, dtype=float) if embedding is not None else None,
    )


@pytest.fixture
def index_path(tmp_path):
    return tmp_path / "data" / "kb-index.json"


@pytest.fixture
def embedding_model():
    model = Mock(spec=EmbeddingModel)
    model.embed_text = AsyncMock()
    model.embed_batch = AsyncMock()
    return model


class TestTokenizeQuery:

    def test_splits_on_whitespace_and_punctuation(self):
        assert tokenize_query("What is the COE quota, today?") == ["what", "is", "the", "coe", "quota", "today"]

    def test_drops_single_characters(self):
        assert tokenize_query("a b cc") == ["cc"]


class TestVectorStoreLoading:
    """Test suite for load/persist behaviour."""

    @pytest.mark.asyncio
    async def test_load_without_snapshot_leaves_empty_loaded_store(self, index_path):
        store = VectorStore(None, index_path=index_path)
        await store.load()

        assert store.loaded is True
        assert store.chunk_count() == 0
        assert store.is_ready() is False

    @pytest.mark.asyncio
    async def test_persist_then_reload_with_embeddings(self, index_path):
        store = VectorStore(None, index_path=index_path)
        await store.add_chunks([make_chunk("a", "COE quota details", embedding=[0.1, 0.2])])
        await store.persist()

        assert index_path.exists()
        reloaded = VectorStore(None, index_path=index_path)
        await reloaded.load()

        assert reloaded.is_ready() is True
        assert reloaded.get_stats().has_embeddings is True
        np.testing.assert_allclose(reloaded.chunks[0].embedding, [0.1, 0.2])

    @pytest.mark.asyncio
    async def test_snapshot_format(self, index_path):
        store = VectorStore(None, index_path=index_path)
        await store.add_chunks([make_chunk("a", "text without vector")])
        await store.persist()

        data = json.loads(index_path.read_text(encoding="utf-8"))
        assert data["version"] == 1
        assert data["createdAt"].endswith("Z")
        assert data["chunks"][0]["id"] == "a"
        assert "embedding" not in data["chunks"][0]

    @pytest.mark.asyncio
    async def test_version_mismatch_is_ignored(self, index_path):
        index_path.parent.mkdir(parents=True)
        index_path.write_text(json.dumps({
            "version": 99,
            "createdAt": "2024-01-01T00:00:00Z",
            "chunks": [make_chunk("a", "old format").to_dict()],
        }), encoding="utf-8")

        store = VectorStore(None, index_path=index_path)
        await store.load()

        assert store.loaded is True
        assert store.chunk_count() == 0

    @pytest.mark.asyncio
    async def test_corrupt_snapshot_is_ignored(self, index_path):
        index_path.parent.mkdir(parents=True)
        index_path.write_text("{not json", encoding="utf-8")

        store = VectorStore(None, index_path=index_path)
        await store.load()

        assert store.loaded is True
        assert store.is_ready() is False

    @pytest.mark.asyncio
    async def test_load_is_idempotent(self, index_path):
        store = VectorStore(None, index_path=index_path)
        await store.load()
        await store.add_chunks([make_chunk("a", "in memory only")])
        await store.load()

        assert store.chunk_count() == 1


class TestAddChunks:
    """Test suite for VectorStore.add_chunks."""

    @pytest.mark.asyncio
    async def test_embeds_only_missing_chunks(self, index_path, embedding_model):
        embedding_model.embed_batch.return_value = [[1.0, 0.0]]
        store = VectorStore(embedding_model, index_path=index_path)

        await store.add_chunks([
            make_chunk("has", "already embedded", embedding=[0.0, 1.0]),
            make_chunk("missing", "needs a vector"),
        ])

        embedding_model.embed_batch.assert_awaited_once_with(["needs a vector"])
        np.testing.assert_allclose(store.chunks[0].embedding, [0.0, 1.0])
        np.testing.assert_allclose(store.chunks[1].embedding, [1.0, 0.0])

    @pytest.mark.asyncio
    async def test_replaces_previous_contents(self, index_path):
        store = VectorStore(None, index_path=index_path)
        await store.add_chunks([make_chunk("a", "first"), make_chunk("b", "second")])
        await store.add_chunks([make_chunk("c", "third")])

        assert [c.id for c in store.chunks] == ["c"]

    @pytest.mark.asyncio
    async def test_embedding_failure_leaves_store_unchanged(self, index_path, embedding_model):
        embedding_model.embed_batch.side_effect = EmbeddingError("down")
        store = VectorStore(embedding_model, index_path=index_path)
        await store.add_chunks([make_chunk("old", "kept")], embed=False)

        with pytest.raises(EmbeddingError):
            await store.add_chunks([make_chunk("new", "not stored")])

        assert [c.id for c in store.chunks] == ["old"]

    @pytest.mark.asyncio
    async def test_embed_false_skips_embedding(self, index_path, embedding_model):
        store = VectorStore(embedding_model, index_path=index_path)
        await store.add_chunks([make_chunk("a", "keyword only")], embed=False)

        embedding_model.embed_batch.assert_not_awaited()
        assert store.has_embeddings() is False


class TestSearch:
    """Test suite for vector, keyword and hybrid search."""

    @pytest_asyncio.fixture
    async def store(self, index_path, embedding_model):
        store = VectorStore(embedding_model, index_path=index_path)
        await store.add_chunks([
            make_chunk("coe", "COE quota and COE bidding", section="COE Bidding",
                       category="registration", tags=["coe"], embedding=[1.0, 0.0]),
            make_chunk("tax", "Road tax is 372 per year", section="Road Tax",
                       category="taxes", tags=["road tax"], embedding=[0.0, 1.0]),
            make_chunk("plain", "Unembedded note about coe", section="Notes", category="registration"),
        ], embed=False)
        return store

    @pytest.mark.asyncio
    async def test_vector_search_ranks_by_similarity(self, store, embedding_model):
        embedding_model.embed_text.return_value = [0.9, 0.1]

        results = await store.search("coe", top_k=5)

        assert [r.chunk.id for r in results] == ["coe", "tax"]
        assert results[0].score > results[1].score

    @pytest.mark.asyncio
    async def test_vector_search_excludes_unembedded_and_filters(self, store, embedding_model):
        embedding_model.embed_text.return_value = [1.0, 0.0]

        results = await store.search("coe", top_k=5, category="registration")
        assert [r.chunk.id for r in results] == ["coe"]

        results = await store.search("coe", top_k=5, tags=["road tax"])
        assert [r.chunk.id for r in results] == ["tax"]

    @pytest.mark.asyncio
    async def test_keyword_scoring(self, store):
        results = await store.keyword_search("coe", top_k=5)

        # content count * 2 + tag bonus 5 + section bonus 3
        scores = {r.chunk.id: r.score for r in results}
        assert scores["coe"] == 2 * 2 + 5 + 3
        assert scores["plain"] == 2
        assert "tax" not in scores

    @pytest.mark.asyncio
    async def test_keyword_search_category_and_top_k(self, store):
        assert await store.keyword_search("coe", category="taxes") == []
        assert len(await store.keyword_search("coe", top_k=1)) == 1

    @pytest.mark.asyncio
    async def test_hybrid_merges_weighted_scores(self, store, embedding_model):
        embedding_model.embed_text.return_value = [1.0, 0.0]

        results = await store.hybrid_search("coe", top_k=5)
        scores = {r.chunk.id: r.score for r in results}

        assert results[0].chunk.id == "coe"
        assert scores["coe"] == pytest.approx(1.0 * 0.7 + 0.3)
        assert scores["plain"] == pytest.approx(2 / 12 * 0.3)
        assert scores["tax"] == pytest.approx(0.0)

    @pytest.mark.asyncio
    async def test_hybrid_without_keyword_hits_uses_vector_only(self, store, embedding_model):
        embedding_model.embed_text.return_value = [0.0, 1.0]

        results = await store.hybrid_search("zzz", top_k=1)

        assert results[0].chunk.id == "tax"
        assert results[0].score == pytest.approx(0.7)

    @pytest.mark.asyncio
    async def test_hybrid_equals_keyword_without_embeddings(self, index_path, embedding_model):
        store = VectorStore(embedding_model, index_path=index_path)
        await store.add_chunks([
            make_chunk("a", "coe quota coe", section="COE", tags=["coe"]),
            make_chunk("b", "road tax coe", section="Tax"),
        ], embed=False)

        hybrid = await store.hybrid_search("coe quota", top_k=5)
        keyword = await store.keyword_search("coe quota", top_k=5)

        assert [(r.chunk.id, r.score) for r in hybrid] == [(r.chunk.id, r.score) for r in keyword]
        embedding_model.embed_text.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stats(self, store):
        stats = store.get_stats()

        assert stats.total_chunks == 3
        assert stats.categories == {"registration": 2, "taxes": 1}
        assert stats.to_dict() == {
            "totalChunks": 3,
            "categories": {"registration": 2, "taxes": 1},
            "hasEmbeddings": True,
        }

    @pytest.mark.asyncio
    async def test_clear(self, store):
        store.clear()
        assert store.chunk_count() == 0
        assert store.is_ready() is False


class TestEndToEndKeywordRanking:

    @pytest.mark.asyncio
    async def test_quota_query_prefers_coe_document(self, index_path):
        engine = ChunkingEngine()
        docs = [
            Document(id="documents/coe", filename="coe", category="registration",
                     content="# COE Bidding\n\nThe quota for each bidding exercise is set by LTA."),
            Document(id="documents/road-tax", filename="road-tax", category="taxes",
                     content="# Road Tax\n\nMotorcycles up to 600cc pay 372 dollars a year."),
        ]
        store = VectorStore(None, index_path=index_path)
        await store.add_chunks(engine.chunk_documents(docs))

        results = await store.keyword_search("what is the quota for COE", top_k=5)

        assert results[0].chunk.source == "documents/coe"
        ranked = [r.chunk.source for r in results]
        if "documents/road-tax" in ranked:
            assert ranked.index("documents/coe") < ranked.index("documents/road-tax")
