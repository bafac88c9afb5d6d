"""Unit tests for the RAG engine and prompt assembly."""
import sys
import asyncio
import json
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

import pytest
from unittest.mock import Mock, AsyncMock
from models.chat import AIContext, ChatMessage
from models.chunk import Chunk, ScoredChunk
from models.intent import ClassifiedIntent
from models.tools import ToolResult, RoadTaxResult
from services.ai_tools import ToolRegistry
from services.coe_data import CoeDataSource
from services.document_loader import DocumentLoader
from services.embedding_model import EmbeddingModel, EmbeddingError
from services.llm_client import LLMClient, LLMClientError, LLMError
from services.vector_store import VectorStore
from services.rag_engine import (
    RAGEngine,
    build_system_prompt,
    format_retrieved_context,
    format_tool_results,
    latest_user_query,
)


async def fake_stream():
    yield b"data: [DONE]\n\n"


@pytest.fixture
def kb_dir(tmp_path):
    documents = tmp_path / "kb" / "documents"
    documents.mkdir(parents=True)
    (documents / "coe-bidding.md").write_text(
        "---\ncategory: registration\ntags: [coe]\n---\n\n"
        "# COE Bidding\n\nThe COE quota for Category D bidding is announced by LTA each quarter.",
        encoding="utf-8"
    )
    (documents / "road-tax.md").write_text(
        "---\ncategory: taxes\ntags: [road tax]\n---\n\n"
        "# Road Tax\n\nMotorcycles up to 600cc pay 372 dollars of road tax a year.",
        encoding="utf-8"
    )
    return tmp_path / "kb"


@pytest.fixture
def index_path(tmp_path):
    return tmp_path / "data" / "kb-index.json"


@pytest.fixture
def llm_client():
    client = Mock(spec=LLMClient)
    client.stream_chat = AsyncMock(side_effect=lambda *args, **kwargs: fake_stream())
    return client


@pytest.fixture
def registry():
    return ToolRegistry(None, CoeDataSource(records=[
        {"month": "2024-10", "biddingNo": 1, "premium": 10268},
        {"month": "2024-10", "biddingNo": 2, "premium": 10189},
    ]))


@pytest.fixture
def engine(kb_dir, index_path, llm_client, registry):
    return RAGEngine(
        VectorStore(None, index_path=index_path),
        llm_client,
        registry,
        document_loader=DocumentLoader(kb_dir),
    )


def system_prompt_of(llm_client):
    messages = llm_client.stream_chat.call_args.args[0]
    assert messages[0]["role"] == "system"
    return messages[0]["content"]


class TestPromptAssembly:

    def test_language_directive(self):
        general = ClassifiedIntent(type="general", confidence=0.5)

        assert "You MUST respond in Chinese (Simplified)." in build_system_prompt(AIContext(locale="zh"), "", "", general)
        assert "You MUST respond in English." in build_system_prompt(AIContext(locale="xx"), "", "", general)
        assert "You MUST respond in English." in build_system_prompt(None, "", "", general)

    def test_intent_guidance(self):
        regulation = build_system_prompt(None, "", "", ClassifiedIntent(type="regulation", confidence=1, category="taxes"))
        market = build_system_prompt(None, "", "", ClassifiedIntent(type="market", confidence=1))

        assert "Singapore regulations/policies" in regulation
        assert "market data, pricing, or recommendations" in market
        assert "Singapore regulations/policies" not in market

    def test_listing_block_uses_placeholders(self):
        context = AIContext(listing={"title": "Honda CB400X", "price": 8500, "brand": ""})
        prompt = build_system_prompt(context, "", "", ClassifiedIntent(type="listing", confidence=0.9))

        assert "Title: Honda CB400X" in prompt
        assert "Brand: N/A" in prompt
        assert "Price: S$8500" in prompt

    def test_comparisons_and_listing_form(self):
        context = AIContext(
            page="listing-form",
            comparisons=[
                {"brand": "Honda", "model": "CB400X", "year": 2021, "engineSize": 399, "price": 9000, "mileage": 12000},
                {"brand": "Yamaha", "model": "MT-07", "year": 2020},
            ],
        )
        prompt = build_system_prompt(context, "", "", ClassifiedIntent(type="general", confidence=0.5))

        assert "Bike 1: Honda CB400X (2021) - 399cc, ? HP, S$9000, 12000 km" in prompt
        assert "Bike 2: Yamaha MT-07 (2020)" in prompt
        assert "creating a motorcycle listing" in prompt
        assert "listing form currently contains" not in prompt

    def test_listing_form_includes_filled_fields(self):
        context = AIContext(
            page="listing-form",
            form_data={"brand": "Honda", "model": "CB400X", "price": 9000, "description": ""},
        )
        prompt = build_system_prompt(context, "", "", ClassifiedIntent(type="general", confidence=0.5))

        assert "The listing form currently contains:\nbrand: Honda\nmodel: CB400X\nprice: 9000" in prompt
        assert "description:" not in prompt

    def test_form_data_ignored_outside_listing_form(self):
        context = AIContext(page="home", form_data={"brand": "Honda"})
        prompt = build_system_prompt(context, "", "", ClassifiedIntent(type="general", confidence=0.5))

        assert "listing form currently contains" not in prompt

    def test_retrieved_then_tool_context_last(self):
        prompt = build_system_prompt(None, "[KB]", "[TOOLS]", ClassifiedIntent(type="general", confidence=0.5))
        assert prompt.endswith("[KB][TOOLS]")

    def test_format_retrieved_context(self):
        chunk = Chunk(id="x", content="Quota text", source="documents/coe-bidding", section="Quota",
                      category="registration")
        text = format_retrieved_context([ScoredChunk(chunk=chunk, score=0.8)])

        assert "--- KNOWLEDGE BASE CONTEXT ---" in text
        assert "[Source 1: documents > coe-bidding - Quota]\nQuota text" in text
        assert text.endswith("--- END KNOWLEDGE BASE ---")
        assert format_retrieved_context([]) == ""

    def test_format_tool_results(self):
        result = ToolResult(tool="calculate_road_tax", result=RoadTaxResult(600, 372, 186.0))
        text = format_tool_results([result])

        assert "[Tool: calculate_road_tax]" in text
        assert json.dumps(result.result.to_dict(), indent=2) in text
        assert format_tool_results([]) == ""

    def test_latest_user_query(self):
        messages = [
            ChatMessage(role="user", content="first"),
            ChatMessage(role="assistant", content="reply"),
            ChatMessage(role="user", content="second"),
        ]
        assert latest_user_query(messages) == "second"
        assert latest_user_query([ChatMessage(role="user", content=[{"type": "image_url"}])]) == ""
        assert latest_user_query([]) == ""


class TestVectorStoreBootstrap:

    @pytest.mark.asyncio
    async def test_builds_and_persists_when_no_index(self, engine, index_path):
        store = await engine.ensure_vector_store()

        assert store.chunk_count() == 2
        assert index_path.exists()

    @pytest.mark.asyncio
    async def test_concurrent_callers_build_once(self, engine, kb_dir):
        engine.document_loader = Mock(wraps=DocumentLoader(kb_dir))

        await asyncio.gather(*(engine.ensure_vector_store() for _ in range(5)))

        assert engine.document_loader.load_documents.call_count == 1

    @pytest.mark.asyncio
    async def test_existing_index_is_not_rebuilt(self, engine, index_path, llm_client, registry, kb_dir):
        await engine.ensure_vector_store()

        loader = Mock(wraps=DocumentLoader(kb_dir))
        fresh = RAGEngine(VectorStore(None, index_path=index_path), llm_client, registry, document_loader=loader)
        store = await fresh.ensure_vector_store()

        assert store.chunk_count() == 2
        loader.load_documents.assert_not_called()

    @pytest.mark.asyncio
    async def test_embedding_failure_falls_back_to_keyword_index(self, kb_dir, index_path, llm_client, registry):
        model = Mock(spec=EmbeddingModel)
        model.embed_batch = AsyncMock(side_effect=EmbeddingError("service down"))
        engine = RAGEngine(VectorStore(model, index_path=index_path), llm_client, registry,
                           document_loader=DocumentLoader(kb_dir))

        store = await engine.ensure_vector_store()

        assert store.chunk_count() == 2
        assert store.has_embeddings() is False
        assert index_path.exists()

    @pytest.mark.asyncio
    async def test_reindex(self, engine):
        result = await engine.reindex(keyword_only=True)

        assert result == {
            "documentsProcessed": 2,
            "chunksCreated": 2,
            "vectorStore": {
                "totalChunks": 2,
                "categories": {"registration": 1, "taxes": 1},
                "hasEmbeddings": False,
            },
        }

    @pytest.mark.asyncio
    async def test_search_modes(self, engine):
        results = await engine.search("road tax", mode="keyword")
        assert results[0].chunk.source == "documents/road-tax"

        with pytest.raises(ValueError, match="Unknown search mode"):
            await engine.search("road tax", mode="fuzzy")


class TestChat:

    @pytest.mark.asyncio
    async def test_regulation_question_uses_knowledge_base(self, engine, llm_client):
        messages = [ChatMessage(role="user", content="How does COE bidding work?")]

        response = await engine.chat(messages, AIContext(locale="en"))

        assert [s.source for s in response.sources] == ["documents/coe-bidding"]
        assert response.tools_used == []
        assert response.metadata()["intent"] == {"type": "regulation", "category": "registration"}

        prompt = system_prompt_of(llm_client)
        assert "--- KNOWLEDGE BASE CONTEXT ---" in prompt
        assert "LTA each quarter" in prompt
        assert llm_client.stream_chat.call_args.args[0][1:] == [
            {"role": "user", "content": "How does COE bidding work?"}
        ]

    @pytest.mark.asyncio
    async def test_current_coe_price_runs_tool_without_retrieval(self, engine, llm_client):
        response = await engine.chat([ChatMessage(role="user", content="What is the current COE price for motorcycles?")])

        assert response.intent.type == "tool"
        assert response.tools_used == ["get_coe_price"]
        assert response.sources == []

        prompt = system_prompt_of(llm_client)
        assert "[Tool: get_coe_price]" in prompt
        assert '"latestPremium": 10189' in prompt
        assert "KNOWLEDGE BASE CONTEXT" not in prompt

    @pytest.mark.asyncio
    async def test_general_chat_skips_retrieval_and_tools(self, engine):
        response = await engine.chat([ChatMessage(role="user", content="hello there")])

        assert response.intent.type == "general"
        assert response.sources == []
        assert response.tools_used == []
        assert engine.vector_store.loaded is False

    @pytest.mark.asyncio
    async def test_listing_context(self, engine, llm_client):
        context = AIContext(listing={"title": "Yamaha MT-07", "price": 12000})

        response = await engine.chat([ChatMessage(role="user", content="Is this a good deal?")], context)

        assert response.metadata()["intent"] == {"type": "listing"}
        assert "Title: Yamaha MT-07" in system_prompt_of(llm_client)

    @pytest.mark.asyncio
    async def test_retrieval_failure_is_not_fatal(self, engine):
        await engine.ensure_vector_store()
        engine.vector_store.hybrid_search = AsyncMock(side_effect=RuntimeError("index broken"))

        response = await engine.chat([ChatMessage(role="user", content="How does COE bidding work?")])

        assert response.sources == []
        assert response.intent.type == "regulation"

    @pytest.mark.asyncio
    async def test_tool_failure_is_not_fatal(self, engine, registry):
        registry.execute = AsyncMock(side_effect=RuntimeError("db down"))

        response = await engine.chat([ChatMessage(role="user", content="search for a honda")])

        assert response.tools_used == []

    @pytest.mark.asyncio
    async def test_completion_failure_propagates(self, engine, llm_client):
        llm_client.stream_chat.side_effect = LLMClientError(
            LLMError(code="API_ERROR", message="AI API error: 503 - down", details={"status_code": 503})
        )

        with pytest.raises(LLMClientError):
            await engine.chat([ChatMessage(role="user", content="hello there")])

    @pytest.mark.asyncio
    async def test_cancel_event_forwarded(self, engine, llm_client):
        cancel = asyncio.Event()
        await engine.chat([ChatMessage(role="user", content="hello there")], cancel_event=cancel)

        assert llm_client.stream_chat.call_args.kwargs["cancel_event"] is cancel

    @pytest.mark.asyncio
    async def test_prompt_size_logged_with_encoder(self, engine):
        engine.token_encoder = Mock()
        engine.token_encoder.encode.return_value = [1, 2, 3]

        await engine.chat([ChatMessage(role="user", content="hello there")])

        engine.token_encoder.encode.assert_called_once()
