"""
RAG engine for the MotoAI assistant.

Per request: classify the latest user message, retrieve knowledge-base
passages for regulation and market questions, run at most one tool, build
the system prompt and open a streaming completion. Retrieval and tool
failures only thin out the prompt; a completion failure is raised.
"""
import asyncio
import json
import logging
from dataclasses import replace
from typing import Any, Dict, List, Optional, Tuple

from models.chat import AIContext, ChatMessage, RAGResponse, Source
from models.chunk import ScoredChunk
from models.intent import ClassifiedIntent
from models.tools import ToolResult
from services.ai_tools import ToolRegistry, select_tool, extract_tool_args
from services.chunking_engine import ChunkingEngine
from services.document_loader import DocumentLoader
from services.embedding_model import EmbeddingError
from services.intent_router import IntentRouter
from services.llm_client import LLMClient
from services.vector_store import VectorStore
from config import RAG_TOP_K

logger = logging.getLogger(__name__)

LOCALE_NAMES = {
    "en": "English",
    "zh": "Chinese (Simplified)",
    "fr": "French",
    "es": "Spanish",
    "ja": "Japanese",
    "ko": "Korean",
}

PERSONA = (
    "You are MotoAI, an expert motorcycle assistant for the Open Market platform, "
    "a Singapore-based used motorcycle marketplace. You have deep knowledge of motorcycle "
    "brands, models, specifications, maintenance, Singapore traffic regulations, COE "
    "(Certificate of Entitlement) system, insurance, and pricing trends. "
    "Be helpful, concise, and friendly."
)

REGULATION_GUIDANCE = (
    "The user is asking about Singapore regulations/policies. You have access to our verified "
    "knowledge base below. Answer based on the knowledge base information. Cite specific numbers, "
    "rates, and dates from the knowledge base. If the knowledge base doesn't cover the question, "
    "say so and provide your best knowledge with a disclaimer."
)

MARKET_GUIDANCE = (
    "The user is asking about market data, pricing, or recommendations. Use the knowledge base "
    "and any tool results to provide data-driven answers."
)

LISTING_FORM_GUIDANCE = (
    "The user is creating a motorcycle listing. Help them write compelling titles, descriptions, "
    "and suggest fair pricing."
)

KNOWLEDGE_BASE_PREAMBLE = (
    "The following information comes from our verified knowledge base. Use it to answer accurately. "
    "Always prioritize this information over your general knowledge for Singapore-specific "
    "regulations and market data."
)

SEARCH_MODES = ("hybrid", "vector", "keyword")


def _field(data: Dict[str, Any], key: str, default: str = "N/A") -> Any:
    value = data.get(key)
    return default if value in (None, "") else value


def format_retrieved_context(results: List[ScoredChunk]) -> str:
    """Wrap retrieved passages in the knowledge-base delimiter block."""
    if not results:
        return ""

    sections = []
    for i, r in enumerate(results, 1):
        source = r.chunk.source.replace("/", " > ")
        sections.append(f"[Source {i}: {source} - {r.chunk.section}]\n{r.chunk.content}")

    body = "\n\n---\n\n".join(sections)
    return (
        f"\n\n--- KNOWLEDGE BASE CONTEXT ---\n{KNOWLEDGE_BASE_PREAMBLE}\n\n"
        f"{body}\n--- END KNOWLEDGE BASE ---"
    )


def format_tool_results(results: List[ToolResult]) -> str:
    """Wrap tool outputs, pretty-printed as JSON, in the tool delimiter block."""
    if not results:
        return ""

    sections = [
        f"[Tool: {r.tool}]\n{json.dumps(r.result.to_dict(), indent=2, ensure_ascii=False)}"
        for r in results
    ]
    return "\n\n--- TOOL RESULTS ---\n" + "\n\n".join(sections) + "\n--- END TOOL RESULTS ---"


def build_system_prompt(
    context: Optional[AIContext],
    retrieved_context: str,
    tool_context: str,
    intent: ClassifiedIntent
) -> str:
    """
    Assemble the system prompt.

    Order: persona and language directive, intent guidance, caller page
    context (listing, comparisons, listing form), retrieved passages, tool
    results.
    """
    locale = (context.locale if context else None) or "en"
    prompt = f"{PERSONA} You MUST respond in {LOCALE_NAMES.get(locale, 'English')}."

    if intent.type == IntentRouter.REGULATION:
        prompt += f"\n\n{REGULATION_GUIDANCE}"
    elif intent.type == IntentRouter.MARKET:
        prompt += f"\n\n{MARKET_GUIDANCE}"

    if context is not None and context.listing:
        listing = context.listing
        prompt += (
            "\n\nThe user is viewing this motorcycle listing:\n"
            f"Title: {_field(listing, 'title')}\n"
            f"Brand: {_field(listing, 'brand')} | Model: {_field(listing, 'model')} | Year: {_field(listing, 'year')}\n"
            f"Engine: {_field(listing, 'engineSize')}cc | Power: {_field(listing, 'power')} HP | "
            f"Weight: {_field(listing, 'weight')} kg\n"
            f"Mileage: {_field(listing, 'mileage')} km | Price: S${_field(listing, 'price')}\n"
            f"Condition: {_field(listing, 'condition')} | Type: {_field(listing, 'type')}\n"
            f"COE Expiry: {_field(listing, 'coeExpiryDate')} | OMV: {_field(listing, 'omv')}\n"
            f"Location: {_field(listing, 'location')}\n"
            f"Description: {_field(listing, 'description')}\n\n"
            "Use this data to answer questions about this motorcycle. Provide value-driven insights "
            "about pricing, maintenance, and suitability."
        )

    if context is not None and context.comparisons:
        bikes = "\n".join(
            f"Bike {i}: {_field(c, 'brand')} {_field(c, 'model')} ({_field(c, 'year')}) - "
            f"{_field(c, 'engineSize')}cc, {_field(c, 'power', '?')} HP, S${_field(c, 'price')}, "
            f"{_field(c, 'mileage')} km"
            for i, c in enumerate(context.comparisons, 1)
        )
        prompt += (
            f"\n\nThe user is comparing these motorcycles:\n{bikes}\n\n"
            "Provide a detailed, objective comparison."
        )

    if context is not None and context.page == "listing-form":
        prompt += f"\n\n{LISTING_FORM_GUIDANCE}"
        filled = {k: v for k, v in (context.form_data or {}).items() if v not in (None, "")}
        if filled:
            fields = "\n".join(f"{key}: {value}" for key, value in filled.items())
            prompt += f"\n\nThe listing form currently contains:\n{fields}"

    return prompt + retrieved_context + tool_context


def latest_user_query(messages: List[ChatMessage]) -> str:
    """Text of the last user message; empty when it is missing or multimodal."""
    for message in reversed(messages):
        if message.role == "user":
            return message.content if isinstance(message.content, str) else ""
    return ""


class RAGEngine:
    """
    Orchestrates retrieval, tools and streaming generation.

    One instance per process. The vector store is bootstrapped lazily by
    ``ensure_vector_store``; concurrent first calls wait on a lock so the
    index is built once per process. Separate worker processes each build
    their own copy and the last one to persist wins.
    """

    def __init__(
        self,
        vector_store: VectorStore,
        llm_client: LLMClient,
        tool_registry: ToolRegistry,
        document_loader: Optional[DocumentLoader] = None,
        chunking_engine: Optional[ChunkingEngine] = None,
        intent_router: Optional[IntentRouter] = None,
        token_encoder: Any = None,
        top_k: int = RAG_TOP_K
    ):
        """
        Initialize the engine.

        Args:
            vector_store: Knowledge-base index
            llm_client: Streaming completion client
            tool_registry: Tools available to select_tool
            document_loader: Source documents for (re)indexing
            chunking_engine: Splits documents into chunks
            intent_router: Query classifier
            token_encoder: tiktoken encoding used to log prompt sizes
            top_k: Passages retrieved per request
        """
        self.vector_store = vector_store
        self.llm_client = llm_client
        self.tool_registry = tool_registry
        self.document_loader = document_loader or DocumentLoader()
        self.chunking_engine = chunking_engine or ChunkingEngine()
        self.intent_router = intent_router or IntentRouter()
        self.token_encoder = token_encoder
        self.top_k = top_k

        self._init_lock = asyncio.Lock()
        self._initialized = False

    async def ensure_vector_store(self) -> VectorStore:
        """Load the persisted index, building it from documents if there is none."""
        if self._initialized:
            return self.vector_store

        async with self._init_lock:
            if not self._initialized:
                await self.vector_store.load()
                if not self.vector_store.is_ready():
                    logger.info("Initializing knowledge base...")
                    await self._build_index()
                self._initialized = True

        return self.vector_store

    async def reindex(self, keyword_only: bool = False) -> Dict[str, Any]:
        """
        Rebuild the index from the knowledge base unconditionally.

        Returns:
            documentsProcessed, chunksCreated and vectorStore stats
        """
        async with self._init_lock:
            documents, chunks = await self._build_index(keyword_only=keyword_only)
            self._initialized = True

        return {
            "documentsProcessed": documents,
            "chunksCreated": chunks,
            "vectorStore": self.vector_store.get_stats().to_dict(),
        }

    async def _build_index(self, keyword_only: bool = False) -> Tuple[int, int]:
        documents = await asyncio.to_thread(self.document_loader.load_documents)
        chunks = self.chunking_engine.chunk_documents(documents)
        logger.info(f"Loaded {len(documents)} documents -> {len(chunks)} chunks")

        if keyword_only:
            await self.vector_store.add_chunks(chunks, embed=False)
        else:
            try:
                await self.vector_store.add_chunks(chunks)
                logger.info("Knowledge base indexed with embeddings")
            except (EmbeddingError, ValueError, KeyError) as e:
                logger.warning(f"Embedding API unavailable, falling back to keyword search: {e}")
                await self.vector_store.add_chunks(
                    [replace(c, embedding=None) for c in chunks],
                    embed=False
                )

        await self.vector_store.persist()
        return len(documents), len(chunks)

    async def search(
        self,
        query: str,
        top_k: Optional[int] = None,
        category: Optional[str] = None,
        mode: str = "hybrid"
    ) -> List[ScoredChunk]:
        """
        Search the knowledge base directly.

        Raises:
            ValueError: If mode is not hybrid, vector or keyword
        """
        if mode not in SEARCH_MODES:
            raise ValueError(f"Unknown search mode: {mode}")

        store = await self.ensure_vector_store()
        k = top_k or self.top_k

        if mode == "vector":
            return await store.search(query, top_k=k, category=category)
        if mode == "keyword":
            return await store.keyword_search(query, top_k=k, category=category)
        return await store.hybrid_search(query, top_k=k, category=category)

    async def chat(
        self,
        messages: List[ChatMessage],
        context: Optional[AIContext] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> RAGResponse:
        """
        Answer the conversation with retrieval and tool support.

        Args:
            messages: Conversation so far, latest message last
            context: Page context from the caller
            cancel_event: Set to stop consuming the completion stream

        Returns:
            RAGResponse with the SSE byte stream and its metadata

        Raises:
            LLMClientError: If the completion request fails
        """
        query = latest_user_query(messages)
        intent = self.intent_router.classify(query, context)

        results, tool_result = await asyncio.gather(
            self._retrieve(query, intent),
            self._run_tool(query, intent),
        )

        tool_results = [tool_result] if tool_result is not None else []
        system_prompt = build_system_prompt(
            context,
            format_retrieved_context(results),
            format_tool_results(tool_results),
            intent,
        )
        self._log_prompt_size(system_prompt)

        full_messages = [{"role": "system", "content": system_prompt}]
        full_messages.extend(m.to_dict() for m in messages)

        stream = await self.llm_client.stream_chat(full_messages, cancel_event=cancel_event)

        return RAGResponse(
            stream=stream,
            sources=[Source(source=r.chunk.source, section=r.chunk.section, score=r.score) for r in results],
            intent=intent,
            tools_used=[r.tool for r in tool_results],
        )

    async def _retrieve(self, query: str, intent: ClassifiedIntent) -> List[ScoredChunk]:
        if intent.type not in (IntentRouter.REGULATION, IntentRouter.MARKET):
            return []

        category = intent.category if intent.type == IntentRouter.REGULATION else None
        try:
            store = await self.ensure_vector_store()
            return await store.hybrid_search(query, top_k=self.top_k, category=category)
        except Exception as e:
            logger.error(f"Knowledge base search failed: {e}", exc_info=True)
            return []

    async def _run_tool(self, query: str, intent: ClassifiedIntent) -> Optional[ToolResult]:
        tool_name = select_tool(intent, query)
        if tool_name is None:
            return None

        try:
            args = extract_tool_args(tool_name, query)
            logger.info(f"Running tool {tool_name} with {args}")
            return await self.tool_registry.execute(tool_name, args)
        except Exception as e:
            logger.error(f"Tool execution failed: {tool_name}: {e}", exc_info=True)
            return None

    def _log_prompt_size(self, prompt: str) -> None:
        if self.token_encoder is None:
            logger.debug(f"System prompt: {len(prompt)} chars")
            return
        tokens = len(self.token_encoder.encode(prompt))
        logger.info(f"System prompt: {tokens} tokens")
