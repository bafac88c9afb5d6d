"""Main entry point for the MotoAI RAG API."""
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional
from urllib.parse import quote
import tiktoken
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from supabase import create_client

from config import (
    PORT,
    LOG_LEVEL,
    LOG_FORMAT,
    CORS_ORIGINS,
    SUPABASE_URL,
    SUPABASE_KEY,
    EMBEDDING_API_KEY,
    CACHE_TTL,
)
from logger import setup_logging
from models.api import ChatRequest, AIContextIn, SearchRequest, SearchResponse, SearchHit, AddDocumentRequest
from models.chat import AIContext, ChatMessage
from services.ai_tools import ToolRegistry
from services.chunking_engine import ChunkingEngine
from services.coe_data import CoeDataSource
from services.document_loader import DocumentLoader
from services.embedding_model import EmbeddingModel
from services.listing_repository import ListingRepository
from services.llm_client import LLMClient, LLMClientError
from services.rag_engine import RAGEngine
from services.response_cache import (
    ResponseCache,
    generate_cache_key,
    create_cached_sse_stream,
    collect_sse_stream,
)
from services.vector_store import VectorStore

logger = logging.getLogger(__name__)

SEARCH_CONTENT_PREVIEW_CHARS = 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Construct the per-process services and run the cache sweep."""
    if LOG_FORMAT == "json":
        setup_logging(LOG_LEVEL)

    logger.info("Initializing MotoAI RAG services...")

    try:
        supabase_client = None
        if SUPABASE_URL and SUPABASE_KEY:
            supabase_client = create_client(SUPABASE_URL, SUPABASE_KEY)
        else:
            logger.warning("Supabase not configured; listing tools and persistent cache disabled")

        embedding_model = None
        if EMBEDDING_API_KEY:
            embedding_model = EmbeddingModel()
        else:
            logger.warning("EMBEDDING_API_KEY not set; knowledge base search is keyword-only")

        listing_repository = ListingRepository(client=supabase_client) if supabase_client else None
        document_loader = DocumentLoader()

        app.state.document_loader = document_loader
        app.state.response_cache = ResponseCache(client=supabase_client)
        app.state.rag_engine = RAGEngine(
            vector_store=VectorStore(embedding_model),
            llm_client=LLMClient(),
            tool_registry=ToolRegistry(listing_repository, CoeDataSource()),
            document_loader=document_loader,
            chunking_engine=ChunkingEngine(),
            token_encoder=tiktoken.get_encoding("o200k_base"),
        )
        logger.info("All services initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize services: {e}", exc_info=True)
        raise

    app.state.response_cache.start()
    try:
        yield
    finally:
        await app.state.response_cache.stop()


app = FastAPI(
    title="MotoAI RAG API",
    description="Knowledge-base and tool augmented assistant for the motorcycle marketplace",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-RAG-Intent", "X-RAG-Sources", "X-RAG-Tools", "X-Cache"],
)


def _encode_header(value: Any) -> str:
    """Percent-encode like JavaScript's encodeURIComponent."""
    if not isinstance(value, str):
        value = json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    return quote(value, safe="!~*'()")


def _rag_headers(metadata: Dict[str, Any], cache_status: str) -> Dict[str, str]:
    headers = {
        "Cache-Control": "no-cache",
        "X-RAG-Intent": _encode_header(metadata["intent"]["type"]),
        "X-RAG-Sources": _encode_header(
            [{"source": s["source"], "section": s["section"]} for s in metadata["sources"]]
        ),
        "X-Cache": cache_status,
    }
    if metadata["toolsUsed"]:
        headers["X-RAG-Tools"] = _encode_header(metadata["toolsUsed"])
    return headers


def _to_context(context: Optional[AIContextIn]) -> Optional[AIContext]:
    if context is None:
        return None
    return AIContext(
        page=context.page,
        locale=context.locale,
        listing=context.listing,
        comparisons=list(context.comparisons),
        form_data=context.form_data,
    )


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "message": "MotoAI RAG API"}


@app.get("/health")
async def health():
    """Detailed health check."""
    return {
        "status": "healthy",
        "service": "motoai-rag",
        "version": "1.0.0"
    }


@app.post("/api/ai/chat")
async def chat_endpoint(body: ChatRequest, request: Request):
    """
    Stream an assistant reply as Server-Sent Events.

    Sources, intent and tools used travel in X-RAG-* headers; X-Cache tells
    whether the reply was replayed from the response cache.

    Raises:
        HTTPException: 400 without messages, 502 when the completion API
            fails, 500 otherwise
    """
    if not body.messages:
        raise HTTPException(status_code=400, detail="Messages required")

    rag_engine: RAGEngine = request.app.state.rag_engine
    cache: ResponseCache = request.app.state.response_cache

    cache_key = generate_cache_key("chat", body.model_dump(mode="json", by_alias=True))
    cached = await cache.get(cache_key)
    if cached is not None:
        try:
            payload = json.loads(cached)
            headers = _rag_headers(payload, "HIT")
            logger.info("Chat response served from cache")
            return StreamingResponse(
                create_cached_sse_stream(payload["content"]),
                media_type="text/event-stream",
                headers=headers
            )
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable cached chat response: {e}")

    messages = [ChatMessage(role=m.role, content=m.content) for m in body.messages]

    try:
        rag_response = await rag_engine.chat(messages, _to_context(body.context))
    except LLMClientError as e:
        logger.error(f"LLM client error: {e.error.message}")
        raise HTTPException(
            status_code=502,
            detail={
                "error": {
                    "code": e.error.code,
                    "message": e.error.message,
                    "details": e.error.details
                }
            }
        )
    except Exception as e:
        logger.error(f"Unexpected error processing chat: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")

    metadata = rag_response.metadata()

    def store(content: str) -> None:
        if content:
            cache.set(cache_key, "chat", json.dumps({"content": content, **metadata}), CACHE_TTL["chat"])

    return StreamingResponse(
        collect_sse_stream(rag_response.stream, store),
        media_type="text/event-stream",
        headers=_rag_headers(metadata, "MISS")
    )


@app.get("/api/knowledge-base")
async def list_knowledge_base(request: Request):
    """Summarize the knowledge-base documents and the vector store."""
    rag_engine: RAGEngine = request.app.state.rag_engine
    loader: DocumentLoader = request.app.state.document_loader

    try:
        documents = await asyncio.to_thread(loader.load_documents)
        await rag_engine.vector_store.load()
    except Exception as e:
        logger.error(f"Failed to list knowledge base: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to list knowledge base")

    summary = [
        {
            "id": doc.id,
            "filename": doc.filename,
            "category": doc.category,
            "tags": doc.tags,
            "lastUpdated": doc.last_updated,
            "chunkCount": len(rag_engine.chunking_engine.chunk_document(doc)),
            "contentLength": len(doc.content),
        }
        for doc in documents
    ]

    return {
        "documents": summary,
        "totalDocuments": len(documents),
        "vectorStore": rag_engine.vector_store.get_stats().to_dict(),
    }


@app.post("/api/knowledge-base")
async def add_knowledge_base_document(body: AddDocumentRequest, request: Request):
    """Write a new document; it is searchable after the next reindex."""
    if not body.filename or not body.content:
        raise HTTPException(status_code=400, detail="filename and content are required")

    loader: DocumentLoader = request.app.state.document_loader
    try:
        doc_id = await asyncio.to_thread(loader.add_document, body.filename, body.content, body.category, body.tags)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except OSError as e:
        logger.error(f"Failed to add document: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to add document")

    return {
        "success": True,
        "id": doc_id,
        "message": "Document added. Run reindex to update the vector store.",
    }


@app.get("/api/knowledge-base/documents/{name}")
async def get_knowledge_base_document(name: str, request: Request):
    loader: DocumentLoader = request.app.state.document_loader
    document = await asyncio.to_thread(loader.load_document, f"documents/{name}")
    if document is None:
        raise HTTPException(status_code=404, detail="Document not found")

    return {
        "document": {
            "id": document.id,
            "filename": document.filename,
            "category": document.category,
            "tags": document.tags,
            "lastUpdated": document.last_updated,
            "content": document.content,
        }
    }


@app.post("/api/knowledge-base/search", response_model=SearchResponse)
async def search_knowledge_base(body: SearchRequest, request: Request) -> SearchResponse:
    """Search the knowledge base in hybrid, vector or keyword mode."""
    if not body.query:
        raise HTTPException(status_code=400, detail="query is required")

    rag_engine: RAGEngine = request.app.state.rag_engine
    try:
        results = await rag_engine.search(body.query, top_k=body.top_k, category=body.category, mode=body.mode)
    except Exception as e:
        logger.error(f"Knowledge base search failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Search failed")

    hits = [
        SearchHit(
            id=r.chunk.id,
            source=r.chunk.source,
            section=r.chunk.section,
            category=r.chunk.category,
            tags=r.chunk.tags,
            score=r.score,
            content=r.chunk.content[:SEARCH_CONTENT_PREVIEW_CHARS],
        )
        for r in results
    ]
    return SearchResponse(query=body.query, mode=body.mode, results=hits, total_results=len(hits))


@app.post("/api/knowledge-base/reindex")
async def reindex_knowledge_base(request: Request):
    """Rebuild the vector store from the knowledge-base documents."""
    rag_engine: RAGEngine = request.app.state.rag_engine
    try:
        result = await rag_engine.reindex()
    except Exception as e:
        logger.error(f"Reindex failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to reindex knowledge base")

    return {"success": True, **result}


if __name__ == "__main__":
    import uvicorn
    logger.info(f"Starting MotoAI RAG API on port {PORT}")
    uvicorn.run(app, host="0.0.0.0", port=PORT)
