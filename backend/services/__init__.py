"""Services for the MotoAI RAG service."""
from .document_loader import DocumentLoader
from .chunking_engine import ChunkingEngine
from .embedding_model import EmbeddingModel, EmbeddingError
from .vector_store import VectorStore
from .intent_router import IntentRouter, classify_intent
from .ai_tools import ToolRegistry, select_tool, extract_tool_args
from .llm_client import LLMClient, LLMError, LLMClientError
from .response_cache import ResponseCache, generate_cache_key
from .rag_engine import RAGEngine

__all__ = ['DocumentLoader', 'ChunkingEngine', 'EmbeddingModel', 'EmbeddingError', 'VectorStore', 'IntentRouter', 'classify_intent', 'ToolRegistry', 'select_tool', 'extract_tool_args', 'LLMClient', 'LLMError', 'LLMClientError', 'ResponseCache', 'generate_cache_key', 'RAGEngine']
