"""Data models for the MotoAI RAG service."""
from .document import Document
from .chunk import Chunk, ScoredChunk
from .intent import ClassifiedIntent, IntentType
from .chat import ChatMessage, AIContext, Source, RAGResponse
from .cache import CacheEntry
from .tools import ToolDefinition, ToolResult, ToolError
from .api import ChatRequest, SearchRequest, SearchResponse, SearchHit, AddDocumentRequest

__all__ = [
    "Document",
    "Chunk",
    "ScoredChunk",
    "ClassifiedIntent",
    "IntentType",
    "ChatMessage",
    "AIContext",
    "Source",
    "RAGResponse",
    "CacheEntry",
    "ToolDefinition",
    "ToolResult",
    "ToolError",
    "ChatRequest",
    "SearchRequest",
    "SearchResponse",
    "SearchHit",
    "AddDocumentRequest",
]
