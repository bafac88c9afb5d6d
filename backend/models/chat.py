"""Chat request and RAG response models."""
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

from models.intent import ClassifiedIntent


@dataclass
class ChatMessage:
    """A single chat turn; content may be multimodal parts."""
    role: str  # "system", "user" or "assistant"
    content: Any

    def to_dict(self) -> Dict[str, Any]:
        return {"role": self.role, "content": self.content}


@dataclass
class AIContext:
    """Page context supplied by the caller alongside the conversation."""
    page: Optional[str] = None
    locale: Optional[str] = None
    listing: Optional[Dict[str, Any]] = None
    comparisons: List[Dict[str, Any]] = field(default_factory=list)
    form_data: Optional[Dict[str, Any]] = None


@dataclass
class Source:
    """Knowledge base passage used to answer a request."""
    source: str
    section: str
    score: float

    def to_dict(self) -> Dict[str, Any]:
        return {"source": self.source, "section": self.section, "score": self.score}


@dataclass
class RAGResponse:
    """Streaming model output plus out-of-band metadata."""
    stream: AsyncIterator[bytes]
    sources: List[Source]
    intent: ClassifiedIntent
    tools_used: List[str]

    def metadata(self) -> Dict[str, Any]:
        intent: Dict[str, Any] = {"type": self.intent.type}
        if self.intent.category:
            intent["category"] = self.intent.category
        return {
            "sources": [s.to_dict() for s in self.sources],
            "intent": intent,
            "toolsUsed": list(self.tools_used),
        }
