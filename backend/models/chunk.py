"""Chunk data models."""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import numpy as np


@dataclass
class Chunk:
    """Represents a document chunk for retrieval."""
    id: str  # Slug of "{document_id}::{heading}"
    content: str  # Heading-prefixed passage
    source: str  # Document id
    section: str
    category: str
    tags: List[str] = field(default_factory=list)
    embedding: Optional[np.ndarray] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for the JSON index snapshot."""
        data: Dict[str, Any] = {
            "id": self.id,
            "content": self.content,
            "source": self.source,
            "section": self.section,
            "category": self.category,
            "tags": list(self.tags),
        }
        if self.embedding is not None:
            data["embedding"] = [float(x) for x in self.embedding]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Chunk":
        embedding = data.get("embedding")
        return cls(
            id=data["id"],
            content=data["content"],
            source=data["source"],
            section=data.get("section", ""),
            category=data.get("category", "general"),
            tags=list(data.get("tags") or []),
            embedding=np.asarray(embedding, dtype=float) if embedding else None,
        )


@dataclass
class ScoredChunk:
    """Chunk with relevance score from retrieval."""
    chunk: Chunk
    score: float
