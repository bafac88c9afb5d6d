"""Document data models."""
from dataclasses import dataclass, field
from typing import List


@dataclass(frozen=True)
class Document:
    """A knowledge-base document with its front-matter already stripped."""
    id: str  # Path relative to the knowledge base root, without ".md"
    filename: str
    category: str
    content: str
    tags: List[str] = field(default_factory=list)
    last_updated: str = "unknown"
