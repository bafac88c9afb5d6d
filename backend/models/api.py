"""Request and response schemas for the HTTP API."""
from typing import Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field


class ChatMessageIn(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: Union[str, List[Dict[str, Any]]]


class AIContextIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    page: Optional[str] = None
    locale: Optional[str] = None
    listing: Optional[Dict[str, Any]] = None
    comparisons: List[Dict[str, Any]] = Field(default_factory=list)
    form_data: Optional[Dict[str, Any]] = Field(default=None, alias="formData")


class ChatRequest(BaseModel):
    """Body of POST /api/ai/chat."""
    messages: List[ChatMessageIn] = Field(default_factory=list)
    context: Optional[AIContextIn] = None


class SearchRequest(BaseModel):
    """Body of POST /api/knowledge-base/search."""
    model_config = ConfigDict(populate_by_name=True)

    query: str = ""
    top_k: Optional[int] = Field(default=None, alias="topK")
    category: Optional[str] = None
    mode: Literal["hybrid", "vector", "keyword"] = "hybrid"


class SearchHit(BaseModel):
    id: str
    source: str
    section: str
    category: str
    tags: List[str]
    score: float
    content: str


class SearchResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: str
    mode: str
    results: List[SearchHit]
    total_results: int = Field(serialization_alias="totalResults")


class AddDocumentRequest(BaseModel):
    """Body of POST /api/knowledge-base."""
    filename: str = ""
    content: str = ""
    category: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
