"""Intent classification models."""
from dataclasses import dataclass, field
from typing import List, Literal, Optional

IntentType = Literal["regulation", "listing", "market", "tool", "general"]


@dataclass
class ClassifiedIntent:
    """
    Result of intent classification.

    Attributes:
        type: One of regulation, listing, market, tool or general
        confidence: Score between 0.0 and 1.0
        category: Regulation sub-category, only set when type is "regulation"
        keywords: Keywords from the query that produced the decision
    """
    type: IntentType
    confidence: float
    category: Optional[str] = None
    keywords: List[str] = field(default_factory=list)
