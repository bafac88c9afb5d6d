"""
Intent Router for the MotoAI RAG service.

This module classifies a user query into one of regulation, listing, market,
tool or general using weighted keyword tables, so the RAG engine knows
whether to search the knowledge base, call a tool, or neither.
"""

import logging
from typing import Dict, List, Optional, Tuple

from models.chat import AIContext
from models.intent import ClassifiedIntent

logger = logging.getLogger(__name__)


class IntentRouter:
    """
    Deterministic keyword-weighted intent classifier.

    Every keyword found as a case-insensitive substring of the query adds
    its own length to its table's score, so longer, more specific phrases
    weigh more. English and Chinese keywords share the tables.
    """

    REGULATION = "regulation"
    LISTING = "listing"
    MARKET = "market"
    TOOL = "tool"
    GENERAL = "general"

    REGULATION_KEYWORDS: Dict[str, List[str]] = {
        "registration": [
            "coe", "拥车证", "certificate of entitlement", "bidding", "竞标",
            "quota", "配额", "registration", "注册", "register",
        ],
        "taxes": [
            "road tax", "路税", "arf", "additional registration fee", "附加注册费",
            "parf", "omv", "open market value", "erp", "电子道路收费", "gst",
        ],
        "traffic": [
            "dips", "记分", "demerit", "speeding", "超速", "fine", "罚款",
            "penalty", "处罚", "red light", "闯红灯", "drunk driving", "酒驾",
            "speed limit", "限速",
        ],
        "licensing": [
            "licence", "license", "驾照", "class 2b", "class 2a", "class 2",
            "class 3", "btt", "ftt", "riding test", "考试", "probation", "试用期",
        ],
        "insurance": [
            "insurance", "保险", "tpo", "tpft", "comprehensive", "ncd",
            "no-claim", "无索赔", "premium", "保费",
        ],
        "import-export": [
            "import", "进口", "export", "出口", "deregistration", "注销",
            "parallel import", "平行进口",
        ],
        "emissions": [
            "ves", "emission", "排放", "eeai", "cves", "electric vehicle",
            "电动车", "ev", "charging", "充电", "green", "环保",
        ],
        "motorcycle": [
            "motorcycle regulation", "摩托车法规", "helmet", "头盔", "pillion",
            "载客", "lane splitting", "modification", "改装", "reflective", "反光",
        ],
    }

    MARKET_KEYWORDS: List[str] = [
        "price", "价格", "pricing", "定价", "how much", "多少钱", "worth", "值",
        "market", "市场", "trend", "趋势", "popular", "热门", "recommend", "推荐",
        "budget", "预算", "depreciation", "折旧", "cost", "成本", "买", "buy",
        "sell", "卖",
    ]

    TOOL_KEYWORDS: List[str] = [
        "calculate", "计算", "search", "搜索", "find", "找", "compare", "对比",
        "比较", "latest coe", "最新coe", "current", "当前", "look up", "查询", "查",
    ]

    # Decision thresholds
    MIN_REGULATION_SCORE = 3
    MIN_TOOL_SCORE = 4
    MIN_MARKET_SCORE = 3
    TOOL_OVER_MARKET_RATIO = 0.8
    REGULATION_CONFIDENCE_SCALE = 15
    MARKET_CONFIDENCE_SCALE = 12
    TOOL_CONFIDENCE_SCALE = 12
    WEAK_REGULATION_CONFIDENCE_CAP = 0.5
    LISTING_CONFIDENCE = 0.9
    GENERAL_CONFIDENCE = 0.5

    def classify(self, query: str, context: Optional[AIContext] = None) -> ClassifiedIntent:
        """
        Classify a query using a fixed precedence.

        0. Listing context: the caller pins a listing → listing (0.9)
        1. Regulation: best category score >= 3 and >= market score
        2. Tool: tool score >= 4 and > 0.8 * market score
        3. Market: market score >= 3
        4. Weak regulation: any regulation match, confidence capped at 0.5
        5. Default: general (0.5)

        Args:
            query: Latest user message
            context: Optional page context from the caller

        Returns:
            ClassifiedIntent with type, confidence, category and matched keywords
        """
        # Rule 0: context overrides text analysis
        if context is not None and context.listing:
            logger.info(f"Intent: {self.LISTING} (listing context) - {query[:50]}")
            return ClassifiedIntent(type=self.LISTING, confidence=self.LISTING_CONFIDENCE)

        query_lower = query.lower()

        best_reg_category = ""
        best_reg_score = 0
        reg_keywords: List[str] = []

        for category, keywords in self.REGULATION_KEYWORDS.items():
            score, matched = self._score(query_lower, keywords)
            reg_keywords.extend(matched)
            # Strictly greater keeps the first category on ties
            if score > best_reg_score:
                best_reg_score = score
                best_reg_category = category

        market_score, market_keywords = self._score(query_lower, self.MARKET_KEYWORDS)
        tool_score, tool_keywords = self._score(query_lower, self.TOOL_KEYWORDS)

        logger.debug(
            f"Intent scores: regulation={best_reg_score} ({best_reg_category or 'none'}), "
            f"market={market_score}, tool={tool_score}"
        )

        # Rule 1: regulation wins near-ties with market
        if best_reg_score >= self.MIN_REGULATION_SCORE and best_reg_score >= market_score:
            intent = ClassifiedIntent(
                type=self.REGULATION,
                confidence=min(best_reg_score / self.REGULATION_CONFIDENCE_SCALE, 1.0),
                category=best_reg_category,
                keywords=reg_keywords,
            )
        # Rule 2: tool only when clearly dominant over market
        elif tool_score >= self.MIN_TOOL_SCORE and tool_score > market_score * self.TOOL_OVER_MARKET_RATIO:
            intent = ClassifiedIntent(
                type=self.TOOL,
                confidence=min(tool_score / self.TOOL_CONFIDENCE_SCALE, 1.0),
                keywords=tool_keywords,
            )
        # Rule 3: market
        elif market_score >= self.MIN_MARKET_SCORE:
            intent = ClassifiedIntent(
                type=self.MARKET,
                confidence=min(market_score / self.MARKET_CONFIDENCE_SCALE, 1.0),
                keywords=market_keywords,
            )
        # Rule 4: a weak regulation signal still beats general
        elif best_reg_score > 0:
            intent = ClassifiedIntent(
                type=self.REGULATION,
                confidence=min(
                    best_reg_score / self.REGULATION_CONFIDENCE_SCALE,
                    self.WEAK_REGULATION_CONFIDENCE_CAP
                ),
                category=best_reg_category,
                keywords=reg_keywords,
            )
        # Rule 5: default
        else:
            intent = ClassifiedIntent(type=self.GENERAL, confidence=self.GENERAL_CONFIDENCE)

        logger.info(f"Intent: {intent.type} ({intent.confidence:.2f}) - {query[:50]}")
        return intent

    @staticmethod
    def _score(query_lower: str, keywords: List[str]) -> Tuple[int, List[str]]:
        """Sum keyword lengths for keywords contained in the query."""
        score = 0
        matched = []
        for keyword in keywords:
            if keyword.lower() in query_lower:
                score += len(keyword)
                matched.append(keyword)
        return score, matched


_default_router = IntentRouter()


def classify_intent(query: str, context: Optional[AIContext] = None) -> ClassifiedIntent:
    """Classify ``query`` with the default IntentRouter."""
    return _default_router.classify(query, context)
