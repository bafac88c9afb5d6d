"""
Tool layer for the RAG engine.

Each tool has a name, a description and a JSON-schema style parameter
description (for function-calling models; not validated here) plus an
async ``execute``. The RAG engine never lets the model pick tools: it runs
at most one tool per turn, chosen by ``select_tool`` from the intent and the
query text, with arguments pulled out of the text by ``extract_tool_args``.
"""
import logging
import math
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from models.intent import ClassifiedIntent
from models.tools import (
    ToolDefinition,
    ToolResult,
    ToolOutput,
    ToolError,
    ListingSearchResult,
    CoePriceResult,
    RoadTaxResult,
    DepreciationResult,
    CoeStatisticsResult,
    BikeComparisonResult,
)
from services.coe_data import CoeDataSource
from services.listing_repository import ListingRepository

logger = logging.getLogger(__name__)

DAYS_PER_MONTH = 30.44

# Fallbacks used when the query text does not contain the argument.
# They are rough placeholders, not facts about the user's bike.
DEFAULT_ENGINE_SIZE = 600
DEFAULT_PURCHASE_PRICE = 10000
DEFAULT_COE_EXPIRY = "2030-01-01"
DEFAULT_SEARCH_LIMIT = 5

LISTINGS_UNAVAILABLE = "Listing store is not configured"

BRAND_PATTERN = re.compile(r"\b(honda|yamaha|kawasaki|suzuki|ducati|bmw|triumph|ktm|vespa)\b", re.IGNORECASE)
LICENSE_CLASS_PATTERN = re.compile(r"class\s*(2b|2a|2)", re.IGNORECASE)
ENGINE_SIZE_PATTERN = re.compile(r"(\d+)\s*cc")
PRICE_PATTERN = re.compile(r"\$?\s*([\d,]+)")
DATE_PATTERN = re.compile(r"(\d{4}-\d{2}-\d{2})")


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def calculate_road_tax(engine_size: int) -> RoadTaxResult:
    """Annual motorcycle road tax in SGD by engine displacement tier."""
    if engine_size <= 600:
        annual = 372
    elif engine_size <= 1000:
        annual = 744
    elif engine_size <= 1600:
        annual = 1488
    elif engine_size <= 3000:
        annual = 2976
    else:
        annual = 3720

    return RoadTaxResult(engine_size=engine_size, annual_road_tax=annual, half_year_road_tax=annual / 2)


def _parse_date(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def calculate_depreciation(
    purchase_price: float,
    coe_expiry_date: str,
    current_date: Optional[str] = None
) -> DepreciationResult:
    """
    Straight-line depreciation over the COE's remaining life.

    Remaining months are ``floor(days / 30.44)`` clamped at zero; with no
    months left the depreciation is zero.

    Raises:
        ValueError: If a date is not ISO formatted
    """
    expiry = _parse_date(coe_expiry_date)
    now = _parse_date(current_date) if current_date else datetime.now(timezone.utc)

    remaining_days = (expiry - now).total_seconds() / 86400
    remaining_months = max(0, math.floor(remaining_days / DAYS_PER_MONTH))
    monthly = purchase_price / remaining_months if remaining_months > 0 else 0
    annual = monthly * 12

    return DepreciationResult(
        purchase_price=purchase_price,
        coe_expiry_date=coe_expiry_date,
        remaining_months=remaining_months,
        remaining_years=f"{remaining_months / 12:.1f}",
        monthly_depreciation=_round_half_up(monthly),
        annual_depreciation=_round_half_up(annual),
    )


class SearchListingsTool:
    """Search active marketplace listings."""

    def __init__(self, repository: Optional[ListingRepository]):
        self.repository = repository
        self.name = "search_listings"
        self.description = (
            "Search active motorcycle listings. Use when user asks about available bikes, "
            "specific models, or wants to find motorcycles."
        )
        self.parameters = {
            "type": "object",
            "properties": {
                "brand": {"type": "string", "description": "Motorcycle brand"},
                "minPrice": {"type": "number", "description": "Minimum price in SGD"},
                "maxPrice": {"type": "number", "description": "Maximum price in SGD"},
                "licenseClass": {"type": "string", "enum": ["CLASS_2B", "CLASS_2A", "CLASS_2"]},
                "limit": {"type": "number", "description": "Max results (default 5)"},
            },
        }

    async def execute(
        self,
        brand: Optional[str] = None,
        minPrice: Optional[float] = None,
        maxPrice: Optional[float] = None,
        licenseClass: Optional[str] = None,
        limit: Optional[int] = None,
        **_: Any
    ) -> ToolOutput:
        if self.repository is None:
            return ToolError(error=LISTINGS_UNAVAILABLE)
        logger.info(f"search_listings called: brand={brand}, price={minPrice}-{maxPrice}, class={licenseClass}")
        listings = await self.repository.search_active(
            brand=brand,
            min_price=minPrice,
            max_price=maxPrice,
            license_class=licenseClass,
            limit=limit or DEFAULT_SEARCH_LIMIT,
        )
        return ListingSearchResult(count=len(listings), listings=listings)


class CoePriceTool:
    """Latest Category D COE premium and PQP."""

    def __init__(self, coe_data: CoeDataSource):
        self.coe_data = coe_data
        self.name = "get_coe_price"
        self.description = (
            "Get latest motorcycle COE (Category D) price and PQP. "
            "Use when user asks about current COE prices."
        )
        self.parameters = {"type": "object", "properties": {}}

    async def execute(self, **_: Any) -> ToolOutput:
        return CoePriceResult(latest_premium=self.coe_data.latest_premium(), pqp=self.coe_data.latest_pqp())


class RoadTaxTool:
    def __init__(self):
        self.name = "calculate_road_tax"
        self.description = "Calculate annual road tax based on engine displacement in cc."
        self.parameters = {
            "type": "object",
            "properties": {
                "engineSize": {"type": "number", "description": "Engine displacement in cc"},
            },
            "required": ["engineSize"],
        }

    async def execute(self, engineSize: Optional[int] = None, **_: Any) -> ToolOutput:
        if engineSize is None:
            return ToolError(error="engineSize is required")
        return calculate_road_tax(int(engineSize))


class DepreciationTool:
    def __init__(self):
        self.name = "calculate_depreciation"
        self.description = (
            "Calculate motorcycle depreciation based on purchase price, COE expiry, and current date."
        )
        self.parameters = {
            "type": "object",
            "properties": {
                "purchasePrice": {"type": "number", "description": "Purchase price in SGD"},
                "coeExpiryDate": {"type": "string", "description": "COE expiry date (YYYY-MM-DD)"},
                "currentDate": {"type": "string", "description": "Current date (YYYY-MM-DD), optional"},
            },
            "required": ["purchasePrice", "coeExpiryDate"],
        }

    async def execute(
        self,
        purchasePrice: Optional[float] = None,
        coeExpiryDate: Optional[str] = None,
        currentDate: Optional[str] = None,
        **_: Any
    ) -> ToolOutput:
        if purchasePrice is None or not coeExpiryDate:
            return ToolError(error="purchasePrice and coeExpiryDate are required")
        try:
            return calculate_depreciation(purchasePrice, coeExpiryDate, currentDate)
        except ValueError as e:
            logger.warning(f"Invalid depreciation arguments: {e}")
            return ToolError(error=f"Invalid date: {e}")


class CoeStatisticsTool:
    def __init__(self, coe_data: CoeDataSource):
        self.coe_data = coe_data
        self.name = "get_coe_statistics"
        self.description = (
            "Get comprehensive COE statistics including historical min, max, average, and recent trends."
        )
        self.parameters = {"type": "object", "properties": {}}

    async def execute(self, **_: Any) -> ToolOutput:
        return CoeStatisticsResult(statistics=self.coe_data.statistics())


class CompareBikesTool:
    def __init__(self, repository: Optional[ListingRepository]):
        self.repository = repository
        self.name = "compare_bikes"
        self.description = (
            "Compare two or more motorcycles by their listing IDs. Returns specs side by side."
        )
        self.parameters = {
            "type": "object",
            "properties": {
                "listingIds": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Array of listing IDs to compare",
                },
            },
            "required": ["listingIds"],
        }

    async def execute(self, listingIds: Optional[List[str]] = None, **_: Any) -> ToolOutput:
        if not listingIds:
            return ToolError(error="No listing IDs provided")
        if self.repository is None:
            return ToolError(error=LISTINGS_UNAVAILABLE)
        bikes = await self.repository.get_by_ids(list(listingIds))
        return BikeComparisonResult(count=len(bikes), bikes=bikes)


class ToolRegistry:
    """Fixed set of tools available to the RAG engine."""

    def __init__(self, listing_repository: Optional[ListingRepository], coe_data: CoeDataSource):
        tools = [
            SearchListingsTool(listing_repository),
            CoePriceTool(coe_data),
            RoadTaxTool(),
            DepreciationTool(),
            CoeStatisticsTool(coe_data),
            CompareBikesTool(listing_repository),
        ]
        self.tools = {tool.name: tool for tool in tools}

    def definitions(self) -> List[ToolDefinition]:
        """Descriptions suitable for exposing to a function-calling model."""
        return [
            ToolDefinition(name=t.name, description=t.description, parameters=t.parameters)
            for t in self.tools.values()
        ]

    async def execute(self, tool_name: str, args: Dict[str, Any]) -> ToolResult:
        """
        Run a tool by name.

        Unknown names produce a ToolError result; exceptions raised by the
        tool itself (e.g. the listing store being unreachable) propagate.
        """
        tool = self.tools.get(tool_name)
        if tool is None:
            logger.warning(f"Unknown tool requested: {tool_name}")
            return ToolResult(tool=tool_name, result=ToolError(error="Unknown tool"))

        result = await tool.execute(**args)
        return ToolResult(tool=tool_name, result=result)


def select_tool(intent: ClassifiedIntent, query: str) -> Optional[str]:
    """
    Pick at most one tool for this turn.

    Only tool intents, or queries that explicitly ask for the current COE
    price, are considered. Checks run in order: COE price, road tax,
    depreciation, listing search, COE statistics.
    """
    q = query.lower()

    asks_current_coe = any(
        phrase in q for phrase in ("latest coe", "最新coe", "current coe", "coe price now", "coe多少")
    )
    if intent.type != "tool" and not asks_current_coe:
        return None

    if "coe" in q and any(w in q for w in ("latest", "current", "最新", "当前", "now", "多少")):
        return "get_coe_price"
    if "road tax" in q or "路税" in q or ("tax" in q and "calcul" in q):
        return "calculate_road_tax"
    if "depreciation" in q or "折旧" in q:
        return "calculate_depreciation"
    if any(w in q for w in ("search", "find", "搜索", "找")):
        return "search_listings"
    if "statistic" in q or "统计" in q:
        return "get_coe_statistics"

    return None


def extract_tool_args(tool_name: str, query: str) -> Dict[str, Any]:
    """
    Pull tool arguments out of free text with regex heuristics.

    Missing values fall back to DEFAULT_ENGINE_SIZE (600cc),
    DEFAULT_PURCHASE_PRICE (10000) and DEFAULT_COE_EXPIRY (2030-01-01).
    The first match wins, so a query mentioning two prices or brands
    uses the first one.
    """
    q = query.lower()

    if tool_name == "calculate_road_tax":
        match = ENGINE_SIZE_PATTERN.search(q)
        return {"engineSize": int(match.group(1)) if match else DEFAULT_ENGINE_SIZE}

    if tool_name == "calculate_depreciation":
        price = DEFAULT_PURCHASE_PRICE
        price_match = PRICE_PATTERN.search(q)
        if price_match:
            digits = price_match.group(1).replace(",", "")
            if digits:
                price = int(digits)
        date_match = DATE_PATTERN.search(q)
        return {
            "purchasePrice": price,
            "coeExpiryDate": date_match.group(1) if date_match else DEFAULT_COE_EXPIRY,
        }

    if tool_name == "search_listings":
        args: Dict[str, Any] = {"limit": DEFAULT_SEARCH_LIMIT}
        brand_match = BRAND_PATTERN.search(q)
        if brand_match:
            args["brand"] = brand_match.group(1)
        class_match = LICENSE_CLASS_PATTERN.search(q)
        if class_match:
            args["licenseClass"] = f"CLASS_{class_match.group(1).upper()}"
        return args

    return {}
