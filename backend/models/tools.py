"""Tool definitions and typed tool results."""
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Union


@dataclass
class ToolDefinition:
    """Function-calling description of a tool; the schema is not enforced."""
    name: str
    description: str
    parameters: Dict[str, Any]


@dataclass
class ListingSearchResult:
    count: int
    listings: List[Dict[str, Any]]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CoePriceResult:
    latest_premium: Optional[int]
    pqp: Optional[int]
    category: str = "D (Motorcycle)"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "latestPremium": self.latest_premium,
            "pqp": self.pqp,
            "category": self.category,
        }


@dataclass
class RoadTaxResult:
    engine_size: int
    annual_road_tax: int
    half_year_road_tax: float
    currency: str = "SGD"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "engineSize": self.engine_size,
            "annualRoadTax": self.annual_road_tax,
            "halfYearRoadTax": self.half_year_road_tax,
            "currency": self.currency,
        }


@dataclass
class DepreciationResult:
    purchase_price: float
    coe_expiry_date: str
    remaining_months: int
    remaining_years: str
    monthly_depreciation: int
    annual_depreciation: int
    currency: str = "SGD"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "purchasePrice": self.purchase_price,
            "coeExpiryDate": self.coe_expiry_date,
            "remainingMonths": self.remaining_months,
            "remainingYears": self.remaining_years,
            "monthlyDepreciation": self.monthly_depreciation,
            "annualDepreciation": self.annual_depreciation,
            "currency": self.currency,
        }


@dataclass
class CoeStatisticsResult:
    statistics: Optional[Dict[str, Any]]

    def to_dict(self) -> Dict[str, Any]:
        return self.statistics if self.statistics is not None else {"error": "No COE data available"}


@dataclass
class BikeComparisonResult:
    count: int
    bikes: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ToolError:
    error: str

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error}


ToolOutput = Union[
    ListingSearchResult,
    CoePriceResult,
    RoadTaxResult,
    DepreciationResult,
    CoeStatisticsResult,
    BikeComparisonResult,
    ToolError,
]


@dataclass
class ToolResult:
    """Outcome of a single tool invocation."""
    tool: str
    result: ToolOutput

    def to_dict(self) -> Dict[str, Any]:
        return {"tool": self.tool, "result": self.result.to_dict()}
