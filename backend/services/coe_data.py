"""Historical motorcycle (Category D) COE bidding results."""
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from config import COE_DATA_PATH

logger = logging.getLogger(__name__)

# Two bidding exercises per month; PQP averages the last three months
PQP_WINDOW = 6
RECENT_WINDOW = 12


def _chronological(records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(records, key=lambda r: (r["month"], r.get("biddingNo", 0)))


class CoeDataSource:
    """
    Read-only view over a JSON file of bidding results.

    Each record has ``month`` (YYYY-MM), ``biddingNo``, ``quota``,
    ``bidsSuccess``, ``bidsReceived`` and ``premium``.
    """

    def __init__(self, data_path: Path = COE_DATA_PATH, records: Optional[List[Dict[str, Any]]] = None):
        self.data_path = Path(data_path)
        self._records = _chronological(records) if records is not None else None

    @property
    def records(self) -> List[Dict[str, Any]]:
        """Records ordered oldest first, loaded on first access."""
        if self._records is None:
            self._records = _chronological(self._load())
        return self._records

    def latest_premium(self) -> Optional[int]:
        records = self.records
        return int(records[-1]["premium"]) if records else None

    def latest_pqp(self) -> Optional[int]:
        """Prevailing quota premium: rounded mean of the last six exercises."""
        window = self.records[-PQP_WINDOW:]
        if not window:
            return None
        return int(round(sum(r["premium"] for r in window) / len(window)))

    def statistics(self) -> Optional[Dict[str, Any]]:
        """Aggregate statistics over the whole history, or None without data."""
        records = self.records
        if not records:
            return None

        lowest = min(records, key=lambda r: r["premium"])
        highest = max(records, key=lambda r: r["premium"])
        average = sum(r["premium"] for r in records) / len(records)
        recent = records[-RECENT_WINDOW:]

        first, last = recent[0]["premium"], recent[-1]["premium"]
        if last > first:
            direction = "up"
        elif last < first:
            direction = "down"
        else:
            direction = "flat"

        return {
            "totalRecords": len(records),
            "latestPremium": int(last),
            "latestMonth": recent[-1]["month"],
            "minPremium": {"value": int(lowest["premium"]), "month": lowest["month"]},
            "maxPremium": {"value": int(highest["premium"]), "month": highest["month"]},
            "averagePremium": int(round(average)),
            "recentTrend": [
                {"month": r["month"], "biddingNo": r.get("biddingNo"), "premium": int(r["premium"])}
                for r in recent
            ],
            "trendDirection": direction,
        }

    def _load(self) -> List[Dict[str, Any]]:
        if not self.data_path.exists():
            logger.warning(f"COE data file not found: {self.data_path}")
            return []
        with open(self.data_path, encoding="utf-8") as f:
            data = json.load(f)
        logger.info(f"Loaded {len(data)} COE records from {self.data_path}")
        return data
