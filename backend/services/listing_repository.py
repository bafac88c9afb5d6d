"""Read-only access to marketplace listings stored in Supabase."""
import asyncio
import logging
from typing import Any, Dict, List, Optional
from supabase import create_client, Client
from config import SUPABASE_URL, SUPABASE_KEY

logger = logging.getLogger(__name__)

SEARCH_COLUMNS = (
    "id,title,brand,model,year,engine_size,price,mileage,condition,"
    "license_class,coe_expiry_date"
)
COMPARE_COLUMNS = (
    "id,title,brand,model,year,engine_size,power,weight,torque,mileage,price,"
    "condition,type,license_class,coe_expiry_date,omv,fuel_consumption"
)


class ListingRepository:
    """Query listings by filter or id. Never writes."""

    def __init__(
        self,
        supabase_url: Optional[str] = SUPABASE_URL,
        supabase_key: Optional[str] = SUPABASE_KEY,
        table_name: str = "listings",
        client: Optional[Client] = None
    ):
        """
        Initialize the repository with a Supabase client.

        Raises:
            ValueError: If no client is given and credentials are missing
        """
        if client is None:
            if not supabase_url or not supabase_key:
                raise ValueError("SUPABASE_URL and SUPABASE_KEY environment variables are required")
            client = create_client(supabase_url, supabase_key)

        self.client = client
        self.table_name = table_name

    async def search_active(
        self,
        brand: Optional[str] = None,
        min_price: Optional[float] = None,
        max_price: Optional[float] = None,
        license_class: Optional[str] = None,
        limit: int = 5
    ) -> List[Dict[str, Any]]:
        """
        Find ACTIVE listings, newest first.

        Args:
            brand: Case-insensitive substring of the brand
            min_price: Inclusive lower price bound
            max_price: Inclusive upper price bound
            license_class: CLASS_2B, CLASS_2A or CLASS_2
            limit: Maximum rows returned
        """
        def run() -> List[Dict[str, Any]]:
            query = self.client.table(self.table_name).select(SEARCH_COLUMNS).eq("status", "ACTIVE")
            if brand:
                query = query.ilike("brand", f"%{brand}%")
            if min_price:
                query = query.gte("price", min_price)
            if max_price:
                query = query.lte("price", max_price)
            if license_class:
                query = query.eq("license_class", license_class)
            response = query.order("created_at", desc=True).limit(limit).execute()
            return response.data or []

        rows = await asyncio.to_thread(run)
        logger.debug(f"Listing search returned {len(rows)} rows")
        return rows

    async def get_by_ids(self, listing_ids: List[str]) -> List[Dict[str, Any]]:
        """Fetch listings by id for side-by-side comparison."""
        def run() -> List[Dict[str, Any]]:
            response = (
                self.client.table(self.table_name)
                .select(COMPARE_COLUMNS)
                .in_("id", listing_ids)
                .execute()
            )
            return response.data or []

        return await asyncio.to_thread(run)
