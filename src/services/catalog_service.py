"""Catalog service for product reads and inventory changes."""

import logging
from typing import Any
from uuid import UUID

from supabase import Client

from src.api.middleware.error_handler import NotFoundError
from src.core.supabase import get_supabase_client
from src.models.product import Product

logger = logging.getLogger(__name__)


class CatalogService:
    """Service for product and inventory operations."""

    def __init__(self, supabase_client: Client | None = None):
        """Initialize catalog service.

        Args:
            supabase_client: Optional Supabase client for testing.
        """
        self._supabase_client = supabase_client

    @property
    def supabase(self) -> Client:
        """Get Supabase client."""
        if self._supabase_client is None:
            self._supabase_client = get_supabase_client()
        return self._supabase_client

    async def get_product(self, product_id: UUID | str) -> Product | None:
        """Get a product by ID, active or not.

        Args:
            product_id: Product UUID.

        Returns:
            Product | None: Product row or None if not found.
        """
        response = (
            self.supabase.table("products")
            .select("*")
            .eq("id", str(product_id))
            .maybe_single()
            .execute()
        )
        return response.data if response and response.data else None

    async def get_products(self, product_ids: list[str]) -> dict[str, Product]:
        """Fetch several products in one query, keyed by ID."""
        if not product_ids:
            return {}
        response = (
            self.supabase.table("products")
            .select("*")
            .in_("id", list(set(product_ids)))
            .execute()
        )
        return {row["id"]: row for row in response.data or []}

    async def list_products(
        self,
        category: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Product]:
        """List active products, optionally filtered by category.

        Args:
            category: Optional category filter.
            limit: Maximum results.
            offset: Number of results to skip.

        Returns:
            list[Product]: Active products ordered by name.
        """
        query = self.supabase.table("products").select("*").eq("active", True)
        if category:
            query = query.eq("category", category)
        response = query.order("name").range(offset, offset + limit - 1).execute()
        return response.data or []

    async def decrement_inventory(self, product_id: UUID | str, quantity: int) -> int:
        """Atomically reduce inventory, flooring at zero.

        The database function also recomputes ``in_stock``.

        Args:
            product_id: Product UUID.
            quantity: Units sold.

        Returns:
            int: Inventory remaining after the decrement.

        Raises:
            NotFoundError: If the product does not exist.
        """
        response = self.supabase.rpc(
            "decrement_inventory",
            {"p_product_id": str(product_id), "p_quantity": quantity},
        ).execute()

        if response.data is None:
            raise NotFoundError(f"Product {product_id} not found")

        remaining = int(response.data)
        logger.info(
            "Decremented inventory for product %s by %d (remaining %d)",
            product_id,
            quantity,
            remaining,
        )
        return remaining

    async def set_inventory(self, product_id: UUID | str, inventory_qty: int) -> Product:
        """Set a product's inventory and its in-stock flag.

        Args:
            product_id: Product UUID.
            inventory_qty: New inventory count (>= 0).

        Returns:
            Product: Updated product.

        Raises:
            NotFoundError: If the product does not exist.
        """
        return await self._update(
            product_id,
            {"inventory_qty": inventory_qty, "in_stock": inventory_qty > 0},
        )

    async def deactivate_product(self, product_id: UUID | str) -> Product:
        """Soft-deactivate a product so it can no longer be purchased.

        Products are never deleted because orders keep referring to them.

        Raises:
            NotFoundError: If the product does not exist.
        """
        product = await self._update(product_id, {"active": False})
        logger.info("Deactivated product %s", product_id)
        return product

    async def _update(self, product_id: UUID | str, data: dict[str, Any]) -> Product:
        response = (
            self.supabase.table("products")
            .update(data)
            .eq("id", str(product_id))
            .execute()
        )
        if not response.data:
            raise NotFoundError(f"Product {product_id} not found")
        return response.data[0]
