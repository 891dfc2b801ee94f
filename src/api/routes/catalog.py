"""Catalog API routes: public product reads and admin inventory controls."""

from uuid import UUID

from fastapi import APIRouter, Query

from src.api.deps import AdminUser, CatalogRateLimit
from src.api.middleware.error_handler import NotFoundError
from src.schemas.catalog import InventoryUpdate, ProductListResponse, ProductResponse
from src.services.catalog_service import CatalogService

router = APIRouter(prefix="/products", tags=["catalog"])


@router.get(
    "",
    response_model=ProductListResponse,
    summary="List products",
    description="Lists active products, optionally filtered by category.",
)
async def list_products(
    _: CatalogRateLimit,
    category: str | None = Query(default=None, description="Filter by category"),
    limit: int = Query(default=50, ge=1, le=100, description="Maximum results"),
    offset: int = Query(default=0, ge=0, description="Results to skip"),
) -> ProductListResponse:
    """List active products."""
    service = CatalogService()
    products = await service.list_products(category=category, limit=limit, offset=offset)
    items = [ProductResponse(**product) for product in products]
    return ProductListResponse(items=items, total=len(items))


@router.get(
    "/{product_id}",
    response_model=ProductResponse,
    summary="Get product",
    responses={404: {"description": "Product not found"}},
)
async def get_product(product_id: UUID, _: CatalogRateLimit) -> ProductResponse:
    """Get a single active product."""
    service = CatalogService()
    product = await service.get_product(product_id)
    if not product or not product.get("active"):
        raise NotFoundError("Product not found")
    return ProductResponse(**product)


@router.post(
    "/{product_id}/deactivate",
    response_model=ProductResponse,
    summary="Deactivate product (admin)",
    description="Soft-deactivates a product. Products are never deleted once sold.",
    responses={403: {"description": "Admin role required"}},
)
async def deactivate_product(product_id: UUID, admin: AdminUser) -> ProductResponse:
    """Stop selling a product."""
    service = CatalogService()
    return ProductResponse(**await service.deactivate_product(product_id))


@router.put(
    "/{product_id}/inventory",
    response_model=ProductResponse,
    summary="Set inventory (admin)",
    responses={403: {"description": "Admin role required"}},
)
async def set_inventory(product_id: UUID, data: InventoryUpdate, admin: AdminUser) -> ProductResponse:
    """Set a product's inventory count."""
    service = CatalogService()
    return ProductResponse(**await service.set_inventory(product_id, data.inventory_qty))
