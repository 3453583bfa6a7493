"""Products API router."""
from decimal import Decimal
from typing import List, Optional
from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.orm import Session
from opentelemetry import trace

from database import get_db
from errors import ProductNotFoundError
from models import Product
from schemas import ProductResponse
from monitoring import product_views_counter
from services.cart_service import effective_price

router = APIRouter(prefix="/products", tags=["products"])


def _to_response(product: Product) -> ProductResponse:
    return ProductResponse(
        id=product.id,
        name=product.name,
        slug=product.slug,
        price_regular=product.price_regular,
        price_offer=product.price_offer,
        effective_price=effective_price(product.price_regular, product.price_offer),
        image_url=product.image_url,
        stock=product.stock,
    )


@router.get("", response_model=List[ProductResponse])
async def get_products(
    search: Optional[str] = Query(None, description="Filter by product name"),
    max_price: Optional[Decimal] = Query(None, ge=0, description="Only products at or below this price"),
    db: Session = Depends(get_db)
):
    """
    Get the product catalog.

    Examples:
    - GET /products
    - GET /products?search=tea
    """
    query = db.query(Product)
    if search:
        query = query.filter(Product.name.ilike(f"%{search}%"))
    products = [_to_response(product) for product in query.order_by(Product.id).all()]
    if max_price is not None:
        products = [product for product in products if product.effective_price <= max_price]

    span = trace.get_current_span()
    span.set_attribute("product.count", len(products))
    product_views_counter.add(1, {"view": "list"})

    return products


@router.get("/{product_id}", response_model=ProductResponse)
async def get_product(
    product_id: int = Path(..., description="Product ID"),
    db: Session = Depends(get_db)
):
    """Get product details."""
    product = db.get(Product, product_id)
    if product is None:
        raise ProductNotFoundError(product_id)

    span = trace.get_current_span()
    span.set_attribute("product.id", product_id)
    product_views_counter.add(1, {"view": "detail"})

    return _to_response(product)
