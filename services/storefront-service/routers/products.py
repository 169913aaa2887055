"""Products API router."""
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Path
from sqlalchemy.orm import Session
from opentelemetry import trace

from auth import require_admin, get_user_id_from_token
from database import get_db
from dependencies import get_product_service
from monitoring import product_views_counter, products_created_counter
from schemas import ProductCreate, ProductCreateResponse, ProductResponse
from services.product_service import ProductService

router = APIRouter(prefix="/products", tags=["products"])


@router.get("", response_model=List[ProductResponse])
async def list_products(
    db: Session = Depends(get_db),
    product_service: ProductService = Depends(get_product_service)
):
    """List all products."""
    products = product_service.list_products(db)

    span = trace.get_current_span()
    span.set_attribute("product.count", len(products))
    product_views_counter.add(1, {"view": "catalog"})

    return products


@router.get("/{product_id}", response_model=ProductResponse)
async def get_product(
    product_id: int = Path(..., description="Product ID"),
    db: Session = Depends(get_db),
    product_service: ProductService = Depends(get_product_service)
):
    """Get product details."""
    try:
        product = product_service.get_product(db, product_id)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))

    trace.get_current_span().set_attribute("product.id", product_id)
    product_views_counter.add(1, {"view": "detail"})

    return product


@router.post("", response_model=ProductCreateResponse, status_code=201)
async def create_product(
    request: ProductCreate,
    db: Session = Depends(get_db),
    token: str = Depends(require_admin),
    product_service: ProductService = Depends(get_product_service)
):
    """Create a new product - admin only."""
    product = product_service.create_product(
        db=db,
        name=request.name,
        price=request.price,
        stock_quantity=request.stock_quantity,
        description=request.description
    )
    products_created_counter.add(1, {"admin": get_user_id_from_token(token)})

    return {"message": "Product created", "product_id": product.id}
