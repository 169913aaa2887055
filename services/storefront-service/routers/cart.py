"""Cart API router."""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from auth import get_current_user_id
from database import get_db
from dependencies import get_cart_service
from schemas import AddToCartRequest, AddToCartResponse, CartCountResponse, CartResponse
from services.cart_service import CartService

router = APIRouter(prefix="/cart", tags=["cart"])


@router.post("", response_model=AddToCartResponse, status_code=201)
async def add_to_cart(
    request: AddToCartRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    cart_service: CartService = Depends(get_cart_service)
):
    """Add item to cart - requires authentication."""
    try:
        result = cart_service.add_to_cart(
            db=db,
            user_id=user_id,
            product_id=request.product_id,
            quantity=request.quantity
        )
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))

    return {"message": "Added to cart", **result}


@router.get("", response_model=CartResponse)
async def get_cart(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    cart_service: CartService = Depends(get_cart_service)
):
    """Get user's cart - requires authentication."""
    return cart_service.get_cart(db, user_id)


@router.get("/count", response_model=CartCountResponse)
async def get_cart_count(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    cart_service: CartService = Depends(get_cart_service)
):
    """Number of lines in the user's cart - requires authentication."""
    return {"user_id": user_id, "count": cart_service.get_cart_count(db, user_id)}
