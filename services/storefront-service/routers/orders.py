"""Orders API router."""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from auth import get_current_user_id
from database import get_db
from dependencies import get_order_service
from schemas import OrdersListResponse, PlaceOrderResponse
from services.order_service import OrderService

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("", response_model=PlaceOrderResponse, status_code=201)
async def place_order(
    user_id: str = Depends(get_current_user_id),
    order_service: OrderService = Depends(get_order_service)
):
    """Place an order from the user's cart - requires authentication."""
    # The placement transaction blocks on the database; keep it off the event loop
    result = await run_in_threadpool(order_service.place_order, user_id)

    if not result.ok:
        raise HTTPException(status_code=result.error.status_code, detail=result.message)

    return {
        "message": result.message,
        "order_id": result.order_id,
        "total_amount": result.total_amount
    }


@router.get("", response_model=OrdersListResponse)
async def get_orders(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    order_service: OrderService = Depends(get_order_service)
):
    """Get user's orders - requires authentication."""
    return {"orders": order_service.get_user_orders(db, user_id)}
