"""Pydantic schemas for request/response validation."""
from decimal import Decimal
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional


class ProductCreate(BaseModel):
    """Schema for creating a product."""
    name: str = Field(min_length=1)
    description: Optional[str] = None
    price: Decimal = Field(ge=0, max_digits=10, decimal_places=2)
    stock_quantity: int = Field(ge=0)


class ProductCreateResponse(BaseModel):
    """Schema for product creation response."""
    message: str
    product_id: int


class ProductResponse(BaseModel):
    """Schema for product response."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str] = None
    price: Decimal
    stock_quantity: int


class AddToCartRequest(BaseModel):
    """Schema for add to cart request."""
    product_id: int
    quantity: int = Field(ge=1)


class AddToCartResponse(BaseModel):
    """Schema for add to cart response."""
    message: str
    cart_item_id: int
    product_name: str
    quantity: int


class CartItemResponse(BaseModel):
    """Schema for cart item in response."""
    id: int
    product_id: int
    product_name: str
    price: Decimal
    quantity: int
    subtotal: Decimal


class CartResponse(BaseModel):
    """Schema for cart response."""
    user_id: str
    items: List[CartItemResponse]
    total: Decimal


class CartCountResponse(BaseModel):
    """Schema for cart line count response."""
    user_id: str
    count: int


class PlaceOrderResponse(BaseModel):
    """Schema for order placement response."""
    message: str
    order_id: int
    total_amount: Decimal


class OrderResponse(BaseModel):
    """Schema for order response."""
    id: int
    total_amount: Decimal
    status: str
    created_at: str


class OrdersListResponse(BaseModel):
    """Schema for orders list response."""
    orders: List[OrderResponse]
