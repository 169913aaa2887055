"""Dependency injection for services."""
import redis
from fastapi import Depends, Request

from services.cart_service import CartService
from services.order_service import OrderService
from services.product_service import ProductService


def get_redis_client(request: Request) -> redis.Redis:
    """Get Redis client from app state."""
    return request.app.state.redis_client


def get_cart_service(redis_client: redis.Redis = Depends(get_redis_client)) -> CartService:
    """Get cart service instance."""
    return CartService(redis_client)


def get_product_service() -> ProductService:
    """Get product service instance."""
    return ProductService()


def get_order_service(
    cart_service: CartService = Depends(get_cart_service),
    product_service: ProductService = Depends(get_product_service)
) -> OrderService:
    """Get order service instance bound to the shared connection pool."""
    return OrderService(cart_service, product_service)
