"""Cart management service."""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Dict, Any
from sqlalchemy import delete, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session
import redis
from opentelemetry import trace

from config import CART_CACHE_TTL
from models import CartItem, Product
from monitoring import cart_additions_counter

logger = logging.getLogger(__name__)

# INSERT ... ON CONFLICT constructs per supported backend
_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


@dataclass(frozen=True)
class CartLine:
    """Cart line joined with the product's current price and stock."""
    product_id: int
    quantity: int
    price: Decimal
    stock_quantity: int


def cart_count_key(user_id: str) -> str:
    return f"cart:{user_id}:count"


def cart_version_key(user_id: str) -> str:
    return f"cart:{user_id}:version"


class CartService:
    """Service for managing shopping carts."""

    def __init__(self, redis_client: redis.Redis):
        """
        Initialize cart service.

        Args:
            redis_client: Redis client for caching
        """
        self.redis_client = redis_client
        self.tracer = trace.get_tracer(__name__)

    def add_to_cart(
        self,
        db: Session,
        user_id: str,
        product_id: int,
        quantity: int
    ) -> Dict[str, Any]:
        """
        Add item to user's cart.

        Adding a product already in the cart increases its quantity.

        Args:
            db: Database session
            user_id: User identifier
            product_id: Product identifier
            quantity: Quantity to add

        Returns:
            Result with cart item details

        Raises:
            ValueError: If product not found
        """
        span = trace.get_current_span()
        span.set_attribute("product.id", product_id)
        span.set_attribute("quantity", quantity)

        # Verify product exists
        with self.tracer.start_as_current_span("db.query.get_product") as db_span:
            db_span.set_attribute("db.operation", "SELECT")
            db_span.set_attribute("db.table", "products")
            db_span.set_attribute("product.id", product_id)

            product = db.get(Product, product_id)

            if product:
                db_span.set_attribute("db.rows_returned", 1)
            else:
                db_span.set_attribute("db.rows_returned", 0)
                raise ValueError("Product not found")

        # Stock is not checked here; availability is enforced when the order is placed.
        with self.tracer.start_as_current_span("db.query.upsert_cart_item") as db_span:
            db_span.set_attribute("db.operation", "UPSERT")
            db_span.set_attribute("db.table", "cart_items")
            db_span.set_attribute("user.id", user_id)
            db_span.set_attribute("product.id", product_id)

            insert = _DIALECT_INSERTS[db.get_bind().dialect.name]
            stmt = insert(CartItem).values(
                user_id=user_id,
                product_id=product_id,
                quantity=quantity
            )
            # The increment happens in the database so overlapping adds both count
            stmt = stmt.on_conflict_do_update(
                index_elements=["user_id", "product_id"],
                set_={"quantity": CartItem.quantity + stmt.excluded.quantity}
            ).returning(CartItem.id, CartItem.quantity)

            cart_item = db.execute(stmt).one()
            db.commit()

            db_span.set_attribute("cart_item.id", cart_item.id)

        self.invalidate_cart_cache(user_id)

        cart_additions_counter.add(1, {"product_id": str(product_id)})

        logger.info("Added product to cart", extra={
            "user_id": user_id,
            "product_id": product_id,
            "product_name": product.name,
            "quantity": quantity,
            "cart_quantity": cart_item.quantity
        })

        return {
            "cart_item_id": cart_item.id,
            "product_name": product.name,
            "quantity": cart_item.quantity
        }

    def get_cart(self, db: Session, user_id: str) -> Dict[str, Any]:
        """
        Get user's cart contents.

        Args:
            db: Database session
            user_id: User identifier

        Returns:
            Cart contents with items and total
        """
        with self.tracer.start_as_current_span("db.query.get_cart_items") as db_span:
            db_span.set_attribute("db.operation", "SELECT")
            db_span.set_attribute("db.table", "cart_items")
            db_span.set_attribute("user.id", user_id)

            rows = db.execute(
                select(CartItem.id, CartItem.product_id, Product.name, Product.price, CartItem.quantity)
                .join(Product, CartItem.product_id == Product.id)
                .where(CartItem.user_id == user_id)
                .order_by(CartItem.id)
            ).all()

            db_span.set_attribute("db.rows_returned", len(rows))

        items = []
        total = Decimal("0.00")
        for row in rows:
            subtotal = row.price * row.quantity
            total += subtotal
            items.append({
                "id": row.id,
                "product_id": row.product_id,
                "product_name": row.name,
                "price": row.price,
                "quantity": row.quantity,
                "subtotal": subtotal
            })

        return {
            "user_id": user_id,
            "items": items,
            "total": total
        }

    def get_cart_count(self, db: Session, user_id: str) -> int:
        """
        Number of lines in the user's cart, served from cache when possible.

        A miss is filled from the database under WATCH on the cart's version
        key, so a count read before a concurrent cart change is never cached.

        Args:
            db: Database session
            user_id: User identifier

        Returns:
            Cart line count
        """
        cache_key = cart_count_key(user_id)
        count = None
        with self.tracer.start_as_current_span("cache.get") as cache_span:
            cache_span.set_attribute("cache.system", "redis")
            cache_span.set_attribute("cache.key", cache_key)
            try:
                with self.redis_client.pipeline() as pipe:
                    pipe.watch(cart_version_key(user_id))
                    cached = pipe.get(cache_key)
                    cache_span.set_attribute("cache.hit", cached is not None)
                    if cached is not None:
                        return int(cached)

                    count = self._count_cart_lines(db, user_id)
                    pipe.multi()
                    pipe.setex(cache_key, CART_CACHE_TTL, count)
                    pipe.execute()
            except redis.WatchError:
                logger.info("Cart changed while counting, cache left empty", extra={"user_id": user_id})
            except redis.RedisError as e:
                logger.warning("Cart cache unavailable", extra={"user_id": user_id, "error": str(e)})

        if count is None:
            count = self._count_cart_lines(db, user_id)
        return count

    def _count_cart_lines(self, db: Session, user_id: str) -> int:
        with self.tracer.start_as_current_span("db.query.count_cart_items") as db_span:
            db_span.set_attribute("db.operation", "SELECT")
            db_span.set_attribute("db.table", "cart_items")
            db_span.set_attribute("user.id", user_id)

            return db.execute(
                select(func.count(CartItem.id)).where(CartItem.user_id == user_id)
            ).scalar_one()

    def list_cart_with_product_info(
        self,
        db: Session,
        user_id: str,
        lock: bool = False
    ) -> List[CartLine]:
        """
        Read the user's cart lines joined with current product price and stock.

        Args:
            db: Database session
            user_id: User identifier
            lock: Lock the cart and product rows until the transaction ends

        Returns:
            Cart lines in insertion order
        """
        with self.tracer.start_as_current_span("db.query.list_cart_with_product_info") as db_span:
            db_span.set_attribute("db.operation", "SELECT")
            db_span.set_attribute("db.table", "cart_items")
            db_span.set_attribute("user.id", user_id)
            db_span.set_attribute("db.lock", lock)

            query = (
                select(CartItem.product_id, CartItem.quantity, Product.price, Product.stock_quantity)
                .join(Product, CartItem.product_id == Product.id)
                .where(CartItem.user_id == user_id)
                .order_by(CartItem.id)
            )
            if lock:
                query = query.with_for_update()

            rows = db.execute(query).all()

            db_span.set_attribute("db.rows_returned", len(rows))

        return [
            CartLine(
                product_id=row.product_id,
                quantity=row.quantity,
                price=row.price,
                stock_quantity=row.stock_quantity
            )
            for row in rows
        ]

    def clear_cart(self, db: Session, user_id: str) -> int:
        """
        Delete every cart line of the user inside the caller's transaction.

        Args:
            db: Database session
            user_id: User identifier

        Returns:
            Number of deleted lines
        """
        with self.tracer.start_as_current_span("db.query.delete_cart_items") as db_span:
            db_span.set_attribute("db.operation", "DELETE")
            db_span.set_attribute("db.table", "cart_items")
            db_span.set_attribute("user.id", user_id)

            result = db.execute(
                delete(CartItem)
                .where(CartItem.user_id == user_id)
                .execution_options(synchronize_session=False)
            )

            db_span.set_attribute("db.rows_affected", result.rowcount)
            return result.rowcount

    def invalidate_cart_cache(self, user_id: str) -> None:
        """Drop the cached cart count; a cache outage only logs."""
        cache_key = cart_count_key(user_id)
        version_key = cart_version_key(user_id)
        with self.tracer.start_as_current_span("cache.delete") as cache_span:
            cache_span.set_attribute("cache.system", "redis")
            cache_span.set_attribute("cache.operation", "DELETE")
            cache_span.set_attribute("cache.key", cache_key)
            try:
                # Bumping the version aborts any fill that read the old cart
                self.redis_client.incr(version_key)
                self.redis_client.expire(version_key, CART_CACHE_TTL)
                self.redis_client.delete(cache_key)
            except redis.RedisError as e:
                logger.warning("Cart cache invalidation failed", extra={
                    "user_id": user_id,
                    "error": str(e)
                })
