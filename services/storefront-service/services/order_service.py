"""Order management service and order placement workflow."""
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Dict, Any, List, Optional, Tuple
from sqlalchemy import select, text
from sqlalchemy.orm import Session
from opentelemetry import trace

from config import ORDER_PLACEMENT_TIMEOUT
from database import RollbackError, SessionFactory, SessionLocal, transaction
from models import Order, OrderItem, OrderStatus
from services.cart_service import CartService
from services.product_service import InsufficientStockError, ProductService
from monitoring import (
    orders_placed_counter,
    order_failures_counter,
    order_amount_histogram,
    order_placement_duration_histogram
)

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


class EmptyCartError(Exception):
    """Raised when an order is placed for a user with no cart lines."""


class PlacementTimeoutError(Exception):
    """Raised when order placement runs past its deadline."""


class PlacementError(str, Enum):
    """Why an order placement did not produce an order."""
    EMPTY_CART = "empty_cart"
    INSUFFICIENT_STOCK = "insufficient_stock"
    STORAGE_FAILURE = "storage_failure"
    ROLLBACK_FAILED = "rollback_failed"

    @property
    def status_code(self) -> int:
        """HTTP status reported for this outcome."""
        if self in (PlacementError.EMPTY_CART, PlacementError.INSUFFICIENT_STOCK):
            return 400
        return 500


@dataclass(frozen=True)
class PlacementResult:
    """Outcome of placing an order; ``error`` is None on success."""
    error: Optional[PlacementError] = None
    order_id: Optional[int] = None
    total_amount: Optional[Decimal] = None
    product_id: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def message(self) -> str:
        if self.error is None:
            return "Order placed"
        if self.error is PlacementError.EMPTY_CART:
            return "Cart is empty"
        if self.error is PlacementError.INSUFFICIENT_STOCK:
            return f"Insufficient stock for product {self.product_id}"
        return "Server error"


class OrderService:
    """Service for managing orders."""

    def __init__(
        self,
        cart_service: CartService,
        product_service: ProductService,
        session_factory: Optional[SessionFactory] = None,
        timeout: float = ORDER_PLACEMENT_TIMEOUT
    ):
        """
        Initialize order service.

        Args:
            cart_service: Cart service instance
            product_service: Product service instance
            session_factory: Source of transactional sessions, defaults to the shared pool
            timeout: Upper bound in seconds for one order placement
        """
        self.cart_service = cart_service
        self.product_service = product_service
        self.session_factory = session_factory or SessionLocal
        self.timeout = timeout
        self.tracer = trace.get_tracer(__name__)

    def place_order(self, user_id: str) -> PlacementResult:
        """
        Turn the user's cart into a pending order.

        Reading the cart, checking stock, writing the order and its items,
        decrementing stock and clearing the cart all happen in one
        transaction. Any failure rolls the whole transaction back.

        Args:
            user_id: Authenticated user identifier

        Returns:
            Placement result with the new order id, or the failure kind
        """
        span = trace.get_current_span()
        span.set_attribute("user.id", user_id)

        started = time.monotonic()
        deadline = started + self.timeout

        try:
            with self.tracer.start_as_current_span("db.transaction.place_order") as db_span:
                db_span.set_attribute("user.id", user_id)
                with transaction(self.session_factory) as db:
                    order_id, total_amount, item_count = self._place_order(db, user_id, deadline)
                db_span.set_attribute("order.id", order_id)
                db_span.set_attribute("order.total_amount", float(total_amount))
        except EmptyCartError:
            return self._rejected(user_id, PlacementResult(error=PlacementError.EMPTY_CART))
        except InsufficientStockError as e:
            return self._rejected(user_id, PlacementResult(
                error=PlacementError.INSUFFICIENT_STOCK,
                product_id=e.product_id
            ))
        except RollbackError as e:
            logger.error("Order placement rollback failed, connection state unknown", extra={
                "user_id": user_id,
                "cause": repr(e.cause),
                "error": str(e.__cause__)
            })
            return self._rejected(user_id, PlacementResult(error=PlacementError.ROLLBACK_FAILED))
        except Exception as e:
            logger.error("Failed to place order", extra={
                "user_id": user_id,
                "error": str(e),
                "error_type": type(e).__name__
            })
            return self._rejected(user_id, PlacementResult(error=PlacementError.STORAGE_FAILURE))
        finally:
            order_placement_duration_histogram.record(time.monotonic() - started)

        self.cart_service.invalidate_cart_cache(user_id)

        orders_placed_counter.add(1)
        order_amount_histogram.record(float(total_amount))

        logger.info("Order placed", extra={
            "user_id": user_id,
            "order_id": order_id,
            "amount": str(total_amount),
            "item_count": item_count
        })

        return PlacementResult(order_id=order_id, total_amount=total_amount)

    def _place_order(self, db: Session, user_id: str, deadline: float) -> Tuple[int, Decimal, int]:
        self._apply_statement_timeout(db, deadline)

        lines = self.cart_service.list_cart_with_product_info(db, user_id, lock=True)
        if not lines:
            raise EmptyCartError(user_id)

        # Validate the whole cart before writing anything
        total_amount = Decimal("0")
        for line in lines:
            if line.quantity > line.stock_quantity:
                raise InsufficientStockError(line.product_id)
            total_amount += line.price * line.quantity
        total_amount = total_amount.quantize(CENTS)

        self._check_deadline(deadline)

        order_id = self.create_order(db, user_id, total_amount)
        for line in lines:
            self.add_order_item(db, order_id, line.product_id, line.quantity, line.price)
            self.product_service.decrement_stock(db, line.product_id, line.quantity)

        self.cart_service.clear_cart(db, user_id)

        self._check_deadline(deadline)
        return order_id, total_amount, len(lines)

    def _check_deadline(self, deadline: float) -> None:
        if time.monotonic() >= deadline:
            raise PlacementTimeoutError(f"Order placement exceeded {self.timeout}s")

    def _apply_statement_timeout(self, db: Session, deadline: float) -> None:
        """Bound every statement of the transaction by the remaining time (PostgreSQL only)."""
        if db.get_bind().dialect.name != "postgresql":
            return
        remaining_ms = max(1, int((deadline - time.monotonic()) * 1000))
        db.execute(text(f"SET LOCAL statement_timeout = {remaining_ms}"))

    def _rejected(self, user_id: str, result: PlacementResult) -> PlacementResult:
        order_failures_counter.add(1, {"reason": result.error.value})
        if result.error.status_code < 500:
            logger.info("Order placement rejected", extra={
                "user_id": user_id,
                "reason": result.error.value,
                "product_id": result.product_id
            })
        return result

    def create_order(self, db: Session, user_id: str, total_amount: Decimal) -> int:
        """
        Insert a pending order inside the caller's transaction.

        Args:
            db: Database session
            user_id: User identifier
            total_amount: Order total, fixed from here on

        Returns:
            Generated order id
        """
        with self.tracer.start_as_current_span("db.query.insert_order") as db_span:
            db_span.set_attribute("db.operation", "INSERT")
            db_span.set_attribute("db.table", "orders")
            db_span.set_attribute("user.id", user_id)

            order = Order(
                user_id=user_id,
                total_amount=total_amount,
                status=OrderStatus.PENDING
            )
            db.add(order)
            db.flush()

            db_span.set_attribute("order.id", order.id)
            return order.id

    def add_order_item(
        self,
        db: Session,
        order_id: int,
        product_id: int,
        quantity: int,
        price: Decimal
    ) -> None:
        """Insert one order line with its price snapshot inside the caller's transaction."""
        with self.tracer.start_as_current_span("db.query.insert_order_item") as db_span:
            db_span.set_attribute("db.operation", "INSERT")
            db_span.set_attribute("db.table", "order_items")
            db_span.set_attribute("order.id", order_id)
            db_span.set_attribute("product.id", product_id)

            db.add(OrderItem(
                order_id=order_id,
                product_id=product_id,
                quantity=quantity,
                price=price
            ))
            db.flush()

    def get_user_orders(self, db: Session, user_id: str) -> List[Dict[str, Any]]:
        """
        Get all orders for a user.

        Args:
            db: Database session
            user_id: User identifier

        Returns:
            List of orders
        """
        with self.tracer.start_as_current_span("db.query.get_user_orders") as db_span:
            db_span.set_attribute("db.operation", "SELECT")
            db_span.set_attribute("db.table", "orders")
            db_span.set_attribute("user.id", user_id)

            orders = db.execute(
                select(Order).where(Order.user_id == user_id).order_by(Order.id)
            ).scalars().all()

            db_span.set_attribute("db.rows_returned", len(orders))

            return [
                {
                    "id": order.id,
                    "total_amount": order.total_amount,
                    "status": order.status.value,
                    "created_at": order.created_at.isoformat()
                }
                for order in orders
            ]
