"""Tests for the order placement workflow."""
import threading
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
import redis
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError, TimeoutError as PoolTimeoutError

from database import SessionLocal
from models import CartItem, Order, OrderItem, OrderStatus, Product
from services.cart_service import CartLine
from services.order_service import OrderService, PlacementError

USER = "user_alice"
OTHER_USER = "user_bob"


def count(model):
    return lambda session: session.execute(select(func.count()).select_from(model)).scalar_one()


def stock(product_id):
    return lambda session: session.get(Product, product_id).stock_quantity


def test_empty_cart_is_rejected_without_writes(order_service, make_product, inspect_db):
    """An empty cart yields EMPTY_CART and leaves every table untouched."""
    product_id = make_product(stock=5)

    result = order_service.place_order(USER)

    assert result.error is PlacementError.EMPTY_CART
    assert result.error.status_code == 400
    assert result.message == "Cart is empty"
    assert result.order_id is None
    assert inspect_db(count(Order)) == 0
    assert inspect_db(count(OrderItem)) == 0
    assert inspect_db(stock(product_id)) == 5


def test_insufficient_stock_applies_nothing(order_service, make_product, add_cart_line, inspect_db):
    """One short line rejects the whole cart; the valid line is not decremented."""
    product_a = make_product(name="A", price="10.00", stock=3)
    product_b = make_product(name="B", price="2.00", stock=10)
    add_cart_line(USER, product_a, 5)
    add_cart_line(USER, product_b, 1)

    result = order_service.place_order(USER)

    assert result.error is PlacementError.INSUFFICIENT_STOCK
    assert result.product_id == product_a
    assert result.message == f"Insufficient stock for product {product_a}"
    assert inspect_db(stock(product_a)) == 3
    assert inspect_db(stock(product_b)) == 10
    assert inspect_db(count(Order)) == 0
    assert inspect_db(count(OrderItem)) == 0
    assert inspect_db(count(CartItem)) == 2


def test_only_first_offending_product_is_reported(order_service, make_product, add_cart_line):
    """When several lines are short, the first one in cart order is named."""
    first = make_product(name="First", stock=0)
    second = make_product(name="Second", stock=0)
    add_cart_line(USER, first, 1)
    add_cart_line(USER, second, 1)

    result = order_service.place_order(USER)

    assert result.product_id == first


def test_successful_placement(order_service, make_product, add_cart_line, inspect_db, redis_client):
    """Cart becomes one pending order with snapshot prices and decremented stock."""
    product_a = make_product(name="A", price="10.00", stock=5)
    product_b = make_product(name="B", price="5.50", stock=2)
    add_cart_line(USER, product_a, 2)
    add_cart_line(USER, product_b, 1)

    result = order_service.place_order(USER)

    assert result.ok
    assert result.message == "Order placed"
    assert result.total_amount == Decimal("25.50")
    assert inspect_db(stock(product_a)) == 3
    assert inspect_db(stock(product_b)) == 1
    assert inspect_db(count(Order)) == 1
    assert inspect_db(count(OrderItem)) == 2
    assert inspect_db(count(CartItem)) == 0

    order = inspect_db(lambda s: s.get(Order, result.order_id))
    assert order.user_id == USER
    assert order.total_amount == Decimal("25.50")
    assert order.status is OrderStatus.PENDING

    items = inspect_db(lambda s: {
        item.product_id: (item.quantity, item.price)
        for item in s.execute(select(OrderItem).where(OrderItem.order_id == result.order_id)).scalars()
    })
    assert items == {product_a: (2, Decimal("10.00")), product_b: (1, Decimal("5.50"))}

    redis_client.incr.assert_called_once_with(f"cart:{USER}:version")
    redis_client.delete.assert_called_once_with(f"cart:{USER}:count")


def test_stock_equal_to_quantity_is_allowed(order_service, make_product, add_cart_line, inspect_db):
    """Ordering exactly the remaining stock succeeds and leaves zero."""
    product_id = make_product(stock=4)
    add_cart_line(USER, product_id, 4)

    assert order_service.place_order(USER).ok
    assert inspect_db(stock(product_id)) == 0


def test_second_placement_finds_empty_cart(order_service, make_product, add_cart_line):
    """The cart is consumed, so placing again right away is EMPTY_CART."""
    product_id = make_product(stock=5)
    add_cart_line(USER, product_id, 1)

    assert order_service.place_order(USER).ok
    assert order_service.place_order(USER).error is PlacementError.EMPTY_CART


def test_other_users_cart_is_untouched(order_service, make_product, add_cart_line, inspect_db):
    """Placing an order only clears the caller's cart."""
    product_id = make_product(stock=5)
    add_cart_line(USER, product_id, 1)
    add_cart_line(OTHER_USER, product_id, 2)

    assert order_service.place_order(USER).ok
    remaining = inspect_db(lambda s: s.execute(select(CartItem.user_id)).scalars().all())
    assert remaining == [OTHER_USER]


def test_price_snapshot_survives_price_change(order_service, make_product, add_cart_line, db, inspect_db):
    """Later price changes do not touch order items or the order total."""
    product_id = make_product(price="10.00", stock=5)
    add_cart_line(USER, product_id, 3)
    result = order_service.place_order(USER)

    product = db.get(Product, product_id)
    product.price = Decimal("99.99")
    db.commit()

    item_price = inspect_db(lambda s: s.execute(
        select(OrderItem.price).where(OrderItem.order_id == result.order_id)
    ).scalar_one())
    order_total = inspect_db(lambda s: s.get(Order, result.order_id).total_amount)
    assert item_price == Decimal("10.00")
    assert order_total == Decimal("30.00")


def test_sequential_orders_never_oversell(order_service, make_product, add_cart_line, inspect_db):
    """Two orders of 6 against stock 10 in turn: the second is short."""
    product_id = make_product(stock=10)
    add_cart_line(USER, product_id, 6)
    add_cart_line(OTHER_USER, product_id, 6)

    results = [order_service.place_order(USER), order_service.place_order(OTHER_USER)]

    assert [r.ok for r in results] == [True, False]
    assert results[1].error is PlacementError.INSUFFICIENT_STOCK
    assert inspect_db(stock(product_id)) == 4


def test_stale_stock_read_is_caught_by_decrement(order_service, cart_service, make_product,
                                                 add_cart_line, inspect_db):
    """If the snapshot overstates stock, the conditional decrement aborts everything."""
    product_id = make_product(price="3.00", stock=4)
    add_cart_line(USER, product_id, 6)
    stale = [CartLine(product_id=product_id, quantity=6, price=Decimal("3.00"), stock_quantity=10)]

    with patch.object(cart_service, "list_cart_with_product_info", return_value=stale):
        result = order_service.place_order(USER)

    assert result.error is PlacementError.INSUFFICIENT_STOCK
    assert result.product_id == product_id
    assert inspect_db(stock(product_id)) == 4
    assert inspect_db(count(Order)) == 0
    assert inspect_db(count(OrderItem)) == 0
    assert inspect_db(count(CartItem)) == 1


def test_storage_error_rolls_back(order_service, cart_service, make_product, add_cart_line, inspect_db):
    """An error after the order row is written leaves no trace and reports STORAGE_FAILURE."""
    product_id = make_product(stock=5)
    add_cart_line(USER, product_id, 2)

    with patch.object(cart_service, "clear_cart",
                      side_effect=OperationalError("DELETE", {}, Exception("disk I/O error"))):
        result = order_service.place_order(USER)

    assert result.error is PlacementError.STORAGE_FAILURE
    assert result.error.status_code == 500
    assert result.message == "Server error"
    assert inspect_db(count(Order)) == 0
    assert inspect_db(stock(product_id)) == 5
    assert inspect_db(count(CartItem)) == 1


def test_pool_timeout_is_storage_failure(cart_service, product_service):
    """Failing to get a connection in time is a STORAGE_FAILURE."""
    def exhausted_pool():
        session = MagicMock()
        session.get_bind.side_effect = PoolTimeoutError("QueuePool limit reached")
        return session

    service = OrderService(cart_service, product_service, session_factory=exhausted_pool)

    assert service.place_order(USER).error is PlacementError.STORAGE_FAILURE


def test_deadline_exceeded_rolls_back(cart_service, product_service, make_product, add_cart_line, inspect_db):
    """Running past the placement timeout aborts before any write."""
    product_id = make_product(stock=5)
    add_cart_line(USER, product_id, 1)
    service = OrderService(cart_service, product_service, session_factory=SessionLocal, timeout=0)

    result = service.place_order(USER)

    assert result.error is PlacementError.STORAGE_FAILURE
    assert inspect_db(count(Order)) == 0
    assert inspect_db(stock(product_id)) == 5


def test_failed_rollback_is_reported_distinctly(cart_service, product_service, caplog):
    """A rollback that itself fails surfaces as ROLLBACK_FAILED and is logged."""
    session = MagicMock()
    session.get_bind.return_value.dialect.name = "sqlite"
    session.execute.side_effect = OperationalError("SELECT", {}, Exception("connection reset"))
    session.rollback.side_effect = OperationalError("ROLLBACK", {}, Exception("connection reset"))
    service = OrderService(cart_service, product_service, session_factory=lambda: session)

    with caplog.at_level("ERROR"):
        result = service.place_order(USER)

    assert result.error is PlacementError.ROLLBACK_FAILED
    assert result.error.status_code == 500
    assert "rollback failed" in caplog.text.lower()
    session.close.assert_called_once()


@pytest.mark.parametrize("populate, expected", [
    (False, PlacementError.EMPTY_CART),
    (True, None),
])
def test_session_is_released_on_every_path(cart_service, product_service, make_product,
                                           add_cart_line, populate, expected):
    """The transactional session is closed whether the placement succeeds or not."""
    if populate:
        add_cart_line(USER, make_product(stock=5), 1)
    sessions = []

    def tracking_factory():
        session = SessionLocal()
        session.close = MagicMock(wraps=session.close)
        sessions.append(session)
        return session

    service = OrderService(cart_service, product_service, session_factory=tracking_factory)
    result = service.place_order(USER)

    assert result.error is expected
    assert len(sessions) == 1
    sessions[0].close.assert_called_once()


def test_cache_outage_does_not_fail_placed_order(order_service, redis_client, make_product, add_cart_line):
    """The order stands even if the cart cache cannot be invalidated."""
    redis_client.delete.side_effect = redis.ConnectionError("redis down")
    add_cart_line(USER, make_product(stock=5), 1)

    assert order_service.place_order(USER).ok


@pytest.fixture
def file_order_service(cart_service, product_service, file_session_factory):
    return OrderService(cart_service, product_service, session_factory=file_session_factory)


def _seed_carts(session_factory, stock_quantity, carts):
    """Create one product and fill each ``user_id -> quantity`` cart with it."""
    with session_factory() as session:
        product = Product(name="Widget", price=Decimal("2.50"), stock_quantity=stock_quantity)
        session.add(product)
        session.flush()
        session.add_all([
            CartItem(user_id=user_id, product_id=product.id, quantity=quantity)
            for user_id, quantity in carts.items()
        ])
        session.commit()
        return product.id


def test_rollback_elsewhere_keeps_placement_intact(file_order_service, cart_service, file_session_factory):
    """A placement that rolls back mid-way through another one does not undo the other's writes."""
    product_id = _seed_carts(file_session_factory, 5, {USER: 2})
    clear_cart = cart_service.clear_cart
    interleaved = []

    def clear_then_interleave(db, user_id):
        cleared = clear_cart(db, user_id)
        interleaved.append(file_order_service.place_order(OTHER_USER))
        return cleared

    with patch.object(cart_service, "clear_cart", side_effect=clear_then_interleave):
        result = file_order_service.place_order(USER)

    assert [r.error for r in interleaved] == [PlacementError.EMPTY_CART]
    assert result.ok
    with file_session_factory() as session:
        assert count(Order)(session) == 1
        assert count(OrderItem)(session) == 1
        assert count(CartItem)(session) == 0
        assert stock(product_id)(session) == 3


def test_concurrent_orders_never_oversell(file_order_service, file_session_factory):
    """Two threads placing 6 units each against stock 10: exactly one order goes through."""
    product_id = _seed_carts(file_session_factory, 10, {USER: 6, OTHER_USER: 6})
    barrier = threading.Barrier(2)
    results = {}

    def place(user_id):
        barrier.wait()
        results[user_id] = file_order_service.place_order(user_id)

    threads = [threading.Thread(target=place, args=(user_id,)) for user_id in (USER, OTHER_USER)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    outcomes = sorted(results.values(), key=lambda r: r.ok)
    assert [r.ok for r in outcomes] == [False, True]
    assert outcomes[0].error in (PlacementError.INSUFFICIENT_STOCK, PlacementError.STORAGE_FAILURE)
    with file_session_factory() as session:
        assert stock(product_id)(session) == 4
        assert count(Order)(session) == 1
        assert count(CartItem)(session) == 1
