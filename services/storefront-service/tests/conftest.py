"""Test fixtures for the storefront service tests."""
import os

# Must be set before config is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["OTEL_ENABLED"] = "false"
os.environ["PROFILING_ENABLED"] = "false"

from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from database import SessionLocal, create_db_engine, engine
from dependencies import get_cart_service
from main import app
from models import Base, CartItem, Product
from services.cart_service import CartService
from services.order_service import OrderService
from services.product_service import ProductService

USER_TOKEN = "user-token-123"
ADMIN_TOKEN = "admin-token-456"


@pytest.fixture
def db_engine():
    """Fresh schema on the in-memory SQLite engine for every test."""
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(db_engine):
    """Session for arranging and inspecting test data."""
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def redis_pipeline():
    """Pipeline double handed out by ``redis_client.pipeline()``; the cache starts empty."""
    pipe = MagicMock()
    pipe.get.return_value = None
    return pipe


@pytest.fixture
def redis_client(redis_pipeline):
    """Redis client double."""
    client = MagicMock()
    client.pipeline.return_value.__enter__.return_value = redis_pipeline
    return client


@pytest.fixture
def cart_service(redis_client):
    return CartService(redis_client)


@pytest.fixture
def product_service():
    return ProductService()


@pytest.fixture
def order_service(cart_service, product_service):
    return OrderService(cart_service, product_service, session_factory=SessionLocal)


@pytest.fixture
def make_product(db):
    """Create a product and return its id.

    Returns:
        callable: ``make_product(name, price, stock)``
    """
    def _make(name="Widget", price="10.00", stock=5):
        product = Product(name=name, price=Decimal(price), stock_quantity=stock)
        db.add(product)
        db.commit()
        return product.id
    return _make


@pytest.fixture
def add_cart_line(db):
    """Put a product in a user's cart directly."""
    def _add(user_id, product_id, quantity):
        db.add(CartItem(user_id=user_id, product_id=product_id, quantity=quantity))
        db.commit()
    return _add


@pytest.fixture
def inspect_db(db_engine):
    """Run a read-only query in a fresh session so no identity map is stale."""
    def _run(fn):
        with SessionLocal() as session:
            return fn(session)
    return _run


@pytest.fixture
def test_client(db_engine, cart_service):
    """Test client with the Redis-backed cart service swapped for the double."""
    app.dependency_overrides[get_cart_service] = lambda: cart_service
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def user_headers():
    return {"Authorization": f"Bearer {USER_TOKEN}"}


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}


@pytest.fixture
def file_session_factory(tmp_path):
    """Session factory on a file-backed SQLite database.

    Unlike the in-memory engine, every session checks out its own connection,
    so sessions in different threads run separate transactions.
    """
    file_engine = create_db_engine(f"sqlite:///{tmp_path / 'storefront.db'}")
    Base.metadata.create_all(bind=file_engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=file_engine)
    file_engine.dispose()
