"""Product catalog and inventory service."""
import logging
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session
from opentelemetry import trace

from models import Product

logger = logging.getLogger(__name__)


class InsufficientStockError(Exception):
    """Raised when an ordered quantity exceeds a product's stock."""

    def __init__(self, product_id: int):
        super().__init__(f"Insufficient stock for product {product_id}")
        self.product_id = product_id


class ProductService:
    """Service for reading products and adjusting stock."""

    def __init__(self):
        self.tracer = trace.get_tracer(__name__)

    def list_products(self, db: Session) -> List[Product]:
        """Return every product ordered by id."""
        with self.tracer.start_as_current_span("db.query.list_products") as db_span:
            db_span.set_attribute("db.operation", "SELECT")
            db_span.set_attribute("db.table", "products")

            products = db.execute(select(Product).order_by(Product.id)).scalars().all()

            db_span.set_attribute("db.rows_returned", len(products))
            return products

    def get_product(self, db: Session, product_id: int) -> Product:
        """
        Get a single product.

        Args:
            db: Database session
            product_id: Product identifier

        Returns:
            The product

        Raises:
            ValueError: If product not found
        """
        with self.tracer.start_as_current_span("db.query.get_product") as db_span:
            db_span.set_attribute("db.operation", "SELECT")
            db_span.set_attribute("db.table", "products")
            db_span.set_attribute("product.id", product_id)

            product = db.get(Product, product_id)
            db_span.set_attribute("db.rows_returned", 1 if product else 0)

            if product is None:
                raise ValueError("Product not found")
            return product

    def create_product(
        self,
        db: Session,
        name: str,
        price: Decimal,
        stock_quantity: int,
        description: Optional[str] = None
    ) -> Product:
        """
        Create a product and commit it.

        Args:
            db: Database session
            name: Product name
            price: Unit price
            stock_quantity: Initial stock
            description: Optional description

        Returns:
            The persisted product
        """
        with self.tracer.start_as_current_span("db.query.insert_product") as db_span:
            db_span.set_attribute("db.operation", "INSERT")
            db_span.set_attribute("db.table", "products")

            product = Product(
                name=name,
                description=description,
                price=price,
                stock_quantity=stock_quantity
            )
            db.add(product)
            db.commit()
            db.refresh(product)

            db_span.set_attribute("product.id", product.id)

        logger.info("Created product", extra={
            "product_id": product.id,
            "product_name": name,
            "stock_quantity": stock_quantity
        })
        return product

    def decrement_stock(self, db: Session, product_id: int, amount: int) -> None:
        """
        Take ``amount`` units out of a product's stock.

        Runs inside the caller's transaction and does not commit. The update
        only matches while enough stock remains, so stock never goes negative
        even if the caller validated against a stale read.

        Raises:
            ValueError: If amount is not positive
            InsufficientStockError: If the product lacks ``amount`` units
        """
        if amount <= 0:
            raise ValueError("Stock decrement must be positive")

        with self.tracer.start_as_current_span("db.query.update_product_stock") as update_span:
            update_span.set_attribute("db.operation", "UPDATE")
            update_span.set_attribute("db.table", "products")
            update_span.set_attribute("product.id", product_id)
            update_span.set_attribute("product.stock.decrement", amount)

            result = db.execute(
                update(Product)
                .where(Product.id == product_id, Product.stock_quantity >= amount)
                .values(stock_quantity=Product.stock_quantity - amount)
                .execution_options(synchronize_session=False)
            )

            update_span.set_attribute("db.rows_affected", result.rowcount)

            if result.rowcount != 1:
                logger.warning("Stock decrement rejected", extra={
                    "product_id": product_id,
                    "amount": amount
                })
                raise InsufficientStockError(product_id)
