"""
Pytest fixtures for orderledger backend tests.

Provides the app on an in-memory database, a per-test clean session, the
test client, and small catalog/order builders.
"""

from decimal import Decimal

import pytest

from orderledger import create_app
from orderledger.extensions import db
from orderledger.models import Product, ProductRecipe, RawMaterial
from orderledger.services import order_service, stock_ledger_service


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'LEDGER_RETRY_BACKOFF': 0,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        db.session.info.clear()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def make_material(db_session):
    """Build a raw material with an opening balance booked through the ledger."""
    def _make(name="Oak plank", stock="100", minimum="10", price_cents=100, unit="pcs"):
        material = RawMaterial(
            name=name,
            stock_quantity=0,
            stock_unit=unit,
            min_stock_quantity=None if minimum is None else Decimal(minimum),
            unit_price_cents=price_cents,
        )
        db_session.add(material)
        db_session.commit()
        if stock is not None and Decimal(stock) > 0:
            stock_ledger_service.receive(material.id, stock, "opening balance")
        return db_session.get(RawMaterial, material.id)

    return _make


@pytest.fixture(scope='function')
def make_product(db_session):
    """
    Build a product with recipe lines.

    lines: (material, quantity_per_unit, option_key) for MATERIAL lines, or
    (None, hours, cost_cents) for LABOR lines.
    """
    def _make(name="Keepsake box", price_cents=4500, lines=(), sku=None):
        product = Product(name=name, sku=sku, price_cents=price_cents, is_active=True)
        db_session.add(product)
        db_session.flush()
        for material, qty, extra in lines:
            if material is None:
                db_session.add(ProductRecipe(
                    product_id=product.id,
                    item_type="LABOR",
                    quantity=Decimal(qty),
                    unit_cost_cents=extra,
                ))
            else:
                db_session.add(ProductRecipe(
                    product_id=product.id,
                    raw_material_id=material.id,
                    item_type="MATERIAL",
                    quantity=Decimal(qty),
                    option_key=extra,
                ))
        db_session.commit()
        return product

    return _make


@pytest.fixture(scope='function')
def make_order(db_session):
    """Create a PENDING order through the service layer."""
    def _make(items, customer_name="Ada Customer", **fields):
        payload = {"customer_name": customer_name, "items": items}
        payload.update(fields)
        return order_service.create_order(payload, actor="tester")

    return _make


@pytest.fixture(scope='function')
def m1(make_material):
    """Material M1 at 100 units, minimum 10."""
    return make_material(name="M1", stock="100", minimum="10")


@pytest.fixture(scope='function')
def p1(make_product, m1):
    """Product P1 consuming 2 x M1 per unit."""
    return make_product(name="P1", price_cents=1000, lines=[(m1, "2", None)])


@pytest.fixture(scope='function')
def balance():
    """Current balance of a material, read fresh from the database."""
    def _balance(material_id):
        db.session.expire_all()
        return db.session.get(RawMaterial, material_id).stock_quantity

    return _balance
