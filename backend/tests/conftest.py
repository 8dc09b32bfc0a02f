"""
Pytest fixtures for digicards backend tests.

Provides test database setup, tenant/customer/catalog fixtures, order
builders, and a fake supplier hub.
"""

import json

import httpx
import pytest

from digicards import create_app
from digicards.extensions import db
from digicards.models import (
    Card, Order, OrderItem, Product, ProductSupplier, Supplier, Tenant, User,
)
from digicards.models.orders import PAYMENT_STATUS_PENDING, PAYMENT_STATUS_SUCCEEDED
from digicards.services.supplier_client import SupplierHubClient


HUB_URL = "https://hub.test/api/v1"
HUB_KEY = "test-hub-key-1234567890"


@pytest.fixture(scope='session')
def app(tmp_path_factory):
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'SUPPLIER_HUB_URL': HUB_URL,
        'SUPPLIER_HUB_API_KEY': HUB_KEY,
        'NOTIFY_EMAIL_URL': '',
        'NOTIFY_WHATSAPP_URL': '',
        'DELIVERY_STORAGE_DIR': str(tmp_path_factory.mktemp('uploads')),
        'DELIVERY_PUBLIC_PREFIX': '/uploads',
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

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def tenant(db_session):
    """Create the store tenant most tests run in."""
    tenant = Tenant(name="Gamers Hub", name_ar="مركز اللاعبين", subdomain="gamershub", is_active=True)
    db_session.add(tenant)
    db_session.commit()
    return tenant


@pytest.fixture(scope='function')
def other_tenant(db_session):
    """Create a second, unrelated tenant."""
    tenant = Tenant(name="Other Store", subdomain="otherstore", is_active=True)
    db_session.add(tenant)
    db_session.commit()
    return tenant


@pytest.fixture(scope='function')
def customer(db_session, tenant):
    """Local customer account in the main tenant."""
    user = User(tenant_id=tenant.id, email="Buyer@Example.com", name="Buyer", phone="+966 50 000 0000")
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def product(db_session, tenant):
    """Digital product with a supplier product code."""
    product = Product(
        tenant_id=tenant.id,
        name="PlayStation Card 50 SAR",
        name_ar="بطاقة بلايستيشن 50 ريال",
        sku="PSN-50-SKU",
        product_code="WUPEX-PSN-50",
        price_cents=5000,
        currency="SAR",
    )
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def linked_supplier(db_session, tenant, product):
    """Primary WUPEX supplier linked to the product."""
    supplier = Supplier(tenant_id=tenant.id, name="Wupex Direct", provider="WUPEX", is_active=True)
    db_session.add(supplier)
    db_session.commit()
    link = ProductSupplier(
        product_id=product.id,
        supplier_id=supplier.id,
        supplier_product_code="WUPEX-PSN-50",
        is_primary=True,
    )
    db_session.add(link)
    db_session.commit()
    return supplier


@pytest.fixture(scope='function')
def make_order(db_session):
    """Factory for storefront orders with line items."""
    counter = {"n": 0}

    def _make(tenant, items, *, email="buyer@example.com", user_id=None, paid=True,
              total_cents=None, billing_metadata=None, delivery_files=None, status="PROCESSING",
              wallet_state=None, phone=None):
        counter["n"] += 1
        total = total_cents if total_cents is not None else sum(p.price_cents * q for p, q in items)
        order = Order(
            tenant_id=tenant.id,
            order_number=f"ORD-{counter['n']:04d}",
            user_id=user_id,
            customer_email=email,
            customer_name="Buyer",
            customer_phone=phone,
            total_amount_cents=total,
            status=status,
            payment_status=PAYMENT_STATUS_SUCCEEDED if paid else PAYMENT_STATUS_PENDING,
            wallet_state=wallet_state,
            billing_metadata=billing_metadata,
            delivery_files=delivery_files,
        )
        for prod, quantity in items:
            order.items.append(OrderItem(
                product_id=prod.id,
                product_name=prod.name,
                quantity=quantity,
                price_cents=prod.price_cents,
            ))
        db_session.add(order)
        db_session.commit()
        return order

    return _make


@pytest.fixture(scope='function')
def stock(db_session):
    """Factory adding AVAILABLE cards for a product."""
    def _stock(product, count, prefix="LOCAL"):
        cards = []
        for i in range(count):
            card = Card(
                tenant_id=product.tenant_id,
                product_id=product.id,
                card_code=f"{prefix}-{product.id}-{i:03d}",
                card_pin=f"PIN{i:03d}",
            )
            db_session.add(card)
            cards.append(card)
        db_session.commit()
        return cards

    return _stock


class FakeHub:
    """Records supplier hub requests and answers from a queue of responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.requests.append({"method": request.method, "path": request.url.path, "body": body,
                              "headers": request.headers})
        if not self.responses:
            return httpx.Response(500, json={"message": "no scripted response"})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        status, payload = response
        return httpx.Response(status, json=payload)

    def client(self, api_key=HUB_KEY) -> SupplierHubClient:
        return SupplierHubClient(HUB_URL, api_key, timeout=2.0, transport=httpx.MockTransport(self))


@pytest.fixture(scope='function')
def fake_hub():
    """Factory: fake_hub((200, {...}), (422, {...})) -> FakeHub."""
    return FakeHub
