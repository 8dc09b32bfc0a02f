# Overview: Threaded checks for disjoint reservations and single wallet deduction.

"""
Concurrency tests against a file-backed SQLite database.

In-memory SQLite shares one connection, so these tests build their own app
on a temporary file and run workers in threads with their own sessions.
"""

import os
import tempfile
import threading

import pytest
from sqlalchemy.orm.exc import StaleDataError

from digicards import create_app
from digicards.errors import InsufficientStockError
from digicards.extensions import db
from digicards.models import Card, CardOrder, Order, OrderItem, Product, Tenant, User, WalletTransaction
from digicards.models.orders import PAYMENT_STATUS_PENDING, PAYMENT_STATUS_SUCCEEDED, WALLET_STATE_PENDING
from digicards.services import card_inventory_service, reveal_service, wallet_service
from digicards.services.concurrency import run_with_retry


@pytest.fixture
def file_app():
    tmpdir = tempfile.TemporaryDirectory()
    db_path = os.path.join(tmpdir.name, "concurrency.db")
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
        "SUPPLIER_HUB_API_KEY": "",
        "DELIVERY_STORAGE_DIR": os.path.join(tmpdir.name, "uploads"),
    })
    with app.app_context():
        db.drop_all()
        db.create_all()

    yield app

    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.session.remove()
        db.engine.dispose()
    tmpdir.cleanup()


def _run_threads(app, targets):
    results = []
    lock = threading.Lock()

    def wrap(fn):
        def worker():
            with app.app_context():
                try:
                    value = fn()
                    with lock:
                        results.append(value)
                except Exception as exc:
                    with lock:
                        results.append(exc)
                finally:
                    db.session.remove()
        return worker

    threads = [threading.Thread(target=wrap(fn)) for fn in targets]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results


def test_concurrent_reservations_are_disjoint(file_app):
    with file_app.app_context():
        tenant = Tenant(name="Race Store")
        db.session.add(tenant)
        db.session.commit()
        product = Product(tenant_id=tenant.id, name="Race Card", price_cents=100)
        db.session.add(product)
        db.session.commit()
        for i in range(6):
            db.session.add(Card(tenant_id=tenant.id, product_id=product.id, card_code=f"RACE-{i}"))
        refs = []
        for i in range(5):
            record = CardOrder(tenant_id=tenant.id, order_number=f"CO-{i}")
            db.session.add(record)
            db.session.flush()
            refs.append(record.id)
        db.session.commit()
        product_id = product.id

    results = _run_threads(
        file_app,
        [lambda ref=ref: card_inventory_service.reserve_cards(product_id, 2, ref) for ref in refs],
    )

    won = [r for r in results if isinstance(r, list)]
    lost = [r for r in results if not isinstance(r, list)]
    assert len(won) == 3
    assert all(isinstance(r, InsufficientStockError) for r in lost)

    all_ids = [card_id for ids in won for card_id in ids]
    assert len(all_ids) == len(set(all_ids)) == 6


def test_concurrent_reveals_deduct_once(file_app):
    with file_app.app_context():
        tenant = Tenant(name="Wallet Store")
        db.session.add(tenant)
        db.session.commit()
        user = User(tenant_id=tenant.id, email="race@example.com")
        product = Product(tenant_id=tenant.id, name="Gift Card", price_cents=5000)
        db.session.add_all([user, product])
        db.session.commit()

        order = Order(
            tenant_id=tenant.id,
            order_number="ORD-RACE",
            user_id=user.id,
            customer_email=user.email,
            total_amount_cents=5000,
            status="DELIVERED",
            payment_status=PAYMENT_STATUS_PENDING,
            wallet_state=WALLET_STATE_PENDING,
            delivery_files={"serialNumbers": ["S1"], "requiresReveal": True},
        )
        order.items.append(OrderItem(product_id=product.id, product_name=product.name, quantity=1, price_cents=5000))
        db.session.add(order)
        db.session.commit()
        wallet_service.credit(user.id, 12000, tenant_id=tenant.id)

        tenant_id, user_id, order_id = tenant.id, user.id, order.id

    results = _run_threads(
        file_app,
        [lambda: reveal_service.reveal(tenant_id, user_id, order_id=order_id) for _ in range(2)],
    )

    assert not [r for r in results if isinstance(r, Exception)], results
    assert sorted(r.already_revealed for r in results) == [False, True]

    with file_app.app_context():
        assert wallet_service.get_balance(user_id) == 7000
        assert db.session.query(WalletTransaction).filter(WalletTransaction.amount_cents < 0).count() == 1
        assert db.session.get(Order, order_id).payment_status == PAYMENT_STATUS_SUCCEEDED


class TestRunWithRetry:
    def test_replays_after_version_conflict(self, app):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise StaleDataError("version mismatch")
            return "saved"

        assert run_with_retry(flaky, backoff_base=0) == "saved"
        assert len(calls) == 3

    def test_last_conflict_propagates(self, app):
        def always_stale():
            raise StaleDataError("version mismatch")

        with pytest.raises(StaleDataError):
            run_with_retry(always_stale, attempts=2, backoff_base=0)

    def test_domain_errors_are_not_retried(self, app):
        calls = []

        def short():
            calls.append(1)
            raise InsufficientStockError("none left")

        with pytest.raises(InsufficientStockError):
            run_with_retry(short, backoff_base=0)
        assert len(calls) == 1
