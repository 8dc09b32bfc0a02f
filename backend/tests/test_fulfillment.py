# Overview: Pytest coverage for the per-order fulfillment pipeline and after-payment delivery.

import json
from pathlib import Path

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from digicards.errors import InvalidCardStateError, OrderNotFoundError
from digicards.models import Card, CardOrder, Order, Product, User, WalletTransaction
from digicards.models.cards import CARD_STATUS_AVAILABLE, CARD_STATUS_SOLD
from digicards.models.orders import (
    ORDER_STATUS_DELIVERED,
    PAYMENT_STATUS_SUCCEEDED,
    WALLET_STATE_DEDUCTED,
    WALLET_STATE_PENDING,
)
from digicards.services import card_inventory_service, fulfillment_service, wallet_service
from digicards.services.fulfillment_service import (
    PATH_DONE,
    PATH_PERSIST,
    PATH_RECORD_ERROR,
    PATH_TRY_LOCAL,
    PATH_TRY_SUPPLIER,
    SOURCE_LOCAL,
    SOURCE_SUPPLIER,
)
from digicards.services.notification_service import Notifier


def _serials(*codes):
    return (200, {"order_ref": "R", "serial_numbers": [{"serial": c, "pin": f"pin-{c}"} for c in codes]})


@pytest.fixture
def second_product(db_session, tenant):
    product = Product(tenant_id=tenant.id, name="Xbox Card 100", product_code="WUPEX-XBOX-100", price_cents=10000)
    db_session.add(product)
    db_session.commit()
    return product


class TestProcessDigitalDelivery:
    def test_local_stock_first(self, app, db_session, tenant, customer, product, stock, make_order, fake_hub):
        stock(product, 3)
        order = make_order(tenant, [(product, 2)])
        hub = fake_hub()

        result = fulfillment_service.process_digital_delivery(order.id, supplier_client=hub.client())

        assert result.error is None
        assert result.code_count == 2
        outcome = result.items[0]
        assert outcome.source == SOURCE_LOCAL
        assert outcome.path == [PATH_TRY_LOCAL, PATH_DONE]
        assert hub.requests == []

        sold = db_session.query(Card).filter_by(status=CARD_STATUS_SOLD).all()
        assert len(sold) == 2
        assert {c.sold_to_user_id for c in sold} == {customer.id}
        record = db_session.query(CardOrder).filter_by(storefront_order_id=order.id).one()
        assert {c.order_id for c in sold} == {record.id}

    def test_supplier_fallback_persists_codes(self, app, db_session, tenant, customer, product, linked_supplier,
                                              make_order, fake_hub):
        order = make_order(tenant, [(product, 2)])
        hub = fake_hub(_serials("SUP-A", "SUP-B"))

        result = fulfillment_service.process_digital_delivery(order.id, supplier_client=hub.client())

        outcome = result.items[0]
        assert outcome.source == SOURCE_SUPPLIER
        assert outcome.path == [PATH_TRY_LOCAL, PATH_TRY_SUPPLIER, PATH_PERSIST, PATH_DONE]
        assert result.serial_numbers == ["SUP-A", "SUP-B"]
        assert result.serial_numbers_by_product[product.name] == [
            {"serialNumber": "SUP-A", "pin": "pin-SUP-A"},
            {"serialNumber": "SUP-B", "pin": "pin-SUP-B"},
        ]
        cards = db_session.query(Card).order_by(Card.card_code).all()
        assert [c.card_code for c in cards] == ["SUP-A", "SUP-B"]
        assert all(c.sold_to_user_id == customer.id and c.status == CARD_STATUS_SOLD for c in cards)

    def test_partial_failure_keeps_other_items(self, app, db_session, tenant, customer, product, second_product,
                                               linked_supplier, stock, make_order, fake_hub):
        stock(product, 1)
        order = make_order(tenant, [(product, 1), (second_product, 1)])
        hub = fake_hub((503, {"message": "provider offline"}))

        result = fulfillment_service.process_digital_delivery(order.id, supplier_client=hub.client())

        assert result.error is None
        assert result.code_count == 1
        failed = result.items[1]
        assert failed.path == [PATH_TRY_LOCAL, PATH_TRY_SUPPLIER, PATH_RECORD_ERROR, PATH_DONE]
        assert failed.error.startswith("Supplier API call failed for WUPEX-XBOX-100: provider offline")
        assert result.item_errors == [failed.error]

    def test_zero_codes_returns_error_instead_of_raising(self, app, db_session, tenant, customer, product,
                                                          linked_supplier, make_order, fake_hub):
        order = make_order(tenant, [(product, 1)])
        hub = fake_hub()

        result = fulfillment_service.process_digital_delivery(order.id, supplier_client=hub.client(api_key=""))

        assert result.code_count == 0
        assert result.error == (
            "No serial numbers were retrieved. "
            "SUPPLIER_HUB_API_KEY is not configured. "
            "Issues: SUPPLIER_HUB_API_KEY is not configured. "
            "Please check product configuration and API settings."
        )
        assert result.error_ar.startswith("لم يتم استرجاع الأرقام التسلسلية. SUPPLIER_HUB_API_KEY غير مضبوط.")
        assert hub.requests == []
        assert result.files == {}

    def test_supplier_returns_nothing(self, app, db_session, tenant, customer, product, linked_supplier,
                                      make_order, fake_hub):
        order = make_order(tenant, [(product, 1)])
        hub = fake_hub((200, {"order_ref": "R", "serial_numbers": []}))

        result = fulfillment_service.process_digital_delivery(order.id, supplier_client=hub.client())

        assert result.item_errors == ["Supplier API returned 0 serial numbers for product WUPEX-PSN-50"]
        assert "Issues: Supplier API returned 0 serial numbers" in result.error

    def test_missing_product_code_is_recorded(self, app, db_session, tenant, customer, make_order, fake_hub):
        product = Product(tenant_id=tenant.id, name="Nameless Voucher", price_cents=100)
        db_session.add(product)
        db_session.commit()
        order = make_order(tenant, [(product, 1)])

        result = fulfillment_service.process_digital_delivery(order.id, supplier_client=fake_hub().client())

        assert result.item_errors == [
            f'Product "Nameless Voucher" (ID: {product.id}) does not have a productCode or SKU set'
        ]

    def test_default_options_and_text_export(self, app, db_session, tenant, customer, product, stock,
                                             make_order, fake_hub):
        stock(product, 1)
        order = make_order(tenant, [(product, 1)])

        result = fulfillment_service.process_digital_delivery(order.id, supplier_client=fake_hub().client())

        assert result.delivery_options == ["inventory", "text"]
        url = result.files["text"]
        assert url.startswith(f"/uploads/digital-cards/{tenant.id}/order-{order.id}-")
        path = Path(app.config["DELIVERY_STORAGE_DIR"]) / "digital-cards" / str(tenant.id) / url.rsplit("/", 1)[1]
        card = db_session.query(Card).one()
        assert path.read_text(encoding="utf-8") == f"{card.card_code}\t{card.card_pin}"

    def test_anonymous_buyer_gets_no_inventory(self, app, db_session, tenant, product, stock, make_order, fake_hub):
        stock(product, 1)
        order = make_order(tenant, [(product, 1)], email="stranger@example.com")

        result = fulfillment_service.process_digital_delivery(order.id, supplier_client=fake_hub().client())

        assert result.delivery_options == ["text"]
        assert db_session.query(Card).one().sold_to_user_id is None

    def test_caller_id_used_when_no_email_match(self, app, db_session, tenant, product, stock, make_order, fake_hub):
        stock(product, 1)
        order = make_order(tenant, [(product, 1)], email="stranger@example.com")

        result = fulfillment_service.process_digital_delivery(
            order.id, user_id="ext-auth-42", delivery_options=["excel"], supplier_client=fake_hub().client(),
        )

        assert result.delivery_options == ["excel", "inventory"]
        assert "excel" in result.files
        assert db_session.query(Card).one().sold_to_user_id == "ext-auth-42"

    def test_email_notification_payload(self, app, db_session, tenant, customer, product, stock, make_order,
                                        fake_hub):
        stock(product, 1)
        order = make_order(tenant, [(product, 1)])
        sent = []

        def relay(request):
            sent.append(json.loads(request.content))
            return httpx.Response(202, json={"queued": True})

        notifier = Notifier("https://mail.test/send", "", transport=httpx.MockTransport(relay))
        fulfillment_service.process_digital_delivery(
            order.id, delivery_options=["email"], supplier_client=fake_hub().client(), notifier=notifier,
        )

        assert len(sent) == 1
        assert sent[0]["to"] == "buyer@example.com"
        assert sent[0]["storeName"] == "Gamers Hub"
        assert sent[0]["cards"][0]["productName"] == product.name

    def test_notification_failure_does_not_undo_delivery(self, app, db_session, tenant, customer, product, stock,
                                                         make_order, fake_hub):
        stock(product, 1)
        order = make_order(tenant, [(product, 1)], phone="+966500000001")

        def broken(request):
            raise httpx.ConnectError("relay down")

        notifier = Notifier("https://mail.test/send", "https://wa.test/send", transport=httpx.MockTransport(broken))
        result = fulfillment_service.process_digital_delivery(
            order.id, delivery_options=["email", "whatsapp"], supplier_client=fake_hub().client(), notifier=notifier,
        )

        assert result.code_count == 1
        assert db_session.query(Card).one().sold_to_user_id == customer.id

    def test_unknown_order(self, app, db_session):
        with pytest.raises(OrderNotFoundError):
            fulfillment_service.process_digital_delivery(424242)


class TestFulfillPaidOrder:
    def test_skips_unpaid_orders(self, app, db_session, tenant, customer, product, make_order, fake_hub):
        order = make_order(tenant, [(product, 1)], paid=False)
        assert fulfillment_service.fulfill_paid_order(order.id, supplier_client=fake_hub().client()) is None

    def test_snapshots_delivery_once(self, app, db_session, tenant, customer, product, stock, make_order, fake_hub):
        stock(product, 2)
        order = make_order(tenant, [(product, 1)])

        result = fulfillment_service.fulfill_paid_order(order.id, supplier_client=fake_hub().client())

        stored = db_session.get(Order, order.id)
        assert stored.status == ORDER_STATUS_DELIVERED
        assert stored.delivery_files["serialNumbers"] == result.serial_numbers
        assert stored.delivery_files["requiresReveal"] is False
        assert stored.delivery_files["excelFileUrl"]
        assert "inventory" in stored.delivery_files["deliveryOptions"]

        # A second run must not deliver again
        assert fulfillment_service.fulfill_paid_order(order.id, supplier_client=fake_hub().client()) is None
        assert db_session.query(Card).filter_by(status=CARD_STATUS_SOLD).count() == 1

    def test_error_snapshot(self, app, db_session, tenant, customer, product, linked_supplier, make_order,
                            fake_hub):
        order = make_order(tenant, [(product, 1)])
        hub = fake_hub((503, {"message": "down"}))

        result = fulfillment_service.fulfill_paid_order(order.id, supplier_client=hub.client())

        stored = db_session.get(Order, order.id)
        assert result.error
        assert stored.delivery_files["error"] == result.error
        assert stored.delivery_files["errorAr"] == result.error_ar
        assert stored.status != ORDER_STATUS_DELIVERED

    def test_wallet_pending_auto_reveals_with_balance(self, app, db_session, tenant, customer, product, stock,
                                                      make_order, fake_hub):
        stock(product, 1)
        wallet_service.credit(customer.id, 8000, tenant_id=tenant.id)
        order = make_order(tenant, [(product, 1)], paid=False, wallet_state=WALLET_STATE_PENDING)

        result = fulfillment_service.fulfill_paid_order(order.id, supplier_client=fake_hub().client())

        assert result.pending_reveal is False
        stored = db_session.get(Order, order.id)
        assert stored.payment_status == PAYMENT_STATUS_SUCCEEDED
        assert stored.wallet_state == WALLET_STATE_DEDUCTED
        assert stored.delivery_files["requiresReveal"] is False
        assert wallet_service.get_balance(customer.id) == 3000

    def test_wallet_pending_short_balance_stays_blurred(self, app, db_session, tenant, customer, product, stock,
                                                        make_order, fake_hub):
        stock(product, 1)
        wallet_service.credit(customer.id, 1000, tenant_id=tenant.id)
        order = make_order(tenant, [(product, 1)], paid=False, wallet_state=WALLET_STATE_PENDING)

        result = fulfillment_service.fulfill_paid_order(order.id, supplier_client=fake_hub().client())

        assert result.pending_reveal is True
        assert result.files == {}
        stored = db_session.get(Order, order.id)
        assert stored.is_wallet_pending
        assert stored.delivery_files["requiresReveal"] is True
        assert wallet_service.get_balance(customer.id) == 1000
        assert db_session.query(WalletTransaction).filter(WalletTransaction.amount_cents < 0).count() == 0

    def test_legacy_blob_flag_counts_as_pending(self, app, db_session, tenant, customer, product, stock,
                                                make_order, fake_hub):
        stock(product, 1)
        order = make_order(tenant, [(product, 1)], paid=False,
                           billing_metadata={"_walletDeductionPending": True})

        result = fulfillment_service.fulfill_paid_order(order.id, supplier_client=fake_hub().client())

        # No wallet at all: delivered but blurred
        assert result.pending_reveal is True
        stored = db_session.get(Order, order.id)
        assert stored.wallet_state == WALLET_STATE_PENDING
        assert stored.billing_metadata["_walletDeductionPending"] is True


class TestDeliveryFiles:
    def test_lists_generated_files(self, app, db_session, tenant, customer, product, stock, make_order, fake_hub):
        stock(product, 1)
        order = make_order(tenant, [(product, 1)])
        result = fulfillment_service.process_digital_delivery(
            order.id, delivery_options=["text", "pdf"], supplier_client=fake_hub().client(),
        )

        files = fulfillment_service.get_delivery_files(order.id)

        assert {f["format"] for f in files} == {"text", "pdf"}
        assert {f["url"] for f in files} == set(result.files.values())

    def test_unknown_order(self, app, db_session):
        with pytest.raises(OrderNotFoundError):
            fulfillment_service.get_delivery_files(424242)


class TestItemIsolation:
    def test_zero_quantity_item_is_recorded(self, app, db_session, tenant, customer, product, second_product,
                                            stock, make_order, fake_hub):
        stock(product, 1)
        order = make_order(tenant, [(product, 1), (second_product, 0)])
        hub = fake_hub()

        result = fulfillment_service.process_digital_delivery(order.id, supplier_client=hub.client())

        assert result.code_count == 1
        assert result.items[0].path == [PATH_TRY_LOCAL, PATH_DONE]
        skipped = result.items[1]
        assert skipped.path == [PATH_RECORD_ERROR, PATH_DONE]
        assert skipped.error == "Invalid quantity 0 for Xbox Card 100"
        assert result.item_errors == [skipped.error]
        assert hub.requests == []

    def test_zero_quantity_order_still_snapshots(self, app, db_session, tenant, customer, product, second_product,
                                                 stock, make_order, fake_hub):
        stock(product, 1)
        order = make_order(tenant, [(product, 1), (second_product, 0)])

        result = fulfillment_service.fulfill_paid_order(order.id, supplier_client=fake_hub().client())

        stored = db_session.get(Order, order.id)
        assert stored.status == ORDER_STATUS_DELIVERED
        assert stored.delivery_files["serialNumbers"] == result.serial_numbers
        assert stored.delivery_files["itemErrors"] == ["Invalid quantity 0 for Xbox Card 100"]

    def test_database_error_in_one_item(self, app, db_session, tenant, customer, product, second_product, stock,
                                        make_order, fake_hub, monkeypatch):
        stock(product, 1)
        order = make_order(tenant, [(product, 1), (second_product, 1)])

        def locked(*args, **kwargs):
            raise OperationalError("INSERT INTO cards", {}, Exception("database is locked"))

        monkeypatch.setattr(fulfillment_service.supplier_gateway, "purchase_cards", locked)

        result = fulfillment_service.process_digital_delivery(order.id, supplier_client=fake_hub().client())

        assert result.error is None
        assert result.serial_numbers == [f"LOCAL-{product.id}-000"]
        failed = result.items[1]
        assert failed.path == [PATH_TRY_LOCAL, PATH_TRY_SUPPLIER, PATH_RECORD_ERROR, PATH_DONE]
        assert failed.error.startswith("Fulfillment failed for Xbox Card 100:")

    def test_failed_sale_releases_reservation(self, app, db_session, tenant, customer, product, second_product,
                                              stock, make_order, fake_hub, monkeypatch):
        card = stock(product, 1)[0]
        stock(second_product, 1)
        order = make_order(tenant, [(product, 1), (second_product, 1)])
        real_mark_as_sold = card_inventory_service.mark_as_sold

        def lose_first(card_ids, owner_id, order_id):
            if card.id in card_ids:
                raise InvalidCardStateError("reservation lost")
            return real_mark_as_sold(card_ids, owner_id, order_id)

        monkeypatch.setattr(card_inventory_service, "mark_as_sold", lose_first)

        result = fulfillment_service.process_digital_delivery(order.id, supplier_client=fake_hub().client())

        assert result.items[0].path == [PATH_TRY_LOCAL, PATH_RECORD_ERROR, PATH_DONE]
        assert result.items[0].error == "Fulfillment failed for PlayStation Card 50 SAR: reservation lost"
        assert result.items[1].source == SOURCE_LOCAL
        assert db_session.get(Card, card.id).status == CARD_STATUS_AVAILABLE

    def test_supplier_code_owned_by_someone_else(self, app, db_session, tenant, customer, product,
                                                  linked_supplier, make_order, fake_hub):
        neighbour = User(tenant_id=tenant.id, email="neighbour@example.com")
        db_session.add(neighbour)
        db_session.commit()
        card_inventory_service.upsert_ownership(tenant.id, "DUP-1", neighbour.id, "old-pin", product_id=product.id)
        order = make_order(tenant, [(product, 2)])
        hub = fake_hub(_serials("DUP-1", "NEW-1"))

        result = fulfillment_service.process_digital_delivery(order.id, supplier_client=hub.client())

        outcome = result.items[0]
        assert outcome.path == [PATH_TRY_LOCAL, PATH_TRY_SUPPLIER, PATH_PERSIST, PATH_RECORD_ERROR, PATH_DONE]
        assert result.serial_numbers == ["NEW-1"]
        assert outcome.error == (
            "Supplier returned card code(s) already owned by another customer for WUPEX-PSN-50: DUP-1"
        )
        duplicate = db_session.query(Card).filter_by(card_code="DUP-1").one()
        assert duplicate.sold_to_user_id == neighbour.id
        assert duplicate.card_pin == "old-pin"
        assert db_session.query(Card).filter_by(card_code="NEW-1").one().sold_to_user_id == customer.id
