# Overview: Pytest coverage for supplier priority, the hub client, and the purchase flow.

import httpx
import pytest

from digicards.errors import (
    MissingProductCodeError,
    NoResolvableSupplierError,
    SupplierConfigurationError,
    SupplierUnreachableError,
    SupplierValidationError,
)
from digicards.models import Brand, Product, ProductSupplier, Supplier, SupplierProduct
from digicards.services import supplier_gateway
from digicards.services.normalizer import DeliverablePair
from digicards.services.supplier_client import mask_key
from digicards.services.supplier_priority import (
    SOURCE_CODE_PREFIX,
    SOURCE_LINKED,
    SOURCE_TENANT_ACTIVE,
    infer_provider_from_code,
    resolve_supplier_priority,
)


CUSTOMER = supplier_gateway.CustomerInfo(name="Buyer", email="buyer@example.com", order_number="ORD-1")


class TestSupplierPriority:
    def test_linked_suppliers_primary_first(self, db_session, tenant, product):
        backup = Supplier(tenant_id=tenant.id, name="OneCard KSA", is_active=True)
        primary = Supplier(tenant_id=tenant.id, name="Wupex", provider="wupex", is_active=True)
        db_session.add_all([backup, primary])
        db_session.commit()
        db_session.add_all([
            ProductSupplier(product_id=product.id, supplier_id=backup.id, supplier_product_code="1C-PSN50"),
            ProductSupplier(product_id=product.id, supplier_id=primary.id, is_primary=True),
        ])
        db_session.commit()

        entries, source = resolve_supplier_priority(product, "WUPEX-PSN-50")

        assert source == SOURCE_LINKED
        assert [e.name for e in entries] == ["WUPEX", "ONECARD"]
        assert entries[0].product_code == "WUPEX-PSN-50"
        assert entries[1].to_wire() == {"name": "ONECARD", "product_code": "1C-PSN50", "priceExceed": False}

    def test_falls_back_to_tenant_active_suppliers(self, db_session, tenant, product):
        db_session.add_all([
            Supplier(tenant_id=tenant.id, name="Bamboo Cards", is_active=True),
            Supplier(tenant_id=tenant.id, name="Like Card", is_active=False),
        ])
        db_session.commit()

        entries, source = resolve_supplier_priority(product, "WUPEX-PSN-50")
        assert source == SOURCE_TENANT_ACTIVE
        assert [e.name for e in entries] == ["BAMBOO"]

    def test_falls_back_to_code_prefix(self, db_session, product):
        entries, source = resolve_supplier_priority(product, "LIKE-123")
        assert source == SOURCE_CODE_PREFIX
        assert entries[0].name == "LIKE_CARD"

    def test_nothing_resolves(self, db_session, product):
        assert resolve_supplier_priority(product, "ZZZ-1") == ([], None)

    def test_price_exceed_inherits_from_brand(self, db_session, tenant, product):
        brand = Brand(tenant_id=tenant.id, name="Sony", price_exceed=True)
        db_session.add(brand)
        db_session.commit()
        product.brand_id = brand.id
        db_session.commit()

        entries, _ = resolve_supplier_priority(product, "WUPEX-PSN-50")
        assert entries[0].price_exceed is True

    def test_prefix_inference(self):
        assert infer_provider_from_code("1card-xyz") == "ONECARD"
        assert infer_provider_from_code(None) is None


class TestSupplierHubClient:
    def test_sends_key_and_body(self, app, fake_hub):
        hub = fake_hub((200, {"serials": ["S1"]}))
        result = hub.client().create_order({"order_ref": "R-1"})

        assert result == {"serials": ["S1"]}
        assert hub.requests[0]["path"] == "/api/v1/orders"
        assert hub.requests[0]["headers"]["X-API-KEY"] == "test-hub-key-1234567890"

    @pytest.mark.parametrize("status", [400, 404, 422])
    def test_validation_statuses(self, app, fake_hub, status):
        hub = fake_hub((status, {"message": "Unknown product code"}))
        with pytest.raises(SupplierValidationError) as exc:
            hub.client().create_order({})
        assert exc.value.status_code == status
        assert str(exc.value) == "Unknown product code"

    def test_validation_message_on_other_status(self, app, fake_hub):
        hub = fake_hub((500, {"error": "Validation failed: quantity"}))
        with pytest.raises(SupplierValidationError):
            hub.client().create_order({})

    def test_server_error_is_unreachable(self, app, fake_hub):
        hub = fake_hub((503, {"detail": "maintenance"}))
        with pytest.raises(SupplierUnreachableError):
            hub.client().create_order({})

    def test_timeout_is_unreachable(self, app, fake_hub):
        hub = fake_hub(httpx.ReadTimeout("slow"))
        with pytest.raises(SupplierUnreachableError, match="timed out"):
            hub.client().get_order("R-1")

    def test_missing_key(self, app, fake_hub):
        hub = fake_hub((200, {}))
        with pytest.raises(SupplierConfigurationError):
            hub.client(api_key="").create_order({})
        assert hub.requests == []

    def test_mask_key(self):
        assert mask_key("abcdefghijklmnop") == "abcde...lmnop"
        assert mask_key("") == "<unset>"


class TestProductCodeResolution:
    def test_product_code_first(self, db_session, product):
        assert supplier_gateway.resolve_product_code(product) == "WUPEX-PSN-50"

    def test_sku_fallback(self, db_session, product):
        product.product_code = None
        db_session.commit()
        assert supplier_gateway.resolve_product_code(product) == "PSN-50-SKU"

    def test_catalog_match_is_saved(self, db_session, tenant):
        db_session.add(SupplierProduct(product_code="STEAM-20", name_en="Steam Wallet 20"))
        product = Product(tenant_id=tenant.id, name="Steam Wallet 20 SAR", price_cents=2000)
        db_session.add(product)
        db_session.commit()

        assert supplier_gateway.resolve_product_code(product) == "STEAM-20"
        assert db_session.get(Product, product.id).product_code == "STEAM-20"

    def test_no_code_anywhere(self, db_session, tenant):
        product = Product(tenant_id=tenant.id, name="Unknown Thing", price_cents=100)
        db_session.add(product)
        db_session.commit()

        with pytest.raises(MissingProductCodeError, match="does not have a productCode or SKU set"):
            supplier_gateway.resolve_product_code(product)


class TestPurchase:
    def test_request_body_and_normalized_pairs(self, app, db_session, product, linked_supplier, fake_hub):
        hub = fake_hub((200, {"order_ref": "X", "deliverables": [
            {"type": "serial", "value": "S-1", "extra": {"pin": "P-1"}},
        ]}))

        pairs = supplier_gateway.purchase_cards(
            product, 2, unit_price_cents=5000, currency="SAR", customer=CUSTOMER, client=hub.client(),
        )

        assert pairs == [DeliverablePair("S-1", "P-1")]
        body = hub.requests[0]["body"]
        assert body["order_ref"].startswith("KAWN-ORDER-")
        assert body["product_code"] == "WUPEX-PSN-50"
        assert body["quantity"] == 2
        assert body["sell_price"] == 100.0
        assert body["supplier_priority"] == [{"name": "WUPEX", "product_code": "WUPEX-PSN-50", "priceExceed": False}]
        assert body["metadata"]["customer_email"] == "buyer@example.com"

    def test_order_refs_are_unique_per_attempt(self, app):
        refs = {supplier_gateway.new_order_ref("T") for _ in range(50)}
        assert len(refs) > 1

    def test_follow_up_fetch_for_keys_without_values(self, app, db_session, product, linked_supplier, fake_hub):
        hub = fake_hub(
            (200, {"order_ref": "R-9", "deliverables": [{"type": "serial", "key": "serial"}]}),
            (200, {"deliverables": [{"type": "serial", "key": "serial", "value": "S-9"}]}),
        )

        pairs = supplier_gateway.purchase_cards(
            product, 1, unit_price_cents=5000, currency="SAR", customer=CUSTOMER, client=hub.client(),
        )

        assert pairs == [DeliverablePair("S-9")]
        assert hub.requests[1]["method"] == "GET"
        assert hub.requests[1]["path"] == "/api/v1/orders/R-9"

    def test_validation_error_heals_product_code(self, app, db_session, product, linked_supplier, fake_hub):
        db_session.add(SupplierProduct(product_code="PSN-50-SA", name_en="PlayStation Card 50"))
        db_session.commit()
        hub = fake_hub((422, {"message": "Product not found"}))

        with pytest.raises(SupplierValidationError) as exc:
            supplier_gateway.purchase_cards(
                product, 1, unit_price_cents=5000, currency="SAR", customer=CUSTOMER, client=hub.client(),
            )

        assert exc.value.suggested_code == "PSN-50-SA"
        assert "auto-corrected product code to PSN-50-SA" in str(exc.value)
        assert db_session.get(Product, product.id).product_code == "PSN-50-SA"
        # The failed attempt is not retried
        assert len(hub.requests) == 1

    def test_unlinked_product_error_is_annotated(self, app, db_session, tenant, product, fake_hub):
        db_session.add(Supplier(tenant_id=tenant.id, name="Wupex", is_active=True))
        db_session.commit()
        hub = fake_hub((503, {"message": "down"}))

        with pytest.raises(SupplierUnreachableError, match="No suppliers linked"):
            supplier_gateway.purchase_cards(
                product, 1, unit_price_cents=5000, currency="SAR", customer=CUSTOMER, client=hub.client(),
            )

    def test_no_resolvable_supplier(self, app, db_session, tenant, fake_hub):
        product = Product(tenant_id=tenant.id, name="Gift", product_code="ZZZ-1", price_cents=100)
        db_session.add(product)
        db_session.commit()
        hub = fake_hub()

        with pytest.raises(NoResolvableSupplierError):
            supplier_gateway.purchase_cards(
                product, 1, unit_price_cents=100, currency="SAR", customer=CUSTOMER, client=hub.client(),
            )
        assert hub.requests == []


class TestTenantSlots:
    def test_limit_caps_concurrent_holders(self, app):
        with supplier_gateway.tenant_slot(9001, limit=1):
            _, semaphore = app.extensions[supplier_gateway.SLOTS_EXTENSION_KEY][9001]
            assert not semaphore.acquire(blocking=False)
        assert semaphore.acquire(blocking=False)
        semaphore.release()

    def test_follows_config_changes(self, app, monkeypatch):
        monkeypatch.setitem(app.config, "SUPPLIER_MAX_CONCURRENCY_PER_TENANT", 1)
        with supplier_gateway.tenant_slot(9002):
            first = app.extensions[supplier_gateway.SLOTS_EXTENSION_KEY][9002]

        monkeypatch.setitem(app.config, "SUPPLIER_MAX_CONCURRENCY_PER_TENANT", 3)
        with supplier_gateway.tenant_slot(9002):
            second = app.extensions[supplier_gateway.SLOTS_EXTENSION_KEY][9002]

        assert first[0] == 1
        assert second[0] == 3
        assert first[1] is not second[1]
