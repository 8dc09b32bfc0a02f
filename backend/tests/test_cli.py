# Overview: Pytest coverage for the flask CLI command groups.

from openpyxl import Workbook

from digicards.models import Card
from digicards.services import card_inventory_service, wallet_service


def _invoke(app, *args):
    return app.test_cli_runner().invoke(args=list(args))


class TestCardsCommands:
    def test_import_csv(self, app, db_session, tenant, product, tmp_path):
        source = tmp_path / "codes.csv"
        source.write_text("code,pin,expiry_date\nCSV-1,1111,2099-01-01\nCSV-2,,\nCSV-1,2222,\n", encoding="utf-8")

        result = _invoke(app, "cards", "import", "--tenant-id", str(tenant.id), "--product-id", str(product.id),
                         "--file", str(source))

        assert result.exit_code == 0, result.output
        assert "PASS Imported 2 card(s), skipped 1" in result.output
        card = db_session.query(Card).filter_by(card_code="CSV-1").one()
        assert card.card_pin == "1111"
        assert card.expiry_date.year == 2099

    def test_import_xlsx(self, app, db_session, tenant, product, tmp_path):
        wb = Workbook()
        wb.active.append(["Code", "PIN"])
        wb.active.append(["XLS-1", "9"])
        source = tmp_path / "codes.xlsx"
        wb.save(source)

        result = _invoke(app, "cards", "import", "--tenant-id", str(tenant.id), "--product-id", str(product.id),
                         "--file", str(source))

        assert result.exit_code == 0, result.output
        assert db_session.query(Card).filter_by(card_code="XLS-1").one().card_pin == "9"

    def test_import_unknown_product(self, app, db_session, tenant, tmp_path):
        source = tmp_path / "codes.csv"
        source.write_text("code\nX-1\n", encoding="utf-8")

        result = _invoke(app, "cards", "import", "--tenant-id", str(tenant.id), "--product-id", "99999",
                         "--file", str(source))

        assert result.exit_code != 0

    def test_release(self, app, db_session, tenant, product, stock):
        cards = stock(product, 1)
        card_inventory_service.upsert_ownership(tenant.id, cards[0].card_code, "someone")

        result = _invoke(app, "cards", "release", str(cards[0].id))

        assert "PASS Released 0 of 1 card(s)" in result.output


class TestOrdersCommands:
    def test_fulfill_prints_item_paths(self, app, db_session, tenant, customer, product, stock, make_order):
        stock(product, 1)
        order = make_order(tenant, [(product, 1)])

        result = _invoke(app, "orders", "fulfill", str(order.id))

        assert result.exit_code == 0, result.output
        assert f"PASS {product.name} x1: 1 code(s) via local" in result.output
        assert "path: TRY_LOCAL -> DONE" in result.output
        assert "DONE Delivered 1 code(s)" in result.output

        again = _invoke(app, "orders", "fulfill", str(order.id))
        assert "WARN  Order skipped" in again.output

    def test_unknown_order(self, app, db_session):
        result = _invoke(app, "orders", "files", "424242")
        assert result.exit_code != 0
        assert "Order 424242 not found" in result.output


class TestInventoryAndWalletCommands:
    def test_heal(self, app, db_session, tenant, customer, product, make_order):
        make_order(tenant, [(product, 1)], delivery_files={"serialNumbers": ["CLI-1"]})

        result = _invoke(app, "inventory", "heal", "--tenant-id", str(tenant.id), "--email", "buyer@example.com")

        assert result.exit_code == 0, result.output
        assert "created 1, reassigned 0" in result.output

    def test_heal_needs_identity(self, app, db_session, tenant):
        result = _invoke(app, "inventory", "heal", "--tenant-id", str(tenant.id))
        assert result.exit_code != 0

    def test_credit_and_balance(self, app, db_session, tenant, customer):
        result = _invoke(app, "wallets", "credit", customer.id, "2500", "--tenant-id", str(tenant.id))
        assert "PASS Balance 0 -> 2500" in result.output

        assert _invoke(app, "wallets", "balance", customer.id).output.strip() == f"{customer.id}: 2500"
        assert wallet_service.get_balance(customer.id) == 2500
