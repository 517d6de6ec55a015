"""Unit tests for the stock and article validator.

A small ERP stub returns fixed stock levels so every rule can be driven
without a database.
"""

from datetime import datetime, timezone

from apps.odf.domain import LineType, OrderLine, StockSnapshot
from apps.odf.validation import ArticleCatalog, StockValidator


class StubStockErp:
    """ERP stub exposing only ``stock_levels``; counts queries."""

    def __init__(self, levels):
        self.levels = levels
        self.queries = 0

    def stock_levels(self, codes):
        self.queries += 1
        return StockSnapshot({c: self.levels[c] for c in codes if c in self.levels}, datetime.now(timezone.utc))


CATALOG = ArticleCatalog({"88455-10": "88455-10-C", "104476-10": "120373-10"})


def article(line_id, code, qty, serial="SN-1"):
    return OrderLine(line_id=line_id, line_number=line_id, type=LineType.ARTICLE,
                     article_code=code, quantity=qty, serial_number=serial)


def coupon(line_id, code, qty, parent):
    return OrderLine(line_id=line_id, line_number=line_id, type=LineType.COUPON,
                     article_code=code, quantity=qty, parent_line_id=parent)


def test_valid_order_collects_demand_and_serials():
    erp = StubStockErp({"88455-10": 5, "88455-10-C": 10})
    out = StockValidator(erp, CATALOG).validate([article(1, "88455-10", 3, "SN-1001"), coupon(2, "88455-10-C", 3, 1)])
    assert out.ok
    assert out.demanded == {"88455-10": 3, "88455-10-C": 3}
    assert out.serials_to_check == ["SN-1001"]
    assert out.total_coupon_quantity == 3
    assert len(out.eligible_lines) == 2
    assert erp.queries == 1


def test_insufficient_stock_for_article_fails_whole_validation():
    """Article A1 qty 2 with stock 1 is an error citing A1."""
    erp = StubStockErp({"A1": 1})
    out = StockValidator(erp, CATALOG).validate([article(1, "A1", 2, "S1")])
    assert not out.ok
    assert any("A1" in e and "insuffisant" in e for e in out.errors)


def test_missing_stock_row_reads_as_zero():
    out = StockValidator(StubStockErp({}), CATALOG).validate([article(1, "A1", 1, "S1")])
    assert out.stock == {"A1": 0}
    assert not out.ok


def test_total_coupon_ceiling_fails_even_with_plenty_of_stock():
    erp = StubStockErp({"88455-10": 100, "88455-10-C": 100, "104476-10": 100, "120373-10": 100})
    lines = [
        article(1, "88455-10", 1, "SN-1"), coupon(2, "88455-10-C", 12, 1),
        article(3, "104476-10", 1, "SN-2"), coupon(4, "120373-10", 9, 3),
    ]
    out = StockValidator(erp, CATALOG, max_total=20).validate(lines)
    assert out.total_coupon_quantity == 21
    assert not out.ok
    assert any("maximum" in e for e in out.errors)


def test_exactly_twenty_coupons_is_allowed():
    erp = StubStockErp({"88455-10": 1, "88455-10-C": 20})
    out = StockValidator(erp, CATALOG, max_total=20).validate([article(1, "88455-10", 1), coupon(2, "88455-10-C", 20, 1)])
    assert out.ok


def test_non_positive_quantity_is_rejected():
    out = StockValidator(StubStockErp({"A1": 5}), CATALOG).validate([article(1, "A1", 0, "S1")])
    assert not out.ok
    assert "quantité invalide" in out.errors[0]


def test_article_without_serial_is_a_hard_error():
    out = StockValidator(StubStockErp({"A1": 5}), CATALOG).validate([article(1, "A1", 1, serial="  ")])
    assert not out.ok
    assert out.serials_to_check == []
    assert "série manquant" in out.errors[0]


def test_coupon_without_parent_article_in_order():
    out = StockValidator(StubStockErp({"88455-10-C": 5}), CATALOG).validate([coupon(2, "88455-10-C", 1, parent=99)])
    assert not out.ok
    assert "sans article parent" in out.errors[0]


def test_coupon_on_unauthorized_article():
    erp = StubStockErp({"X-1": 5, "X-1-C": 5})
    out = StockValidator(erp, CATALOG).validate([article(1, "X-1", 1, "SN-9"), coupon(2, "X-1-C", 1, 1)])
    assert not out.ok
    assert any("autorisé" in e for e in out.errors)


def test_catalog_lookups():
    assert CATALOG.is_authorized("88455-10")
    assert not CATALOG.is_authorized(None)
    assert CATALOG.coupon_for("104476-10") == "120373-10"
    assert CATALOG.article_for_coupon("120373-10") == "104476-10"
