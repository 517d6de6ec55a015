"""Shared fixtures for the ODF tests.

The ERP is a fresh in-memory SQLite database per test (SQLAlchemy engine
with a StaticPool), seeded through ``seed_order``.
"""

from datetime import date, timedelta

import pytest
from django.utils import timezone
from sqlalchemy.orm import Session

from apps.odf.erp import (
    ErpArticle,
    ErpOrder,
    ErpOrderLine,
    ErpStock,
    ErpStockOperation,
    ErpRepository,
    build_engine,
)


class FakeClock:
    """Controllable clock returning aware datetimes."""

    def __init__(self, start=None):
        self.now = start or timezone.now()

    def __call__(self):
        return self.now

    def advance(self, seconds: float):
        self.now = self.now + timedelta(seconds=seconds)


class RecordingMemo:
    def __init__(self):
        self.entries = []

    def write(self, order_id, memo_id, user, messages, result):
        self.entries.append({"order_id": order_id, "memo_id": memo_id, "user": user,
                             "messages": messages, "result": result})


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memo():
    return RecordingMemo()


@pytest.fixture
def erp_engine():
    engine = build_engine("sqlite+pysqlite:///:memory:")
    yield engine
    engine.dispose()


@pytest.fixture
def erp(erp_engine):
    return ErpRepository(erp_engine)


@pytest.fixture
def seed_order(erp_engine):
    """Insert an order with its lines, stock and coupon receipts.

    ``lines`` items are dicts with ``line_id``, ``type`` ("L"/"C"),
    ``article``, ``qty`` and optional ``serial`` / ``parent``.
    """

    def _seed(pcdid=1, pcdnum="PCD0001", lines=(), stock=None, coupons=None,
              unique_id=None, is_closed=False, costs=None):
        with Session(erp_engine) as s:
            s.add(ErpOrder(pcdid=pcdid, pcdnum=pcdnum, memo_id=pcdid * 10,
                           unique_id=unique_id, is_closed=is_closed))
            for n, ln in enumerate(lines, start=1):
                s.add(ErpOrderLine(
                    line_id=ln["line_id"], pcdid=pcdid, line_number=n, line_type=ln["type"],
                    article_code=ln["article"], designation=ln.get("designation", ln["article"]),
                    quantity=ln["qty"], serial_number=ln.get("serial"), parent_line_id=ln.get("parent"),
                ))
            for code, qty in (stock or {}).items():
                if s.get(ErpStock, (code, 1)) is None:
                    s.add(ErpStock(article_code=code, depot=1, quantity=qty))
            for code, serials in (coupons or {}).items():
                for i, serial in enumerate(serials):
                    s.add(ErpStockOperation(
                        article_code=code, serial_number=serial, depot=1, nature="R",
                        is_closed=False, remaining=1, weighted_cost=12.5 + i,
                        op_date=date(2024, 1, 1) + timedelta(days=i),
                    ))
            for code, cost in (costs or {}).items():
                s.merge(ErpArticle(article_code=code, designation=code, weighted_cost=cost))
            s.commit()
        return pcdid

    return _seed


@pytest.fixture
def coupon_order(seed_order):
    """One GNSS receiver (3 years of subscription) on order 1."""
    return seed_order(
        pcdid=1,
        pcdnum="PCD0001",
        lines=[
            {"line_id": 10, "type": "L", "article": "88455-10", "qty": 1, "serial": "SN-1001",
             "designation": "Récepteur SPS986"},
            {"line_id": 11, "type": "C", "article": "88455-10-C", "qty": 3, "parent": 10},
        ],
        stock={"88455-10": 5, "88455-10-C": 10},
        coupons={"88455-10-C": ["C-001", "C-002", "C-003", "C-004", "C-005"]},
        costs={"88455-10": 1500},
    )
