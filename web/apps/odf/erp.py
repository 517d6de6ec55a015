"""SQLAlchemy repository for the ERP store.

This module maps the slice of the ERP database the ODF pipeline reads and
writes (orders and their lines, stock, stock operations holding coupon
serials, affaires, the serial-model cache, in-progress markers and the
automation task queue) and exposes it through ``ErpRepository``.

The engine is created lazily from ``settings.ERP_DATABASE_URL``. In-memory
SQLite URLs get a ``StaticPool`` and the schema is created on first use so
local development and tests need no external database.
"""

import logging
import re
import threading
from contextlib import contextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Iterable, List, Optional

from django.conf import settings
from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Integer,
    Numeric,
    String,
    Text,
    create_engine,
    delete,
    func,
    select,
    text,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, mapped_column
from sqlalchemy.pool import StaticPool

from .domain import LineType, OrderHeader, OrderLine, StockSnapshot

logger = logging.getLogger("odf.erp")

MAIN_DEPOT = 1
RECEIPT = "R"

# SQLite only auto-assigns rowids to INTEGER PRIMARY KEY columns
SurrogateKey = BigInteger().with_variant(Integer, "sqlite")


class Base(DeclarativeBase):
    pass


class ErpOrder(Base):
    """Sales order header (PIECEDIVERS)."""

    __tablename__ = "erp_orders"
    pcdid = mapped_column(BigInteger, primary_key=True)
    pcdnum = mapped_column(String(32), nullable=False, index=True)
    memo_id = mapped_column(BigInteger, nullable=True)
    is_closed = mapped_column(Boolean, nullable=False, default=False)
    unique_id = mapped_column(String(64), nullable=True)
    order_number = mapped_column(String(64), nullable=True)
    affaire_id = mapped_column(BigInteger, nullable=True)


class ErpOrderLine(Base):
    __tablename__ = "erp_order_lines"
    line_id = mapped_column(BigInteger, primary_key=True)
    pcdid = mapped_column(BigInteger, nullable=False, index=True)
    line_number = mapped_column(Integer, nullable=False)
    line_type = mapped_column(String(1), nullable=False)
    article_code = mapped_column(String(64), nullable=False)
    designation = mapped_column(String(255), nullable=False, default="")
    quantity = mapped_column(Integer, nullable=False, default=0)
    serial_number = mapped_column(String(128), nullable=True)
    parent_line_id = mapped_column(BigInteger, nullable=True)


class ErpArticle(Base):
    __tablename__ = "erp_articles"
    article_code = mapped_column(String(64), primary_key=True)
    designation = mapped_column(String(255), nullable=False, default="")
    weighted_cost = mapped_column(Numeric(14, 4), nullable=False, default=0)


class ErpStock(Base):
    __tablename__ = "erp_stock"
    article_code = mapped_column(String(64), primary_key=True)
    depot = mapped_column(Integer, primary_key=True, default=MAIN_DEPOT)
    quantity = mapped_column(Integer, nullable=False, default=0)


class ErpStockOperation(Base):
    """Stock movement; open receipts with remaining quantity hold coupon serials."""

    __tablename__ = "erp_stock_operations"
    id = mapped_column(SurrogateKey, primary_key=True, autoincrement=True)
    article_code = mapped_column(String(64), nullable=False, index=True)
    serial_number = mapped_column(String(128), nullable=True, index=True)
    depot = mapped_column(Integer, nullable=False, default=MAIN_DEPOT)
    nature = mapped_column(String(1), nullable=False, default=RECEIPT)
    is_closed = mapped_column(Boolean, nullable=False, default=False)
    remaining = mapped_column(Integer, nullable=False, default=1)
    weighted_cost = mapped_column(Numeric(14, 4), nullable=False, default=0)
    op_date = mapped_column(Date, nullable=False, default=date.today)


class ErpAffaire(Base):
    __tablename__ = "erp_affaires"
    id = mapped_column(SurrogateKey, primary_key=True, autoincrement=True)
    code = mapped_column(String(64), nullable=False, unique=True)
    title = mapped_column(String(255), nullable=False, default="")


class ErpSerialModel(Base):
    __tablename__ = "erp_serial_models"
    serial_number = mapped_column(String(128), primary_key=True)
    model = mapped_column(String(128), nullable=False)


class ErpTransfer(Base):
    __tablename__ = "erp_transfers"
    id = mapped_column(SurrogateKey, primary_key=True, autoincrement=True)
    number = mapped_column(String(64), nullable=False, unique=True)
    created_at = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))


class ErpInProgress(Base):
    """In-progress marker written by the ERP while a request is being handled."""

    __tablename__ = "erp_inprogress_locks"
    id = mapped_column(SurrogateKey, primary_key=True, autoincrement=True)
    pcdnum = mapped_column(String(32), nullable=False, index=True)
    created_at = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))


class ErpAutomationTask(Base):
    """ERP automation queue: P pending, T done, E error."""

    __tablename__ = "erp_automation_tasks"
    id = mapped_column(SurrogateKey, primary_key=True, autoincrement=True)
    pcdnum = mapped_column(String(32), nullable=False, index=True)
    kind = mapped_column(String(16), nullable=False, default="BDF")
    content = mapped_column(Text, nullable=False)
    status = mapped_column(String(1), nullable=False, default="P")
    error = mapped_column(Text, nullable=True)
    created_at = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))


# ---------------- Engine ---------------- #

_engine: Optional[Engine] = None
_engine_lock = threading.Lock()


def build_engine(url: str) -> Engine:
    """Create an engine; in-memory SQLite gets a shared StaticPool and a schema."""
    if url.startswith("sqlite") and ":memory:" in url:
        engine = create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
        Base.metadata.create_all(engine)
        return engine
    return create_engine(url, pool_pre_ping=True)


def get_engine() -> Engine:
    global _engine
    with _engine_lock:
        if _engine is None:
            _engine = build_engine(getattr(settings, "ERP_DATABASE_URL", "sqlite+pysqlite:///:memory:"))
        return _engine


def ping(engine: Optional[Engine] = None) -> bool:
    """Return True when the ERP database answers ``SELECT 1``."""
    try:
        with (engine or get_engine()).connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        logger.warning("erp_ping_failed", exc_info=True)
        return False


def affaire_code_for(pcdnum: str) -> str:
    return "APITODF_" + re.sub(r"\D", "", pcdnum or "")


def transfer_number_for(pcdnum: str) -> str:
    return f"BTR{pcdnum}"


# ---------------- Repository ---------------- #

class ErpRepository:
    """ERP queries and commands used by the pipeline.

    Each public method runs in its own short session and commits before
    returning; nothing is cached between calls.
    """

    def __init__(self, engine: Optional[Engine] = None):
        self.engine = engine or get_engine()

    @contextmanager
    def _session(self):
        with Session(self.engine) as s:
            yield s

    # ---- orders ----
    def get_order(self, pcdid: int) -> Optional[OrderHeader]:
        with self._session() as s:
            row = s.get(ErpOrder, pcdid)
            if row is None:
                return None
            affaire = s.get(ErpAffaire, row.affaire_id) if row.affaire_id else None
            return OrderHeader(
                pcdid=row.pcdid,
                pcdnum=row.pcdnum,
                memo_id=row.memo_id,
                is_closed=bool(row.is_closed),
                unique_id=row.unique_id or None,
                order_number=row.order_number or None,
                affaire_code=affaire.code if affaire else None,
            )

    def get_lines(self, pcdid: int) -> List[OrderLine]:
        """Return the order's lines with coupon parents resolved."""
        with self._session() as s:
            rows = s.scalars(
                select(ErpOrderLine).where(ErpOrderLine.pcdid == pcdid).order_by(ErpOrderLine.line_number)
            ).all()
        by_id = {r.line_id: r for r in rows}
        lines = []
        for r in rows:
            parent = by_id.get(r.parent_line_id) if r.parent_line_id else None
            lines.append(
                OrderLine(
                    line_id=r.line_id,
                    line_number=r.line_number,
                    type=LineType(r.line_type),
                    article_code=r.article_code,
                    quantity=int(r.quantity or 0),
                    designation=r.designation or "",
                    serial_number=(r.serial_number or "").strip() or None,
                    parent_line_id=r.parent_line_id,
                    parent_article_code=parent.article_code if parent else None,
                    parent_serial=((parent.serial_number or "").strip() or None) if parent else None,
                )
            )
        return lines

    def record_unique_id(self, pcdid: int, unique_id: str) -> str:
        """Store the remote order handle unless one is already set.

        The conditional UPDATE makes the handle write-once even under
        concurrent callers.

        Returns:
            str: The handle stored on the order after the call.
        """
        with self._session() as s:
            s.execute(
                update(ErpOrder)
                .where(ErpOrder.pcdid == pcdid, ErpOrder.unique_id.is_(None))
                .values(unique_id=unique_id)
            )
            s.commit()
            stored = s.scalar(select(ErpOrder.unique_id).where(ErpOrder.pcdid == pcdid))
        if stored != unique_id:
            logger.warning("unique_id_already_set", extra={"pcdid": pcdid, "stored": stored, "ignored": unique_id})
        return stored

    def record_order_number(self, pcdid: int, order_number: str) -> None:
        with self._session() as s:
            s.execute(update(ErpOrder).where(ErpOrder.pcdid == pcdid).values(order_number=order_number))
            s.commit()

    def close_order(self, pcdid: int) -> None:
        with self._session() as s:
            s.execute(update(ErpOrder).where(ErpOrder.pcdid == pcdid).values(is_closed=True))
            s.commit()

    def ensure_affaire(self, pcdid: int, pcdnum: str) -> str:
        """Create the order's affaire if missing and link it to the order.

        Returns:
            str: The affaire code (``APITODF_<digits of pcdnum>``).
        """
        code = affaire_code_for(pcdnum)
        with self._session() as s:
            affaire = s.scalar(select(ErpAffaire).where(ErpAffaire.code == code))
            if affaire is None:
                affaire = ErpAffaire(code=code, title=f"Commande API {pcdnum}")
                s.add(affaire)
                s.flush()
                logger.info("affaire_created", extra={"pcdid": pcdid, "affaire": code})
            s.execute(update(ErpOrder).where(ErpOrder.pcdid == pcdid).values(affaire_id=affaire.id))
            s.commit()
        return code

    # ---- stock ----
    def stock_levels(self, article_codes: Iterable[str]) -> StockSnapshot:
        codes = sorted(set(article_codes))
        levels = {code: 0 for code in codes}
        if codes:
            with self._session() as s:
                rows = s.execute(
                    select(ErpStock.article_code, func.sum(ErpStock.quantity))
                    .where(ErpStock.article_code.in_(codes), ErpStock.depot == MAIN_DEPOT)
                    .group_by(ErpStock.article_code)
                ).all()
            for code, qty in rows:
                levels[code] = int(qty or 0)
        return StockSnapshot(levels=levels, taken_at=datetime.now(timezone.utc))

    def available_coupon_serials(self, article_code: str, quantity: int, exclude: Iterable[str] = ()) -> List[str]:
        """Oldest open receipts of ``article_code`` not in ``exclude``."""
        if quantity <= 0:
            return []
        excluded = set(exclude)
        stmt = (
            select(ErpStockOperation.serial_number)
            .where(
                ErpStockOperation.article_code == article_code,
                ErpStockOperation.depot == MAIN_DEPOT,
                ErpStockOperation.nature == RECEIPT,
                ErpStockOperation.is_closed.is_(False),
                ErpStockOperation.remaining > 0,
                ErpStockOperation.serial_number.is_not(None),
            )
            .order_by(ErpStockOperation.op_date, ErpStockOperation.id)
        )
        if excluded:
            stmt = stmt.where(ErpStockOperation.serial_number.not_in(excluded))
        with self._session() as s:
            return list(s.scalars(stmt.limit(quantity)).all())

    def coupon_cost_basis(self, article_code: str, serial: str) -> Decimal:
        with self._session() as s:
            cost = s.scalar(
                select(ErpStockOperation.weighted_cost)
                .where(ErpStockOperation.article_code == article_code, ErpStockOperation.serial_number == serial)
                .order_by(ErpStockOperation.op_date.desc(), ErpStockOperation.id.desc())
                .limit(1)
            )
        return Decimal(cost) if cost is not None else Decimal("0")

    def article_cost(self, article_code: str) -> Decimal:
        with self._session() as s:
            cost = s.scalar(select(ErpArticle.weighted_cost).where(ErpArticle.article_code == article_code))
        return Decimal(cost) if cost is not None else Decimal("0")

    # ---- serial model cache ----
    def serial_model(self, serial: str) -> Optional[str]:
        with self._session() as s:
            row = s.get(ErpSerialModel, serial)
            return row.model if row else None

    def save_serial_model(self, serial: str, model: str) -> None:
        with self._session() as s:
            s.merge(ErpSerialModel(serial_number=serial, model=model))
            s.commit()

    # ---- transfers / automation ----
    def transfer_exists(self, pcdnum: str) -> bool:
        with self._session() as s:
            found = s.scalar(select(ErpTransfer.id).where(ErpTransfer.number == transfer_number_for(pcdnum)))
        return found is not None

    def delete_transfer(self, pcdnum: str) -> None:
        with self._session() as s:
            s.execute(delete(ErpTransfer).where(ErpTransfer.number == transfer_number_for(pcdnum)))
            s.commit()
        logger.info("stale_transfer_deleted", extra={"pcdnum": pcdnum})

    def submit_fabrication(self, pcdnum: str, content: str) -> int:
        """Queue a fabrication document for the ERP automation worker."""
        with self._session() as s:
            task = ErpAutomationTask(pcdnum=pcdnum, kind="BDF", content=content, status="P")
            s.add(task)
            s.commit()
            return task.id

    def task_status(self, task_id: int) -> tuple:
        """Return ``(status, error)`` for an automation task."""
        with self._session() as s:
            task = s.get(ErpAutomationTask, task_id)
            if task is None:
                return "E", f"tâche {task_id} introuvable"
            return task.status, task.error

    def pending_task(self, pcdnum: str) -> Optional[int]:
        """Latest fabrication task of the order still waiting for the ERP."""
        with self._session() as s:
            return s.scalar(
                select(ErpAutomationTask.id)
                .where(ErpAutomationTask.pcdnum == pcdnum, ErpAutomationTask.status == "P")
                .order_by(ErpAutomationTask.id.desc())
                .limit(1)
            )

    def delete_in_progress(self, pcdnum: str) -> int:
        with self._session() as s:
            res = s.execute(delete(ErpInProgress).where(ErpInProgress.pcdnum == pcdnum))
            s.commit()
        return res.rowcount or 0
