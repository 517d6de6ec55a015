"""Manufacturing order assembly and submission.

Once the remote order exists and activation data is available, the
assembler merges the order's lines, the coupon serials locked for the order
and the activation records into a ``ManufacturingOrder``, renders it as an
ERP automation document and queues it. Once the ERP has processed the
document the order is closed and every lock it held is released.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional
from urllib.parse import quote

from django.conf import settings
from django.utils import timezone

from .domain import (
    Activation,
    AssemblyError,
    ErpPort,
    LockKind,
    LockPort,
    LockRecord,
    OrderHeader,
    OrderLine,
    RetryPolicy,
    ValidationFailed,
)

logger = logging.getLogger("odf.assembler")

DOC_TYPE = "BDFSTK"
DOC_NATURE = "BDFA"
DOC_ORIGIN = ("APIODF", "GENERAL", "MAIN")


def support_action(pcdnum: str, message: str) -> dict:
    """Pre-filled mailto action for the support team."""
    email = getattr(settings, "ODF_SUPPORT_EMAIL", "")
    subject = f"ODF {pcdnum} : erreur de traitement"
    body = f"Commande : {pcdnum}\nErreur : {message}\n"
    return {
        "type": "mailto",
        "label": "Contacter le support",
        "href": f"mailto:{email}?subject={quote(subject)}&body={quote(body)}",
    }


def _amount(value: Decimal) -> str:
    return format(Decimal(value).quantize(Decimal("0.0001")), "f").replace(".", ",")


def _end_date(row: dict) -> str:
    return str(row.get("serviceEndDate") or "")[:10]


def group_order_lines(rows: List[dict]) -> List[dict]:
    """Merge order lines describing the same physical unit.

    Lines are keyed by ``(serialNumber, partNumber)``: quantities are summed
    and the latest ``serviceEndDate`` is kept. First-seen order is preserved.
    """
    grouped: Dict[tuple, dict] = {}
    for row in rows:
        key = (row.get("serialNumber"), row.get("partNumber"))
        qty = int(row.get("quantity") or 1)
        if key not in grouped:
            grouped[key] = {**row, "quantity": qty}
            continue
        current = grouped[key]
        current["quantity"] += qty
        if _end_date(row) > _end_date(current):
            current["serviceEndDate"] = row.get("serviceEndDate")
    return list(grouped.values())


def allocate_coupon_serials(lines: List[OrderLine], owned: List[LockRecord]) -> Dict[int, List[str]]:
    """Give each coupon line one distinct locked coupon serial per unit.

    Locks are pooled by ``(coupon article, parent article)`` and consumed in
    line order.

    Raises:
        ValidationFailed: When the order does not hold enough coupon locks.
    """
    pools: Dict[tuple, List[str]] = defaultdict(list)
    for lock in owned:
        if lock.kind == LockKind.COUPON:
            pools[(lock.article_code, lock.parent_article_code)].append(lock.serial_number)

    allocation: Dict[int, List[str]] = {}
    for ln in lines:
        if not ln.is_coupon:
            continue
        pool = pools[(ln.article_code, ln.parent_article_code or "")]
        if len(pool) < ln.quantity:
            raise ValidationFailed(
                f"Coupons non réservés pour la ligne {ln.line_number} ({ln.article_code}) : "
                f"{len(pool)} disponible(s) pour {ln.quantity}. Relancer la validation.",
                code="COUPONS_NOT_LOCKED",
            )
        allocation[ln.line_id] = pool[: ln.quantity]
        del pool[: ln.quantity]
    return allocation


@dataclass
class CouponRecord:
    serial_number: str
    article_code: str
    parent_serial: str
    activation: Activation
    cost_basis: Decimal = Decimal("0")

    def to_dict(self) -> dict:
        return {
            "serialNumber": self.serial_number,
            "articleCode": self.article_code,
            "parentSerial": self.parent_serial,
            "passcode": self.activation.passcode,
            "qrcode": self.activation.qr_flag,
            "serviceStartDate": self.activation.service_start_date,
            "serviceEndDate": self.activation.service_end_date,
            "date_end_subs": self.activation.date_end_subs,
            "costBasis": str(self.cost_basis),
        }


@dataclass
class ArticleEntry:
    line: OrderLine
    unit_cost: Decimal
    coupons: List[CouponRecord] = field(default_factory=list)


@dataclass
class ManufacturingOrder:
    """Fabrication document for one order, ready to render and submit."""

    header: OrderHeader
    order_number: str
    affaire_code: str
    user: str
    created_at: datetime
    articles: List[ArticleEntry] = field(default_factory=list)
    summary: List[dict] = field(default_factory=list)

    @property
    def coupons(self) -> List[CouponRecord]:
        return [c for a in self.articles for c in a.coupons]

    def memo_lines(self) -> List[str]:
        lines = [f"Commande externe {self.order_number} ({len(self.coupons)} coupon(s))"]
        for row in self.summary:
            lines.append(
                f"{row.get('serialNumber')} {row.get('partNumber') or ''} x{row.get('quantity')} "
                f"fin {row.get('serviceEndDate') or row.get('dateEndSubs') or ''}".strip()
            )
        return lines

    def _article_line(self, entry: ArticleEntry, coupon: Optional[CouponRecord]) -> str:
        label = entry.line.designation
        if coupon and coupon.activation.has_subscription and coupon.activation.service_start_date:
            label += f" / {coupon.activation.service_start_date[:4]}{coupon.activation.service_end_date[:4]}"
        cost = _amount(entry.unit_cost)
        return (
            f"LA;{entry.line.article_code};1;;{cost};;{cost};;;;{label};{self.affaire_code};;;;;;;;{cost};\n"
        )

    def render(self) -> str:
        """Render the ERP automation document (``;``-separated records)."""
        day = self.created_at.strftime("%d/%m/%Y")
        origin = ";".join(DOC_ORIGIN)
        out = [
            f"E;{DOC_TYPE};{day};{day};{DOC_NATURE};BDF{self.header.pcdnum};"
            f"Commande externe : {self.order_number};{self.affaire_code};{origin};\n",
            f"ED;REFERENT;;DATERETOUR;;COLISAGE;1;STATUTAPI;Succès;DATEAPI;"
            f"{self.created_at.strftime('%d/%m/%Y %H:%M:%S')};USERAPI;{self.user};\n",
        ]
        for entry in self.articles:
            if not entry.coupons:
                out.extend(self._article_line(entry, None) for _ in range(max(1, entry.line.quantity)))
                continue
            for coupon in entry.coupons:
                act = coupon.activation
                cost = _amount(coupon.cost_basis)
                out.append(self._article_line(entry, coupon))
                out.append(
                    f"LD;QRCODE;{act.qr_flag};CODESN;{act.passcode};"
                    f"DATEDEBUT;{act.service_start_date};DATEFIN;{act.date_end_subs};\n"
                )
                out.append(
                    f"LP;{coupon.article_code};1;;{cost};;{cost};;;;{coupon.serial_number};"
                    f"{self.affaire_code};;;;;;;;{cost};\n"
                )
        memo = " | ".join(self.memo_lines()).replace('"', "'")
        out.append(f'NO;"{memo}";')
        return "".join(out)

    def to_dict(self) -> dict:
        return {
            "pcdid": self.header.pcdid,
            "pcdnum": self.header.pcdnum,
            "orderNumber": self.order_number,
            "affaire": self.affaire_code,
            "lines": [
                {
                    "lineNumber": a.line.line_number,
                    "articleCode": a.line.article_code,
                    "serialNumber": a.line.serial_number,
                    "coupons": [c.to_dict() for c in a.coupons],
                }
                for a in self.articles
            ],
            "summary": self.summary,
        }


class Assembler:
    """Build and queue the manufacturing order for a fulfilled order.

    The ERP processes queued documents asynchronously: ``submit`` returns the
    automation task id at once and callers follow it with ``check``.

    Args:
        erp: ERP port (costs, fabrication queue, order closing).
        locks: Lock port; the order's locks are released once the task ends.
        clock: Callable returning the current aware datetime.
    """

    def __init__(self, erp: ErpPort, locks: LockPort, clock: Callable = timezone.now):
        self.erp = erp
        self.locks = locks
        self.clock = clock

    def today(self) -> date:
        now = self.clock()
        return timezone.localdate(now) if timezone.is_aware(now) else now.date()

    def assemble(self, header: OrderHeader, lines: List[OrderLine], activations: List[Activation],
                 order_number: str, affaire_code: str, user: str = "",
                 coupon_serials: Optional[Dict[int, List[str]]] = None) -> ManufacturingOrder:
        """Merge lines, coupon serials and activations into a manufacturing order.

        Activations are matched to articles by serial number; when a device
        has several, coupon ``i`` uses the ``i``-th one (the last one once
        exhausted). A device without activation gets the "no subscription"
        record.
        """
        if coupon_serials is None:
            coupon_serials = allocate_coupon_serials(lines, self.locks.owned(header.pcdid, LockKind.COUPON))

        by_serial: Dict[str, List[Activation]] = defaultdict(list)
        for act in activations:
            by_serial[act.serial_number].append(act)

        entries: Dict[int, ArticleEntry] = {}
        for ln in lines:
            if ln.is_article:
                entries[ln.line_id] = ArticleEntry(line=ln, unit_cost=self.erp.article_cost(ln.article_code))

        today = self.today()
        for ln in lines:
            if not ln.is_coupon:
                continue
            parent = entries.get(ln.parent_line_id)
            if parent is None:
                raise AssemblyError(f"Ligne {ln.line_number} : article parent introuvable.")
            parent_serial = parent.line.serial_number or ""
            acts = by_serial.get(parent_serial, [])
            for i, serial in enumerate(coupon_serials.get(ln.line_id, [])):
                act = acts[min(i, len(acts) - 1)] if acts else Activation.no_subscription(parent_serial, today)
                parent.coupons.append(
                    CouponRecord(
                        serial_number=serial,
                        article_code=ln.article_code,
                        parent_serial=parent_serial,
                        activation=act,
                        cost_basis=self.erp.coupon_cost_basis(ln.article_code, serial),
                    )
                )

        summary = group_order_lines(
            [
                {
                    "serialNumber": c.parent_serial,
                    "partNumber": c.article_code,
                    "quantity": 1,
                    "serviceEndDate": c.activation.service_end_date,
                }
                for e in entries.values()
                for c in e.coupons
            ]
        )
        return ManufacturingOrder(
            header=header,
            order_number=order_number,
            affaire_code=affaire_code,
            user=user,
            created_at=self.clock(),
            articles=list(entries.values()),
            summary=summary,
        )

    def submit(self, mo: ManufacturingOrder) -> int:
        """Queue the document for the ERP and return the automation task id.

        An order whose previous document is still waiting for the ERP gets
        that task back instead of a second document.
        """
        pcdnum = mo.header.pcdnum
        task_id = self.erp.pending_task(pcdnum)
        if task_id is not None:
            logger.info("fabrication_already_queued", extra={"pcdnum": pcdnum, "task_id": task_id})
            return task_id
        task_id = self.erp.submit_fabrication(pcdnum, mo.render())
        logger.info("fabrication_submitted", extra={"pcdnum": pcdnum, "task_id": task_id})
        return task_id

    def check(self, header: OrderHeader, task_id: int, policy: RetryPolicy) -> bool:
        """Look at the automation task once.

        Returns:
            bool: True once the ERP processed the document and the order was
            closed; False while the task is still waiting.

        Raises:
            AssemblyError: When the ERP rejects the document, or when the
                last allowed check still finds it waiting. The order's locks
                are released first.
        """
        status, error = self.erp.task_status(task_id)
        if status == "E":
            self._fail(header, task_id, status, error or "Rejet du traitement automatique.")
        if status == "P":
            if policy.exhausted:
                self._fail(header, task_id, status, "Le traitement automatique n'a pas abouti dans le délai imparti.")
            return False
        self.finalize(header, task_id)
        return True

    def finalize(self, header: OrderHeader, task_id: int) -> None:
        self.erp.delete_in_progress(header.pcdnum)
        self.locks.release_order(header.pcdid)
        self.erp.close_order(header.pcdid)
        logger.info("order_closed", extra={"pcdnum": header.pcdnum, "task_id": task_id})

    def _fail(self, header: OrderHeader, task_id: int, status: str, message: str):
        self.locks.release_order(header.pcdid)
        logger.error("fabrication_failed", extra={"pcdnum": header.pcdnum, "task_id": task_id, "error": message})
        raise AssemblyError(
            f"Erreur lors de la création de l'ordre de fabrication : {message}",
            details={"taskId": task_id, "status": status, "error": message},
            actions=[support_action(header.pcdnum, f"Tâche {task_id} : {message}")],
        )
