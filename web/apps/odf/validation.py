"""Stock and article validation for ODF orders.

The validator is a pure read-and-compute step: it reads one fresh stock
snapshot from the ERP and returns everything the later steps need (eligible
lines, demanded quantities, serials to verify) together with the list of
errors found. It never writes anything and can be called repeatedly.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from django.conf import settings

from .domain import ErpPort, OrderLine

logger = logging.getLogger("odf.validation")


class ArticleCatalog:
    """Authorized articles and the coupon article each one consumes."""

    def __init__(self, coupons_by_article: Optional[Dict[str, str]] = None):
        if coupons_by_article is None:
            coupons_by_article = getattr(settings, "ODF_ARTICLE_COUPONS", {})
        self._coupons = dict(coupons_by_article)
        self._articles = {coupon: article for article, coupon in self._coupons.items()}

    def is_authorized(self, article_code: Optional[str]) -> bool:
        return bool(article_code) and article_code in self._coupons

    def coupon_for(self, article_code: str) -> Optional[str]:
        return self._coupons.get(article_code)

    def article_for_coupon(self, coupon_code: str) -> Optional[str]:
        return self._articles.get(coupon_code)


@dataclass
class ValidationOutcome:
    """Everything ArticleCheck computes for an order.

    Attributes:
        eligible_lines: Lines that passed the per-line checks.
        demanded: Demanded quantity per article code (articles and coupons).
        serials_to_check: Article serial numbers queued for SerialCheck.
        errors: Human-readable validation errors; empty when valid.
        total_coupon_quantity: Sum of coupon quantities on authorized articles.
        stock: Available quantity per demanded article, as read.
    """

    eligible_lines: List[OrderLine] = field(default_factory=list)
    demanded: Dict[str, int] = field(default_factory=dict)
    serials_to_check: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    total_coupon_quantity: int = 0
    stock: Dict[str, int] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {
            "demanded": dict(self.demanded),
            "stock": dict(self.stock),
            "serials": list(self.serials_to_check),
            "totalCouponQuantity": self.total_coupon_quantity,
            "errors": list(self.errors),
        }


class StockValidator:
    """Validate quantities, article eligibility and stock for an order."""

    def __init__(self, erp: ErpPort, catalog: Optional[ArticleCatalog] = None, max_total: Optional[int] = None):
        self.erp = erp
        self.catalog = catalog or ArticleCatalog()
        self.max_total = max_total if max_total is not None else getattr(settings, "ODF_MAX_TOTAL_QUANTITY", 20)

    def validate(self, lines: List[OrderLine]) -> ValidationOutcome:
        """Run every check and collect all errors.

        Args:
            lines: The order's lines, articles and coupons mixed.

        Returns:
            ValidationOutcome: ``ok`` is False as soon as one error exists;
            a stock shortfall on any article fails the whole order.
        """
        out = ValidationOutcome()
        demanded: Dict[str, int] = defaultdict(int)
        articles = {ln.line_id: ln for ln in lines if ln.is_article}
        coupon_parents = {ln.parent_line_id for ln in lines if ln.is_coupon}

        if not lines:
            out.errors.append("La commande ne contient aucune ligne.")
            return out

        for ln in lines:
            if ln.quantity <= 0:
                out.errors.append(f"Ligne {ln.line_number} ({ln.article_code}) : quantité invalide ({ln.quantity}).")
                continue

            if ln.is_coupon:
                parent = articles.get(ln.parent_line_id)
                if parent is None:
                    out.errors.append(
                        f"Ligne {ln.line_number} ({ln.article_code}) : coupon sans article parent dans la commande."
                    )
                    continue
                if not self.catalog.is_authorized(parent.article_code):
                    out.errors.append(
                        f"Ligne {ln.line_number} : l'article {parent.article_code} n'est pas autorisé pour les coupons."
                    )
                    continue
                demanded[ln.article_code] += ln.quantity
                out.total_coupon_quantity += ln.quantity
                out.eligible_lines.append(ln)
                continue

            # article line
            if ln.line_id in coupon_parents and not self.catalog.is_authorized(ln.article_code):
                out.errors.append(f"Ligne {ln.line_number} : l'article {ln.article_code} n'est pas autorisé.")
                continue
            serial = (ln.serial_number or "").strip()
            if not serial:
                out.errors.append(f"Ligne {ln.line_number} ({ln.article_code}) : numéro de série manquant.")
                continue
            demanded[ln.article_code] += ln.quantity
            out.serials_to_check.append(serial)
            out.eligible_lines.append(ln)

        if out.total_coupon_quantity > self.max_total:
            out.errors.append(
                f"Quantité totale de coupons ({out.total_coupon_quantity}) supérieure au maximum autorisé ({self.max_total})."
            )

        out.demanded = dict(demanded)
        if out.demanded:
            snapshot = self.erp.stock_levels(out.demanded.keys())
            for code, qty in sorted(out.demanded.items()):
                available = snapshot.available(code)
                out.stock[code] = available
                if qty > available:
                    out.errors.append(f"Stock insuffisant pour {code} : demandé {qty}, disponible {available}.")

        if out.errors:
            logger.info("validation_failed", extra={"errors": out.errors, "demanded": out.demanded})
        return out
