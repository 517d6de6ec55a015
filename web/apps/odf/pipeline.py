"""ODF validation pipeline and fulfillment flow.

``ValidationPipeline`` is the fixed, linear state machine::

    Initialisation(20) -> ArticleCheck(40) -> AffaireCheck(60)
        -> SerialCheck(80) -> CouponCheck(100)

Each call advances exactly one step and returns a ``PipelineResult``
envelope; nothing but the ERP rows and the lock table persists between
calls. ``FulfillmentFlow`` covers what happens after a successful
validation: CreateOrder, the bounded GetOrder and passcode polls, and the
manufacturing order.

Every operation converts ``PipelineError`` into an error envelope and any
other exception into a generic fatal envelope. The order's locks are
released on every terminal error once validation has started locking,
except that a transient upstream failure leaves the locks of an order with
a remote order in place.
"""

import logging
from collections import defaultdict
from datetime import date
from typing import Callable, Dict, List, Optional

from django.conf import settings
from django.utils import timezone

from .assembler import Assembler, allocate_coupon_serials, group_order_lines, support_action
from .audit import LoggingMemoSink
from .domain import (
    STEP_ORDER,
    Activation,
    ActivationPort,
    ErpPort,
    LockConflict,
    LockKind,
    LockPort,
    MemoPort,
    OrderHeader,
    OrderNotFound,
    OrderServicePort,
    PipelineError,
    PipelineResult,
    PipelineStatus,
    RetryExhausted,
    RetryPolicy,
    Step,
    ValidationFailed,
)
from .validation import ArticleCatalog, StockValidator

logger = logging.getLogger("odf.pipeline")

FATAL_MESSAGE = "Une erreur inattendue est survenue. Le support a été informé."


class _Operation:
    """Shared plumbing: order loading, envelopes, error boundary, memo."""

    keep_locks_for_remote_order = False

    def __init__(self, erp: ErpPort, locks: LockPort, activation: ActivationPort,
                 orders: OrderServicePort, memo: Optional[MemoPort] = None,
                 clock: Callable = timezone.now, catalog: Optional[ArticleCatalog] = None):
        self.erp = erp
        self.locks = locks
        self.activation = activation
        self.orders = orders
        self.memo = memo or LoggingMemoSink()
        self.clock = clock
        self.catalog = catalog or ArticleCatalog()
        self.validator = StockValidator(erp, self.catalog)

    def today(self) -> date:
        now = self.clock()
        return timezone.localdate(now) if timezone.is_aware(now) else now.date()

    def _load(self, pcdid: int) -> OrderHeader:
        header = self.erp.get_order(pcdid)
        if header is None:
            raise OrderNotFound(f"Commande {pcdid} introuvable.")
        return header

    def _open(self, pcdid: int) -> OrderHeader:
        header = self._load(pcdid)
        if header.is_closed:
            raise ValidationFailed(f"La commande {header.pcdnum} est clôturée.", code="ORDER_CLOSED")
        return header

    def _revalidate(self, lines):
        """Re-run the article and stock rules against the current ERP rows."""
        outcome = self.validator.validate(lines)
        if not outcome.ok:
            raise ValidationFailed("Contrôle des articles en échec.", errors=outcome.errors, details=outcome.to_dict())
        return outcome

    def _release(self, header: Optional[OrderHeader], pcdid: int, exc: Optional[Exception] = None):
        """Release the order's locks.

        Locks stay in place while a remote order exists and either this
        operation keeps them for it or ``exc`` is transient.
        """
        if header is not None and header.unique_id and (
            self.keep_locks_for_remote_order or getattr(exc, "transient", False)
        ):
            logger.info("locks_kept", extra={"pcdid": pcdid, "unique_id": header.unique_id})
            return
        try:
            self.locks.release_order(pcdid)
        except Exception:
            logger.exception("lock_release_failed", extra={"pcdid": pcdid})

    def _error(self, step: str, progress: int, exc: PipelineError, pcdnum: str = "") -> PipelineResult:
        actions = list(exc.actions)
        if exc.notify and not actions:
            actions.append(support_action(pcdnum or "?", exc.message))
        return PipelineResult(
            status=PipelineStatus.ERROR,
            progress=progress,
            step=step,
            messages=list(getattr(exc, "errors", None) or [exc.message]),
            details={"code": exc.code, "details": exc.details},
            notify=exc.notify,
            actions=actions,
            error_kind=exc.kind,
            title=exc.title,
        )

    def _fatal(self, step: str, progress: int, pcdid: int, pcdnum: str = "") -> PipelineResult:
        return PipelineResult(
            status=PipelineStatus.ERROR,
            progress=progress,
            step=step,
            messages=[FATAL_MESSAGE],
            details={"code": "INTERNAL_ERROR"},
            notify=True,
            actions=[support_action(pcdnum or str(pcdid), FATAL_MESSAGE)],
            error_kind="fatal",
            title="Erreur inattendue",
        )

    def _guarded(self, step: str, progress: int, pcdid: int, user: str,
                 fn: Callable[[], PipelineResult], release: bool = True) -> PipelineResult:
        """Run ``fn`` inside the error boundary and record the memo.

        When ``release`` is set, a failing ``fn`` releases the order's locks.
        """
        header: Optional[OrderHeader] = None
        try:
            header = self.erp.get_order(pcdid)
            result = fn()
        except PipelineError as e:
            logger.info("step_error", extra={"pcdid": pcdid, "step": step, "code": e.code})
            if release:
                self._release(header, pcdid, e)
            result = self._error(step, progress, e, header.pcdnum if header else "")
        except Exception:
            logger.exception("step_crashed", extra={"pcdid": pcdid, "step": step})
            if release:
                self._release(header, pcdid)
            result = self._fatal(step, progress, pcdid, header.pcdnum if header else "")

        self.memo.write(
            pcdid,
            header.memo_id if header else None,
            user,
            [f"[{step}] {m}" for m in result.messages],
            result.to_dict(),
        )
        return result


class ValidationPipeline(_Operation):
    """Validate an order one step at a time.

    Args:
        erp: ERP port.
        locks: Serial lock store.
        activation: Activation service port.
        orders: Order service port (used to cancel a stale remote order).
        memo: Memo collaborator.
        catalog: Authorized articles; defaults to ``ODF_ARTICLE_COUPONS``.
        coupon_attempts: Tries to lock coupon candidates before giving up.
    """

    keep_locks_for_remote_order = True

    def __init__(self, erp: ErpPort, locks: LockPort, activation: ActivationPort,
                 orders: OrderServicePort, memo: Optional[MemoPort] = None,
                 catalog: Optional[ArticleCatalog] = None, clock: Callable = timezone.now,
                 coupon_attempts: Optional[int] = None):
        super().__init__(erp, locks, activation, orders, memo, clock, catalog)
        self.coupon_attempts = coupon_attempts or getattr(settings, "ODF_COUPON_SEARCH_ATTEMPTS", 10)
        self._handlers: Dict[Step, Callable[[OrderHeader], PipelineResult]] = {
            Step.INITIALISATION: self._initialisation,
            Step.ARTICLE_CHECK: self._article_check,
            Step.AFFAIRE_CHECK: self._affaire_check,
            Step.SERIAL_CHECK: self._serial_check,
            Step.COUPON_CHECK: self._coupon_check,
        }

    def advance(self, step: Step, pcdid: int, user: str = "") -> PipelineResult:
        """Run one step for an order and return its envelope.

        Errors from ArticleCheck onward release every lock the order holds,
        except when a remote order already exists for it.
        """
        step = Step(step)
        return self._guarded(
            step.value,
            step.progress,
            pcdid,
            user,
            lambda: self._handlers[step](self._open(pcdid)),
            release=step is not Step.INITIALISATION,
        )

    def validate(self, pcdid: int, user: str = "") -> PipelineResult:
        """Run every step in order, stopping at the first non-success."""
        result = None
        for step in STEP_ORDER:
            result = self.advance(step, pcdid, user)
            if not result.ok or (step is Step.INITIALISATION and result.unique_id):
                return result
        return result

    def _success(self, step: Step, messages: List[str], details=None, unique_id=None, progress=None) -> PipelineResult:
        return PipelineResult(
            status=PipelineStatus.SUCCESS,
            progress=step.progress if progress is None else progress,
            step=step.value,
            messages=messages,
            details=details,
            unique_id=unique_id,
        )

    # ---- steps ----
    def _initialisation(self, header: OrderHeader) -> PipelineResult:
        if header.unique_id:
            return self._success(
                Step.INITIALISATION,
                [f"Commande déjà validée (identifiant {header.unique_id})."],
                details={"alreadyValidated": True, "orderNumber": header.order_number},
                unique_id=header.unique_id,
                progress=100,
            )

        messages = [f"Initialisation de la commande {header.pcdnum}."]
        if self.erp.transfer_exists(header.pcdnum):
            self.erp.delete_transfer(header.pcdnum)
            res = self.orders.delete_order(header.pcdnum, header.correlation_id)
            if not res.ok:
                logger.warning("stale_order_cancel_failed", extra={"pcdnum": header.pcdnum, "reason": res.message})
            messages.append("Transfert d'une exécution précédente supprimé.")
        self.locks.sweep_expired()
        return self._success(Step.INITIALISATION, messages, details={"next": Step.ARTICLE_CHECK.value})

    def _article_check(self, header: OrderHeader) -> PipelineResult:
        outcome = self._revalidate(self.erp.get_lines(header.pcdid))
        return self._success(Step.ARTICLE_CHECK, ["Articles et stock valides."], details=outcome.to_dict())

    def _affaire_check(self, header: OrderHeader) -> PipelineResult:
        code = self.erp.ensure_affaire(header.pcdid, header.pcdnum)
        return self._success(Step.AFFAIRE_CHECK, [f"Affaire {code} associée."], details={"affaire": code})

    def _serial_check(self, header: OrderHeader) -> PipelineResult:
        corr = header.correlation_id
        rows, errors = [], []
        serials_by_article: Dict[str, List[str]] = defaultdict(list)

        for ln in self.erp.get_lines(header.pcdid):
            if not ln.is_article:
                continue
            serial = ln.serial_number
            if not serial:
                errors.append(f"Numéro de série manquant ligne {ln.line_number}.")
                continue

            model = self.erp.serial_model(serial)
            if model is None:
                check = self.activation.check_serial_number(serial, corr)
                model = check.data.get("manufacturerModel") if check.ok else None
                if not model:
                    errors.append(f"Numéro de série invalide '{serial}' ligne {ln.line_number}.")
                    rows.append({"line": ln.line_number, "serialNumber": serial, "status": "error",
                                 "message": check.message or "Modèle inconnu"})
                    continue
                self.erp.save_serial_model(serial, model)

            lookup = self.activation.get_activation_by_serial(serial, corr)
            act: Activation = lookup.data.get("activation") or Activation.no_subscription(serial, self.today())
            rows.append({
                "line": ln.line_number,
                "articleCode": ln.article_code,
                "coupon": self.catalog.coupon_for(ln.article_code),
                "serialNumber": serial,
                "status": "success",
                "manufacturerModel": model,
                "date_end_subs": act.date_end_subs,
                "partDescription": act.part_description,
                "estimatedStartDate": act.service_start_date or self.today().isoformat(),
            })
            serials_by_article[ln.article_code].append(serial)

        if errors:
            raise ValidationFailed("Contrôle des numéros de série en échec.", errors=errors, details={"lines": rows})

        for article_code, serials in serials_by_article.items():
            attempt = self.locks.try_lock(serials, header.pcdid, article_code, "", LockKind.ARTICLE)
            if not attempt.ok:
                raise LockConflict(
                    "Numéro(s) de série en cours de traitement sur une autre commande : "
                    + ", ".join(f"{c.serial_number} (commande {c.order_id})" for c in attempt.conflicts),
                    conflicts=attempt.conflicts,
                    details={"conflicts": [c.serial_number for c in attempt.conflicts]},
                )
        return self._success(Step.SERIAL_CHECK, ["Numéros de série valides."], details={"lines": rows})

    def _coupon_check(self, header: OrderHeader) -> PipelineResult:
        lines = self.erp.get_lines(header.pcdid)
        self._revalidate(lines)
        demand: Dict[tuple, int] = defaultdict(int)
        for ln in lines:
            if ln.is_coupon:
                demand[(ln.article_code, ln.parent_article_code or "")] += ln.quantity

        held: Dict[tuple, List[str]] = defaultdict(list)
        for lock in self.locks.owned(header.pcdid, LockKind.COUPON):
            held[(lock.article_code, lock.parent_article_code)].append(lock.serial_number)

        allocated = []
        for (code, parent), qty in demand.items():
            have = held.get((code, parent), [])
            if len(have) > qty:
                self.locks.release(have[qty:])
                have = have[:qty]
            if len(have) < qty:
                have = have + self._lock_coupons(header, code, parent, qty - len(have))
            allocated.append({"article": code, "parent": parent, "quantity": qty, "serials": have})

        return self._success(
            Step.COUPON_CHECK,
            [f"{sum(a['quantity'] for a in allocated)} coupon(s) réservé(s)."],
            details={"coupons": allocated},
        )

    def _lock_coupons(self, header: OrderHeader, code: str, parent: str, needed: int) -> List[str]:
        """Find and lock ``needed`` free coupon serials, retrying on races."""
        for attempt in range(1, self.coupon_attempts + 1):
            candidates = self.erp.available_coupon_serials(code, needed, exclude=self.locks.locked_serials())
            if len(candidates) < needed:
                raise ValidationFailed(
                    f"Pas assez de coupons {code} disponibles : {len(candidates)} pour {needed}.",
                    code="COUPONS_UNAVAILABLE",
                )
            res = self.locks.try_lock(candidates, header.pcdid, code, parent, LockKind.COUPON)
            if res.ok:
                return list(candidates)
            logger.info("coupon_lock_retry", extra={"pcdid": header.pcdid, "article": code, "attempt": attempt})
        raise LockConflict(
            f"Impossible de réserver les coupons {code} après {self.coupon_attempts} tentatives.",
            details={"article": code, "parent": parent},
        )


class FulfillmentFlow(_Operation):
    """Post-validation operations: create, poll, passcodes, manufacture."""

    def __init__(self, erp: ErpPort, locks: LockPort, activation: ActivationPort,
                 orders: OrderServicePort, assembler: Optional[Assembler] = None,
                 memo: Optional[MemoPort] = None, clock: Callable = timezone.now,
                 catalog: Optional[ArticleCatalog] = None):
        super().__init__(erp, locks, activation, orders, memo, clock, catalog)
        self.assembler = assembler or Assembler(erp, locks, clock=clock)
        self.get_order_max = getattr(settings, "ODF_GET_ORDER_MAX_ATTEMPTS", 80)
        self.get_order_backoff = getattr(settings, "ODF_GET_ORDER_BACKOFF_SECS", 3.0)
        self.passcodes_max = getattr(settings, "ODF_PASSCODES_MAX_ATTEMPTS", 20)
        self.passcodes_backoff = getattr(settings, "ODF_PASSCODES_BACKOFF_SECS", 5.0)
        self.fabrication_max = getattr(settings, "ODF_FABRICATION_POLL_MAX", 10)
        self.fabrication_backoff = getattr(settings, "ODF_FABRICATION_POLL_INTERVAL", 1.0)

    # ---- CreateOrder ----
    def create_order(self, pcdid: int, user: str = "") -> PipelineResult:
        return self._guarded("CreateOrder", 100, pcdid, user, lambda: self._create_order(pcdid))

    def remote_lines(self, lines, coupon_serials: Dict[int, List[str]]) -> List[dict]:
        """One remote order line per coupon unit, tied to the parent device."""
        today = self.today().isoformat()
        out = []
        for ln in lines:
            if not ln.is_coupon:
                continue
            model = self.erp.serial_model(ln.parent_serial) if ln.parent_serial else None
            if not model:
                raise ValidationFailed(
                    f"Modèle (manufacturerModel) manquant pour le produit {ln.parent_article_code}.",
                    code="MODEL_MISSING",
                )
            for serial in coupon_serials[ln.line_id]:
                out.append({
                    "lineNumber": len(out) + 1,
                    "serviceStartDate": today,
                    "partNumber": ln.parent_article_code,
                    "serialNumber": ln.parent_serial,
                    "serviceType": "RTX",
                    "manufacturerModel": model,
                    "autoRenewal": "N",
                    "activationType": "IMMEDIATE",
                    "activationDate": today,
                    "couponNumber": serial,
                })
        return out

    def _check_serial_locks(self, pcdid: int, lines) -> None:
        held = {r.serial_number for r in self.locks.owned(pcdid, LockKind.ARTICLE)}
        missing = [ln.serial_number for ln in lines
                   if ln.is_article and ln.serial_number and ln.serial_number not in held]
        if missing:
            raise ValidationFailed(
                "Numéro(s) de série non réservé(s) : " + ", ".join(missing) + ". Relancer la validation.",
                code="SERIALS_NOT_LOCKED",
                details={"serials": missing},
            )

    def _create_order(self, pcdid: int) -> PipelineResult:
        header = self._open(pcdid)
        if header.unique_id:
            return PipelineResult(
                status=PipelineStatus.SUCCESS, progress=100, step="CreateOrder",
                messages=[f"Commande déjà existante (identifiant {header.unique_id})."],
                details={"created": False}, unique_id=header.unique_id,
            )
        lines = self.erp.get_lines(pcdid)
        self._revalidate(lines)
        allocation = allocate_coupon_serials(lines, self.locks.owned(pcdid, LockKind.COUPON))
        self._check_serial_locks(pcdid, lines)
        remote = self.remote_lines(lines, allocation)
        if not remote:
            raise ValidationFailed("Aucune ligne coupon à commander.", code="NO_COUPON_LINES")

        if not self.locks.claim_order(pcdid):
            return PipelineResult(
                status=PipelineStatus.PENDING, progress=100, step="CreateOrder",
                messages=["Création de commande déjà en cours."],
                details={"created": False, "inProgress": True},
            )
        try:
            res = self.orders.create_order(header, remote)
        finally:
            self.locks.release_claim(pcdid)
        self.locks.refresh(pcdid)
        msg = "Commande créée." if res.created else "Commande déjà existante."
        return PipelineResult(
            status=PipelineStatus.SUCCESS, progress=100, step="CreateOrder",
            messages=[f"{msg} Identifiant {res.unique_id}."],
            details={"created": res.created, "lines": len(remote)}, unique_id=res.unique_id,
        )

    # ---- GetOrder ----
    def get_order(self, pcdid: int, attempt: int = 1, user: str = "") -> PipelineResult:
        """Single poll of the remote order.

        Attempts ``1 .. max-1`` that find the order incomplete return
        ``pending``; the last attempt returns a terminal error flagged for
        human notification.
        """
        policy = RetryPolicy(attempt, self.get_order_max, self.get_order_backoff)
        return self._guarded("GetOrder", 0, pcdid, user, lambda: self._get_order(pcdid, policy))

    def _get_order(self, pcdid: int, policy: RetryPolicy) -> PipelineResult:
        header = self._open(pcdid)
        if not header.unique_id:
            raise ValidationFailed("Aucune commande externe pour cette commande.", code="NO_UNIQUE_ID")

        remote = self.orders.get_order_by_unique_id(header.unique_id, header.correlation_id)
        if remote.complete:
            self.erp.record_order_number(pcdid, remote.order_number)
            return PipelineResult(
                status=PipelineStatus.SUCCESS, progress=100, step="GetOrder",
                messages=[f"Commande externe {remote.order_number} disponible."],
                details={"orderNumber": remote.order_number, "lines": group_order_lines(remote.lines)},
                unique_id=header.unique_id, retry=policy,
            )
        if policy.exhausted:
            raise RetryExhausted(
                f"La commande externe {header.unique_id} n'est pas disponible après {policy.max_attempts} tentatives.",
                details={"uniqueId": header.unique_id, "attempts": policy.attempt},
            )
        self.locks.refresh(pcdid)
        return PipelineResult(
            status=PipelineStatus.PENDING,
            progress=int(100 * policy.attempt / policy.max_attempts),
            step="GetOrder",
            messages=[f"Commande en cours de traitement ({policy.attempt}/{policy.max_attempts})."],
            unique_id=header.unique_id,
            retry=policy,
        )

    # ---- ProcessPasscodes ----
    def process_passcodes(self, pcdid: int, order_number: str, attempt: int = 1, user: str = "") -> PipelineResult:
        policy = RetryPolicy(attempt, self.passcodes_max, self.passcodes_backoff)
        return self._guarded("ProcessPasscodes", 0, pcdid, user,
                             lambda: self._process_passcodes(pcdid, order_number, policy))

    def _process_passcodes(self, pcdid: int, order_number: str, policy: RetryPolicy) -> PipelineResult:
        header = self._open(pcdid)
        activations = self.activation.get_passcodes(order_number, header.correlation_id)
        if activations:
            return PipelineResult(
                status=PipelineStatus.SUCCESS, progress=100, step="ProcessPasscodes",
                messages=[f"{len(activations)} passcode(s) récupéré(s)."],
                details={"orderNumber": order_number, "activations": [a.to_dict() for a in activations]},
                unique_id=header.unique_id, retry=policy,
            )
        if policy.exhausted:
            raise RetryExhausted(
                f"Passcodes indisponibles pour la commande {order_number} après {policy.max_attempts} tentatives.",
                details={"orderNumber": order_number, "attempts": policy.attempt},
            )
        self.locks.refresh(pcdid)
        return PipelineResult(
            status=PipelineStatus.PENDING,
            progress=int(100 * policy.attempt / policy.max_attempts),
            step="ProcessPasscodes",
            messages=[f"Passcodes en attente ({policy.attempt}/{policy.max_attempts})."],
            unique_id=header.unique_id,
            retry=policy,
        )

    # ---- Manufacturing order ----
    def create_manufacturing_order(self, pcdid: int, order_number: str, user: str = "") -> PipelineResult:
        return self._guarded("ManufacturingOrder", 100, pcdid, user,
                             lambda: self._manufacture(pcdid, order_number, user))

    def _manufacture(self, pcdid: int, order_number: str, user: str) -> PipelineResult:
        header = self._open(pcdid)
        affaire = header.affaire_code or self.erp.ensure_affaire(pcdid, header.pcdnum)
        lines = self.erp.get_lines(pcdid)

        activations = self.activation.get_passcodes(order_number, header.correlation_id)
        if not activations:
            # passcodes not published: fall back to per-device activations
            activations = [
                self.activation.get_activation_by_serial(ln.serial_number, header.correlation_id)
                .data.get("activation") or Activation.no_subscription(ln.serial_number, self.today())
                for ln in lines
                if ln.is_article and ln.serial_number
            ]

        mo = self.assembler.assemble(header, lines, activations, order_number, affaire, user)
        task_id = self.assembler.submit(mo)
        policy = RetryPolicy(1, self.fabrication_max, self.fabrication_backoff)
        return self._fabrication_result(header, task_id, policy, mo.memo_lines(), mo.to_dict())

    def manufacturing_status(self, pcdid: int, task_id: int, attempt: int = 1, user: str = "") -> PipelineResult:
        """Single check of a queued manufacturing order (``attempt`` is 1-based)."""
        policy = RetryPolicy(attempt, self.fabrication_max, self.fabrication_backoff)
        return self._guarded("ManufacturingOrder", 100, pcdid, user,
                             lambda: self._fabrication_result(self._load(pcdid), task_id, policy))

    def _fabrication_result(self, header: OrderHeader, task_id: int, policy: RetryPolicy,
                            messages: Optional[List[str]] = None, details: Optional[dict] = None) -> PipelineResult:
        messages = list(messages or [])
        details = {**(details or {}), "taskId": task_id}
        if self.assembler.check(header, task_id, policy):
            return PipelineResult(
                status=PipelineStatus.SUCCESS, progress=100, step="ManufacturingOrder",
                messages=messages + [f"Ordre de fabrication BDF{header.pcdnum} créé."],
                details=details, unique_id=header.unique_id, retry=policy,
            )
        self.locks.refresh(header.pcdid)
        return PipelineResult(
            status=PipelineStatus.PENDING,
            progress=int(100 * policy.attempt / policy.max_attempts),
            step="ManufacturingOrder",
            messages=messages + [f"Ordre de fabrication en cours de traitement ({policy.attempt}/{policy.max_attempts})."],
            details=details, unique_id=header.unique_id, retry=policy,
        )
