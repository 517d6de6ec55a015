"""Serial-number lock manager backed by the ``odf_serial_locks`` table.

Lock acquisition is an atomic compare-and-set built on the primary key of
``SerialLock``: inserting a row either succeeds (the serial was free) or
raises ``IntegrityError``, in which case the existing row is locked with
``SELECT ... FOR UPDATE`` and inspected. A row owned by the same order or
already expired is taken over; any other row is a conflict.

A batch is all-or-nothing: the whole batch runs in one transaction and a
single conflict rolls every insert of the batch back.
"""

import logging
from datetime import timedelta
from typing import Callable, Iterable, List, Optional

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone

from .domain import LockAttempt, LockKind, LockRecord
from .models import OrderClaim, SerialLock

logger = logging.getLogger("odf.locks")


class _BatchConflict(Exception):
    def __init__(self, conflicts: List[LockRecord]):
        super().__init__("LOCK_CONFLICT")
        self.conflicts = conflicts


def _record(row: SerialLock) -> LockRecord:
    return LockRecord(
        serial_number=row.serial_number,
        order_id=row.order_id,
        article_code=row.article_code,
        parent_article_code=row.parent_article_code,
        kind=LockKind(row.kind),
        expires_at=row.expires_at,
    )


class LockManager:
    """Grant, refresh and release exclusive holds on serial numbers.

    Args:
        ttl_seconds: Lifetime of a lock; defaults to ``ODF_LOCK_TTL_SECONDS``.
        clock: Callable returning the current aware datetime.
        claim_ttl_seconds: Lifetime of an order creation claim; defaults to
            ``ODF_CREATE_CLAIM_TTL_SECONDS``.
    """

    def __init__(self, ttl_seconds: Optional[int] = None, clock: Callable = timezone.now,
                 claim_ttl_seconds: Optional[int] = None):
        if ttl_seconds is None:
            ttl_seconds = getattr(settings, "ODF_LOCK_TTL_SECONDS", 600)
        if claim_ttl_seconds is None:
            claim_ttl_seconds = getattr(settings, "ODF_CREATE_CLAIM_TTL_SECONDS", 120)
        self.ttl = timedelta(seconds=ttl_seconds)
        self.claim_ttl = timedelta(seconds=claim_ttl_seconds)
        self.clock = clock

    def try_lock(
        self,
        serials: Iterable[str],
        order_id: int,
        article_code: str,
        parent_article_code: str = "",
        kind: LockKind = LockKind.ARTICLE,
    ) -> LockAttempt:
        """Lock every serial for ``order_id`` or none of them.

        Expired locks are swept first. Serials already held by the same
        order are refreshed.

        Returns:
            LockAttempt: ``acquired`` lists the locks on success; on conflict
            ``conflicts`` lists the foreign locks and nothing was written.
        """
        wanted = list(dict.fromkeys(s.strip() for s in serials if s and s.strip()))
        if not wanted:
            return LockAttempt()

        self.sweep_expired()
        try:
            acquired = self._lock_batch(wanted, order_id, article_code, parent_article_code or "", LockKind(kind))
        except _BatchConflict as c:
            logger.warning(
                "lock_conflict",
                extra={
                    "order_id": order_id,
                    "serials": [r.serial_number for r in c.conflicts],
                    "owners": sorted({r.order_id for r in c.conflicts}),
                },
            )
            return LockAttempt(conflicts=tuple(c.conflicts))

        logger.info("locks_acquired", extra={"order_id": order_id, "count": len(acquired), "kind": str(kind.value)})
        return LockAttempt(acquired=tuple(acquired))

    @transaction.atomic
    def _lock_batch(self, serials, order_id, article_code, parent_article_code, kind) -> List[LockRecord]:
        now = self.clock()
        expires_at = now + self.ttl
        acquired: List[LockRecord] = []
        conflicts: List[LockRecord] = []

        for serial in serials:
            fields = dict(
                order_id=order_id,
                article_code=article_code,
                parent_article_code=parent_article_code,
                kind=kind.value,
                locked_at=now,
                expires_at=expires_at,
            )
            row = self._insert_or_lock(serial, fields)
            if row is None:
                acquired.append(
                    LockRecord(serial, order_id, article_code, parent_article_code, kind, expires_at)
                )
                continue

            if row.order_id == order_id or row.expires_at <= now:
                for name, value in fields.items():
                    setattr(row, name, value)
                row.save()
                acquired.append(_record(row))
            else:
                conflicts.append(_record(row))

        if conflicts:
            raise _BatchConflict(conflicts)
        return acquired

    def _insert_or_lock(self, serial: str, fields: dict) -> Optional[SerialLock]:
        """Insert a lock row, or return the existing row locked for update."""
        for _ in range(2):
            try:
                # Nested savepoint: an IntegrityError only rolls back this insert.
                with transaction.atomic():
                    SerialLock.objects.create(serial_number=serial, **fields)
                return None
            except IntegrityError:
                try:
                    return SerialLock.objects.select_for_update().get(serial_number=serial)
                except SerialLock.DoesNotExist:
                    # swept between the insert and the read; try again
                    continue
        raise IntegrityError(f"could not lock serial {serial}")

    def release(self, serials: Iterable[str]) -> int:
        """Release the given serials. Unknown serials are ignored."""
        wanted = [s for s in serials if s]
        if not wanted:
            return 0
        deleted, _ = SerialLock.objects.filter(serial_number__in=wanted).delete()
        return deleted

    def release_order(self, order_id: int) -> int:
        deleted, _ = SerialLock.objects.filter(order_id=order_id).delete()
        if deleted:
            logger.info("locks_released", extra={"order_id": order_id, "count": deleted})
        return deleted

    def refresh(self, order_id: int) -> int:
        """Push back the expiry of every lock held by ``order_id``."""
        return SerialLock.objects.filter(order_id=order_id).update(expires_at=self.clock() + self.ttl)

    def owned(self, order_id: int, kind: Optional[LockKind] = None) -> List[LockRecord]:
        qs = SerialLock.objects.filter(order_id=order_id, expires_at__gt=self.clock())
        if kind is not None:
            qs = qs.filter(kind=LockKind(kind).value)
        return [_record(r) for r in qs.order_by("locked_at", "serial_number")]

    def locked_serials(self, exclude_order: Optional[int] = None) -> set:
        """Serials held by an active lock, optionally ignoring one order's."""
        qs = SerialLock.objects.filter(expires_at__gt=self.clock())
        if exclude_order is not None:
            qs = qs.exclude(order_id=exclude_order)
        return set(qs.values_list("serial_number", flat=True))

    def is_locked(self, serial: str) -> bool:
        return SerialLock.objects.filter(serial_number=serial, expires_at__gt=self.clock()).exists()

    def sweep_expired(self) -> int:
        deleted, _ = SerialLock.objects.filter(expires_at__lte=self.clock()).delete()
        if deleted:
            logger.info("locks_expired_swept", extra={"count": deleted})
        return deleted

    # ---- order creation claims ----
    @transaction.atomic
    def claim_order(self, order_id: int) -> bool:
        """Claim the right to create the remote order of ``order_id``.

        Returns:
            bool: True for exactly one caller until the claim is released
            or expires; False while another caller holds it.
        """
        now = self.clock()
        try:
            with transaction.atomic():
                OrderClaim.objects.create(order_id=order_id, claimed_at=now, expires_at=now + self.claim_ttl)
            return True
        except IntegrityError:
            pass
        claim = OrderClaim.objects.select_for_update().filter(order_id=order_id).first()
        if claim is not None and claim.expires_at > now:
            logger.info("order_claim_busy", extra={"order_id": order_id})
            return False
        OrderClaim.objects.update_or_create(
            order_id=order_id, defaults={"claimed_at": now, "expires_at": now + self.claim_ttl}
        )
        logger.warning("order_claim_taken_over", extra={"order_id": order_id})
        return True

    @transaction.atomic
    def release_claim(self, order_id: int) -> None:
        OrderClaim.objects.filter(order_id=order_id).delete()
