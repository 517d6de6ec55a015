"""Domain types, errors and ports for the ODF fulfillment pipeline.

This module holds the plain dataclasses exchanged between the pipeline
components, the exception hierarchy raised by the steps, and the protocol
definitions (ports) for the collaborators the pipeline depends on: the ERP
store, the lock store, the remote activation and order services, and the
audit / memo sinks.
"""

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, List, Optional, Protocol


NO_SUBSCRIPTION = "no subscription"


# ---- Enums ----
class LineType(str, Enum):
    """Order line discriminator, using the ERP's own codes."""

    ARTICLE = "L"
    COUPON = "C"


class Step(str, Enum):
    """Validation pipeline steps, declared in execution order."""

    INITIALISATION = "Initialisation"
    ARTICLE_CHECK = "ArticleCheck"
    AFFAIRE_CHECK = "AffaireCheck"
    SERIAL_CHECK = "SerialCheck"
    COUPON_CHECK = "CouponCheck"

    @property
    def progress(self) -> int:
        return STEP_PROGRESS[self]

    @property
    def next(self) -> Optional["Step"]:
        idx = STEP_ORDER.index(self)
        return STEP_ORDER[idx + 1] if idx + 1 < len(STEP_ORDER) else None


STEP_ORDER: List[Step] = list(Step)
STEP_PROGRESS = {
    Step.INITIALISATION: 20,
    Step.ARTICLE_CHECK: 40,
    Step.AFFAIRE_CHECK: 60,
    Step.SERIAL_CHECK: 80,
    Step.COUPON_CHECK: 100,
}


class PipelineStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    PENDING = "pending"


class Outcome(str, Enum):
    """Classification of a remote call result."""

    SUCCESS = "success"
    SOFT_ERROR = "soft_error"
    HARD_ERROR = "hard_error"


class LockKind(str, Enum):
    ARTICLE = "article"
    COUPON = "coupon"


# ---- Entities / DTOs ----
@dataclass
class OrderHeader:
    """The sales order being fulfilled (ERP document header).

    Attributes:
        pcdid: ERP primary key of the order.
        pcdnum: Human-facing order number.
        memo_id: ERP memo attached to the order, if any.
        is_closed: True once the order has been fulfilled or cancelled.
        unique_id: Remote order handle, null until CreateOrder succeeds.
        order_number: Remote order number, known once the order completes.
        affaire_code: Linked affaire, once AffaireCheck has run.
    """

    pcdid: int
    pcdnum: str
    memo_id: Optional[int] = None
    is_closed: bool = False
    unique_id: Optional[str] = None
    order_number: Optional[str] = None
    affaire_code: Optional[str] = None

    @property
    def correlation_id(self) -> str:
        return f"ODF-{self.pcdnum}"


@dataclass(frozen=True)
class OrderLine:
    """A single order line.

    Coupon lines point at their Article line through ``parent_line_id``;
    the ERP repository resolves the parent's article code and serial into
    ``parent_article_code`` / ``parent_serial`` for convenience.
    """

    line_id: int
    line_number: int
    type: LineType
    article_code: str
    quantity: int
    designation: str = ""
    serial_number: Optional[str] = None
    parent_line_id: Optional[int] = None
    parent_article_code: Optional[str] = None
    parent_serial: Optional[str] = None

    @property
    def is_article(self) -> bool:
        return self.type == LineType.ARTICLE

    @property
    def is_coupon(self) -> bool:
        return self.type == LineType.COUPON


@dataclass(frozen=True)
class StockSnapshot:
    """Available quantity per article, read once per validation attempt."""

    levels: dict
    taken_at: datetime

    def available(self, article_code: str) -> int:
        return int(self.levels.get(article_code) or 0)


@dataclass
class Activation:
    """Subscription / activation record for a device serial number."""

    serial_number: str
    part_description: str = ""
    service_start_date: str = ""
    service_end_date: str = ""
    passcode: str = ""
    article_code: str = ""

    @property
    def is_qr(self) -> bool:
        code = (self.passcode or "").strip()
        if not code or code == "DeviceNotFound":
            return False
        return code.startswith(("l", "[")) or code.endswith("=")

    @property
    def qr_flag(self) -> str:
        return "O" if self.is_qr else "N"

    @property
    def date_end_subs(self) -> str:
        return self.service_end_date or NO_SUBSCRIPTION

    @property
    def has_subscription(self) -> bool:
        return self.service_end_date not in ("", NO_SUBSCRIPTION)

    @classmethod
    def no_subscription(cls, serial_number: str, today: date) -> "Activation":
        """Default record used when the device has no active subscription."""
        return cls(
            serial_number=serial_number,
            service_start_date=today.isoformat(),
            service_end_date=NO_SUBSCRIPTION,
        )

    def to_dict(self) -> dict:
        return {
            "serialNumber": self.serial_number,
            "partDescription": self.part_description,
            "serviceStartDate": self.service_start_date,
            "serviceEndDate": self.service_end_date,
            "dateEndSubs": self.date_end_subs,
            "passcode": self.passcode,
            "qrcode": self.qr_flag,
        }


@dataclass
class GatewayResult:
    """Classified result of a remote call."""

    outcome: Outcome
    data: dict = field(default_factory=dict)
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome == Outcome.SUCCESS


@dataclass(frozen=True)
class CreateOrderResult:
    unique_id: str
    created: bool


@dataclass(frozen=True)
class RemoteOrder:
    """Snapshot of a remote order returned by a single GetOrder poll."""

    complete: bool
    order_number: Optional[str]
    lines: list
    raw: dict = field(default_factory=dict)


@dataclass(frozen=True)
class LockRecord:
    serial_number: str
    order_id: int
    article_code: str
    parent_article_code: str
    kind: LockKind
    expires_at: datetime


@dataclass(frozen=True)
class LockAttempt:
    """Result of a batch lock attempt: either everything or nothing."""

    acquired: tuple = ()
    conflicts: tuple = ()

    @property
    def ok(self) -> bool:
        return not self.conflicts


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded polling state carried by the caller between polls.

    ``attempt`` is 1-based: the first poll is attempt 1, and the poll with
    ``attempt == max_attempts`` is the last one allowed.
    """

    attempt: int
    max_attempts: int
    backoff_seconds: float = 0.0

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts

    def next(self) -> "RetryPolicy":
        return replace(self, attempt=self.attempt + 1)

    def to_dict(self) -> dict:
        return {
            "retryCount": self.attempt,
            "maxRetries": self.max_attempts,
            "nextAttempt": self.attempt + 1,
            "backoffSeconds": self.backoff_seconds,
        }


@dataclass
class PipelineResult:
    """Uniform envelope returned by every pipeline operation."""

    status: PipelineStatus
    progress: int = 0
    step: Optional[str] = None
    messages: List[str] = field(default_factory=list)
    details: Any = None
    unique_id: Optional[str] = None
    retry: Optional[RetryPolicy] = None
    notify: bool = False
    actions: List[dict] = field(default_factory=list)
    error_kind: Optional[str] = None
    title: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == PipelineStatus.SUCCESS

    def to_dict(self) -> dict:
        body = {
            "status": self.status.value,
            "progress": self.progress,
            "step": self.step,
            "messages": list(self.messages),
            "details": self.details,
        }
        if self.title:
            body["title"] = self.title
        if self.unique_id:
            body["uniqueId"] = self.unique_id
        if self.retry is not None:
            body["retry"] = self.retry.to_dict()
        if self.notify:
            body["notify"] = True
        if self.actions:
            body["actions"] = list(self.actions)
        if self.error_kind:
            body["errorKind"] = self.error_kind
        return body


# ---- Errors ----
class PipelineError(Exception):
    """Base error for every terminal pipeline condition.

    Attributes:
        code: Short machine-readable error code.
        kind: Error family, used to pick an HTTP status at the API edge.
        title: Human-readable headline for the memo / notification.
        details: Structured details (per-line errors, raw API payload...).
        transient: True when retrying the same call later may succeed; an
            order that already has a remote handle keeps its locks.
    """

    code = "PIPELINE_ERROR"
    kind = "fatal"
    title = "Erreur"
    notify = False
    transient = False

    def __init__(self, message: str, *, details: Any = None, code: Optional[str] = None,
                 actions: Optional[List[dict]] = None):
        super().__init__(message)
        self.message = message
        self.details = details
        self.actions = list(actions or [])
        if code:
            self.code = code


class OrderNotFound(PipelineError):
    code = "ORDER_NOT_FOUND"
    kind = "not_found"
    title = "Commande introuvable"


class ValidationFailed(PipelineError):
    code = "VALIDATION_FAILED"
    kind = "validation"
    title = "Erreur de validation"

    def __init__(self, message: str, *, errors: Iterable[str] = (), details: Any = None, code: Optional[str] = None):
        super().__init__(message, details=details, code=code)
        self.errors = list(errors) or [message]


class LockConflict(PipelineError):
    code = "LOCK_CONFLICT"
    kind = "lock_conflict"
    title = "Numéro de série verrouillé"

    def __init__(self, message: str, *, conflicts: Iterable[LockRecord] = (), details: Any = None):
        super().__init__(message, details=details)
        self.conflicts = list(conflicts)


class GatewayError(PipelineError):
    """Hard error from a remote service (connectivity or malformed payload)."""

    code = "UPSTREAM_ERROR"
    kind = "upstream"
    title = "Erreur API"
    transient = True

    def __init__(self, message: str, *, payload: Any = None, api_name: str = "",
                 status_code: Optional[int] = None, details: Any = None):
        super().__init__(message, details=details if details is not None else payload)
        self.payload = payload
        self.api_name = api_name
        self.status_code = status_code
        # a 4xx answer will not change on retry
        self.transient = status_code is None or status_code >= 500


class RetryExhausted(PipelineError):
    code = "RETRY_EXHAUSTED"
    kind = "retry_exhausted"
    title = "Délai dépassé"
    notify = True


class AssemblyError(PipelineError):
    code = "ASSEMBLY_FAILED"
    kind = "assembly"
    title = "Erreur de fabrication"
    notify = True


# ---- Ports (DIP) ----
class ErpPort(Protocol):
    """Port describing the ERP queries and commands used by the pipeline."""

    def get_order(self, pcdid: int) -> Optional[OrderHeader]: ...

    def get_lines(self, pcdid: int) -> List[OrderLine]: ...

    def stock_levels(self, article_codes: Iterable[str]) -> StockSnapshot: ...

    def record_unique_id(self, pcdid: int, unique_id: str) -> str: ...

    def record_order_number(self, pcdid: int, order_number: str) -> None: ...

    def ensure_affaire(self, pcdid: int, pcdnum: str) -> str: ...

    def serial_model(self, serial: str) -> Optional[str]: ...

    def save_serial_model(self, serial: str, model: str) -> None: ...

    def available_coupon_serials(self, article_code: str, quantity: int, exclude: Iterable[str]) -> List[str]: ...

    def coupon_cost_basis(self, article_code: str, serial: str) -> Decimal: ...

    def article_cost(self, article_code: str) -> Decimal: ...

    def transfer_exists(self, pcdnum: str) -> bool: ...

    def delete_transfer(self, pcdnum: str) -> None: ...

    def submit_fabrication(self, pcdnum: str, content: str) -> int: ...

    def task_status(self, task_id: int) -> tuple: ...

    def pending_task(self, pcdnum: str) -> Optional[int]: ...

    def delete_in_progress(self, pcdnum: str) -> int: ...

    def close_order(self, pcdid: int) -> None: ...


class LockPort(Protocol):
    """Port describing the serial-number lock store."""

    def try_lock(self, serials: Iterable[str], order_id: int, article_code: str,
                 parent_article_code: str = "", kind: LockKind = LockKind.ARTICLE) -> LockAttempt: ...

    def release(self, serials: Iterable[str]) -> int: ...

    def release_order(self, order_id: int) -> int: ...

    def refresh(self, order_id: int) -> int: ...

    def owned(self, order_id: int, kind: Optional[LockKind] = None) -> List[LockRecord]: ...

    def locked_serials(self, exclude_order: Optional[int] = None) -> set: ...

    def sweep_expired(self) -> int: ...

    def claim_order(self, order_id: int) -> bool: ...

    def release_claim(self, order_id: int) -> None: ...


class ActivationPort(Protocol):
    """Port describing the remote activation service."""

    def check_serial_number(self, serial: str, correlation_id: str = "") -> GatewayResult: ...

    def get_activation_by_serial(self, serial: str, correlation_id: str = "") -> GatewayResult: ...

    def get_passcodes(self, order_number: str, correlation_id: str = "") -> List[Activation]: ...


class OrderServicePort(Protocol):
    """Port describing the remote order-management service."""

    def create_order(self, header: OrderHeader, lines: List[dict]) -> CreateOrderResult: ...

    def get_order_by_unique_id(self, unique_id: str, correlation_id: str = "") -> RemoteOrder: ...

    def delete_order(self, pcdnum: str, correlation_id: str = "") -> GatewayResult: ...


class AuditPort(Protocol):
    def record(self, api_name: str, endpoint: str, request: Any, response: Any,
               error: Optional[str], duration_ms: float, correlation_id: str = "") -> None: ...


class MemoPort(Protocol):
    def write(self, order_id: int, memo_id: Optional[int], user: str,
              messages: List[str], result: dict) -> None: ...
