"""In-process stub adapters for the remote activation and order services.

These stubs implement ``ActivationPort`` and ``OrderServicePort`` without any
network calls. They are intended for unit tests and local development where
deterministic behavior is useful and the remote API is not reachable.
"""

import time
import uuid
from datetime import date
from typing import Dict, List, Optional

from .domain import (
    Activation,
    ActivationPort,
    CreateOrderResult,
    ErpPort,
    GatewayResult,
    OrderHeader,
    OrderServicePort,
    Outcome,
    RemoteOrder,
)


class ActivationStub(ActivationPort):
    """Stub implementation of ``ActivationPort``.

    Every non-empty serial is known (model ``DEFAULT_MODEL``) unless listed
    in ``unknown``. Activations and passcodes are whatever the caller put in
    ``activations`` / ``passcodes``; anything else is the "no subscription"
    case.
    """

    DEFAULT_MODEL = "SPS986"

    def __init__(self, models: Optional[Dict[str, str]] = None, unknown=(),
                 activations: Optional[Dict[str, Activation]] = None,
                 passcodes: Optional[Dict[str, List[Activation]]] = None,
                 today=date.today):
        self.models = dict(models or {})
        self.unknown = set(unknown)
        self.activations = dict(activations or {})
        self.passcodes = dict(passcodes or {})
        self.today = today
        self.check_calls: List[str] = []

    def check_serial_number(self, serial: str, correlation_id: str = "") -> GatewayResult:
        self.check_calls.append(serial)
        if not serial or serial in self.unknown:
            return GatewayResult(Outcome.SOFT_ERROR, {"serialNumber": serial}, f"Numéro de série {serial} non trouvé")
        model = self.models.get(serial, self.DEFAULT_MODEL)
        return GatewayResult(Outcome.SUCCESS, {"serialNumber": serial, "manufacturerModel": model})

    def get_activation_by_serial(self, serial: str, correlation_id: str = "") -> GatewayResult:
        act = self.activations.get(serial)
        if act is None:
            return GatewayResult(
                Outcome.SOFT_ERROR,
                {"activation": Activation.no_subscription(serial, self.today())},
                "Pas d'abonnement en cours",
            )
        return GatewayResult(Outcome.SUCCESS, {"activation": act})

    def get_passcodes(self, order_number: str, correlation_id: str = "") -> List[Activation]:
        return list(self.passcodes.get(order_number, []))


class OrderServiceStub(OrderServicePort):
    """Stub implementation of ``OrderServicePort``.

    Orders complete after ``complete_after`` incomplete polls. ``create_order``
    keeps the same "already exists" guard as the HTTP client, based on the
    unique id stored in the ERP. ``latency`` delays each creation after that
    guard, like a slow remote call.
    """

    def __init__(self, erp: ErpPort, complete_after: int = 0, latency: float = 0.0):
        self.erp = erp
        self.complete_after = complete_after
        self.latency = latency
        self.orders: Dict[str, dict] = {}
        self.create_calls = 0
        self.deleted: List[str] = []

    def create_order(self, header: OrderHeader, lines: List[dict]) -> CreateOrderResult:
        current = self.erp.get_order(header.pcdid)
        if current is not None and current.unique_id:
            return CreateOrderResult(unique_id=current.unique_id, created=False)
        if self.latency:
            time.sleep(self.latency)
        self.create_calls += 1
        unique_id = str(uuid.uuid4())
        self.orders[unique_id] = {"pcdnum": header.pcdnum, "lines": list(lines), "polls": 0}
        stored = self.erp.record_unique_id(header.pcdid, unique_id)
        return CreateOrderResult(unique_id=stored, created=stored == unique_id)

    def get_order_by_unique_id(self, unique_id: str, correlation_id: str = "") -> RemoteOrder:
        order = self.orders.setdefault(unique_id, {"pcdnum": "", "lines": [], "polls": 0})
        order["polls"] += 1
        if order["polls"] <= self.complete_after:
            return RemoteOrder(complete=False, order_number=None, lines=[])
        number = f"SO{unique_id[:8].upper()}"
        return RemoteOrder(complete=True, order_number=number, lines=order["lines"])

    def delete_order(self, pcdnum: str, correlation_id: str = "") -> GatewayResult:
        self.deleted.append(pcdnum)
        return GatewayResult(Outcome.SUCCESS, {"customerPONumber": pcdnum})
