"""HTTP gateway clients for the remote activation and order services.

This module implements the ``ActivationPort`` and ``OrderServicePort`` using
``httpx``. It adds:

- Request correlation: propagates ``X-Request-ID`` from the ContextVar set
    by the gateway middleware, plus the owning order's ``X-Correlation-ID``.
- A circuit breaker per remote service, with HALF_OPEN probing after a
    timeout.
- Retries with exponential backoff for lookups (GET) on transport errors
    and 5xx. Order creation is never retried here.
- OAuth2 client-credentials tokens, cached and refreshed once on 401.
- An audit record (request, response, error, duration) for every call.

Responses are classified as success, soft error (a valid business outcome
such as "no subscription") or hard error (``GatewayError``).
"""

import json
import logging
import re
import threading
import time
from datetime import date
from typing import Any, List, Optional

import httpx
from django.conf import settings
from django.utils.module_loading import import_string

from .audit import LoggingAuditSink
from .domain import (
    Activation,
    ActivationPort,
    AuditPort,
    CreateOrderResult,
    ErpPort,
    GatewayError,
    GatewayResult,
    OrderHeader,
    OrderServicePort,
    Outcome,
    RemoteOrder,
)

REQUEST_ID_CTX = import_string("gateway.middleware.REQUEST_ID_CTX")

logger = logging.getLogger("odf.gateway")

PROC_GET_ORDER = "TAP_GET_ORDER_API"
PROC_ACTIVATION_STATUS = "TAP_GET_ACTIVATION_STATUS_API"
PROC_CREATE_ORDER = "TAP_CREATE_ORDER_API"
PROC_DELETE_ORDER = "TAP_DELETE_ORDER_API"

MISSING_PASSCODE_RE = re.compile(r"^the activation", re.IGNORECASE)


# ---------------- Circuit Breaker ---------------- #

class CircuitBreaker:
    """Minimal circuit breaker with CLOSED/OPEN/HALF_OPEN states.

    Transitions:
    - CLOSED → OPEN when failures reach ``fail_threshold``.
    - OPEN → HALF_OPEN after ``reset_timeout`` seconds.
    - HALF_OPEN → CLOSED on a successful trial call; stays HALF_OPEN while a
      single trial call is in flight; transitions back to OPEN on failure.

    This implementation is thread-safe via an internal lock.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._lock = threading.RLock()
        self._failures = 0
        self._state = "CLOSED"  # CLOSED | OPEN | HALF_OPEN
        self._opened_at = 0.0
        self._half_open_trial_in_flight = False

    @property
    def state(self) -> str:
        """Current breaker state with time-based transition handling."""
        with self._lock:
            if self._state == "OPEN" and (time.monotonic() - self._opened_at) >= self.reset_timeout:
                self._state = "HALF_OPEN"
                self._half_open_trial_in_flight = False
            return self._state

    def before_call(self) -> str:
        """Check and update state before a protected call.

        Returns:
            str: The state at call time.

        Raises:
            RuntimeError: If the circuit is OPEN or a HALF_OPEN trial call is busy.
        """
        with self._lock:
            st = self.state
            if st == "OPEN":
                raise RuntimeError("CIRCUIT_OPEN")
            if st == "HALF_OPEN":
                if self._half_open_trial_in_flight:
                    raise RuntimeError("CIRCUIT_HALF_OPEN_BUSY")
                self._half_open_trial_in_flight = True
            return st

    def on_success(self):
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._half_open_trial_in_flight = False

    def on_failure(self):
        with self._lock:
            self._failures += 1
            if self._state == "HALF_OPEN" or (self._failures >= self.fail_threshold and self._state != "OPEN"):
                self._state = "OPEN"
                self._opened_at = time.monotonic()
                self._half_open_trial_in_flight = False

    def on_finish(self):
        with self._lock:
            if self._state == "HALF_OPEN":
                self._half_open_trial_in_flight = False


_activation_cb = CircuitBreaker(
    "activation",
    getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
    getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
)
_orders_cb = CircuitBreaker(
    "orders",
    getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
    getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
)


# ---------------- Helpers ---------------- #

def _request_headers(extra: Optional[dict] = None) -> dict:
    """Build base headers including X-Request-ID and any extras."""
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update({k: v for k, v in extra.items() if v})
    return headers


def _retry_policy():
    """Return retry configuration as (max_retries, backoff_base_seconds)."""
    return (
        max(1, getattr(settings, "HTTP_RETRY_MAX", 3)),
        getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15),
    )


def _should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
    """Retry only on transport exceptions or HTTP 5xx."""
    if exc is not None:
        return True
    if resp is not None and 500 <= resp.status_code < 600:
        return True
    return False


def _body(resp) -> Any:
    if resp is None:
        return None
    try:
        return resp.json()
    except ValueError:
        return getattr(resp, "text", None)


def is_order_complete(data: dict) -> bool:
    """A remote order is complete once it reports Success and a real number."""
    number = ((data or {}).get("orderHdr") or {}).get("orderNumber")
    return (data or {}).get("status") == "Success" and bool(number) and number != "NA"


def passcodes_missing(rows: List[dict]) -> bool:
    for row in rows:
        code = (row.get("passcode") or "").strip()
        if not code or MISSING_PASSCODE_RE.match(code):
            return True
    return False


def activation_from_row(row: dict) -> Activation:
    return Activation(
        serial_number=str(row.get("serialNumber") or ""),
        part_description=row.get("partDescription") or "",
        service_start_date=row.get("serviceStartDate") or "",
        service_end_date=row.get("serviceEndDate") or row.get("expirationDate") or "",
        passcode=row.get("passcode") or "",
        article_code=row.get("partNumber") or "",
    )


def latest_activation(rows: List[dict], serial: str, today: date) -> Activation:
    """Pick the activation with the latest service end date for ``serial``.

    Falls back to the "no subscription" record when nothing matches.
    """
    matching = [r for r in rows if not r.get("serialNumber") or str(r.get("serialNumber")) == serial]
    dated = [r for r in matching if r.get("serviceEndDate")]
    if not dated:
        return Activation.no_subscription(serial, today)
    best = max(dated, key=lambda r: str(r["serviceEndDate"])[:10])
    act = activation_from_row(best)
    act.serial_number = serial
    return act


class TokenProvider:
    """OAuth2 client-credentials token cache shared by the API clients."""

    def __init__(self):
        self._lock = threading.Lock()
        self._token: Optional[str] = None
        self._expires_at = 0.0

    def invalidate(self):
        with self._lock:
            self._token = None
            self._expires_at = 0.0

    def get(self, client: httpx.Client) -> Optional[str]:
        """Return a bearer token, or None when no credentials are configured.

        Raises:
            GatewayError: When the token endpoint fails or answers garbage.
        """
        client_id = getattr(settings, "ODF_API_CLIENT_ID", "")
        if not client_id:
            return None
        with self._lock:
            if self._token and time.monotonic() < self._expires_at:
                return self._token
            try:
                resp = client.post(
                    settings.ODF_API_TOKEN_URL,
                    data={
                        "grant_type": "client_credentials",
                        "client_id": client_id,
                        "client_secret": getattr(settings, "ODF_API_CLIENT_SECRET", ""),
                        "scope": getattr(settings, "ODF_API_SCOPE", "tapstoreapis"),
                    },
                )
                resp.raise_for_status()
                data = resp.json()
                token = data["access_token"]
            except (httpx.HTTPError, ValueError, KeyError) as e:
                raise GatewayError(f"Impossible d'obtenir un jeton d'accès: {e}", api_name="oauth") from e
            # renew a little before the advertised expiry
            self._token = token
            self._expires_at = time.monotonic() + max(0, int(data.get("expires_in", 3600)) - 30)
            return token


_tokens = TokenProvider()


# ---------------- Base client ---------------- #

class _ApiClient:
    """Shared transport for the remote API: auth, retries, breaker, audit."""

    api_name = "api"

    def __init__(self, base_url: str | None = None, timeout: float | None = None,
                 audit: Optional[AuditPort] = None, breaker: Optional[CircuitBreaker] = None,
                 tokens: Optional[TokenProvider] = None):
        self.base_url = (base_url or settings.ODF_API_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS
        self.audit = audit or LoggingAuditSink()
        self.breaker = breaker or _activation_cb
        self.tokens = tokens or _tokens

    def _proc(self, proc_name: str, request: dict) -> dict:
        return {
            "ProcName": proc_name,
            "ProcRequester": getattr(settings, "ODF_API_REQUESTER", "TAP"),
            "request": request,
        }

    def _auth(self, client: httpx.Client) -> dict:
        token = self.tokens.get(client)
        return {"Authorization": f"Bearer {token}"} if token else {}

    def _send(self, client: httpx.Client, method: str, url: str, payload: dict, headers: dict):
        headers.update(self._auth(client))
        if method == "GET":
            resp = client.get(url, params={"request": json.dumps(payload)}, headers=headers)
        else:
            resp = client.post(url, json=payload, headers=headers)
        if resp.status_code == 401 and "Authorization" in headers:
            logger.info("token_refresh", extra={"api_name": self.api_name})
            self.tokens.invalidate()
            headers.update(self._auth(client))
            if method == "GET":
                resp = client.get(url, params={"request": json.dumps(payload)}, headers=headers)
            else:
                resp = client.post(url, json=payload, headers=headers)
        return resp

    def _call(self, method: str, url: str, payload: dict, correlation_id: str = "", retry: bool = True):
        """Perform one protected API call and return ``(status_code, body)``.

        Lookups (``retry=True``) are retried on transport errors and 5xx with
        exponential backoff; creation calls are attempted exactly once.

        Raises:
            GatewayError: Circuit open, transport failure or 5xx after retries.
        """
        proc = payload.get("ProcName", method)
        max_retries, backoff = _retry_policy() if retry else (1, 0.0)
        tries = 0

        # CIRCUIT: precheck
        try:
            state = self.breaker.before_call()
        except RuntimeError as e:
            logger.warning("circuit_rejected", extra={"api_name": self.api_name, "state": str(e), "proc": proc})
            self.audit.record(self.api_name, proc, payload, None, str(e), 0.0, correlation_id)
            raise GatewayError(f"Service {self.api_name} indisponible ({e})", api_name=self.api_name) from e

        headers = _request_headers({
            "X-Correlation-ID": correlation_id,
            "X-Circuit-State": state,
            "X-Retry-Count": "0",
        })

        try:
            with httpx.Client(timeout=self.timeout) as client:
                while True:
                    resp = None
                    exc = None
                    started = time.monotonic()
                    try:
                        resp = self._send(client, method, url, payload, headers)
                    except httpx.RequestError as e:
                        exc = e
                    duration_ms = (time.monotonic() - started) * 1000
                    body = _body(resp)
                    error = str(exc) if exc else (f"HTTP {resp.status_code}" if resp.status_code >= 400 else None)
                    self.audit.record(self.api_name, proc, payload, body, error, duration_ms, correlation_id)

                    if not _should_retry(resp, exc):
                        self.breaker.on_success()
                        return resp.status_code, body

                    tries += 1
                    headers["X-Retry-Count"] = str(tries)

                    if tries >= max_retries:
                        self.breaker.on_failure()
                        logger.error(
                            "api_call_failed",
                            extra={"api_name": self.api_name, "proc": proc, "tries": tries, "error": error},
                        )
                        if exc:
                            raise GatewayError(
                                f"Service {self.api_name} injoignable: {exc}", api_name=self.api_name
                            ) from exc
                        raise GatewayError(
                            f"Service {self.api_name} en erreur (HTTP {resp.status_code})",
                            payload=body,
                            api_name=self.api_name,
                            status_code=resp.status_code,
                        )

                    logger.info("api_call_retry", extra={"api_name": self.api_name, "proc": proc, "tries": tries})
                    sleep_s = backoff * (2 ** (tries - 1))  # exponential backoff
                    cap = getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5)
                    time.sleep(min(sleep_s, cap))
        finally:
            self.breaker.on_finish()


# ---------------- Activation Adapter ---------------- #

class HttpActivationClient(_ApiClient, ActivationPort):
    """Activation service client: serial checks, activations, passcodes."""

    api_name = "activation"

    def __init__(self, *args, today=date.today, **kwargs):
        kwargs.setdefault("breaker", _activation_cb)
        super().__init__(*args, **kwargs)
        self.today = today

    def check_serial_number(self, serial: str, correlation_id: str = "") -> GatewayResult:
        """Look the serial up in the remote order history.

        Returns:
            GatewayResult: success with ``manufacturerModel`` when the serial
            is known; soft error when the service does not know it.

        Raises:
            GatewayError: On connectivity failures.
        """
        payload = self._proc(PROC_GET_ORDER, {"serialNumber": serial})
        status, body = self._call("GET", self.base_url, payload, correlation_id)
        data = body if isinstance(body, dict) else {}
        lines = data.get("orderLine") or []
        if status == 200 and data.get("status") == "Success" and isinstance(lines, list) and lines:
            return GatewayResult(
                Outcome.SUCCESS,
                {"serialNumber": serial, "manufacturerModel": lines[0].get("manufacturerModel") or "", "raw": data},
            )
        if not isinstance(body, dict):
            raise GatewayError(
                f"Réponse invalide du service d'activation (HTTP {status})",
                payload=body, api_name=self.api_name, status_code=status,
            )
        return GatewayResult(
            Outcome.SOFT_ERROR,
            {"serialNumber": serial, "raw": data},
            f"Numéro de série {serial} non trouvé",
        )

    def get_activation_by_serial(self, serial: str, correlation_id: str = "") -> GatewayResult:
        """Return the current activation of a device.

        A fault or an error status is the documented "no subscription" case:
        the result is a soft error carrying the sentinel activation.
        """
        payload = self._proc(PROC_ACTIVATION_STATUS, {"serialNumber": serial})
        status, body = self._call("GET", self.base_url, payload, correlation_id)
        data = body if isinstance(body, dict) else {}
        rows = data.get("activations")
        if status == 200 and data.get("status") == "Success" and isinstance(rows, list):
            act = latest_activation(rows, serial, self.today())
            outcome = Outcome.SUCCESS if act.has_subscription else Outcome.SOFT_ERROR
            return GatewayResult(outcome, {"activation": act, "raw": data})
        if not isinstance(body, (dict, list)):
            raise GatewayError(
                "Réponse illisible du service d'activation", payload=body, api_name=self.api_name, status_code=status
            )
        return GatewayResult(
            Outcome.SOFT_ERROR,
            {"activation": Activation.no_subscription(serial, self.today()), "raw": data},
            "Pas d'abonnement en cours",
        )

    def get_passcodes(self, order_number: str, correlation_id: str = "") -> List[Activation]:
        """Return the order's activations once every passcode is available.

        An empty list means "not ready yet": fault, gateway timeout,
        unexpected format, or at least one missing passcode.

        Raises:
            GatewayError: On any other HTTP error status.
        """
        payload = self._proc(PROC_ACTIVATION_STATUS, {"orderNumber": order_number})
        try:
            status, body = self._call("GET", self.base_url, payload, correlation_id)
        except GatewayError as e:
            if e.status_code == 504:
                return []
            raise
        if status >= 400:
            raise GatewayError(
                f"Passcodes indisponibles (HTTP {status})", payload=body, api_name=self.api_name, status_code=status
            )
        data = body if isinstance(body, dict) else {}
        if data.get("fault"):
            return []
        rows = data.get("activations")
        if not isinstance(rows, list) or not rows or passcodes_missing(rows):
            return []
        return [activation_from_row(r) for r in rows if r.get("serialNumber")]


# ---------------- Order Adapter ---------------- #

class HttpOrderClient(_ApiClient, OrderServicePort):
    """Remote order-management client.

    ``create_order`` is idempotent per ERP order: it reads the stored unique
    id first and returns it as "already exists" instead of posting again.
    """

    api_name = "orders"

    def __init__(self, erp: ErpPort, *args, **kwargs):
        kwargs.setdefault("breaker", _orders_cb)
        super().__init__(*args, **kwargs)
        self.erp = erp

    def create_order(self, header: OrderHeader, lines: List[dict]) -> CreateOrderResult:
        """Create the remote order for ``header`` unless one already exists.

        Args:
            header: The ERP order; ``pcdnum`` is sent as customer PO number.
            lines: Remote order lines, one per coupon unit.

        Returns:
            CreateOrderResult: ``created`` is False when a handle was already
            recorded for the order.

        Raises:
            GatewayError: Transport failure, or a response without uniqueId.
        """
        current = self.erp.get_order(header.pcdid)
        if current is not None and current.unique_id:
            return CreateOrderResult(unique_id=current.unique_id, created=False)

        request = {"customerPONumber": header.pcdnum, **getattr(settings, "ODF_ORDER_DEFAULTS", {}), "lines": lines}
        payload = self._proc(PROC_CREATE_ORDER, request)
        status, body = self._call(
            "POST", f"{self.base_url}/api/orders", payload, header.correlation_id, retry=False
        )
        data = body if isinstance(body, dict) else {}
        unique_id = data.get("uniqueId")
        if not unique_id:
            message = (data.get("fault") or {}).get("description") or data.get("errorMessage") or f"HTTP {status}"
            raise GatewayError(
                f"Création de commande refusée: {message}", payload=body, api_name=self.api_name, status_code=status
            )
        stored = self.erp.record_unique_id(header.pcdid, str(unique_id))
        return CreateOrderResult(unique_id=stored, created=stored == str(unique_id))

    def get_order_by_unique_id(self, unique_id: str, correlation_id: str = "") -> RemoteOrder:
        payload = self._proc(PROC_GET_ORDER, {"uniqueID": unique_id})
        status, body = self._call("GET", self.base_url, payload, correlation_id)
        if not isinstance(body, dict):
            raise GatewayError(
                "Réponse illisible du service de commande", payload=body, api_name=self.api_name, status_code=status
            )
        complete = is_order_complete(body)
        number = (body.get("orderHdr") or {}).get("orderNumber") if complete else None
        lines = body.get("orderLine") or []
        return RemoteOrder(complete=complete, order_number=number, lines=lines if isinstance(lines, list) else [], raw=body)

    def delete_order(self, pcdnum: str, correlation_id: str = "") -> GatewayResult:
        payload = self._proc(PROC_DELETE_ORDER, {"customerPONumber": pcdnum})
        status, body = self._call("POST", f"{self.base_url}/api/orders/cancel", payload, correlation_id, retry=False)
        data = body if isinstance(body, dict) else {}
        if status < 400 and not data.get("fault"):
            return GatewayResult(Outcome.SUCCESS, data)
        return GatewayResult(Outcome.SOFT_ERROR, data, (data.get("fault") or {}).get("description") or f"HTTP {status}")
