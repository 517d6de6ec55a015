"""Unit tests for the HTTP activation and order clients.

``httpx.Client.get`` / ``httpx.Client.post`` are monkeypatched; every test
builds its client with a fresh circuit breaker so no state leaks between
tests.
"""
import json
from datetime import date

import httpx
import pytest

from apps.odf.domain import NO_SUBSCRIPTION, Activation, GatewayError, OrderHeader, Outcome
from apps.odf.http_adapters import (
    PROC_CREATE_ORDER,
    PROC_GET_ORDER,
    CircuitBreaker,
    HttpActivationClient,
    HttpOrderClient,
    is_order_complete,
    latest_activation,
)

TODAY = date(2025, 3, 1)


class DummyResp:
    """Minimal httpx-like response stub."""

    def __init__(self, status_code=200, json_data=None):
        self.status_code = status_code
        self._json = json_data if json_data is not None else {}

    def json(self):
        return self._json


class RecordingAudit:
    def __init__(self):
        self.calls = []

    def record(self, api_name, endpoint, request, response, error, duration_ms, correlation_id=""):
        self.calls.append({"api_name": api_name, "endpoint": endpoint, "request": request,
                           "response": response, "error": error, "correlation_id": correlation_id})


class StubErp:
    def __init__(self, unique_id=None):
        self.unique_id = unique_id
        self.recorded = []

    def get_order(self, pcdid):
        return OrderHeader(pcdid=pcdid, pcdnum="PCD0001", unique_id=self.unique_id)

    def record_unique_id(self, pcdid, unique_id):
        self.recorded.append(unique_id)
        if self.unique_id is None:
            self.unique_id = unique_id
        return self.unique_id


def breaker():
    return CircuitBreaker("test", fail_threshold=5, reset_timeout=30.0)


def activation_client(audit=None):
    return HttpActivationClient(base_url="http://api.test", audit=audit or RecordingAudit(),
                                breaker=breaker(), today=lambda: TODAY)


def order_client(erp, audit=None):
    return HttpOrderClient(erp, base_url="http://api.test", audit=audit or RecordingAudit(), breaker=breaker())


def patch_get(monkeypatch, responder):
    seen = []

    def fake_get(self, url, params=None, headers=None, **kw):
        request = json.loads(params["request"])
        seen.append({"url": url, "request": request, "headers": headers})
        return responder(request)

    monkeypatch.setattr(httpx.Client, "get", fake_get, raising=True)
    return seen


def test_check_serial_number_known(monkeypatch):
    seen = patch_get(monkeypatch, lambda req: DummyResp(200, {
        "status": "Success", "orderLine": [{"manufacturerModel": "SPS986"}],
    }))
    audit = RecordingAudit()

    result = activation_client(audit).check_serial_number("SN-1001", correlation_id="ODF-PCD0001")

    assert result.ok
    assert result.data["manufacturerModel"] == "SPS986"
    assert seen[0]["request"]["ProcName"] == PROC_GET_ORDER
    assert seen[0]["request"]["request"] == {"serialNumber": "SN-1001"}
    assert seen[0]["headers"]["X-Correlation-ID"] == "ODF-PCD0001"
    assert audit.calls[0]["correlation_id"] == "ODF-PCD0001"
    assert audit.calls[0]["error"] is None


def test_check_serial_number_unknown_is_soft(monkeypatch):
    patch_get(monkeypatch, lambda req: DummyResp(200, {"status": "Error", "orderLine": []}))
    result = activation_client().check_serial_number("SN-X")
    assert result.outcome == Outcome.SOFT_ERROR
    assert "SN-X" in result.message


def test_check_serial_number_garbage_is_hard(monkeypatch):
    patch_get(monkeypatch, lambda req: DummyResp(200, ["unexpected"]))
    with pytest.raises(GatewayError):
        activation_client().check_serial_number("SN-X")


def test_activation_fault_yields_no_subscription(monkeypatch):
    patch_get(monkeypatch, lambda req: DummyResp(404, {"fault": {"description": "no activation"}}))
    result = activation_client().get_activation_by_serial("SN-1001")
    act = result.data["activation"]
    assert result.outcome == Outcome.SOFT_ERROR
    assert act.service_end_date == NO_SUBSCRIPTION
    assert act.service_start_date == TODAY.isoformat()
    assert act.date_end_subs == NO_SUBSCRIPTION


def test_activation_picks_latest_end_date(monkeypatch):
    patch_get(monkeypatch, lambda req: DummyResp(200, {"status": "Success", "activations": [
        {"serialNumber": "SN-1001", "serviceStartDate": "2023-01-01", "serviceEndDate": "2024-01-01"},
        {"serialNumber": "SN-1001", "serviceStartDate": "2024-01-01", "serviceEndDate": "2026-01-01"},
    ]}))
    result = activation_client().get_activation_by_serial("SN-1001")
    assert result.ok
    assert result.data["activation"].service_end_date == "2026-01-01"


def test_passcodes_not_ready_when_one_is_missing(monkeypatch):
    patch_get(monkeypatch, lambda req: DummyResp(200, {"activations": [
        {"serialNumber": "C-1", "passcode": "ABCD"},
        {"serialNumber": "C-2", "passcode": ""},
    ]}))
    assert activation_client().get_passcodes("SO123") == []


def test_passcodes_gateway_timeout_means_not_ready(monkeypatch, settings):
    settings.HTTP_RETRY_MAX = 1
    patch_get(monkeypatch, lambda req: DummyResp(504, {}))
    assert activation_client().get_passcodes("SO123") == []


def test_passcodes_client_error_is_raised(monkeypatch):
    patch_get(monkeypatch, lambda req: DummyResp(403, {"fault": {"description": "forbidden"}}))
    with pytest.raises(GatewayError) as ei:
        activation_client().get_passcodes("SO123")
    assert ei.value.status_code == 403
    assert ei.value.transient is False


def test_passcodes_fault_with_ok_status_means_not_ready(monkeypatch):
    patch_get(monkeypatch, lambda req: DummyResp(200, {"fault": {"description": "processing"}}))
    assert activation_client().get_passcodes("SO123") == []


def test_passcodes_ready(monkeypatch):
    patch_get(monkeypatch, lambda req: DummyResp(200, {"activations": [
        {"serialNumber": "C-1", "passcode": "l0ng-qr", "serviceEndDate": "2026-01-01"},
        {"serialNumber": "C-2", "passcode": "PLAIN"},
    ]}))
    acts = activation_client().get_passcodes("SO123")
    assert [a.serial_number for a in acts] == ["C-1", "C-2"]
    assert [a.qr_flag for a in acts] == ["O", "N"]


def test_create_order_posts_once_and_records_unique_id(monkeypatch, settings):
    settings.ODF_ORDER_DEFAULTS = {"orderType": "ODF"}
    posted = []

    def fake_post(self, url, json=None, headers=None, **kw):
        posted.append({"url": url, "json": json})
        return DummyResp(200, {"uniqueId": "U-1"})

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    erp = StubErp()
    res = order_client(erp).create_order(OrderHeader(pcdid=1, pcdnum="PCD0001"), [{"lineNumber": 1}])

    assert res.unique_id == "U-1" and res.created is True
    assert erp.recorded == ["U-1"]
    assert posted[0]["url"] == "http://api.test/api/orders"
    body = posted[0]["json"]
    assert body["ProcName"] == PROC_CREATE_ORDER
    assert body["request"]["customerPONumber"] == "PCD0001"
    assert body["request"]["orderType"] == "ODF"
    assert body["request"]["lines"] == [{"lineNumber": 1}]


def test_create_order_short_circuits_when_unique_id_exists(monkeypatch):
    def fake_post(self, url, json=None, headers=None, **kw):
        raise AssertionError("must not post")

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    res = order_client(StubErp(unique_id="U-OLD")).create_order(OrderHeader(pcdid=1, pcdnum="PCD0001"), [])
    assert res.unique_id == "U-OLD" and res.created is False


def test_create_order_without_unique_id_is_hard_error(monkeypatch):
    def fake_post(self, url, json=None, headers=None, **kw):
        return DummyResp(400, {"fault": {"description": "invalid serial"}})

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    erp = StubErp()
    with pytest.raises(GatewayError) as ei:
        order_client(erp).create_order(OrderHeader(pcdid=1, pcdnum="PCD0001"), [])
    assert "invalid serial" in ei.value.message
    assert erp.recorded == []


def test_get_order_incomplete_until_real_number(monkeypatch):
    replies = iter([
        DummyResp(200, {"status": "Success", "orderHdr": {"orderNumber": "NA"}}),
        DummyResp(200, {"status": "Success", "orderHdr": {"orderNumber": "SO42"},
                        "orderLine": [{"serialNumber": "SN-1001"}]}),
    ])
    seen = patch_get(monkeypatch, lambda req: next(replies))
    client = order_client(StubErp())

    first = client.get_order_by_unique_id("U-1")
    second = client.get_order_by_unique_id("U-1")

    assert not first.complete and first.order_number is None
    assert second.complete and second.order_number == "SO42"
    assert second.lines == [{"serialNumber": "SN-1001"}]
    assert seen[0]["request"]["request"] == {"uniqueID": "U-1"}


def test_is_order_complete_rules():
    assert not is_order_complete({})
    assert not is_order_complete({"status": "Pending", "orderHdr": {"orderNumber": "SO1"}})
    assert is_order_complete({"status": "Success", "orderHdr": {"orderNumber": "SO1"}})


def test_latest_activation_without_dates_is_sentinel():
    act = latest_activation([{"serialNumber": "SN-1"}], "SN-1", TODAY)
    assert act == Activation.no_subscription("SN-1", TODAY)


@pytest.mark.parametrize("passcode,flag", [
    ("", "N"), ("DeviceNotFound", "N"), ("lQRcode", "O"), ("[1,2]", "O"), ("abc=", "O"), ("ABC123", "N"),
])
def test_qr_classification(passcode, flag):
    assert Activation("S", passcode=passcode).qr_flag == flag
