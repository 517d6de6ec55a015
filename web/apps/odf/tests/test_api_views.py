"""API tests for the ODF endpoints.

Most tests patch ``apps.odf.providers`` so each view gets a pipeline or flow
returning a fixed envelope; the last ones run the real wiring against the
in-memory ERP.
"""
import pytest

from apps.odf import providers
from apps.odf.domain import PipelineResult, PipelineStatus, RetryPolicy, Step
from apps.odf.erp import ErpRepository

pytestmark = pytest.mark.django_db


class FixedPipeline:
    def __init__(self, result):
        self.result = result
        self.calls = []

    def advance(self, step, pcdid, user=""):
        self.calls.append(("advance", step, pcdid, user))
        return self.result

    def validate(self, pcdid, user=""):
        self.calls.append(("validate", pcdid, user))
        return self.result


class FixedFlow:
    def __init__(self, result):
        self.result = result
        self.calls = []

    def create_order(self, pcdid, user=""):
        self.calls.append(("create_order", pcdid))
        return self.result

    def get_order(self, pcdid, attempt=1, user=""):
        self.calls.append(("get_order", pcdid, attempt))
        return self.result

    def process_passcodes(self, pcdid, order_number, attempt=1, user=""):
        self.calls.append(("process_passcodes", pcdid, order_number, attempt))
        return self.result

    def create_manufacturing_order(self, pcdid, order_number, user=""):
        self.calls.append(("create_manufacturing_order", pcdid, order_number))
        return self.result

    def manufacturing_status(self, pcdid, task_id, attempt=1, user=""):
        self.calls.append(("manufacturing_status", pcdid, task_id, attempt))
        return self.result


def error(kind):
    return PipelineResult(status=PipelineStatus.ERROR, messages=["x"], error_kind=kind)


@pytest.fixture
def use_pipeline(monkeypatch):
    def _use(result):
        pipeline = FixedPipeline(result)
        monkeypatch.setattr(providers, "get_pipeline", lambda: pipeline, raising=True)
        return pipeline
    return _use


@pytest.fixture
def use_flow(monkeypatch):
    def _use(result):
        flow = FixedFlow(result)
        monkeypatch.setattr(providers, "get_flow", lambda: flow, raising=True)
        return flow
    return _use


def test_check_step_success(client, use_pipeline):
    pipeline = use_pipeline(PipelineResult(status=PipelineStatus.SUCCESS, progress=40, step="ArticleCheck"))
    r = client.get("/api/odf/check", {"step": "ArticleCheck", "pcdid": 7, "user": "jdoe"})
    assert r.status_code == 200
    assert r.json()["progress"] == 40
    assert pipeline.calls == [("advance", Step.ARTICLE_CHECK, 7, "jdoe")]


@pytest.mark.parametrize("params", [
    {"step": "Nope", "pcdid": 7},
    {"step": "ArticleCheck", "pcdid": 0},
    {"step": "ArticleCheck"},
])
def test_check_step_bad_params(client, use_pipeline, params):
    use_pipeline(PipelineResult(status=PipelineStatus.SUCCESS))
    r = client.get("/api/odf/check", params)
    assert r.status_code == 400
    assert r.json()["errorKind"] == "bad_request"


@pytest.mark.parametrize("kind,code", [
    ("validation", 422), ("lock_conflict", 409), ("not_found", 404),
    ("upstream", 503), ("retry_exhausted", 504), ("fatal", 500), ("assembly", 422),
])
def test_error_kinds_map_to_status(client, use_pipeline, kind, code):
    use_pipeline(error(kind))
    r = client.post("/api/odf/validate", {"pcdid": 1}, content_type="application/json")
    assert r.status_code == code
    assert r.json()["errorKind"] == kind


def test_create_order_201_then_200(client, use_flow):
    use_flow(PipelineResult(status=PipelineStatus.SUCCESS, details={"created": True}, unique_id="U-1"))
    r = client.post("/api/odf/orders", {"pcdid": 1}, content_type="application/json")
    assert r.status_code == 201
    assert r.json()["uniqueId"] == "U-1"

    use_flow(PipelineResult(status=PipelineStatus.SUCCESS, details={"created": False}, unique_id="U-1"))
    r = client.post("/api/odf/orders", {"pcdid": 1}, content_type="application/json")
    assert r.status_code == 200


def test_poll_pending_is_202_with_retry(client, use_flow):
    flow = use_flow(PipelineResult(status=PipelineStatus.PENDING, retry=RetryPolicy(3, 80, 3.0)))
    r = client.get("/api/odf/orders/1", {"attempt": 3})
    assert r.status_code == 202
    assert r.json()["retry"] == {"retryCount": 3, "maxRetries": 80, "nextAttempt": 4, "backoffSeconds": 3.0}
    assert flow.calls == [("get_order", 1, 3)]


def test_passcodes_rejects_placeholder_order_number(client, use_flow):
    use_flow(PipelineResult(status=PipelineStatus.SUCCESS))
    assert client.get("/api/odf/passcodes", {"pcdid": 1, "order_number": "NA"}).status_code == 400
    assert client.get("/api/odf/passcodes", {"pcdid": 1, "order_number": "SO1", "attempt": 0}).status_code == 400


def test_manufacturing_order_created(client, use_flow):
    flow = use_flow(PipelineResult(status=PipelineStatus.SUCCESS, details={"taskId": 3}))
    r = client.post("/api/odf/manufacturing-orders", {"pcdid": 1, "order_number": "SO1"},
                    content_type="application/json")
    assert r.status_code == 201
    assert flow.calls == [("create_manufacturing_order", 1, "SO1")]


def test_manufacturing_order_queued_is_202_then_polled(client, use_flow):
    use_flow(PipelineResult(status=PipelineStatus.PENDING, details={"taskId": 3}, retry=RetryPolicy(1, 10, 1.0)))
    r = client.post("/api/odf/manufacturing-orders", {"pcdid": 1, "order_number": "SO1"},
                    content_type="application/json")
    assert r.status_code == 202
    assert r.json()["retry"]["nextAttempt"] == 2

    flow = use_flow(PipelineResult(status=PipelineStatus.SUCCESS, details={"taskId": 3}))
    r = client.get("/api/odf/manufacturing-orders/3", {"pcdid": 1, "attempt": 2})
    assert r.status_code == 201
    assert flow.calls == [("manufacturing_status", 1, 3, 2)]

    assert client.get("/api/odf/manufacturing-orders/3", {"attempt": 2}).status_code == 400


def test_create_order_in_progress_is_202(client, use_flow):
    use_flow(PipelineResult(status=PipelineStatus.PENDING, details={"created": False, "inProgress": True}))
    r = client.post("/api/odf/orders", {"pcdid": 1}, content_type="application/json")
    assert r.status_code == 202
    assert r.json()["details"]["inProgress"] is True


def test_request_id_is_echoed(client, use_pipeline):
    use_pipeline(PipelineResult(status=PipelineStatus.SUCCESS))
    r = client.get("/api/odf/check", {"step": "Initialisation", "pcdid": 1}, HTTP_X_REQUEST_ID="abc-123")
    assert r["X-Request-ID"] == "abc-123"

    r = client.get("/api/odf/check", {"step": "Initialisation", "pcdid": 1}, HTTP_X_REQUEST_ID="bad id!")
    assert r["X-Request-ID"] != "bad id!"


def test_oversized_body_is_rejected(client):
    r = client.post("/api/odf/validate", "x" * (300 * 1024), content_type="application/json")
    assert r.status_code == 413


def test_validate_end_to_end_with_stubs(client, monkeypatch, erp_engine, coupon_order):
    monkeypatch.setattr(providers, "ErpRepository", lambda: ErpRepository(erp_engine), raising=True)

    r = client.post("/api/odf/validate", {"pcdid": 1, "user": "jdoe"}, content_type="application/json")
    assert r.status_code == 200, r.json()
    assert r.json()["step"] == "CouponCheck"

    r = client.post("/api/odf/orders", {"pcdid": 1}, content_type="application/json")
    assert r.status_code == 201
    unique_id = r.json()["uniqueId"]

    r = client.post("/api/odf/orders", {"pcdid": 1}, content_type="application/json")
    assert r.status_code == 200
    assert r.json()["uniqueId"] == unique_id


def test_unknown_order_is_404(client, monkeypatch, erp_engine):
    monkeypatch.setattr(providers, "ErpRepository", lambda: ErpRepository(erp_engine), raising=True)
    r = client.get("/api/odf/check", {"step": "Initialisation", "pcdid": 999})
    assert r.status_code == 404
    assert r.json()["errorKind"] == "not_found"


def test_health(client):
    r = client.get("/api/monitoring/health/")
    assert r.status_code == 200
    assert r.json()["components"]["erp"]["ok"] is True
