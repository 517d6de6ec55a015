"""HTTP views for the ODF app.

Views are kept intentionally small: they validate request parameters (via
Pydantic), obtain a configured pipeline or flow from ``providers``, run one
operation and return its ``PipelineResult`` envelope.

Status codes: 200 success (201 when something was created), 202 pending
(keep polling with ``retry.nextAttempt``), 400 bad parameters, 404 unknown
order, 409 lock conflict, 422 validation or business error, 503 upstream
failure, 504 polling exhausted, 500 unexpected error.
"""

from pydantic import ValidationError
from rest_framework import status
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from . import providers
from .domain import PipelineResult, PipelineStatus
from .schemas import (
    ManufacturingOrderIn,
    ManufacturingStatusQuery,
    OrderRef,
    PasscodesQuery,
    PollQuery,
    StepQuery,
)

STATUS_BY_KIND = {
    "validation": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "assembly": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "lock_conflict": status.HTTP_409_CONFLICT,
    "not_found": status.HTTP_404_NOT_FOUND,
    "upstream": status.HTTP_503_SERVICE_UNAVAILABLE,
    "retry_exhausted": status.HTTP_504_GATEWAY_TIMEOUT,
    "fatal": status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def _bad_request(e: ValidationError) -> Response:
    return Response(
        {"status": "error", "errorKind": "bad_request", "messages": [str(e)]},
        status=status.HTTP_400_BAD_REQUEST,
    )


def _respond(result: PipelineResult, success_status: int = status.HTTP_200_OK) -> Response:
    if result.status == PipelineStatus.PENDING:
        code = status.HTTP_202_ACCEPTED
    elif result.status == PipelineStatus.SUCCESS:
        code = success_status
    else:
        code = STATUS_BY_KIND.get(result.error_kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
    return Response(result.to_dict(), status=code)


class CheckStepView(APIView):
    """Advance the validation pipeline by one step."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "odf_check"

    def get(self, request):
        try:
            q = StepQuery.model_validate(request.query_params.dict())
        except ValidationError as e:
            return _bad_request(e)
        result = providers.get_pipeline().advance(q.step, q.pcdid, q.user)
        return _respond(result)


class ValidateOrderView(APIView):
    """Run the whole validation pipeline for an order."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "odf_check"

    def post(self, request):
        try:
            body = OrderRef.model_validate(request.data)
        except ValidationError as e:
            return _bad_request(e)
        return _respond(providers.get_pipeline().validate(body.pcdid, body.user))


class OrdersView(APIView):
    """Create the remote order for a validated ODF.

    Returns 201 when the remote order was created by this call, 200 when
    the order already had one (the existing unique id is returned) and 202
    while another caller is creating it.
    """

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "odf_orders"

    def post(self, request):
        try:
            body = OrderRef.model_validate(request.data)
        except ValidationError as e:
            return _bad_request(e)
        result = providers.get_flow().create_order(body.pcdid, body.user)
        created = result.ok and (result.details or {}).get("created")
        return _respond(result, status.HTTP_201_CREATED if created else status.HTTP_200_OK)


class OrderDetailView(APIView):
    """Poll the remote order once (``?attempt=N``)."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "odf_poll"

    def get(self, request, pcdid: int):
        try:
            q = PollQuery.model_validate(request.query_params.dict())
        except ValidationError as e:
            return _bad_request(e)
        return _respond(providers.get_flow().get_order(pcdid, q.attempt, q.user))


class PasscodesView(APIView):
    """Poll the activation passcodes of a remote order once."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "odf_poll"

    def get(self, request):
        try:
            q = PasscodesQuery.model_validate(request.query_params.dict())
        except ValidationError as e:
            return _bad_request(e)
        return _respond(providers.get_flow().process_passcodes(q.pcdid, q.order_number, q.attempt, q.user))


class ManufacturingOrdersView(APIView):
    """Assemble and queue the manufacturing order.

    Returns 201 when the ERP already processed it (the ODF is closed) and
    202 while it waits; follow up on ``manufacturing-orders/<taskId>``.
    """

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "odf_orders"

    def post(self, request):
        try:
            body = ManufacturingOrderIn.model_validate(request.data)
        except ValidationError as e:
            return _bad_request(e)
        result = providers.get_flow().create_manufacturing_order(body.pcdid, body.order_number, body.user)
        return _respond(result, status.HTTP_201_CREATED)


class ManufacturingStatusView(APIView):
    """Check a queued manufacturing order once (``?pcdid=&attempt=N``)."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "odf_poll"

    def get(self, request, task_id: int):
        try:
            q = ManufacturingStatusQuery.model_validate(request.query_params.dict())
        except ValidationError as e:
            return _bad_request(e)
        result = providers.get_flow().manufacturing_status(q.pcdid, task_id, q.attempt, q.user)
        return _respond(result, status.HTTP_201_CREATED)
