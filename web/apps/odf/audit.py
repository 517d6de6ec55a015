"""Structured-log implementations of the audit and memo collaborators.

Both sinks only emit JSON log records (through the ``odf.audit`` and
``odf.memo`` loggers); persisting or rendering them is left to whatever
consumes the logs.
"""

import logging
from typing import Any, List, Optional

audit_logger = logging.getLogger("odf.audit")
memo_logger = logging.getLogger("odf.memo")

MAX_PAYLOAD_CHARS = 20000


def _clip(payload: Any) -> Any:
    if isinstance(payload, (bytes, str)) and len(payload) > MAX_PAYLOAD_CHARS:
        return payload[:MAX_PAYLOAD_CHARS] + "...[truncated]"
    return payload


class LoggingAuditSink:
    """Audit every external API call as one log record."""

    def record(self, api_name: str, endpoint: str, request: Any, response: Any,
               error: Optional[str], duration_ms: float, correlation_id: str = "") -> None:
        level = logging.WARNING if error else logging.INFO
        audit_logger.log(
            level,
            "api_call",
            extra={
                "api_name": api_name,
                "endpoint": endpoint,
                "api_request": _clip(request),
                "api_response": _clip(response),
                "api_error": error,
                "duration_ms": round(duration_ms, 2),
                "correlation_id": correlation_id,
            },
        )


class LoggingMemoSink:
    """Record human-readable pipeline progress for an order."""

    def write(self, order_id: int, memo_id: Optional[int], user: str,
              messages: List[str], result: dict) -> None:
        memo_logger.info(
            "order_memo",
            extra={
                "order_id": order_id,
                "memo_id": memo_id,
                "user": user,
                "memo_messages": list(messages),
                "result": result,
            },
        )
