"""Health endpoint: local database and ERP connectivity."""

import logging

from django.db import connection
from django.http import JsonResponse

from apps.odf.erp import ping as erp_ping

logger = logging.getLogger("odf.monitoring")


def health_view(_request):
    db_ok = False
    try:
        with connection.cursor() as cur:
            cur.execute("SELECT 1;")
        db_ok = True
    except Exception:
        logger.warning("health_db_failed", exc_info=True)

    erp_ok = erp_ping()
    ok = db_ok and erp_ok
    return JsonResponse(
        {"ok": ok, "components": {"db": {"ok": db_ok}, "erp": {"ok": erp_ok}}},
        status=200 if ok else 503,
    )
