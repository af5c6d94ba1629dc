import logging

import httpx
from django.conf import settings
from django.db import DatabaseError, connection
from django.http import JsonResponse

logger = logging.getLogger("checkout")


def _db_ok() -> bool:
    try:
        with connection.cursor() as cur:
            cur.execute("SELECT 1;")
        return True
    except DatabaseError:
        logger.exception("health: database check failed")
        return False


def _inventory_ok() -> bool:
    try:
        resp = httpx.get(f"{settings.INVENTORY_BASE_URL.rstrip('/')}/health", timeout=settings.HTTP_TIMEOUT_SECS)
        return resp.status_code == 200
    except httpx.HTTPError:
        logger.warning("health: inventory service unreachable")
        return False


def health_view(_request):
    """DB health, plus the inventory service when HTTP adapters are on."""
    components = {"db": {"ok": _db_ok()}}
    if settings.USE_HTTP_ADAPTERS:
        components["inventory"] = {"ok": _inventory_ok()}

    ok = all(c["ok"] for c in components.values())
    return JsonResponse({"ok": ok, "components": components}, status=200 if ok else 503)
