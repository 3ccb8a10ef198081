"""
Audit Logging Middleware

One structured "audit" log record per API request: method, path, status,
latency, client IP and the authenticated user when known.
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("audit")

# Health checks are not audited
SKIP_PATHS = {"/health", "/favicon.ico"}

# Query parameters never written to the log
REDACTED_PARAMS = {"code", "state", "token"}


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class AuditLogMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        path = request.url.path
        if path in SKIP_PATHS:
            return await call_next(request)

        start = time.monotonic()
        response: Response | None = None
        error: str | None = None

        try:
            response = await call_next(request)
            return response
        except Exception as exc:
            error = repr(exc)
            raise
        finally:
            status_code = response.status_code if response else 500
            log_data = {
                "method": request.method,
                "path": path,
                "query": sorted(k for k in request.query_params if k not in REDACTED_PARAMS),
                "status": status_code,
                "latency_ms": round((time.monotonic() - start) * 1000, 2),
                "client_ip": client_ip(request),
                # Set by get_current_claims
                "user_id": getattr(request.state, "user_id", None),
                "org_name": getattr(request.state, "org_name", None),
                "user_agent": request.headers.get("user-agent", ""),
            }
            if error:
                log_data["error"] = error

            if status_code >= 500:
                logger.error("api_request", extra=log_data)
            elif status_code >= 400:
                logger.warning("api_request", extra=log_data)
            else:
                logger.info("api_request", extra=log_data)
