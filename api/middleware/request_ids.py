from __future__ import annotations

import logging
import uuid

from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Tag each request with a request id and the caller's declared company.

    ``X-Company-ID`` is informational only; it is not authenticated.
    """

    async def dispatch(self, request, call_next):  # type: ignore[override]
        rid = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        company_id = (request.headers.get("X-Company-ID") or "").strip() or None

        request.state.request_id = rid
        request.state.company_id = company_id
        logger.debug(
            "%s %s (request_id=%s, caller=%s)",
            request.method,
            request.url.path,
            rid,
            company_id or "-",
        )

        response = await call_next(request)

        response.headers.setdefault("X-Request-ID", rid)
        return response
