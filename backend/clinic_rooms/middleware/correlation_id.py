from __future__ import annotations

import logging
import uuid

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from clinic_rooms.errors import error_response

logger = logging.getLogger("clinic_rooms.request")

HEADER = "X-Correlation-Id"


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        incoming = request.headers.get(HEADER)
        cid = incoming.strip() if incoming and incoming.strip() else str(uuid.uuid4())

        # Handlers and error logs read it from request.state.
        request.state.correlation_id = cid

        try:
            response: Response = await call_next(request)
        except Exception:  # pragma: no cover - generic safety net
            logger.exception("Unhandled error cid=%s %s %s", cid, request.method, request.url.path)
            response = JSONResponse(
                status_code=500,
                content=error_response("internal_error", "Unexpected server error", {"correlation_id": cid}),
            )

        response.headers[HEADER] = cid
        return response
