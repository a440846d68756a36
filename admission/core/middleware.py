"""HTTP middleware for request ID propagation and correlation.

Every request/response pair carries a request ID so admission decisions
(including rate limit violations and fail-open events) can be correlated
with access logs:
- Accepts the incoming X-Request-ID header or generates a UUID
- Stores request_id in contextvars for the duration of the request
- Returns request_id and total duration in response headers
"""

from __future__ import annotations

import time
import uuid

from fastapi import Request, Response

from admission.core.logging import clear_request_id, set_request_id


async def request_id_middleware(request: Request, call_next) -> Response:
    """Assign a correlation id to the request and echo it on the response.

    Registered outermost so 429 responses and fail-open responses produced
    by the admission middleware carry the id as well.

    Args:
        request: The incoming HTTP request object.
        call_next: The next middleware/route handler in the stack.

    Returns:
        Response: The downstream response with X-Request-ID and
            X-Request-Duration-ms headers added.
    """

    header_name = request.app.state.settings.log.request_id_header
    request_id = request.headers.get(header_name) or str(uuid.uuid4())
    set_request_id(request_id)
    start = time.perf_counter()
    try:
        response: Response = await call_next(request)
    finally:
        clear_request_id()

    duration_ms = (time.perf_counter() - start) * 1000
    response.headers[header_name] = request_id
    response.headers.setdefault("X-Request-Duration-ms", f"{duration_ms:.2f}")
    return response
