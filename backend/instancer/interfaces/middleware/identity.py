"""
Instancer - Trusted identity middleware
Copies the user id asserted by the authenticating gateway onto request.state
"""

from typing import Callable

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = structlog.get_logger(__name__)


class TrustedIdentityMiddleware(BaseHTTPMiddleware):
    """
    Reads the authenticated user id from a gateway header.

    The service must only be reachable through that gateway; the header is
    not verified here.
    """

    def __init__(self, app, header_name: str = "X-User-Id"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        raw = request.headers.get(self.header_name)
        if raw is not None:
            try:
                request.state.user_id = int(raw)
            except ValueError:
                logger.warning("Ignoring malformed identity header", header=self.header_name)
        return await call_next(request)
