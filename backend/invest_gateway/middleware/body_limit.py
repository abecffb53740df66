"""
Invest Gateway - Body Size Limit Middleware
===========================================

What:  Enforces the request body ceiling (10 MB by default) for JSON and
       form payloads before any handler group sees the request.
How:   Pure ASGI middleware.
       1. A declared Content-Length above the ceiling is answered with 413
          right here; the application is never called.
       2. Otherwise `receive` is wrapped and counts body bytes as they stream
          in. Crossing the ceiling raises PayloadTooLargeError while the
          dispatcher is still reading the body, so the handler is never
          invoked.
       3. Whatever the inner stages make of that exception (a handled 413, a
          500 from the error boundary, or an exception group escaping an
          anyio task group), the response is replaced here with the 413
          envelope, as long as nothing has been sent yet.
"""

import logging

from starlette.datastructures import Headers
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from invest_gateway.errors import ErrorNormalizer
from invest_gateway.exceptions import PayloadTooLargeError
from invest_gateway.middleware.request_id import request_id_var

logger = logging.getLogger(__name__)


class BodyLimitMiddleware:
    def __init__(self, app: ASGIApp, max_body_bytes: int, normalizer: ErrorNormalizer):
        self.app = app
        self.max_body_bytes = max_body_bytes
        self.normalizer = normalizer

    async def _reject(self, scope: Scope, receive: Receive, send: Send, reason: str) -> None:
        logger.warning(
            "Rejected %s %s: %s exceeds %d bytes",
            scope.get("method"),
            scope.get("path"),
            reason,
            self.max_body_bytes,
        )
        response = self.normalizer.render(
            PayloadTooLargeError(self.max_body_bytes),
            request_id=request_id_var.get(""),
        )
        await response(scope, receive, send)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        declared = Headers(scope=scope).get("content-length")
        if declared is not None and declared.isdigit() and int(declared) > self.max_body_bytes:
            await self._reject(scope, receive, send, f"declared body of {declared} bytes")
            return

        received = 0
        overflowed = False
        response_started = False

        async def limited_receive() -> Message:
            nonlocal received, overflowed
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > self.max_body_bytes:
                    overflowed = True
                    raise PayloadTooLargeError(self.max_body_bytes)
            return message

        async def guarded_send(message: Message) -> None:
            nonlocal response_started
            # After an overflow the inner answer is discarded and replaced below
            if overflowed and not response_started:
                return
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await self.app(scope, limited_receive, guarded_send)
        except* PayloadTooLargeError:
            if response_started:
                raise

        if overflowed and not response_started:
            await self._reject(scope, receive, send, f"streamed body of {received}+ bytes")
