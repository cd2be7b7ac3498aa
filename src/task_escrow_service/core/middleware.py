"""ASGI middleware for request validation."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any, cast

from fastapi.responses import JSONResponse

if TYPE_CHECKING:
    from starlette.types import ASGIApp, Receive, Scope, Send


_JSON_VALIDATION_ENDPOINTS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("POST", re.compile(r"^/tasks$")),
    ("POST", re.compile(r"^/tasks/[^/]+/applications$")),
    ("POST", re.compile(r"^/tasks/[^/]+/assign$")),
    ("POST", re.compile(r"^/tasks/[^/]+/proof$")),
    ("POST", re.compile(r"^/tasks/[^/]+/complete$")),
    ("POST", re.compile(r"^/tasks/[^/]+/milestones$")),
    ("POST", re.compile(r"^/tasks/[^/]+/milestones/[^/]+/complete$")),
    ("POST", re.compile(r"^/tasks/[^/]+/milestones/[^/]+/reject$")),
    ("POST", re.compile(r"^/tasks/[^/]+/disputes$")),
    ("POST", re.compile(r"^/tasks/[^/]+/disputes/[^/]+/resolve$")),
    ("POST", re.compile(r"^/accounts/[^/]+/deposit$")),
    ("POST", re.compile(r"^/accounts/[^/]+/approve$")),
    ("POST", re.compile(r"^/insurance/fund$")),
)


class RequestValidationMiddleware:
    """
    ASGI middleware that validates Content-Type and body size.

    Runs before FastAPI routes. Returns 415 for a non-JSON content-type
    on signed endpoints, and 413 for oversized request bodies.
    """

    def __init__(self, app: ASGIApp, max_body_size: int) -> None:
        self.app = app
        self.max_body_size = max_body_size

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        method = cast("str", scope.get("method", "GET"))
        path = cast("str", scope.get("path", ""))

        expects_json = any(
            candidate_method == method and pattern.match(path) is not None
            for candidate_method, pattern in _JSON_VALIDATION_ENDPOINTS
        )

        # Unknown endpoint/method combos are left to the router (404/405).
        if not expects_json:
            await self.app(scope, receive, send)
            return

        raw_headers = cast("list[tuple[bytes, bytes]]", scope.get("headers", []))
        headers: dict[bytes, bytes] = dict(raw_headers)
        content_type = headers.get(b"content-type", b"").decode().lower()

        if not content_type.startswith("application/json"):
            response = JSONResponse(
                status_code=415,
                content={
                    "error": "UNSUPPORTED_MEDIA_TYPE",
                    "message": "Content-Type must be application/json",
                    "details": {},
                },
            )
            await response(scope, receive, send)
            return

        body_parts: list[bytes] = []
        body_size = 0

        while True:
            message = cast("dict[str, Any]", await receive())
            chunk = cast("bytes", message.get("body", b""))
            body_parts.append(chunk)
            body_size += len(chunk)

            if body_size > self.max_body_size:
                response = JSONResponse(
                    status_code=413,
                    content={
                        "error": "PAYLOAD_TOO_LARGE",
                        "message": "Request body exceeds maximum allowed size",
                        "details": {},
                    },
                )
                await response(scope, receive, send)
                return

            if not message.get("more_body", False):
                break

        # Replay buffered body for downstream app
        full_body = b"".join(body_parts)
        body_sent = False

        async def buffered_receive() -> dict[str, Any]:
            nonlocal body_sent
            if not body_sent:
                body_sent = True
                return {"type": "http.request", "body": full_body, "more_body": False}
            return {"type": "http.disconnect"}

        await self.app(scope, buffered_receive, send)
