"""Admin-key middleware for the administrative routes."""

from __future__ import annotations

import secrets
from typing import TYPE_CHECKING

import structlog
from starlette.datastructures import Headers, QueryParams
from starlette.responses import JSONResponse

if TYPE_CHECKING:
    from starlette.types import ASGIApp, Receive, Scope, Send

log = structlog.get_logger()

ADMIN_KEY_HEADER = "x-admin-key"
ADMIN_KEY_QUERY_PARAM = "key"


def is_admin_route(method: str, path: str) -> bool:
    """Routes that mutate shared state outside of normal registration."""
    if method == "POST" and path == "/cache/clear":
        return True
    return method == "DELETE" and path.startswith("/mappings/")


class AdminKeyMiddleware:
    """Pure ASGI middleware guarding admin routes with an optional shared key.

    With no key configured every request passes. Otherwise admin routes must
    present the key in the ``X-Admin-Key`` header or the ``key`` query
    parameter; anything else gets 401 before reaching the route.

    Implemented as pure ASGI (not BaseHTTPMiddleware) so that proxied
    responses are never buffered by the middleware layer.
    """

    def __init__(self, app: ASGIApp, *, admin_key: str | None = None) -> None:
        self.app = app
        self.admin_key = admin_key or None

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if (
            scope["type"] == "http"
            and self.admin_key is not None
            and is_admin_route(scope["method"], scope["path"])
        ):
            headers = Headers(scope=scope)
            params = QueryParams(scope.get("query_string", b""))
            presented = headers.get(ADMIN_KEY_HEADER) or params.get(ADMIN_KEY_QUERY_PARAM) or ""
            if not secrets.compare_digest(presented.encode(), self.admin_key.encode()):
                log.warning("admin_key_rejected", path=scope["path"], method=scope["method"])
                response = JSONResponse(
                    {
                        "error": {
                            "code": "UNAUTHORIZED",
                            "message": "Missing or invalid admin key",
                            "suggestion": "Send the key in the X-Admin-Key header.",
                        }
                    },
                    status_code=401,
                )
                await response(scope, receive, send)
                return

        await self.app(scope, receive, send)
