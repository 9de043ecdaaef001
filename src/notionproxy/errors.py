from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    NOT_FOUND = "NOT_FOUND"
    FETCH_FAILED = "FETCH_FAILED"
    FORBIDDEN = "FORBIDDEN"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
    BAD_REQUEST = "BAD_REQUEST"


_STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.FETCH_FAILED: 500,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.STORE_UNAVAILABLE: 503,
    ErrorCode.BAD_REQUEST: 400,
}


class ProxyError(Exception):
    """Raised by the engine and request handlers for all expected failures.

    Caught by server.py and serialised into a JSON error response. Never
    catch this inside business logic; let it propagate to the router so the
    client receives the right status code.
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        suggestion: str = "",
        *,
        upstream_status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion
        self.upstream_status = upstream_status

    @property
    def status_code(self) -> int:
        """HTTP status to answer with. Upstream failures mirror the upstream status."""
        if (
            self.code == ErrorCode.FETCH_FAILED
            and self.upstream_status is not None
            and self.upstream_status >= 400
        ):
            return self.upstream_status
        return _STATUS_BY_CODE[self.code]

    def to_dict(self) -> dict:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "suggestion": self.suggestion,
            }
        }
