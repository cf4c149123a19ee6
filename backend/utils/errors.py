"""Service error taxonomy.

Services raise these; server.py renders them as JSON ``{"error": ..., **extra}``
with the matching HTTP status. Anything else escaping a handler is a 500.
"""
from typing import Any, Dict, Optional


class ServiceError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        extra: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(message or code or self.code)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.extra = extra or {}
        self.headers = headers or {}

    def to_body(self) -> Dict[str, Any]:
        """Error body sent to the caller."""
        body: Dict[str, Any] = {"error": self.code}
        if self.message and self.message != self.code:
            body["message"] = self.message
        body.update(self.extra)
        return body


class ValidationError(ServiceError):
    status_code = 400
    code = "validation_error"


class AuthError(ServiceError):
    """401 when the caller is unknown, 403 when the caller is not allowed."""
    status_code = 401
    code = "Unauthorized"

    @classmethod
    def forbidden(cls, reason: str = "Forbidden") -> "AuthError":
        return cls(code=reason, status_code=403)


class NotFound(ServiceError):
    status_code = 404
    code = "not_found"


class ConflictError(ServiceError):
    status_code = 409
    code = "conflict"


class RateLimited(ServiceError):
    status_code = 429
    code = "rate_limited"

    def __init__(self, reason: str, retry_after: int):
        super().__init__(code=reason, headers={"Retry-After": str(retry_after)})
        self.retry_after = retry_after


class UpstreamError(ServiceError):
    """Stripe call failed. 400 when the caller's input was at fault, 500 otherwise."""
    status_code = 500
    code = "upstream_error"


class PersistenceError(ServiceError):
    """Store failure. The caller only ever sees a generic message."""
    status_code = 500
    code = "persistence_error"

    def to_body(self) -> Dict[str, Any]:
        return {"error": "Internal server error"}


class SignatureInvalid(ServiceError):
    status_code = 400
    code = "Invalid signature"
