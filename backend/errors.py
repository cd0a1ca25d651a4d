"""
Error Taxonomy
==============
Typed failures raised by the case services and mapped to HTTP responses
by the API layer.

- InvalidInput     -> 400 (client-fixable)
- Unauthorized     -> 401 (bad/missing secret or signature)
- NotFound         -> 404
- Conflict         -> 409 (case already paid)
- UpstreamFailure  -> 502 (gateway/worker call failed)
- StoreFailure     -> 500 (the only class fatal to a request)
"""

from typing import Any, Dict, Optional


class CaseServiceError(Exception):
    """Base class for every error the service reports to a caller."""

    code: str = "CASE_SERVICE_ERROR"
    http_status: int = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


# =============================================================================
# 400
# =============================================================================

class InvalidInput(CaseServiceError):
    code = "INVALID_INPUT"
    http_status = 400


class InvalidToken(InvalidInput):
    code = "INVALID_TOKEN"


class MissingField(InvalidInput):
    code = "MISSING_FIELD"


class InvalidFormat(InvalidInput):
    code = "INVALID_FORMAT"


class MissingCorrelation(InvalidInput):
    code = "MISSING_CORRELATION"


# =============================================================================
# 401
# =============================================================================

class Unauthorized(CaseServiceError):
    code = "UNAUTHORIZED"
    http_status = 401


class UnauthorizedWebhook(Unauthorized):
    # Webhook contract answers bad signatures with 400
    code = "UNAUTHORIZED_WEBHOOK"
    http_status = 400


class InvalidSecret(Unauthorized):
    code = "INVALID_SECRET"


# =============================================================================
# 404
# =============================================================================

class NotFound(CaseServiceError):
    code = "NOT_FOUND"
    http_status = 404


class CaseNotFound(NotFound):
    code = "CASE_NOT_FOUND"


# =============================================================================
# 409
# =============================================================================

class Conflict(CaseServiceError):
    code = "CONFLICT"
    http_status = 409


class AlreadyPaid(Conflict):
    code = "ALREADY_PAID"


# =============================================================================
# 5xx
# =============================================================================

class UpstreamFailure(CaseServiceError):
    code = "UPSTREAM_FAILURE"
    http_status = 502


class GatewayNotConfigured(UpstreamFailure):
    code = "NOT_CONFIGURED"
    http_status = 503


class StoreFailure(CaseServiceError):
    code = "STORE_FAILURE"
    http_status = 500
