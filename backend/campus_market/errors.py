from __future__ import annotations


class MarketError(Exception):
    """Base for errors that map onto the JSON error contract."""

    status_code = 500
    code = "InternalError"

    def __init__(self, message: str = "", **extra):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.extra = extra

    def to_payload(self) -> dict:
        payload = {
            "ok": False,
            "error": self.code,
            "message": self.message,
            "status": int(self.status_code),
        }
        payload.update(self.extra)
        return payload


class ValidationError(MarketError):
    status_code = 400
    code = "ValidationError"


class NotFoundError(MarketError):
    status_code = 404
    code = "NotFound"


class ForbiddenError(MarketError):
    status_code = 403
    code = "Forbidden"


class UnauthorizedError(MarketError):
    status_code = 401
    code = "Unauthorized"


class InvalidTransitionError(MarketError):
    status_code = 400
    code = "InvalidTransition"

    def __init__(self, message: str = "", *, allowed_transitions=None, **extra):
        allowed = sorted(allowed_transitions or [])
        super().__init__(message, allowedTransitions=allowed, **extra)
        self.allowed_transitions = allowed


class InsufficientFundsError(MarketError):
    status_code = 400
    code = "InsufficientFunds"


class PinLockedError(MarketError):
    status_code = 429
    code = "PinLocked"

    def __init__(self, message: str = "", *, remaining_minutes: int = 0, **extra):
        super().__init__(message, locked=True, remainingMinutes=int(remaining_minutes), **extra)
        self.remaining_minutes = int(remaining_minutes)


class InvalidPinError(MarketError):
    status_code = 401
    code = "InvalidPin"

    def __init__(self, message: str = "", *, remaining_attempts: int = 0, **extra):
        super().__init__(message, remainingAttempts=int(remaining_attempts), **extra)
        self.remaining_attempts = int(remaining_attempts)


class GatewayErrorType:
    INVALID_REQUEST = "INVALID_REQUEST"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    RATE_LIMITED = "RATE_LIMITED"
    TIMEOUT = "TIMEOUT"
    NETWORK_ERROR = "NETWORK_ERROR"
    SERVER_ERROR = "SERVER_ERROR"
    UNKNOWN = "UNKNOWN"

    HTTP_STATUS = {
        INVALID_REQUEST: 400,
        INVALID_CREDENTIALS: 503,
        INSUFFICIENT_FUNDS: 402,
        RATE_LIMITED: 429,
        TIMEOUT: 503,
        NETWORK_ERROR: 503,
        SERVER_ERROR: 503,
    }

    RETRYABLE = {RATE_LIMITED, TIMEOUT, NETWORK_ERROR, SERVER_ERROR}


class GatewayError(MarketError):
    code = "UpstreamServiceError"

    def __init__(
        self,
        message: str = "",
        *,
        error_type: str = GatewayErrorType.UNKNOWN,
        upstream_status: int | None = None,
        user_message: str = "",
        raw: dict | None = None,
    ):
        super().__init__(user_message or message, errorType=error_type)
        self.error_type = error_type
        self.upstream_status = upstream_status
        self.detail = message
        self.raw = raw or {}
        self.status_code = GatewayErrorType.HTTP_STATUS.get(error_type, 500)

    @property
    def retryable(self) -> bool:
        if self.error_type in GatewayErrorType.RETRYABLE:
            return True
        return self.upstream_status is not None and int(self.upstream_status) >= 500
