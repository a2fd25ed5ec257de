"""API error classes.

Every error carries a machine-readable code, a human-readable message and
an HTTP status. A single exception handler in main.py renders them into the
``{"error": {...}}`` envelope, so services raise these directly.
"""


class APIError(Exception):
    """Base class for API errors.

    All API errors have a code, message, and HTTP status.
    Subclasses set default status_code.

    Attributes:
        code: Machine-readable error code (e.g., "NOT_FOUND").
        message: Human-readable error message.
        status_code: HTTP status code to return.
        details: Optional list of additional error details.
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 500,
        details: list[dict] | None = None,
    ) -> None:
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details
        super().__init__(message)


class ValidationError(APIError):
    """Field validation failed (400).

    Use for request body validation errors and malformed audit events.
    """

    def __init__(
        self,
        message: str,
        details: list[dict] | None = None,
    ) -> None:
        super().__init__(
            code="VALIDATION_ERROR",
            message=message,
            status_code=400,
            details=details,
        )


class UnauthorizedError(APIError):
    """Authentication required (401)."""

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(
            code="UNAUTHORIZED",
            message=message,
            status_code=401,
        )


class ForbiddenError(APIError):
    """Not allowed to perform the action (403).

    Use when the identity is known but inactive or unverified.
    """

    def __init__(
        self, message: str = "Access denied", code: str = "FORBIDDEN"
    ) -> None:
        super().__init__(
            code=code,
            message=message,
            status_code=403,
        )


class NotFoundError(APIError):
    """Resource not found (404)."""

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        if resource_id:
            message = f"{resource} with id '{resource_id}' not found"
        else:
            message = f"{resource} not found"
        super().__init__(
            code="NOT_FOUND",
            message=message,
            status_code=404,
        )


class ConflictError(APIError):
    """Conflicting state (409).

    Accepts custom code for specific conflict types.
    """

    def __init__(
        self,
        code: str,
        message: str,
        details: list[dict] | None = None,
    ) -> None:
        super().__init__(
            code=code,
            message=message,
            status_code=409,
            details=details,
        )


class ReconciliationInProgressError(ConflictError):
    """Another reconciliation pass holds the ledger lock (409)."""

    def __init__(self) -> None:
        super().__init__(
            code="RECONCILIATION_IN_PROGRESS",
            message="Another payment reconciliation pass is already running",
        )


class PaymentIntegrityError(APIError):
    """Payment ledger references one external payment id more than once (409).

    Args:
        duplicate_groups: Number of external payment ids with more than
            one referencing record.
    """

    def __init__(self, duplicate_groups: int) -> None:
        super().__init__(
            code="PAYMENT_LEDGER_INTEGRITY",
            message=(
                f"{duplicate_groups} external payment id(s) are referenced "
                "by more than one payment record"
            ),
            status_code=409,
            details=[{"duplicate_groups": duplicate_groups}],
        )


class AccountLockedError(APIError):
    """Too many failed sign-in attempts (423).

    Args:
        retry_after: Seconds until the lock expires.
    """

    def __init__(self, retry_after: int) -> None:
        self.retry_after = retry_after
        super().__init__(
            code="ACCOUNT_LOCKED",
            message="Account temporarily locked. Try again later.",
            status_code=423,
            details=[{"retry_after": retry_after}],
        )


class RateLimitedError(APIError):
    """Too many requests in the current window (429).

    Carries the values the handler turns into Retry-After and
    X-RateLimit-* headers.

    Args:
        retry_after: Whole seconds until the window resets (>= 1).
        limit: Requests allowed per window.
        reset_at: Epoch seconds at which the window resets.
    """

    def __init__(self, retry_after: int, limit: int, reset_at: int) -> None:
        self.retry_after = retry_after
        self.limit = limit
        self.reset_at = reset_at
        super().__init__(
            code="RATE_LIMITED",
            message="Too many requests. Please try again later.",
            status_code=429,
            details=[{"retry_after": retry_after}],
        )


class InternalError(APIError):
    """Unexpected server error (500).

    Never expose stack traces to clients.
    """

    def __init__(self, message: str = "An unexpected error occurred") -> None:
        super().__init__(
            code="INTERNAL_ERROR",
            message=message,
            status_code=500,
        )
