"""Service error hierarchy for the generation job core.

This module defines the exception hierarchy for service-level errors:
- ClientError: Caller mistakes, no side effects (InvalidParams, InsufficientBalance, JobNotFound)
- ProviderError: Adapter failures, split into permanent and transient
- MalformedNotification: Pushed callbacks that cannot be trusted or attributed
- AssetRetrievalFailure: Download/storage problems after a successful generation
- ConfigurationError: Fatal at startup, never raised at job time
"""


class ServiceError(Exception):
    """Base exception for all service errors."""

    pass


# Client errors
class ClientError(ServiceError):
    """Base exception for errors caused by the caller's request."""

    pass


class InvalidParams(ClientError):
    """Request parameters rejected before any job is created."""

    pass


class InsufficientBalance(ClientError):
    """Owner balance does not cover the job cost."""

    def __init__(self, owner: str, required: int, available: int):
        super().__init__(
            f"Insufficient balance for {owner}: required {required}, available {available}"
        )
        self.owner = owner
        self.required = required
        self.available = available


class JobNotFound(ClientError):
    """Job identifier is unknown."""

    pass


# Provider errors
class ProviderError(ServiceError):
    """Base exception for provider adapter errors.

    Attributes:
        reason: Short user-safe description (stored on failed jobs)
        detail: Raw provider text, only ever logged
    """

    def __init__(self, reason: str, detail: str | None = None):
        super().__init__(reason if detail is None else f"{reason}: {detail}")
        self.reason = reason
        self.detail = detail


class ProviderRejected(ProviderError):
    """Provider validated and refused the request (content policy, bad input, auth).

    Examples:
    - Bad request (400, 422)
    - Authentication failures (401, 403)
    - Banned prompt / content policy
    """


class ProviderUnavailable(ProviderError):
    """Transport-level failure that may succeed on retry.

    Examples:
    - Network timeouts
    - Rate limit exceeded (429)
    - Service unavailable (5xx)
    """


class MalformedNotification(ServiceError):
    """Callback payload is unauthenticated or cannot be attributed to a remote job."""

    pass


class AssetRetrievalFailure(ServiceError):
    """Downloading or storing a generated asset failed."""

    pass


class ConfigurationError(ServiceError):
    """Invalid provider or engine configuration detected at startup."""

    pass
