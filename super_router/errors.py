"""Router error hierarchy.

Every error carries the HTTP status and the stable ``code`` that clients see.
The exception message is for logs only and is never echoed in a response.
"""

from typing import Any, Optional


class RouterError(Exception):
    """Base exception for all router errors."""

    status_code: int = 500
    code: str = "internal_error"
    public_message: str = "Internal error"
    retryable: bool = False

    def __init__(self, message: Optional[str] = None):
        self.payment_accepted = False
        self.payment_tx: Optional[str] = None
        super().__init__(message or self.public_message)

    def mark_paid(self, payment_tx: Optional[str]) -> "RouterError":
        """Flag that funds already moved for the failing request."""
        self.payment_accepted = True
        self.payment_tx = payment_tx
        return self

    def to_body(self) -> dict:
        body = {
            "error": self.code,
            "message": self.public_message,
            "payment_accepted": self.payment_accepted,
            "payment_tx": self.payment_tx,
        }
        if self.payment_accepted:
            body["message"] = f"{self.public_message}. Payment has already been accepted."
        return body


class ConfigError(RouterError):
    """Missing or invalid configuration. Fatal at startup."""

    code = "config_error"
    public_message = "Service misconfigured"


class InvalidRequest(RouterError):
    status_code = 400
    code = "invalid_request"
    public_message = "Invalid request"

    def __init__(self, message: str):
        super().__init__(message)
        self.public_message = message


class PaymentChallengeRequired(RouterError):
    """Not a failure: the request carried no payment and gets a 402 challenge."""

    status_code = 402
    code = "payment_required"
    public_message = "Payment required"

    def __init__(self, message: Optional[str] = None, challenge: Any = None):
        super().__init__(message)
        self.challenge = challenge


class PaymentMalformed(RouterError):
    status_code = 400
    code = "payment_malformed"
    public_message = "Malformed X-PAYMENT header"


class PaymentRejected(RouterError):
    """Payment did not satisfy the challenge or the facilitator declined it."""

    status_code = 402
    code = "payment_rejected"
    public_message = "Payment rejected"

    def __init__(self, reason: str, challenge: Any = None):
        super().__init__(reason)
        self.reason = reason
        self.challenge = challenge


class FacilitatorUnavailable(RouterError):
    """Facilitator could not be reached. Retried, then reported as a rejection."""

    status_code = 402
    code = "facilitator_unavailable"
    public_message = "Payment could not be verified"
    retryable = True


class ProviderError(RouterError):
    """Error from the generation provider."""

    status_code = 502
    code = "provider_error"
    public_message = "Generation provider error"


class ProviderRateLimited(ProviderError):
    status_code = 503
    code = "provider_rate_limited"
    public_message = "Generation provider is rate limiting requests"
    retryable = True


class ProviderInvalidPrompt(ProviderError):
    status_code = 422
    code = "invalid_prompt"
    public_message = "Prompt rejected by the generation provider"


class ProviderUnavailable(ProviderError):
    status_code = 502
    code = "provider_unavailable"
    public_message = "Generation provider unavailable"
    retryable = True


class PostProcessFailed(ProviderError):
    """Transcoding of a paid-for artifact failed."""

    status_code = 502
    code = "generation_failed"
    public_message = "Generated media could not be produced"


class StorageUploadFailed(RouterError):
    status_code = 503
    code = "storage_upload_failed"
    public_message = "Generated media could not be stored"
    retryable = True


class CacheUnavailable(RouterError):
    status_code = 503
    code = "cache_unavailable"
    public_message = "Cache unavailable"
    retryable = True
