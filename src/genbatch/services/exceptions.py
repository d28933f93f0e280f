"""Service error hierarchy for providers, storage and queue operations.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- TransientError: Retryable errors (network, rate limits, timeouts)
- PermanentError: Non-retryable errors (authentication, validation, rejection)
"""


class ServiceError(Exception):
    """Base exception for all service errors."""

    pass


class TransientError(ServiceError):
    """Transient error that may succeed on retry.

    Examples:
    - Network timeouts
    - Rate limit exceeded (429)
    - Service unavailable (503)
    - Provider task polling gave up after repeated network errors
    """

    pass


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Authentication failures (401, 403)
    - Invalid request parameters (400)
    - Provider explicitly rejected the generation
    """

    pass


class ConfigurationError(PermanentError):
    """Required credentials or keys are missing.

    Raised at the boundary before any item is processed, never per item.
    """

    pass


# Generation provider errors
class ProviderError(ServiceError):
    """Base exception for generation provider errors."""

    pass


class ProviderTransientError(TransientError, ProviderError):
    """Provider call failed for a reason that may clear up on retry."""

    pass


class ProviderRejectedError(PermanentError, ProviderError):
    """Provider explicitly rejected or failed the generation."""

    pass


class ContentPolicyError(ProviderRejectedError):
    """Prompt or output blocked by the provider's content policy."""

    pass


# Durable object storage errors
class StorageError(ServiceError):
    """Base exception for object storage errors."""

    pass


class StorageRateLimitError(TransientError, StorageError):
    """Rate limit exceeded (429)."""

    pass


class StorageNetworkError(TransientError, StorageError):
    """Network timeout or service unavailable."""

    pass


class StorageAuthError(PermanentError, StorageError):
    """Authentication failure (401, 403)."""

    pass


class StorageValidationError(PermanentError, StorageError):
    """Bad request (400)."""

    pass


# Durable queue errors
class QueueError(ServiceError):
    """Base exception for queue dispatch errors."""

    pass


class QueuePublishError(TransientError, QueueError):
    """Message could not be handed to the queue."""

    pass


class SignatureVerificationError(PermanentError, QueueError):
    """Inbound delivery signature is missing or invalid."""

    pass


# Shared job store errors
class BatchExistsError(PermanentError):
    """A batch with this id already exists in the shared store."""

    def __init__(self, batch_id: str):
        super().__init__(f"Batch {batch_id} already exists")
        self.batch_id = batch_id


# Batch API client errors
class BatchApiError(ServiceError):
    """The batch server answered a client request with an error status."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
