"""Service error hierarchy for job dispatch, provider, storage and prompt operations.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- TransientError: Retryable errors (network, rate limits, timeouts)
- PermanentError: Non-retryable errors (authentication, validation)
"""


class ServiceError(Exception):
    """Base exception for all service errors."""

    pass


class TransientError(ServiceError):
    """Transient error that may succeed on retry.

    Examples:
    - Network timeouts
    - Rate limit exceeded (429)
    - Service unavailable (502, 503, 504)
    """

    pass


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Authentication failures (401, 403)
    - Invalid request parameters (400, 422)
    - Configuration errors
    """

    pass


# Job Store errors
class ValidationError(PermanentError):
    """Malformed generation request (bad references, dimensions or grouping ids)."""

    pass


class ConflictError(ServiceError):
    """Guarded transition lost a race: the job is no longer in an expected state.

    Expected outcome of concurrent workers, never surfaced to callers.
    """

    pass


class JobNotFoundError(PermanentError):
    """Job id does not exist."""

    pass


# Generation provider errors
class ProviderUnavailable(TransientError):
    """Provider unreachable, rate limited or erroring on its side."""

    pass


class ProviderRejected(PermanentError):
    """Provider refused the request (invalid payload, auth failure)."""

    pass


class ProviderRecordNotFound(PermanentError):
    """Provider has no record of the request id."""

    pass


class ProviderTimeout(TransientError):
    """Job exceeded its expected progress window at the provider."""

    pass


class UnrecognizedProviderState(TransientError):
    """Provider reported a status string outside the translation table."""

    pass


# Storage errors
class StorageUnavailable(TransientError):
    """Storage unreachable or erroring on its side."""

    pass


class StorageObjectNotFound(PermanentError):
    """Referenced object does not exist in storage."""

    pass


class StorageAuthError(PermanentError):
    """Storage rejected the service credentials (401, 403)."""

    pass


# Prompt provider errors
class PromptProviderUnavailable(TransientError):
    """Every prompt model failed with a retryable error."""

    pass


class PromptProviderRejected(PermanentError):
    """Prompt provider refused the request (auth failure, bad input)."""

    pass
