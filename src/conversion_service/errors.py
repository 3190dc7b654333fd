"""Error taxonomy shared by the storage, scheduling and HTTP layers."""


class ConversionServiceError(Exception):
    """Base class for all errors raised by the service."""

    code = "internal_error"


class ConfigurationError(ConversionServiceError):
    """Missing master secret or misconfigured storage paths."""

    code = "configuration_error"


class ValidationError(ConversionServiceError, ValueError):
    """Bad caller input: estimator arguments, oversized or unrecognised files."""

    code = "validation_error"


class PayloadTooLargeError(ValidationError):
    code = "payload_too_large"


class IntegrityError(ConversionServiceError):
    """Authentication tag did not verify; the file is corrupted or tampered."""

    code = "integrity_error"


class FormatError(ConversionServiceError):
    """Encrypted file is too small or structurally malformed."""

    code = "format_error"


class StorageIOError(ConversionServiceError, OSError):
    """Disk full, permission denied or a rejected path."""

    code = "storage_error"


class QueueUnavailableError(ConversionServiceError):
    """The queue backend could not be reached; nothing was enqueued."""

    code = "queue_unavailable"


class NotFoundError(ConversionServiceError, LookupError):
    code = "not_found"


class AccessDeniedError(ConversionServiceError, PermissionError):
    code = "forbidden"


class ConversionFailedError(ConversionServiceError):
    """The converter reported failure; the attempt may be retried."""

    code = "conversion_failed"
