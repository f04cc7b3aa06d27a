"""Error taxonomy for eldim

Startup errors (ConfigurationError / ValidationError) are fatal and raised on
the first offending entity. Request errors carry an HTTP status and a stable
code so the API layer can turn them into structured failure responses.
"""

from typing import List, Optional


class EldimError(Exception):
    """Base class for every error raised by eldim itself"""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(EldimError):
    code = "configuration_error"


class ValidationError(ConfigurationError):
    code = "validation_error"


class AuthenticationError(EldimError):
    status_code = 401
    code = "authentication_failed"


class ResourceExhaustionError(EldimError):
    status_code = 413
    code = "upload_too_large"


class EncodingError(EldimError):
    status_code = 400
    code = "malformed_upload"


class BackendWriteError(EldimError):
    """A single backend failed to store (or delete) an object"""

    status_code = 502
    code = "backend_failure"

    def __init__(self, backend: str, message: str):
        super().__init__(f"{backend}: {message}")
        self.backend = backend


class PartialFailureError(EldimError):
    """At least one backend rejected the write; successful copies were rolled back"""

    status_code = 502
    code = "partial_failure"

    def __init__(
        self,
        message: str,
        failed_backends: List[str],
        compensated_backends: Optional[List[str]] = None,
    ):
        super().__init__(message)
        self.failed_backends = failed_backends
        self.compensated_backends = compensated_backends or []


class UploadTimeoutError(PartialFailureError):
    status_code = 504
    code = "upload_timeout"
