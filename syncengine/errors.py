"""Error taxonomy for provider synchronization."""

from __future__ import annotations


class SyncError(Exception):
    """Base class for every error raised by the engine."""


class ConfigurationError(SyncError):
    """Missing or invalid process configuration. Aborts the whole invocation."""


class CredentialError(SyncError):
    """A tenant's stored credentials cannot be used."""


class MissingCredentialError(CredentialError):
    pass


class CredentialDecryptionError(CredentialError):
    def __init__(self, detail: str | None = None) -> None:
        message = "Stored credentials could not be decrypted; re-authenticate this connection."
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class TokenRefreshError(CredentialError):
    pass


class InvalidSyncWindowError(SyncError):
    pass


class ProviderError(SyncError):
    """Base class for failures talking to a provider API."""


class ProviderRequestError(ProviderError):
    def __init__(self, message: str, *, status_code: int | None = None, context: str | None = None) -> None:
        if context:
            message = f"{message} [{context}]"
        super().__init__(message)
        self.status_code = status_code
        self.context = context


class RetryExhaustedError(ProviderError):
    def __init__(self, message: str, *, attempts: int, last_status: int | None = None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_status = last_status


class ProviderResponseError(ProviderError):
    def __init__(self, message: str, *, errors: list | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class DeadlineExceededError(SyncError):
    pass


class StaleConnectionStateError(SyncError):
    pass


class RecordTransformError(SyncError):
    def __init__(self, record_id: str | None, message: str) -> None:
        super().__init__(f"{record_id or '<unknown>'}: {message}")
        self.record_id = record_id
