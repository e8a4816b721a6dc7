from __future__ import annotations


class DataPilotError(Exception):
    """Base error for DataPilot."""


class ProviderConfigError(DataPilotError):
    """Missing or invalid completion provider configuration."""


class CompletionProviderError(DataPilotError):
    """Completion provider request failed."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProviderAuthError(CompletionProviderError):
    """Completion provider rejected the credentials."""


class ProviderRateLimitError(CompletionProviderError):
    """Completion provider throttled the request."""


class DataStoreError(DataPilotError):
    """Tenant data store failure."""


class DataStoreNotConnectedError(DataStoreError):
    """Data store used before connect()."""


class InsufficientCreditsError(DataPilotError):
    """Tenant has less remaining credit than a background job requires."""

    def __init__(self, message: str, *, remaining: float) -> None:
        super().__init__(message)
        self.remaining = remaining


class AnalysisPlanError(DataPilotError):
    """Plan generation produced an unusable reply."""


class JobNotFoundError(DataPilotError):
    """Background job does not exist for the tenant."""
