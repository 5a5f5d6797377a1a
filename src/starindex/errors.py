"""Error taxonomy shared by providers, store and orchestrator."""

from __future__ import annotations


class StarIndexError(Exception):
    """Base error. ``page`` and ``phase`` are filled in for run-level failures."""

    def __init__(self, message: str = "", *, page: int | None = None, phase: str | None = None) -> None:
        super().__init__(message)
        self.page = page
        self.phase = phase


class TransientItemError(StarIndexError):
    """A single item's content or embedding could not be fetched."""


class ContextLengthError(TransientItemError):
    """The embedding provider rejected an input as too long."""


class ProviderAuthError(StarIndexError):
    """The provider rejected the credential."""


class ProviderRateOrNetworkError(StarIndexError):
    """Rate limiting, connectivity or malformed responses from a provider."""


class StorageError(StarIndexError):
    """A store transaction failed and was rolled back."""


class AlreadyIndexingError(StarIndexError):
    """An indexing run is already in flight."""


class ConfigurationError(RuntimeError):
    """A required setting is missing or names an unknown backend."""
