from __future__ import annotations


class ConfigError(RuntimeError):
    """Raised when configuration is missing or invalid."""


class LLMError(RuntimeError):
    """Raised when an extraction model call or structured parse fails."""


class EmbeddingError(RuntimeError):
    """Raised when an embedding request fails or returns an unexpected shape."""


class GeocodingError(RuntimeError):
    """Raised when a geocoding request fails."""


class StorageError(RuntimeError):
    """Raised when reading or writing state in SQLite fails."""


class CleanupStateError(RuntimeError):
    """Raised when a cleanup backup/revert/commit would violate snapshot integrity."""
