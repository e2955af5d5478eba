"""
Exception taxonomy of the ingestion system.

Task-level exceptions never leave an import task: they are recorded on the
item and decide its final status. Only configuration errors, conflicts and
model invariant violations reach the caller.
"""


class IngestError(Exception):
    """Base class for every ingestion error."""


class ConfigurationError(IngestError, ValueError):
    """Invalid session parameters (pattern, root path, selector keys)."""


class StoreError(IngestError):
    """Communication with the time-series store failed or returned garbage."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class MalformedChunkError(IngestError):
    """A data line could not be turned into a point."""


class NoPointsToImportError(IngestError):
    """The input produced no point at all."""


class IdentifierResolutionError(IngestError):
    """The store never returned an identifier for the pushed series."""


class CatalogError(IngestError):
    """Registration of an imported item in the catalog failed."""


class IngestionConflictError(IngestError):
    """Another session already holds the ingestion slot."""

    def __init__(self, message: str, holder: int = None):
        super().__init__(message)
        self.holder = holder


class PoolRejectedError(IngestError):
    """The worker pool queue is full, the caller must back off."""


class ModelInvariantError(IngestError, RuntimeError):
    """The session model is in a state that should be impossible."""
