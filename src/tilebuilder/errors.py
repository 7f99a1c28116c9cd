"""Error taxonomy shared by loaders, sync and pipeline stages."""

from __future__ import annotations


class TilebuilderError(Exception):
    """Base class for all pipeline errors."""


class ValidationError(TilebuilderError, ValueError):
    """Malformed top-level input; aborts the whole load."""


class GeometryInvalid(TilebuilderError, ValueError):
    """Bad geometry on a single feature; the feature is skipped."""


class NotFoundError(TilebuilderError, FileNotFoundError):
    """An expected source or extracted file is missing."""


class NetworkError(TilebuilderError, RuntimeError):
    """Transport failure on download or upload; retryable."""


class CredentialMismatchError(TilebuilderError, ValueError):
    """Storage and database credentials do not target the same project."""


class SafeguardError(TilebuilderError, RuntimeError):
    """Destructive operation refused because the opt-in flag is not set."""


class SchemaNotReadyError(TilebuilderError, RuntimeError):
    """The table API still does not expose the expected columns."""


class UpsertError(TilebuilderError, RuntimeError):
    """A chunk failed; rows of earlier chunks stay committed."""

    def __init__(self, message: str, *, chunk_index: int, committed: int) -> None:
        super().__init__(message)
        self.chunk_index = chunk_index
        self.committed = committed


class StageError(TilebuilderError, RuntimeError):
    """Fatal error of one pipeline stage, with the units it completed first."""

    def __init__(self, stage: str, cause: BaseException, *, completed: int = 0) -> None:
        super().__init__(f"Stage '{stage}' failed after {completed} unit(s): {cause}")
        self.stage = stage
        self.cause = cause
        self.completed = completed
