"""Central error types used across the application."""

from __future__ import annotations

from typing import Sequence


class TrackValidationError(ValueError):
    """Raised when a submitted point stream cannot be processed at all."""


class DegenerateGeometryError(TrackValidationError):
    """Raised for tracks with too few points or zero length."""


class SegmentValidationError(ValueError):
    """Raised when segment geometry or metadata fails validation."""


class SimilarSegmentsExistError(SegmentValidationError):
    """Raised when a new segment duplicates one that already exists."""

    def __init__(self, similar: Sequence[object]) -> None:
        self.similar = list(similar)
        super().__init__(f"{len(self.similar)} similar segment(s) already exist")


class SegmentNotFoundError(LookupError):
    """Raised when a segment does not exist or has been deleted."""


class ActivityNotFoundError(LookupError):
    """Raised when an activity or its stored track does not exist."""


class ProcessingError(RuntimeError):
    """Base error for failures inside a background unit of work."""


class SpatialQueryError(ProcessingError):
    """Raised when a spatial index or bounding box query fails."""


class SpatialQueryTimeoutError(SpatialQueryError):
    """Raised when a spatial query exceeds its time budget."""


class StorageUnavailableError(ProcessingError):
    """Raised when the database cannot complete a transaction."""


# Failures worth one more attempt after a backoff.
RETRYABLE_ERRORS = (SpatialQueryError, StorageUnavailableError)


__all__ = [
    "ActivityNotFoundError",
    "DegenerateGeometryError",
    "ProcessingError",
    "RETRYABLE_ERRORS",
    "SegmentNotFoundError",
    "SegmentValidationError",
    "SimilarSegmentsExistError",
    "SpatialQueryError",
    "SpatialQueryTimeoutError",
    "StorageUnavailableError",
    "TrackValidationError",
]
