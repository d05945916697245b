"""
Custom exception hierarchy for the photo catalog.

Multi-item operations (scan, hash fill, plan apply) count per-file failures
instead of raising them. These exceptions are reserved for failures that
abort a whole operation or reject a request before any I/O happens.
"""


class PhotoCatalogError(Exception):
    """Base exception for all photo catalog errors."""
    pass


class ScanRootNotFoundError(PhotoCatalogError):
    """Raised when a scan root id is unknown or its directory is missing."""
    pass


class InvalidInputError(PhotoCatalogError, ValueError):
    """Raised when a request is rejected up front (blank path, blank name...)."""
    pass


class OperationCancelledError(PhotoCatalogError):
    """Raised at the next checkpoint after cancellation was requested."""
    pass


class DestinationOutsideRootError(PhotoCatalogError):
    """Raised when a move/copy/rename target escapes its scan root."""
    pass


class FileHashError(PhotoCatalogError):
    """Raised when file hashing fails."""
    pass


class DatabaseError(PhotoCatalogError):
    """Raised when catalog store operations fail."""
    pass
