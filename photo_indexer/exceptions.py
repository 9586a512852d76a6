"""
Custom exception hierarchy for the photo indexer.

Per-item errors (filesystem, extraction, derivative) are caught by the
scanning code and recorded in the ScanResult. Only StorageConnectionError
and ScanCancelled end a scan early.
"""


class PhotoIndexerError(Exception):
    """Base exception for all photo indexer errors."""
    pass


class FilesystemError(PhotoIndexerError):
    """Raised when a path can't be read (permissions, I/O, symlink loops)."""
    pass


class ExtractionError(PhotoIndexerError):
    """Raised when a file can't be decoded as an image or video."""

    def __init__(self, message: str, kind: str = 'unreadable'):
        super().__init__(message)
        self.kind = kind


class DerivativeError(PhotoIndexerError):
    """Raised when a thumbnail or download variant can't be produced."""
    pass


class TransactionError(PhotoIndexerError):
    """Raised when a storage transaction fails and was rolled back."""
    pass


class StorageConnectionError(PhotoIndexerError):
    """Raised when the database can't be reached at all. Aborts the scan."""
    pass


class ScanCancelled(PhotoIndexerError):
    """Raised inside a scan once cancellation was requested."""
    pass


class ShareTokenError(PhotoIndexerError):
    """Raised when a share token can't be created."""
    pass
