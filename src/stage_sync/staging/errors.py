class SyncError(Exception):
    """Base class for every error raised by the sync engine."""


class ScanError(SyncError):
    """The scan root is missing or unreadable. Aborts the run."""


class LedgerError(SyncError):
    """The ledger store failed or returned corrupt state. Aborts the run."""


class ConflictError(SyncError):
    """Another caller already holds the upload for this fingerprint."""


class StateError(SyncError):
    """Illegal ledger transition. Fatal for the affected record only."""


class UploadError(SyncError):
    pass


class TransientUploadError(UploadError):
    """Network or timeout class failure; the upload is retried with backoff."""


class PermanentUploadError(UploadError):
    """Permission, invalid path or similar failure; never retried."""
