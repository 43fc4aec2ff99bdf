from __future__ import annotations


class SyncError(RuntimeError):
    """Base class for failures that abort a sync run."""


class ConfigurationError(SyncError):
    """Raised when the run cannot be configured (no database, bad flags)."""


class MissingSourceFilesError(SyncError):
    """Raised when required export files are absent after the download phase."""

    def __init__(self, missing: list[str]) -> None:
        self.missing = list(missing)
        super().__init__(f"Missing required SAM export files: {', '.join(self.missing)}")


class IncompleteImportError(SyncError):
    """Raised when an expected table received no rows; live tables stay untouched."""

    def __init__(self, missing_tables: list[str]) -> None:
        self.missing_tables = list(missing_tables)
        super().__init__(
            "Import incomplete, no data for tables: " + ", ".join(self.missing_tables)
        )


class SwapError(SyncError):
    """Raised when the staging swap failed and was rolled back."""


class SyncLockError(SyncError):
    """Raised when another sync already holds the writer lock."""
