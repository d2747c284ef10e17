"""Shared error classes for the screener services."""

from __future__ import annotations


class ScreenerError(RuntimeError):
    """Base exception raised by the screener services."""

    def __init__(self, message: str, code: str = "SCREENER_ERROR") -> None:
        super().__init__(message)
        self.code = code


class SnapshotRefreshError(ScreenerError):
    """Raised when a refresh cycle fails before it can publish a snapshot."""

    def __init__(self, message: str, code: str = "503_REFRESH_FAILED") -> None:
        super().__init__(message, code=code)
