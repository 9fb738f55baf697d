"""Exceptions raised by the tracker."""


class TrackerError(Exception):
    """Base exception for tracker errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class StorageWriteError(TrackerError):
    """Raised when a row append or update on the sheet fails."""

    def __init__(self, operation: str, detail: str, row: int | None = None):
        self.operation = operation
        self.row = row
        self.detail = detail
        where = f" row {row}" if row is not None else ""
        super().__init__(f"Sheet {operation}{where} failed: {detail}")


class RunLeaseError(TrackerError):
    """Raised when another run still holds the processing lease."""

    def __init__(self, holder: str, expires_at: str):
        self.holder = holder
        self.expires_at = expires_at
        super().__init__(f"Run {holder} holds the lease until {expires_at}")
