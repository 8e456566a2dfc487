class PatrolSyncError(Exception):
    pass


class StorageError(PatrolSyncError):
    """The local key/value store could not read or write a document."""


class ShiftStorageError(PatrolSyncError):
    """A shift operation failed to persist locally. Nothing was enqueued."""


class ActiveShiftExistsError(PatrolSyncError):
    def __init__(self, shift_id: str) -> None:
        super().__init__(f"Shift {shift_id} is still active")
        self.shift_id = shift_id


class SyncDeliveryError(PatrolSyncError):
    """Network error, timeout or non-2xx response from the sync API."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ShiftNotFoundError(PatrolSyncError):
    def __init__(self, pair_code: str) -> None:
        super().__init__(f"Shift not found for pair code {pair_code}")
        self.pair_code = pair_code
