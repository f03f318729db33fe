from typing import Optional


class InputError(ValueError):
    """Input rejected before any request was made."""


class OfflineError(RuntimeError):
    def __init__(self, message: str = "Offline: changes are disabled until sync completes") -> None:
        super().__init__(message)


class RecordStoreError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_connectivity(self) -> bool:
        return self.status_code is None


class NotFoundError(RecordStoreError):
    def __init__(self, message: str = "Record not found") -> None:
        super().__init__(message, status_code=404)
