from typing import Any, Dict, Optional


class IngestionError(Exception):
    """Base class for upload problems that are reported back to the user."""


class UnsupportedFileError(IngestionError):
    pass


class EmptyFileError(IngestionError):
    pass


class MissingColumnError(IngestionError):
    def __init__(self, column: str, message: Optional[str] = None):
        self.column = column
        super().__init__(message or f"Column '{column}' is required to identify each student.")


class InvalidStageError(IngestionError):
    pass


class DocumentWriteError(Exception):
    """A database write that failed after being handed off.

    Carries enough context (collection path, operation, payload) for the
    notification handler to describe what was lost.
    """

    def __init__(self, path: str, operation: str, request_data: Optional[Dict[str, Any]] = None,
                 cause: Optional[BaseException] = None):
        self.path = path
        self.operation = operation
        self.request_data = request_data
        self.cause = cause
        msg = f"{operation} on '{path}' failed"
        if cause is not None:
            msg += f": {cause}"
        super().__init__(msg)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "operation": self.operation,
            "request_data": self.request_data,
            "message": str(self),
        }
