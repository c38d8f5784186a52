# domain/errors.py
from __future__ import annotations


class ExportMailError(Exception):
    """
    Error base del exportador. Cada subclase fija su categoría, que es lo que
    el CLI muestra junto al mensaje y la causa original.
    """
    category = "error"

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause

    def describe(self) -> str:
        text = f"{self.category}: {self.message}"
        if self.cause is not None:
            text += f" ({self.cause})"
        return text


class NotAuthenticated(ExportMailError):
    category = "not_authenticated"


class FolderNotFound(ExportMailError):
    category = "folder_not_found"


class TransientFetchError(ExportMailError):
    category = "transient_fetch_error"

    def __init__(
        self,
        message: str,
        *,
        cause: BaseException | None = None,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, cause=cause)
        self.status_code = status_code
        self.retry_after = retry_after


class GraphRequestError(ExportMailError):
    category = "graph_request_error"

    def __init__(self, message: str, *, cause: BaseException | None = None, status_code: int | None = None) -> None:
        super().__init__(message, cause=cause)
        self.status_code = status_code


class StageWriteError(ExportMailError):
    category = "stage_write_error"


class EncodeRecordError(ExportMailError):
    category = "encode_record_error"


class ArchiveWriteError(ExportMailError):
    category = "archive_write_error"


class FetchCancelled(ExportMailError):
    category = "cancelled"


class InvalidOptions(ExportMailError):
    category = "invalid_options"
