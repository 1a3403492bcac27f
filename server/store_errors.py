from typing import Optional


class DocumentStoreError(Exception):
    """Base exception for all document store errors."""
    pass


class ConfigurationError(DocumentStoreError):
    """
    Raised when the table or codec configuration cannot serve a request:
    unreachable table description, malformed index metadata, numbers outside
    the encodable range. Never retried.
    """
    pass


class LogicalInputError(DocumentStoreError, ValueError):
    """Raised for malformed filters, sorts or records, before any backend call."""
    pass


class BackendCallError(DocumentStoreError):
    """
    Raised when a physical backend operation fails.

    For batch operations chunk_index is the position of the chunk that failed;
    chunks before it were applied, chunks after it were never sent.
    """

    def __init__(self, message: str, operation: Optional[str] = None, chunk_index: Optional[int] = None):
        super().__init__(message)
        self.operation = operation
        self.chunk_index = chunk_index

    def __str__(self) -> str:
        msg = super().__str__()
        if self.chunk_index is not None:
            return f"{msg} (chunk {self.chunk_index})"
        return msg

    def to_dict(self) -> dict:
        return {
            "message": super().__str__(),
            "operation": self.operation,
            "chunk_index": self.chunk_index,
        }
