"""
Error taxonomy for the memory and checkpoint subsystems.

Every error carries the name of the operation that failed and a context map with the
key identifiers involved (thread id, collection, node ids, ...), so callers can diagnose
a failure without knowing which backend produced it.
"""

from typing import Any, Dict, List, Optional


class ThreadMemError(Exception):
    """Base class for all ThreadMem errors."""

    def __init__(self,
                 message: str,
                 operation: Optional[str] = None,
                 context: Optional[Dict[str, Any]] = None,
                 cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.context = context or {}
        self.cause = cause

    def detailed_message(self) -> str:
        """Get the error message with operation, context and cause appended."""
        parts = []
        if self.operation:
            parts.append(f'operation={self.operation}')
        parts.extend(f'{key}={value}' for key, value in self.context.items())
        text = f'{self.message} ({", ".join(parts)})' if parts else self.message
        if self.cause is not None:
            text += f'\nCaused by: {self.cause}'
        return text

    def to_dict(self) -> Dict[str, Any]:
        return {
            'error': type(self).__name__,
            'message': self.message,
            'operation': self.operation,
            'context': self.context,
            'cause': str(self.cause) if self.cause is not None else None,
        }


class ValidationError(ThreadMemError):
    """Bad input shape, rejected before any backend call."""
    pass


class InvalidInputError(ValidationError):
    """Invalid argument passed to a public operation."""
    pass


class InvalidNodeError(ValidationError):
    """Invalid graph node data or node id."""
    pass


class InvalidRelationshipError(ValidationError):
    """Invalid relationship type or endpoint."""
    pass


class SecurityError(ThreadMemError):
    """Raw query rejected by the destructive-keyword gate."""

    def __init__(self, message: str, keyword: str, operation: Optional[str] = 'execute_query'):
        super().__init__(message, operation=operation, context={'keyword': keyword})
        self.keyword = keyword


class StorageError(ThreadMemError):
    """Backend connectivity or execution failure."""
    pass


class VectorStoreError(StorageError):
    """Vector backend failure."""
    pass


class GraphOperationError(StorageError):
    """Graph backend failure."""
    pass


class MemoryStorageError(StorageError):
    """MemoryStore operation failure that must be surfaced to the caller."""
    pass


class TransactionError(ThreadMemError):
    """Failure inside a transactional callback. The original error is kept in ``cause``."""
    pass


class CheckpointError(ThreadMemError):
    """Checkpoint saver or registry failure."""
    pass


class SaverNotFoundError(CheckpointError):
    """Requested checkpoint saver is not registered."""

    def __init__(self, name: Optional[str], available: List[str]):
        target = f"'{name}'" if name else 'default saver'
        listing = ', '.join(available) if available else 'none'
        super().__init__(f'Checkpoint saver {target} not found. Available savers: {listing}',
                         operation='get_saver',
                         context={
                             'name': name,
                             'available': list(available)
                         })
        self.name = name
        self.available = list(available)
