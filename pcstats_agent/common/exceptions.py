"""
Custom Exception Classes for the PC Stats agent

Hierarchical exception structure for error handling across the agent.
"""


class PCStatsError(Exception):
    """Base exception for all PC Stats agent errors"""

    def __init__(self, message: str, recoverable: bool = True):
        self.message = message
        self.recoverable = recoverable
        super().__init__(message)


class ConfigError(PCStatsError):
    """Configuration-related errors"""

    def __init__(self, message: str, recoverable: bool = False):
        super().__init__(f"Config Error: {message}", recoverable)


class StoreError(PCStatsError):
    """Backing store rejected or failed an operation"""

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        status_code: int | None = None,
        recoverable: bool = True,
    ):
        self.operation = operation
        self.status_code = status_code
        super().__init__(f"Store Error: {message}", recoverable)


class StoreUnavailableError(StoreError):
    """Store could not be reached (connection refused, timeout, DNS)"""

    def __init__(self, message: str, operation: str | None = None):
        super().__init__(message, operation=operation, recoverable=True)


class RestoreError(StoreError):
    """A queued batch could not be restored into the store"""

    def __init__(self, message: str, batch_id: str | None = None):
        self.batch_id = batch_id
        super().__init__(f"Restore failed for batch {batch_id}: {message}", operation="restore_batch")


class QueueError(PCStatsError):
    """Local offline queue I/O failed (disk full, permission denied)"""

    def __init__(self, message: str, operation: str | None = None, path: str | None = None):
        self.operation = operation
        self.path = path
        super().__init__(f"Queue Error: {message}", recoverable=False)
