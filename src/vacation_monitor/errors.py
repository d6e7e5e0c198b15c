"""
Exception hierarchy for the vacation monitor worker.
"""

from typing import Optional


class VacationMonitorError(Exception):
    """Base class for all worker errors."""
    pass


class ConfigurationError(VacationMonitorError):
    """Raised when configuration values are missing or invalid."""
    pass


class LockStoreError(VacationMonitorError):
    """Base class for conditional-write failures against the lock store."""
    pass


class LockConflictError(LockStoreError):
    """Raised when a conditional create finds an existing record."""
    def __init__(self, message: str, lock_name: Optional[str] = None):
        super().__init__(message)
        self.lock_name = lock_name


class VersionMismatchError(LockStoreError):
    """Raised when a concurrent modification is detected."""
    def __init__(self, message: str, current_version: Optional[str], expected_version: Optional[str]):
        super().__init__(message)
        self.current_version = current_version
        self.expected_version = expected_version


class LockNotFoundError(LockStoreError):
    """Raised when a conditional write targets a record that no longer exists."""
    pass


class QueueError(VacationMonitorError):
    """Base class for queue transport errors."""
    pass


class MessageLockLostError(QueueError):
    """Raised when a message lock expired or was taken by another consumer."""
    def __init__(self, message: str, message_id: Optional[str] = None):
        super().__init__(message)
        self.message_id = message_id


class MessageFormatError(QueueError):
    """Raised when a message body cannot be decoded into a job."""
    pass


class JobError(VacationMonitorError):
    """Base class for errors raised while processing a job."""
    pass


class NonRetryableJobError(JobError):
    """A job that can never succeed; its message is removed, not redelivered."""
    pass


class SearchNotFoundError(NonRetryableJobError):
    """Raised when the search referenced by a job or update does not exist."""
    def __init__(self, search_id: str):
        super().__init__(f"Search not found: {search_id}")
        self.search_id = search_id
