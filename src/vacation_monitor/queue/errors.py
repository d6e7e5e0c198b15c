"""
Retry classification for job failures.
"""

from ..errors import NonRetryableJobError

# Substrings marking a permanent failure (the referenced entity is gone).
# Matched case-sensitively.
NON_RETRYABLE_MARKERS = (
    'not found',
    'does not exist',
)


def is_non_retryable(error: BaseException) -> bool:
    """
    Decide whether a failed job should be dropped instead of redelivered.

    Args:
        error: Exception raised by the job handler

    Returns:
        True for permanent failures (the message is completed), False for
        everything else (the message is abandoned and retried)
    """
    if isinstance(error, NonRetryableJobError):
        return True

    message = str(error)
    return any(marker in message for marker in NON_RETRYABLE_MARKERS)
