"""
Error Taxonomy
==============

Exceptions raised by the synchronization core.

Categories:
- Validation: rejected synchronously, before any network attempt
- Network: a remote call failed, timed out, or the link could not open
- Not found: an operation referenced an id nobody tracks
- State: a frame was sent while the transport is disconnected
- Exhausted retry: a failed message used up its retry budget
"""

from typing import Optional


class ChatSyncError(Exception):
    """Base exception for all chatsync errors"""
    pass


class ValidationError(ChatSyncError):
    """Input rejected before any network attempt"""
    pass


class NetworkError(ChatSyncError):
    """A remote call failed or returned an error string"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RemoteTimeoutError(NetworkError):
    """A remote call did not complete before its deadline"""

    def __init__(self, operation: str, timeout: float):
        super().__init__(f"{operation} timed out after {timeout}s")
        self.operation = operation
        self.timeout = timeout


class ConnectionFailedError(NetworkError):
    """The transport link could not be opened"""
    pass


class NotFoundError(ChatSyncError):
    """Operation referenced an untracked id"""

    def __init__(self, resource: str, resource_id: str):
        super().__init__(f"{resource} with id {resource_id} not found")
        self.resource = resource
        self.resource_id = resource_id


class NotConnectedError(ChatSyncError):
    """Send attempted while the transport is not connected"""

    def __init__(self):
        super().__init__("Transport is not connected")


class RetryExhaustedError(ChatSyncError):
    """A failed message has no retry attempts left"""

    def __init__(self, message_id: str, attempts: int):
        super().__init__(
            f"Max retries exceeded for message {message_id} ({attempts} attempts)"
        )
        self.message_id = message_id
        self.attempts = attempts


class RetryNotReadyError(ValidationError):
    """
    Retry requested before the backoff window elapsed.

    Attributes:
        retry_in: Seconds left until the message becomes retryable
    """

    def __init__(self, message_id: str, retry_in: float):
        super().__init__(f"Retry for message {message_id} available in {retry_in:.1f}s")
        self.message_id = message_id
        self.retry_in = retry_in
