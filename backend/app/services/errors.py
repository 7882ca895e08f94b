"""Domain exceptions raised by the messaging services."""

from __future__ import annotations

from fastapi import status


class MessagingError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    default_detail = "Request could not be processed"

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class UnauthorizedError(MessagingError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_detail = "Authentication required"


class ForbiddenError(MessagingError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Access denied"


class NotFoundError(MessagingError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Message not found"


class MessageValidationError(MessagingError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Invalid message request"


class TransientStoreError(MessagingError):
    """The message store failed twice in a row; the caller may retry later."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = "Message store is temporarily unavailable"


class ChannelWriteFailure(Exception):
    """A single delivery connection rejected an event.

    Handled inside the delivery channel and never propagated to HTTP callers.
    """

    def __init__(self, connection_id: str, reason: str) -> None:
        self.connection_id = connection_id
        self.reason = reason
        super().__init__(f"write to {connection_id} failed: {reason}")
