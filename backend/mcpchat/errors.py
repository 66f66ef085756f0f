"""
Error taxonomy.

Every failure the coordinator can turn into a terminal event has its own
type. The message is already human readable; the coordinator interpolates
it into the text shown to the user.
"""
from typing import Optional


class StreamingError(Exception):
    """Base error for the streaming core."""

    status_code: int = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)


class Unauthenticated(StreamingError):
    status_code = 401


class NotFound(StreamingError):
    status_code = 404


class NoActiveConnection(StreamingError):
    status_code = 409


class UpstreamUnreachable(StreamingError):
    status_code = 502


class Timeout(StreamingError):
    status_code = 504


class UpstreamProtocolError(StreamingError):
    status_code = 502


class EmptyResponse(StreamingError):
    status_code = 502


class PersistenceFailure(StreamingError):
    status_code = 500
