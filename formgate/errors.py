"""Errors that carry the HTTP status and message to send back to a client."""

from __future__ import annotations


class SentinelHTTPError(Exception):
    """An error whose status and message are safe to send as the response.

    Do not put sensitive details in the message: it ends up in the
    response body.
    """

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status
        self.message = message

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return f"SentinelHTTPError({self.status!r}, {self.message!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SentinelHTTPError):
            return NotImplemented
        return (self.status, self.message) == (other.status, other.message)

    def __hash__(self) -> int:
        return hash((self.status, self.message))

    def http_error(self) -> tuple[int, str]:
        """Return the status and the message."""
        return self.status, self.message


class WrappedHTTPError(Exception):
    """An internal error paired with the HTTP error shown to the client.

    The wrapped error is meant for the logs; the sentinel is what the
    client receives.
    """

    def __init__(self, error: BaseException, sentinel: SentinelHTTPError) -> None:
        super().__init__(str(error))
        self.error = error
        self.sentinel = sentinel
        self.__cause__ = error

    def __str__(self) -> str:
        return str(self.error)

    def __repr__(self) -> str:
        return f"WrappedHTTPError({self.error!r}, {self.sentinel!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, WrappedHTTPError):
            return NotImplemented
        return self.error == other.error and self.sentinel == other.sentinel

    def __hash__(self) -> int:
        return hash((id(self.error), self.sentinel))

    def http_error(self) -> tuple[int, str]:
        """Return the status and the message of the sentinel."""
        return self.sentinel.http_error()

    def is_sentinel(self, err: object) -> bool:
        """Tell whether ``err`` is the sentinel this error carries."""
        return self.sentinel == err


def wrap_error(err: BaseException, sentinel: SentinelHTTPError) -> WrappedHTTPError:
    """Pair ``err`` (logged) with ``sentinel`` (sent in the response)."""
    return WrappedHTTPError(err, sentinel)