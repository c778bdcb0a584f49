from __future__ import annotations

from typing import Optional

MISSING_MESSAGE = "Parameter 'message' is required"


class RelayError(RuntimeError):
    ...


class InvalidArgument(RelayError, ValueError):
    def __init__(self, message: str = MISSING_MESSAGE) -> None:
        super().__init__(message)


class UpstreamFailure(RelayError):
    """A backend call could not produce a result.

    ``message`` is what clients get to see on streaming paths: the error text
    when there is one, otherwise the class name of the underlying cause.
    """

    def __init__(self, message: Optional[str] = None, cause: Optional[BaseException] = None) -> None:
        self.cause = cause
        if not message and cause is not None:
            message = str(cause) or type(cause).__name__
        super().__init__(message or type(self).__name__)

    @property
    def message(self) -> str:
        return str(self)


class CredentialUnavailable(UpstreamFailure):
    ...
