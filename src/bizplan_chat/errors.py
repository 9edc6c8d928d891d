from __future__ import annotations


class ChatError(Exception):
    """Base class for every error raised by the chat coordinator."""


class ValidationError(ChatError):
    def __init__(self, message: str, problems: list[str] | None = None):
        super().__init__(message)
        self.problems = list(problems or [])


class QuotaExceeded(ChatError):
    """The usage gate refused the send; no message was recorded."""


class SessionBusy(ChatError):
    """A response is already in flight for this session."""


class SessionNotFound(ChatError):
    pass


class TransportFailure(ChatError):
    """A remote call failed.

    ``transient`` decides whether the retry coordinator may try again.
    """

    transient = False

    def __init__(
        self,
        message: str,
        *,
        transient: bool | None = None,
        status_code: int | None = None,
        code: str | None = None,
    ):
        super().__init__(message)
        if transient is not None:
            self.transient = transient
        self.status_code = status_code
        self.code = code


class NetworkError(TransportFailure):
    transient = True


class ServerError(TransportFailure):
    transient = True


class RemoteQuotaError(TransportFailure):
    transient = False


class InvalidTransition(ChatError):
    """Illegal change to a message. Indicates a bug in the caller."""


class SingleFlightViolation(InvalidTransition):
    pass


class MessageNotFound(InvalidTransition):
    pass


class CreationExhausted(ChatError):
    def __init__(self, message: str, *, attempt: int, max_attempts: int, last_error: BaseException | None = None):
        super().__init__(message)
        self.attempt = attempt
        self.max_attempts = max_attempts
        self.last_error = last_error
