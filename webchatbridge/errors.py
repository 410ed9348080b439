"""
Error taxonomy for WebChatBridge, plus helpers that classify raw automation exceptions
(playwright / camoufox) by their message.
"""

from . import constants


class BridgeError(Exception):
    """Base class for every error raised by the bridge core."""


class TransientAutomationError(BridgeError):
    """Recoverable in place: retried with backoff, invisible to the caller unless retries exhaust."""


class SessionUnavailable(BridgeError):
    """The pool could not produce a live session after bounded retries."""

    def __init__(self, identity_key: str, attempts: int, last_error: BaseException | None = None):
        self.identity_key = identity_key
        self.attempts = attempts
        self.last_error = last_error
        detail = f": {last_error}" if last_error is not None else ""
        super().__init__(f"No live session for {identity_key} after {attempts} attempts{detail}")


class LoginRequired(BridgeError):
    """The identity has not completed login verification."""

    def __init__(self, identity_key: str):
        self.identity_key = identity_key
        super().__init__(f"Identity {identity_key} is not logged in")


class ExchangeTimeout(BridgeError):
    """The hard wall-clock ceiling was reached before any text was collected."""


class UpstreamUnrecoverable(BridgeError):
    """A non-transient automation failure with zero collected text."""


class LoginFlowError(BridgeError):
    """An operation was attempted in a login state that does not allow it."""


def _message(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


def is_page_closed_error(exc: BaseException) -> bool:
    message = _message(exc)
    return any(marker in message for marker in constants.PAGE_CLOSED_ERROR_MARKERS)


def is_engine_gone_error(exc: BaseException) -> bool:
    message = _message(exc)
    return any(marker in message for marker in constants.ENGINE_GONE_ERROR_MARKERS)


def is_transient_error(exc: BaseException) -> bool:
    if isinstance(exc, TransientAutomationError):
        return True
    if is_page_closed_error(exc) or is_engine_gone_error(exc):
        return False
    message = _message(exc)
    return any(marker in message for marker in constants.TRANSIENT_ERROR_MARKERS)
