"""
Best-effort classification of raw driver errors for status reporting.

pcsc-lite and WinSCard only hand us human-readable text, so this matches
known error identifiers by substring. Nothing else in the bridge depends
on the result: it only feeds `status()`.
"""

import time
from dataclasses import dataclass
from enum import Enum


class ErrorCode(str, Enum):
    PCSC_SERVICE_NOT_RUNNING = "PCSC_SERVICE_NOT_RUNNING"
    NO_READERS = "NO_READERS"
    UNKNOWN = "UNKNOWN"


# Upper-cased signatures, checked in order
_SIGNATURES = [
    (ErrorCode.PCSC_SERVICE_NOT_RUNNING, ("SCARD_E_NO_SERVICE", "SERVICE NOT RUNNING")),
    (ErrorCode.NO_READERS, ("SCARD_E_NO_READERS_AVAILABLE", "NO READERS AVAILABLE")),
]


@dataclass(frozen=True)
class ErrorInfo:
    code: ErrorCode
    message: str
    at: int  # epoch milliseconds


def error_message(err) -> str:
    """Text of an exception or any other error value."""
    text = str(err)
    if not text and isinstance(err, BaseException):
        return type(err).__name__
    return text


def classify_error(err, now=None) -> ErrorInfo | None:
    """
    Classify a raw error (exception or string).
    Returns None for a None input, which callers use to clear their
    stored error.
    """
    if err is None:
        return None
    message = error_message(err)
    upper = message.upper()
    code = ErrorCode.UNKNOWN
    for candidate, needles in _SIGNATURES:
        if any(needle in upper for needle in needles):
            code = candidate
            break
    at = int((time.time() if now is None else now) * 1000)
    return ErrorInfo(code=code, message=message, at=at)
