"""Classification of HTTP statuses and transport errors as retryable.

Transport errors are categorised by structured introspection of the
exception and its cause chain first. Matching on the error message is kept
only as a last resort: the substrings below describe one runtime's error
text and may misclassify errors raised elsewhere.
"""

from __future__ import annotations

import asyncio
import socket
from enum import Enum

import httpx

RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({429, 500, 502, 503, 504})


class TransportErrorCategory(str, Enum):
    """Why a request produced no response."""

    TIMEOUT = "timeout"
    CONNECTION_REFUSED = "connection_refused"
    CONNECTION_RESET = "connection_reset"
    BROKEN_PIPE = "broken_pipe"
    PREMATURE_CLOSE = "premature_close"
    OTHER = "other"


# Last-resort message fragments; lowercase ones match case-insensitively
_MESSAGE_FRAGMENTS: tuple[tuple[str, TransportErrorCategory], ...] = (
    ("connection refused", TransportErrorCategory.CONNECTION_REFUSED),
    ("connection reset", TransportErrorCategory.CONNECTION_RESET),
    ("broken pipe", TransportErrorCategory.BROKEN_PIPE),
    ("unexpected EOF", TransportErrorCategory.PREMATURE_CLOSE),
    ("EOF", TransportErrorCategory.PREMATURE_CLOSE),
)

# Exception chains deeper than this are not walked
_MAX_CHAIN_DEPTH = 10


def is_retryable_status(status_code: int) -> bool:
    """Check if an HTTP status code should trigger a retry."""
    return status_code in RETRYABLE_STATUS_CODES


def _structured_category(exc: BaseException) -> TransportErrorCategory:
    if isinstance(exc, (httpx.TimeoutException, TimeoutError, socket.timeout)):
        return TransportErrorCategory.TIMEOUT
    if isinstance(exc, ConnectionRefusedError):
        return TransportErrorCategory.CONNECTION_REFUSED
    if isinstance(exc, ConnectionResetError):
        return TransportErrorCategory.CONNECTION_RESET
    if isinstance(exc, BrokenPipeError):
        return TransportErrorCategory.BROKEN_PIPE
    if isinstance(exc, (httpx.RemoteProtocolError, asyncio.IncompleteReadError, EOFError)):
        return TransportErrorCategory.PREMATURE_CLOSE
    return TransportErrorCategory.OTHER


def _chain(exc: BaseException) -> list[BaseException]:
    seen: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None and current not in seen and len(seen) < _MAX_CHAIN_DEPTH:
        seen.append(current)
        current = current.__cause__ or current.__context__
    return seen


def categorize_transport_error(exc: BaseException) -> TransportErrorCategory:
    """Categorise a transport failure.

    Walks the exception and its ``__cause__``/``__context__`` chain looking
    for a structured signal, then falls back to message matching.
    """
    chain = _chain(exc)

    for link in chain:
        category = _structured_category(link)
        if category is not TransportErrorCategory.OTHER:
            return category

    for link in chain:
        message = str(link)
        lowered = message.lower()
        for fragment, category in _MESSAGE_FRAGMENTS:
            if fragment == fragment.lower():
                if fragment in lowered:
                    return category
            elif fragment in message:
                return category

    return TransportErrorCategory.OTHER


def is_retryable_error(exc: BaseException | None) -> bool:
    """Check if a transport error should trigger a retry."""
    if exc is None:
        return False
    return categorize_transport_error(exc) is not TransportErrorCategory.OTHER
