"""Retrying executor for outbound API calls.

One logical call is a sequence of strictly sequential attempts:

1. A fresh ``httpx.Request`` is built for every attempt from an immutable
   ``RequestSpec``, so a body is never consumed twice.
2. Responses below 400 are returned. Error responses have their body read
   for diagnostics; non-retryable statuses fail immediately.
3. For 429 the ``Retry-After`` header (integer seconds or an HTTP-date) sets
   the wait, clamped to ``max_delay``. Other statuses, unusable headers and
   transport failures use exponential backoff with jitter.
4. Backoff sleeps and in-flight requests race the caller's cancel event and
   deadline. Cancellation wins and raises RequestCancelledError, never the
   stale HTTP error.

Native task cancellation (``asyncio.CancelledError``) is not intercepted.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from collections.abc import Awaitable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any, TypeVar

import httpx

from .backoff import compute_for
from .classifier import (
    TransportErrorCategory,
    categorize_transport_error,
    is_retryable_status,
)
from .config import BackoffParameters
from .errors import (
    PermanentRemoteError,
    RequestCancelledError,
    RetriesExhaustedError,
    TransientRemoteError,
    TransportError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRY_AFTER_HEADER = "Retry-After"

# Error bodies longer than this are cut before being attached to errors
MAX_ERROR_BODY_BYTES = 64 * 1024


@dataclass(frozen=True)
class RequestSpec:
    """Everything needed to re-issue a request verbatim.

    The body is held as bytes so every attempt sends identical content.
    """

    method: str
    url: str
    body: bytes | None = None
    headers: Mapping[str, str] = field(default_factory=dict)
    params: Mapping[str, Any] | None = None
    timeout: float | None = None

    @classmethod
    def with_json(
        cls,
        method: str,
        url: str,
        payload: Any,
        headers: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> RequestSpec:
        """Build a spec whose body is ``payload`` serialised once to JSON."""
        merged = {"Content-Type": "application/json", **(headers or {})}
        body = None if payload is None else json.dumps(payload).encode("utf-8")
        return cls(method=method.upper(), url=url, body=body, headers=merged, timeout=timeout)


@dataclass(frozen=True)
class RequestAttempt:
    """One physical try of a logical call."""

    method: str
    target: str
    body: bytes | None
    attempt_number: int
    started_at: float


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of inspecting a failed attempt."""

    should_retry: bool
    wait_for: float
    reason: str


def parse_retry_after(
    value: str | None, max_delay: float, now: datetime | None = None
) -> float | None:
    """Parse a Retry-After header into seconds clamped to ``[0, max_delay]``.

    Accepts delay-seconds or an RFC 7231 HTTP-date. Returns None for
    missing, unparsable, zero or past values so the caller falls back to
    exponential backoff.
    """
    if not value:
        return None
    value = value.strip()

    if value.isdigit():
        seconds = int(value)
        if seconds <= 0:
            return None
        return float(min(seconds, max_delay))

    try:
        moment = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError, OverflowError):
        return None
    if moment is None:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)

    delay = (moment - (now or datetime.now(UTC))).total_seconds()
    if delay <= 0:
        return None
    return min(delay, max_delay)


def _remaining(deadline_at: float | None) -> float | None:
    if deadline_at is None:
        return None
    return max(0.0, deadline_at - time.monotonic())


async def race_cancellation(
    operation: Awaitable[T],
    cancel: asyncio.Event | None,
    deadline_at: float | None,
    what: str,
) -> T:
    """Await ``operation`` unless ``cancel`` fires or ``deadline_at`` passes first.

    Raises:
        RequestCancelledError: If the cancel signal or deadline won.
    """
    expired = deadline_at is not None and time.monotonic() >= deadline_at
    if (cancel is not None and cancel.is_set()) or expired:
        if asyncio.iscoroutine(operation):
            operation.close()
        reason = "deadline exceeded" if expired else "cancelled"
        raise RequestCancelledError(f"{reason} before {what}")

    task = asyncio.ensure_future(operation)
    waiter = asyncio.ensure_future(cancel.wait()) if cancel is not None else None
    watched: set[asyncio.Future[Any]] = {task}
    if waiter is not None:
        watched.add(waiter)

    try:
        done, _ = await asyncio.wait(
            watched, timeout=_remaining(deadline_at), return_when=asyncio.FIRST_COMPLETED
        )
    except BaseException:
        task.cancel()
        raise
    finally:
        if waiter is not None:
            waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    if cancel is not None and cancel.is_set():
        raise RequestCancelledError(f"cancelled during {what}")
    raise RequestCancelledError(f"deadline exceeded during {what}")


class RetryingRequestExecutor:
    """Owns the attempt loop for one outbound logical call at a time.

    The executor holds no per-call state, so one instance may serve many
    sequential calls. Per-call parameters override the instance defaults.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        params: BackoffParameters | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._client = client
        self._params = params or BackoffParameters()
        self._rng = rng

    @property
    def params(self) -> BackoffParameters:
        return self._params

    async def execute(
        self,
        request: RequestSpec,
        params: BackoffParameters | None = None,
        cancel: asyncio.Event | None = None,
        deadline: float | None = None,
    ) -> httpx.Response:
        """Issue ``request`` with retries.

        Args:
            request: The request to send.
            params: Overrides the executor's backoff parameters for this call.
            cancel: Setting this event aborts the call at the next suspension point.
            deadline: Seconds the whole call may take, across all attempts.

        Returns:
            The first response with a status below 400.

        Raises:
            PermanentRemoteError: Non-retryable status, with the body attached.
            TransportError: Non-retryable transport failure.
            RequestCancelledError: Cancel signal or deadline fired.
            RetriesExhaustedError: Retryable failures used up every attempt.
        """
        params = params or self._params
        deadline_at = time.monotonic() + deadline if deadline is not None else None
        last_error: Exception | None = None
        attempts = 0

        for attempt_number in range(params.max_attempts + 1):
            attempt = RequestAttempt(
                method=request.method,
                target=request.url,
                body=request.body,
                attempt_number=attempt_number,
                started_at=time.monotonic(),
            )
            attempts += 1

            try:
                response = await race_cancellation(
                    self._send(attempt, request), cancel, deadline_at, "request"
                )
            except (httpx.TransportError, OSError) as e:
                category = categorize_transport_error(e)
                if category is TransportErrorCategory.OTHER:
                    raise TransportError(f"{request.method} {request.url}: {e}") from e
                last_error = e
                if attempt_number >= params.max_attempts:
                    break
                decision = RetryDecision(
                    True, compute_for(attempt_number, params, self._rng), category.value
                )
                self._log_retry(attempt, decision, str(e))
                await race_cancellation(
                    asyncio.sleep(decision.wait_for), cancel, deadline_at, "backoff"
                )
                continue

            if response.status_code < 400:
                if attempt_number > 0:
                    logger.info(
                        "Request succeeded after retry",
                        extra={
                            "method": request.method,
                            "url": request.url,
                            "attempts": attempts,
                        },
                    )
                return response

            body = await self._read_error_body(response)
            if not is_retryable_status(response.status_code):
                raise PermanentRemoteError(response.status_code, response.reason_phrase, body)

            last_error = TransientRemoteError(response.status_code, response.reason_phrase, body)
            decision = self._decide_status(response, attempt_number, params)
            if not decision.should_retry:
                break
            self._log_retry(attempt, decision, str(last_error))
            await race_cancellation(
                asyncio.sleep(decision.wait_for), cancel, deadline_at, "backoff"
            )

        assert last_error is not None, "Retry loop completed without setting last_error"
        logger.warning(
            "Retries exhausted",
            extra={
                "method": request.method,
                "url": request.url,
                "attempts": attempts,
                "error": str(last_error),
            },
        )
        raise RetriesExhaustedError(last_error, attempts) from last_error

    async def _send(self, attempt: RequestAttempt, request: RequestSpec) -> httpx.Response:
        kwargs: dict[str, Any] = {"content": attempt.body, "headers": dict(request.headers)}
        if request.params is not None:
            kwargs["params"] = dict(request.params)
        if request.timeout is not None:
            kwargs["timeout"] = request.timeout
        http_request = self._client.build_request(attempt.method, attempt.target, **kwargs)
        logger.debug(
            "Sending request",
            extra={
                "method": attempt.method,
                "url": attempt.target,
                "attempt": attempt.attempt_number,
            },
        )
        return await self._client.send(http_request)

    async def _read_error_body(self, response: httpx.Response) -> str:
        try:
            content = await response.aread()
            return content[:MAX_ERROR_BODY_BYTES].decode("utf-8", errors="replace")
        except (httpx.HTTPError, OSError) as e:
            return f"(failed to read body: {e})"
        finally:
            await response.aclose()

    def _decide_status(
        self, response: httpx.Response, attempt_number: int, params: BackoffParameters
    ) -> RetryDecision:
        if attempt_number >= params.max_attempts:
            return RetryDecision(False, 0.0, "attempts exhausted")

        if response.status_code == 429:
            retry_after = parse_retry_after(
                response.headers.get(RETRY_AFTER_HEADER), params.max_delay
            )
            if retry_after is not None:
                return RetryDecision(True, retry_after, "rate limited (Retry-After)")

        wait = compute_for(attempt_number, params, self._rng)
        return RetryDecision(True, wait, f"status {response.status_code}")

    def _log_retry(self, attempt: RequestAttempt, decision: RetryDecision, error: str) -> None:
        logger.warning(
            "Retrying request",
            extra={
                "method": attempt.method,
                "url": attempt.target,
                "attempt": attempt.attempt_number,
                "wait_seconds": round(decision.wait_for, 3),
                "retry_reason": decision.reason,
                "error": error,
            },
        )
