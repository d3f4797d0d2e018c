"""Finalizer-driven deletion cleanup with retry and a hard deadline.

Each reconciliation pass for a deleting resource calls
``CleanupOrchestrator.handle`` once. The pass reads the durable cleanup
start time from the record's annotations (recording it on the first pass),
then either:

- skips cleanup because the skip annotation is set (force remove),
- gives up because the deadline passed (force remove),
- or invokes the idempotent delete action, returning success or a requeue
  delay that grows as the deadline approaches.

The start time lives on the record, not in memory, so the deadline holds
across process restarts. The orchestrator never loops internally; the
owning reconciliation loop decides when to call again.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

from .backoff import compute_cleanup_backoff
from .conditions import (
    EVENT_NORMAL,
    EVENT_WARNING,
    REASON_CLEANUP_ERROR,
    REASON_CLEANUP_IN_PROGRESS,
    REASON_CLEANUP_SKIPPED,
    REASON_CLEANUP_STARTED,
    REASON_CLEANUP_SUCCESS,
    REASON_CLEANUP_TIMEOUT,
    ConditionReporter,
    EventRecorder,
)
from .config import DEFAULT_CLEANUP_TIMEOUT_SECONDS, CleanupBackoffParameters, OperatorConfig
from .errors import CleanupActionFailedError
from .models import ResourceRef
from .store import ResourceStore, format_timestamp, get_or_set_once, parse_timestamp

logger = logging.getLogger(__name__)

# Lets users force-skip cleanup if the API is permanently unreachable
SKIP_CLEANUP_ANNOTATION = "uptimerobot.com/skip-cleanup"
# Tracks when cleanup first started
CLEANUP_START_TIME_ANNOTATION = "uptimerobot.com/cleanup-start-time"

CleanupAction = Callable[[], Awaitable[None]]


class CleanupState(str, Enum):
    """Where a cleanup pass ended up."""

    FORCE_SKIP = "ForceSkip"
    TIMED_OUT = "TimedOut"
    IN_PROGRESS = "InProgress"
    SUCCEEDED = "Succeeded"
    FAILED_RETRY = "FailedRetry"


@dataclass
class CleanupOutcome:
    """Result of one cleanup pass.

    The owning loop removes the finalizer only when ``success`` or
    ``force_remove`` is set, and otherwise calls again after
    ``requeue_after`` seconds.
    """

    state: CleanupState
    success: bool
    force_remove: bool
    requeue_after: float = 0.0
    message: str = ""
    error: Exception | None = None

    @property
    def finished(self) -> bool:
        return self.success or self.force_remove


@dataclass
class CleanupSession:
    """Progress of one resource's cleanup across passes."""

    ref: ResourceRef
    started_at: datetime
    timeout: float
    last_error: Exception | None = None

    def elapsed(self, now: datetime) -> float:
        return max(0.0, (now - self.started_at).total_seconds())

    def elapsed_fraction(self, now: datetime) -> float:
        return self.elapsed(now) / self.timeout


def format_duration(seconds: float) -> str:
    """Render seconds as e.g. ``1h2m3s``, ``4m0s`` or ``30s``."""
    total = int(round(seconds))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


def skip_requested(annotations: dict[str, str]) -> bool:
    return annotations.get(SKIP_CLEANUP_ANNOTATION, "").strip().lower() == "true"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class CleanupOrchestrator:
    """Per-resource deletion state machine.

    Stateless between passes; everything that must survive a restart is on
    the resource record.
    """

    def __init__(
        self,
        store: ResourceStore,
        recorder: EventRecorder | None = None,
        timeout: float = DEFAULT_CLEANUP_TIMEOUT_SECONDS,
        backoff: CleanupBackoffParameters | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if timeout <= 0:
            raise ValueError("cleanup timeout must be positive")
        self._store = store
        self._reporter = ConditionReporter(store, recorder)
        self._timeout = timeout
        self._backoff = backoff or CleanupBackoffParameters()
        self._clock = clock or _utcnow

    @classmethod
    def from_config(
        cls,
        config: OperatorConfig,
        store: ResourceStore,
        recorder: EventRecorder | None = None,
    ) -> CleanupOrchestrator:
        return cls(
            store,
            recorder=recorder,
            timeout=config.cleanup_timeout_seconds,
            backoff=config.cleanup_backoff,
        )

    @property
    def timeout(self) -> float:
        return self._timeout

    def _resolve_timeout(self, timeout: float | None) -> float:
        if timeout is None:
            return self._timeout
        if timeout <= 0:
            raise ValueError("cleanup timeout must be positive")
        return timeout

    async def start_session(self, ref: ResourceRef, timeout: float | None = None) -> CleanupSession:
        """Load the session for ``ref``, durably recording its start if needed.

        An unparsable stored start time is treated as absent and replaced.
        """
        timeout = self._resolve_timeout(timeout)
        record = await self._store.get(ref)
        started_at = parse_timestamp(
            record.metadata.annotations.get(CLEANUP_START_TIME_ANNOTATION, "")
        )
        if started_at is not None:
            return CleanupSession(ref=ref, started_at=started_at, timeout=timeout)

        value, written = await get_or_set_once(
            self._store,
            ref,
            CLEANUP_START_TIME_ANNOTATION,
            format_timestamp(self._clock()),
            is_valid=lambda v: parse_timestamp(v) is not None,
        )
        started_at = parse_timestamp(value)
        assert started_at is not None

        if written:
            message = f"Cleanup started (timeout: {format_duration(timeout)})"
            logger.info(message, extra={"resource": str(ref), "started_at": value})
            self._reporter.emit(ref, EVENT_NORMAL, REASON_CLEANUP_STARTED, message)

        return CleanupSession(ref=ref, started_at=started_at, timeout=timeout)

    async def handle(
        self,
        ref: ResourceRef,
        action: CleanupAction,
        timeout: float | None = None,
    ) -> CleanupOutcome:
        """Run one cleanup pass for ``ref``.

        Args:
            ref: The deleting resource.
            action: Idempotent delete of the external object; already-gone
                must count as success.
            timeout: Overrides the orchestrator's cleanup deadline.
        """
        timeout = self._resolve_timeout(timeout)
        record = await self._store.get(ref)

        if skip_requested(record.metadata.annotations):
            msg = "Cleanup skipped due to skip-cleanup annotation"
            await self._reporter.report(record, REASON_CLEANUP_SKIPPED, msg, EVENT_WARNING)
            logger.warning(msg, extra={"resource": str(ref)})
            return CleanupOutcome(
                state=CleanupState.FORCE_SKIP, success=True, force_remove=True, message=msg
            )

        session = await self.start_session(ref, timeout)
        record = await self._store.get(ref)
        now = self._clock()
        elapsed = session.elapsed(now)

        if elapsed > session.timeout:
            msg = (
                f"Cleanup timed out after {format_duration(session.timeout)}, "
                "force-removing finalizer"
            )
            await self._reporter.report(record, REASON_CLEANUP_TIMEOUT, msg, EVENT_WARNING)
            # Operators need to check for an orphaned external object
            logger.error(
                msg,
                extra={
                    "resource": str(ref),
                    "elapsed_seconds": round(elapsed, 1),
                    "timeout_seconds": session.timeout,
                },
            )
            return CleanupOutcome(
                state=CleanupState.TIMED_OUT, success=False, force_remove=True, message=msg
            )

        msg = (
            f"Cleanup in progress (elapsed: {format_duration(elapsed)}, "
            f"timeout: {format_duration(session.timeout)})"
        )
        record = await self._reporter.report(record, REASON_CLEANUP_IN_PROGRESS, msg)

        try:
            await action()
        except Exception as e:
            session.last_error = e
            backoff = compute_cleanup_backoff(session.elapsed_fraction(now), self._backoff)
            msg = f"Cleanup failed: {e} (will retry in {format_duration(backoff)})"
            await self._reporter.report(record, REASON_CLEANUP_ERROR, msg, EVENT_WARNING)
            logger.warning(
                "Cleanup failed, requeueing",
                extra={
                    "resource": str(ref),
                    "error": str(e),
                    "elapsed_seconds": round(elapsed, 1),
                    "requeue_after_seconds": backoff,
                },
            )
            error = CleanupActionFailedError(ref, e)
            error.__cause__ = e
            return CleanupOutcome(
                state=CleanupState.FAILED_RETRY,
                success=False,
                force_remove=False,
                requeue_after=backoff,
                message=msg,
                error=error,
            )

        msg = "Cleanup completed successfully"
        await self._reporter.report(record, REASON_CLEANUP_SUCCESS, msg, EVENT_NORMAL)
        logger.info(msg, extra={"resource": str(ref), "elapsed_seconds": round(elapsed, 1)})
        return CleanupOutcome(
            state=CleanupState.SUCCEEDED, success=True, force_remove=False, message=msg
        )
