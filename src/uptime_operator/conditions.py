"""Status conditions and notification events.

Conditions are durable: they are written onto the resource record's status.
Events are best-effort notifications mirroring each transition; a missing
recorder is a no-op and a failing recorder never fails the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol

from .models import Condition, ResourceRecord, ResourceRef
from .store import ResourceStore, mutate

logger = logging.getLogger(__name__)

# Standard condition types for all kinds
TYPE_READY = "Ready"
TYPE_SYNCED = "Synced"
TYPE_ERROR = "Error"
TYPE_DELETING = "Deleting"

# Standard condition reasons
REASON_RECONCILE_SUCCESS = "ReconcileSuccess"
REASON_RECONCILE_ERROR = "ReconcileError"
REASON_SYNC_SUCCESS = "SyncSuccess"
REASON_SYNC_ERROR = "SyncError"
REASON_SYNC_SKIPPED = "SyncSkipped"
REASON_API_ERROR = "APIError"
REASON_SECRET_NOT_FOUND = "SecretNotFound"

# Deletion condition reasons
REASON_CLEANUP_STARTED = "CleanupStarted"
REASON_CLEANUP_IN_PROGRESS = "CleanupInProgress"
REASON_CLEANUP_SUCCESS = "CleanupSuccess"
REASON_CLEANUP_SKIPPED = "CleanupSkipped"
REASON_CLEANUP_TIMEOUT = "CleanupTimeout"
REASON_CLEANUP_ERROR = "CleanupError"

EVENT_NORMAL = "Normal"
EVENT_WARNING = "Warning"


def set_condition(
    conditions: list[Condition],
    condition_type: str,
    status: bool | str,
    reason: str,
    message: str,
    observed_generation: int,
    now: datetime | None = None,
) -> Condition:
    """Set or update a condition in ``conditions``.

    The transition time only moves when status, reason or message change.
    observed_generation is always refreshed so consumers know the latest
    generation was evaluated.
    """
    if isinstance(status, bool):
        status = "True" if status else "False"
    now = now or datetime.now(UTC)

    for condition in conditions:
        if condition.type == condition_type:
            if (
                condition.status != status
                or condition.reason != reason
                or condition.message != message
            ):
                condition.status = status
                condition.reason = reason
                condition.message = message
                condition.last_transition_time = now
            condition.observed_generation = observed_generation
            return condition

    condition = Condition(
        type=condition_type,
        status=status,
        reason=reason,
        message=message,
        observed_generation=observed_generation,
        last_transition_time=now,
    )
    conditions.append(condition)
    return condition


def find_condition(conditions: list[Condition], condition_type: str) -> Condition | None:
    for condition in conditions:
        if condition.type == condition_type:
            return condition
    return None


def set_ready_condition(
    conditions: list[Condition], ready: bool, reason: str, message: str, observed_generation: int
) -> None:
    set_condition(conditions, TYPE_READY, ready, reason, message, observed_generation)


def set_synced_condition(
    conditions: list[Condition], synced: bool, reason: str, message: str, observed_generation: int
) -> None:
    set_condition(conditions, TYPE_SYNCED, synced, reason, message, observed_generation)


def set_error_condition(
    conditions: list[Condition], has_error: bool, reason: str, message: str, observed_generation: int
) -> None:
    set_condition(conditions, TYPE_ERROR, has_error, reason, message, observed_generation)


@dataclass(frozen=True)
class Event:
    """A notification about a resource transition."""

    ref: ResourceRef
    event_type: str
    reason: str
    message: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


class EventRecorder(Protocol):
    def record(self, event: Event) -> None: ...


class InMemoryEventRecorder:
    """Keeps events in a list."""

    def __init__(self) -> None:
        self.events: list[Event] = []

    def record(self, event: Event) -> None:
        self.events.append(event)

    def reasons(self) -> list[str]:
        return [e.reason for e in self.events]


class LoggingEventRecorder:
    """Emits events as structured log lines."""

    def __init__(self, logger_name: str = "uptime_operator.events") -> None:
        self._logger = logging.getLogger(logger_name)

    def record(self, event: Event) -> None:
        level = logging.WARNING if event.event_type == EVENT_WARNING else logging.INFO
        self._logger.log(
            level,
            event.message,
            extra={
                "resource": str(event.ref),
                "event_type": event.event_type,
                "reason": event.reason,
            },
        )


class ConditionReporter:
    """Records the Deleting condition and mirrors it as an event.

    Conditions are written through to the store under optimistic
    concurrency so they survive a restart between passes.
    """

    def __init__(self, store: ResourceStore, recorder: EventRecorder | None = None) -> None:
        self._store = store
        self._recorder = recorder

    async def report(
        self,
        record: ResourceRecord,
        reason: str,
        message: str,
        event_type: str | None = None,
    ) -> ResourceRecord:
        """Persist a Deleting condition and, if ``event_type`` is set, emit an event.

        Returns the freshly stored record; ``record`` is updated in place too.
        """
        generation = record.metadata.generation
        set_condition(record.status.conditions, TYPE_DELETING, True, reason, message, generation)

        def change(latest: ResourceRecord) -> bool:
            set_condition(
                latest.status.conditions, TYPE_DELETING, True, reason, message, generation
            )
            latest.status.observed_generation = generation
            return True

        stored = await mutate(self._store, record.ref, change)

        if event_type is not None:
            self.emit(record.ref, event_type, reason, message)
        return stored

    def emit(self, ref: ResourceRef, event_type: str, reason: str, message: str) -> None:
        """Best-effort event emission."""
        if self._recorder is None:
            return
        try:
            self._recorder.record(Event(ref=ref, event_type=event_type, reason=reason, message=message))
        except Exception as e:
            logger.warning(
                "Failed to record event",
                extra={"resource": str(ref), "reason": reason, "error": str(e)},
            )
