"""Finalizer handling for the owning reconciliation loop.

The finalizer keeps a resource record from being erased until its external
object is cleaned up. ``FinalizerHandler.finalize`` runs one cleanup pass
and removes the finalizer only once cleanup succeeded or was forced.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass

from .cleanup import CleanupAction, CleanupOrchestrator, CleanupOutcome
from .errors import ResourceNotFoundError, UptimeOperatorError
from .models import ResourceRecord, ResourceRef
from .store import ResourceStore, mutate

logger = logging.getLogger(__name__)

FINALIZER_NAME = "uptimerobot.com/finalizer"

# Delay before retrying a pass that failed on the store itself
ERROR_REQUEUE_SECONDS = 30.0


@dataclass
class FinalizeResult:
    """What the owning loop should do next for a deleting resource."""

    done: bool
    requeue_after: float = 0.0
    outcome: CleanupOutcome | None = None


class FinalizerHandler:
    """Connects the cleanup orchestrator to finalizer bookkeeping."""

    def __init__(
        self,
        store: ResourceStore,
        orchestrator: CleanupOrchestrator,
        finalizer: str = FINALIZER_NAME,
    ) -> None:
        self._store = store
        self._orchestrator = orchestrator
        self._finalizer = finalizer

    async def ensure_finalizer(self, ref: ResourceRef) -> ResourceRecord:
        """Add the finalizer before the external object is created."""

        def change(record: ResourceRecord) -> bool:
            if record.is_deleting or record.has_finalizer(self._finalizer):
                return False
            record.metadata.finalizers.append(self._finalizer)
            return True

        return await mutate(self._store, ref, change)

    async def remove_finalizer(self, ref: ResourceRef) -> None:
        def change(record: ResourceRecord) -> bool:
            if not record.has_finalizer(self._finalizer):
                return False
            record.metadata.finalizers.remove(self._finalizer)
            return True

        try:
            await mutate(self._store, ref, change)
        except ResourceNotFoundError:
            # Already erased
            return

    async def finalize(
        self,
        ref: ResourceRef,
        action: CleanupAction,
        timeout: float | None = None,
    ) -> FinalizeResult:
        """Run one deletion pass for ``ref``.

        Records that are not being deleted, or no longer carry the
        finalizer, are left alone.
        """
        try:
            record = await self._store.get(ref)
        except ResourceNotFoundError:
            return FinalizeResult(done=True)

        if not record.is_deleting:
            return FinalizeResult(done=False)
        if not record.has_finalizer(self._finalizer):
            return FinalizeResult(done=True)

        outcome = await self._orchestrator.handle(ref, action, timeout=timeout)

        if not outcome.finished:
            return FinalizeResult(done=False, requeue_after=outcome.requeue_after, outcome=outcome)

        await self.remove_finalizer(ref)
        logger.info(
            "Finalizer removed",
            extra={
                "resource": str(ref),
                "cleanup_state": outcome.state.value,
                "forced": outcome.force_remove,
            },
        )
        return FinalizeResult(done=True, outcome=outcome)

    async def run(
        self,
        ref: ResourceRef,
        action_for: Callable[[ResourceRecord], CleanupAction],
        shutdown: asyncio.Event,
        timeout: float | None = None,
    ) -> FinalizeResult:
        """Repeat deletion passes for ``ref`` until finalized or shut down.

        Waits between passes honor each outcome's requeue delay and wake
        immediately on shutdown. Store errors are logged and retried.
        """
        result = FinalizeResult(done=False)
        while not shutdown.is_set():
            try:
                record = await self._store.get(ref)
                if not record.is_deleting:
                    return FinalizeResult(done=False)
                result = await self.finalize(ref, action_for(record), timeout=timeout)
                requeue_after = result.requeue_after
            except ResourceNotFoundError:
                return FinalizeResult(done=True, outcome=result.outcome)
            except UptimeOperatorError as e:
                logger.error(
                    "Deletion pass failed",
                    extra={"resource": str(ref), "error": str(e), "error_type": type(e).__name__},
                )
                requeue_after = ERROR_REQUEUE_SECONDS

            if result.done:
                return result

            try:
                await asyncio.wait_for(shutdown.wait(), timeout=requeue_after)
            except TimeoutError:
                pass

        logger.info("Shutdown before finalization completed", extra={"resource": str(ref)})
        return result
