"""Import job coordination: admission, cancellation and status broadcasting."""

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional

from services.notion_reader.retry import user_message
from services.sync_service.notifications import StatusBroadcaster, StatusListener
from shared.cancellation import CancellationToken
from shared.errors import ImportCancelledError, ImportRejectedError
from shared.models import (
    EntityType,
    ImportJobStatus,
    ImportQueueStatus,
    JobState,
    SyncSummary,
    utc_now,
)

logger = logging.getLogger(__name__)

ImportRunner = Callable[[CancellationToken], Awaitable[SyncSummary]]


class AdmissionPolicy(str, Enum):
    """What to do with a sync request while another import runs."""
    REJECT = "reject"
    QUEUE = "queue"


@dataclass
class ImportJob:
    entity_type: EntityType
    token: CancellationToken
    settled: asyncio.Event


class ImportJobCoordinator:
    """
    Ensures only ONE import runs at a time across all entity types.

    Each entity type moves through idle -> queued -> running ->
    completed/cancelled/error and back to idle once the display hold
    expires (or right away when a new sync of that type is admitted).
    Every transition publishes an ImportQueueStatus snapshot.
    """

    def __init__(
        self,
        admission_policy: AdmissionPolicy = AdmissionPolicy.REJECT,
        display_hold_seconds: Optional[float] = 3.0,
        broadcaster: Optional[StatusBroadcaster] = None
    ):
        """
        Initialize the coordinator.

        Args:
            admission_policy: Reject or queue requests made while an import runs
            display_hold_seconds: How long a terminal status stays visible before
                resetting to idle; None keeps it until the next request
            broadcaster: Channel used to publish status snapshots
        """
        self.admission_policy = AdmissionPolicy(admission_policy)
        self.display_hold_seconds = display_hold_seconds
        self.broadcaster = broadcaster or StatusBroadcaster()

        self._statuses: Dict[EntityType, ImportJobStatus] = {
            entity_type: ImportJobStatus(type=entity_type) for entity_type in EntityType
        }
        self._jobs: Dict[EntityType, ImportJob] = {}
        self._current: Optional[EntityType] = None
        self._slot = asyncio.Lock()
        self._hold_handles: Dict[EntityType, asyncio.TimerHandle] = {}

    # Queries

    @property
    def current_import(self) -> Optional[EntityType]:
        return self._current

    def is_running(self, entity_type: Optional[EntityType] = None) -> bool:
        if entity_type is None:
            return self._current is not None
        return self._current == entity_type

    def get_status(self, entity_type: EntityType) -> ImportJobStatus:
        return replace(self._statuses[entity_type])

    def get_import_queue_status(self) -> ImportQueueStatus:
        return ImportQueueStatus(
            all_statuses=[replace(status) for status in self._statuses.values()],
            current_import=self._current
        )

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        return self.broadcaster.subscribe(listener)

    # Commands

    def admit(self, entity_type: EntityType) -> ImportJob:
        """
        Admit a sync request and put its type in the queued state.

        Admission is synchronous, so the caller learns about a rejection
        before anything is scheduled.

        Raises:
            ImportRejectedError: If the request is not admitted
        """
        if entity_type in self._jobs:
            state = self._statuses[entity_type].status.value
            raise ImportRejectedError(f"A {entity_type.value} import is already {state}")

        if self.admission_policy == AdmissionPolicy.REJECT and self._jobs:
            busy = self._current or next(iter(self._jobs))
            raise ImportRejectedError(
                f"Cannot start {entity_type.value} import while {busy.value} import is in progress"
            )

        logger.info(f"Import requested: {entity_type.value}")
        self._cancel_hold(entity_type)

        job = ImportJob(entity_type, CancellationToken(), asyncio.Event())
        self._jobs[entity_type] = job
        self._update(
            entity_type,
            status=JobState.QUEUED,
            message="Waiting to start...",
            started_at=None,
            completed_at=None,
            error=None,
            result_summary=None,
            cancel_requested=False,
            pages_fetched=0,
            records_synced=0
        )
        return job

    async def run_admitted(self, job: ImportJob, runner: ImportRunner) -> ImportJobStatus:
        """
        Wait for the global slot, run the job and settle it.

        Args:
            job: Job returned by admit()
            runner: Coroutine function performing the import; receives the
                job's CancellationToken and returns a SyncSummary

        Returns:
            The terminal ImportJobStatus
        """
        entity_type = job.entity_type
        try:
            if await self._acquire_slot(job):
                return await self._run(job, runner)
            return self._finish(entity_type, JobState.CANCELLED, "Import cancelled before it started")
        finally:
            self._jobs.pop(entity_type, None)
            if not self._statuses[entity_type].is_terminal:
                # The awaiting task itself was cancelled
                self._finish(entity_type, JobState.CANCELLED, "Import interrupted")
            job.settled.set()

    async def request_sync(self, entity_type: EntityType, runner: ImportRunner) -> ImportJobStatus:
        """
        Admit and run an import.

        Returns:
            The terminal ImportJobStatus

        Raises:
            ImportRejectedError: If the request is not admitted
        """
        job = self.admit(entity_type)
        return await self.run_admitted(job, runner)

    def request_cancel(self, entity_type: EntityType) -> bool:
        """
        Ask the queued or running import of a type to stop.

        Cancellation is cooperative: the import notices it at its next check.

        Returns:
            True if a job of that type was found and flagged
        """
        job = self._jobs.get(entity_type)
        if job is None:
            logger.info(f"Cannot cancel {entity_type.value} - no job queued or running")
            return False

        logger.info(f"Cancelling import: {entity_type.value}")
        job.token.cancel()
        self._update(entity_type, cancel_requested=True, message="Cancelling...")
        return True

    def update_progress(self, entity_type: EntityType, pages_fetched: int, records_synced: int) -> bool:
        """
        Publish the running progress of the current import.

        Ignored unless the type is the running import and no cancel is pending.

        Returns:
            True if the status was updated
        """
        status = self._statuses[entity_type]
        if self._current != entity_type or status.status != JobState.RUNNING or status.cancel_requested:
            return False

        self._update(
            entity_type,
            pages_fetched=pages_fetched,
            records_synced=records_synced,
            message=f"Synced {records_synced} records, page {pages_fetched}"
        )
        return True

    def cancel_all(self):
        for entity_type in list(self._jobs):
            self.request_cancel(entity_type)

    async def wait_until_settled(self, entity_type: EntityType) -> ImportJobStatus:
        """Wait for the current job of a type, if any, to reach a terminal state."""
        job = self._jobs.get(entity_type)
        if job is not None:
            await job.settled.wait()
        return self.get_status(entity_type)

    # Internals

    async def _acquire_slot(self, job: ImportJob) -> bool:
        """Take the global slot; give up if the job is cancelled while queued."""
        if not self._slot.locked():
            await self._slot.acquire()
            return True

        acquire = asyncio.ensure_future(self._slot.acquire())
        cancelled = asyncio.ensure_future(job.token.wait())
        try:
            await asyncio.wait({acquire, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()

        if acquire.done() and not acquire.cancelled():
            return True

        acquire.cancel()
        try:
            await acquire
        except asyncio.CancelledError:
            return False
        # The slot was granted while we were giving up
        self._slot.release()
        return False

    async def _run(self, job: ImportJob, runner: ImportRunner) -> ImportJobStatus:
        entity_type = job.entity_type
        try:
            if job.token.cancelled:
                outcome = (JobState.CANCELLED, "Import cancelled before it started", None, None)
            else:
                self._current = entity_type
                self._update(
                    entity_type,
                    status=JobState.RUNNING,
                    message="Starting import...",
                    started_at=utc_now().isoformat()
                )
                outcome = await self._execute(job, runner)
        finally:
            self._current = None
            self._slot.release()

        status, message, summary, error = outcome
        return self._finish(entity_type, status, message, summary, error)

    async def _execute(self, job: ImportJob, runner: ImportRunner):
        entity_type = job.entity_type
        try:
            summary = await runner(job.token)
        except ImportCancelledError:
            logger.info(f"Import cancelled: {entity_type.value}")
            return JobState.CANCELLED, "Import cancelled", None, None
        except Exception as e:
            logger.error(f"Import failed: {entity_type.value}: {e}", exc_info=True)
            return JobState.ERROR, "Import failed", None, user_message(e)

        if job.token.cancelled or (summary is not None and summary.cancelled):
            logger.info(f"Import cancelled: {entity_type.value}")
            return JobState.CANCELLED, "Import cancelled", summary, None

        logger.info(f"Import completed: {entity_type.value}")
        message = summary.describe() if summary is not None else "Import completed successfully"
        return JobState.COMPLETED, message, summary, None

    def _finish(
        self,
        entity_type: EntityType,
        status: JobState,
        message: str,
        summary: Optional[SyncSummary] = None,
        error: Optional[str] = None
    ) -> ImportJobStatus:
        self._update(
            entity_type,
            status=status,
            message=message,
            completed_at=utc_now().isoformat(),
            result_summary=summary,
            error=error
        )
        self._schedule_reset(entity_type)
        return self.get_status(entity_type)

    def _update(self, entity_type: EntityType, **changes):
        self._statuses[entity_type] = replace(self._statuses[entity_type], **changes)
        self.broadcaster.publish(self.get_import_queue_status())

    def _schedule_reset(self, entity_type: EntityType):
        if self.display_hold_seconds is None:
            return
        self._cancel_hold(entity_type)
        loop = asyncio.get_running_loop()
        self._hold_handles[entity_type] = loop.call_later(
            self.display_hold_seconds, self._reset_to_idle, entity_type
        )

    def _cancel_hold(self, entity_type: EntityType):
        handle = self._hold_handles.pop(entity_type, None)
        if handle is not None:
            handle.cancel()

    def _reset_to_idle(self, entity_type: EntityType):
        self._hold_handles.pop(entity_type, None)
        if entity_type in self._jobs or not self._statuses[entity_type].is_terminal:
            return
        self._statuses[entity_type] = ImportJobStatus(type=entity_type)
        self.broadcaster.publish(self.get_import_queue_status())
