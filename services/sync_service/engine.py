"""Sync engine: the single entry point the UI layer talks to."""

import asyncio
import logging
from typing import Callable, Iterable, List, Optional

from services.notion_reader.retry import RetryPolicy
from services.sync_service.coordinator import (
    AdmissionPolicy,
    ImportJob,
    ImportJobCoordinator,
)
from services.sync_service.notifications import NotificationService, StatusListener
from services.sync_service.orchestrator import SyncOrchestrator
from shared.config import get_engine_config, load_sync_settings
from shared.db_operations import DatabaseOperations
from shared.errors import ImportRejectedError
from shared.models import (
    EntityType,
    ImportJobStatus,
    ImportQueueStatus,
    JobState,
    SyncSettings,
)

logger = logging.getLogger(__name__)

QUICK_SYNC_TYPES = (EntityType.TASKS, EntityType.PROJECTS)


class SyncEngine:
    """
    Owns the store, the orchestrator and the import coordinator.

    One explicit instance per process; nothing here is a module-level
    singleton.
    """

    def __init__(
        self,
        db_ops: DatabaseOperations,
        settings: SyncSettings,
        coordinator: Optional[ImportJobCoordinator] = None,
        orchestrator: Optional[SyncOrchestrator] = None,
        notification_service: Optional[NotificationService] = None
    ):
        self.db_ops = db_ops
        self.settings = settings
        self.coordinator = coordinator or ImportJobCoordinator()
        self.orchestrator = orchestrator or SyncOrchestrator(db_ops, settings)
        self.notification_service = notification_service or NotificationService()
        self._initialized = False
        self._background = set()

    def initialize(self):
        """Create the local store schema. Later calls do nothing."""
        if self._initialized:
            return
        self.db_ops.create_tables()
        self._initialized = True
        logger.info("Local store initialized")

    async def sync_entities(self, entity_type: EntityType) -> ImportJobStatus:
        """
        Pull one entity type through the import coordinator.

        Returns:
            The terminal ImportJobStatus

        Raises:
            ImportRejectedError: If another import blocks this one
        """
        self.initialize()
        job = self.coordinator.admit(entity_type)
        return await self._run_job(job)

    def start_sync(self, entity_type: EntityType) -> asyncio.Task:
        """
        Admit an import and run it in the background.

        Returns:
            The task running the import

        Raises:
            ImportRejectedError: If another import blocks this one
        """
        self.initialize()
        job = self.coordinator.admit(entity_type)
        task = asyncio.create_task(self._run_job(job))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _run_job(self, job: ImportJob) -> ImportJobStatus:
        entity_type = job.entity_type

        def on_progress(pages_fetched, records_synced):
            self.coordinator.update_progress(entity_type, pages_fetched, records_synced)

        async def runner(token):
            return await self.orchestrator.execute_sync(
                entity_type, cancel_token=token, on_progress=on_progress
            )

        result = await self.coordinator.run_admitted(job, runner)

        if result.status == JobState.ERROR:
            await self.notification_service.send_critical_error_notification(
                entity_type=entity_type.value,
                error_message=result.error or result.message,
                context={"stage": "import", "started_at": result.started_at}
            )
        return result

    async def cancel_import(self, entity_type: EntityType) -> bool:
        """
        Cancel the queued or running import of a type and wait for it to stop.

        Returns:
            True if a job was cancelled
        """
        if not self.coordinator.request_cancel(entity_type):
            return False
        await self.coordinator.wait_until_settled(entity_type)
        return True

    async def quick_sync_all(
        self,
        types: Iterable[EntityType] = QUICK_SYNC_TYPES
    ) -> List[ImportJobStatus]:
        """
        Sync several entity types one after another.

        Types without credentials or a collection id are skipped. A type
        whose import is rejected is logged and skipped too.
        """
        results = []
        for entity_type in types:
            if not self.settings.for_type(entity_type).is_configured:
                logger.info(f"Skipping {entity_type.value} in quick sync: not configured")
                continue
            try:
                results.append(await self.sync_entities(entity_type))
            except ImportRejectedError as e:
                logger.warning(f"Quick sync skipped {entity_type.value}: {e}")
        return results

    def get_import_queue_status(self) -> ImportQueueStatus:
        return self.coordinator.get_import_queue_status()

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        return self.coordinator.subscribe(listener)

    async def shutdown(self):
        """Cancel every queued or running import and wait for them to stop."""
        self.coordinator.cancel_all()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)


def build_engine_from_env() -> SyncEngine:
    """Assemble a SyncEngine from environment configuration."""
    engine_config = get_engine_config()
    settings = load_sync_settings()
    db_ops = DatabaseOperations()

    orchestrator = SyncOrchestrator(
        db_ops,
        settings,
        fetcher_options={
            "request_interval": engine_config["request_interval"],
            "retry_policy": RetryPolicy(max_attempts=engine_config["max_retry_attempts"]),
        }
    )
    coordinator = ImportJobCoordinator(
        admission_policy=AdmissionPolicy(engine_config["admission_policy"]),
        display_hold_seconds=engine_config["display_hold_seconds"]
    )
    return SyncEngine(db_ops, settings, coordinator=coordinator, orchestrator=orchestrator)
