"""Sync orchestration logic."""

import asyncio
import logging
from contextlib import aclosing
from typing import Any, Callable, Dict, Optional

from services.notion_reader.fetcher import NotionFetcher, create_notion_client
from services.notion_reader.mapper import map_record
from shared.cancellation import CancellationToken
from shared.db_operations import DatabaseOperations
from shared.errors import ConfigurationError, ImportCancelledError
from shared.models import EntityType, SyncSettings, SyncSummary, utc_now

logger = logging.getLogger(__name__)


class SyncOrchestrator:
    """Pulls one entity type from Notion into the local store."""

    def __init__(
        self,
        db_ops: DatabaseOperations,
        settings: SyncSettings,
        client_factory: Optional[Callable[[str], Any]] = None,
        fetcher_options: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize the sync orchestrator.

        Args:
            db_ops: Database operations instance
            settings: Credentials, collection ids and field schemas
            client_factory: Builds a Notion client from an API key
            fetcher_options: Extra keyword arguments for NotionFetcher
        """
        self.db_ops = db_ops
        self.settings = settings
        self.client_factory = client_factory or create_notion_client
        self.fetcher_options = dict(fetcher_options or {})

    async def execute_sync(
        self,
        entity_type: EntityType,
        cancel_token: Optional[CancellationToken] = None,
        on_progress: Optional[Callable[[int, int], Any]] = None
    ) -> SyncSummary:
        """
        Execute a full pull of one entity type.

        This is the main orchestration method that:
        1. Validates credentials and the collection id
        2. Reads the previous sync state
        3. Fetches every page and upserts each mapped record
        4. Records the completion time in the sync state

        A record that fails to map or store is logged, counted and
        skipped. Records already stored stay stored when the run is
        cancelled or fails.

        Args:
            entity_type: Entity type to sync
            cancel_token: Optional token checked between pages and records
            on_progress: Optional callback receiving the page number and the
                running count of stored records after each page

        Returns:
            SyncSummary; ``cancelled`` is set if the token fired at any point,
            including while the client was closing

        Raises:
            ConfigurationError: If credentials or the collection id are missing
        """
        config = self.settings.for_type(entity_type)
        if not config.api_key:
            raise ConfigurationError(f"No Notion API key configured for {entity_type.value}")
        if not config.collection_id:
            raise ConfigurationError(f"No Notion database configured for {entity_type.value}")

        previous = self.db_ops.get_sync_state(entity_type.value)
        if previous:
            logger.info(f"Last {entity_type.value} sync completed at {previous.value}; pulling everything")
        else:
            logger.info(f"No previous {entity_type.value} sync recorded")

        summary = SyncSummary()
        client = self.client_factory(config.api_key)
        fetcher = NotionFetcher(client, **self.fetcher_options)

        try:
            pages = fetcher.fetch_pages(config.collection_id, cancel_token=cancel_token)
            async with aclosing(pages):
                async for page in pages:
                    for record in page.records:
                        if cancel_token is not None and cancel_token.cancelled:
                            break
                        self._store_record(entity_type, record, config.field_schema, summary)
                        # Let a cancel request land between records
                        await asyncio.sleep(0)

                    if cancel_token is not None and cancel_token.cancelled:
                        summary.cancelled = True
                        break
                    self._report_progress(on_progress, page.number, summary.synced)
        except ImportCancelledError:
            summary.cancelled = True
        finally:
            await client.aclose()

        if cancel_token is not None and cancel_token.cancelled:
            summary.cancelled = True

        if summary.cancelled:
            logger.info(f"{entity_type.value} sync cancelled: {summary.describe()}")
            return summary

        completed_at = utc_now().isoformat()
        self.db_ops.set_sync_state(entity_type.value, completed_at)
        logger.info(f"{entity_type.value} sync completed: {summary.describe()}")
        return summary

    def _report_progress(self, on_progress, page_number: int, synced: int):
        if on_progress is None:
            return
        try:
            on_progress(page_number, synced)
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}", exc_info=True)

    def _store_record(self, entity_type: EntityType, record: Any, field_schema, summary: SyncSummary):
        record_id = record.get('id', 'unknown') if isinstance(record, dict) else 'unknown'
        try:
            entity = map_record(entity_type, record, field_schema)
            self.db_ops.upsert_entity(entity)
            summary.synced += 1

            if entity_type == EntityType.TASKS:
                summary.links += self.db_ops.replace_task_project_links(
                    entity.client_id, entity.fields.get('project_ids', [])
                )
        except Exception as e:
            logger.error(f"Failed to store {entity_type.value} record {record_id}: {e}", exc_info=True)
            summary.errors += 1
