"""Paginated, rate-limited reads from Notion databases."""

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from notion_client import AsyncClient

from services.notion_reader.retry import (
    RetryPolicy,
    extract_retry_after,
    is_retryable,
)
from shared.cancellation import CancellationToken
from shared.errors import ImportCancelledError, RemoteResponseError
from shared.models import FetchedPage, FetchProgress

logger = logging.getLogger(__name__)

NOTION_VERSION = "2022-06-28"
MAX_PAGE_SIZE = 100
REQUEST_INTERVAL_SECONDS = 0.35
REQUEST_TIMEOUT_MS = 120_000


def create_notion_client(api_key: str) -> AsyncClient:
    """Create an async Notion client with an extended timeout for large databases."""
    return AsyncClient(
        auth=api_key,
        timeout_ms=REQUEST_TIMEOUT_MS,
        notion_version=NOTION_VERSION
    )


class NotionFetcher:
    """Pages through a Notion database, throttled and with retries."""

    def __init__(
        self,
        client: AsyncClient,
        retry_policy: Optional[RetryPolicy] = None,
        page_size: int = MAX_PAGE_SIZE,
        request_interval: float = REQUEST_INTERVAL_SECONDS,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        on_progress: Optional[Callable[[FetchProgress], Any]] = None
    ):
        """
        Initialize the fetcher.

        Args:
            client: Notion API client
            retry_policy: Backoff policy for retryable errors (unbounded by default)
            page_size: Records per page, capped at the API maximum of 100
            request_interval: Pause in seconds between successive page requests
            sleep: Optional sleep coroutine, replaces the default timer
            on_progress: Optional callback receiving a FetchProgress per page
        """
        self.client = client
        self.retry_policy = retry_policy or RetryPolicy()
        self.page_size = max(1, min(page_size, MAX_PAGE_SIZE))
        self.request_interval = request_interval
        self.on_progress = on_progress
        self._sleep = sleep

    async def fetch_all(
        self,
        collection_id: str,
        query_options: Optional[Dict[str, Any]] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> AsyncIterator[Dict[str, Any]]:
        """Yield every record of a collection in pagination order."""
        async for page in self.fetch_pages(collection_id, query_options, cancel_token):
            for record in page.records:
                yield record

    async def fetch_pages(
        self,
        collection_id: str,
        query_options: Optional[Dict[str, Any]] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> AsyncIterator[FetchedPage]:
        """
        Yield the pages of a collection, starting from the first page.

        Args:
            collection_id: Notion database ID
            query_options: Optional query body entries such as filter and sorts
            cancel_token: Optional token checked before each request and
                during every pause

        Raises:
            ImportCancelledError: If cancellation is observed
            RemoteResponseError: If a response has no results list
        """
        cursor = None
        page_number = 0
        total = 0

        while True:
            if page_number > 0:
                await self._pause(self.request_interval, cancel_token)
            elif cancel_token is not None and cancel_token.cancelled:
                raise ImportCancelledError()

            page_number += 1
            body = dict(query_options or {})
            body['page_size'] = self.page_size
            if cursor:
                body['start_cursor'] = cursor

            response = await self._query_with_retry(collection_id, body, page_number, cancel_token)

            results = response.get('results') if isinstance(response, dict) else None
            if not isinstance(results, list):
                raise RemoteResponseError(
                    f"Malformed response for database {collection_id} (page {page_number}): "
                    f"missing results list"
                )

            total += len(results)
            logger.info(f"Fetched page {page_number} of {collection_id}: {len(results)} records ({total} total)")
            self._report_progress(FetchProgress(collection_id, page_number, total))

            yield FetchedPage(number=page_number, records=results, total_records=total)

            cursor = response.get('next_cursor')
            if not response.get('has_more') or not cursor:
                break

    async def _query_with_retry(
        self,
        collection_id: str,
        body: Dict[str, Any],
        page_number: int,
        cancel_token: Optional[CancellationToken]
    ) -> Dict[str, Any]:
        attempts = 0
        backoffs = 0

        while True:
            attempts += 1
            try:
                return await self.client.databases.query(database_id=collection_id, **body)
            except Exception as e:
                if not is_retryable(e):
                    logger.error(f"Query of {collection_id} page {page_number} failed (non-retryable): {e}")
                    raise

                if not self.retry_policy.allows_retry(attempts):
                    logger.error(
                        f"Query of {collection_id} page {page_number} failed after {attempts} attempts: {e}"
                    )
                    raise

                retry_after = extract_retry_after(e)
                delay = self.retry_policy.compute_delay(backoffs, retry_after)
                if retry_after is None:
                    backoffs += 1

                logger.warning(
                    f"Query of {collection_id} page {page_number} failed (attempt {attempts}): {e}. "
                    f"Retrying in {delay:.2f} seconds..."
                )
                await self._pause(delay, cancel_token)

    async def _pause(self, delay: float, cancel_token: Optional[CancellationToken]):
        if self._sleep is not None:
            await self._sleep(delay)
        elif cancel_token is not None:
            await cancel_token.sleep(delay)
        elif delay > 0:
            await asyncio.sleep(delay)

        if cancel_token is not None and cancel_token.cancelled:
            raise ImportCancelledError()

    def _report_progress(self, progress: FetchProgress):
        if self.on_progress is None:
            return
        try:
            self.on_progress(progress)
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}", exc_info=True)
