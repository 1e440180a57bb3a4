"""Unit tests for Sync Service.

Tests cover:
- Full pull of an entity type into the local store
- Sync state bookkeeping
- Cancellation mid-import
- Per-record and fatal error handling
- The SyncEngine facade
"""

import asyncio
from datetime import datetime
from unittest.mock import AsyncMock, Mock

import httpx
import pytest
from notion_client import APIResponseError

from services.sync_service.coordinator import AdmissionPolicy, ImportJobCoordinator
from services.sync_service.engine import SyncEngine, build_engine_from_env
from services.sync_service.orchestrator import SyncOrchestrator
from shared.cancellation import CancellationToken
from shared.db_operations import DatabaseOperations
from shared.errors import ConfigurationError, ImportRejectedError
from shared.models import (
    EntitySyncConfig,
    EntityType,
    JobState,
    ProjectFieldSchema,
    SyncSettings,
    SyncStatus,
    TaskFieldSchema,
)

TASKS_DB = "a" * 32
PROJECTS_DB = "b" * 32


# Test fixtures

def task_record(record_id, title, project_ids=()):
    return {
        "object": "page",
        "id": record_id,
        "created_time": "2024-03-01T09:00:00.000Z",
        "last_edited_time": "2024-03-01T10:00:00.000Z",
        "url": f"https://www.notion.so/{record_id}",
        "properties": {
            "Name": {"type": "title", "title": [{"plain_text": title}]},
            "Status": {"type": "status", "status": {"name": "Active"}},
            "Project": {"type": "relation", "relation": [{"id": pid} for pid in project_ids]},
        },
    }


def result_page(records, next_cursor=None):
    return {
        "object": "list",
        "results": records,
        "has_more": next_cursor is not None,
        "next_cursor": next_cursor,
    }


def api_error(status, code):
    request = httpx.Request("POST", f"https://api.notion.com/v1/databases/{TASKS_DB}/query")
    return APIResponseError(httpx.Response(status, request=request), f"HTTP {status}", code)


@pytest.fixture
def db_ops(tmp_path):
    """Local store backed by a temporary SQLite file."""
    db = DatabaseOperations(database_url=f"sqlite:///{tmp_path / 'sync.db'}")
    db.create_tables()
    return db


@pytest.fixture
def settings():
    """Tasks and projects configured; contacts and time logs left empty."""
    return SyncSettings(entities={
        EntityType.TASKS: EntitySyncConfig(EntityType.TASKS, "secret_tasks", TASKS_DB, TaskFieldSchema()),
        EntityType.PROJECTS: EntitySyncConfig(EntityType.PROJECTS, "secret_projects", PROJECTS_DB, ProjectFieldSchema()),
    })


@pytest.fixture
def notion_client():
    """Mock Notion API client."""
    client = Mock()
    client.databases.query = AsyncMock()
    client.aclose = AsyncMock()
    return client


@pytest.fixture
def client_factory(notion_client):
    return Mock(return_value=notion_client)


@pytest.fixture
def pause():
    """Replaces the inter-page and backoff timer."""
    return AsyncMock()


@pytest.fixture
def orchestrator(db_ops, settings, client_factory, pause):
    """Create SyncOrchestrator with mocked Notion client."""
    return SyncOrchestrator(
        db_ops,
        settings,
        client_factory=client_factory,
        fetcher_options={"sleep": pause}
    )


# Test: Orchestrator

@pytest.mark.asyncio
async def test_two_record_sync_end_to_end(orchestrator, db_ops, notion_client, client_factory):
    """
    Test a complete pull of two tasks.

    Validates:
    - Both records are stored as synced
    - Project links are written
    - Sync state records the completion time
    - The client is closed
    """
    notion_client.databases.query.return_value = result_page([
        task_record("task-1", "Write report", ["proj-1"]),
        task_record("task-2", "Review budget", ["proj-1", "proj-2"]),
    ])

    summary = await orchestrator.execute_sync(EntityType.TASKS)

    assert summary.synced == 2
    assert summary.errors == 0
    assert summary.links == 3
    assert summary.cancelled is False

    client_factory.assert_called_once_with("secret_tasks")
    notion_client.databases.query.assert_awaited_once_with(database_id=TASKS_DB, page_size=100)
    notion_client.aclose.assert_awaited_once()

    stored = db_ops.list_entities(EntityType.TASKS)
    assert [e.fields["title"] for e in stored] == ["Write report", "Review budget"]
    assert all(e.sync_status == SyncStatus.SYNCED for e in stored)
    assert db_ops.get_task_project_ids("task-2") == ["proj-1", "proj-2"]

    state = db_ops.get_sync_state("tasks")
    assert state is not None
    assert datetime.fromisoformat(state.value).tzinfo is not None


@pytest.mark.asyncio
async def test_repeated_sync_is_idempotent(orchestrator, db_ops, notion_client):
    records = [task_record("task-1", "Write report"), task_record("task-2", "Review budget")]
    notion_client.databases.query.side_effect = [result_page(records), result_page(records)]

    await orchestrator.execute_sync(EntityType.TASKS)
    first = [db_ops.get_raw_row(EntityType.TASKS, cid) for cid in ("task-1", "task-2")]

    await orchestrator.execute_sync(EntityType.TASKS)
    second = [db_ops.get_raw_row(EntityType.TASKS, cid) for cid in ("task-1", "task-2")]

    assert first == second


@pytest.mark.asyncio
async def test_pagination_stores_every_record(orchestrator, db_ops, notion_client, pause):
    first_page = [task_record(f"task-{i:03d}", f"Task {i}") for i in range(100)]
    second_page = [task_record(f"task-{i:03d}", f"Task {i}") for i in range(100, 137)]
    notion_client.databases.query.side_effect = [
        result_page(first_page, "cursor-1"),
        result_page(second_page),
    ]

    summary = await orchestrator.execute_sync(EntityType.TASKS)

    assert summary.synced == 137
    assert len(db_ops.list_entities(EntityType.TASKS)) == 137
    pause.assert_awaited_once()


@pytest.mark.asyncio
async def test_local_only_records_are_preserved(orchestrator, db_ops, notion_client):
    local = db_ops.create_local_entity(EntityType.TASKS, {"title": "Offline idea"})
    notion_client.databases.query.return_value = result_page([task_record("task-1", "Write report")])

    await orchestrator.execute_sync(EntityType.TASKS)

    preserved = db_ops.get_entity(EntityType.TASKS, local.client_id)
    assert preserved.sync_status == SyncStatus.LOCAL_ONLY
    assert preserved.fields == {"title": "Offline idea"}
    assert len(db_ops.list_entities(EntityType.TASKS)) == 2


@pytest.mark.asyncio
async def test_missing_configuration_fails_before_network(orchestrator, client_factory, db_ops):
    with pytest.raises(ConfigurationError):
        await orchestrator.execute_sync(EntityType.CONTACTS)

    client_factory.assert_not_called()
    assert db_ops.get_sync_state("contacts") is None


@pytest.mark.asyncio
async def test_bad_record_is_counted_and_skipped(orchestrator, db_ops, notion_client):
    """A record without an id cannot be stored; the rest of the page still is."""
    bad = task_record("task-x", "Broken")
    del bad["id"]
    notion_client.databases.query.return_value = result_page([
        task_record("task-1", "Write report"),
        bad,
        "not a page",
    ])

    summary = await orchestrator.execute_sync(EntityType.TASKS)

    assert summary.synced == 1
    assert summary.errors == 2
    assert db_ops.get_sync_state("tasks") is not None


@pytest.mark.asyncio
async def test_fatal_error_keeps_committed_records(orchestrator, db_ops, notion_client):
    """
    Test a non-retryable error on the second page.

    Validates:
    - The error propagates
    - Records from the first page stay stored
    - Sync state is not written
    - The client is still closed
    """
    notion_client.databases.query.side_effect = [
        result_page([task_record("task-1", "Write report")], "cursor-1"),
        api_error(404, "object_not_found"),
    ]

    with pytest.raises(APIResponseError):
        await orchestrator.execute_sync(EntityType.TASKS)

    assert db_ops.get_entity(EntityType.TASKS, "task-1") is not None
    assert db_ops.get_sync_state("tasks") is None
    notion_client.aclose.assert_awaited_once()


@pytest.mark.asyncio
async def test_cancel_after_first_of_three_pages(db_ops, settings, client_factory, notion_client):
    """
    Test cancellation between pages.

    Validates:
    - Page 1 records are committed
    - Pages 2 and 3 are never requested
    - Summary is marked cancelled
    - Sync state is not written
    """
    token = CancellationToken()
    notion_client.databases.query.side_effect = [
        result_page([task_record(f"p1-{i}", "One") for i in range(100)], "cursor-1"),
        result_page([task_record(f"p2-{i}", "Two") for i in range(100)], "cursor-2"),
        result_page([task_record(f"p3-{i}", "Three") for i in range(10)]),
    ]

    async def cancel_during_pause(delay):
        token.cancel()

    orchestrator = SyncOrchestrator(
        db_ops,
        settings,
        client_factory=client_factory,
        fetcher_options={"sleep": cancel_during_pause}
    )

    summary = await orchestrator.execute_sync(EntityType.TASKS, cancel_token=token)

    assert summary.cancelled is True
    assert summary.synced == 100
    assert notion_client.databases.query.await_count == 1
    assert len(db_ops.list_entities(EntityType.TASKS)) == 100
    assert db_ops.get_sync_state("tasks") is None
    notion_client.aclose.assert_awaited_once()


@pytest.mark.asyncio
async def test_cancel_before_start(orchestrator, db_ops, notion_client):
    token = CancellationToken()
    token.cancel()

    summary = await orchestrator.execute_sync(EntityType.TASKS, cancel_token=token)

    assert summary.cancelled is True
    assert summary.synced == 0
    notion_client.databases.query.assert_not_awaited()


@pytest.mark.asyncio
async def test_previous_sync_state_is_replaced(orchestrator, db_ops, notion_client):
    db_ops.set_sync_state("tasks", "2020-01-01T00:00:00+00:00")
    notion_client.databases.query.return_value = result_page([])

    await orchestrator.execute_sync(EntityType.TASKS)

    assert db_ops.get_sync_state("tasks").value != "2020-01-01T00:00:00+00:00"


# Test: Engine

@pytest.fixture
def notification_service():
    service = Mock()
    service.send_critical_error_notification = AsyncMock()
    return service


@pytest.fixture
def engine(db_ops, settings, orchestrator, notification_service):
    return SyncEngine(
        db_ops,
        settings,
        coordinator=ImportJobCoordinator(display_hold_seconds=None),
        orchestrator=orchestrator,
        notification_service=notification_service
    )


@pytest.mark.asyncio
async def test_engine_sync_entities(engine, notion_client, notification_service):
    notion_client.databases.query.return_value = result_page([task_record("task-1", "Write report")])

    result = await engine.sync_entities(EntityType.TASKS)

    assert result.status == JobState.COMPLETED
    assert result.message == "✅ Synced: 1"
    notification_service.send_critical_error_notification.assert_not_awaited()


@pytest.mark.asyncio
async def test_engine_configuration_error_becomes_error_status(engine, notification_service):
    result = await engine.sync_entities(EntityType.TIME_LOGS)

    assert result.status == JobState.ERROR
    assert "time_logs" in result.error
    notification_service.send_critical_error_notification.assert_awaited_once()
    assert notification_service.send_critical_error_notification.call_args.kwargs["entity_type"] == "time_logs"


@pytest.mark.asyncio
async def test_engine_remote_error_uses_user_message(engine, notion_client):
    notion_client.databases.query.side_effect = [api_error(401, "unauthorized")]

    result = await engine.sync_entities(EntityType.TASKS)

    assert result.status == JobState.ERROR
    assert result.error == "Authentication failed. Please check your Notion API key."


@pytest.mark.asyncio
async def test_engine_quick_sync_skips_unconfigured(engine, notion_client, client_factory):
    notion_client.databases.query.return_value = result_page([])

    results = await engine.quick_sync_all(types=(EntityType.TASKS, EntityType.CONTACTS, EntityType.PROJECTS))

    assert [r.type for r in results] == [EntityType.TASKS, EntityType.PROJECTS]
    assert all(r.status == JobState.COMPLETED for r in results)
    assert [c.args[0] for c in client_factory.call_args_list] == ["secret_tasks", "secret_projects"]


@pytest.mark.asyncio
async def test_engine_cancel_import(engine, notion_client):
    started = asyncio.Event()

    async def slow_query(**kwargs):
        started.set()
        await asyncio.sleep(0.05)
        return result_page([task_record("task-1", "Write report")], "cursor-1")

    notion_client.databases.query.side_effect = slow_query

    engine.start_sync(EntityType.TASKS)
    await started.wait()

    with pytest.raises(ImportRejectedError):
        await engine.sync_entities(EntityType.PROJECTS)

    assert await engine.cancel_import(EntityType.TASKS) is True

    status = engine.coordinator.get_status(EntityType.TASKS)
    assert status.status == JobState.CANCELLED
    assert status.cancel_requested is True
    assert engine.get_import_queue_status().current_import is None


@pytest.mark.asyncio
async def test_engine_cancel_without_job(engine):
    assert await engine.cancel_import(EntityType.TASKS) is False


@pytest.mark.asyncio
async def test_engine_subscribe_receives_snapshots(engine, notion_client):
    notion_client.databases.query.return_value = result_page([])
    snapshots = []
    unsubscribe = engine.subscribe(snapshots.append)

    await engine.sync_entities(EntityType.TASKS)
    unsubscribe()
    count = len(snapshots)
    await engine.sync_entities(EntityType.TASKS)

    assert count >= 3
    assert len(snapshots) == count


@pytest.mark.asyncio
async def test_engine_shutdown_cancels_background_imports(engine, notion_client):
    started = asyncio.Event()

    async def hanging_query(**kwargs):
        started.set()
        await asyncio.sleep(0.05)
        return result_page([], "cursor-1")

    notion_client.databases.query.side_effect = hanging_query

    task = engine.start_sync(EntityType.TASKS)
    await started.wait()
    await engine.shutdown()

    assert task.done()
    assert (await task).status == JobState.CANCELLED


def test_engine_initialize_once(settings):
    db_ops = Mock()
    engine = SyncEngine(db_ops, settings, coordinator=ImportJobCoordinator(display_hold_seconds=None))

    engine.initialize()
    engine.initialize()

    db_ops.create_tables.assert_called_once()


def test_build_engine_from_env(tmp_path, monkeypatch):
    monkeypatch.setenv("LOCAL_DATABASE_URL", f"sqlite:///{tmp_path / 'env.db'}")
    monkeypatch.setenv("NOTION_API_KEY", "secret")
    monkeypatch.setenv("NOTION_TASKS_DATABASE_ID", "a" * 8 + "-" + "a" * 4 + "-" + "a" * 4 + "-" + "a" * 4 + "-" + "a" * 12)
    monkeypatch.setenv("SYNC_ADMISSION_POLICY", "QUEUE")
    monkeypatch.setenv("SYNC_DISPLAY_HOLD_SECONDS", "0.5")

    engine = build_engine_from_env()

    assert engine.coordinator.admission_policy == AdmissionPolicy.QUEUE
    assert engine.settings.for_type(EntityType.TASKS).collection_id == TASKS_DB
    assert engine.settings.for_type(EntityType.TASKS).is_configured
    assert not engine.settings.for_type(EntityType.CONTACTS).is_configured
    assert engine.orchestrator.fetcher_options["request_interval"] == 0.35


@pytest.mark.asyncio
async def test_cancel_while_client_closes_skips_sync_state(orchestrator, db_ops, notion_client):
    token = CancellationToken()
    notion_client.databases.query.return_value = result_page([task_record("task-1", "Write report")])
    notion_client.aclose.side_effect = lambda: token.cancel()

    summary = await orchestrator.execute_sync(EntityType.TASKS, cancel_token=token)

    assert summary.cancelled is True
    assert summary.synced == 1
    assert db_ops.get_entity(EntityType.TASKS, "task-1") is not None
    assert db_ops.get_sync_state("tasks") is None


@pytest.mark.asyncio
async def test_cancel_between_records_of_one_page(orchestrator, db_ops, notion_client, monkeypatch):
    token = CancellationToken()
    notion_client.databases.query.return_value = result_page(
        [task_record(f"task-{i}", "Write report") for i in range(5)]
    )
    store = db_ops.upsert_entity
    stored = []

    def upsert_then_cancel(entity):
        store(entity)
        stored.append(entity.client_id)
        if len(stored) == 3:
            # Delivered at the next suspension point, not synchronously
            asyncio.get_running_loop().call_soon(token.cancel)

    monkeypatch.setattr(db_ops, "upsert_entity", upsert_then_cancel)

    summary = await orchestrator.execute_sync(EntityType.TASKS, cancel_token=token)

    assert summary.cancelled is True
    assert summary.synced == 3
    assert stored == ["task-0", "task-1", "task-2"]
    assert db_ops.get_sync_state("tasks") is None


@pytest.mark.asyncio
async def test_progress_reported_after_each_page(orchestrator, notion_client):
    notion_client.databases.query.side_effect = [
        result_page([task_record(f"a-{i}", "One") for i in range(3)], "cursor-1"),
        result_page([task_record(f"b-{i}", "Two") for i in range(2)]),
    ]
    progress = []

    await orchestrator.execute_sync(EntityType.TASKS, on_progress=lambda page, synced: progress.append((page, synced)))

    assert progress == [(1, 3), (2, 5)]


@pytest.mark.asyncio
async def test_engine_publishes_running_progress(engine, notion_client):
    notion_client.databases.query.side_effect = [
        result_page([task_record(f"a-{i}", "One") for i in range(3)], "cursor-1"),
        result_page([task_record(f"b-{i}", "Two") for i in range(2)]),
    ]
    running = []

    def collect(snapshot):
        status = next(s for s in snapshot.all_statuses if s.type == EntityType.TASKS)
        if status.status == JobState.RUNNING:
            running.append((status.message, status.pages_fetched, status.records_synced))

    engine.subscribe(collect)
    result = await engine.sync_entities(EntityType.TASKS)

    assert running == [
        ("Starting import...", 0, 0),
        ("Synced 3 records, page 1", 1, 3),
        ("Synced 5 records, page 2", 2, 5),
    ]
    assert result.status == JobState.COMPLETED
    assert result.records_synced == 5
