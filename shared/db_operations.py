"""Database operations for the local reconciliation store."""

import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from sqlalchemy import Text, cast, create_engine, delete, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session, sessionmaker

from shared.config import get_database_url
from shared.db_models import Base, ENTITY_MODELS, SyncState, TaskProjectLink
from shared.models import Entity, EntityType, SyncStateEntry, SyncStatus


def now_millis() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


def iso_to_millis(value: Optional[str]) -> int:
    """Convert an ISO-8601 timestamp to epoch milliseconds, 0 if unparseable."""
    if not value:
        return 0
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return 0
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


def millis_to_iso(value: int) -> Optional[str]:
    if not value:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc).isoformat()


class DatabaseOperations:
    """Handles all database operations for the local store."""

    def __init__(self, database_url: Optional[str] = None):
        """Initialize database connection."""
        self.database_url = database_url or get_database_url()
        connect_args = {}
        if self.database_url.startswith('sqlite'):
            # The FastAPI surface may touch the store from a worker thread
            connect_args['check_same_thread'] = False
        self.engine = create_engine(
            self.database_url,
            pool_pre_ping=True,
            connect_args=connect_args
        )
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def create_tables(self):
        """Create all tables in the database. Safe to call repeatedly."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get a new database session."""
        return self.SessionLocal()

    def _insert(self, model):
        if self.engine.dialect.name == 'postgresql':
            return pg_insert(model)
        return sqlite_insert(model)

    # Entity Operations

    def upsert_entity(self, entity: Entity) -> None:
        """
        Insert or update an entity pulled from the remote API.

        The write is a single INSERT ... ON CONFLICT DO UPDATE keyed on
        client_id. Remote values win: remote_id, payload and
        last_modified_remote are overwritten and sync_status is always
        written as synced, whatever the incoming entity carries. The update
        only fires when one of those differs, so repeating an unchanged
        upsert leaves the row untouched.

        If another row already owns the incoming remote_id (a local record
        that was pushed and acknowledged), that row is updated in place and
        keeps its client_id.

        Args:
            entity: Entity to store

        Raises:
            ValueError: If the entity has no client_id or remote_id, or breaks
                the remote_id/sync_status invariant
        """
        if not entity.client_id:
            raise ValueError("Entity has no client_id")
        entity.check_invariants()
        if entity.remote_id is None:
            raise ValueError(f"Pulled entity {entity.client_id!r} has no remote id")

        model = ENTITY_MODELS[entity.entity_type]
        now = now_millis()

        with self.get_session() as session:
            client_id = entity.client_id
            owner = session.execute(
                select(model.client_id).where(model.remote_id == entity.remote_id)
            ).scalar_one_or_none()
            if owner is not None:
                client_id = owner

            stmt = self._insert(model).values(
                client_id=client_id,
                remote_id=entity.remote_id,
                payload=entity.fields,
                sync_status=SyncStatus.SYNCED.value,
                last_modified_local=0,
                last_modified_remote=iso_to_millis(entity.last_edited_at),
                created_at=now,
                updated_at=now
            )

            changed = or_(
                model.remote_id.is_distinct_from(stmt.excluded.remote_id),
                cast(model.payload, Text) != cast(stmt.excluded.payload, Text),
                model.sync_status != stmt.excluded.sync_status,
                model.last_modified_remote != stmt.excluded.last_modified_remote
            )

            stmt = stmt.on_conflict_do_update(
                index_elements=['client_id'],
                set_={
                    'remote_id': stmt.excluded.remote_id,
                    'payload': stmt.excluded.payload,
                    'sync_status': stmt.excluded.sync_status,
                    'last_modified_remote': stmt.excluded.last_modified_remote,
                    'updated_at': stmt.excluded.updated_at
                },
                where=changed
            )

            session.execute(stmt)
            session.commit()

    def create_local_entity(
        self,
        entity_type: EntityType,
        fields: Dict[str, Any],
        client_id: Optional[str] = None
    ) -> Entity:
        """
        Create a record on the client that has not been pushed yet.

        Args:
            entity_type: Entity type of the new record
            fields: Field payload
            client_id: Optional client id; generated when omitted

        Returns:
            The stored local-only Entity
        """
        model = ENTITY_MODELS[entity_type]
        now = now_millis()

        with self.get_session() as session:
            row = model(
                client_id=client_id or f"local-{uuid4()}",
                remote_id=None,
                payload=dict(fields),
                sync_status=SyncStatus.LOCAL_ONLY.value,
                last_modified_local=now,
                last_modified_remote=0,
                created_at=now,
                updated_at=now
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._row_to_entity(entity_type, row)

    def update_local_fields(
        self,
        entity_type: EntityType,
        client_id: str,
        changes: Dict[str, Any]
    ) -> Optional[Entity]:
        """
        Apply a local edit to a stored record.

        Records that already have a remote_id move to pending-push; local-only
        records stay local-only.

        Returns:
            The updated Entity or None if not found
        """
        model = ENTITY_MODELS[entity_type]

        with self.get_session() as session:
            row = session.get(model, client_id)
            if row is None:
                return None

            row.payload = {**row.payload, **changes}
            now = now_millis()
            row.last_modified_local = now
            row.updated_at = now
            if row.remote_id is not None:
                row.sync_status = SyncStatus.PENDING_PUSH.value

            session.commit()
            session.refresh(row)
            return self._row_to_entity(entity_type, row)

    def acknowledge_push(
        self,
        entity_type: EntityType,
        client_id: str,
        remote_id: str
    ) -> Optional[Entity]:
        """
        Record that the remote API accepted a pushed record.

        Args:
            entity_type: Entity type of the record
            client_id: Client id of the pushed record
            remote_id: Identifier assigned by the remote API

        Returns:
            The updated Entity or None if not found

        Raises:
            ValueError: If the record is already bound to a different remote_id
        """
        if not remote_id:
            raise ValueError("remote_id is required to acknowledge a push")

        model = ENTITY_MODELS[entity_type]

        with self.get_session() as session:
            row = session.get(model, client_id)
            if row is None:
                return None

            if row.remote_id is not None and row.remote_id != remote_id:
                raise ValueError(
                    f"{entity_type.value} {client_id} is already bound to remote id {row.remote_id}"
                )

            row.remote_id = remote_id
            row.sync_status = SyncStatus.SYNCED.value
            row.updated_at = now_millis()

            session.commit()
            session.refresh(row)
            return self._row_to_entity(entity_type, row)

    def get_entity(self, entity_type: EntityType, client_id: str) -> Optional[Entity]:
        """Get an entity by client id."""
        model = ENTITY_MODELS[entity_type]
        with self.get_session() as session:
            row = session.get(model, client_id)
            return self._row_to_entity(entity_type, row) if row else None

    def get_entity_by_remote_id(self, entity_type: EntityType, remote_id: str) -> Optional[Entity]:
        """Get an entity by its remote identifier."""
        model = ENTITY_MODELS[entity_type]
        with self.get_session() as session:
            row = session.execute(
                select(model).where(model.remote_id == remote_id)
            ).scalar_one_or_none()
            return self._row_to_entity(entity_type, row) if row else None

    def list_entities(
        self,
        entity_type: EntityType,
        sync_status: Optional[SyncStatus] = None
    ) -> List[Entity]:
        """
        List stored entities, optionally filtered by sync status.

        Args:
            entity_type: Entity type to list
            sync_status: Optional status filter

        Returns:
            Entities ordered by creation time
        """
        model = ENTITY_MODELS[entity_type]
        with self.get_session() as session:
            stmt = select(model)
            if sync_status is not None:
                stmt = stmt.where(model.sync_status == sync_status.value)
            stmt = stmt.order_by(model.created_at.asc(), model.client_id.asc())
            rows = session.execute(stmt).scalars().all()
            return [self._row_to_entity(entity_type, row) for row in rows]

    def get_raw_row(self, entity_type: EntityType, client_id: str) -> Optional[Dict[str, Any]]:
        """Get every stored column of an entity row as a dict."""
        model = ENTITY_MODELS[entity_type]
        with self.get_session() as session:
            row = session.get(model, client_id)
            if row is None:
                return None
            return {column.name: getattr(row, column.name) for column in model.__table__.columns}

    @staticmethod
    def _row_to_entity(entity_type: EntityType, row) -> Entity:
        status = SyncStatus(row.sync_status)
        return Entity(
            entity_type=entity_type,
            client_id=row.client_id,
            remote_id=row.remote_id,
            fields=dict(row.payload or {}),
            created_at=millis_to_iso(row.created_at),
            last_edited_at=millis_to_iso(row.last_modified_remote),
            sync_status=status,
            local_only=status == SyncStatus.LOCAL_ONLY
        )

    # Task/Project Link Operations

    def replace_task_project_links(self, task_id: str, project_ids: Iterable[str]) -> int:
        """
        Replace the project links of a task.

        Returns:
            Number of links written
        """
        unique_ids = list(dict.fromkeys(pid for pid in project_ids if pid))

        with self.get_session() as session:
            session.execute(delete(TaskProjectLink).where(TaskProjectLink.task_id == task_id))
            for project_id in unique_ids:
                session.add(TaskProjectLink(task_id=task_id, project_id=project_id))
            session.commit()
        return len(unique_ids)

    def get_task_project_ids(self, task_id: str) -> List[str]:
        with self.get_session() as session:
            stmt = select(TaskProjectLink.project_id).where(
                TaskProjectLink.task_id == task_id
            ).order_by(TaskProjectLink.project_id)
            return list(session.execute(stmt).scalars().all())

    # Sync State Operations

    def get_sync_state(self, key: str) -> Optional[SyncStateEntry]:
        """
        Get the sync-state ledger row for an entity type.

        Args:
            key: Entity type name

        Returns:
            SyncStateEntry or None if this type never completed a sync
        """
        with self.get_session() as session:
            row = session.get(SyncState, key)
            if row is None:
                return None
            return SyncStateEntry(key=row.key, value=row.value, updated_at=row.updated_at)

    def set_sync_state(self, key: str, value: str) -> SyncStateEntry:
        """
        Replace the sync-state ledger row for an entity type.

        Args:
            key: Entity type name
            value: Cursor payload, usually an ISO-8601 timestamp

        Returns:
            The stored SyncStateEntry
        """
        updated_at = now_millis()

        with self.get_session() as session:
            stmt = self._insert(SyncState).values(key=key, value=value, updated_at=updated_at)
            stmt = stmt.on_conflict_do_update(
                index_elements=['key'],
                set_={
                    'value': stmt.excluded.value,
                    'updated_at': stmt.excluded.updated_at
                }
            )
            session.execute(stmt)
            session.commit()

        return SyncStateEntry(key=key, value=value, updated_at=updated_at)

    def clear_sync_state(self, key: Optional[str] = None) -> int:
        """
        Delete sync-state ledger rows.

        Args:
            key: Optional entity type name. If None, clears every row.

        Returns:
            Number of rows deleted
        """
        with self.get_session() as session:
            stmt = delete(SyncState)
            if key is not None:
                stmt = stmt.where(SyncState.key == key)
            result = session.execute(stmt)
            session.commit()
            return result.rowcount
