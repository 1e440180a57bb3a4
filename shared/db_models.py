"""SQLAlchemy database models for the local reconciliation store."""

from sqlalchemy import BigInteger, Column, Index, JSON, String, Text
from sqlalchemy.orm import declarative_base, declared_attr

from shared.models import EntityType


Base = declarative_base()


class EntityRowMixin:
    """Columns shared by every entity table.

    Timestamps are epoch milliseconds so they compare cheaply against the
    values recorded in the sync_state ledger.
    """

    client_id = Column(String(255), primary_key=True)
    remote_id = Column(String(255), nullable=True)
    payload = Column(JSON, nullable=False)
    sync_status = Column(String(20), nullable=False)
    last_modified_local = Column(BigInteger, nullable=False, default=0)
    last_modified_remote = Column(BigInteger, nullable=False, default=0)
    created_at = Column(BigInteger, nullable=False)
    updated_at = Column(BigInteger, nullable=False)

    @declared_attr
    def __table_args__(cls):
        return (
            Index(f'idx_{cls.__tablename__}_remote_id', 'remote_id', unique=True),
            Index(f'idx_{cls.__tablename__}_sync_status', 'sync_status'),
        )


class TaskRow(EntityRowMixin, Base):
    """Model for tasks table."""
    __tablename__ = 'tasks'


class ProjectRow(EntityRowMixin, Base):
    """Model for projects table."""
    __tablename__ = 'projects'


class ContactRow(EntityRowMixin, Base):
    """Model for contacts table."""
    __tablename__ = 'contacts'


class TimeLogRow(EntityRowMixin, Base):
    """Model for time_logs table."""
    __tablename__ = 'time_logs'


class SyncState(Base):
    """Model for sync_state table: one row per entity type."""
    __tablename__ = 'sync_state'

    key = Column(String(64), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(BigInteger, nullable=False)


class TaskProjectLink(Base):
    """Model for task_project_links table."""
    __tablename__ = 'task_project_links'

    task_id = Column(String(255), primary_key=True)
    project_id = Column(String(255), primary_key=True)

    __table_args__ = (
        Index('idx_task_project_links_project', 'project_id'),
    )


ENTITY_MODELS = {
    EntityType.TASKS: TaskRow,
    EntityType.PROJECTS: ProjectRow,
    EntityType.CONTACTS: ContactRow,
    EntityType.TIME_LOGS: TimeLogRow,
}
