"""Shared data models for the Notion tasks sync engine."""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class EntityType(str, Enum):
    """Entity collections mirrored from Notion."""
    TASKS = "tasks"
    PROJECTS = "projects"
    CONTACTS = "contacts"
    TIME_LOGS = "time_logs"


class SyncStatus(str, Enum):
    """Sync bookkeeping state of a stored entity."""
    SYNCED = "synced"
    LOCAL_ONLY = "local-only"
    PENDING_PUSH = "pending-push"
    CONFLICT = "conflict"


class JobState(str, Enum):
    """Lifecycle states of an import job."""
    IDLE = "idle"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"


TERMINAL_JOB_STATES = frozenset({JobState.COMPLETED, JobState.CANCELLED, JobState.ERROR})

REMOTE_SYNC_STATUSES = frozenset({SyncStatus.SYNCED, SyncStatus.PENDING_PUSH, SyncStatus.CONFLICT})


@dataclass
class Entity:
    """Canonical local record for a task, project, contact or time log."""
    entity_type: EntityType
    client_id: str
    remote_id: Optional[str]
    fields: Dict[str, Any]
    created_at: Optional[str] = None
    last_edited_at: Optional[str] = None
    sync_status: SyncStatus = SyncStatus.SYNCED
    local_only: bool = False

    def check_invariants(self):
        """Raise ValueError if remote_id and sync_status disagree."""
        if self.remote_id is None:
            if self.sync_status != SyncStatus.LOCAL_ONLY or not self.local_only:
                raise ValueError(
                    f"Entity {self.client_id!r} has no remote id but sync status "
                    f"{self.sync_status.value!r}"
                )
        elif self.sync_status not in REMOTE_SYNC_STATUSES or self.local_only:
            raise ValueError(
                f"Entity {self.client_id!r} has remote id {self.remote_id!r} but sync status "
                f"{self.sync_status.value!r}"
            )


@dataclass
class SyncStateEntry:
    """Ledger row recording the last successful sync of one entity type."""
    key: str
    value: str
    updated_at: int


@dataclass
class SyncSummary:
    """Outcome of one orchestrator run."""
    synced: int = 0
    errors: int = 0
    links: int = 0
    cancelled: bool = False

    def describe(self) -> str:
        parts = [f"✅ Synced: {self.synced}"]
        if self.errors:
            parts.append(f"❌ Errors: {self.errors}")
        if self.links:
            parts.append(f"🔗 Links: {self.links}")
        if self.cancelled:
            parts.append("⏹ Cancelled")
        return " | ".join(parts)


@dataclass
class ImportJobStatus:
    """Snapshot of the import job for one entity type."""
    type: EntityType
    status: JobState = JobState.IDLE
    message: str = "Ready"
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    error: Optional[str] = None
    result_summary: Optional[SyncSummary] = None
    cancel_requested: bool = False
    pages_fetched: int = 0
    records_synced: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATES

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        data["status"] = self.status.value
        return data


@dataclass
class ImportQueueStatus:
    """Status surface consumed by the UI."""
    all_statuses: List[ImportJobStatus]
    current_import: Optional[EntityType]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "all_statuses": [status.to_dict() for status in self.all_statuses],
            "current_import": self.current_import.value if self.current_import else None,
        }


@dataclass
class FetchedPage:
    """One page of remote records."""
    number: int
    records: List[Dict[str, Any]]
    total_records: int


@dataclass
class FetchProgress:
    """Progress signal emitted after each fetched page."""
    collection_id: str
    page: int
    total_records: int


# Field schemas: which Notion property backs each canonical attribute.

@dataclass
class TaskFieldSchema:
    title_property: str = "Name"
    status_property: str = "Status"
    date_property: str = "Date"
    deadline_property: str = "Hard Deadline?"
    deadline_hard_value: str = "⭕Hard"
    urgent_property: str = "Urgent"
    urgent_active_value: str = "‼"
    important_property: str = "Important"
    important_active_value: str = "◉"
    main_entry_property: Optional[str] = "Main Entry"
    session_length_property: Optional[str] = "Sess. Length"
    estimated_length_property: Optional[str] = "Est. Length"
    order_property: Optional[str] = None
    project_relation_property: Optional[str] = "Project"


@dataclass
class ProjectFieldSchema:
    title_property: str = "Name"
    status_property: str = "Status"
    start_date_property: Optional[str] = "Start Date"
    end_date_property: Optional[str] = "Deadline"
    description_property: Optional[str] = "Description"
    tags_property: Optional[str] = "Tags"


@dataclass
class ContactFieldSchema:
    name_property: str = "Name"
    email_property: Optional[str] = "Email"
    phone_property: Optional[str] = "Phone"
    company_property: Optional[str] = "Company"
    role_property: Optional[str] = "Role"
    notes_property: Optional[str] = "Notes"
    projects_relation_property: Optional[str] = "Projects"


@dataclass
class TimeLogFieldSchema:
    title_property: str = "Name"
    status_property: Optional[str] = "Status"
    start_time_property: Optional[str] = "Start Time"
    end_time_property: Optional[str] = "End Time"
    task_property: Optional[str] = "Task"


FIELD_SCHEMA_TYPES = {
    EntityType.TASKS: TaskFieldSchema,
    EntityType.PROJECTS: ProjectFieldSchema,
    EntityType.CONTACTS: ContactFieldSchema,
    EntityType.TIME_LOGS: TimeLogFieldSchema,
}


@dataclass
class EntitySyncConfig:
    """Credentials, collection and field schema for one entity type."""
    entity_type: EntityType
    api_key: Optional[str]
    collection_id: Optional[str]
    field_schema: Any = None

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.collection_id)


@dataclass
class SyncSettings:
    """Configuration for all entity types, supplied to the orchestrator."""
    entities: Dict[EntityType, EntitySyncConfig] = field(default_factory=dict)

    def for_type(self, entity_type: EntityType) -> EntitySyncConfig:
        config = self.entities.get(entity_type)
        if config is None:
            return EntitySyncConfig(
                entity_type=entity_type,
                api_key=None,
                collection_id=None,
                field_schema=FIELD_SCHEMA_TYPES[entity_type](),
            )
        return config


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)
