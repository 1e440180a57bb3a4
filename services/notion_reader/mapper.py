"""Map Notion page objects to canonical local entities.

Every function here is pure and tolerant: a missing or malformed property
falls back to an empty string, None, False or an empty list instead of
raising, so one odd page never fails a whole import.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from shared.models import (
    ContactFieldSchema,
    Entity,
    EntityType,
    FIELD_SCHEMA_TYPES,
    ProjectFieldSchema,
    SyncStatus,
    TaskFieldSchema,
    TimeLogFieldSchema,
)


def _prop(properties: Dict[str, Any], name: Optional[str]) -> Optional[Dict[str, Any]]:
    if not name:
        return None
    value = properties.get(name)
    return value if isinstance(value, dict) else None


def _segments_text(segments: Any) -> str:
    if not isinstance(segments, list):
        return ""
    parts = []
    for segment in segments:
        if not isinstance(segment, dict):
            continue
        text = segment.get('plain_text')
        if text is None and isinstance(segment.get('text'), dict):
            text = segment['text'].get('content')
        if isinstance(text, str):
            parts.append(text)
    return "".join(parts)


def extract_text(prop: Optional[Dict[str, Any]]) -> str:
    """Concatenate a title or rich_text property; read plain email/phone/url values."""
    if not prop:
        return ""
    prop_type = prop.get('type')
    if prop_type in ('title', 'rich_text'):
        return _segments_text(prop.get(prop_type))
    if prop_type in ('email', 'phone_number', 'url'):
        value = prop.get(prop_type)
        return value if isinstance(value, str) else ""
    # Some payloads omit "type"; fall back on whichever text array is present.
    for key in ('title', 'rich_text'):
        if key in prop:
            return _segments_text(prop.get(key))
    return ""


def extract_status(prop: Optional[Dict[str, Any]]) -> str:
    """Read a status property, falling back to a select property."""
    if not prop:
        return ""
    for key in ('status', 'select'):
        option = prop.get(key)
        if isinstance(option, dict) and isinstance(option.get('name'), str):
            return option['name']
    return ""


def extract_date_range(prop: Optional[Dict[str, Any]]):
    """Return (start, end) of a date property."""
    if not prop:
        return None, None
    date = prop.get('date')
    if not isinstance(date, dict):
        return None, None
    start = date.get('start')
    end = date.get('end')
    return (
        start if isinstance(start, str) else None,
        end if isinstance(end, str) else None,
    )


def extract_number(prop: Optional[Dict[str, Any]]) -> Optional[float]:
    if not prop:
        return None
    value = prop.get('number')
    if prop.get('type') == 'formula' or value is None:
        formula = prop.get('formula')
        if isinstance(formula, dict):
            value = formula.get('number')
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def extract_flag(prop: Optional[Dict[str, Any]], active_value: Optional[str]) -> bool:
    """A checkbox value, or whether a status/select equals the active label."""
    if not prop:
        return False
    if prop.get('type') == 'checkbox' or isinstance(prop.get('checkbox'), bool):
        return prop.get('checkbox') is True
    if not active_value:
        return False
    return extract_status(prop) == active_value


def extract_select_name(prop: Optional[Dict[str, Any]]) -> Optional[str]:
    name = extract_status(prop)
    return name or None


def extract_multi_select(prop: Optional[Dict[str, Any]]) -> List[str]:
    if not prop or not isinstance(prop.get('multi_select'), list):
        return []
    return [
        option['name'] for option in prop['multi_select']
        if isinstance(option, dict) and isinstance(option.get('name'), str)
    ]


def extract_relation_ids(prop: Optional[Dict[str, Any]]) -> List[str]:
    if not prop or not isinstance(prop.get('relation'), list):
        return []
    return [
        entry['id'] for entry in prop['relation']
        if isinstance(entry, dict) and isinstance(entry.get('id'), str)
    ]


def _duration_minutes(start: Optional[str], end: Optional[str]) -> Optional[int]:
    if not start or not end:
        return None
    try:
        started = datetime.fromisoformat(start.replace('Z', '+00:00'))
        ended = datetime.fromisoformat(end.replace('Z', '+00:00'))
        return round((ended - started).total_seconds() / 60)
    except (TypeError, ValueError):
        # Mixed naive/aware values or date-only strings with different shapes
        return None


def _str_or_none(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _base_entity(entity_type: EntityType, record: Any, fields: Dict[str, Any]) -> Entity:
    record = record if isinstance(record, dict) else {}
    remote_id = record.get('id') if isinstance(record.get('id'), str) else None
    return Entity(
        entity_type=entity_type,
        client_id=remote_id or "",
        remote_id=remote_id,
        fields=fields,
        created_at=_str_or_none(record.get('created_time')),
        last_edited_at=_str_or_none(record.get('last_edited_time')),
        sync_status=SyncStatus.SYNCED,
        local_only=False
    )


def _properties(record: Any) -> Dict[str, Any]:
    if not isinstance(record, dict):
        return {}
    properties = record.get('properties')
    return properties if isinstance(properties, dict) else {}


def _url(record: Any) -> str:
    if isinstance(record, dict) and isinstance(record.get('url'), str):
        return record['url']
    return ""


def map_task(record: Dict[str, Any], schema: TaskFieldSchema) -> Entity:
    props = _properties(record)
    status = extract_status(_prop(props, schema.status_property))
    date_start, date_end = extract_date_range(_prop(props, schema.date_property))

    fields = {
        'title': extract_text(_prop(props, schema.title_property)),
        'status': status,
        'normalized_status': status.lower(),
        'date': date_start,
        'date_end': date_end,
        'hard_deadline': extract_flag(_prop(props, schema.deadline_property), schema.deadline_hard_value),
        'urgent': extract_flag(_prop(props, schema.urgent_property), schema.urgent_active_value),
        'important': extract_flag(_prop(props, schema.important_property), schema.important_active_value),
        'main_entry': extract_text(_prop(props, schema.main_entry_property)),
        'session_length_minutes': extract_number(_prop(props, schema.session_length_property)),
        'estimated_length_minutes': extract_number(_prop(props, schema.estimated_length_property)),
        'order_value': extract_select_name(_prop(props, schema.order_property)),
        'url': _url(record),
        'project_ids': extract_relation_ids(_prop(props, schema.project_relation_property)),
    }
    return _base_entity(EntityType.TASKS, record, fields)


def map_project(record: Dict[str, Any], schema: ProjectFieldSchema) -> Entity:
    props = _properties(record)
    status = extract_status(_prop(props, schema.status_property))

    fields = {
        'title': extract_text(_prop(props, schema.title_property)),
        'status': status,
        'normalized_status': status.lower(),
        'start_date': extract_date_range(_prop(props, schema.start_date_property))[0],
        'end_date': extract_date_range(_prop(props, schema.end_date_property))[0],
        'description': extract_text(_prop(props, schema.description_property)),
        'tags': extract_multi_select(_prop(props, schema.tags_property)),
        'url': _url(record),
    }
    return _base_entity(EntityType.PROJECTS, record, fields)


def map_contact(record: Dict[str, Any], schema: ContactFieldSchema) -> Entity:
    props = _properties(record)

    fields = {
        'name': extract_text(_prop(props, schema.name_property)),
        'email': extract_text(_prop(props, schema.email_property)),
        'phone': extract_text(_prop(props, schema.phone_property)),
        'company': extract_text(_prop(props, schema.company_property)),
        'role': extract_text(_prop(props, schema.role_property)),
        'notes': extract_text(_prop(props, schema.notes_property)),
        'project_ids': extract_relation_ids(_prop(props, schema.projects_relation_property)),
        'url': _url(record),
    }
    return _base_entity(EntityType.CONTACTS, record, fields)


def map_time_log(record: Dict[str, Any], schema: TimeLogFieldSchema) -> Entity:
    props = _properties(record)
    status = extract_status(_prop(props, schema.status_property))
    start_time = extract_date_range(_prop(props, schema.start_time_property))[0]
    end_time = extract_date_range(_prop(props, schema.end_time_property))[0]
    task_ids = extract_relation_ids(_prop(props, schema.task_property))

    fields = {
        'title': extract_text(_prop(props, schema.title_property)),
        'status': status,
        'normalized_status': status.lower(),
        'start_time': start_time,
        'end_time': end_time,
        'duration_minutes': _duration_minutes(start_time, end_time),
        'task_id': task_ids[0] if task_ids else None,
        'url': _url(record),
    }
    return _base_entity(EntityType.TIME_LOGS, record, fields)


_MAPPERS = {
    EntityType.TASKS: map_task,
    EntityType.PROJECTS: map_project,
    EntityType.CONTACTS: map_contact,
    EntityType.TIME_LOGS: map_time_log,
}


def map_record(entity_type: EntityType, record: Dict[str, Any], field_schema=None) -> Entity:
    """
    Map one Notion page to an Entity of the given type.

    Args:
        entity_type: Target entity type
        record: Notion page object
        field_schema: Field schema for the type; defaults apply when None

    Returns:
        Entity with sync_status synced and local_only False
    """
    schema = field_schema or FIELD_SCHEMA_TYPES[entity_type]()
    return _MAPPERS[entity_type](record, schema)
