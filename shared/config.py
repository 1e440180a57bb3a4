"""Shared configuration utilities."""

import json
import os
import re
from dataclasses import fields as dataclass_fields
from typing import Mapping, Optional

from shared.models import (
    FIELD_SCHEMA_TYPES,
    EntitySyncConfig,
    EntityType,
    SyncSettings,
)


def get_env(key: str, default: Optional[str] = None, required: bool = False) -> str:
    """Get environment variable with optional default and required validation."""
    value = os.getenv(key, default)
    if required and not value:
        raise ValueError(f"Required environment variable {key} is not set")
    return value


def get_database_url() -> str:
    """Get the local store database URL from environment."""
    return get_env(
        "LOCAL_DATABASE_URL",
        "sqlite:///notion_tasks_sync.db",
        required=False
    )


def get_engine_config() -> dict:
    """Get sync engine tuning from environment."""
    max_attempts = get_env("SYNC_MAX_RETRY_ATTEMPTS")
    return {
        "request_interval": int(get_env("SYNC_REQUEST_INTERVAL_MS", "350")) / 1000.0,
        "display_hold_seconds": float(get_env("SYNC_DISPLAY_HOLD_SECONDS", "3")),
        "admission_policy": get_env("SYNC_ADMISSION_POLICY", "reject").lower(),
        "max_retry_attempts": int(max_attempts) if max_attempts else None,
    }


def clean_collection_id(collection_id: str) -> str:
    """
    Clean and extract a Notion database ID from various formats.

    Handles:
    - Plain UUID: 2fb86a4c5fbf806dbeb6f3f2c1b23d10
    - UUID with dashes: 2fb86a4c-5fbf-806d-beb6-f3f2c1b23d10
    - Notion URL: https://www.notion.so/2fb86a4c5fbf806dbeb6f3f2c1b23d10?v=...
    - URL with a page slug: https://www.notion.so/Tasks-2fb86a4c5fbf806dbeb6f3f2c1b23d10

    Args:
        collection_id: Database ID in any format

    Returns:
        Clean database ID (32 hex characters without dashes)

    Raises:
        ValueError: If the database ID is invalid
    """
    collection_id = collection_id.strip()

    if collection_id.startswith('http'):
        path = collection_id.split('?', 1)[0].rstrip('/')
        match = re.search(r'([a-fA-F0-9]{32}|[a-fA-F0-9-]{36})$', path)
        if not match:
            raise ValueError(f"Could not extract database ID from URL: {collection_id}")
        collection_id = match.group(1)

    cleaned = collection_id.replace('-', '').lower()
    if not re.fullmatch(r'[a-f0-9]{32}', cleaned):
        raise ValueError(f"Invalid database ID format: {collection_id}")
    return cleaned


def _env_prefix(entity_type: EntityType) -> str:
    return f"NOTION_{entity_type.value.upper()}"


def load_field_schema(entity_type: EntityType, raw: Optional[str] = None):
    """
    Build the field schema for an entity type.

    Args:
        entity_type: Entity type whose schema to build
        raw: Optional JSON object overriding individual schema fields

    Returns:
        Field schema dataclass instance

    Raises:
        ValueError: If the override is not a JSON object or names unknown fields
    """
    schema_cls = FIELD_SCHEMA_TYPES[entity_type]
    if not raw:
        return schema_cls()

    overrides = json.loads(raw)
    if not isinstance(overrides, dict):
        raise ValueError(f"Field schema for {entity_type.value} must be a JSON object")

    known = {f.name for f in dataclass_fields(schema_cls)}
    unknown = set(overrides) - known
    if unknown:
        raise ValueError(
            f"Unknown field schema keys for {entity_type.value}: {', '.join(sorted(unknown))}"
        )
    return schema_cls(**overrides)


def load_sync_settings(environ: Optional[Mapping[str, str]] = None) -> SyncSettings:
    """
    Load credentials, collection ids and field schemas for every entity type.

    A per-type API key (NOTION_<TYPE>_API_KEY) overrides the shared
    NOTION_API_KEY. Missing values are left empty; the orchestrator rejects
    unconfigured types when a sync is requested.
    """
    environ = os.environ if environ is None else environ
    shared_key = environ.get("NOTION_API_KEY")

    entities = {}
    for entity_type in EntityType:
        prefix = _env_prefix(entity_type)
        raw_collection = environ.get(f"{prefix}_DATABASE_ID")
        entities[entity_type] = EntitySyncConfig(
            entity_type=entity_type,
            api_key=environ.get(f"{prefix}_API_KEY") or shared_key,
            collection_id=clean_collection_id(raw_collection) if raw_collection else None,
            field_schema=load_field_schema(entity_type, environ.get(f"{prefix}_FIELD_SCHEMA")),
        )
    return SyncSettings(entities=entities)
