"""Helpers shared by the document builders."""

import json
import uuid
from datetime import datetime
from typing import Any

from ..models import ensure_utc

# Namespace for deterministic document and entry UUIDs
KSIWATCH_NAMESPACE = uuid.UUID("7d3c0f4e-5b7a-5c5e-9a39-2f2f8c2b9a10")

SCHEMA_VERSION = "1.0"


def stable_uuid(*parts: Any) -> str:
    """UUIDv5 derived from the given parts; identical input, identical id."""
    return str(uuid.uuid5(KSIWATCH_NAMESPACE, "/".join(str(p) for p in parts)))


def timestamp(value: datetime) -> str:
    """ISO 8601 UTC timestamp with a Z suffix."""
    return ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def canonical_json(document: Any) -> bytes:
    """Serialize with sorted keys and compact separators for byte-identical output."""
    return json.dumps(document, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
