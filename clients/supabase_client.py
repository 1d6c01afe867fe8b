"""
Supabase connection and row serialization.

The async client is created lazily on first use so that importing the app
never requires credentials.
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from supabase import AsyncClient, acreate_client

from utils import settings

logger = logging.getLogger(__name__)

_supabase_client: Optional[AsyncClient] = None
_supabase_lock = asyncio.Lock()

COURSE_FIELDS = {
    "id", "user_id", "title", "description", "total_lessons",
    "is_completed", "is_archived", "created_at", "updated_at",
}

LESSON_FIELDS = {
    "id", "course_id", "session_number", "title", "subtitle", "content",
    "status", "citations", "estimated_minutes", "generation_started_at",
    "created_at",
}

RESEARCH_FIELDS = {
    "id", "course_id", "query", "status", "content", "citations",
    "confidence", "token_count", "search_count", "error",
    "created_at", "updated_at",
}


async def get_supabase() -> AsyncClient:
    """Lazy-init async Supabase client singleton."""
    global _supabase_client
    if _supabase_client is not None:
        return _supabase_client
    async with _supabase_lock:
        if _supabase_client is not None:
            return _supabase_client
        url = settings.SUPABASE_URL
        key = settings.SUPABASE_KEY
        if not url or not key:
            raise ValueError("SUPABASE_URL and SUPABASE_KEY must be set")
        _supabase_client = await acreate_client(url, key)
        logger.info("Supabase client initialized")
        return _supabase_client


def serialize_for_supabase(data: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively convert enums → .value, datetimes → .isoformat(), int dict keys → str."""
    result = {}
    for key, value in data.items():
        result[str(key)] = _serialize_value(value)
    return result


def _serialize_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return serialize_for_supabase(value)
    if isinstance(value, (list, tuple)):
        return [_serialize_value(item) for item in value]
    if hasattr(value, "model_dump"):
        return serialize_for_supabase(value.model_dump())
    return value


def only_columns(data: Dict[str, Any], columns: Iterable[str]) -> Dict[str, Any]:
    """Serialize and drop keys that are not columns of the target table."""
    allowed = set(columns)
    return serialize_for_supabase({k: v for k, v in data.items() if k in allowed})
