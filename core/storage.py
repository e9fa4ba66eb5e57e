# core/storage.py

"""
Key/value persistence used for tenant cache snapshots and mode preferences.

- MemoryKeyValueStore: process-local, no external dependency.
- SupabaseKeyValueStore: rows in settings.KV_STORE_TABLE (key, value).
"""

from threading import RLock
from typing import Dict, Optional

from core.config import settings
from core.errors import PersistenceFailure, extract_supabase_error
from core.logging_config import logger


class MemoryKeyValueStore:
    """In-process store; not shared across instances."""

    def __init__(self) -> None:
        self._data: Dict[str, bytes] = {}
        self._lock = RLock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: bytes) -> None:
        with self._lock:
            self._data[key] = bytes(value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self):
        with self._lock:
            return list(self._data.keys())


class SupabaseKeyValueStore:
    """Supabase-backed store. Values are kept as UTF-8 text."""

    def __init__(self, client, table: Optional[str] = None) -> None:
        self._client = client
        self._table = table or settings.KV_STORE_TABLE

    def get(self, key: str) -> Optional[bytes]:
        try:
            result = (
                self._client.table(self._table)
                .select("value")
                .eq("key", key)
                .limit(1)
                .execute()
            )
        except Exception as e:
            # A failed read behaves like a miss; callers re-fetch authoritatively
            logger.warning(f"KV get failed for {key}: {extract_supabase_error(e)}")
            return None

        rows = result.data or []
        if not rows or rows[0].get("value") is None:
            return None
        return rows[0]["value"].encode("utf-8")

    def set(self, key: str, value: bytes) -> None:
        try:
            self._client.table(self._table).upsert(
                {"key": key, "value": value.decode("utf-8")}
            ).execute()
        except Exception as e:
            raise PersistenceFailure(f"KV set failed for {key}: {extract_supabase_error(e)}")

    def delete(self, key: str) -> None:
        try:
            self._client.table(self._table).delete().eq("key", key).execute()
        except Exception as e:
            raise PersistenceFailure(f"KV delete failed for {key}: {extract_supabase_error(e)}")
