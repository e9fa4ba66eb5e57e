# core/cache.py

"""
Per-tenant data cache with persisted snapshots.

Entries are keyed by (tenant_id, key) and never cross tenants. Every
tenant's entries are mirrored to the KeyValueStore as one JSON snapshot so
the next launch can show last-known data before the authoritative fetch
completes. Store writes run on a single worker thread so they land in the
order they were issued.
"""

import copy
import json
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from threading import Event, Lock
from typing import Any, Dict, List, Optional, Set, Tuple

from core.errors import FetchError, SwitchCancelled
from core.logging_config import get_logger
from models.admin import utcnow
from services.interfaces import KeyValueStore, TenantDataService

logger = get_logger("cache")

TENANT_DATA_KEY = "tenant_data"
SNAPSHOT_KEY_PREFIX = "tenant_cache:"


def snapshot_key(tenant_id: str) -> str:
    return f"{SNAPSHOT_KEY_PREFIX}{tenant_id}"


class CacheEntry:
    """Represents a cached value and when it was fetched."""

    def __init__(self, tenant_id: str, key: str, value: Any, fetched_at: Optional[datetime] = None):
        self.tenant_id = tenant_id
        self.key = key
        self.value = value
        self.fetched_at = fetched_at or utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {"value": self.value, "fetched_at": self.fetched_at.isoformat()}

    @classmethod
    def from_dict(cls, tenant_id: str, key: str, raw: Dict[str, Any]) -> "CacheEntry":
        fetched_at = raw.get("fetched_at")
        return cls(
            tenant_id,
            key,
            raw.get("value"),
            datetime.fromisoformat(fetched_at) if fetched_at else None,
        )


class TenantDataCache:
    """
    Isolated key/value cache per tenant.

    Thread-safe; all mutation goes through load/set/clear.
    """

    def __init__(
        self,
        data_service: TenantDataService,
        store: KeyValueStore,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self._data_service = data_service
        self._store = store
        self._entries: Dict[str, Dict[str, CacheEntry]] = {}
        self._lock = Lock()
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="tenant-cache")
        self._pending: Set[Future] = set()
        self._pending_lock = Lock()

    # -----------------------------------------------------
    # Load
    # -----------------------------------------------------
    def load(self, tenant_id: str, cancel_event: Optional[Event] = None) -> None:
        """
        Warm from the persisted snapshot, then replace with an authoritative
        fetch and persist it.

        Raises FetchError if the fetch fails; the persisted snapshot stays
        available in memory. Raises SwitchCancelled if cancel_event is set
        before the fresh data is committed.
        """
        self._warm_from_snapshot(tenant_id)
        self._raise_if_cancelled(tenant_id, cancel_event)

        try:
            fresh = self._data_service.fetch_tenant_data(tenant_id)
        except Exception as e:
            logger.warning(f"Tenant data fetch failed for {tenant_id}, serving cached snapshot: {e}")
            raise FetchError(f"Tenant data unavailable for {tenant_id}: {e}", tenant_id=tenant_id) from e

        self._raise_if_cancelled(tenant_id, cancel_event)

        with self._lock:
            bucket = self._entries.setdefault(tenant_id, {})
            bucket[TENANT_DATA_KEY] = CacheEntry(tenant_id, TENANT_DATA_KEY, copy.deepcopy(fresh))
            payload = self._serialize(bucket)

        self._run_store_op(self._write_snapshot, tenant_id, payload).result()

    def _warm_from_snapshot(self, tenant_id: str) -> None:
        try:
            raw = self._store.get(snapshot_key(tenant_id))
        except Exception as e:
            logger.warning(f"Reading cached snapshot for {tenant_id} failed: {e}")
            return
        if not raw:
            return

        try:
            decoded = json.loads(raw.decode("utf-8"))
        except (ValueError, UnicodeDecodeError) as e:
            logger.warning(f"Discarding unreadable snapshot for {tenant_id}: {e}")
            return

        with self._lock:
            bucket = self._entries.setdefault(tenant_id, {})
            for key, item in decoded.items():
                # In-memory values are newer than anything persisted
                if key not in bucket and isinstance(item, dict):
                    bucket[key] = CacheEntry.from_dict(tenant_id, key, item)

    def _raise_if_cancelled(self, tenant_id: str, cancel_event: Optional[Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise SwitchCancelled(f"Load of {tenant_id} cancelled", tenant_id=tenant_id)

    # -----------------------------------------------------
    # Read / write
    # -----------------------------------------------------
    def get(self, tenant_id: str, key: str) -> Tuple[Any, bool]:
        with self._lock:
            entry = self._entries.get(tenant_id, {}).get(key)
            if entry is None:
                return None, False
            return copy.deepcopy(entry.value), True

    def set(self, tenant_id: str, key: str, value: Any) -> None:
        """Update memory now; persist in the background (failures are logged)."""
        with self._lock:
            bucket = self._entries.setdefault(tenant_id, {})
            bucket[key] = CacheEntry(tenant_id, key, copy.deepcopy(value))
            payload = self._serialize(bucket)

        self._run_store_op(self._write_snapshot, tenant_id, payload)

    def clear(self, tenant_id: str) -> None:
        """Drop memory and persisted entries for exactly this tenant."""
        with self._lock:
            self._entries.pop(tenant_id, None)

        self._run_store_op(self._delete_snapshot, tenant_id).result()

    def snapshot(self, tenant_id: str) -> Dict[str, Any]:
        with self._lock:
            return {k: copy.deepcopy(e.value) for k, e in self._entries.get(tenant_id, {}).items()}

    def fetched_at(self, tenant_id: str, key: str) -> Optional[datetime]:
        with self._lock:
            entry = self._entries.get(tenant_id, {}).get(key)
            return entry.fetched_at if entry else None

    def loaded_tenants(self) -> List[str]:
        with self._lock:
            return list(self._entries.keys())

    def reset(self) -> None:
        """Forget in-memory entries; persisted snapshots are kept."""
        with self._lock:
            self._entries.clear()

    # -----------------------------------------------------
    # Persistence
    # -----------------------------------------------------
    def wait_for_pending(self, timeout: Optional[float] = None) -> None:
        with self._pending_lock:
            pending = list(self._pending)
        for future in pending:
            future.exception(timeout=timeout)

    def shutdown(self) -> None:
        self.wait_for_pending()
        if self._owns_executor:
            self._executor.shutdown(wait=True)

    def _run_store_op(self, fn, *args) -> Future:
        future = self._executor.submit(fn, *args)
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._discard_future)
        return future

    def _discard_future(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def _write_snapshot(self, tenant_id: str, payload: bytes) -> None:
        for attempt in (1, 2):
            try:
                self._store.set(snapshot_key(tenant_id), payload)
                return
            except Exception as e:
                logger.warning(f"Persisting snapshot for {tenant_id} failed (attempt {attempt}): {e}")

    def _delete_snapshot(self, tenant_id: str) -> None:
        try:
            self._store.delete(snapshot_key(tenant_id))
        except Exception as e:
            logger.error(f"Deleting snapshot for {tenant_id} failed: {e}")

    @staticmethod
    def _serialize(bucket: Dict[str, CacheEntry]) -> bytes:
        return json.dumps(
            {key: entry.to_dict() for key, entry in bucket.items()},
            default=str,
        ).encode("utf-8")
