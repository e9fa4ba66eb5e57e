# services/audit_log.py

"""
Append-only audit trail for privileged admin events.

Writes go to an AuditSink. A failed write is retried once after a short
backoff; if it still fails the entry stays in a bounded ring buffer and the
log enters degraded mode. Buffered entries reach the sink in order.

append() never waits on another thread's sink write: if a write is already
in progress the entry is queued and that writer drains it. Nothing here
ever raises into the caller's transition.
"""

import json
import time
from collections import deque
from threading import Lock, RLock
from typing import Callable, Deque, List, Optional

from core.config import settings
from core.errors import PersistenceFailure, extract_supabase_error
from core.logging_config import get_logger
from models.audit import AuditEntry
from services.interfaces import AuditSink

logger = get_logger("audit")


# ============================================================
# Sinks
# ============================================================
class LoggingAuditSink:
    """Writes each entry as one JSON line through the app logger."""

    def __init__(self, log=None):
        self._log = log or logger

    def write(self, entry: AuditEntry) -> None:
        self._log.info(json.dumps(entry.to_row(), sort_keys=True))


class MemoryAuditSink:
    def __init__(self) -> None:
        self.entries: List[AuditEntry] = []
        self._lock = RLock()

    def write(self, entry: AuditEntry) -> None:
        with self._lock:
            self.entries.append(entry)


class SupabaseAuditSink:
    def __init__(self, client, table: Optional[str] = None):
        self._client = client
        self._table = table or settings.AUDIT_TABLE

    def write(self, entry: AuditEntry) -> None:
        try:
            self._client.table(self._table).insert(entry.to_row()).execute()
        except Exception as e:
            raise PersistenceFailure(f"Audit insert failed: {extract_supabase_error(e)}")


# ============================================================
# Audit log
# ============================================================
class AuditLog:
    def __init__(
        self,
        sink: AuditSink,
        capacity: Optional[int] = None,
        retry_backoff_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        history_limit: Optional[int] = None,
    ):
        self._sink = sink
        self._capacity = max(1, capacity if capacity is not None else settings.AUDIT_BUFFER_CAPACITY)
        self._backoff = (
            retry_backoff_seconds
            if retry_backoff_seconds is not None
            else settings.AUDIT_RETRY_BACKOFF_SECONDS
        )
        self._sleep = sleep

        # _lock guards the buffers and counters and is never held across a sink write.
        # _write_lock is held by the one thread currently draining to the sink.
        self._lock = Lock()
        self._write_lock = Lock()
        self._pending: Deque[AuditEntry] = deque(maxlen=self._capacity)
        self._recorded: Deque[AuditEntry] = deque(
            maxlen=max(1, history_limit or settings.AUDIT_HISTORY_LIMIT)
        )
        self._dropped = 0
        self._degraded = False

    # -----------------------------------------------------
    # Inspection
    # -----------------------------------------------------
    @property
    def degraded(self) -> bool:
        """True while a write has failed and entries are buffered, or once any entry was lost."""
        with self._lock:
            return self._degraded

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def dropped_count(self) -> int:
        with self._lock:
            return self._dropped

    def entries(self) -> List[AuditEntry]:
        """The most recent entries appended through this log, oldest first."""
        with self._lock:
            return list(self._recorded)

    # -----------------------------------------------------
    # Writing
    # -----------------------------------------------------
    def append(self, entry: AuditEntry) -> bool:
        """
        Record an entry. Returns True if it reached the sink before
        returning, False if it is still buffered.
        """
        with self._lock:
            self._recorded.append(entry)
            self._enqueue(entry)

        self._drain()

        with self._lock:
            return all(queued is not entry for queued in self._pending)

    def flush(self) -> bool:
        """Wait for any in-progress write, then drain. Returns True when nothing is left."""
        with self._write_lock:
            return self._drain_locked()

    def _drain(self) -> None:
        while self._write_lock.acquire(blocking=False):
            try:
                drained = self._drain_locked()
            finally:
                self._write_lock.release()

            if not drained:
                return
            # Entries queued by other threads while we held the write lock
            with self._lock:
                if not self._pending:
                    return

    def _drain_locked(self) -> bool:
        while True:
            with self._lock:
                if not self._pending:
                    if self._dropped == 0:
                        self._degraded = False
                    return True
                entry = self._pending[0]
                degraded = self._degraded

            # Once degraded, skip the backoff so a dead sink does not stall callers
            written = self._try_write(entry) if degraded else self._write_with_retry(entry)

            with self._lock:
                if not written:
                    self._degraded = True
                    return False
                # The head may have been pushed out by an overflow meanwhile
                if self._pending and self._pending[0] is entry:
                    self._pending.popleft()

    def _write_with_retry(self, entry: AuditEntry) -> bool:
        if self._try_write(entry):
            return True
        self._sleep(self._backoff)
        return self._try_write(entry)

    def _try_write(self, entry: AuditEntry) -> bool:
        try:
            self._sink.write(entry)
            return True
        except Exception as e:
            logger.warning(f"Audit write failed for {entry.event_type} ({entry.entry_id}): {e}")
            return False

    def _enqueue(self, entry: AuditEntry) -> None:
        if len(self._pending) == self._pending.maxlen:
            # deque drops the oldest entry on overflow
            self._dropped += 1
            self._degraded = True
            logger.error(
                f"Audit buffer full ({self._capacity}); dropping oldest entry "
                f"{self._pending[0].event_type} ({self._pending[0].entry_id})"
            )
        self._pending.append(entry)
