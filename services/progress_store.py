"""
Task progress store - expiring key-value cache for progress snapshots.

Holds the task-level and detail-level progress projections polled by
clients, the import session used to resume work after a restart, the
per-day task number counter and the cooperative cancel flag. Everything
in here expires; a missing entry means "read the database", never
"failed".

Two backends share one interface: Redis for deployments and an in-process
dictionary (with an injectable clock) for tests and single-process CLI use.
"""

import json
import logging
import threading
import time
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import redis

from services.errors import ProgressStoreUnavailableError

logger = logging.getLogger(__name__)

# Default configuration (can be overridden)
DEFAULT_PROGRESS_TTL_SECONDS = 1800
DEFAULT_SESSION_TTL_SECONDS = 3600
DEFAULT_COUNTER_TTL_SECONDS = 86400

TASK_PROGRESS_KEY = 'drug:task:progress:{task_id}'
DETAIL_PROGRESS_KEY = 'drug:task:detail:{task_id}:{table_type}'
SESSION_KEY = 'drug:import:session:{session_id}'
CANCEL_KEY = 'drug:task:cancel:{task_id}'
TASK_NO_COUNTER_KEY = 'drug:task:no:{day}'


def _now_iso() -> str:
    return datetime.now().isoformat(timespec='seconds')


def _from_dict(cls, data: Dict[str, Any]):
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class TaskProgressInfo:
    """Task-level progress projection."""
    task_id: int
    task_no: str = ''
    status: int = 0
    extract_status: int = 0
    import_status: int = 0
    qc_status: int = 0
    progress_percent: float = 0.0
    current_stage: str = ''
    message: str = ''
    total_files: int = 0
    success_files: int = 0
    failed_files: int = 0
    total_records: int = 0
    success_records: int = 0
    failed_records: int = 0
    from_cache: bool = True
    updated_at: str = field(default_factory=_now_iso)


@dataclass
class TaskDetailProgressInfo:
    """Detail-level progress projection."""
    task_id: int
    table_type: int
    detail_id: Optional[int] = None
    file_name: str = ''
    status: int = 0
    parse_status: int = 0
    import_status: int = 0
    qc_status: int = 0
    total_rows: int = 0
    success_rows: int = 0
    failed_rows: int = 0
    qc_passed_rows: int = 0
    qc_failed_rows: int = 0
    progress_percent: float = 0.0
    current_stage: str = ''
    message: str = ''
    from_cache: bool = True
    updated_at: str = field(default_factory=_now_iso)


@dataclass
class ImportSessionInfo:
    """
    Resume information for a running task.

    ``completed_items`` and ``pending_items`` hold table type names in
    import order.
    """
    session_id: str
    task_id: int
    user_id: Optional[str] = None
    session_status: str = 'ACTIVE'
    completed_items: List[str] = field(default_factory=list)
    pending_items: List[str] = field(default_factory=list)
    last_active_time: str = field(default_factory=_now_iso)

    def mark_completed(self, item: str):
        if item in self.pending_items:
            self.pending_items.remove(item)
        if item not in self.completed_items:
            self.completed_items.append(item)
        self.last_active_time = _now_iso()


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

class ProgressBackend:
    """Minimal expiring key-value interface used by the store and the lock manager."""

    def ping(self) -> bool:
        raise NotImplementedError

    def close(self):
        pass

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str, ttl: float):
        raise NotImplementedError

    def set_if_absent(self, key: str, value: str, ttl: float) -> bool:
        raise NotImplementedError

    def delete(self, key: str):
        raise NotImplementedError

    def delete_if_equals(self, key: str, value: str) -> bool:
        raise NotImplementedError

    def expire_if_equals(self, key: str, value: str, ttl: float) -> bool:
        raise NotImplementedError

    def incr(self, key: str, ttl: float) -> int:
        """Increment a counter; the TTL is set when the counter is created."""
        raise NotImplementedError


_DELETE_IF_EQUALS = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""

_EXPIRE_IF_EQUALS = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('pexpire', KEYS[1], ARGV[2])
end
return 0
"""


class RedisBackend(ProgressBackend):
    """Redis backend; compare-and-delete/expire run as Lua scripts so they are atomic."""

    def __init__(self, url: str = 'redis://localhost:6379/0', client: Optional[redis.Redis] = None,
                 socket_timeout: float = 5.0):
        self.url = url
        self.client = client or redis.Redis.from_url(
            url, decode_responses=True, socket_timeout=socket_timeout, socket_connect_timeout=socket_timeout)
        self._delete_if_equals = self.client.register_script(_DELETE_IF_EQUALS)
        self._expire_if_equals = self.client.register_script(_EXPIRE_IF_EQUALS)

    def _call(self, func, *args, **kwargs):
        try:
            return func(*args, **kwargs)
        except redis.RedisError as e:
            raise ProgressStoreUnavailableError(f"Redis unavailable: {e}") from e

    def ping(self) -> bool:
        return bool(self._call(self.client.ping))

    def close(self):
        self.client.close()

    def get(self, key: str) -> Optional[str]:
        return self._call(self.client.get, key)

    def set(self, key: str, value: str, ttl: float):
        self._call(self.client.set, key, value, px=int(ttl * 1000))

    def set_if_absent(self, key: str, value: str, ttl: float) -> bool:
        return bool(self._call(self.client.set, key, value, nx=True, px=int(ttl * 1000)))

    def delete(self, key: str):
        self._call(self.client.delete, key)

    def delete_if_equals(self, key: str, value: str) -> bool:
        return bool(self._call(self._delete_if_equals, keys=[key], args=[value]))

    def expire_if_equals(self, key: str, value: str, ttl: float) -> bool:
        return bool(self._call(self._expire_if_equals, keys=[key], args=[value, int(ttl * 1000)]))

    def incr(self, key: str, ttl: float) -> int:
        value = int(self._call(self.client.incr, key))
        if value == 1:
            self._call(self.client.pexpire, key, int(ttl * 1000))
        return value


class MemoryBackend(ProgressBackend):
    """In-process backend with the same expiry semantics as Redis."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self._data: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[str]:
        item = self._data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if self.clock() >= expires_at:
            del self._data[key]
            return None
        return value

    def ping(self) -> bool:
        return True

    def close(self):
        with self._lock:
            self._data.clear()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    def set(self, key: str, value: str, ttl: float):
        with self._lock:
            self._data[key] = (value, self.clock() + ttl)

    def set_if_absent(self, key: str, value: str, ttl: float) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (value, self.clock() + ttl)
            return True

    def delete(self, key: str):
        with self._lock:
            self._data.pop(key, None)

    def delete_if_equals(self, key: str, value: str) -> bool:
        with self._lock:
            if self._live(key) != value:
                return False
            del self._data[key]
            return True

    def expire_if_equals(self, key: str, value: str, ttl: float) -> bool:
        with self._lock:
            if self._live(key) != value:
                return False
            self._data[key] = (value, self.clock() + ttl)
            return True

    def incr(self, key: str, ttl: float) -> int:
        with self._lock:
            current = self._live(key)
            if current is None:
                self._data[key] = ('1', self.clock() + ttl)
                return 1
            value = int(current) + 1
            self._data[key] = (str(value), self._data[key][1])
            return value


def create_backend(kind: str = 'redis', redis_url: str = 'redis://localhost:6379/0') -> ProgressBackend:
    """Build a backend from a configuration value ('redis' or 'memory')."""
    if kind == 'memory':
        return MemoryBackend()
    if kind == 'redis':
        return RedisBackend(redis_url)
    raise ValueError(f"Unknown progress backend: {kind}")


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class TaskProgressStore:
    """
    Write-through progress cache.

    Every write replaces the whole snapshot and resets its TTL.

    Usage:
        store = TaskProgressStore(RedisBackend(url))
        store.connect()
        store.save_task_progress(TaskProgressInfo(task_id=1, progress_percent=40.0))
        info = store.get_task_progress(1)   # None after expiry
        store.close()
    """

    def __init__(self, backend: ProgressBackend,
                 progress_ttl: float = DEFAULT_PROGRESS_TTL_SECONDS,
                 session_ttl: float = DEFAULT_SESSION_TTL_SECONDS,
                 counter_ttl: float = DEFAULT_COUNTER_TTL_SECONDS):
        self.backend = backend
        self.progress_ttl = progress_ttl
        self.session_ttl = session_ttl
        self.counter_ttl = counter_ttl
        self.connected = False

    def connect(self) -> 'TaskProgressStore':
        """
        Check the backend is reachable.

        Raises:
            ProgressStoreUnavailableError: Backend did not answer
        """
        if not self.backend.ping():
            raise ProgressStoreUnavailableError('Progress store did not answer ping')
        self.connected = True
        logger.debug(f"Progress store connected ({type(self.backend).__name__})")
        return self

    def close(self):
        self.backend.close()
        self.connected = False

    def __enter__(self):
        return self.connect()

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # -- helpers

    def _write(self, key: str, obj, ttl: float):
        data = asdict(obj)
        data.pop('from_cache', None)
        self.backend.set(key, json.dumps(data, default=str), ttl)

    def _read(self, key: str, cls):
        raw = self.backend.get(key)
        if raw is None:
            return None
        try:
            return _from_dict(cls, json.loads(raw))
        except (ValueError, TypeError) as e:
            logger.warning(f"Discarding unreadable cache entry {key}: {e}")
            self.backend.delete(key)
            return None

    # -- task / detail progress

    def save_task_progress(self, info: TaskProgressInfo):
        info.updated_at = _now_iso()
        self._write(TASK_PROGRESS_KEY.format(task_id=info.task_id), info, self.progress_ttl)

    def get_task_progress(self, task_id: int) -> Optional[TaskProgressInfo]:
        return self._read(TASK_PROGRESS_KEY.format(task_id=task_id), TaskProgressInfo)

    def save_detail_progress(self, info: TaskDetailProgressInfo):
        info.updated_at = _now_iso()
        key = DETAIL_PROGRESS_KEY.format(task_id=info.task_id, table_type=int(info.table_type))
        self._write(key, info, self.progress_ttl)

    def get_detail_progress(self, task_id: int, table_type: int) -> Optional[TaskDetailProgressInfo]:
        key = DETAIL_PROGRESS_KEY.format(task_id=task_id, table_type=int(table_type))
        return self._read(key, TaskDetailProgressInfo)

    def delete_task(self, task_id: int, table_types=()):
        self.backend.delete(TASK_PROGRESS_KEY.format(task_id=task_id))
        self.backend.delete(CANCEL_KEY.format(task_id=task_id))
        for table_type in table_types:
            self.backend.delete(DETAIL_PROGRESS_KEY.format(task_id=task_id, table_type=int(table_type)))

    # -- import session

    def save_session(self, info: ImportSessionInfo):
        info.last_active_time = _now_iso()
        self._write(SESSION_KEY.format(session_id=info.session_id), info, self.session_ttl)

    def get_session(self, session_id: str) -> Optional[ImportSessionInfo]:
        if not session_id:
            return None
        return self._read(SESSION_KEY.format(session_id=session_id), ImportSessionInfo)

    def delete_session(self, session_id: str):
        self.backend.delete(SESSION_KEY.format(session_id=session_id))

    # -- cancellation

    def request_cancel(self, task_id: int):
        self.backend.set(CANCEL_KEY.format(task_id=task_id), '1', self.progress_ttl)

    def is_cancel_requested(self, task_id: int) -> bool:
        return self.backend.get(CANCEL_KEY.format(task_id=task_id)) is not None

    def clear_cancel(self, task_id: int):
        self.backend.delete(CANCEL_KEY.format(task_id=task_id))

    # -- numbering

    def next_task_no(self, now: Optional[datetime] = None) -> str:
        """DRUG_YYYYMMDD_NNNNNN from a per-day counter."""
        day = (now or datetime.now()).strftime('%Y%m%d')
        sequence = self.backend.incr(TASK_NO_COUNTER_KEY.format(day=day), self.counter_ttl)
        return f"DRUG_{day}_{sequence:06d}"
