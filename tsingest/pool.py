"""
Bounded worker pool and the process-wide ingestion guard.
Submissions beyond the pool capacity are rejected instead of buffered.
"""
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional

from .config import ERR_SESSION_IN_PROCESS
from .errors import IngestionConflictError, PoolRejectedError
from .logger import get_logger


class BoundedWorkerPool:
    """
    Thread pool with a bounded work queue.

    At most workers tasks run and queue_size more wait; a submission past
    that raises PoolRejectedError and the caller must back off.
    """

    def __init__(self, workers: int = 10, queue_size: int = 15, name: str = "ingest"):
        self.workers = workers
        self.queue_size = queue_size
        self.capacity = workers + queue_size
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix=name)
        self._slots = threading.BoundedSemaphore(self.capacity)
        self._pending = 0
        self._lock = threading.Lock()
        self.logger = get_logger()

    def _release(self, _future: Future):
        with self._lock:
            self._pending -= 1
        self._slots.release()

    def submit(self, fn: Callable, *args, **kwargs) -> Future:
        """
        Queue a task.

        Raises:
            PoolRejectedError: Every worker is busy and the queue is full
        """
        if not self._slots.acquire(blocking=False):
            raise PoolRejectedError(f"Worker pool full ({self.capacity} tasks in flight)")
        try:
            future = self._executor.submit(fn, *args, **kwargs)
        except Exception:
            self._slots.release()
            raise
        with self._lock:
            self._pending += 1
        future.add_done_callback(self._release)
        return future

    @property
    def pending(self) -> int:
        """Tasks running or waiting."""
        with self._lock:
            return self._pending

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait)


class IngestionGuard:
    """
    Single ingestion slot for the whole process.

    Check-and-set is atomic: of two sessions starting together only one
    gets the slot.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._holder: Optional[int] = None

    @property
    def holder(self) -> Optional[int]:
        with self._lock:
            return self._holder

    def is_held(self) -> bool:
        return self.holder is not None

    def try_acquire(self, session_id: int) -> bool:
        with self._lock:
            if self._holder is not None:
                return False
            self._holder = session_id
            return True

    def acquire(self, session_id: int):
        """
        Take the slot for a session.

        Raises:
            IngestionConflictError: Another session holds it
        """
        if not self.try_acquire(session_id):
            holder = self.holder
            raise IngestionConflictError(f"{ERR_SESSION_IN_PROCESS} (session {holder})", holder=holder)

    def release(self, session_id: int):
        with self._lock:
            if self._holder != session_id:
                get_logger().warning("Ingestion slot released by a non holder", session=session_id, holder=self._holder)
                return
            self._holder = None
