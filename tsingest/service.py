"""
Session API: create, inspect, list and restart import sessions.
Owns the process-wide worker pool, ingestion guard and session registry.
"""
import threading
import time
from typing import Callable, Dict, List, Optional

from .catalog import Catalog
from .config import MSG_NOTHING_TO_IMPORT, IngestConfig
from .discovery import FileDiscoverer
from .dispatcher import Dispatcher
from .errors import ConfigurationError
from .logger import get_logger
from .model import ImportStatus, Session
from .pool import BoundedWorkerPool, IngestionGuard
from .serializers import SerializerRegistry, default_registry
from .session_store import SessionStore, create_session_store
from .store import OpenTsdbStore, TimeSeriesStore
from .tasks import IMPORTERS


class SessionManager:
    """
    Entry point of the ingestion system.

    Sessions are kept in memory; the session store is only read by start()
    and written at checkpoints (end of each run) and by shutdown().
    """

    def __init__(
        self,
        config: IngestConfig,
        store: Optional[TimeSeriesStore] = None,
        session_store: Optional[SessionStore] = None,
        catalog: Optional[Catalog] = None,
        registry: Optional[SerializerRegistry] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.logger = get_logger()
        self.store = store if store is not None else OpenTsdbStore(config)
        self.session_store = session_store if session_store is not None else create_session_store(config)
        self.registry = registry or default_registry()
        self.pool = BoundedWorkerPool(config.worker_count, config.queue_size)
        self.guard = IngestionGuard()
        self.discoverer = FileDiscoverer(config)
        self.dispatcher = Dispatcher(
            config,
            self.store,
            self.pool,
            self.guard,
            registry=self.registry,
            catalog=catalog,
            checkpoint=self.save,
            sleep=sleep,
        )

        self._sessions: Dict[int, Session] = {}
        self._next_id = 1
        self._lock = threading.RLock()
        self._save_lock = threading.Lock()
        self._started = False
        self._closed = False

    # -- lifecycle ----------------------------------------------------------

    def start(self):
        """Load the known sessions; ids continue after the highest loaded one."""
        sessions = self.session_store.load()
        with self._lock:
            for session in sessions:
                self._sessions[session.id] = session
            if self._sessions:
                self._next_id = max(self._sessions) + 1
        self._started = True
        self.logger.info("Session manager started", sessions=len(sessions))

    def save(self):
        """Write every session to the session store."""
        with self._lock:
            sessions = sorted(self._sessions.values(), key=lambda s: s.id)
        with self._save_lock:
            self.session_store.save(sessions)

    def shutdown(self, wait: bool = True):
        """
        Optionally wait for the running ingestion, then save and stop the pool.

        Sessions are only saved if they were loaded: a failed start() must
        not overwrite the store. Calling it again does nothing.
        """
        if self._closed:
            return
        self._closed = True
        if wait:
            holder = self.guard.holder
            if holder is not None:
                self.logger.info("Waiting for running session", session=holder)
                self.dispatcher.wait(holder)
        if self._started:
            self.save()
        self.pool.shutdown(wait=wait)
        self.logger.info("Session manager stopped")

    # -- queries ------------------------------------------------------------

    def session(self, session_id: int) -> Optional[Session]:
        """Live session object."""
        with self._lock:
            return self._sessions.get(session_id)

    def get(self, session_id: int) -> Optional[dict]:
        """Consistent snapshot of a session, stats and runs included."""
        session = self.session(session_id)
        return session.snapshot() if session is not None else None

    def list(self) -> List[dict]:
        with self._lock:
            sessions = sorted(self._sessions.values(), key=lambda s: s.id)
        return [session.snapshot() for session in sessions]

    def find(self, dataset: str, path_pattern: str, func_id_pattern: str) -> Optional[Session]:
        """Session importing the same files with the same functional ids."""
        with self._lock:
            for session in self._sessions.values():
                if session.is_equivalent(dataset, path_pattern, func_id_pattern):
                    return session
        return None

    def wait(self, session_id: int, timeout: Optional[float] = None) -> bool:
        return self.dispatcher.wait(session_id, timeout)

    # -- commands -----------------------------------------------------------

    def _check_selectors(self, serializer: Optional[str], importer: Optional[str]):
        if serializer and serializer not in self.registry.names():
            raise ConfigurationError(
                f"Unknown serializer '{serializer}', available: {', '.join(self.registry.names())}"
            )
        if importer and importer not in IMPORTERS:
            raise ConfigurationError(f"Unknown importer '{importer}', available: {', '.join(IMPORTERS)}")

    def create(
        self,
        dataset: str,
        description: str,
        root_path: str,
        path_pattern: str,
        func_id_pattern: str,
        serializer: Optional[str] = None,
        importer: Optional[str] = None,
    ) -> int:
        """
        Create a session and start its analysis and ingestion.

        Returns:
            Id of the new session, or of the existing equivalent session

        Raises:
            ConfigurationError: Unknown serializer or importer key
            IngestionConflictError: Another session is being processed
        """
        self._check_selectors(serializer, importer)

        with self._lock:
            existing = self.find(dataset, path_pattern, func_id_pattern)
            if existing is not None:
                self.logger.info("Equivalent session exists", session=existing.id, dataset=dataset)
                return existing.id

            session_id = self._next_id
            self.guard.acquire(session_id)
            session = Session(
                id=session_id,
                dataset=dataset,
                description=description,
                root_path=root_path,
                path_pattern=path_pattern,
                func_id_pattern=func_id_pattern,
                serializer=serializer,
                importer=importer,
            )
            self._sessions[session_id] = session
            self._next_id += 1

        self.logger.info("Session created", session=session_id, dataset=dataset)
        self.dispatcher.launch(session, prepare=self.analyse)
        return session_id

    def analyse(self, session: Session) -> bool:
        """
        Discover the items of a session.

        Returns:
            True when there is something to ingest
        """
        session.status = ImportStatus.ANALYSING
        try:
            self.discoverer.analyse(session)
        except (ConfigurationError, OSError) as e:
            session.stats.timestamp_analysis(False)
            session.add_error(str(e))
            session.status = ImportStatus.CANCELLED
            session.logger.error("Session analysis failed", dataset=session.dataset, error=str(e))
            self.dispatcher.save_checkpoint(session)
            return False

        if not session.all_items():
            session.add_error(MSG_NOTHING_TO_IMPORT)
            session.status = ImportStatus.CANCELLED
            session.logger.warning(MSG_NOTHING_TO_IMPORT, dataset=session.dataset)
            self.dispatcher.save_checkpoint(session)
            return False
        return True

    def restart(self, session_id: int, force: bool = False) -> int:
        """
        Re-queue the items in error and relaunch the ingestion.

        Args:
            session_id: Session to restart
            force: Also re-queue items in error that are not ERROR (cancelled)

        Returns:
            Number of re-queued items

        Raises:
            KeyError: Unknown session
            IngestionConflictError: A session is being processed
            ModelInvariantError: An item vanished from the items in error
        """
        session = self.session(session_id)
        if session is None:
            raise KeyError(f"Unknown session {session_id}")

        self.guard.acquire(session_id)
        try:
            requeued = 0
            for item in session.items_in_error:
                if item.status == ImportStatus.ERROR or force:
                    item.status = ImportStatus.CREATED
                    session.set_item_to_import(item)
                    requeued += 1
        except Exception:
            self.guard.release(session_id)
            raise

        session.logger.info("Session restarted", requeued=requeued, force=force)

        # Never analysed, or analysed without result: analyse again
        needs_analysis = session.status in (ImportStatus.CREATED, ImportStatus.ANALYSING) or (
            session.status == ImportStatus.CANCELLED and not session.all_items()
        )
        self.dispatcher.launch(session, prepare=self.analyse if needs_analysis else None)
        return requeued
