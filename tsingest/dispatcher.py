"""
Ingestion run dispatcher.
Feeds the items of a session to the worker pool and reports finished items.
"""
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, wait
from typing import Callable, Dict, Optional

from .catalog import Catalog, MemoryCatalog, item_metadata
from .config import MSG_RUN_INCOMPLETE, IngestConfig
from .errors import CatalogError, PoolRejectedError
from .logger import get_logger
from .model import IMPORTED, IN_ERROR, TO_IMPORT, ImportStatus, Item, Session, utc_now
from .pool import BoundedWorkerPool, IngestionGuard
from .serializers import SerializerRegistry, default_registry
from .store import TimeSeriesStore
from .tasks import create_task_factory


class Dispatcher:
    """
    Runs the ingestion of one session at a time.

    The caller takes the ingestion guard, launch() starts the runner
    thread and the runner releases the guard when it ends, whatever the
    outcome. Finished items are reported from the runner thread only,
    so session collections and stats have a single writer.
    """

    def __init__(
        self,
        config: IngestConfig,
        store: TimeSeriesStore,
        pool: BoundedWorkerPool,
        guard: IngestionGuard,
        registry: Optional[SerializerRegistry] = None,
        catalog: Optional[Catalog] = None,
        checkpoint: Optional[Callable[[], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.store = store
        self.pool = pool
        self.guard = guard
        self.registry = registry or default_registry()
        self.catalog = catalog or MemoryCatalog()
        self.checkpoint = checkpoint
        self._sleep = sleep
        self._factories: Dict[str, object] = {}
        self._threads: Dict[int, threading.Thread] = {}
        self._lock = threading.Lock()
        self.logger = get_logger()

    # -- thread management ------------------------------------------------

    def launch(self, session: Session, prepare: Optional[Callable[[Session], bool]] = None) -> threading.Thread:
        """
        Start the ingestion of a session in a background thread.

        The guard must be held for the session. It is released when the
        thread ends, or right away if the thread cannot be started.

        Args:
            session: Session to ingest
            prepare: Called first in the thread; ingestion is skipped when
                it returns False
        """
        thread = threading.Thread(
            target=self._runner,
            args=(session, prepare),
            name=f"ingester-{session.id}",
            daemon=True,
        )
        try:
            with self._lock:
                self._threads[session.id] = thread
            thread.start()
        except Exception:
            with self._lock:
                self._threads.pop(session.id, None)
            self.guard.release(session.id)
            raise
        return thread

    def _runner(self, session: Session, prepare: Optional[Callable[[Session], bool]]):
        try:
            if prepare is None or prepare(session):
                self.run(session)
        except Exception as e:
            session.add_error(f"Ingestion failed: {e}")
            session.status = ImportStatus.ERROR
            session.logger.error("Session processing failed", error=str(e))
        finally:
            self.guard.release(session.id)

    def is_running(self, session_id: int) -> bool:
        with self._lock:
            thread = self._threads.get(session_id)
        return thread is not None and thread.is_alive()

    def wait(self, session_id: int, timeout: Optional[float] = None) -> bool:
        """Block until the run of a session ends. True if it ended."""
        with self._lock:
            thread = self._threads.get(session_id)
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    # -- run ----------------------------------------------------------------

    def task_factory(self, importer: Optional[str]):
        name = importer or self.config.default_importer
        with self._lock:
            if name not in self._factories:
                self._factories[name] = create_task_factory(
                    name, self.config, self.store, self.registry, sleep=self._sleep
                )
            return self._factories[name]

    def run(self, session: Session):
        """Ingest the items to import of a session (blocking, the caller owns the guard)."""
        log = session.logger
        try:
            factory = self.task_factory(session.importer)

            self.cleaning_passes(session)

            session.status = ImportStatus.INGESTING
            run = session.stats.start_run(*session.counts())
            session.start_date = run.date_ingestion_started
            session.end_date = None

            self.catalog.register_dataset(session.dataset, session.description)

            log.section(f"Ingesting dataset {session.dataset}")
            log.info("Starting ingestion", items=len(session.items_to_import))

            self._dispatch(session, factory)

            left = [item for item in session.items_to_import if not item.is_terminal()]
            if left:
                session.add_error(f"{MSG_RUN_INCOMPLETE} ({len(left)} items)")
                session.status = ImportStatus.ERROR
                log.error(MSG_RUN_INCOMPLETE, left=len(left))
            else:
                session.status = ImportStatus.COMPLETED
                to_import, imported, in_error = session.counts()
                log.success("Ingestion completed", imported=imported, in_error=in_error)

        except Exception as e:
            session.add_error(f"Ingestion failed: {e}")
            session.status = ImportStatus.ERROR
            log.error("Ingestion failed", error=str(e))

        finally:
            session.stats.end_run()
            session.end_date = utc_now()
            self.save_checkpoint(session)

    def save_checkpoint(self, session: Session):
        if self.checkpoint is None:
            return
        try:
            self.checkpoint()
        except Exception as e:
            session.add_error(f"Could not save sessions: {e}")
            session.logger.error("Session checkpoint failed", error=str(e))

    def _dispatch(self, session: Session, factory):
        """Submit every CREATED item, backing off while the pool is full."""
        in_flight: Dict[Future, Item] = {}

        for item in session.items_to_import:
            if item.status != ImportStatus.CREATED:
                continue
            task = factory.create_task(item, session.serializer)
            while True:
                try:
                    future = self.pool.submit(task)
                    break
                except PoolRejectedError:
                    session.logger.debug("Worker pool full, waiting", item=item.func_id, pending=self.pool.pending)
                    self._drain(session, in_flight, timeout=self.config.poll_interval)
            in_flight[future] = item

        while in_flight:
            self._drain(session, in_flight, timeout=None)

    def _drain(self, session: Session, in_flight: Dict[Future, Item], timeout: Optional[float]):
        if not in_flight:
            self._sleep(timeout or 0)
            return
        done, _ = wait(list(in_flight), timeout=timeout, return_when=FIRST_COMPLETED)
        for future in done:
            item = in_flight.pop(future)
            self.complete_item(session, item, future)

    def complete_item(self, session: Session, item: Item, future: Future):
        """Register an imported item and report it to the session."""
        error = future.exception()
        if error is not None:
            item.add_error(f"Exception: {type(error).__name__}: {error}")
            item.status = ImportStatus.ERROR

        if item.status == ImportStatus.IMPORTED:
            self._register(session, item)

        session.report_item(item)

    def _register(self, session: Session, item: Item):
        try:
            self.catalog.register_item(session.dataset, item, item_metadata(item))
        except CatalogError as e:
            item.add_error(f"Catalog registration failed: {e}")
            item.status = ImportStatus.ERROR
            session.logger.error("Catalog registration failed", item=item.func_id, error=str(e))

    # -- cleaning -------------------------------------------------------------

    def cleaning_passes(self, session: Session):
        """
        Put every item in the collection matching its status.

        Runs before each ingestion so that a session saved in the middle of
        a run can be ingested again.
        """
        log = session.logger
        reset = (ImportStatus.ANALYSED, ImportStatus.RUNNING, ImportStatus.ERROR)

        for item in session.items_imported:
            if item.status == ImportStatus.IMPORTED:
                continue
            if item.status in reset or item.status == ImportStatus.CREATED:
                log.warning("Imported item reset to CREATED", item=item.func_id, old=item.status.value)
                item.status = ImportStatus.CREATED
                session.move_item(item, IMPORTED, TO_IMPORT)
            else:
                log.error("Item put into the items in error", item=item.func_id, status=item.status.value)
                session.move_item(item, IMPORTED, IN_ERROR)

        for item in session.items_to_import:
            if item.status == ImportStatus.CREATED:
                continue
            if item.status in reset:
                log.debug("Item reset to CREATED", item=item.func_id, old=item.status.value)
                item.status = ImportStatus.CREATED
            elif item.status == ImportStatus.IMPORTED:
                log.warning("Item already IMPORTED in the items to import", item=item.func_id)
                self._register(session, item)
                target = IMPORTED if item.status == ImportStatus.IMPORTED else IN_ERROR
                session.move_item(item, TO_IMPORT, target)
            else:
                log.error("Item put into the items in error", item=item.func_id, status=item.status.value)
                session.move_item(item, TO_IMPORT, IN_ERROR)
