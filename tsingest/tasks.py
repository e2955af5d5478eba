"""
Import tasks: one task per item, run on the worker pool.
A task parses its file in chunks, pushes every chunk and resolves the series id.
"""
import time
from typing import Callable, Dict, Optional, Type

from .config import IngestConfig
from .errors import ConfigurationError, NoPointsToImportError
from .logger import get_logger
from .model import ImportStatus, Item, utc_now
from .resolver import IdentifierResolver
from .serializers import PointSerializer, SerializerRegistry
from .store import TimeSeriesStore


class ImportTask:
    """
    Imports one item into the store.

    Never raises: every failure is recorded on the item and decides its
    final status (CANCELLED for a file without points, ERROR otherwise).
    """

    def __init__(
        self,
        item: Item,
        registry: SerializerRegistry,
        store: TimeSeriesStore,
        resolver: IdentifierResolver,
        chunk_size: int,
        serializer: Optional[str] = None,
    ):
        self.item = item
        self.registry = registry
        self.store = store
        self.resolver = resolver
        self.chunk_size = chunk_size
        self.serializer_selector = serializer
        self.logger = get_logger()

    def __call__(self) -> Item:
        return self.run()

    def _reset_counters(self):
        item = self.item
        item.points_read = 0
        item.points_succeeded = 0
        item.points_failed = 0
        item.tsuid = None
        item.import_start_date = None
        item.import_end_date = None

    def _open_serializer(self) -> PointSerializer:
        item = self.item
        reader = open(item.file, "r", encoding="utf-8", errors="replace")
        try:
            return self.registry.detect(
                reader,
                str(item.file),
                item.metric,
                item.series_tags(),
                self.serializer_selector,
            )
        except Exception:
            reader.close()
            raise

    def run(self) -> Item:
        item = self.item
        serializer = None
        self._reset_counters()

        try:
            serializer = self._open_serializer()

            item.status = ImportStatus.RUNNING
            item.import_start_date = utc_now()

            self._send_in_chunks(serializer)

            item.start_date, item.end_date = serializer.get_dates()
            item.tsuid = self.resolver.resolve(item.func_id, item.metric, item.series_tags(), item.start_date)
            item.status = ImportStatus.IMPORTED

            self.logger.debug("Item imported", item=item.func_id, tsuid=item.tsuid, points=item.points_read)

        except NoPointsToImportError as e:
            item.add_error(f"Exception: {e}")
            item.status = ImportStatus.CANCELLED
            self.logger.warning("Nothing to import", item=item.func_id, file=item.file.name)

        except Exception as e:
            cause = f" - Cause: {e.__cause__}" if e.__cause__ is not None else ""
            item.add_error(f"Exception: {type(e).__name__}: {e}{cause}")
            item.status = ImportStatus.ERROR
            self.logger.error("Error while processing item", item=item.func_id, file=str(item.file), error=str(e))

        finally:
            if serializer is not None:
                serializer.close()
            item.import_end_date = utc_now()

        return item

    def _send_in_chunks(self, serializer: PointSerializer):
        """
        Push the file chunk by chunk.

        Raises:
            NoPointsToImportError: The first and only chunk is empty
        """
        item = self.item
        chunk_index = 0
        empty_chunks = 0

        while serializer.has_next():
            chunk_index += 1
            try:
                batch = serializer.next(self.chunk_size)
                if batch:
                    result = self.store.push(batch)
                    item.add_success(result.succeeded)
                    item.add_failed(result.failed)
                    for error in result.errors:
                        item.add_error(f"[chunk #{chunk_index}] {error}")
                    self.logger.debug(
                        f"Chunk #{chunk_index} sent",
                        item=item.func_id,
                        points=len(batch),
                        failed=result.failed,
                    )
                else:
                    empty_chunks += 1
                    self.logger.debug(f"Chunk #{chunk_index} has no data", item=item.func_id)
            finally:
                item.points_read = serializer.total_points_read

        if chunk_index == 1 and empty_chunks == 1:
            raise NoPointsToImportError(f"Item {item.func_id} | No data to import")
        if serializer.total_points_read == 0:
            # Lines were read but no value was usable
            raise NoPointsToImportError(f"Item {item.func_id} | No valid point in {chunk_index} chunks")


class NothingTask:
    """Cancels its item without touching the store."""

    def __init__(self, item: Item, factory_name: str):
        self.item = item
        self.factory_name = factory_name

    def __call__(self) -> Item:
        self.item.add_error(f"Processed by {self.factory_name}")
        self.item.status = ImportStatus.CANCELLED
        self.item.import_start_date = self.item.import_end_date = utc_now()
        return self.item


class OpenTsdbTaskFactory:
    """Builds tasks importing items into the store."""

    def __init__(
        self,
        config: IngestConfig,
        store: TimeSeriesStore,
        registry: SerializerRegistry,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.store = store
        self.registry = registry
        self.resolver = IdentifierResolver(
            store,
            max_retries=config.resolve_max_retries,
            delay=config.resolve_retry_delay,
            sleep=sleep,
        )

    def create_task(self, item: Item, serializer: Optional[str] = None) -> Callable[[], Item]:
        return ImportTask(item, self.registry, self.store, self.resolver, self.config.chunk_size, serializer)


class NothingTaskFactory:
    """Dry run: every item is cancelled."""

    def __init__(self, config: IngestConfig, store: TimeSeriesStore, registry: SerializerRegistry, **_):
        self.config = config

    def create_task(self, item: Item, serializer: Optional[str] = None) -> Callable[[], Item]:
        return NothingTask(item, type(self).__name__)


IMPORTERS: Dict[str, Type] = {
    "opentsdb": OpenTsdbTaskFactory,
    "nothing": NothingTaskFactory,
}


def create_task_factory(
    name: str,
    config: IngestConfig,
    store: TimeSeriesStore,
    registry: SerializerRegistry,
    sleep: Callable[[float], None] = time.sleep,
):
    """Instantiate the task factory registered under an importer key."""
    try:
        factory_class = IMPORTERS[name]
    except KeyError:
        raise ConfigurationError(f"Unknown importer '{name}', available: {', '.join(IMPORTERS)}")
    return factory_class(config, store, registry, sleep=sleep)
