"""Tests for the per-item import tasks and task factories."""
import pytest

from tsingest.errors import ConfigurationError
from tsingest.model import ImportStatus, Session
from tsingest.resolver import IdentifierResolver
from tsingest.serializers import default_registry
from tsingest.store import PushResult
from tsingest.tasks import (
    ImportTask,
    NothingTaskFactory,
    OpenTsdbTaskFactory,
    create_task_factory,
)


@pytest.fixture
def session(make_csv):
    return Session(1, "DAR", "", str(make_csv.root), r"/(?P<metric>\w+)\.csv", "${metric}")


@pytest.fixture
def make_task(session, store):
    """Item for a file under the dataset root, and its import task."""

    def _make(path, metric="temp", tags=None, chunk_size=10, serializer=None):
        item = session.create_item(path, metric, tags if tags is not None else {"eq": "eq1"}, f"{metric}_fid")
        resolver = IdentifierResolver(store, max_retries=6, delay=0, sleep=lambda _: None)
        return ImportTask(item, default_registry(), store, resolver, chunk_size, serializer)

    return _make


class TestImportTask:
    """Outcome of one item import."""

    def test_three_rows_in_one_batch(self, make_csv, rows, store, make_task):
        task = make_task(make_csv("temp.csv", rows(3)))

        item = task()

        assert item.status == ImportStatus.IMPORTED
        assert item.points_read == 3
        assert item.points_succeeded == 3
        assert [len(batch) for batch in store.pushed] == [3]
        assert item.tsuid == "TS_temp_eq1"
        assert item.start_date < item.end_date
        assert item.import_start_date <= item.import_end_date
        assert item.errors == []

    def test_header_only_is_cancelled(self, make_csv, store, make_task):
        task = make_task(make_csv("temp.csv", []))

        item = task()

        assert item.status == ImportStatus.CANCELLED
        assert item.points_read == 0
        assert store.pushed == []
        assert store.resolve_calls == 0
        assert "No data to import" in item.errors[-1]

    def test_only_invalid_values_is_cancelled(self, make_csv, make_task):
        task = make_task(make_csv("temp.csv", ["2020-01-01T00:00:00Z;n/a", "2020-01-01T00:00:01Z;"]))

        item = task()

        assert item.status == ImportStatus.CANCELLED
        assert item.points_read == 0

    def test_identifier_never_resolved(self, make_csv, rows, store, make_task):
        store.resolve_after = None
        task = make_task(make_csv("temp.csv", rows(3)))

        item = task()

        assert item.status == ImportStatus.ERROR
        assert store.resolve_calls == 7
        assert "Identifier resolution failed" in item.errors[-1]
        assert item.tsuid is None
        # Pushed points stay counted
        assert item.points_succeeded == 3

    def test_identifier_resolved_after_retries(self, make_csv, rows, store, make_task):
        store.resolve_after = 3
        task = make_task(make_csv("temp.csv", rows(3)))

        item = task()

        assert item.status == ImportStatus.IMPORTED
        assert store.resolve_calls == 4

    def test_chunking_and_trailing_empty_chunk(self, make_csv, rows, store, make_task):
        task = make_task(make_csv("temp.csv", rows(20)))

        item = task()

        assert item.status == ImportStatus.IMPORTED
        assert [len(batch) for batch in store.pushed] == [10, 10]
        assert item.points_read == 20

    def test_push_failure_keeps_points_read(self, make_csv, rows, store, make_task):
        store.push_failures["temp"] = 1
        task = make_task(make_csv("temp.csv", rows(25)))

        item = task()

        assert item.status == ImportStatus.ERROR
        assert item.points_read == 10
        assert item.points_succeeded == 0
        assert "StoreError: connection refused" in item.errors[-1]
        assert store.resolve_calls == 0

    def test_malformed_line_is_error(self, make_csv, store, make_task):
        task = make_task(make_csv("temp.csv", ["2020-01-01T00:00:00Z;1", "not-a-date;2"]), serializer="common")

        item = task()

        assert item.status == ImportStatus.ERROR
        assert "MalformedChunkError" in item.errors[-1]
        assert "line 3" in item.errors[-1]
        assert store.pushed == []

    def test_per_point_errors_are_recorded(self, make_csv, rows, store, make_task):
        store.outcomes = [PushResult(succeeded=2, failed=1, errors=["1577836800000: invalid value"])]
        task = make_task(make_csv("temp.csv", rows(3)))

        item = task()

        assert item.status == ImportStatus.IMPORTED
        assert item.points_succeeded == 2
        assert item.points_failed == 1
        assert item.errors[0].endswith("[chunk #1] 1577836800000: invalid value")

    def test_missing_file_is_error(self, make_csv, make_task):
        task = make_task(make_csv.root / "gone.csv")

        item = task()

        assert item.status == ImportStatus.ERROR
        assert "FileNotFoundError" in item.errors[-1]
        assert item.import_end_date is not None

    def test_default_tag_when_no_tags(self, make_csv, rows, store, make_task):
        task = make_task(make_csv("temp.csv", rows(2)), tags={})

        item = task()

        assert item.status == ImportStatus.IMPORTED
        assert all(point.tags == {"metric": "temp"} for point in store.points)
        assert item.tsuid == "TS_temp_temp"

    def test_rerun_resets_counters(self, make_csv, rows, store, make_task):
        store.push_failures["temp"] = 1
        task = make_task(make_csv("temp.csv", rows(15)))
        task()
        task.item.status = ImportStatus.CREATED

        item = task()

        assert item.status == ImportStatus.IMPORTED
        assert item.points_read == 15
        assert item.points_succeeded == 15


class TestFactories:
    """Importer selection."""

    def test_opentsdb_factory(self, config, store, make_csv, rows, session):
        factory = create_task_factory("opentsdb", config, store, default_registry())
        item = session.create_item(make_csv("temp.csv", rows(1)), "temp", {}, "fid")

        assert isinstance(factory, OpenTsdbTaskFactory)
        assert factory.resolver.max_retries == 6
        assert factory.create_task(item)().status == ImportStatus.IMPORTED

    def test_nothing_factory_cancels(self, config, store, session, make_csv, rows):
        factory = create_task_factory("nothing", config, store, default_registry())
        item = session.create_item(make_csv("temp.csv", rows(1)), "temp", {}, "fid")

        result = factory.create_task(item)()

        assert isinstance(factory, NothingTaskFactory)
        assert result.status == ImportStatus.CANCELLED
        assert result.errors[-1].endswith("Processed by NothingTaskFactory")
        assert store.pushed == []

    def test_unknown_importer(self, config, store):
        with pytest.raises(ConfigurationError, match="Unknown importer"):
            create_task_factory("influx", config, store, default_registry())
