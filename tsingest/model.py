"""
Import session model: sessions, items and their status.

A session owns three item collections (to import, imported, in error) which
always partition the items discovered at analysis time. Collections are only
mutated under the session lock; readers get copies.
"""
import threading
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .errors import ModelInvariantError
from .logger import get_logger
from .stats import SessionStats


class ImportStatus(Enum):
    """Status shared by sessions and items."""
    CREATED = "CREATED"
    ANALYSING = "ANALYSING"
    ANALYSED = "ANALYSED"
    INGESTING = "INGESTING"
    RUNNING = "RUNNING"
    IMPORTED = "IMPORTED"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"
    CANCELLED = "CANCELLED"


# Collection names, as exposed in snapshots
TO_IMPORT = "toImport"
IMPORTED = "imported"
IN_ERROR = "inError"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass(eq=False)
class Item:
    """One file mapped to one prospective time series."""
    id: int
    file: Path
    metric: str
    tags: Dict[str, str]
    func_id: str
    status: ImportStatus = ImportStatus.CREATED

    # Series bounds from the parsed data (epoch milliseconds)
    start_date: Optional[int] = None
    end_date: Optional[int] = None

    points_read: int = 0
    points_succeeded: int = 0
    points_failed: int = 0
    errors: List[str] = field(default_factory=list)

    # Store-assigned identifier, set once imported
    tsuid: Optional[str] = None

    import_start_date: Optional[datetime] = None
    import_end_date: Optional[datetime] = None

    _session_ref: Optional[weakref.ref] = field(default=None, repr=False)

    def __post_init__(self):
        if not isinstance(self.file, Path):
            self.file = Path(self.file)

    @property
    def session(self) -> Optional["Session"]:
        return self._session_ref() if self._session_ref is not None else None

    def attach(self, session: "Session"):
        self._session_ref = weakref.ref(session)

    def add_error(self, message: str):
        """Append a timestamped error message."""
        self.errors.append(f"{utc_now().isoformat()} - {message}")

    def add_success(self, count: int):
        self.points_succeeded += count

    def add_failed(self, count: int):
        self.points_failed += count

    def series_tags(self) -> Dict[str, str]:
        """Tags sent to the store; a series needs at least one tag."""
        return dict(self.tags) if self.tags else {"metric": self.metric}

    def is_terminal(self) -> bool:
        return self.status in (ImportStatus.IMPORTED, ImportStatus.CANCELLED)

    def import_duration(self) -> float:
        """Seconds spent importing the item (0 when not finished)."""
        if self.import_start_date is None or self.import_end_date is None:
            return 0.0
        return (self.import_end_date - self.import_start_date).total_seconds()

    def import_speed(self) -> float:
        """Points read per second during the import."""
        duration = self.import_duration()
        if duration <= 0:
            return 0.0
        return self.points_read / duration

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "file": str(self.file),
            "metric": self.metric,
            "tags": dict(self.tags),
            "funcId": self.func_id,
            "status": self.status.value,
            "startDate": self.start_date,
            "endDate": self.end_date,
            "pointsRead": self.points_read,
            "pointsSucceeded": self.points_succeeded,
            "pointsFailed": self.points_failed,
            "errors": list(self.errors),
            "tsuid": self.tsuid,
            "importStartDate": _iso(self.import_start_date),
            "importEndDate": _iso(self.import_end_date),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Item":
        return cls(
            id=data["id"],
            file=Path(data["file"]),
            metric=data["metric"],
            tags=dict(data.get("tags") or {}),
            func_id=data["funcId"],
            status=ImportStatus(data.get("status", ImportStatus.CREATED.value)),
            start_date=data.get("startDate"),
            end_date=data.get("endDate"),
            points_read=data.get("pointsRead", 0),
            points_succeeded=data.get("pointsSucceeded", 0),
            points_failed=data.get("pointsFailed", 0),
            errors=list(data.get("errors") or []),
            tsuid=data.get("tsuid"),
            import_start_date=_parse_iso(data.get("importStartDate")),
            import_end_date=_parse_iso(data.get("importEndDate")),
        )


class Session:
    """
    One bulk-import request over the matching files of a dataset.

    Item collections are guarded by a re-entrant lock: a task reports its
    item (collection move + stats update) atomically so that a status poll
    never sees an item in two collections or in none.
    """

    def __init__(
        self,
        id: int,
        dataset: str,
        description: str,
        root_path: str,
        path_pattern: str,
        func_id_pattern: str,
        serializer: Optional[str] = None,
        importer: Optional[str] = None,
    ):
        self.id = id
        self.dataset = dataset
        self.description = description
        self.root_path = root_path
        self.path_pattern = path_pattern
        self.func_id_pattern = func_id_pattern
        self.serializer = serializer
        self.importer = importer

        self.status = ImportStatus.CREATED
        self.start_date: Optional[datetime] = None
        self.end_date: Optional[datetime] = None
        self.errors: List[str] = []
        self.stats = SessionStats()

        self._to_import: List[Item] = []
        self._imported: List[Item] = []
        self._in_error: List[Item] = []
        self._item_seq = 0
        self._lock = threading.RLock()

    @property
    def logger(self):
        return get_logger().bind(session=self.id)

    def __repr__(self) -> str:
        return f"Session(id={self.id}, dataset={self.dataset!r}, status={self.status.value})"

    # -- descriptors -------------------------------------------------------

    def is_equivalent(self, dataset: str, path_pattern: str, func_id_pattern: str) -> bool:
        """Same dataset, path pattern and functional id pattern."""
        return (
            self.dataset == dataset
            and self.path_pattern == path_pattern
            and self.func_id_pattern == func_id_pattern
        )

    def add_error(self, message: str):
        with self._lock:
            self.errors.append(f"{utc_now().isoformat()} - {message}")

    # -- collections -------------------------------------------------------

    @property
    def items_to_import(self) -> List[Item]:
        with self._lock:
            return list(self._to_import)

    @property
    def items_imported(self) -> List[Item]:
        with self._lock:
            return list(self._imported)

    @property
    def items_in_error(self) -> List[Item]:
        with self._lock:
            return list(self._in_error)

    def all_items(self) -> List[Item]:
        with self._lock:
            return self._to_import + self._imported + self._in_error

    def counts(self) -> Tuple[int, int, int]:
        """Sizes of (to import, imported, in error)."""
        with self._lock:
            return len(self._to_import), len(self._imported), len(self._in_error)

    def create_item(self, file: Path, metric: str, tags: Dict[str, str], func_id: str) -> Item:
        """Create a new item and append it to the items to import."""
        with self._lock:
            self._item_seq += 1
            item = Item(id=self._item_seq, file=file, metric=metric, tags=tags, func_id=func_id)
            item.attach(self)
            self._to_import.append(item)
            return item

    def _collection(self, name: str) -> List[Item]:
        if name == TO_IMPORT:
            return self._to_import
        if name == IMPORTED:
            return self._imported
        if name == IN_ERROR:
            return self._in_error
        raise ValueError(f"Unknown item collection: {name}")

    def _move(self, item: Item, source: str, target: str) -> bool:
        with self._lock:
            origin = self._collection(source)
            try:
                origin.remove(item)
            except ValueError:
                return False
            self._collection(target).append(item)
            return True

    def set_item_imported(self, item: Item) -> bool:
        moved = self._move(item, TO_IMPORT, IMPORTED)
        if not moved:
            self.logger.error("Could not remove item from list", item=item.func_id, list=TO_IMPORT)
        return moved

    def set_item_in_error(self, item: Item) -> bool:
        moved = self._move(item, TO_IMPORT, IN_ERROR)
        if not moved:
            self.logger.error("Could not remove item from list", item=item.func_id, list=TO_IMPORT)
        return moved

    def set_item_to_import(self, item: Item):
        """Move an item from the error list back to the items to import."""
        if not self._move(item, IN_ERROR, TO_IMPORT):
            raise ModelInvariantError(
                f"Could not remove item {item.func_id} from {IN_ERROR} list"
            )

    def move_item(self, item: Item, source: str, target: str) -> bool:
        """Move between any two collections, used by the cleaning passes."""
        return self._move(item, source, target)

    def report_item(self, item: Item) -> bool:
        """
        Move a finished item out of the items to import and update the stats.

        Both happen under the session lock so stats always agree with the
        collection sizes.
        """
        with self._lock:
            if item.status == ImportStatus.IMPORTED:
                moved = self.set_item_imported(item)
            else:
                moved = self.set_item_in_error(item)
            self.stats.update_stats(
                item.points_read,
                item.points_succeeded,
                item.points_failed,
                item.import_speed(),
                *self.counts(),
            )
            return moved

    # -- serialization -----------------------------------------------------

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "id": self.id,
                "dataset": self.dataset,
                "description": self.description,
                "rootPath": self.root_path,
                "pathPattern": self.path_pattern,
                "funcIdPattern": self.func_id_pattern,
                "serializer": self.serializer,
                "importer": self.importer,
                "status": self.status.value,
                "startDate": _iso(self.start_date),
                "endDate": _iso(self.end_date),
                "errors": list(self.errors),
                TO_IMPORT: [item.to_dict() for item in self._to_import],
                IMPORTED: [item.to_dict() for item in self._imported],
                IN_ERROR: [item.to_dict() for item in self._in_error],
                "stats": self.stats.snapshot(),
            }

    def snapshot(self) -> dict:
        """Consistent read-only view for status polls."""
        return self.to_dict()

    @classmethod
    def from_dict(cls, data: dict) -> "Session":
        session = cls(
            id=data["id"],
            dataset=data["dataset"],
            description=data.get("description", ""),
            root_path=data["rootPath"],
            path_pattern=data["pathPattern"],
            func_id_pattern=data["funcIdPattern"],
            serializer=data.get("serializer"),
            importer=data.get("importer"),
        )
        session.status = ImportStatus(data.get("status", ImportStatus.CREATED.value))
        session.start_date = _parse_iso(data.get("startDate"))
        session.end_date = _parse_iso(data.get("endDate"))
        session.errors = list(data.get("errors") or [])

        highest = 0
        for name in (TO_IMPORT, IMPORTED, IN_ERROR):
            for raw in data.get(name) or []:
                item = Item.from_dict(raw)
                item.attach(session)
                session._collection(name).append(item)
                highest = max(highest, item.id)
        session._item_seq = highest

        if data.get("stats"):
            session.stats = SessionStats.from_dict(data["stats"])
        return session
