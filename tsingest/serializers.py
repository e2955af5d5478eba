"""
CSV to point serializers with format auto-detection.
Turns the lines of one input file into lazy, size-bounded point batches.
"""
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, TextIO, Tuple, Type

from .errors import ConfigurationError, MalformedChunkError
from .logger import get_logger


# Bounded lookahead used when peeking at the first data line
DETECTION_LOOKAHEAD = 500

ISO_FORMATS = (
    "%Y-%m-%dT%H:%M:%S.%f%z",
    "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%dT%H:%M%z",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M",
)

EDF_FORMATS = (
    "%d-%m-%y %H:%M:%S.%f",
    "%d-%m-%y %H:%M:%S",
)

MONTHS = ("JAN", "FEB", "MAR", "APR", "MAY", "JUN", "JUL", "AUG", "SEP", "OCT", "NOV", "DEC")


@dataclass
class Point:
    """One store record: metric, epoch milliseconds, value and tags."""
    metric: str
    timestamp: int
    value: float
    tags: Dict[str, str]

    def to_dict(self) -> dict:
        return {
            "metric": self.metric,
            "timestamp": self.timestamp,
            "value": self.value,
            "tags": self.tags,
        }


@dataclass(frozen=True)
class ColumnLayout:
    """Position of the captured columns in a data line."""
    timestamp_index: int = 0
    value_index: int = 1
    min_columns: int = 2


def split_line(line: str) -> Tuple[List[str], bool]:
    """
    Split a data line on its separator.

    Returns:
        Tuple of (columns, decimal_comma) where decimal_comma tells whether
        a comma inside a value is a decimal mark
    """
    if ";" in line:
        return line.split(";"), True
    if "\t" in line:
        return line.split("\t"), True
    if "," in line:
        return line.split(","), False
    return line.split(), False


def parse_value(token: str, decimal_comma: bool = False) -> Optional[float]:
    """Parse a value column, None when the token is not a finite number."""
    token = token.strip()
    if decimal_comma:
        token = token.replace(",", ".")
    try:
        value = float(token)
    except ValueError:
        return None
    if not math.isfinite(value):
        return None
    return value


def _to_millis(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(round(moment.timestamp() * 1000))


def _strptime_any(token: str, formats: Tuple[str, ...]) -> datetime:
    for fmt in formats:
        try:
            return datetime.strptime(token, fmt)
        except ValueError:
            continue
    raise ValueError(f"Unparseable date: {token!r}")


def parse_iso_timestamp(token: str) -> int:
    """ISO-8601 date, with or without fractional seconds and offset."""
    token = token.strip()
    if len(token) > 10 and token[10] == " ":
        token = token[:10] + "T" + token[11:]
    return _to_millis(_strptime_any(token, ISO_FORMATS))


def parse_epoch_micros(token: str) -> int:
    """Epoch timestamp in microseconds."""
    token = token.strip()
    if not token.isdigit():
        raise ValueError(f"Not an epoch timestamp: {token!r}")
    return int(token) // 1000


def replace_month(token: str) -> str:
    """Replace the month abbreviations (JAN..DEC) with their two-digit number."""
    for index, month in enumerate(MONTHS, start=1):
        if month in token:
            token = token.replace(month, f"{index:02d}")
    return token


def parse_edf_timestamp(token: str) -> int:
    """Date formatted like 01-MAY-13 11:30:34.8"""
    return _to_millis(_strptime_any(replace_month(token.strip().upper()), EDF_FORMATS))


class PointSerializer:
    """
    Base serializer: one variant per input dialect.

    Subclasses pick a column layout and a date parser. An instance reads
    one file; clone() hands out a fresh unbound instance of the same variant.
    """

    name = "abstract"
    layout = ColumnLayout()
    date_parser: Callable[[str], int] = staticmethod(parse_iso_timestamp)

    def __init__(self):
        self.logger = get_logger()
        self._reader: Optional[TextIO] = None
        self._initialized = False
        self._has_next = True
        self._total_points_read = 0
        self._line_number = 0
        self._min_date: Optional[int] = None
        self._max_date: Optional[int] = None
        self.file_name: Optional[str] = None
        self.metric: Optional[str] = None
        self.tags: Dict[str, str] = {}
        self.header: Optional[str] = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(file={self.file_name!r})"

    def init(self, reader: TextIO, file_name: str, metric: str, tags: Dict[str, str]):
        """Bind to an open reader and consume the header line."""
        if self._initialized:
            self.logger.warning("Serializer already initialized", serializer=self.name, file=self.file_name)
            return
        self._reader = reader
        self.file_name = file_name
        self.metric = metric
        self.tags = dict(tags)
        self.header = reader.readline().rstrip("\r\n")
        self._line_number = 1
        self._initialized = True

    def _parse_line(self, line: str) -> Tuple[int, Optional[float]]:
        """
        Turn one data line into (timestamp, value).

        A bad timestamp or a missing column raises ValueError, a bad value
        only yields None.
        """
        columns, decimal_comma = split_line(line)
        layout = self.layout
        if len(columns) < layout.min_columns:
            raise ValueError(f"Expected at least {layout.min_columns} columns, got {len(columns)}")
        timestamp = type(self).date_parser(columns[layout.timestamp_index])
        value = parse_value(columns[layout.value_index], decimal_comma)
        return timestamp, value

    def test(self, sample_line: str) -> bool:
        """Tell whether this variant can read the given data line."""
        line = sample_line.strip()
        if not line:
            return False
        try:
            self._parse_line(line)
        except ValueError:
            return False
        return True

    def next(self, max_points: int) -> Optional[List[Point]]:
        """
        Read up to max_points data lines.

        Returns:
            Batch of points (possibly empty if every value was skipped), or
            None once the input is exhausted
        """
        if not self._initialized:
            raise RuntimeError("Serializer used before init()")
        if not self._has_next or self._reader is None:
            return None

        batch: List[Point] = []
        lines_read = 0
        while lines_read < max_points:
            raw = self._reader.readline()
            if not raw:
                break
            self._line_number += 1
            line = raw.strip()
            if not line:
                continue
            lines_read += 1

            try:
                timestamp, value = self._parse_line(line)
            except ValueError as e:
                raise MalformedChunkError(f"{self.file_name}, line {self._line_number}: {e}") from e

            if value is None:
                self.logger.debug("Skipping invalid value", file=self.file_name, line=self._line_number)
                continue

            if self._min_date is None or timestamp < self._min_date:
                self._min_date = timestamp
            if self._max_date is None or timestamp > self._max_date:
                self._max_date = timestamp
            batch.append(Point(self.metric, timestamp, value, self.tags))

        self._total_points_read += len(batch)
        if lines_read < max_points or not batch:
            self._has_next = False
        if lines_read == 0:
            return None
        return batch

    def has_next(self) -> bool:
        return self._has_next

    def clone(self) -> "PointSerializer":
        return type(self)()

    def close(self):
        if self._reader is not None:
            self._reader.close()
            self._reader = None
        self._has_next = False

    def get_dates(self) -> Tuple[Optional[int], Optional[int]]:
        """Earliest and latest parsed timestamps (epoch ms)."""
        return self._min_date, self._max_date

    @property
    def total_points_read(self) -> int:
        return self._total_points_read


class CommonSerializer(PointSerializer):
    """timestamp;value with ISO-8601 dates."""
    name = "common"
    date_parser = staticmethod(parse_iso_timestamp)


class EpochMicrosSerializer(PointSerializer):
    """timestamp;value with epoch microsecond timestamps."""
    name = "epoch_micros"
    date_parser = staticmethod(parse_epoch_micros)


class EdfSerializer(PointSerializer):
    """timestamp;value;unused;quality with dates like 01-MAY-13 11:30:34.8"""
    name = "edf"
    date_parser = staticmethod(parse_edf_timestamp)


class SerializerRegistry:
    """
    Ordered table of serializer variants keyed by selector.

    Registration order is the detection order.
    """

    def __init__(self):
        self._variants: Dict[str, Type[PointSerializer]] = {}

    def register(self, name: str, factory: Type[PointSerializer]):
        self._variants[name] = factory

    def names(self) -> List[str]:
        return list(self._variants)

    def __len__(self) -> int:
        return len(self._variants)

    def create(self, name: str) -> PointSerializer:
        try:
            return self._variants[name]()
        except KeyError:
            raise ConfigurationError(
                f"Unknown serializer '{name}', available: {', '.join(self._variants)}"
            )

    def detect(
        self,
        reader: TextIO,
        file_name: str,
        metric: str,
        tags: Dict[str, str],
        selector: Optional[str] = None,
    ) -> PointSerializer:
        """
        Pick the serializer for a file and initialize it on the reader.

        Args:
            reader: Open, seekable text reader positioned at the header
            file_name: Name used in messages
            metric: Metric of the produced points
            tags: Tags of the produced points
            selector: Pinned variant, skips detection

        Returns:
            Initialized serializer
        """
        if selector:
            serializer = self.create(selector)
        elif len(self._variants) == 1:
            serializer = self.create(self.names()[0])
        else:
            serializer = self._sniff(reader, file_name)

        serializer.init(reader, file_name, metric, tags)
        return serializer

    def _sniff(self, reader: TextIO, file_name: str) -> PointSerializer:
        start = reader.tell()
        reader.readline()
        sample = ""
        while True:
            line = reader.readline(DETECTION_LOOKAHEAD)
            if not line or line.strip():
                sample = line
                break
        reader.seek(start)

        if not sample.strip():
            # Header only: any variant reports the missing data the same way
            return self.create(self.names()[0])

        for name in self._variants:
            candidate = self.create(name)
            if candidate.test(sample):
                get_logger().debug("Serializer detected", file=file_name, serializer=name)
                return candidate

        raise MalformedChunkError(f"No serializer can read {file_name}: {sample.strip()[:80]!r}")


def default_registry() -> SerializerRegistry:
    """Registry of every built-in variant."""
    registry = SerializerRegistry()
    registry.register(CommonSerializer.name, CommonSerializer)
    registry.register(EpochMicrosSerializer.name, EpochMicrosSerializer)
    registry.register(EdfSerializer.name, EdfSerializer)
    return registry
