"""
Ingestion statistics collection and reporting.
Tracks item counts, point counts and throughput per session and per run.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import List, Optional

from .logger import get_logger


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class Run:
    """One ingestion attempt (initial run or restart)."""
    date_ingestion_started: Optional[datetime] = None
    date_ingestion_completed: Optional[datetime] = None
    duration: float = 0.0

    items_to_import: int = 0
    items_imported: int = 0
    items_in_error: int = 0

    points_sent: int = 0
    points_succeeded: int = 0
    points_failed: int = 0

    # Points per second, over the items processed in this run
    import_speed_mean: float = 0.0
    import_speed_min: float = 0.0
    import_speed_max: float = 0.0

    # Session-wide sizes when the run started
    baseline_imported: int = 0
    baseline_in_error: int = 0
    items_processed: int = 0

    def is_completed(self) -> bool:
        return self.date_ingestion_completed is not None

    def to_dict(self) -> dict:
        return {
            "dateIngestionStarted": _iso(self.date_ingestion_started),
            "dateIngestionCompleted": _iso(self.date_ingestion_completed),
            "dateIngestionDuration": round(self.duration, 3),
            "numberOfItemsToImport": self.items_to_import,
            "numberOfItemsImported": self.items_imported,
            "numberOfItemsInError": self.items_in_error,
            "numberOfPointsSent": self.points_sent,
            "numberOfPointsSuccess": self.points_succeeded,
            "numberOfPointsFailed": self.points_failed,
            "importSpeedMean": self.import_speed_mean,
            "importSpeedMin": self.import_speed_min,
            "importSpeedMax": self.import_speed_max,
            "baselineImported": self.baseline_imported,
            "baselineInError": self.baseline_in_error,
            "itemsProcessed": self.items_processed,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Run":
        return cls(
            date_ingestion_started=_parse_iso(data.get("dateIngestionStarted")),
            date_ingestion_completed=_parse_iso(data.get("dateIngestionCompleted")),
            duration=data.get("dateIngestionDuration", 0.0),
            items_to_import=data.get("numberOfItemsToImport", 0),
            items_imported=data.get("numberOfItemsImported", 0),
            items_in_error=data.get("numberOfItemsInError", 0),
            points_sent=data.get("numberOfPointsSent", 0),
            points_succeeded=data.get("numberOfPointsSuccess", 0),
            points_failed=data.get("numberOfPointsFailed", 0),
            import_speed_mean=data.get("importSpeedMean", 0.0),
            import_speed_min=data.get("importSpeedMin", 0.0),
            import_speed_max=data.get("importSpeedMax", 0.0),
            baseline_imported=data.get("baselineImported", 0),
            baseline_in_error=data.get("baselineInError", 0),
            items_processed=data.get("itemsProcessed", 0),
        )


class SessionStats:
    """
    Collects and reports the statistics of one import session.
    Thread-safe: updates are serialized and snapshots are consistent.

    Lifetime counters cover the whole session, each Run only its own
    attempt. The item collections are session-wide, so run-scoped item
    counts are deltas against the sizes captured when the run started.
    """

    def __init__(self):
        self._lock = Lock()

        self.date_created: datetime = _now()
        self.date_updated: Optional[datetime] = None
        self.date_analysis_started: Optional[datetime] = None
        self.date_analysis_completed: Optional[datetime] = None
        self.analysis_duration: Optional[float] = None

        self.items_initial = 0
        self.items_to_import = 0
        self.items_imported = 0

        self.points_sent = 0
        self.points_succeeded = 0
        self.points_failed = 0

        self.runs: List[Run] = []

    @property
    def current_run(self) -> Optional[Run]:
        return self.runs[-1] if self.runs else None

    def _touch(self, when: Optional[datetime] = None):
        self.date_updated = when or _now()

    def timestamp_analysis(self, start: bool):
        """Record the start or the end of the session analysis."""
        with self._lock:
            if start:
                self.date_analysis_started = _now()
                self.date_analysis_completed = None
                self.analysis_duration = None
            else:
                self.date_analysis_completed = _now()
                if self.date_analysis_started is not None:
                    self.analysis_duration = (
                        self.date_analysis_completed - self.date_analysis_started
                    ).total_seconds()
            self._touch()

    def set_items_initial(self, count: int):
        with self._lock:
            self.items_initial = count
            self.items_to_import = count
            self._touch()

    def start_run(self, to_import: int, imported: int, in_error: int) -> Run:
        """
        Open a new run, capturing the current collection sizes as baseline.

        If the current run was never completed (crash or forced restart) it
        is reused and its item counters are reset.
        """
        with self._lock:
            now = _now()
            run = self.current_run
            if run is None or run.is_completed():
                run = Run()
                self.runs.append(run)
            else:
                get_logger().warning("New ingestion run requested while the previous run is not completed")
                run.items_imported = 0
                run.items_in_error = 0
                run.items_processed = 0

            run.date_ingestion_started = now
            run.date_ingestion_completed = None
            run.duration = 0.0
            run.items_to_import = to_import
            run.baseline_imported = imported
            run.baseline_in_error = in_error

            self.items_to_import = to_import
            self.items_imported = imported
            self._touch(now)
            return run

    def end_run(self):
        with self._lock:
            run = self.current_run
            if run is None:
                return
            now = _now()
            run.date_ingestion_completed = now
            if run.date_ingestion_started is not None:
                run.duration = (now - run.date_ingestion_started).total_seconds()
            self._touch(now)

    def update_stats(
        self,
        points_read: int,
        points_succeeded: int,
        points_failed: int,
        import_speed: float,
        to_import: int,
        imported: int,
        in_error: int,
    ):
        """
        Account for one processed item.

        Args:
            points_read: Points read from the item file
            points_succeeded: Points acknowledged by the store
            points_failed: Points rejected by the store
            import_speed: Item throughput in points per second
            to_import: Current size of the items to import
            imported: Current size of the imported items
            in_error: Current size of the items in error
        """
        with self._lock:
            run = self.current_run
            if run is None:
                run = Run(date_ingestion_started=_now(), baseline_imported=imported, baseline_in_error=in_error)
                self.runs.append(run)

            # Item counts
            self.items_to_import = to_import
            self.items_imported = imported
            run.items_to_import = to_import
            run.items_imported = max(0, imported - run.baseline_imported)
            run.items_in_error = max(0, in_error - run.baseline_in_error)

            # Point counts, lifetime and run
            self.points_sent += points_read
            self.points_succeeded += points_succeeded
            self.points_failed += points_failed
            run.points_sent += points_read
            run.points_succeeded += points_succeeded
            run.points_failed += points_failed

            now = _now()
            to_date = run.date_ingestion_completed or now
            if run.date_ingestion_started is not None:
                run.duration = (to_date - run.date_ingestion_started).total_seconds()

            # Incremental mean, min and max of the throughput
            run.items_processed += 1
            run.import_speed_mean += (import_speed - run.import_speed_mean) / run.items_processed
            if run.items_processed == 1 or import_speed > run.import_speed_max:
                run.import_speed_max = import_speed
            if run.items_processed == 1 or import_speed < run.import_speed_min:
                run.import_speed_min = import_speed

            self._touch(to_date)

    def rate_of_imported_items(self) -> str:
        if self.items_initial <= 0:
            return "0%"
        return f"{self.items_imported / self.items_initial:.2%}"

    def snapshot(self) -> dict:
        """Consistent copy of every counter."""
        with self._lock:
            return {
                "dateSessionCreated": _iso(self.date_created),
                "dateStatsUpdated": _iso(self.date_updated),
                "dateSessionAnalysisStarted": _iso(self.date_analysis_started),
                "dateSessionAnalysisCompleted": _iso(self.date_analysis_completed),
                "dateSessionAnalysisDuration": self.analysis_duration,
                "numberOfItemsInitial": self.items_initial,
                "numberOfItemsToImport": self.items_to_import,
                "numberOfItemsImported": self.items_imported,
                "rateOfImportedItems": self.rate_of_imported_items(),
                "numberOfPointsSent": self.points_sent,
                "numberOfPointsSuccess": self.points_succeeded,
                "numberOfPointsFailed": self.points_failed,
                "runs": [run.to_dict() for run in self.runs],
            }

    @classmethod
    def from_dict(cls, data: dict) -> "SessionStats":
        stats = cls()
        stats.date_created = _parse_iso(data.get("dateSessionCreated")) or stats.date_created
        stats.date_updated = _parse_iso(data.get("dateStatsUpdated"))
        stats.date_analysis_started = _parse_iso(data.get("dateSessionAnalysisStarted"))
        stats.date_analysis_completed = _parse_iso(data.get("dateSessionAnalysisCompleted"))
        stats.analysis_duration = data.get("dateSessionAnalysisDuration")
        stats.items_initial = data.get("numberOfItemsInitial", 0)
        stats.items_to_import = data.get("numberOfItemsToImport", 0)
        stats.items_imported = data.get("numberOfItemsImported", 0)
        stats.points_sent = data.get("numberOfPointsSent", 0)
        stats.points_succeeded = data.get("numberOfPointsSuccess", 0)
        stats.points_failed = data.get("numberOfPointsFailed", 0)
        stats.runs = [Run.from_dict(raw) for raw in data.get("runs") or []]
        return stats

    def format_summary(self) -> str:
        """Format complete statistics summary."""
        snap = self.snapshot()
        lines = ["", "Ingestion Statistics:", "=" * 50]
        lines.append(
            f"Items: {snap['numberOfItemsImported']:,}/{snap['numberOfItemsInitial']:,} imported "
            f"({snap['rateOfImportedItems']}), {snap['numberOfItemsToImport']:,} left"
        )
        lines.append(
            f"Points: {snap['numberOfPointsSent']:,} sent, "
            f"{snap['numberOfPointsSuccess']:,} succeeded, {snap['numberOfPointsFailed']:,} failed"
        )
        if snap["dateSessionAnalysisDuration"] is not None:
            lines.append(f"Analysis time: {self._format_duration(snap['dateSessionAnalysisDuration'])}")
        lines.append("")

        for index, run in enumerate(self.runs, start=1):
            state = "completed" if run.is_completed() else "in progress"
            lines.append(f"Run #{index} ({state}), {self._format_duration(run.duration)}:")
            lines.append(
                f"  items: {run.items_imported} imported, {run.items_in_error} in error, "
                f"{run.items_to_import} to import"
            )
            lines.append(
                f"  points: {run.points_sent:,} sent, {run.points_succeeded:,} ok, {run.points_failed:,} failed"
            )
            lines.append(
                f"  speed: mean {run.import_speed_mean:.1f}/s, "
                f"min {run.import_speed_min:.1f}/s, max {run.import_speed_max:.1f}/s"
            )
        lines.append("=" * 50)
        return "\n".join(lines)

    @staticmethod
    def _format_duration(seconds: float) -> str:
        """Format duration in human-readable format."""
        if seconds < 60:
            return f"{seconds:.1f}s"
        elif seconds < 3600:
            minutes = seconds / 60
            return f"{minutes:.1f}m"
        else:
            hours = seconds / 3600
            return f"{hours:.1f}h"
