"""
Dataset discovery: walks a session root and turns matching files into items.
Metric, tags and functional id are derived from the named groups of the path pattern.
"""
import os
import re
from dataclasses import dataclass
from pathlib import Path
from string import Template
from typing import Dict, Iterator, List, Optional, Pattern

from .config import ERR_NO_METRIC_GROUP, ERR_ROOT_NOT_ACCESSIBLE, IngestConfig
from .errors import ConfigurationError
from .logger import get_logger
from .model import ImportStatus, Session

# (?<name>...) but not the (?<=...) / (?<!...) lookbehinds
_JAVA_GROUP = re.compile(r"\(\?<(?![=!])")


@dataclass
class DiscoveredFile:
    """A file matching the path pattern, with its derived identity."""
    path: Path
    relative_path: str
    metric: str
    tags: Dict[str, str]
    func_id: str


def translate_pattern(pattern: str) -> str:
    """Accept Java-style named groups by rewriting them to Python syntax."""
    return _JAVA_GROUP.sub("(?P<", pattern)


def build_func_id(template: str, metric: str, tags: Dict[str, str]) -> str:
    """
    Substitute ${group} placeholders, metric included.

    Unknown placeholders are left as written.
    """
    values = dict(tags)
    values["metric"] = metric
    return Template(template).safe_substitute(values)


class FileDiscoverer:
    """Finds the files of a dataset and builds the session items."""

    def __init__(self, config: IngestConfig):
        self.config = config
        self.logger = get_logger()
        self.walk_errors: List[str] = []

    def compile_pattern(self, pattern: str) -> Pattern:
        """
        Compile a path pattern and check it names the metric group.

        Raises:
            ConfigurationError: Invalid regex or no metric group
        """
        try:
            compiled = re.compile(translate_pattern(pattern))
        except re.error as e:
            raise ConfigurationError(f"Could not use pathPattern '{pattern}': {e}") from e

        group = self.config.metric_group_name
        if group not in compiled.groupindex:
            raise ConfigurationError(ERR_NO_METRIC_GROUP.format(group=group))
        return compiled

    def resolve_root(self, root_path: str, dataset: str) -> Path:
        """Absolute dataset root; relative roots hang off the configured ingester root."""
        root = Path(root_path)
        if not root.is_absolute() and self.config.ingester_root_path is not None:
            root = self.config.ingester_root_path / root
        if not root.is_dir():
            raise ConfigurationError(ERR_ROOT_NOT_ACCESSIBLE.format(path=root, dataset=dataset))
        return root

    def _on_walk_error(self, error: OSError):
        message = f"Could not read '{error.filename}': {error.strerror or error}"
        self.logger.warning("Skipping unreadable directory", path=error.filename, error=str(error))
        self.walk_errors.append(message)

    def iter_files(self, root: Path) -> Iterator[Path]:
        """Regular files under root, in a stable order."""
        for dirpath, dirnames, filenames in os.walk(root, onerror=self._on_walk_error, followlinks=True):
            dirnames.sort()
            for filename in sorted(filenames):
                path = Path(dirpath) / filename
                if path.is_file():
                    yield path

    def match(self, pattern: Pattern, root: Path, path: Path, func_id_pattern: str) -> Optional[DiscoveredFile]:
        """Match one file (relative to root, '/'-prefixed) against the whole pattern."""
        relative = "/" + path.relative_to(root).as_posix()
        matcher = pattern.fullmatch(relative)
        if matcher is None:
            return None

        metric_group = self.config.metric_group_name
        metric = matcher.group(metric_group)
        tags = {
            name: value
            for name, value in matcher.groupdict().items()
            if name.lower() != metric_group.lower() and value is not None
        }
        return DiscoveredFile(
            path=path,
            relative_path=relative,
            metric=metric,
            tags=tags,
            func_id=build_func_id(func_id_pattern, metric, tags),
        )

    def discover(self, root: Path, path_pattern: str, func_id_pattern: str) -> Iterator[DiscoveredFile]:
        """
        Yield every matching file under root.

        The pattern is checked before the first file is scanned.
        """
        pattern = self.compile_pattern(path_pattern)
        self.walk_errors = []
        for path in self.iter_files(root):
            found = self.match(pattern, root, path, func_id_pattern)
            if found is not None:
                yield found

    def analyse(self, session: Session) -> int:
        """
        Populate the items to import of a session.

        Files already known to the session are not added twice. Every item
        is marked ANALYSED, then the session.

        Returns:
            Number of new items
        """
        session.stats.timestamp_analysis(True)
        self.compile_pattern(session.path_pattern)
        root = self.resolve_root(session.root_path, session.dataset)
        session.root_path = str(root)

        known = {item.file for item in session.all_items()}
        added = 0
        for found in self.discover(root, session.path_pattern, session.func_id_pattern):
            if found.path in known:
                continue
            item = session.create_item(found.path, found.metric, found.tags, found.func_id)
            added += 1
            self.logger.debug("File added to import session", file=found.relative_path, func_id=item.func_id)

        for message in self.walk_errors:
            session.add_error(message)

        for item in session.items_to_import:
            if item.status == ImportStatus.CREATED:
                item.status = ImportStatus.ANALYSED

        session.status = ImportStatus.ANALYSED
        session.stats.timestamp_analysis(False)
        session.stats.set_items_initial(len(session.all_items()))
        self.logger.info("Dataset analysed", session=session.id, dataset=session.dataset, items=added)
        return added
