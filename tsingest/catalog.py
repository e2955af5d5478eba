"""
Catalog registration of imported series.
Functional identifiers and metadata of each imported item.
"""
from typing import Dict, List, Protocol

from .errors import CatalogError
from .logger import get_logger
from .model import Item


class Catalog(Protocol):
    """Metadata side of an import: datasets, functional ids, metadata."""

    def register_dataset(self, name: str, description: str):
        ...

    def register_item(self, dataset: str, item: Item, metadata: Dict[str, str]):
        ...


def item_metadata(item: Item) -> Dict[str, str]:
    """Metadata recorded for an imported series."""
    metadata = {
        "metric": item.metric,
        "ikats_start_date": str(item.start_date),
        "ikats_end_date": str(item.end_date),
        "qual_nb_points": str(item.points_succeeded),
    }
    metadata.update(item.tags)
    return metadata


class MemoryCatalog:
    """
    Keeps registrations in memory, keyed by series identifier.

    Default catalog when no metadata backend is configured.
    """

    def __init__(self):
        self.datasets: Dict[str, str] = {}
        self.items: Dict[str, Dict[str, str]] = {}
        self.members: Dict[str, List[str]] = {}

    def register_dataset(self, name: str, description: str):
        self.datasets[name] = description
        self.members.setdefault(name, [])
        get_logger().debug("Dataset registered", dataset=name)

    def register_item(self, dataset: str, item: Item, metadata: Dict[str, str]):
        if item.tsuid is None:
            raise CatalogError(f"Item {item.func_id} has no series identifier")
        self.items[item.tsuid] = dict(metadata, funcId=item.func_id)
        self.members.setdefault(dataset, []).append(item.tsuid)
