"""
Series identifier resolution with fixed-delay retries.
The store may index a freshly pushed series asynchronously.
"""
import time
from typing import Callable, Dict

from .errors import IdentifierResolutionError
from .logger import get_logger
from .store import TimeSeriesStore


class IdentifierResolver:
    """
    Polls the store until it returns the identifier of a pushed series.

    One initial query plus up to max_retries retries, sleeping delay
    seconds before each retry.
    """

    def __init__(
        self,
        store: TimeSeriesStore,
        max_retries: int = 6,
        delay: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.max_retries = max_retries
        self.delay = delay
        self._sleep = sleep
        self.logger = get_logger()

    def resolve(self, func_id: str, metric: str, tags: Dict[str, str], start_ms: int) -> str:
        """
        Get the store identifier of a series.

        Args:
            func_id: Functional id, for messages
            metric: Series metric
            tags: Series tags, as pushed
            start_ms: Earliest timestamp of the series

        Returns:
            Store identifier

        Raises:
            IdentifierResolutionError: Still unresolved after every attempt
        """
        tsuid = self.store.resolve_identifier(metric, tags, start_ms)
        retries = 0
        while not tsuid and retries < self.max_retries:
            retries += 1
            self.logger.debug(f"Identifier lookup retry #{retries}", item=func_id, delay=f"{self.delay}s")
            self._sleep(self.delay)
            tsuid = self.store.resolve_identifier(metric, tags, start_ms)

        if not tsuid:
            raise IdentifierResolutionError(
                f"Identifier resolution failed for item {func_id} after {retries + 1} attempts"
            )

        if retries:
            self.logger.debug("Identifier resolved after retries", item=func_id, retries=retries)
        return tsuid
