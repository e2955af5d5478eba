"""
Time-series store client with per-point outcome parsing.
Pushes point batches synchronously and resolves series identifiers.
"""
import json
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Sequence

import requests

from .config import IngestConfig
from .errors import StoreError
from .logger import get_logger
from .serializers import Point


@dataclass
class PushResult:
    """Store acknowledgement of one batch."""
    succeeded: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)


class TimeSeriesStore(Protocol):
    """What the import tasks need from the store."""

    def push(self, points: Sequence[Point]) -> PushResult:
        ...

    def resolve_identifier(self, metric: str, tags: Dict[str, str], start_ms: int) -> Optional[str]:
        ...


def format_tag_filter(metric: str, tags: Dict[str, str]) -> str:
    """{k=v,...}, falling back to metric=<metric> when there is no tag."""
    if not tags:
        return "{metric=" + metric + "}"
    return "{" + ",".join(f"{key}={value}" for key, value in tags.items()) + "}"


def parse_push_response(status_code: int, body: str, batch_size: int) -> PushResult:
    """
    Interpret a put response.

    2xx without details means the whole batch went in. 400 carries the
    per-point details (some points may still have been stored).

    Raises:
        StoreError: Any other status or an unreadable 400 body
    """
    if status_code in (200, 204):
        result = PushResult(succeeded=batch_size)
        if body and body.strip():
            try:
                payload = json.loads(body)
            except ValueError:
                return result
            if isinstance(payload, dict) and "success" in payload:
                result.succeeded = int(payload.get("success", 0))
                result.failed = int(payload.get("failed", 0))
                result.errors = _point_errors(payload)
        return result

    if status_code == 400:
        try:
            payload = json.loads(body)
            return PushResult(
                succeeded=int(payload.get("success", 0)),
                failed=int(payload.get("failed", 0)),
                errors=_point_errors(payload),
            )
        except (ValueError, TypeError, AttributeError) as e:
            raise StoreError(f"Malformed store response: {body[:200]!r}", status_code) from e

    raise StoreError(f"Store rejected batch with HTTP {status_code}: {body[:200]}", status_code)


def _point_errors(payload: dict) -> List[str]:
    messages = []
    for entry in payload.get("errors") or []:
        datapoint = entry.get("datapoint") or {}
        timestamp = datapoint.get("timestamp")
        error = entry.get("error", "unknown error")
        if timestamp is not None:
            messages.append(f"{timestamp}: {error}")
        else:
            messages.append(str(error))
    return messages


def parse_identifier(body: str) -> Optional[str]:
    """First tsuid of a query answer, None when the series is not indexed yet."""
    try:
        payload = json.loads(body)
    except ValueError:
        return None
    if isinstance(payload, dict):
        payload = [payload]
    if not isinstance(payload, list):
        return None
    for result in payload:
        if not isinstance(result, dict):
            continue
        tsuids = result.get("tsuids") or []
        if tsuids and tsuids[0]:
            return str(tsuids[0])
    return None


class OpenTsdbStore:
    """
    HTTP client of an OpenTSDB-compatible API.

    One requests.Session is shared by the worker threads: it is only used
    for independent, stateless calls.
    """

    def __init__(self, config: IngestConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.logger = get_logger()
        self.http = session or requests.Session()
        self.http.headers.update({"Content-Type": "application/json"})

    def push(self, points: Sequence[Point]) -> PushResult:
        """
        Send one batch and wait for the acknowledgement.

        Raises:
            StoreError: Network failure, timeout or unmanaged status
        """
        body = json.dumps([point.to_dict() for point in points])
        try:
            response = self.http.put(
                self.config.put_url,
                data=body,
                timeout=self.config.request_timeout,
            )
        except requests.Timeout as e:
            raise StoreError(f"Store push timed out after {self.config.request_timeout}s") from e
        except requests.RequestException as e:
            raise StoreError(f"Store push failed: {e}") from e

        return parse_push_response(response.status_code, response.text, len(points))

    def resolve_identifier(self, metric: str, tags: Dict[str, str], start_ms: int) -> Optional[str]:
        """Look up the series id for metric+tags around the series start."""
        params = {
            "start": str(start_ms),
            "end": str(start_ms + 1),
            "m": f"sum:{metric}{format_tag_filter(metric, tags)}",
            "show_tsuids": "true",
            "ms": "true",
        }
        try:
            response = self.http.get(
                self.config.query_url,
                params=params,
                timeout=self.config.request_timeout,
            )
        except requests.RequestException as e:
            raise StoreError(f"Identifier query failed: {e}") from e

        if response.status_code == 404:
            # Not indexed yet
            return None
        if response.status_code != 200:
            raise StoreError(f"Identifier query returned HTTP {response.status_code}", response.status_code)
        return parse_identifier(response.text)

    def close(self):
        self.http.close()
