"""
Bulk time-series ingestion system.

Discovers sensor files, parses them into points and pushes them to the
time-series store in bounded batches, with multi-threading, per-run
statistics and restartable import sessions.
"""

__version__ = "2.0.0"
