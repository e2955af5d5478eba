"""
Configuration management for the ingestion system.
Handles environment variables, constants, and runtime parameters.
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv


# Environment types
ENV_LOCAL = "local"
ENV_PRODUCTION = "production"

# Performance profiles: (worker_count, chunk_size)
PROFILES = {
    "safe": (2, 1000),
    "balanced": (10, 10000),
    "fast": (16, 50000),
}


@dataclass
class IngestConfig:
    """Central configuration for ingestion sessions."""

    # Environment
    environment: str
    opentsdb_api_url: str

    # Performance tuning
    chunk_size: int = 10000
    worker_count: int = 10
    queue_size: int = 15
    request_timeout: float = 30.0
    poll_interval: float = 1.0

    # Identifier resolution
    resolve_max_retries: int = 6
    resolve_retry_delay: float = 5.0

    # Discovery
    ingester_root_path: Optional[Path] = None
    metric_group_name: str = "metric"

    # Selectors
    default_importer: str = "opentsdb"

    # Persistence
    session_store_url: str = "import-sessions.json"

    log_level: str = "INFO"

    def __post_init__(self):
        if self.ingester_root_path is not None and not isinstance(self.ingester_root_path, Path):
            self.ingester_root_path = Path(self.ingester_root_path)
        if self.chunk_size < 1:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.worker_count < 1:
            raise ValueError(f"worker_count must be positive, got {self.worker_count}")

    @property
    def put_url(self) -> str:
        """
        Endpoint receiving point batches.

        The store answers once the points are written (sync), with per-point
        details, within the request timeout.
        """
        sync_timeout = int(self.request_timeout * 1000)
        return f"{self.opentsdb_api_url.rstrip('/')}/put?details=true&sync=true&sync_timeout={sync_timeout}"

    @property
    def query_url(self) -> str:
        """Endpoint answering series identifier lookups."""
        return f"{self.opentsdb_api_url.rstrip('/')}/query"

    @classmethod
    def from_env(
        cls,
        use_production: bool = False,
        profile: str = "balanced",
        env_file: Optional[Path] = None,
    ) -> "IngestConfig":
        """
        Load configuration from environment variables.

        Args:
            use_production: Use production environment file
            profile: Performance profile - "safe", "balanced", "fast", or "custom"
            env_file: Explicit env file (overrides the lookup)
        """
        project_root = Path.cwd()

        # Determine which env file to load
        if env_file is not None:
            env_path = Path(env_file)
            environment = ENV_PRODUCTION if use_production else ENV_LOCAL
        elif use_production:
            env_path = project_root / ".env.production"
            environment = ENV_PRODUCTION
        else:
            env_path = project_root / ".env.local"
            if not env_path.exists():
                env_path = project_root / ".env"
            environment = ENV_LOCAL

        if env_path.exists():
            load_dotenv(env_path)

        api_url = os.getenv("OPENTSDB_API_URL")
        if not api_url:
            raise ValueError("Missing required environment variables: OPENTSDB_API_URL")

        if profile in PROFILES:
            worker_count, chunk_size = PROFILES[profile]
        elif profile == "custom":
            worker_count, chunk_size = PROFILES["balanced"]
        else:
            raise ValueError(f"Unknown performance profile: {profile}")

        # Explicit overrides win over the profile
        worker_count = _env_int("INGEST_WORKERS", worker_count)
        chunk_size = _env_int("INGEST_CHUNK_SIZE", chunk_size)

        root_path = os.getenv("INGESTER_ROOT_PATH")

        return cls(
            environment=environment,
            opentsdb_api_url=api_url,
            chunk_size=chunk_size,
            worker_count=worker_count,
            queue_size=_env_int("INGEST_QUEUE_SIZE", 15),
            request_timeout=_env_float("INGEST_REQUEST_TIMEOUT", 30.0),
            ingester_root_path=Path(root_path) if root_path else None,
            default_importer=os.getenv("INGEST_DEFAULT_IMPORTER", "opentsdb"),
            session_store_url=os.getenv("SESSION_STORE_URL", "import-sessions.json"),
            log_level=os.getenv("INGEST_LOG_LEVEL", "INFO"),
        )

    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == ENV_PRODUCTION


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be a number, got {raw!r}")


# Message constants
MSG_NOTHING_TO_IMPORT = "Nothing to import"
MSG_RUN_INCOMPLETE = "Ingestion run ended with items left to import"

# Error messages
ERR_SESSION_IN_PROCESS = "A session is already in process (only one session can be imported at a time)"
ERR_NO_METRIC_GROUP = "pathPattern must define a named group '{group}'"
ERR_ROOT_NOT_ACCESSIBLE = "Path '{path}' not accessible for dataset '{dataset}'"
