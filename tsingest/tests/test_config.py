"""Tests for configuration loading."""
from pathlib import Path

import pytest

from tsingest.config import PROFILES, IngestConfig


class TestFromEnv:

    def test_missing_api_url(self, clean_env):
        with pytest.raises(ValueError, match="OPENTSDB_API_URL"):
            IngestConfig.from_env()

    def test_profile_defaults(self, clean_env):
        clean_env.setenv("OPENTSDB_API_URL", "http://tsdb:4242/api/")

        config = IngestConfig.from_env(profile="safe")

        assert (config.worker_count, config.chunk_size) == PROFILES["safe"]
        assert config.queue_size == 15
        assert config.resolve_max_retries == 6
        assert config.resolve_retry_delay == 5.0
        assert config.environment == "local"
        assert not config.is_production()
        assert config.put_url == "http://tsdb:4242/api/put?details=true&sync=true&sync_timeout=30000"
        assert config.query_url == "http://tsdb:4242/api/query"

    def test_overrides_win_over_profile(self, clean_env, tmp_path):
        clean_env.setenv("OPENTSDB_API_URL", "http://tsdb/api")
        clean_env.setenv("INGEST_WORKERS", "3")
        clean_env.setenv("INGEST_CHUNK_SIZE", "500")
        clean_env.setenv("INGESTER_ROOT_PATH", str(tmp_path))
        clean_env.setenv("INGEST_DEFAULT_IMPORTER", "nothing")

        config = IngestConfig.from_env(profile="fast")

        assert (config.worker_count, config.chunk_size) == (3, 500)
        assert config.ingester_root_path == Path(tmp_path)
        assert config.default_importer == "nothing"

    def test_local_env_file(self, clean_env, tmp_path):
        (tmp_path / ".env").write_text("OPENTSDB_API_URL=http://from-dotenv/api\nINGEST_QUEUE_SIZE=4\n")

        config = IngestConfig.from_env()

        assert config.opentsdb_api_url == "http://from-dotenv/api"
        assert config.queue_size == 4

    def test_env_local_preferred(self, clean_env, tmp_path):
        (tmp_path / ".env").write_text("OPENTSDB_API_URL=http://env/api\n")
        (tmp_path / ".env.local").write_text("OPENTSDB_API_URL=http://env-local/api\n")

        assert IngestConfig.from_env().opentsdb_api_url == "http://env-local/api"

    def test_production_file(self, clean_env, tmp_path):
        (tmp_path / ".env.production").write_text("OPENTSDB_API_URL=http://prod/api\n")

        config = IngestConfig.from_env(use_production=True)

        assert config.is_production()
        assert config.opentsdb_api_url == "http://prod/api"

    def test_unknown_profile(self, clean_env):
        clean_env.setenv("OPENTSDB_API_URL", "http://tsdb/api")
        with pytest.raises(ValueError, match="Unknown performance profile"):
            IngestConfig.from_env(profile="turbo")

    def test_bad_integer(self, clean_env):
        clean_env.setenv("OPENTSDB_API_URL", "http://tsdb/api")
        clean_env.setenv("INGEST_WORKERS", "many")
        with pytest.raises(ValueError, match="INGEST_WORKERS must be an integer"):
            IngestConfig.from_env()


class TestValidation:

    def test_chunk_size_must_be_positive(self):
        with pytest.raises(ValueError, match="chunk_size"):
            IngestConfig(environment="local", opentsdb_api_url="http://x", chunk_size=0)

    def test_root_path_is_a_path(self):
        config = IngestConfig(environment="local", opentsdb_api_url="http://x", ingester_root_path="/data")
        assert config.ingester_root_path == Path("/data")

    def test_push_waits_for_the_write(self):
        config = IngestConfig(environment="local", opentsdb_api_url="http://tsdb/api", request_timeout=12.5)

        assert "sync=true" in config.put_url
        assert config.put_url.endswith("&sync_timeout=12500")
