"""Tests for the structured logger."""
import io

from tsingest.logger import LogLevel, StructuredLogger, get_logger, set_logger


def make_logger(level=LogLevel.DEBUG):
    out, err = io.StringIO(), io.StringIO()
    logger = StructuredLogger(min_level=level, show_timestamp=False, show_thread=False, stdout=out, stderr=err)
    return logger, out, err


class TestStructuredLogger:

    def test_details_are_appended(self):
        logger, out, _ = make_logger()

        logger.info("Chunk sent", item="temp", points=3)

        assert out.getvalue() == "[INFO] Chunk sent (item=temp, points=3)\n"

    def test_warnings_and_errors_go_to_stderr(self):
        logger, out, err = make_logger()

        logger.warning("slow")
        logger.error("broken")
        logger.success("done")

        assert err.getvalue().splitlines() == ["[WARNING] slow", "[ERROR] broken"]
        assert out.getvalue() == "[SUCCESS] done\n"

    def test_level_filter(self):
        logger, out, err = make_logger(LogLevel.WARNING)

        logger.debug("hidden")
        logger.info("hidden")
        logger.warning("shown")

        assert out.getvalue() == ""
        assert "shown" in err.getvalue()
        assert logger.is_enabled_for(LogLevel.ERROR)
        assert not logger.is_enabled_for(LogLevel.SUCCESS)

    def test_bind_adds_context(self):
        logger, out, _ = make_logger()

        child = logger.bind(session=3)
        child.info("Run started", items=2)
        logger.info("Plain")

        assert out.getvalue().splitlines() == ["[INFO] Run started (session=3, items=2)", "[INFO] Plain"]

    def test_thread_name(self):
        out = io.StringIO()
        logger = StructuredLogger(show_timestamp=False, stdout=out)

        logger.info("hello")

        assert out.getvalue() == "[INFO] [MainThread] hello\n"

    def test_section(self):
        logger, out, _ = make_logger()

        logger.section("INGEST")

        assert out.getvalue().splitlines()[1] == "[INFO] INGEST"

    def test_parse_level(self):
        assert LogLevel.parse("debug") == LogLevel.DEBUG
        assert LogLevel.parse(" Error ") == LogLevel.ERROR
        assert LogLevel.parse("verbose") == LogLevel.INFO
        assert LogLevel.parse(None, LogLevel.WARNING) == LogLevel.WARNING

    def test_process_logger(self):
        logger, _, _ = make_logger()
        set_logger(logger)
        assert get_logger() is logger
