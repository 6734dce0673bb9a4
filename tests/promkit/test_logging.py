"""Tests for promkit.logging module."""

from __future__ import annotations

import io
import json
import logging

import pytest

from promkit.logging import (
    BufferingHandler,
    JSONFormatter,
    LogContext,
    LogContextData,
    LogLevel,
    LogRecord,
    PromkitLogger,
    SensitiveDataMasker,
    StdlibLoggerAdapter,
    StreamHandler,
    TextFormatter,
    configure_logging,
    get_current_context,
    get_logger,
)


class TestLogLevel:
    """Tests for LogLevel enum."""

    @pytest.mark.parametrize(
        ("name", "expected"),
        [("debug", LogLevel.DEBUG), ("WARNING", LogLevel.WARNING), ("Error", LogLevel.ERROR)],
    )
    def test_from_string(self, name, expected):
        """Test parsing level names."""
        assert LogLevel.from_string(name) is expected

    def test_from_string_unknown(self):
        """Test unknown names fall back to INFO."""
        assert LogLevel.from_string("verbose") is LogLevel.INFO

    def test_ordering_matches_stdlib(self):
        """Test numeric values follow the stdlib levels."""
        assert LogLevel.DEBUG.value == 10
        assert LogLevel.CRITICAL.value == 50


class TestLogContext:
    """Tests for LogContext."""

    def test_default_context_is_empty(self):
        """Test no fields outside a context."""
        assert get_current_context().to_dict() == {}

    def test_nested_contexts_merge(self):
        """Test inner contexts add to and override outer ones."""
        with LogContext(registry="default", scrape_id=1):
            with LogContext(scrape_id=2):
                assert get_current_context().to_dict() == {
                    "registry": "default",
                    "scrape_id": 2,
                }
            assert get_current_context().to_dict()["scrape_id"] == 1
        assert get_current_context().to_dict() == {}

    def test_merge(self):
        """Test LogContextData.merge precedence."""
        merged = LogContextData({"a": 1, "b": 1}).merge(LogContextData({"b": 2}))
        assert merged.fields == {"a": 1, "b": 2}


class TestSensitiveDataMasker:
    """Tests for SensitiveDataMasker."""

    def test_masks_sensitive_keys(self):
        """Test sensitive values are replaced, others kept."""
        masked = SensitiveDataMasker().mask_dict({"Token": "abc", "name": "x"})
        assert masked == {"Token": "***MASKED***", "name": "x"}

    def test_masks_nested(self):
        """Test nested dictionaries are masked."""
        masked = SensitiveDataMasker().mask_dict({"auth": {"password": "p"}})
        assert masked == {"auth": {"password": "***MASKED***"}}

    def test_disabled(self):
        """Test a disabled masker returns data unchanged."""
        data = {"secret": "s"}
        assert SensitiveDataMasker(enabled=False).mask_dict(data) is data


class TestFormatters:
    """Tests for text and JSON formatters."""

    def _record(self, **kwargs) -> LogRecord:
        defaults = {
            "level": LogLevel.WARNING,
            "message": "Scrape failed",
            "logger_name": "promkit.registry",
            "context": LogContextData({"scrape_id": 3}),
            "extra": {"error": "down"},
        }
        defaults.update(kwargs)
        return LogRecord(**defaults)

    def test_text_formatter(self):
        """Test text output contains level, logger, message and fields."""
        line = TextFormatter().format(self._record())
        assert "[WARNING] promkit.registry: Scrape failed" in line
        assert line.endswith("| scrape_id=3 error=down")

    def test_text_formatter_without_context(self):
        """Test context fields can be left out."""
        line = TextFormatter(include_context=False).format(self._record())
        assert "scrape_id" not in line
        assert "error=down" in line

    def test_text_formatter_exception(self):
        """Test attached exceptions are rendered."""
        line = TextFormatter().format(self._record(exc_info=RuntimeError("boom")))
        assert "exception=RuntimeError('boom')" in line

    def test_json_formatter(self):
        """Test JSON output is parseable and masked."""
        record = self._record(extra={"token": "abc"}, exc_info=ValueError("bad"))
        data = json.loads(JSONFormatter().format(record))
        assert data["level"] == "WARNING"
        assert data["logger"] == "promkit.registry"
        assert data["scrape_id"] == 3
        assert data["token"] == "***MASKED***"
        assert data["exception_type"] == "ValueError"


class TestHandlers:
    """Tests for log handlers."""

    def test_stream_handler_level(self):
        """Test records below the handler level are dropped."""
        stream = io.StringIO()
        handler = StreamHandler(stream=stream, level=LogLevel.WARNING)
        handler.handle(LogRecord(LogLevel.INFO, "quiet", "t"))
        handler.handle(LogRecord(LogLevel.ERROR, "loud", "t"))
        output = stream.getvalue()
        assert "quiet" not in output
        assert "loud" in output

    def test_stream_handler_closed(self):
        """Test a closed handler ignores records."""
        stream = io.StringIO()
        handler = StreamHandler(stream=stream)
        handler.close()
        handler.handle(LogRecord(LogLevel.ERROR, "late", "t"))
        assert stream.getvalue() == ""

    def test_buffering_handler_capacity(self):
        """Test buffered records are flushed at capacity."""
        flushed: list[list[LogRecord]] = []
        handler = BufferingHandler(capacity=2, flush_callback=flushed.append)
        handler.handle(LogRecord(LogLevel.INFO, "one", "t"))
        assert len(handler.records) == 1
        handler.handle(LogRecord(LogLevel.INFO, "two", "t"))
        assert handler.records == []
        assert [r.message for r in flushed[0]] == ["one", "two"]

    def test_buffering_handler_unbounded(self):
        """Test records accumulate without capacity."""
        handler = BufferingHandler()
        for i in range(5):
            handler.handle(LogRecord(LogLevel.INFO, str(i), "t"))
        assert len(handler.records) == 5


class TestPromkitLogger:
    """Tests for PromkitLogger."""

    def test_level_filtering(self):
        """Test records below the logger level are not emitted."""
        handler = BufferingHandler()
        logger = PromkitLogger("test", level=LogLevel.WARNING, handlers=[handler])
        logger.info("skipped")
        logger.warning("kept", metric="x")
        assert [r.message for r in handler.records] == ["kept"]
        assert handler.records[0].extra == {"metric": "x"}

    def test_context_is_captured(self):
        """Test active context is attached to records."""
        handler = BufferingHandler()
        logger = PromkitLogger("test", handlers=[handler])
        with LogContext(scrape_id=7):
            logger.info("inside")
        assert handler.records[0].context.to_dict() == {"scrape_id": 7}

    def test_extra_is_masked(self):
        """Test sensitive keyword fields are masked."""
        handler = BufferingHandler()
        PromkitLogger("test", handlers=[handler]).info("auth", password="p")
        assert handler.records[0].extra == {"password": "***MASKED***"}

    def test_exception_attaches_current_error(self):
        """Test exception() picks up the active exception."""
        handler = BufferingHandler()
        logger = PromkitLogger("test", handlers=[handler])
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            logger.exception("failed")
        record = handler.records[0]
        assert record.level is LogLevel.ERROR
        assert isinstance(record.exc_info, RuntimeError)

    def test_failing_handler_does_not_raise(self):
        """Test a broken handler does not affect the caller or other handlers."""

        class BrokenHandler(BufferingHandler):
            def handle(self, record):
                raise OSError("disk full")

        good = BufferingHandler()
        logger = PromkitLogger("test", handlers=[BrokenHandler(), good])
        logger.info("still delivered")
        assert len(good.records) == 1

    def test_add_remove_handler(self):
        """Test handler attachment is idempotent."""
        handler = BufferingHandler()
        logger = PromkitLogger("test")
        logger.add_handler(handler)
        logger.add_handler(handler)
        assert logger.handlers == [handler]
        logger.remove_handler(handler)
        assert logger.handlers == []


class TestConfigureLogging:
    """Tests for configure_logging and get_logger."""

    def test_get_logger_is_cached(self):
        """Test the same name yields the same logger."""
        assert get_logger("promkit.tests.cached") is get_logger("promkit.tests.cached")

    def test_configure_applies_to_existing_loggers(self, log_buffer):
        """Test configured handlers reach loggers created earlier."""
        logger = get_logger("promkit.tests.configure")
        logger.debug("configured", value=1)
        assert any(
            r.message == "configured" and r.extra == {"value": 1}
            for r in log_buffer.records
        )

    def test_configure_level_string(self):
        """Test level names are accepted."""
        handler = BufferingHandler()
        try:
            configure_logging(level="error", handlers=[handler])
            logger = get_logger("promkit.tests.level")
            logger.warning("dropped")
            logger.error("kept")
            assert [r.message for r in handler.records] == ["kept"]
        finally:
            configure_logging(level="INFO", handlers=[])


class TestStdlibLoggerAdapter:
    """Tests for forwarding records to the logging module."""

    def test_forwards_to_same_named_logger(self, caplog):
        """Test records reach the stdlib logger of the same name."""
        logger = PromkitLogger(
            "promkit.tests.bridge", level=LogLevel.DEBUG, handlers=[StdlibLoggerAdapter()]
        )
        with caplog.at_level(logging.DEBUG, logger="promkit.tests.bridge"):
            with LogContext(scrape_id=3):
                logger.debug("Scrape finished", families=2, token="t")

        (record,) = caplog.records
        assert record.name == "promkit.tests.bridge"
        assert record.levelno == logging.DEBUG
        assert record.getMessage() == (
            "Scrape finished | scrape_id=3 families=2 token=***MASKED***"
        )

    def test_explicit_logger_and_exception(self, caplog):
        """Test an explicit target logger receives exception info."""
        target = logging.getLogger("promkit.tests.host")
        logger = PromkitLogger("other", handlers=[StdlibLoggerAdapter(target)])
        error = RuntimeError("boom")
        with caplog.at_level(logging.ERROR, logger="promkit.tests.host"):
            logger.error("Callback raised", exc_info=error)

        (record,) = caplog.records
        assert record.name == "promkit.tests.host"
        assert record.getMessage() == "Callback raised"
        assert record.exc_info[1] is error
