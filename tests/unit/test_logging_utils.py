"""
Unit tests for structured logging helpers
"""

import io
import json
import logging

import pytest

from circulator_stream.logging_utils import (
    ConsoleFormatter,
    PipelineContextFilter,
    PipelineJsonFormatter,
    bind_agent_uuid,
    get_component_logger,
    get_trace_id,
    trace_context,
)


@pytest.fixture
def captured():
    """Logger writing JSON lines into a buffer through the context filter."""
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(PipelineJsonFormatter("%(level)s %(logger)s %(message)s"))
    handler.addFilter(PipelineContextFilter())

    base = logging.getLogger("circulator_stream.tests.logging")
    base.handlers = [handler]
    base.setLevel(logging.DEBUG)
    base.propagate = False

    def records():
        return [json.loads(line) for line in stream.getvalue().splitlines()]

    yield base, records

    bind_agent_uuid(None)
    base.handlers = []


class TestTraceContext:
    def test_scoped(self):
        assert get_trace_id() is None
        with trace_context("sample-1") as trace_id:
            assert trace_id == "sample-1"
            assert get_trace_id() == "sample-1"
        assert get_trace_id() is None

    def test_generated_and_nested(self):
        with trace_context() as outer:
            assert outer.startswith("trace-")
            with trace_context("cmd-stop"):
                assert get_trace_id() == "cmd-stop"
            assert get_trace_id() == outer


class TestStructuredRecords:
    def test_component_event_trace_and_agent(self, captured):
        base, records = captured
        logger = get_component_logger(base.name, "consumer")
        bind_agent_uuid("agent-0001")

        with trace_context("sample-s-1"):
            logger.info("Sample acked", extra={"event": "sample_acked", "message_id": 7})

        [record] = records()
        assert record["message"] == "Sample acked"
        assert record["level"] == "INFO"
        assert record["component"] == "consumer"
        assert record["event"] == "sample_acked"
        assert record["message_id"] == 7
        assert record["trace_id"] == "sample-s-1"
        assert record["agent_uuid"] == "agent-0001"

    def test_unset_context_fields_dropped(self, captured):
        base, records = captured
        get_component_logger(base.name, "publisher").warning("No context")

        [record] = records()
        assert "trace_id" not in record
        assert "agent_uuid" not in record

    def test_call_site_extra_wins(self, captured):
        base, records = captured
        logger = get_component_logger(base.name, "consumer")

        logger.info("Override", extra={"component": "handler"})

        assert records()[0]["component"] == "handler"


class TestConsoleFormatter:
    def test_defaults_and_trace_suffix(self):
        record = logging.LogRecord("circulator_stream.processor.handler", logging.INFO,
                                   __file__, 1, "Sample processed", None, None)
        record.trace_id = "sample-9"

        line = ConsoleFormatter().format(record)

        assert "handler" in line
        assert "| -" in line
        assert line.endswith("Sample processed [sample-9]")
