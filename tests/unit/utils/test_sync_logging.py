"""Tests for structured logging setup."""

import asyncio

import pytest
import structlog

from drms_sync.config import Settings
from drms_sync.utils.logging import bind_sync_context, render_processor, setup_logging


class TestLoggingSetup:
    """Test renderer selection and context binding."""

    def test_json_renderer(self):
        """Test collected device logs are rendered as JSON."""
        renderer = render_processor(Settings(log_format="json"))

        assert isinstance(renderer, structlog.processors.JSONRenderer)

    def test_console_renderer(self):
        """Test the console renderer is the default."""
        renderer = render_processor(Settings(log_format="console"))

        assert isinstance(renderer, structlog.dev.ConsoleRenderer)

    def test_setup_logging_merges_context(self):
        """Test bound context values are part of the processor chain."""
        setup_logging(Settings(log_format="json"))
        try:
            processors = structlog.get_config()["processors"]
            assert processors[0] is structlog.contextvars.merge_contextvars
        finally:
            structlog.reset_defaults()

    @pytest.mark.asyncio
    async def test_context_bound_in_task_does_not_leak(self):
        """Test values bound inside a drain task stay with that task."""
        structlog.contextvars.clear_contextvars()

        async def drain():
            bind_sync_context(drain_started_at="2026-03-01T08:00:00")
            return structlog.contextvars.get_contextvars()

        inside = await asyncio.create_task(drain())

        assert inside == {"drain_started_at": "2026-03-01T08:00:00"}
        assert structlog.contextvars.get_contextvars() == {}
