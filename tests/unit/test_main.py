"""
Unit tests for the server entry point.
"""

import asyncio
import logging

import json_log_formatter
import pytest

from dbaas.chronos_server.config import ObservabilityConfig
from dbaas.chronos_server.main import Server, setup_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    root.handlers = handlers
    root.setLevel(level)


class TestSetupLogging:
    def test_json_format(self, make_config, restore_root_logger):
        setup_logging(make_config(observability=ObservabilityConfig(log_level="debug", log_format="json")))

        assert restore_root_logger.level == logging.DEBUG
        assert isinstance(restore_root_logger.handlers[0].formatter, json_log_formatter.JSONFormatter)
        assert logging.getLogger("botocore").level == logging.WARNING

    def test_text_format(self, make_config, restore_root_logger):
        setup_logging(make_config(observability=ObservabilityConfig(log_level="nonsense", log_format="text")))

        assert restore_root_logger.level == logging.INFO
        assert not isinstance(restore_root_logger.handlers[0].formatter, json_log_formatter.JSONFormatter)


class TestServer:
    """Tests for Server lifecycle."""

    @pytest.mark.asyncio
    async def test_start_until_shutdown_requested(self, config):
        server = Server(config)
        task = asyncio.create_task(server.start())
        await asyncio.sleep(0.05)
        assert server.chronos is not None
        assert not server.chronos.closed

        server.request_shutdown()
        await asyncio.wait_for(task, timeout=5)
        await server.stop()

        assert server.chronos.closed

    @pytest.mark.asyncio
    async def test_stop_before_start(self, config):
        await Server(config).stop()
