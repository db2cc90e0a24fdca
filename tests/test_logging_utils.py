"""Tests for logging_utils module."""

from __future__ import annotations

import sys

import pytest
from loguru import logger

from bosun_kanban.logging_utils import configure_logging


@pytest.fixture(autouse=True)
def _restore_logger():
    yield
    logger.remove()
    logger.add(sys.stderr)


class TestConfigureLogging:
    def test_level_filters_messages(self, capsys):
        configure_logging("warning")
        logger.info("quiet lease chatter")
        logger.warning("backoff engaged for {}", "issue-list:acme/widgets")

        err = capsys.readouterr().err
        assert "quiet lease chatter" not in err
        assert "backoff engaged for issue-list:acme/widgets" in err
        assert "WARNING" in err

    def test_reconfigure_replaces_handler(self, capsys):
        configure_logging("INFO")
        configure_logging("INFO")
        logger.info("once")

        err = capsys.readouterr().err
        assert err.count("once") == 1
