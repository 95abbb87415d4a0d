# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tests for logging setup."""

import json
import logging
import os
from unittest.mock import patch

import pytest
import structlog

from edumanage.core.config.settings import Settings
from edumanage.utils.logging import bind_context, clear_context, get_logger, setup_logging


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    level = root.level
    yield
    root.handlers = [
        h for h in root.handlers if not isinstance(h.formatter, structlog.stdlib.ProcessorFormatter)
    ]
    root.setLevel(level)
    clear_context()
    structlog.reset_defaults()


def make_settings(**values) -> Settings:
    with patch.dict(os.environ, {}, clear=True):
        return Settings(_env_file=None, **values)


def test_setup_is_idempotent(restore_logging):
    settings = make_settings(log_level="INFO")

    setup_logging(settings)
    setup_logging(settings)

    root = logging.getLogger()
    assert len(root.handlers) == 1
    assert root.level == logging.INFO
    assert logging.getLogger("botocore").level == logging.WARNING


def test_production_renders_json_with_bound_context(restore_logging, capsys):
    settings = make_settings(
        environment="staging",
        debug=False,
        log_level="INFO",
    )
    setup_logging(settings)

    bind_context(build_id="BLD-1-ABCDEF")
    logging.getLogger("edumanage.infrastructure.storage").info("Uploaded %s", "builds/a.zip")
    get_logger("edumanage.domains.build.orchestrator").info("build_started", package="medium")

    lines = [json.loads(line) for line in capsys.readouterr().out.splitlines() if line]
    assert lines[0]["event"] == "Uploaded builds/a.zip"
    assert lines[0]["build_id"] == "BLD-1-ABCDEF"
    assert lines[1]["event"] == "build_started"
    assert lines[1]["package"] == "medium"
    assert lines[1]["level"] == "info"


def test_clear_context_drops_bound_values(restore_logging):
    bind_context(build_id="BLD-1-ABCDEF")
    clear_context()

    assert structlog.contextvars.get_contextvars() == {}
