from __future__ import annotations

import pytest

from headless_coders.runners.registry import clear_registry


@pytest.fixture(autouse=True)
def _clean_registry():
    clear_registry()
    yield
    clear_registry()


@pytest.fixture(autouse=True)
def _no_tool_input_logging(monkeypatch):
    monkeypatch.delenv("HEADLESS_CODERS_LOG_TOOL_INPUT", raising=False)
    monkeypatch.delenv("HEADLESS_CODERS_LOG_TOOL_INPUT_MAX", raising=False)
