"""
Smoke tests for the public import surface.
"""

import importlib

import pytest


@pytest.mark.parametrize("module", [
    "ai_batch_guard",
    "ai_batch_guard.cli.main",
    "ai_batch_guard.config.loader",
    "ai_batch_guard.core.orchestrator",
    "ai_batch_guard.sdk",
    "ai_batch_guard.service",
    "ai_batch_guard.storage.gcs_store",
])
def test_module_imports(module):
    assert importlib.import_module(module) is not None


def test_sdk_exports():
    from ai_batch_guard.sdk import NullStatusSink, ObjectStoreStatusSink, OpenAIImageGenerator

    assert OpenAIImageGenerator.__name__ == "OpenAIImageGenerator"
    assert callable(NullStatusSink().update_row_status)
    assert ObjectStoreStatusSink.__module__ == "ai_batch_guard.sdk.status_sink"
