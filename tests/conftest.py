"""Shared fixtures: keep tests off Redis and out of the background scheduler."""

from __future__ import annotations

import pytest

from backend.app.core.config import settings


@pytest.fixture(autouse=True)
def _offline_settings(monkeypatch):
    monkeypatch.setattr(settings, "REDIS_ENABLED", False)
    monkeypatch.setattr(settings, "SCHEDULER_ENABLED", False)
    yield
