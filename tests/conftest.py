"""
Shared fixtures: a throwaway SQLite database per test, a controllable
clock, and a fully wired ``NotificationEngine`` with scripted channels.
"""

from __future__ import annotations

import os

# Before any backend import: settings are read once at import time
os.environ.setdefault("CACHE_ENABLED", "false")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("DATABASE_AUTO_CREATE", "false")

from typing import Dict

import pytest

from backend.app.core.config import Settings
from backend.app.core.database import build_engine, build_session_factory, init_db
from backend.app.notifications.channels import InAppChannel
from backend.app.notifications.channels.base import ChannelAdapter
from backend.app.notifications.engine import NotificationEngine
from backend.app.notifications.models import ChannelType
from tests.support import FakeClock, ScriptedChannel, make_settings


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
async def session_factory(tmp_path):
    bind = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'notifications.db'}")
    await init_db(bind)
    yield build_session_factory(bind)
    await bind.dispose()


@pytest.fixture
def channels(clock) -> Dict[ChannelType, ChannelAdapter]:
    adapters: Dict[ChannelType, ChannelAdapter] = {
        ct: ScriptedChannel(ct) for ct in ChannelType if ct != ChannelType.IN_APP
    }
    adapters[ChannelType.IN_APP] = InAppChannel(backlog_size=3, clock=clock)
    return adapters


@pytest.fixture
async def engine(session_factory, settings, channels, clock):
    eng = NotificationEngine(session_factory, settings=settings, channels=channels, clock=clock)
    yield eng
    await eng.stop()
