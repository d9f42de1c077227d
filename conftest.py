"""
Shared fixtures: a controllable clock, an in-process store driven by it,
and a configuration that never reaches real Redis or SMTP.
"""

import pytest

from kv_store import MemoryStore
from security_config import DefenseConfig

START_TIME = 1_700_000_000.0


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: float = START_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def config(monkeypatch):
    for name in ("ADMIN_TOKEN", "LOG_DIR", "EMAIL_ENABLED", "ALERT_EMAIL_TO", "THREAT_BLOCK_MIN_SEVERITY"):
        monkeypatch.delenv(name, raising=False)
    cfg = DefenseConfig()
    cfg.STORE_BACKEND = "memory"
    cfg.ADMIN_TOKEN = "admin-secret"
    cfg.PROJECT_NAME = "test-cms"
    cfg.PROJECT_LANG = "fr"
    return cfg
