import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

# Set before any import that reads settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("COOKIE_SECURE", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ticketgate.config import Settings, reset_settings_cache  # noqa: E402
from ticketgate.storage.counters import MemoryCounterStore  # noqa: E402
from ticketgate.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Settable UTC clock shared by every service under test."""

    def __init__(self, start: Optional[datetime] = None):
        # Start on a 5-minute boundary so fixed windows begin empty
        self.now = start or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def _fresh_settings_cache():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        test_mode=True,
        use_memory_store=True,
        redis_url=None,
        cookie_secure=False,
        app_base_url="https://tickets.example.test",
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def counters():
    return MemoryCounterStore()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
