from datetime import datetime, timedelta, timezone

import pytest

from token_ledger.config import Settings
from token_ledger.service import LedgerService


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 10, 16, 9, 30, tzinfo=timezone.utc))


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None)


@pytest.fixture
def service(settings, clock) -> LedgerService:
    return LedgerService(settings=settings, clock=clock)
