from datetime import datetime, timedelta, timezone

import pytest

from lianes_lending.core.config import Settings
from lianes_lending.schemas.book import BookCreate
from lianes_lending.services.lending import LendingService
from lianes_lending.store.memory import InMemoryDocumentStore


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore(backoff=0, poll_interval=0.01)


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def service(store, settings, clock) -> LendingService:
    return LendingService(store, settings, clock)


@pytest.fixture
def add_book(service):
    def _add(book_id: str, title: str = "Clean Architecture", author: str = "Robert C. Martin"):
        return service.catalog.add_book(BookCreate(id=book_id, title=title, author=author))

    return _add


@pytest.fixture
def b1(add_book):
    return add_book("b1")
