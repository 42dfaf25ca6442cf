from datetime import UTC, datetime, timedelta

import pytest

from crewcall.database import InMemoryKeyValueDatabase
from crewcall.devices import DeviceRegistry
from crewcall.directory import CrewDirectory
from crewcall.lifecycle import RequestLifecycleManager
from crewcall.locations import LocationRegistry


class Clock:
    """Manually advanced clock, passed wherever a now_fn is expected."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> Clock:
    return Clock(datetime(2025, 7, 2, 8, 0, 0, tzinfo=UTC))


@pytest.fixture
def db() -> InMemoryKeyValueDatabase:
    return InMemoryKeyValueDatabase()


@pytest.fixture
def directory(db, clock) -> CrewDirectory:
    return CrewDirectory(db, now_fn=clock)


@pytest.fixture
def devices(db, clock) -> DeviceRegistry:
    return DeviceRegistry(db, now_fn=clock)


@pytest.fixture
def locations(db) -> LocationRegistry:
    return LocationRegistry(db)


@pytest.fixture
def lifecycle(db, clock) -> RequestLifecycleManager:
    return RequestLifecycleManager(db, now_fn=clock)


@pytest.fixture
def master_bedroom(locations):
    return locations.add(
        "Master Bedroom",
        "cabin",
        smart_button_id="BTN001",
        id="master-bedroom",
    )


@pytest.fixture
def stewardess(directory):
    user = directory.add_user("sophie")
    return directory.add(
        "Sophie Martin", "Interior", "Stewardess", "on-duty", user_id=user.id
    )
