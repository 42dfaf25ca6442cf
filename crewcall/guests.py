import logging
from collections.abc import Callable
from datetime import datetime

from crewcall.database import InMemoryKeyValueDatabase
from crewcall.errors import NotFoundError, ValidationError
from crewcall.models import Guest, Location

logger = logging.getLogger(__name__)

NowFn = Callable[[], datetime]


class GuestRegistry:
    def __init__(
        self, db: InMemoryKeyValueDatabase, *, now_fn: NowFn
    ) -> None:
        self.db = db
        self.now_fn = now_fn

    def add(
        self,
        first_name: str,
        last_name: str = "",
        location_id: str | None = None,
    ) -> Guest:
        if not first_name.strip():
            raise ValidationError("first_name is required")
        if location_id is not None and not isinstance(
            self.db.get(f"location:{location_id}"), Location
        ):
            raise NotFoundError(f"Location {location_id} not found")
        guest = Guest(
            first_name=first_name.strip(),
            last_name=last_name.strip(),
            location_id=location_id,
            created_at=self.now_fn(),
        )
        self.db.put(f"guest:{guest.id}", guest)
        logger.info("Added guest %s (%s)", guest.full_name, guest.id)
        return guest

    def get(self, guest_id: str) -> Guest:
        guest = self.db.get(f"guest:{guest_id}")
        if not isinstance(guest, Guest):
            raise NotFoundError(f"Guest {guest_id} not found")
        return guest

    def list_guests(self, location_id: str | None = None) -> list[Guest]:
        guests = self.db.of_type(Guest)
        if location_id is not None:
            guests = [g for g in guests if g.location_id == location_id]
        return sorted(guests, key=lambda g: g.created_at)

    def latest_at(self, location_id: str) -> Guest | None:
        """The most recently added guest staying at ``location_id``."""
        guests = self.list_guests(location_id)
        return guests[-1] if guests else None
