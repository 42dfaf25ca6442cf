import logging

from crewcall.database import InMemoryKeyValueDatabase
from crewcall.errors import NotFoundError, ValidationError
from crewcall.models import Location

logger = logging.getLogger(__name__)


class LocationRegistry:
    def __init__(self, db: InMemoryKeyValueDatabase) -> None:
        self.db = db

    def add(
        self,
        name: str,
        type: str,
        department: str | None = None,
        smart_button_id: str | None = None,
        id: str | None = None,
    ) -> Location:
        name = name.strip()
        if not name or not type.strip():
            raise ValidationError("name and type are required")
        if self.find_by_name(name) is not None:
            raise ValidationError(f"Location '{name}' already exists")
        fields = {"name": name, "type": type.strip(), "department": department}
        if id is not None:
            if self.db.get(f"location:{id}") is not None:
                raise ValidationError(f"Location {id} already exists")
            fields["id"] = id
        location = Location(**fields)
        self.db.put(f"location:{location.id}", location)
        if smart_button_id is not None:
            location = self.assign_button(location.id, smart_button_id)
        return location

    def get(self, location_id: str) -> Location:
        location = self.db.get(f"location:{location_id}")
        if not isinstance(location, Location):
            raise NotFoundError(f"Location {location_id} not found")
        return location

    def list_locations(self) -> list[Location]:
        return sorted(self.db.of_type(Location), key=lambda loc: loc.name)

    def find_by_name(self, name: str) -> Location | None:
        wanted = name.strip().lower()
        return next(
            (
                loc
                for loc in self.db.of_type(Location)
                if loc.name.lower() == wanted
            ),
            None,
        )

    def find_by_button(self, button_id: str) -> Location | None:
        return next(
            (
                loc
                for loc in self.db.of_type(Location)
                if loc.smart_button_id == button_id
            ),
            None,
        )

    def assign_button(
        self, location_id: str, button_id: str | None
    ) -> Location:
        """Make ``button_id`` the location's primary button, or clear it."""
        location = self.get(location_id)
        if button_id is not None:
            other = self.find_by_button(button_id)
            if other is not None and other.id != location_id:
                raise ValidationError(
                    f"Button {button_id} is already mapped to {other.name}"
                )
        location = location.model_copy(update={"smart_button_id": button_id})
        self.db.put(f"location:{location.id}", location)
        logger.info(
            "Location %s primary button -> %s", location.name, button_id
        )
        return location
