import logging
from collections.abc import Callable
from datetime import datetime

from crewcall.database import InMemoryKeyValueDatabase
from crewcall.errors import NotFoundError, ValidationError
from crewcall.models import (
    CrewMember,
    Device,
    DutyStatus,
    RequestStatus,
    ServiceRequest,
    User,
)

logger = logging.getLogger(__name__)

NowFn = Callable[[], datetime]


def parse_duty_status(value: str) -> DutyStatus:
    """
    Only the hyphenated forms are accepted. ``on_duty`` and friends are
    rejected so that callers normalize before they get here.
    """
    try:
        return DutyStatus(value)
    except ValueError:
        allowed = ", ".join(s.value for s in DutyStatus)
        raise ValidationError(
            f"Invalid duty status '{value}'. Expected one of: {allowed}"
        ) from None


class CrewDirectory:
    def __init__(self, db: InMemoryKeyValueDatabase, *, now_fn: NowFn) -> None:
        self.db = db
        self.now_fn = now_fn

    def add(
        self,
        name: str,
        department: str,
        position: str,
        status: str = DutyStatus.OFF_DUTY,
        user_id: str | None = None,
    ) -> CrewMember:
        if not name.strip() or not department.strip() or not position.strip():
            raise ValidationError("name, department and position are required")
        now = self.now_fn()
        crew = CrewMember(
            name=name.strip(),
            department=department.strip(),
            position=position.strip(),
            status=parse_duty_status(status),
            created_at=now,
            updated_at=now,
        )
        self.db.put(f"crew:{crew.id}", crew)
        if user_id is not None:
            crew = self.link_user(crew.id, user_id)
        logger.info("Added crew member %s (%s)", crew.name, crew.id)
        return crew

    def get(self, crew_id: str) -> CrewMember:
        crew = self.db.get(f"crew:{crew_id}")
        if not isinstance(crew, CrewMember):
            raise NotFoundError(f"Crew member {crew_id} not found")
        return crew

    def list_crew(self, department: str | None = None) -> list[CrewMember]:
        crew = self.db.of_type(CrewMember)
        if department is not None:
            crew = [c for c in crew if c.department == department]
        return sorted(crew, key=lambda c: c.name)

    def on_duty(self, department: str | None = None) -> list[CrewMember]:
        return [
            c
            for c in self.list_crew(department)
            if c.status == DutyStatus.ON_DUTY
        ]

    def set_duty_status(self, crew_id: str, status: str) -> CrewMember:
        new_status = parse_duty_status(status)
        crew = self.get(crew_id)
        previous = crew.status
        crew = crew.model_copy(
            update={"status": new_status, "updated_at": self.now_fn()}
        )
        self.db.put(f"crew:{crew.id}", crew)
        logger.info(
            "Duty status for %s changed %s -> %s",
            crew.name,
            previous,
            new_status,
        )
        return crew

    def add_user(self, username: str, role: str = "crew") -> User:
        username = username.strip()
        if not username:
            raise ValidationError("username is required")
        if any(u.username == username for u in self.db.of_type(User)):
            raise ValidationError(f"Username '{username}' already exists")
        try:
            user = User(username=username, role=role)
        except ValueError as exc:
            raise ValidationError(f"Invalid role '{role}'") from exc
        self.db.put(f"user:{user.id}", user)
        return user

    def get_user(self, user_id: str) -> User:
        user = self.db.get(f"user:{user_id}")
        if not isinstance(user, User):
            raise NotFoundError(f"User {user_id} not found")
        return user

    def link_user(self, crew_id: str, user_id: str) -> CrewMember:
        crew = self.get(crew_id)
        self.get_user(user_id)
        owner = next(
            (
                c
                for c in self.db.of_type(CrewMember)
                if c.user_id == user_id and c.id != crew_id
            ),
            None,
        )
        if owner is not None:
            raise ValidationError(
                f"User {user_id} is already linked to crew member {owner.id}"
            )
        crew = crew.model_copy(
            update={"user_id": user_id, "updated_at": self.now_fn()}
        )
        self.db.put(f"crew:{crew.id}", crew)
        return crew

    def remove(self, crew_id: str) -> None:
        crew = self.get(crew_id)
        active = [
            r
            for r in self.db.of_type(ServiceRequest)
            if r.assigned_to_id == crew_id
            and r.status in (RequestStatus.PENDING, RequestStatus.ACCEPTED)
        ]
        if active:
            raise ValidationError(
                f"Crew member {crew.name} still has "
                f"{len(active)} active request(s)"
            )
        for device in self.db.of_type(Device):
            if device.crew_member_id == crew_id:
                self.db.put(
                    f"device:{device.device_id}",
                    device.model_copy(update={"crew_member_id": None}),
                )
                logger.info("Unbound device %s", device.device_id)
        self.db.delete(f"crew:{crew_id}")
        logger.info("Removed crew member %s (%s)", crew.name, crew_id)
