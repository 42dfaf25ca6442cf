"""
Service request lifecycle: creation from a trigger, coalescing of repeated
button presses, status transitions and the active queue.

Status only moves forward::

    pending -> accepted -> completed
    pending -> completed
    pending | accepted -> cancelled
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from pydantic import BaseModel, ConfigDict, Field

from crewcall.activity import ActivityRecorder, guest_label, location_label
from crewcall.database import InMemoryKeyValueDatabase
from crewcall.errors import (
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from crewcall.models import (
    ActivityType,
    CrewMember,
    Device,
    Guest,
    Location,
    Priority,
    RequestStatus,
    RequestType,
    ServiceRequest,
    ServiceRequestHistory,
    User,
    UserRole,
)

logger = logging.getLogger(__name__)

NowFn = Callable[[], datetime]
RequestHook = Callable[[ServiceRequest], None]

LEGACY_REQUEST_TYPES = {
    "call": RequestType.SERVICE,
}

ALLOWED_FROM: dict[RequestStatus, frozenset[RequestStatus]] = {
    RequestStatus.PENDING: frozenset(),
    RequestStatus.ACCEPTED: frozenset({RequestStatus.PENDING}),
    RequestStatus.COMPLETED: frozenset(
        {RequestStatus.PENDING, RequestStatus.ACCEPTED}
    ),
    RequestStatus.CANCELLED: frozenset(
        {RequestStatus.PENDING, RequestStatus.ACCEPTED}
    ),
}

TRANSITION_ACTIVITY = {
    RequestStatus.ACCEPTED: ActivityType.REQUEST_ACCEPTED,
    RequestStatus.COMPLETED: ActivityType.REQUEST_COMPLETED,
    RequestStatus.CANCELLED: ActivityType.REQUEST_CANCELLED,
}

AUX_BUTTON_TYPES = {
    "aux1": RequestType.DND,
    "aux2": RequestType.LIGHTS,
    "aux3": RequestType.PREPARE_FOOD,
    "aux4": RequestType.BRING_DRINKS,
}
PRESS_TYPES = ("single", "double", "long", "shake")


class ServiceTrigger(BaseModel):
    """Inbound trigger, usually a button press relayed by the gateway."""

    model_config = ConfigDict(populate_by_name=True)

    button_id: str | None = Field(default=None, alias="buttonId")
    location_id: str | None = Field(default=None, alias="locationId")
    request_type: str = Field(default=RequestType.SERVICE, alias="requestType")
    priority: str = Priority.NORMAL
    message: str | None = Field(default=None, max_length=2000)
    guest_name: str | None = Field(default=None, alias="guestName")
    guest_id: str | None = Field(default=None, alias="guestId")


def normalize_request_type(value: str) -> RequestType:
    cleaned = str(value).strip().lower()
    if cleaned in LEGACY_REQUEST_TYPES:
        return LEGACY_REQUEST_TYPES[cleaned]
    try:
        return RequestType(cleaned)
    except ValueError:
        raise ValidationError(f"Unknown request type '{value}'") from None


def parse_priority(value: str) -> Priority:
    try:
        return Priority(str(value).strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown priority '{value}'") from None


def parse_status(value: str) -> RequestStatus:
    try:
        return RequestStatus(str(value).strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown request status '{value}'") from None


def derive_from_press(
    button: str, press_type: str
) -> tuple[RequestType, Priority]:
    """
    Turn a physical press into (request type, priority). A shake is always an
    emergency and a long press is a voice request; otherwise the aux buttons
    carry a fixed meaning and the main button asks for service, urgent when
    double-pressed.
    """
    if press_type not in PRESS_TYPES:
        raise ValidationError(f"Unknown press type '{press_type}'")
    if button != "main" and button not in AUX_BUTTON_TYPES:
        raise ValidationError(f"Unknown button '{button}'")

    if press_type == "shake":
        return RequestType.EMERGENCY, Priority.EMERGENCY
    if press_type == "long":
        return RequestType.VOICE, Priority.NORMAL
    if button in AUX_BUTTON_TYPES:
        return AUX_BUTTON_TYPES[button], Priority.NORMAL
    if press_type == "double":
        return RequestType.SERVICE, Priority.URGENT
    return RequestType.SERVICE, Priority.NORMAL


class RequestLifecycleManager:
    def __init__(
        self,
        db: InMemoryKeyValueDatabase,
        *,
        now_fn: NowFn,
        coalesce_window: timedelta = timedelta(seconds=30),
        on_created: RequestHook | None = None,
        on_declined: RequestHook | None = None,
    ) -> None:
        self.db = db
        self.now_fn = now_fn
        self.coalesce_window = coalesce_window
        self.on_created = on_created
        self.on_declined = on_declined
        self.activity = ActivityRecorder(db)

    # --- creation -------------------------------------------------------

    def create(self, trigger: ServiceTrigger) -> ServiceRequest:
        request, _ = self.submit(trigger)
        return request

    def submit(self, trigger: ServiceTrigger) -> tuple[ServiceRequest, bool]:
        """
        Create a request from ``trigger``, or return the pending request that
        the same button raised within the coalescing window for the same
        kind of request at no lower priority.
        Returns (request, coalesced).
        """
        request_type = normalize_request_type(trigger.request_type)
        priority = parse_priority(trigger.priority)
        location = self._resolve_location(
            trigger.button_id, trigger.location_id
        )

        now = self.now_fn()
        existing = self._recent_pending(
            trigger.button_id, request_type, priority, now
        )
        if existing is not None:
            logger.info(
                "Coalesced trigger from button %s into request %s",
                trigger.button_id,
                existing.id,
            )
            return existing, True

        guest = self._resolve_guest(location, trigger.guest_id)
        guest_name = trigger.guest_name or (guest.full_name if guest else None)

        request = ServiceRequest(
            button_id=trigger.button_id,
            location_id=location.id if location else None,
            location_name=location.name if location else None,
            guest_id=guest.id if guest else None,
            guest_name=guest_name,
            request_type=request_type,
            priority=priority,
            status=RequestStatus.PENDING,
            message=trigger.message,
            created_at=now,
            updated_at=now,
        )
        self.db.put(f"request:{request.id}", request)
        logger.info(
            "Created %s request %s (%s) at %s",
            request.priority,
            request.id,
            request.request_type,
            request.location_name or "unknown location",
        )
        self.activity.record(
            ActivityType.BUTTON_PRESS
            if request.button_id
            else ActivityType.REQUEST_CREATED,
            f"{guest_label(request)} requested {request.request_type} "
            f"from {location_label(request)}",
            recorded_at=now,
            request=request,
            device_id=request.button_id,
        )

        self._run_hook(self.on_created, request, "enqueue dispatch")
        return request, False

    def press(
        self,
        button_id: str,
        *,
        button: str = "main",
        press_type: str = "single",
        location_id: str | None = None,
        message: str | None = None,
    ) -> tuple[ServiceRequest, bool]:
        request_type, priority = derive_from_press(button, press_type)
        trigger = ServiceTrigger(
            button_id=button_id,
            location_id=location_id,
            request_type=request_type,
            priority=priority,
            message=message,
        )
        return self.submit(trigger)

    def _resolve_location(
        self, button_id: str | None, location_id: str | None
    ) -> Location | None:
        if location_id is not None:
            location = self.db.get(f"location:{location_id}")
            if not isinstance(location, Location):
                raise ValidationError(f"Unknown location '{location_id}'")
            return location
        if button_id is None:
            raise ValidationError("Either buttonId or locationId is required")

        for location in self.db.of_type(Location):
            if location.smart_button_id == button_id:
                return location
        device = self.db.get(f"device:{button_id}")
        if isinstance(device, Device) and device.location_id is not None:
            location = self.db.get(f"location:{device.location_id}")
            if isinstance(location, Location):
                return location
        logger.warning("Button %s is not mapped to a location", button_id)
        return None

    def _resolve_guest(
        self, location: Location | None, guest_id: str | None
    ) -> Guest | None:
        # the guest staying at the location wins over one named by the trigger
        if location is not None:
            staying = [
                g
                for g in self.db.of_type(Guest)
                if g.location_id == location.id
            ]
            if staying:
                return max(staying, key=lambda g: g.created_at)
        if guest_id is not None:
            guest = self.db.get(f"guest:{guest_id}")
            if isinstance(guest, Guest):
                return guest
            logger.warning("Trigger names unknown guest %s", guest_id)
        return None

    def _recent_pending(
        self,
        button_id: str | None,
        request_type: RequestType,
        priority: Priority,
        now: datetime,
    ) -> ServiceRequest | None:
        """
        Only a repeat of the same request absorbs a press. A different
        request type or a higher priority always opens a new request.
        """
        if button_id is None:
            return None
        cutoff = now - self.coalesce_window
        candidates = [
            r
            for r in self.db.of_type(ServiceRequest)
            if r.button_id == button_id
            and r.status == RequestStatus.PENDING
            and r.created_at >= cutoff
            and r.request_type == request_type
            and r.priority.rank >= priority.rank
        ]
        return max(candidates, key=lambda r: r.created_at, default=None)

    # --- reads ----------------------------------------------------------

    def get(self, request_id: str) -> ServiceRequest:
        request = self.db.get(f"request:{request_id}")
        if not isinstance(request, ServiceRequest):
            raise NotFoundError(f"Service request {request_id} not found")
        return request

    def list_active(self) -> list[ServiceRequest]:
        """Pending and accepted requests, most urgent first, then oldest."""
        active = [
            r for r in self.db.of_type(ServiceRequest) if r.status.is_active
        ]
        return sorted(active, key=lambda r: (-r.priority.rank, r.created_at))

    def list_requests(
        self,
        *,
        status: str | None = None,
        priority: str | None = None,
        page: int = 1,
        limit: int = 25,
    ) -> tuple[list[ServiceRequest], int]:
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")
        requests = self.db.of_type(ServiceRequest)
        if status is not None:
            wanted_status = parse_status(status)
            requests = [r for r in requests if r.status == wanted_status]
        if priority is not None:
            wanted_priority = parse_priority(priority)
            requests = [r for r in requests if r.priority == wanted_priority]
        requests.sort(key=lambda r: r.created_at, reverse=True)
        start = (page - 1) * limit
        return requests[start : start + limit], len(requests)

    def history(self) -> list[ServiceRequestHistory]:
        return sorted(
            self.db.of_type(ServiceRequestHistory),
            key=lambda h: h.recorded_at,
            reverse=True,
        )

    # --- transitions ----------------------------------------------------

    def transition(
        self,
        request_id: str,
        new_status: str,
        acting_crew_id: str | None,
        *,
        device_id: str | None = None,
    ) -> ServiceRequest:
        target = parse_status(new_status)
        current = self.get(request_id)
        crew = None
        if target in (RequestStatus.ACCEPTED, RequestStatus.COMPLETED):
            if acting_crew_id is None:
                raise ValidationError(
                    f"A crew member is required to mark {target}"
                )
            crew = self._crew(acting_crew_id)
        elif acting_crew_id is not None:
            crew = self._crew(acting_crew_id)

        allowed = ALLOWED_FROM[target]
        if current.status not in allowed:
            raise InvalidTransitionError(current, target)

        now = self.now_fn()
        changes: dict = {"status": target, "updated_at": now}
        if target == RequestStatus.ACCEPTED:
            changes["assigned_to_id"] = acting_crew_id
            changes["accepted_at"] = now
        elif target == RequestStatus.COMPLETED:
            changes["completed_at"] = now
            if current.assigned_to_id is None:
                changes["assigned_to_id"] = acting_crew_id
        elif target == RequestStatus.CANCELLED:
            changes["cancelled_at"] = now

        ok, stored = self.db.transition_if_status(
            f"request:{request_id}", allowed, changes
        )
        if not ok:
            # someone else moved it first
            raise InvalidTransitionError(stored or current, target)

        logger.info(
            "Request %s %s -> %s by %s",
            request_id,
            current.status,
            target,
            acting_crew_id or "system",
        )
        self._record_transition(stored, crew, device_id)
        if target in (RequestStatus.COMPLETED, RequestStatus.CANCELLED):
            self._record_history(current, stored, acting_crew_id)
        return stored

    def accept(
        self, request_id: str, crew_id: str, *, device_id: str | None = None
    ) -> ServiceRequest:
        return self.transition(
            request_id, RequestStatus.ACCEPTED, crew_id, device_id=device_id
        )

    def complete(self, request_id: str, crew_id: str) -> ServiceRequest:
        return self.transition(request_id, RequestStatus.COMPLETED, crew_id)

    def cancel(
        self, request_id: str, crew_id: str | None = None
    ) -> ServiceRequest:
        return self.transition(request_id, RequestStatus.CANCELLED, crew_id)

    def decline(
        self, request_id: str, crew_id: str, *, device_id: str | None = None
    ) -> ServiceRequest:
        """
        Remember that ``crew_id`` passed on a pending request. The first
        decline from a crew member runs ``on_declined`` so the request can
        be offered to whoever is left.
        """
        current = self.get(request_id)
        crew = self._crew(crew_id)
        ok, stored = self.db.append_if_status(
            f"request:{request_id}",
            "declined_crew_ids",
            crew_id,
            {RequestStatus.PENDING},
        )
        if not ok:
            raise InvalidTransitionError(stored or current, "declined")
        if crew_id in current.declined_crew_ids:
            return stored

        logger.info("Crew %s declined request %s", crew_id, request_id)
        self.activity.record(
            ActivityType.REQUEST_DECLINED,
            f"{crew.name} declined service request from "
            f"{guest_label(stored)} at {location_label(stored)}",
            recorded_at=self.now_fn(),
            request=stored,
            crew_member_id=crew_id,
            device_id=device_id,
        )
        self._run_hook(self.on_declined, stored, "re-dispatch")
        return stored

    def purge_active(self, acting_user_id: str | None) -> int:
        """
        Maintenance escape hatch: delete every pending/accepted request.
        Admin only, never used by the normal lifecycle.
        """
        user = (
            self.db.get(f"user:{acting_user_id}") if acting_user_id else None
        )
        if not isinstance(user, User) or user.role != UserRole.ADMIN:
            logger.warning(
                "Refused purge of active requests for user %s", acting_user_id
            )
            raise PermissionDeniedError(
                "Purging active requests requires admin"
            )

        removed = self.db.delete_where(
            lambda v: isinstance(v, ServiceRequest) and v.status.is_active
        )
        logger.warning(
            "User %s purged %d active service request(s)",
            user.username,
            len(removed),
        )
        return len(removed)

    def _run_hook(
        self, hook: RequestHook | None, request: ServiceRequest, what: str
    ) -> None:
        if hook is None:
            return
        # a failing hook must not undo the stored change
        try:
            hook(request)
        except Exception:
            logger.exception("Could not %s for %s", what, request.id)

    def _crew(self, crew_id: str) -> CrewMember:
        crew = self.db.get(f"crew:{crew_id}")
        if not isinstance(crew, CrewMember):
            raise NotFoundError(f"Crew member {crew_id} not found")
        return crew

    def _record_transition(
        self,
        request: ServiceRequest,
        crew: CrewMember | None,
        device_id: str | None,
    ) -> None:
        actor = crew.name if crew else "System"
        verb = str(request.status)
        response_time = None
        if request.status == RequestStatus.ACCEPTED:
            response_time = _seconds(request.created_at, request.accepted_at)
        self.activity.record(
            TRANSITION_ACTIVITY[request.status],
            f"{actor} {verb} service request from "
            f"{guest_label(request)} at {location_label(request)}",
            recorded_at=request.updated_at,
            request=request,
            crew_member_id=crew.id if crew else None,
            device_id=device_id,
            response_time=response_time,
        )

    def _record_history(
        self,
        previous: ServiceRequest,
        request: ServiceRequest,
        acting_crew_id: str | None,
    ) -> None:
        response_time = completion_time = None
        if request.accepted_at is not None:
            response_time = _seconds(request.created_at, request.accepted_at)
            if request.completed_at is not None:
                completion_time = _seconds(
                    request.accepted_at, request.completed_at
                )
        entry = ServiceRequestHistory(
            request_id=request.id,
            previous_status=previous.status,
            new_status=request.status,
            acting_crew_id=acting_crew_id,
            request_type=request.request_type,
            priority=request.priority,
            location_name=request.location_name,
            response_time=response_time,
            completion_time=completion_time,
            recorded_at=request.updated_at,
        )
        self.db.put(f"history:{entry.id}", entry)


def _seconds(start: datetime, end: datetime) -> int:
    return int((end - start).total_seconds())
