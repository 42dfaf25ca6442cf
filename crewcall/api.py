import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta

from fastapi import APIRouter, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from crewcall.config import Settings, settings as default_settings
from crewcall.database import InMemoryKeyValueDatabase
from crewcall.devices import DeviceRegistry
from crewcall.directory import CrewDirectory
from crewcall.dispatcher import DispatchReport, NotificationDispatcher
from crewcall.errors import (
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    PersistenceError,
    ValidationError,
)
from crewcall.guests import GuestRegistry
from crewcall.intent import ReplyIntent, parse_reply_intent
from crewcall.lifecycle import RequestLifecycleManager, ServiceTrigger
from crewcall.locations import LocationRegistry
from crewcall.models import DutyStatus, RequestStatus, ServiceRequest
from crewcall.notifier import push_to_device
from crewcall.seed import load_snapshot_file
from crewcall.shifts import ShiftPlanner

logger = logging.getLogger(__name__)

router = APIRouter()

DeliverFn = Callable[[str, dict], Awaitable[None]]


class CrewCreate(BaseModel):
    name: str
    department: str
    position: str
    status: str = DutyStatus.OFF_DUTY
    user_id: str | None = Field(default=None, alias="userId")


class DutyStatusUpdate(BaseModel):
    status: str


class UserCreate(BaseModel):
    username: str
    role: str = "crew"


class GuestCreate(BaseModel):
    first_name: str = Field(alias="firstName")
    last_name: str = Field(default="", alias="lastName")
    location_id: str | None = Field(default=None, alias="locationId")


class DeviceCreate(BaseModel):
    device_id: str = Field(alias="deviceId")
    type: str
    name: str | None = None
    sub_type: str | None = Field(default=None, alias="subType")
    mac_address: str | None = Field(default=None, alias="macAddress")
    location_id: str | None = Field(default=None, alias="locationId")
    crew_member_id: str | None = Field(default=None, alias="crewMemberId")


class DeviceBinding(BaseModel):
    crew_member_id: str = Field(alias="crewMemberId")


class TelemetryUpdate(BaseModel):
    battery_level: int | None = Field(default=None, alias="batteryLevel")
    signal_strength: int | None = Field(default=None, alias="signalStrength")
    status: str | None = None


class LocationCreate(BaseModel):
    id: str | None = None
    name: str
    type: str
    department: str | None = None
    smart_button_id: str | None = Field(default=None, alias="smartButtonId")


class ButtonAssignment(BaseModel):
    button_id: str | None = Field(alias="buttonId")


class ShiftCreate(BaseModel):
    name: str
    start_time: str = Field(alias="startTime")
    end_time: str = Field(alias="endTime")
    primary_count: int = Field(default=1, alias="primaryCount")
    backup_count: int = Field(default=0, alias="backupCount")


class StatusChange(BaseModel):
    status: str
    crew_member_id: str | None = Field(default=None, alias="crewMemberId")


class CrewAction(BaseModel):
    crew_member_id: str | None = Field(default=None, alias="crewMemberId")


class ButtonPress(BaseModel):
    button: str = "main"
    press_type: str = Field(default="single", alias="pressType")
    location_id: str | None = Field(default=None, alias="locationId")
    message: str | None = None


class WatchReply(BaseModel):
    request_id: str = Field(alias="requestId")
    body: str


def _dump(model: BaseModel) -> dict:
    return model.model_dump(mode="json")


@router.get("/health")
async def health_check(request: Request) -> dict[str, str]:
    db: InMemoryKeyValueDatabase = request.app.state.database
    return {"status": "ok" if db.is_open else "degraded"}


# --- service requests ------------------------------------------------------


def _created_response(req: ServiceRequest, coalesced: bool) -> JSONResponse:
    body = _dump(req) | {"coalesced": coalesced}
    return JSONResponse(status_code=200 if coalesced else 201, content=body)


@router.post("/service-requests")
async def create_service_request(
    trigger: ServiceTrigger, request: Request
) -> JSONResponse:
    req, coalesced = request.app.state.lifecycle.submit(trigger)
    return _created_response(req, coalesced)


@router.post("/buttons/{button_id}/press")
async def press_button(
    button_id: str, press: ButtonPress, request: Request
) -> JSONResponse:
    req, coalesced = request.app.state.lifecycle.press(
        button_id,
        button=press.button,
        press_type=press.press_type,
        location_id=press.location_id,
        message=press.message,
    )
    return _created_response(req, coalesced)


@router.get("/service-requests/active")
async def list_active_requests(request: Request) -> list[dict]:
    return [_dump(r) for r in request.app.state.lifecycle.list_active()]


@router.delete("/service-requests/active")
async def purge_active_requests(
    request: Request, x_acting_user: str | None = Header(default=None)
) -> dict:
    removed = request.app.state.lifecycle.purge_active(x_acting_user)
    return {"deleted": removed}


@router.get("/service-requests/history")
async def request_history(request: Request) -> list[dict]:
    return [_dump(h) for h in request.app.state.lifecycle.history()]


@router.get("/service-requests")
async def list_service_requests(
    request: Request,
    status: str | None = None,
    priority: str | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=25, ge=1, le=100),
) -> dict:
    items, total = request.app.state.lifecycle.list_requests(
        status=status, priority=priority, page=page, limit=limit
    )
    return {
        "items": [_dump(r) for r in items],
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": (total + limit - 1) // limit,
    }


@router.get("/service-requests/{request_id}")
async def get_service_request(request_id: str, request: Request) -> dict:
    return _dump(request.app.state.lifecycle.get(request_id))


@router.put("/service-requests/{request_id}/status")
async def change_request_status(
    request_id: str, change: StatusChange, request: Request
) -> dict:
    req = request.app.state.lifecycle.transition(
        request_id, change.status, change.crew_member_id
    )
    return _dump(req)


@router.put("/service-requests/{request_id}/accept")
async def accept_request(
    request_id: str, action: CrewAction, request: Request
) -> dict:
    req = request.app.state.lifecycle.transition(
        request_id, RequestStatus.ACCEPTED, action.crew_member_id
    )
    return _dump(req)


@router.put("/service-requests/{request_id}/complete")
async def complete_request(
    request_id: str, action: CrewAction, request: Request
) -> dict:
    req = request.app.state.lifecycle.transition(
        request_id, RequestStatus.COMPLETED, action.crew_member_id
    )
    return _dump(req)


@router.put("/service-requests/{request_id}/cancel")
async def cancel_request(
    request_id: str, action: CrewAction, request: Request
) -> dict:
    req = request.app.state.lifecycle.transition(
        request_id, RequestStatus.CANCELLED, action.crew_member_id
    )
    return _dump(req)


@router.get("/activity")
async def list_activity(
    request: Request,
    request_id: str | None = Query(default=None, alias="requestId"),
    type: str | None = None,
) -> list[dict]:
    entries = request.app.state.lifecycle.activity.entries(
        request_id=request_id, type=type
    )
    return [_dump(e) for e in entries]


@router.post("/devices/{device_id}/replies")
async def handle_watch_reply(
    device_id: str, reply: WatchReply, request: Request
) -> dict:
    device = request.app.state.devices.get(device_id)
    if device.crew_member_id is None:
        raise NotFoundError(
            f"Device {device_id} is not bound to a crew member"
        )
    crew_id = device.crew_member_id
    lifecycle: RequestLifecycleManager = request.app.state.lifecycle

    intent = parse_reply_intent(reply.body)

    if intent == ReplyIntent.ACCEPT:
        try:
            req = lifecycle.accept(
                reply.request_id, crew_id, device_id=device_id
            )
        except InvalidTransitionError as exc:
            return {
                "status": "already_taken",
                "request_id": reply.request_id,
                "current_status": str(exc.request.status),
                "assigned_to_id": exc.request.assigned_to_id,
            }
        return {
            "status": "accepted",
            "request_id": req.id,
            "crew_member_id": crew_id,
            "accepted_at": req.accepted_at.isoformat(),
        }

    if intent == ReplyIntent.DECLINE:
        lifecycle.decline(reply.request_id, crew_id, device_id=device_id)
        return {"status": "declined", "request_id": reply.request_id}

    return {
        "status": "ignored",
        "request_id": reply.request_id,
        "intent": intent.value,
    }


# --- crew, users, guests ----------------------------------------------------


@router.post("/users", status_code=201)
async def create_user(body: UserCreate, request: Request) -> dict:
    user = request.app.state.directory.add_user(body.username, body.role)
    return _dump(user)


@router.post("/crew", status_code=201)
async def create_crew_member(body: CrewCreate, request: Request) -> dict:
    crew = request.app.state.directory.add(
        body.name, body.department, body.position, body.status, body.user_id
    )
    return _dump(crew)


@router.get("/crew")
async def list_crew(
    request: Request, department: str | None = None
) -> list[dict]:
    directory: CrewDirectory = request.app.state.directory
    return [_dump(c) for c in directory.list_crew(department)]


@router.put("/crew/{crew_id}/status")
async def set_crew_status(
    crew_id: str, body: DutyStatusUpdate, request: Request
) -> dict:
    directory: CrewDirectory = request.app.state.directory
    return _dump(directory.set_duty_status(crew_id, body.status))


@router.delete("/crew/{crew_id}", status_code=204)
async def remove_crew_member(crew_id: str, request: Request) -> None:
    request.app.state.directory.remove(crew_id)


@router.post("/guests", status_code=201)
async def create_guest(body: GuestCreate, request: Request) -> dict:
    guest = request.app.state.guests.add(
        body.first_name, body.last_name, body.location_id
    )
    return _dump(guest)


@router.get("/guests")
async def list_guests(
    request: Request,
    location_id: str | None = Query(default=None, alias="locationId"),
) -> list[dict]:
    guests: GuestRegistry = request.app.state.guests
    return [_dump(g) for g in guests.list_guests(location_id)]


# --- devices, locations, shifts --------------------------------------------


@router.post("/devices", status_code=201)
async def register_device(body: DeviceCreate, request: Request) -> dict:
    device = request.app.state.devices.register(
        body.device_id,
        body.type,
        name=body.name,
        sub_type=body.sub_type,
        mac_address=body.mac_address,
        location_id=body.location_id,
        crew_member_id=body.crew_member_id,
    )
    return _dump(device)


@router.put("/devices/{device_id}/crew")
async def bind_device(
    device_id: str, body: DeviceBinding, request: Request
) -> dict:
    devices: DeviceRegistry = request.app.state.devices
    return _dump(devices.bind(device_id, body.crew_member_id))


@router.delete("/devices/{device_id}/crew")
async def unbind_device(device_id: str, request: Request) -> dict:
    return _dump(request.app.state.devices.unbind(device_id))


@router.put("/devices/{device_id}/telemetry")
async def device_telemetry(
    device_id: str, body: TelemetryUpdate, request: Request
) -> dict:
    device = request.app.state.devices.record_telemetry(
        device_id,
        battery_level=body.battery_level,
        signal_strength=body.signal_strength,
        status=body.status,
    )
    return _dump(device)


@router.post("/locations", status_code=201)
async def create_location(body: LocationCreate, request: Request) -> dict:
    location = request.app.state.locations.add(
        body.name,
        body.type,
        department=body.department,
        smart_button_id=body.smart_button_id,
        id=body.id,
    )
    return _dump(location)


@router.put("/locations/{location_id}/button")
async def assign_location_button(
    location_id: str, body: ButtonAssignment, request: Request
) -> dict:
    locations: LocationRegistry = request.app.state.locations
    return _dump(locations.assign_button(location_id, body.button_id))


@router.post("/shifts", status_code=201)
async def create_shift(body: ShiftCreate, request: Request) -> dict:
    shift = request.app.state.shifts.add(
        body.name,
        body.start_time,
        body.end_time,
        body.primary_count,
        body.backup_count,
    )
    return _dump(shift)


@router.get("/shifts")
async def list_shifts(request: Request) -> list[dict]:
    return [_dump(s) for s in request.app.state.shifts.list_shifts()]


# --- dispatch ---------------------------------------------------------------


def make_deliverer(settings: Settings) -> DeliverFn:
    """Bind the push channel to the gateway configured for this app."""

    async def deliver_to_device(device_id: str, payload: dict) -> None:
        # looked up at call time so tests can patch crewcall.api.push_to_device
        await push_to_device(
            device_id,
            payload,
            gateway_url=settings.push_gateway_url,
            timeout=settings.push_timeout_seconds,
        )

    return deliver_to_device


async def dispatch_request(
    app: FastAPI, req: ServiceRequest
) -> DispatchReport | None:
    dispatcher: NotificationDispatcher = app.state.dispatcher
    try:
        # re-read so a re-dispatch sees the latest decliners
        current = app.state.lifecycle.get(req.id)
        if current.status != RequestStatus.PENDING:
            return None
        report = await dispatcher.dispatch_request(current)
    except asyncio.CancelledError:
        return None
    except (PersistenceError, NotFoundError):
        logger.warning("Request %s unavailable, dispatch dropped", req.id)
        return None
    app.state.dispatch_reports[req.id] = report
    return report


def enqueue_dispatch(app: FastAPI, req: ServiceRequest) -> None:
    previous = app.state.dispatch_tasks_by_request.get(req.id)
    if previous is not None:
        previous.cancel()

    task = asyncio.create_task(dispatch_request(app, req))
    app.state.dispatch_tasks.add(task)
    app.state.dispatch_tasks_by_request[req.id] = task

    def _cleanup(_t: asyncio.Task) -> None:
        app.state.dispatch_tasks.discard(_t)
        if app.state.dispatch_tasks_by_request.get(req.id) is _t:
            del app.state.dispatch_tasks_by_request[req.id]

    task.add_done_callback(_cleanup)


# --- errors -----------------------------------------------------------------


def _error_handlers() -> dict:
    async def validation_error(
        _request: Request, exc: ValidationError
    ) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    async def invalid_transition(
        _request: Request, exc: InvalidTransitionError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=409,
            content={"detail": str(exc), "request": _dump(exc.request)},
        )

    async def not_found(_request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    async def permission_denied(
        _request: Request, exc: PermissionDeniedError
    ) -> JSONResponse:
        return JSONResponse(status_code=403, content={"detail": str(exc)})

    async def persistence_error(
        _request: Request, exc: PersistenceError
    ) -> JSONResponse:
        logger.error("Store unavailable: %s", exc)
        return JSONResponse(
            status_code=503,
            content={"detail": str(exc)},
            headers={"Retry-After": "1"},
        )

    return {
        ValidationError: validation_error,
        InvalidTransitionError: invalid_transition,
        NotFoundError: not_found,
        PermissionDeniedError: permission_denied,
        PersistenceError: persistence_error,
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    db: InMemoryKeyValueDatabase = app.state.database
    db.open()
    try:
        if app.state.settings.seed_path:
            load_snapshot_file(db, app.state.settings.seed_path)
        yield
    finally:
        tasks = list(app.state.dispatch_tasks)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        db.close()


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or default_settings
    app = FastAPI(title="CrewCall", lifespan=lifespan)
    db: InMemoryKeyValueDatabase = InMemoryKeyValueDatabase()
    app.state.database = db
    app.state.settings = settings

    app.state.now_fn = lambda: datetime.now(UTC)

    def now() -> datetime:
        return app.state.now_fn()

    app.state.directory = CrewDirectory(db, now_fn=now)
    app.state.guests = GuestRegistry(db, now_fn=now)
    app.state.devices = DeviceRegistry(
        db, now_fn=now, low_battery_threshold=settings.low_battery_threshold
    )
    app.state.locations = LocationRegistry(db)
    app.state.shifts = ShiftPlanner(db)
    app.state.dispatcher = NotificationDispatcher(
        db, deliver=make_deliverer(settings)
    )
    app.state.lifecycle = RequestLifecycleManager(
        db,
        now_fn=now,
        coalesce_window=timedelta(seconds=settings.coalesce_window_seconds),
        on_created=lambda req: enqueue_dispatch(app, req),
        on_declined=lambda req: enqueue_dispatch(app, req),
    )

    app.state.dispatch_tasks = set()
    app.state.dispatch_tasks_by_request = {}
    app.state.dispatch_reports = {}

    for exc_class, handler in _error_handlers().items():
        app.add_exception_handler(exc_class, handler)

    app.include_router(router)
    return app
