"""
Notification fan-out from a service request to the watches of on-duty crew.

Delivery is best effort per recipient: a crew member without a usable device
is skipped with an UnreachableRecipientWarning, and a channel error on one
device never stops delivery to the others.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from enum import StrEnum

from crewcall.database import InMemoryKeyValueDatabase
from crewcall.errors import UnreachableRecipientWarning
from crewcall.models import (
    CrewMember,
    Device,
    DeviceType,
    DutyStatus,
    Location,
    ServiceRequest,
)

logger = logging.getLogger(__name__)

DeliverFn = Callable[[str, dict], Awaitable[None]]

NOTIFIABLE_TYPES = frozenset({DeviceType.WATCH, DeviceType.MOBILE_APP})


class AlertMode(StrEnum):
    PASSIVE = "passive"
    SUSTAINED = "sustained"  # sustained vibration until acknowledged


@dataclass
class DispatchReport:
    request_id: str
    delivered: list[str] = field(default_factory=list)
    warnings: list[UnreachableRecipientWarning] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def any_delivered(self) -> bool:
        return bool(self.delivered)


def alert_mode_for(request: ServiceRequest) -> AlertMode:
    if request.priority.is_urgent:
        return AlertMode.SUSTAINED
    return AlertMode.PASSIVE


def build_payload(request: ServiceRequest) -> dict:
    location_name = request.location_name or "Unknown"
    return {
        "requestId": request.id,
        "priority": str(request.priority),
        "requestType": str(request.request_type),
        "message": (
            request.message or f"Guest needs assistance at {location_name}"
        ),
        "locationName": location_name,
        "guestName": request.guest_name or "Guest",
        "alertMode": str(alert_mode_for(request)),
    }


class NotificationDispatcher:
    def __init__(
        self, db: InMemoryKeyValueDatabase, *, deliver: DeliverFn
    ) -> None:
        self.db = db
        self.deliver = deliver

    def _notifiable_devices(self, crew_id: str) -> list[Device]:
        return [
            d
            for d in self.db.of_type(Device)
            if d.crew_member_id == crew_id
            and d.type in NOTIFIABLE_TYPES
            and d.reachable
        ]

    def resolve_recipients(
        self, location_id: str | None, exclude: Iterable[str] = ()
    ) -> list[CrewMember]:
        """
        On-duty crew with a reachable watch. A location that names a
        department only pages crew from that department.
        """
        excluded = set(exclude)
        department = None
        if location_id is not None:
            location = self.db.get(f"location:{location_id}")
            if isinstance(location, Location):
                department = location.department

        recipients = [
            c
            for c in self.db.of_type(CrewMember)
            if c.status == DutyStatus.ON_DUTY
            and c.id not in excluded
            and (department is None or c.department == department)
            and self._notifiable_devices(c.id)
        ]
        return sorted(recipients, key=lambda c: c.name)

    async def dispatch(
        self, request: ServiceRequest, recipients: Iterable[CrewMember]
    ) -> DispatchReport:
        report = DispatchReport(request_id=request.id)
        payload = build_payload(request)

        targets: list[tuple[CrewMember, Device]] = []
        for crew in recipients:
            devices = self._notifiable_devices(crew.id)
            if not devices:
                self._skip(report, crew, "no bound device")
            elif crew.user_id is None:
                self._skip(report, crew, "no linked user account")
            else:
                targets.extend((crew, device) for device in devices)

        results = await asyncio.gather(
            *(
                self.deliver(device.device_id, dict(payload))
                for _, device in targets
            ),
            return_exceptions=True,
        )
        for (crew, device), result in zip(targets, results, strict=True):
            if isinstance(result, BaseException):
                error = str(result) or type(result).__name__
                report.failures[device.device_id] = error
                logger.warning(
                    "Delivery of request %s to %s (%s) failed: %s",
                    request.id,
                    crew.name,
                    device.device_id,
                    result,
                )
            else:
                report.delivered.append(device.device_id)

        logger.info(
            "Dispatched request %s (%s): "
            "%d delivered, %d unreachable, %d failed",
            request.id,
            payload["alertMode"],
            len(report.delivered),
            len(report.warnings),
            len(report.failures),
        )
        return report

    async def dispatch_request(
        self, request: ServiceRequest
    ) -> DispatchReport:
        recipients = self.resolve_recipients(
            request.location_id, exclude=request.declined_crew_ids
        )
        if not recipients:
            logger.warning(
                "No on-duty crew to notify for request %s", request.id
            )
        return await self.dispatch(request, recipients)

    def _skip(
        self, report: DispatchReport, crew: CrewMember, reason: str
    ) -> None:
        warning = UnreachableRecipientWarning(crew.id, reason)
        report.warnings.append(warning)
        logger.warning(
            "Skipping %s for request %s: %s",
            crew.name,
            report.request_id,
            reason,
        )
