"""
Append-only activity trail: button presses and what crew did with the
resulting requests. Entries are never updated or deleted.
"""

import logging
from datetime import datetime

from crewcall.database import InMemoryKeyValueDatabase
from crewcall.models import ActivityLog, ActivityType, ServiceRequest

logger = logging.getLogger(__name__)


def guest_label(request: ServiceRequest) -> str:
    return request.guest_name or "Guest"


def location_label(request: ServiceRequest) -> str:
    return request.location_name or "Unknown"


class ActivityRecorder:
    def __init__(self, db: InMemoryKeyValueDatabase) -> None:
        self.db = db

    def record(
        self,
        type: ActivityType,
        details: str,
        *,
        recorded_at: datetime,
        request: ServiceRequest | None = None,
        crew_member_id: str | None = None,
        device_id: str | None = None,
        response_time: int | None = None,
    ) -> ActivityLog:
        entry = ActivityLog(
            type=type,
            details=details,
            request_id=request.id if request else None,
            location_id=request.location_id if request else None,
            guest_id=request.guest_id if request else None,
            crew_member_id=crew_member_id,
            device_id=device_id,
            response_time=response_time,
            recorded_at=recorded_at,
        )
        self.db.put(f"activity:{entry.id}", entry)
        logger.debug("Activity %s: %s", entry.type, entry.details)
        return entry

    def entries(
        self,
        *,
        request_id: str | None = None,
        type: str | None = None,
    ) -> list[ActivityLog]:
        """Newest first."""
        found = self.db.of_type(ActivityLog)
        if request_id is not None:
            found = [e for e in found if e.request_id == request_id]
        if type is not None:
            found = [e for e in found if e.type == type]
        return sorted(found, key=lambda e: e.recorded_at, reverse=True)
