import json
import logging
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from crewcall.database import InMemoryKeyValueDatabase
from crewcall.errors import ValidationError
from crewcall.migrations import apply_migrations
from crewcall.models import (
    CrewMember,
    Device,
    Guest,
    Location,
    ServiceRequest,
    Shift,
    User,
)
from crewcall.shifts import shift_color

logger = logging.getLogger(__name__)

# table -> (model, key prefix, key field)
TABLES = {
    "users": (User, "user", "id"),
    "crew": (CrewMember, "crew", "id"),
    "locations": (Location, "location", "id"),
    "guests": (Guest, "guest", "id"),
    "devices": (Device, "device", "device_id"),
    "shifts": (Shift, "shift", "id"),
    "service_requests": (ServiceRequest, "request", "id"),
}


def load_snapshot(
    db: InMemoryKeyValueDatabase, snapshot: dict
) -> dict[str, int]:
    """
    Migrate a raw snapshot and store its records. Validation happens for the
    whole snapshot before anything is written.
    """
    apply_migrations(snapshot)

    for index, row in enumerate(snapshot.get("shifts", [])):
        row.setdefault("sequence", index)
        row.setdefault("color", shift_color(row["sequence"]))

    records: list[tuple[str, object]] = []
    counts: dict[str, int] = {}
    for table, (model, prefix, key_field) in TABLES.items():
        rows = snapshot.get(table, [])
        for row in rows:
            try:
                record = model.model_validate(row)
            except PydanticValidationError as exc:
                raise ValidationError(
                    f"Invalid {table} record {row!r}: {exc}"
                ) from exc
            records.append((f"{prefix}:{getattr(record, key_field)}", record))
        counts[table] = len(rows)

    for key, record in records:
        db.put(key, record)
    logger.info("Loaded snapshot: %s", counts)
    return counts


def load_snapshot_file(
    db: InMemoryKeyValueDatabase, path: str | Path
) -> dict[str, int]:
    with open(path, encoding="utf-8") as fh:
        snapshot = json.load(fh)
    return load_snapshot(db, snapshot)
