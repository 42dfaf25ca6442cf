"""
Versioned data migrations for snapshot imports.

A snapshot is a dict of table name -> list of raw record dicts, plus a
``schema_migrations`` list naming the versions already applied. Migrations
run in version order and each runs exactly once per snapshot; the model
layer only ever sees canonical values.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

Snapshot = dict
MigrationFn = Callable[[Snapshot], int]


@dataclass(frozen=True)
class Migration:
    version: str
    description: str
    apply: MigrationFn


def _remap(
    snapshot: Snapshot, table: str, column: str, mapping: dict[str, str]
) -> int:
    changed = 0
    for row in snapshot.get(table, []):
        value = row.get(column)
        if isinstance(value, str) and value in mapping:
            row[column] = mapping[value]
            changed += 1
    return changed


def request_type_call_to_service(snapshot: Snapshot) -> int:
    changed = _remap(
        snapshot, "service_requests", "request_type", {"call": "service"}
    )
    for row in snapshot.get("service_requests", []):
        if not row.get("request_type"):
            row["request_type"] = "service"
            changed += 1
    return changed


def device_type_wearable_to_watch(snapshot: Snapshot) -> int:
    return _remap(snapshot, "devices", "type", {"wearable": "watch"})


def crew_status_hyphenated(snapshot: Snapshot) -> int:
    return _remap(
        snapshot,
        "crew",
        "status",
        {"on_duty": "on-duty", "off_duty": "off-duty", "on_leave": "on-leave"},
    )


def priority_legacy_values(snapshot: Snapshot) -> int:
    return _remap(
        snapshot,
        "service_requests",
        "priority",
        {"medium": "normal", "high": "urgent"},
    )


def request_status_legacy_values(snapshot: Snapshot) -> int:
    return _remap(
        snapshot,
        "service_requests",
        "status",
        {
            "open": "pending",
            "in_progress": "accepted",
            "in-progress": "accepted",
        },
    )


MIGRATIONS: list[Migration] = [
    Migration(
        "0001",
        "request type 'call' becomes 'service'",
        request_type_call_to_service,
    ),
    Migration(
        "0002",
        "device type 'wearable' becomes 'watch'",
        device_type_wearable_to_watch,
    ),
    Migration(
        "0003", "crew duty status uses hyphens", crew_status_hyphenated
    ),
    Migration(
        "0004", "legacy priorities medium/high", priority_legacy_values
    ),
    Migration(
        "0005",
        "legacy request statuses open/in_progress",
        request_status_legacy_values,
    ),
]


def pending_migrations(snapshot: Snapshot) -> list[Migration]:
    applied = set(snapshot.get("schema_migrations", []))
    ordered = sorted(MIGRATIONS, key=lambda m: m.version)
    return [m for m in ordered if m.version not in applied]


def apply_migrations(snapshot: Snapshot) -> list[str]:
    """Apply outstanding migrations in place. Returns the versions applied."""
    applied = snapshot.setdefault("schema_migrations", [])
    done = []
    for migration in pending_migrations(snapshot):
        changed = migration.apply(snapshot)
        applied.append(migration.version)
        done.append(migration.version)
        logger.info(
            "Applied migration %s (%s): %d row(s) changed",
            migration.version,
            migration.description,
            changed,
        )
    return done
