import re

from crewcall.database import InMemoryKeyValueDatabase
from crewcall.errors import ValidationError
from crewcall.models import Shift

# distinct colours, cycled when there are more shifts than entries
COLOR_PALETTE = [
    "#F59E0B",
    "#F97316",
    "#8B5CF6",
    "#4F46E5",
    "#EC4899",
    "#14B8A6",
    "#10B981",
    "#F43F5E",
    "#6366F1",
    "#A855F7",
    "#EAB308",
    "#06B6D4",
    "#84CC16",
    "#F472B6",
    "#0EA5E9",
    "#22C55E",
]

_TIME_RE = re.compile(r"^([01]?[0-9]|2[0-3]):[0-5][0-9]$")


def shift_color(index: int) -> str:
    return COLOR_PALETTE[index % len(COLOR_PALETTE)]


class ShiftPlanner:
    def __init__(self, db: InMemoryKeyValueDatabase) -> None:
        self.db = db

    def add(
        self,
        name: str,
        start_time: str,
        end_time: str,
        primary_count: int = 1,
        backup_count: int = 0,
    ) -> Shift:
        if not name.strip():
            raise ValidationError("Shift name is required")
        times = (("start_time", start_time), ("end_time", end_time))
        for label, value in times:
            if not _TIME_RE.match(value):
                raise ValidationError(
                    f"Invalid {label} '{value}' (expected HH:MM)"
                )
        if start_time == end_time:
            raise ValidationError("Shift start and end must differ")
        if primary_count < 1:
            raise ValidationError("primary_count must be at least 1")
        if backup_count < 0:
            raise ValidationError("backup_count cannot be negative")

        existing = [s.sequence for s in self.db.of_type(Shift)]
        sequence = max(existing, default=-1) + 1
        shift = Shift(
            name=name.strip(),
            start_time=start_time,
            end_time=end_time,
            primary_count=primary_count,
            backup_count=backup_count,
            color=shift_color(sequence),
            sequence=sequence,
        )
        self.db.put(f"shift:{shift.id}", shift)
        return shift

    def list_shifts(self) -> list[Shift]:
        return sorted(self.db.of_type(Shift), key=lambda s: s.sequence)
