import logging
from collections.abc import Callable
from datetime import datetime

from crewcall.database import InMemoryKeyValueDatabase
from crewcall.errors import NotFoundError, ValidationError
from crewcall.models import (
    CrewMember,
    Device,
    DeviceStatus,
    DeviceType,
    Location,
)

logger = logging.getLogger(__name__)

NowFn = Callable[[], datetime]

# drifted spellings seen in older data
LEGACY_DEVICE_TYPES = {
    "wearable": DeviceType.WATCH,
}


def normalize_type(value: str) -> DeviceType:
    """
    Map a device type string onto the canonical set. Unknown values are
    rejected rather than guessed.
    """
    if isinstance(value, DeviceType):
        return value
    cleaned = str(value).strip().lower()
    if cleaned in LEGACY_DEVICE_TYPES:
        return LEGACY_DEVICE_TYPES[cleaned]
    try:
        return DeviceType(cleaned)
    except ValueError:
        allowed = ", ".join(t.value for t in DeviceType)
        raise ValidationError(
            f"Unknown device type '{value}'. Expected one of: {allowed}"
        ) from None


class DeviceRegistry:
    def __init__(
        self,
        db: InMemoryKeyValueDatabase,
        *,
        now_fn: NowFn,
        low_battery_threshold: int = 20,
    ) -> None:
        self.db = db
        self.now_fn = now_fn
        self.low_battery_threshold = low_battery_threshold

    def register(
        self,
        device_id: str,
        type: str,
        *,
        name: str | None = None,
        sub_type: str | None = None,
        mac_address: str | None = None,
        location_id: str | None = None,
        crew_member_id: str | None = None,
    ) -> Device:
        device_id = device_id.strip()
        if not device_id:
            raise ValidationError("device_id is required")
        if self.find(device_id) is not None:
            raise ValidationError(f"Device {device_id} is already registered")
        device = Device(
            device_id=device_id,
            type=normalize_type(type),
            name=name,
            sub_type=sub_type,
            mac_address=mac_address,
            last_seen=self.now_fn(),
        )
        self.db.put(f"device:{device.device_id}", device)
        if location_id is not None:
            device = self.bind_location(device.device_id, location_id)
        if crew_member_id is not None:
            device = self.bind(device.device_id, crew_member_id)
        logger.info("Registered %s device %s", device.type, device.device_id)
        return device

    def find(self, device_id: str) -> Device | None:
        device = self.db.get(f"device:{device_id}")
        return device if isinstance(device, Device) else None

    def get(self, device_id: str) -> Device:
        device = self.find(device_id)
        if device is None:
            raise NotFoundError(f"Device {device_id} not found")
        return device

    def list_devices(self, type: str | None = None) -> list[Device]:
        devices = self.db.of_type(Device)
        if type is not None:
            wanted = normalize_type(type)
            devices = [d for d in devices if d.type == wanted]
        return sorted(devices, key=lambda d: d.device_id)

    def devices_for_crew(self, crew_member_id: str) -> list[Device]:
        return [
            d
            for d in self.list_devices()
            if d.crew_member_id == crew_member_id
        ]

    def bind(self, device_id: str, crew_member_id: str) -> Device:
        """
        Bind a device to a crew member. Any previous binding is replaced.
        """
        device = self.get(device_id)
        if not isinstance(self.db.get(f"crew:{crew_member_id}"), CrewMember):
            raise NotFoundError(f"Crew member {crew_member_id} not found")
        if device.crew_member_id not in (None, crew_member_id):
            logger.info(
                "Device %s rebound from %s to %s",
                device_id,
                device.crew_member_id,
                crew_member_id,
            )
        device = device.model_copy(update={"crew_member_id": crew_member_id})
        self.db.put(f"device:{device.device_id}", device)
        return device

    def unbind(self, device_id: str) -> Device:
        device = self.get(device_id).model_copy(
            update={"crew_member_id": None}
        )
        self.db.put(f"device:{device.device_id}", device)
        return device

    def bind_location(self, device_id: str, location_id: str | None) -> Device:
        device = self.get(device_id)
        if location_id is not None and not isinstance(
            self.db.get(f"location:{location_id}"), Location
        ):
            raise NotFoundError(f"Location {location_id} not found")
        device = device.model_copy(update={"location_id": location_id})
        self.db.put(f"device:{device.device_id}", device)
        return device

    def record_telemetry(
        self,
        device_id: str,
        *,
        battery_level: int | None = None,
        signal_strength: int | None = None,
        status: str | None = None,
    ) -> Device:
        device = self.get(device_id)
        changes: dict = {"last_seen": self.now_fn()}
        if battery_level is not None:
            if not 0 <= battery_level <= 100:
                raise ValidationError(
                    "battery_level must be between 0 and 100"
                )
            changes["battery_level"] = battery_level
        if signal_strength is not None:
            changes["signal_strength"] = signal_strength

        if status is not None:
            try:
                new_status = DeviceStatus(status)
            except ValueError:
                raise ValidationError(
                    f"Unknown device status '{status}'"
                ) from None
        elif device.status == DeviceStatus.OFFLINE:
            # a heartbeat means it is back
            new_status = DeviceStatus.ONLINE
        else:
            new_status = device.status

        level = changes.get("battery_level", device.battery_level)
        if new_status != DeviceStatus.OFFLINE and level is not None:
            if level < self.low_battery_threshold:
                new_status = DeviceStatus.LOW_BATTERY
            elif new_status == DeviceStatus.LOW_BATTERY:
                new_status = DeviceStatus.ONLINE
        changes["status"] = new_status

        device = device.model_copy(update=changes)
        self.db.put(f"device:{device.device_id}", device)
        if new_status == DeviceStatus.LOW_BATTERY:
            logger.warning("Device %s battery low (%s%%)", device_id, level)
        return device
