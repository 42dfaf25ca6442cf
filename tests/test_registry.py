import pytest

from crewcall.database import InMemoryKeyValueDatabase, opened
from crewcall.devices import normalize_type
from crewcall.errors import NotFoundError, PersistenceError, ValidationError
from crewcall.lifecycle import ServiceTrigger
from crewcall.models import DeviceStatus, DeviceType, DutyStatus
from crewcall.shifts import COLOR_PALETTE, ShiftPlanner, shift_color


# --- device types -----------------------------------------------------------


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("watch", DeviceType.WATCH),
        ("wearable", DeviceType.WATCH),
        (" Wearable ", DeviceType.WATCH),
        ("SMART_BUTTON", DeviceType.SMART_BUTTON),
        ("repeater", DeviceType.REPEATER),
        ("mobile_app", DeviceType.MOBILE_APP),
    ],
)
def test_normalize_type_is_idempotent(raw, expected):
    once = normalize_type(raw)
    assert once == expected
    assert normalize_type(once) == once
    assert normalize_type(str(once)) == once


@pytest.mark.parametrize("raw", ["toaster", "", "smart-button", "watches"])
def test_normalize_type_rejects_unknown(raw):
    with pytest.raises(ValidationError):
        normalize_type(raw)


# --- devices ----------------------------------------------------------------


def test_register_stores_canonical_type(devices):
    device = devices.register("TWATCH-01", "wearable", sub_type="esp32")
    assert device.type == DeviceType.WATCH
    assert devices.get("TWATCH-01").type == DeviceType.WATCH

    with pytest.raises(ValidationError):
        devices.register("TWATCH-01", "watch")
    with pytest.raises(ValidationError):
        devices.register("BAD-01", "pager")
    assert devices.find("BAD-01") is None


def test_bind_is_last_write_wins(devices, directory):
    anna = directory.add("Anna Berg", "Interior", "Stewardess")
    tom = directory.add("Tom Hale", "Deck", "Deckhand")
    devices.register("TWATCH-01", "watch", crew_member_id=anna.id)

    rebound = devices.bind("TWATCH-01", tom.id)

    assert rebound.crew_member_id == tom.id
    assert devices.devices_for_crew(anna.id) == []
    assert [d.device_id for d in devices.devices_for_crew(tom.id)] == [
        "TWATCH-01"
    ]

    assert devices.unbind("TWATCH-01").crew_member_id is None


def test_bind_unknown_targets(devices, directory):
    anna = directory.add("Anna Berg", "Interior", "Stewardess")
    devices.register("TWATCH-01", "watch")
    with pytest.raises(NotFoundError):
        devices.bind("TWATCH-01", "ghost")
    with pytest.raises(NotFoundError):
        devices.bind("TWATCH-99", anna.id)
    with pytest.raises(NotFoundError):
        devices.bind_location("TWATCH-01", "nowhere")


def test_telemetry_tracks_battery_and_heartbeat(devices, clock):
    devices.register("BTN001", "smart_button")

    clock.advance(minutes=5)
    device = devices.record_telemetry(
        "BTN001", battery_level=15, signal_strength=-60
    )
    assert device.status == DeviceStatus.LOW_BATTERY
    assert device.last_seen == clock.now

    device = devices.record_telemetry("BTN001", battery_level=95)
    assert device.status == DeviceStatus.ONLINE

    device = devices.record_telemetry("BTN001", status="offline")
    assert device.status == DeviceStatus.OFFLINE
    assert not device.reachable

    with pytest.raises(ValidationError):
        devices.record_telemetry("BTN001", battery_level=140)
    with pytest.raises(ValidationError):
        devices.record_telemetry("BTN001", status="asleep")


def test_list_devices_by_type(devices):
    devices.register("BTN001", "smart_button")
    devices.register("TWATCH-01", "wearable")
    watches = devices.list_devices("watch")
    assert [d.device_id for d in watches] == ["TWATCH-01"]


# --- crew directory ---------------------------------------------------------


@pytest.mark.parametrize(
    "legacy", ["on_duty", "off_duty", "on_leave", "ON-DUTY", "active"]
)
def test_set_duty_status_rejects_non_canonical(directory, legacy):
    crew = directory.add("Anna Berg", "Interior", "Stewardess")
    with pytest.raises(ValidationError):
        directory.set_duty_status(crew.id, legacy)
    assert directory.get(crew.id).status == DutyStatus.OFF_DUTY


def test_set_duty_status_accepts_hyphenated(directory, clock):
    crew = directory.add("Anna Berg", "Interior", "Stewardess")
    clock.advance(minutes=1)
    crew = directory.set_duty_status(crew.id, "on-leave")
    assert crew.status == DutyStatus.ON_LEAVE
    assert crew.updated_at > crew.created_at

    with pytest.raises(NotFoundError):
        directory.set_duty_status("ghost", "on-duty")


def test_on_duty_listing(directory):
    directory.add("Anna Berg", "Interior", "Stewardess", "on-duty")
    directory.add("Tom Hale", "Deck", "Deckhand", "on-duty")
    directory.add("Nina Holt", "Interior", "Stewardess", "off-duty")
    assert [c.name for c in directory.on_duty()] == ["Anna Berg", "Tom Hale"]
    assert [c.name for c in directory.on_duty("Interior")] == ["Anna Berg"]


def test_user_link_is_one_to_one(directory):
    user = directory.add_user("anna")
    anna = directory.add(
        "Anna Berg", "Interior", "Stewardess", user_id=user.id
    )
    tom = directory.add("Tom Hale", "Deck", "Deckhand")

    with pytest.raises(ValidationError):
        directory.link_user(tom.id, user.id)
    assert directory.get(anna.id).user_id == user.id

    with pytest.raises(ValidationError):
        directory.add_user("anna")
    with pytest.raises(ValidationError):
        directory.add_user("bosun", role="captain")


def test_remove_refused_while_assigned(
    directory, lifecycle, master_bedroom, stewardess
):
    req = lifecycle.create(ServiceTrigger(location_id="master-bedroom"))
    lifecycle.accept(req.id, stewardess.id)

    with pytest.raises(ValidationError):
        directory.remove(stewardess.id)

    lifecycle.complete(req.id, stewardess.id)
    directory.remove(stewardess.id)
    with pytest.raises(NotFoundError):
        directory.get(stewardess.id)


def test_remove_unbinds_devices(directory, devices):
    anna = directory.add("Anna Berg", "Interior", "Stewardess", "on-duty")
    devices.register("TWATCH-01", "watch", crew_member_id=anna.id)
    devices.register("PHONE-01", "mobile_app", crew_member_id=anna.id)
    devices.register("TWATCH-02", "watch")

    directory.remove(anna.id)

    assert devices.devices_for_crew(anna.id) == []
    assert devices.get("TWATCH-01").crew_member_id is None
    assert devices.get("PHONE-01").crew_member_id is None
    assert [d.device_id for d in devices.list_devices()] == [
        "PHONE-01",
        "TWATCH-01",
        "TWATCH-02",
    ]


# --- locations --------------------------------------------------------------


def test_location_names_are_unique(locations):
    locations.add("Sun Deck", "deck")
    with pytest.raises(ValidationError):
        locations.add("sun deck", "deck")


def test_button_maps_to_one_location(locations):
    salon = locations.add("Main Salon", "common", smart_button_id="BTN010")
    deck = locations.add("Sun Deck", "deck")

    with pytest.raises(ValidationError):
        locations.assign_button(deck.id, "BTN010")

    salon = locations.assign_button(salon.id, "BTN011")
    deck = locations.assign_button(deck.id, "BTN010")
    assert locations.find_by_button("BTN010").id == deck.id
    assert locations.find_by_button("BTN011").id == salon.id


# --- shifts -----------------------------------------------------------------


def test_shift_colors_cycle_through_palette(db):
    planner = ShiftPlanner(db)
    shifts = [planner.add(f"Shift {i}", "08:00", "16:00") for i in range(17)]

    assert [s.color for s in shifts[:16]] == COLOR_PALETTE
    assert shifts[16].color == COLOR_PALETTE[0]
    assert len({s.color for s in shifts[:16]}) == 16
    assert [s.name for s in planner.list_shifts()] == [s.name for s in shifts]
    assert shift_color(33) == COLOR_PALETTE[1]


def test_shift_validation(db):
    planner = ShiftPlanner(db)
    night = planner.add(
        "Night", "22:00", "06:00", primary_count=1, backup_count=1
    )
    assert night.end_time == "06:00"

    for args in [
        ("Bad", "8am", "16:00"),
        ("Bad", "24:00", "06:00"),
        ("Bad", "08:00", "08:00"),
        ("", "08:00", "16:00"),
    ]:
        with pytest.raises(ValidationError):
            planner.add(*args)
    with pytest.raises(ValidationError):
        planner.add("Bad", "08:00", "16:00", primary_count=0)
    with pytest.raises(ValidationError):
        planner.add("Bad", "08:00", "16:00", backup_count=-1)


# --- store ------------------------------------------------------------------


def test_closed_store_raises_persistence_error(directory):
    db: InMemoryKeyValueDatabase = directory.db
    db.close()
    with pytest.raises(PersistenceError):
        directory.add("Anna Berg", "Interior", "Stewardess")
    db.open()
    directory.add("Anna Berg", "Interior", "Stewardess")


def test_opened_context_closes_on_error():
    db = InMemoryKeyValueDatabase()
    with pytest.raises(RuntimeError):
        with opened(db):
            db.put("k", "v")
            raise RuntimeError("boom")
    assert not db.is_open
