from unittest.mock import AsyncMock

import pytest

from crewcall.dispatcher import (
    AlertMode,
    NotificationDispatcher,
    build_payload,
)
from crewcall.errors import UnreachableRecipientWarning, ValidationError
from crewcall.lifecycle import ServiceTrigger


@pytest.fixture
def deliver() -> AsyncMock:
    return AsyncMock(return_value=None)


@pytest.fixture
def dispatcher(db, deliver) -> NotificationDispatcher:
    return NotificationDispatcher(db, deliver=deliver)


@pytest.fixture
def crew_with_watches(directory, devices):
    """Three on-duty interior crew; only the first two wear a watch."""
    members = []
    names = ["Anna Berg", "Sophie Martin", "Tom Hale"]
    for i, name in enumerate(names, start=1):
        user = directory.add_user(f"user{i}")
        members.append(
            directory.add(
                name, "Interior", "Stewardess", "on-duty", user_id=user.id
            )
        )
    devices.register("WATCH-1", "watch", crew_member_id=members[0].id)
    devices.register("WATCH-2", "wearable", crew_member_id=members[1].id)
    return members


def _request(lifecycle, priority="normal", message=None):
    return lifecycle.create(
        ServiceTrigger(
            location_id="master-bedroom",
            request_type="service",
            priority=priority,
            message=message,
        )
    )


@pytest.mark.asyncio
async def test_missing_device_skips_one_and_delivers_rest(
    dispatcher, deliver, lifecycle, master_bedroom, crew_with_watches
):
    req = _request(lifecycle)

    report = await dispatcher.dispatch(req, crew_with_watches)

    assert deliver.await_count == 2
    delivered = sorted(args[0] for args, _ in deliver.await_args_list)
    assert delivered == ["WATCH-1", "WATCH-2"]
    assert len(report.warnings) == 1
    warning = report.warnings[0]
    assert isinstance(warning, UnreachableRecipientWarning)
    assert warning.crew_member_id == crew_with_watches[2].id
    assert report.any_delivered


@pytest.mark.asyncio
async def test_crew_without_user_account_is_skipped(
    dispatcher, deliver, lifecycle, master_bedroom, directory, devices
):
    loner = directory.add("Max Vogel", "Interior", "Steward", "on-duty")
    devices.register("WATCH-9", "watch", crew_member_id=loner.id)
    req = _request(lifecycle)

    report = await dispatcher.dispatch(req, [loner])

    deliver.assert_not_awaited()
    assert [w.reason for w in report.warnings] == ["no linked user account"]
    assert not report.any_delivered


@pytest.mark.asyncio
async def test_channel_failure_does_not_block_others(
    db, lifecycle, master_bedroom, crew_with_watches
):
    async def flaky(device_id, payload):
        if device_id == "WATCH-1":
            raise ConnectionError("gateway timeout")

    dispatcher = NotificationDispatcher(db, deliver=flaky)
    req = _request(lifecycle)

    report = await dispatcher.dispatch(req, crew_with_watches[:2])

    assert report.delivered == ["WATCH-2"]
    assert report.failures == {"WATCH-1": "gateway timeout"}
    assert report.warnings == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "priority, mode",
    [
        ("low", AlertMode.PASSIVE),
        ("normal", AlertMode.PASSIVE),
        ("urgent", AlertMode.SUSTAINED),
        ("emergency", AlertMode.SUSTAINED),
    ],
)
async def test_alert_mode_follows_priority(
    dispatcher,
    deliver,
    lifecycle,
    master_bedroom,
    crew_with_watches,
    priority,
    mode,
):
    req = _request(lifecycle, priority=priority, message="Champagne please")

    await dispatcher.dispatch(req, crew_with_watches[:1])

    (device_id, payload), _ = deliver.await_args
    assert device_id == "WATCH-1"
    assert payload == {
        "requestId": req.id,
        "priority": priority,
        "requestType": "service",
        "message": "Champagne please",
        "locationName": "Master Bedroom",
        "guestName": "Guest",
        "alertMode": str(mode),
    }


def test_payload_has_default_message(lifecycle, master_bedroom):
    req = _request(lifecycle)
    assert build_payload(req)["message"] == (
        "Guest needs assistance at Master Bedroom"
    )


def test_resolve_recipients_filters(
    dispatcher,
    directory,
    devices,
    locations,
    master_bedroom,
    crew_with_watches,
):
    anna, sophie, tom = crew_with_watches
    names = [c.name for c in dispatcher.resolve_recipients("master-bedroom")]
    assert names == ["Anna Berg", "Sophie Martin"]

    directory.set_duty_status(anna.id, "off-duty")
    devices.record_telemetry("WATCH-2", status="offline")
    assert dispatcher.resolve_recipients("master-bedroom") == []

    devices.record_telemetry("WATCH-2", battery_level=80)
    assert [c.id for c in dispatcher.resolve_recipients(None)] == [sophie.id]
    assert dispatcher.resolve_recipients(None, exclude=[sophie.id]) == []


def test_resolve_recipients_honours_location_department(
    dispatcher, directory, devices, locations, crew_with_watches
):
    galley = locations.add("Galley", "service", department="Galley")
    chef_user = directory.add_user("chef")
    chef = directory.add(
        "Luca Rossi", "Galley", "Chef", "on-duty", user_id=chef_user.id
    )
    devices.register("WATCH-C", "watch", crew_member_id=chef.id)

    recipients = dispatcher.resolve_recipients(galley.id)
    assert [c.id for c in recipients] == [chef.id]


def test_duty_status_change_is_reflected_in_recipients(
    dispatcher, directory, devices, master_bedroom
):
    user = directory.add_user("nina")
    nina = directory.add(
        "Nina Holt", "Interior", "Stewardess", user_id=user.id
    )
    devices.register("WATCH-N", "watch", crew_member_id=nina.id)
    assert dispatcher.resolve_recipients("master-bedroom") == []

    with pytest.raises(ValidationError):
        directory.set_duty_status(nina.id, "on_duty")
    assert dispatcher.resolve_recipients("master-bedroom") == []

    directory.set_duty_status(nina.id, "on-duty")
    recipients = dispatcher.resolve_recipients("master-bedroom")
    assert [c.id for c in recipients] == [nina.id]


@pytest.mark.asyncio
async def test_dispatch_request_skips_decliners(
    dispatcher, deliver, lifecycle, master_bedroom, crew_with_watches
):
    anna = crew_with_watches[0]
    req = _request(lifecycle)
    req = lifecycle.decline(req.id, anna.id)

    report = await dispatcher.dispatch_request(req)

    assert report.delivered == ["WATCH-2"]
