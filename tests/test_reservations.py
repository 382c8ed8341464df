"""
Tests for reservation creation and administrator status transitions.
"""

from datetime import datetime, timedelta, timezone

import pytest

from conftest import RecordingEmailSender, add_equipment, add_team, add_user
from lab_reservations.data_models import ReservationStatus
from lab_reservations.database import database
from lab_reservations.errors import (
    ConflictError,
    Forbidden,
    InvalidStatus,
    InvalidTransition,
    NotFound,
    Unauthorized,
    ValidationError,
)
from lab_reservations.models import notifications, reservations
from lab_reservations.notifications import NotificationDispatcher
from lab_reservations.reservations import ReservationService, ReservationStateMachine


def feb(day_of_month):
    return datetime(2025, 2, day_of_month, 9, 0)


class Inbox:
    def __init__(self):
        self.received = []

    def __call__(self, envelope):
        self.received.append(envelope)

    def of_type(self, type):
        return [envelope for envelope in self.received if envelope["type"] == type]


@pytest.fixture
def service(db, registry, dispatcher):
    return ReservationService(registry, dispatcher, db)


@pytest.fixture
def state_machine(db, registry, dispatcher):
    return ReservationStateMachine(registry, dispatcher, db, strict=False)


async def reservation_notifications(user_id):
    query = notifications.select().where(
        notifications.c.user_id == user_id,
        notifications.c.type == "RESERVATION_UPDATE",
    )
    return await database.fetch_all(query)


class TestCreateReservation:

    async def test_creates_pending_reservation(self, service, researcher):
        equipment_id = await add_equipment("Oscilloscope")
        reservation = await service.create(researcher, equipment_id, feb(10), feb(12), notes="calibration run")

        assert reservation["status"] == "PENDING"
        assert reservation["user_id"] == researcher.id
        assert reservation["team_id"] is None
        assert reservation["notes"] == "calibration run"
        assert reservation["equipment"]["name"] == "Oscilloscope"
        assert reservation["user"]["username"] == "researcher"
        assert "hashed_password" not in reservation["user"]

    async def test_overlap_conflicts_touching_does_not(self, service, researcher):
        equipment_id = await add_equipment()
        await service.create(researcher, equipment_id, feb(10), feb(12))

        with pytest.raises(ConflictError) as excinfo:
            await service.create(researcher, equipment_id, feb(11), feb(13))
        assert excinfo.value.conflicting_reservation_id is not None

        touching = await service.create(researcher, equipment_id, feb(12), feb(14))
        assert touching["status"] == "PENDING"

    async def test_rejected_reservation_frees_the_slot(self, service, state_machine, researcher, admin):
        equipment_id = await add_equipment()
        first = await service.create(researcher, equipment_id, feb(10), feb(12))
        await state_machine.transition(first["id"], "REJECTED", admin)

        second = await service.create(researcher, equipment_id, feb(10), feb(12))
        assert second["id"] != first["id"]

    async def test_offset_instants_are_stored_as_utc(self, service, researcher):
        equipment_id = await add_equipment()
        plus_two = timezone(timedelta(hours=2))
        reservation = await service.create(
            researcher, equipment_id,
            datetime(2025, 2, 10, 11, 0, tzinfo=plus_two),
            datetime(2025, 2, 10, 13, 0, tzinfo=plus_two),
        )
        assert reservation["start_date"] == datetime(2025, 2, 10, 9, 0)
        assert reservation["end_date"] == datetime(2025, 2, 10, 11, 0)

    @pytest.mark.parametrize("start, end", [(12, 10), (10, 10)])
    async def test_invalid_interval(self, service, researcher, start, end):
        equipment_id = await add_equipment()
        with pytest.raises(ValidationError):
            await service.create(researcher, equipment_id, feb(start), feb(end))

    async def test_unknown_equipment(self, service, researcher):
        with pytest.raises(NotFound):
            await service.create(researcher, 999, feb(10), feb(12))

    @pytest.mark.parametrize("status, availability", [
        ("MAINTENANCE", True),
        ("IN_USE", True),
        ("AVAILABLE", False),
    ])
    async def test_unavailable_equipment(self, service, researcher, status, availability):
        equipment_id = await add_equipment(status=status, availability=availability)
        with pytest.raises(ValidationError):
            await service.create(researcher, equipment_id, feb(10), feb(12))

    async def test_creation_notice_and_broadcast(self, service, registry, researcher):
        inbox = Inbox()
        await registry.add_client("admin", inbox)
        equipment_id = await add_equipment("Oscilloscope")

        reservation = await service.create(researcher, equipment_id, feb(10), feb(12))

        created = inbox.of_type("reservationCreated")
        assert len(created) == 1
        assert created[0]["reservation"]["id"] == reservation["id"]
        assert created[0]["reservation"]["start_date"] == "2025-02-10T09:00:00"

        rows = await database.fetch_all(notifications.select().where(notifications.c.user_id == researcher.id))
        assert [row["title"] for row in rows] == ["New Reservation Request"]

    async def test_team_reservation(self, service, researcher):
        leader = await add_user("leader")
        team_id = await add_team("Research Team Alpha", leader, members=[researcher])
        equipment_id = await add_equipment()

        reservation = await service.create(researcher, equipment_id, feb(10), feb(12), team_id=team_id)
        assert reservation["user_id"] is None
        assert reservation["team_id"] == team_id
        assert reservation["team"]["leader"]["username"] == "leader"

        mine = await service.repository.list(user=researcher)
        assert [r["id"] for r in mine] == [reservation["id"]]

    async def test_team_reservation_requires_membership(self, service, researcher):
        leader = await add_user("leader")
        team_id = await add_team("Research Team Alpha", leader)
        equipment_id = await add_equipment()
        with pytest.raises(Forbidden):
            await service.create(researcher, equipment_id, feb(10), feb(12), team_id=team_id)

    async def test_unknown_team(self, service, researcher):
        equipment_id = await add_equipment()
        with pytest.raises(NotFound):
            await service.create(researcher, equipment_id, feb(10), feb(12), team_id=42)


class TestTransition:

    async def make_reservation(self, service, researcher, start=10, end=12, equipment_id=None):
        if equipment_id is None:
            equipment_id = await add_equipment("Oscilloscope")
        return await service.create(researcher, equipment_id, feb(start), feb(end))

    async def test_approve(self, service, state_machine, registry, researcher, admin, email_sender):
        inbox = Inbox()
        await registry.add_client("admin", inbox)
        reservation = await self.make_reservation(service, researcher)

        updated = await state_machine.transition(reservation["id"], "APPROVED", admin)

        assert updated["status"] == "APPROVED"
        assert updated["updated_at"] >= reservation["updated_at"]
        assert updated["equipment"]["name"] == "Oscilloscope"
        assert updated["user"]["email"] == researcher.email

        stored = await database.fetch_one(reservations.select().where(reservations.c.id == reservation["id"]))
        assert stored["status"] == "APPROVED"

        rows = await reservation_notifications(researcher.id)
        assert len(rows) == 1
        assert rows[0]["title"] == "Reservation Approved"
        assert email_sender.sent[0]["subject"] == "Reservation Approved"

        updates = inbox.of_type("reservationUpdate")
        assert len(updates) == 1
        assert updates[0]["reservation"]["status"] == "APPROVED"

    async def test_email_failure_does_not_fail_transition(self, db, service, registry, researcher, admin):
        inbox = Inbox()
        await registry.add_client("admin", inbox)
        dispatcher = NotificationDispatcher(db, email_sender=RecordingEmailSender(fail=True))
        state_machine = ReservationStateMachine(registry, dispatcher, db)
        reservation = await self.make_reservation(service, researcher)

        updated = await state_machine.transition(reservation["id"], ReservationStatus.APPROVED, admin)

        assert updated["status"] == "APPROVED"
        assert len(await reservation_notifications(researcher.id)) == 1
        assert len(inbox.of_type("reservationUpdate")) == 1

    async def test_broadcast_failure_does_not_fail_transition(self, service, state_machine, registry,
                                                              researcher, admin):
        def broken(envelope):
            raise BrokenPipeError("stream closed")

        await registry.add_client("admin", broken)
        reservation = await self.make_reservation(service, researcher)
        updated = await state_machine.transition(reservation["id"], "REJECTED", admin)
        assert updated["status"] == "REJECTED"

    async def test_repeated_approval_notifies_each_time(self, service, state_machine, registry,
                                                        researcher, admin):
        inbox = Inbox()
        await registry.add_client("admin", inbox)
        reservation = await self.make_reservation(service, researcher)

        await state_machine.transition(reservation["id"], "APPROVED", admin)
        await state_machine.transition(reservation["id"], "APPROVED", admin)

        assert len(await reservation_notifications(researcher.id)) == 2
        assert len(inbox.of_type("reservationUpdate")) == 2

    async def test_full_lifecycle(self, service, state_machine, researcher, admin):
        reservation = await self.make_reservation(service, researcher)
        for status in ("APPROVED", "ONGOING", "FINISHED"):
            updated = await state_machine.transition(reservation["id"], status, admin)
            assert updated["status"] == status
        titles = [row["title"] for row in await reservation_notifications(researcher.id)]
        assert titles == ["Reservation Approved", "Reservation Started", "Reservation Completed"]

    async def test_non_admin_rejected(self, service, state_machine, researcher):
        reservation = await self.make_reservation(service, researcher)
        with pytest.raises(Unauthorized):
            await state_machine.transition(reservation["id"], "APPROVED", researcher)
        with pytest.raises(Unauthorized):
            await state_machine.transition(reservation["id"], "APPROVED", None)

    async def test_invalid_status(self, service, state_machine, researcher, admin):
        reservation = await self.make_reservation(service, researcher)
        with pytest.raises(InvalidStatus):
            await state_machine.transition(reservation["id"], "CANCELLED", admin)

    async def test_not_found(self, state_machine, admin):
        with pytest.raises(NotFound):
            await state_machine.transition(12345, "APPROVED", admin)

    async def test_admin_may_reopen_when_not_strict(self, service, state_machine, researcher, admin):
        reservation = await self.make_reservation(service, researcher)
        await state_machine.transition(reservation["id"], "REJECTED", admin)
        updated = await state_machine.transition(reservation["id"], "PENDING", admin)
        assert updated["status"] == "PENDING"

    async def test_strict_mode_enforces_table(self, db, service, registry, dispatcher, researcher, admin):
        strict = ReservationStateMachine(registry, dispatcher, db, strict=True)
        reservation = await self.make_reservation(service, researcher)

        with pytest.raises(InvalidTransition):
            await strict.transition(reservation["id"], "FINISHED", admin)

        await strict.transition(reservation["id"], "APPROVED", admin)
        await strict.transition(reservation["id"], "APPROVED", admin)
        await strict.transition(reservation["id"], "ONGOING", admin)
        await strict.transition(reservation["id"], "FINISHED", admin)
        with pytest.raises(InvalidTransition):
            await strict.transition(reservation["id"], "PENDING", admin)

    async def test_approval_rechecks_conflicts(self, service, state_machine, researcher, admin):
        equipment_id = await add_equipment()
        first = await self.make_reservation(service, researcher, 10, 12, equipment_id=equipment_id)
        await state_machine.transition(first["id"], "REJECTED", admin)
        second = await self.make_reservation(service, researcher, 11, 13, equipment_id=equipment_id)
        await state_machine.transition(second["id"], "APPROVED", admin)

        with pytest.raises(ConflictError):
            await state_machine.transition(first["id"], "APPROVED", admin)

        stored = await database.fetch_one(reservations.select().where(reservations.c.id == first["id"]))
        assert stored["status"] == "REJECTED"

    async def test_reopen_rechecks_conflicts(self, service, state_machine, researcher, admin):
        equipment_id = await add_equipment()
        first = await self.make_reservation(service, researcher, 10, 12, equipment_id=equipment_id)
        await state_machine.transition(first["id"], "REJECTED", admin)
        second = await self.make_reservation(service, researcher, 11, 13, equipment_id=equipment_id)

        with pytest.raises(ConflictError) as excinfo:
            await state_machine.transition(first["id"], "PENDING", admin)
        assert excinfo.value.conflicting_reservation_id == second["id"]

        stored = await database.fetch_one(reservations.select().where(reservations.c.id == first["id"]))
        assert stored["status"] == "REJECTED"

    async def test_team_leader_is_notified(self, service, state_machine, researcher, admin, email_sender):
        leader = await add_user("leader", email="leader@lab.local")
        team_id = await add_team("Research Team Alpha", leader, members=[researcher])
        equipment_id = await add_equipment()
        reservation = await service.create(researcher, equipment_id, feb(10), feb(12), team_id=team_id)

        await state_machine.transition(reservation["id"], "APPROVED", admin)

        assert len(await reservation_notifications(leader.id)) == 1
        assert email_sender.sent[-1]["to"] == "leader@lab.local"
