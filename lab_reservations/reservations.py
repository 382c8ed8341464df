# reservations.py
import asyncio
import logging
from datetime import datetime
from typing import List, Optional

import sqlalchemy
from databases import Database

from lab_reservations import config
from lab_reservations.auth import User
from lab_reservations.broadcast import BroadcastRegistry
from lab_reservations.conflicts import ConflictChecker, validate_interval
from lab_reservations.data_models import (
    ALLOWED_TRANSITIONS,
    EquipmentStatus,
    NotificationType,
    ReservationStatus,
    serialize,
    to_utc,
    utcnow,
)
from lab_reservations.database import database as default_database
from lab_reservations.errors import (
    ConflictError,
    Forbidden,
    InvalidStatus,
    InvalidTransition,
    NotFound,
    Unauthorized,
    ValidationError,
)
from lab_reservations.models import as_dict, equipment, reservations, team_members, teams, users
from lab_reservations.notifications import NotificationDispatcher

logger = logging.getLogger(__name__)

# Public user fields attached to reservation payloads
USER_FIELDS = ("id", "username", "full_name", "email")


def parse_status(value) -> ReservationStatus:
    try:
        return ReservationStatus(getattr(value, "value", value))
    except ValueError:
        raise InvalidStatus(
            f"Invalid status value '{value}'. Expected one of: "
            + ", ".join(s.value for s in ReservationStatus)
        )


class ReservationRepository:
    """Reads reservations together with their equipment and requester."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or default_database

    async def get(self, reservation_id: int):
        query = reservations.select().where(reservations.c.id == reservation_id)
        return await self.db.fetch_one(query)

    async def _user(self, user_id: Optional[int]) -> Optional[dict]:
        if user_id is None:
            return None
        record = await self.db.fetch_one(users.select().where(users.c.id == user_id))
        if record is None:
            return None
        return {field: record[field] for field in USER_FIELDS}

    async def _team(self, team_id: Optional[int]) -> Optional[dict]:
        if team_id is None:
            return None
        record = await self.db.fetch_one(teams.select().where(teams.c.id == team_id))
        if record is None:
            return None
        return {
            "id": record["id"],
            "team_name": record["team_name"],
            "leader": await self._user(record["leader_id"]),
        }

    async def with_details(self, record) -> dict:
        """Resolve the equipment and requester (user or team) of a reservation row."""
        reservation = as_dict(record, reservations)
        equipment_record = await self.db.fetch_one(
            equipment.select().where(equipment.c.id == reservation["equipment_id"])
        )
        reservation["equipment"] = as_dict(equipment_record, equipment) if equipment_record else None
        reservation["user"] = await self._user(reservation["user_id"])
        reservation["team"] = await self._team(reservation["team_id"])
        return reservation

    async def get_with_details(self, reservation_id: int) -> Optional[dict]:
        record = await self.get(reservation_id)
        if record is None:
            return None
        return await self.with_details(record)

    def _conditions(self, statuses=None, user: Optional[User] = None, search: Optional[str] = None) -> list:
        conditions = []
        if statuses:
            conditions.append(reservations.c.status.in_([parse_status(s).value for s in statuses]))
        if user is not None:
            member_of = sqlalchemy.select(team_members.c.team_id).where(team_members.c.user_id == user.id)
            led = sqlalchemy.select(teams.c.id).where(teams.c.leader_id == user.id)
            conditions.append(sqlalchemy.or_(
                reservations.c.user_id == user.id,
                reservations.c.team_id.in_(member_of),
                reservations.c.team_id.in_(led),
            ))
        if search:
            pattern = f"%{search}%"
            matching_users = sqlalchemy.select(users.c.id).where(sqlalchemy.or_(
                users.c.username.ilike(pattern),
                users.c.full_name.ilike(pattern),
                users.c.email.ilike(pattern),
            ))
            matching_teams = sqlalchemy.select(teams.c.id).where(teams.c.team_name.ilike(pattern))
            matching_equipment = sqlalchemy.select(equipment.c.id).where(equipment.c.name.ilike(pattern))
            conditions.append(sqlalchemy.or_(
                reservations.c.user_id.in_(matching_users),
                reservations.c.team_id.in_(matching_teams),
                reservations.c.equipment_id.in_(matching_equipment),
            ))
        return conditions

    async def list(self, statuses=None, user: Optional[User] = None, search: Optional[str] = None,
                   limit: Optional[int] = None, offset: int = 0) -> List[dict]:
        query = (reservations.select()
                 .where(*self._conditions(statuses, user, search))
                 .order_by(sqlalchemy.desc(reservations.c.created_at), sqlalchemy.desc(reservations.c.id)))
        if limit:
            query = query.limit(limit).offset(offset)
        return [await self.with_details(record) for record in await self.db.fetch_all(query)]

    async def count(self, statuses=None, user: Optional[User] = None, search: Optional[str] = None) -> int:
        query = (sqlalchemy.select(sqlalchemy.func.count())
                 .select_from(reservations)
                 .where(*self._conditions(statuses, user, search)))
        return await self.db.fetch_val(query)

    @staticmethod
    def recipient(reservation: dict) -> Optional[dict]:
        """The person told about changes: the requester, or the team's leader."""
        if reservation.get("user"):
            return reservation["user"]
        if reservation.get("team"):
            return reservation["team"]["leader"]
        return None


class ReservationService:
    """Handles reservation requests submitted by users."""

    def __init__(self, registry: BroadcastRegistry, dispatcher: NotificationDispatcher,
                 db: Optional[Database] = None, checker: Optional[ConflictChecker] = None):
        self.db = db or default_database
        self.registry = registry
        self.dispatcher = dispatcher
        self.checker = checker or ConflictChecker(self.db)
        self.repository = ReservationRepository(self.db)
        # Serializes check-then-insert for this process
        self._booking_lock = asyncio.Lock()

    async def _check_team(self, requester: User, team_id: int) -> None:
        team = await self.db.fetch_one(teams.select().where(teams.c.id == team_id))
        if team is None:
            raise NotFound(f"Team {team_id} not found")
        if team["leader_id"] == requester.id:
            return
        membership = await self.db.fetch_one(team_members.select().where(
            team_members.c.team_id == team_id,
            team_members.c.user_id == requester.id,
        ))
        if membership is None:
            raise Forbidden(f"{requester.username} is not a member of team {team['team_name']}")

    async def create(self, requester: User, equipment_id: int, start_date: datetime, end_date: datetime,
                     notes: Optional[str] = None, team_id: Optional[int] = None) -> dict:
        if requester is None:
            raise Unauthorized("Not authenticated")
        if equipment_id is None or start_date is None or end_date is None:
            raise ValidationError("Equipment ID, start date, and end date are required")
        start_date, end_date = to_utc(start_date), to_utc(end_date)
        validate_interval(start_date, end_date)

        item = await self.db.fetch_one(equipment.select().where(equipment.c.id == equipment_id))
        if item is None:
            raise NotFound(f"Equipment {equipment_id} not found")
        if item["status"] != EquipmentStatus.AVAILABLE.value or not item["availability"]:
            raise ValidationError(
                f"Equipment is not available for reservation (current status: {item['status']})"
            )
        if team_id is not None:
            await self._check_team(requester, team_id)

        async with self._booking_lock:
            conflict = await self.checker.find_conflict(equipment_id, start_date, end_date)
            if conflict is not None:
                raise ConflictError(
                    f"{item['name']} is already reserved from {conflict['start_date'].isoformat()} "
                    f"to {conflict['end_date'].isoformat()}",
                    conflicting_reservation_id=conflict["id"],
                )
            now = utcnow()
            reservation_id = await self.db.execute(reservations.insert().values(
                equipment_id=equipment_id,
                user_id=None if team_id is not None else requester.id,
                team_id=team_id,
                start_date=start_date,
                end_date=end_date,
                status=ReservationStatus.PENDING.value,
                notes=notes or "",
                created_at=now,
                updated_at=now,
            ))

        reservation = await self.repository.get_with_details(reservation_id)
        logger.info("Reservation %s created for equipment %s by %s",
                    reservation_id, equipment_id, requester.username)

        try:
            await self.dispatcher.create_notification(
                requester.id,
                "New Reservation Request",
                f"New reservation request for {item['name']}",
                NotificationType.SYSTEM,
            )
        except Exception:
            logger.warning("Could not record creation notice for reservation %s",
                           reservation_id, exc_info=True)
        try:
            await self.registry.broadcast({"type": "reservationCreated", "reservation": serialize(reservation)})
        except Exception:
            logger.warning("Could not broadcast creation of reservation %s", reservation_id, exc_info=True)

        return reservation


class ReservationStateMachine:
    """Applies administrator status changes to reservations.

    Which status may follow which is left to the administrator: the
    ``ALLOWED_TRANSITIONS`` table is only enforced when ``strict`` is set.
    Moving into any blocking status, a reopen to PENDING included,
    re-checks the interval against the other blocking reservations.
    Notification and broadcast run after the write and can never make
    the transition fail.
    """

    def __init__(self, registry: BroadcastRegistry, dispatcher: NotificationDispatcher,
                 db: Optional[Database] = None, checker: Optional[ConflictChecker] = None,
                 strict: bool = None):
        self.db = db or default_database
        self.registry = registry
        self.dispatcher = dispatcher
        self.checker = checker or ConflictChecker(self.db)
        self.repository = ReservationRepository(self.db)
        self.strict = config.STRICT_TRANSITIONS if strict is None else strict

    def check_transition(self, current: ReservationStatus, new: ReservationStatus) -> None:
        if not self.strict or current == new:
            return
        if new not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransition(f"Cannot move a reservation from {current.value} to {new.value}")

    async def transition(self, reservation_id: int, new_status, actor: Optional[User]) -> dict:
        if actor is None:
            raise Unauthorized("Not authenticated")
        if not actor.is_admin:
            raise Forbidden("Only administrators can change reservation status")
        new_status = parse_status(new_status)

        record = await self.repository.get(reservation_id)
        if record is None:
            raise NotFound(f"Reservation {reservation_id} not found")
        self.check_transition(ReservationStatus(record["status"]), new_status)

        if new_status in self.checker.blocking_statuses:
            conflict = await self.checker.find_conflict(
                record["equipment_id"], record["start_date"], record["end_date"],
                exclude_reservation_id=reservation_id,
            )
            if conflict is not None:
                raise ConflictError(
                    f"Reservation {reservation_id} overlaps reservation {conflict['id']} ({conflict['status']})",
                    conflicting_reservation_id=conflict["id"],
                )

        async with self.db.transaction():
            await self.db.execute(
                reservations.update()
                .where(reservations.c.id == reservation_id)
                .values(status=new_status.value, updated_at=utcnow())
            )
            updated = await self.repository.get_with_details(reservation_id)

        logger.info("Reservation %s: %s -> %s by %s",
                    reservation_id, record["status"], new_status.value, actor.username)
        await self._notify(updated, new_status)
        await self._broadcast(updated)
        return updated

    async def _notify(self, reservation: dict, new_status: ReservationStatus) -> None:
        recipient = self.repository.recipient(reservation)
        if recipient is None:
            logger.warning("Reservation %s has no one to notify", reservation["id"])
            return
        equipment_name = reservation["equipment"]["name"] if reservation["equipment"] else "equipment"
        try:
            result = await self.dispatcher.dispatch(
                recipient["id"], equipment_name, new_status, email=recipient.get("email")
            )
        except Exception:
            logger.error("Notification dispatch for reservation %s failed", reservation["id"], exc_info=True)
            return
        for warning in result.warnings:
            logger.warning("Reservation %s side effect: %s", reservation["id"], warning)

    async def _broadcast(self, reservation: dict) -> None:
        try:
            await self.registry.broadcast({"type": "reservationUpdate", "reservation": serialize(reservation)})
        except Exception:
            logger.error("Broadcast for reservation %s failed", reservation["id"], exc_info=True)
