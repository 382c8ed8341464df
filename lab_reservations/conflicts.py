# conflicts.py
import logging
from datetime import datetime
from typing import Iterable, Optional

from databases import Database

from lab_reservations.data_models import BLOCKING_STATUSES, ReservationStatus
from lab_reservations.database import database as default_database
from lab_reservations.errors import ValidationError
from lab_reservations.models import reservations

logger = logging.getLogger(__name__)


def overlaps(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """Half-open interval overlap: [a) and [b) share an instant.

    Intervals that only touch (one ends exactly when the other starts) do not overlap.
    """
    return start_a < end_b and start_b < end_a


def validate_interval(start_date: datetime, end_date: datetime) -> None:
    if start_date is None or end_date is None:
        raise ValidationError("Start date and end date are required")
    if start_date >= end_date:
        raise ValidationError("End date must be after start date")


class ConflictChecker:
    """Finds reservations that already hold a piece of equipment."""

    def __init__(self, db: Optional[Database] = None,
                 blocking_statuses: Iterable[ReservationStatus] = BLOCKING_STATUSES):
        self.db = db or default_database
        self.blocking_statuses = frozenset(ReservationStatus(s) for s in blocking_statuses)

    async def find_conflict(self, equipment_id: int, start_date: datetime, end_date: datetime,
                            exclude_reservation_id: Optional[int] = None):
        """Returns the first blocking reservation overlapping the interval, or None."""
        validate_interval(start_date, end_date)

        query = reservations.select().where(
            reservations.c.equipment_id == equipment_id,
            reservations.c.status.in_([s.value for s in self.blocking_statuses]),
        )
        if exclude_reservation_id is not None:
            query = query.where(reservations.c.id != exclude_reservation_id)

        for booking in await self.db.fetch_all(query):
            if overlaps(start_date, end_date, booking["start_date"], booking["end_date"]):
                logger.debug(
                    "Equipment %s: [%s, %s) overlaps reservation %s (%s)",
                    equipment_id, start_date, end_date, booking["id"], booking["status"],
                )
                return booking
        return None

    async def has_conflict(self, equipment_id: int, start_date: datetime, end_date: datetime,
                           exclude_reservation_id: Optional[int] = None) -> bool:
        conflict = await self.find_conflict(equipment_id, start_date, end_date, exclude_reservation_id)
        return conflict is not None
