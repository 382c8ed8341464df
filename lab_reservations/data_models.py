# data_models.py
import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Optional, Union


class ReservationStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    ONGOING = "ONGOING"
    FINISHED = "FINISHED"


class EquipmentStatus(str, enum.Enum):
    AVAILABLE = "AVAILABLE"
    IN_USE = "IN_USE"
    MAINTENANCE = "MAINTENANCE"


class NotificationType(str, enum.Enum):
    RESERVATION_UPDATE = "RESERVATION_UPDATE"
    EQUIPMENT_UPDATE = "EQUIPMENT_UPDATE"
    SYSTEM = "SYSTEM"


# Statuses that hold the equipment for their interval
BLOCKING_STATUSES = frozenset(
    {ReservationStatus.PENDING, ReservationStatus.APPROVED, ReservationStatus.ONGOING}
)

# Reference transition table. Only enforced in strict mode.
ALLOWED_TRANSITIONS = {
    ReservationStatus.PENDING: {ReservationStatus.APPROVED, ReservationStatus.REJECTED},
    ReservationStatus.APPROVED: {ReservationStatus.ONGOING, ReservationStatus.REJECTED},
    ReservationStatus.ONGOING: {ReservationStatus.FINISHED},
    ReservationStatus.REJECTED: set(),
    ReservationStatus.FINISHED: set(),
}

Deliver = Callable[[dict], Union[None, Awaitable[None]]]


def to_utc(value: datetime) -> datetime:
    """Normalize an instant to naive UTC, the form stored in the database."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class BroadcastClient:
    """A live subscriber held by the broadcast registry."""
    client_id: str
    deliver: Deliver
    failures: int = 0


@dataclass
class DispatchResult:
    """Outcome of a best-effort side effect."""
    notification_id: Optional[int] = None
    email_sent: bool = False
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.warnings


def serialize(value: Any) -> Any:
    """Make query results JSON friendly for the event stream."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, dict):
        return {key: serialize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize(item) for item in value]
    return value
