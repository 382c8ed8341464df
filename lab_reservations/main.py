# main.py
from datetime import timedelta, datetime
import fastapi
import logging
import math
import os
from typing import List, Optional
from fastapi import Request, Depends, HTTPException, status, Query, Response
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.security import OAuth2PasswordRequestForm
from pydantic import BaseModel
import sqlalchemy
from lab_reservations.broadcast import BroadcastRegistry
from lab_reservations.config import HEARTBEAT_INTERVAL, configure_logging
from lab_reservations.data_models import EquipmentStatus, ReservationStatus, serialize, to_utc, utcnow
from lab_reservations.database import database, engine, metadata
from lab_reservations.errors import ReservationError
from lab_reservations.models import as_dict, equipment, notifications, users
from lab_reservations.notifications import NotificationDispatcher
from lab_reservations.reservations import ReservationService, ReservationStateMachine
from lab_reservations.streaming import SSE_HEADERS, StreamingEndpoint
from lab_reservations.auth import (
    User,
    Token,
    UserCreate,
    ADMIN_ROLE,
    pwd_context,
    verify_password,
    create_access_token,
    ACCESS_TOKEN_EXPIRE_MINUTES,
    get_current_active_user,
    get_current_admin,
    get_stream_user,
    create_user,
)

logger = logging.getLogger(__name__)

#FastAPI Setup
app = fastapi.FastAPI(title="Lab Equipment Reservations")

# Statuses shown to admins when a live stream opens
ACTIVE_STATUSES = [ReservationStatus.PENDING, ReservationStatus.APPROVED, ReservationStatus.ONGOING]


# Request Models
class EquipmentCreate(BaseModel):
    name: str
    description: Optional[str] = None
    location: Optional[str] = None
    availability: bool = True
    status: EquipmentStatus = EquipmentStatus.AVAILABLE

class EquipmentUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    availability: Optional[bool] = None
    status: Optional[EquipmentStatus] = None

class ReservationCreate(BaseModel):
    equipment_id: int
    start_date: datetime
    end_date: datetime
    notes: Optional[str] = None
    team_id: Optional[int] = None

class StatusUpdate(BaseModel):
    # Plain string so unknown values reach the state machine and fail as InvalidStatus
    status: str

class ConflictCheck(BaseModel):
    equipment_id: int
    start_date: datetime
    end_date: datetime
    exclude_id: Optional[int] = None

class MarkAsRead(BaseModel):
    notification_ids: List[int]


# Dependencies: one registry and one set of services per process, built at startup
def get_registry(request: Request) -> BroadcastRegistry:
    return request.app.state.registry

def get_reservation_service(request: Request) -> ReservationService:
    return request.app.state.reservation_service

def get_state_machine(request: Request) -> ReservationStateMachine:
    return request.app.state.state_machine


@app.exception_handler(ReservationError)
async def reservation_error_handler(request: Request, exc: ReservationError):
    content = {"detail": exc.message}
    if getattr(exc, "conflicting_reservation_id", None) is not None:
        content["conflicting_reservation_id"] = exc.conflicting_reservation_id
    return JSONResponse(status_code=exc.status_code, content=content)


#  Authentication Endpoints
@app.post("/token", response_model=Token)
async def login_for_access_token(response: Response, form_data: OAuth2PasswordRequestForm = Depends()):
    query = users.select().where(users.c.username == form_data.username)
    user_record = await database.fetch_one(query)
    if not user_record or not verify_password(form_data.password, user_record['hashed_password']):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    access_token_expires = timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    access_token = create_access_token(
        data={"sub": user_record['username']}, expires_delta=access_token_expires
    )

    # The cookie lets EventSource connections authenticate
    response.set_cookie(
        key="access_token",
        value=access_token,
        httponly=True,
        samesite="lax",
    )
    return {"access_token": access_token, "token_type": "bearer"}

@app.post("/register", status_code=status.HTTP_201_CREATED)
async def register_user(user: UserCreate):
    query = users.select().where(users.c.username == user.username)
    if await database.fetch_one(query):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Username already registered."
        )
    query = users.select().where(users.c.email == user.email)
    if await database.fetch_one(query):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email already registered."
        )

    await create_user(user)
    return {"message": "User created successfully."}

@app.get("/api/users/me", response_model=User)
async def read_users_me(current_user: User = Depends(get_current_active_user)):
    """
    Get the current authenticated user's profile data.
    """
    return current_user


# Equipment Endpoints
@app.get("/api/equipment")
async def get_all_equipment():
    query = equipment.select().order_by(equipment.c.name)
    return [as_dict(record, equipment) for record in await database.fetch_all(query)]

@app.post("/api/equipment", status_code=status.HTTP_201_CREATED)
async def create_equipment(item: EquipmentCreate, current_user: User = Depends(get_current_admin)):
    values = item.model_dump()
    values["status"] = item.status.value
    values["created_at"] = utcnow()
    equipment_id = await database.execute(equipment.insert().values(**values))
    return {"id": equipment_id, **values}

@app.put("/api/equipment/{equipment_id}")
async def update_equipment(equipment_id: int, item: EquipmentUpdate,
                           current_user: User = Depends(get_current_admin),
                           registry: BroadcastRegistry = Depends(get_registry)):
    record = await database.fetch_one(equipment.select().where(equipment.c.id == equipment_id))
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Equipment not found")

    update_data = item.model_dump(exclude_unset=True)
    if update_data.get("status") is not None:
        update_data["status"] = EquipmentStatus(update_data["status"]).value
    if update_data:
        await database.execute(equipment.update().where(equipment.c.id == equipment_id).values(**update_data))

    updated = as_dict(await database.fetch_one(equipment.select().where(equipment.c.id == equipment_id)), equipment)
    try:
        await registry.broadcast({"type": "equipmentUpdate", "equipment": serialize(updated)})
    except Exception:
        logger.warning("Could not broadcast update of equipment %s", equipment_id, exc_info=True)
    return updated


# Reservation Endpoints
@app.get("/api/reservations")
async def get_my_reservations(current_user: User = Depends(get_current_active_user),
                              service: ReservationService = Depends(get_reservation_service)):
    return await service.repository.list(user=current_user)

@app.post("/api/reservations", status_code=status.HTTP_201_CREATED)
async def create_reservation(reservation: ReservationCreate,
                             current_user: User = Depends(get_current_active_user),
                             service: ReservationService = Depends(get_reservation_service)):
    return await service.create(
        current_user,
        reservation.equipment_id,
        reservation.start_date,
        reservation.end_date,
        notes=reservation.notes,
        team_id=reservation.team_id,
    )


# Reservation Management Endpoints for Admin
@app.get("/api/admin/reservations")
async def get_all_reservations(page: int = Query(0, ge=0), limit: int = Query(10, ge=1, le=100),
                               status_filter: Optional[List[str]] = Query(None, alias="status"),
                               search: Optional[str] = None,
                               current_user: User = Depends(get_current_admin),
                               service: ReservationService = Depends(get_reservation_service)):
    # Pages count from 0; search matches requester, team and equipment names
    search = search.strip() if search else None
    rows = await service.repository.list(statuses=status_filter, search=search,
                                         limit=limit, offset=page * limit)
    total = await service.repository.count(statuses=status_filter, search=search)
    return {
        "reservations": rows,
        "total": total,
        "page": page,
        "totalPages": math.ceil(total / limit),
    }

@app.put("/api/admin/reservations/{reservation_id}/status")
async def update_reservation_status(reservation_id: int, update: StatusUpdate,
                                    current_user: User = Depends(get_current_admin),
                                    state_machine: ReservationStateMachine = Depends(get_state_machine)):
    return await state_machine.transition(reservation_id, update.status, current_user)

@app.post("/api/admin/reservations/check-conflict")
async def check_conflict(check: ConflictCheck,
                         current_user: User = Depends(get_current_admin),
                         state_machine: ReservationStateMachine = Depends(get_state_machine)):
    has_conflict = await state_machine.checker.has_conflict(
        check.equipment_id, to_utc(check.start_date), to_utc(check.end_date),
        exclude_reservation_id=check.exclude_id,
    )
    return {"hasConflict": has_conflict}

@app.get("/api/admin/sse")
async def admin_events(current_user: User = Depends(get_stream_user),
                       registry: BroadcastRegistry = Depends(get_registry),
                       service: ReservationService = Depends(get_reservation_service)):
    """
    Live reservation updates for the admin dashboard, as server-sent events.
    """
    if not current_user.is_admin:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    async def snapshot():
        return serialize(await service.repository.list(statuses=ACTIVE_STATUSES))

    endpoint = StreamingEndpoint(registry, current_user, snapshot=snapshot,
                                 heartbeat_interval=HEARTBEAT_INTERVAL)
    return StreamingResponse(endpoint.events(), media_type="text/event-stream", headers=SSE_HEADERS)


# Notification Endpoints
@app.get("/api/notifications")
async def get_notifications(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                            type: str = Query("ALL", pattern="^(ALL|UNREAD)$"),
                            user_id: Optional[int] = None,
                            current_user: User = Depends(get_current_active_user)):
    # Users see their own notifications, admins may look at anyone's
    target_id = user_id if user_id is not None else current_user.id
    if target_id != current_user.id and not current_user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN,
                            detail="Not authorized to view these notifications")

    conditions = [notifications.c.user_id == target_id]
    if type == "UNREAD":
        conditions.append(notifications.c.read == False)  # noqa: E712

    query = (notifications.select().where(*conditions)
             .order_by(sqlalchemy.desc(notifications.c.created_at), sqlalchemy.desc(notifications.c.id))
             .offset((page - 1) * limit).limit(limit))
    count_query = sqlalchemy.select(sqlalchemy.func.count()).select_from(notifications).where(*conditions)

    rows = await database.fetch_all(query)
    total = await database.fetch_val(count_query)
    return {
        "notifications": [as_dict(row, notifications) for row in rows],
        "pagination": {
            "total": total,
            "pages": math.ceil(total / limit),
            "currentPage": page,
            "perPage": limit,
        },
    }

@app.put("/api/notifications")
async def mark_notifications_read(data: MarkAsRead, current_user: User = Depends(get_current_active_user)):
    if not current_user.is_admin:
        query = notifications.select().where(notifications.c.id.in_(data.notification_ids))
        owned = await database.fetch_all(query)
        if any(row["user_id"] != current_user.id for row in owned):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN,
                                detail="Not authorized to mark these notifications as read")

    query = notifications.update().where(notifications.c.id.in_(data.notification_ids)).values(read=True)
    await database.execute(query)
    return {"message": "Notifications marked as read"}


@app.on_event("startup")
async def startup():
    configure_logging()
    await database.connect()
    # Create tables if they don't exist
    metadata.create_all(bind=engine)

    registry = BroadcastRegistry()
    dispatcher = NotificationDispatcher(database)
    app.state.registry = registry
    app.state.reservation_service = ReservationService(registry, dispatcher, database)
    app.state.state_machine = ReservationStateMachine(registry, dispatcher, database)

    # Default administrator from the environment
    async with database.transaction():
        admin_username = os.getenv("ADMIN_USERNAME", "admin")
        query = users.select().where(users.c.username == admin_username)
        if not await database.fetch_one(query):
            admin_user = {
                "username": admin_username,
                "full_name": "Administrator",
                "email": os.getenv("ADMIN_EMAIL", "admin@lab.local"),
                "hashed_password": pwd_context.hash(os.getenv("ADMIN_PASSWORD", "admin123")),
                "role": ADMIN_ROLE,
                "disabled": False,
            }
            await database.execute(query=users.insert(), values=admin_user)
            logger.info("Created default administrator %s", admin_username)


@app.on_event("shutdown")
async def shutdown():
    await database.disconnect()
