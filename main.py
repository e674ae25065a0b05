from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi import status
from pydantic import BaseModel, Field
from typing import Optional, Literal
from dataclasses import asdict
from models import Event
from manager import UserManager, EventManager, ParticipationManager
from consistency import IntegrityEngine, RegistrationAggregator
from database import get_db
from errors import NotFound, ValidationFailure, TransientIOFailure, RebuildError
from auth import get_current_user, create_access_token, create_refresh_token, decode_token, oauth2_scheme
from utils import check_admin, check_self_or_admin, filter_participations, generate_participations_csv, export_statistics
import logging
from contextlib import asynccontextmanager
from jose import JWTError

from dotenv import load_dotenv
import os

load_dotenv()  # Load variables from .env file
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "http://localhost:4200").split(",")

# Logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Database
db = get_db()

# Init
integrity = IntegrityEngine(db)
aggregator = RegistrationAggregator(db)
users = UserManager(db, aggregator)
manager = EventManager(db, integrity, aggregator)
participations = ParticipationManager(db, integrity, aggregator)

def startup_sweep():
    """Restore participation integrity and resync the summary before serving."""
    logger.info("Running startup orphan sweep")
    removed = integrity.purge_all_orphans()
    participations.sync_registrations()
    return removed

# FastAPI App
@asynccontextmanager
async def lifespan(app: FastAPI):
    startup_sweep()
    yield
    logger.info("Closing database connection")
    db.close()

app = FastAPI(lifespan=lifespan)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})

@app.exception_handler(ValidationFailure)
async def validation_failure_handler(request: Request, exc: ValidationFailure):
    return JSONResponse(status_code=400, content={"detail": str(exc)})

@app.exception_handler(TransientIOFailure)
@app.exception_handler(RebuildError)
async def store_failure_handler(request: Request, exc: Exception):
    logger.error(f"Store failure on {request.url.path}: {exc}")
    return JSONResponse(status_code=503, content={"detail": "Action failed, please retry"})

# -------------------------------
# Schemas
# -------------------------------
class EventCreate(BaseModel):
    title: str
    description: str = ""
    date: str
    time: str = ""
    location: str = ""
    type: Literal["Webinar", "Workshop", "Meetup"] = "Webinar"
    capacity: int = 50

    class Config:
        json_schema_extra = {
            "example": {
                "title": "Angular Signals Deep Dive",
                "description": "Hands-on look at the new reactivity model",
                "date": "2025-05-01",
                "time": "10:00",
                "location": "Online",
                "type": "Workshop",
                "capacity": 50
            }
        }

class EventUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    date: Optional[str] = None
    time: Optional[str] = None
    location: Optional[str] = None
    type: Optional[Literal["Webinar", "Workshop", "Meetup"]] = None
    capacity: Optional[int] = None

class ParticipationCreate(BaseModel):
    userId: int
    eventId: Optional[int] = None
    status: Literal["Assigned", "Pending", "Registered"] = "Registered"
    attendance: Optional[Literal["Attended", "Completed"]] = None
    registrationDate: str = Field(..., examples=["2024-01-01"])

class StatusUpdate(BaseModel):
    status: Literal["Assigned", "Pending", "Registered"]

class AttendanceUpdate(BaseModel):
    attendance: Literal["Attended", "Completed"]

class UserRegister(BaseModel):
    name: str
    email: str
    password: str
    role: Literal["admin", "user"] = "user"

class UserLogin(BaseModel):
    email: str
    password: str

class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    user: dict

# -------------------------------
# Auth Routes
# -------------------------------
@app.post("/register", response_model=dict, status_code=status.HTTP_201_CREATED, summary="Register a new user")
def register(user: UserRegister):
    """Register a new user with a specified role."""
    created = users.register(user.name, user.email, user.password, user.role)
    logger.info(f"User {user.email} registered with role {user.role}")
    return {"message": "User registered", "data": created.public()}

@app.post("/login", response_model=TokenResponse, summary="Login and receive access/refresh tokens")
def login(user: UserLogin):
    """Authenticate user and return access and refresh tokens."""
    db_user = users.authenticate(user.email, user.password)
    if db_user is None:
        raise HTTPException(status_code=401, detail="Invalid email or password")
    access_token = create_access_token(data={"sub": user.email})
    refresh_token = create_refresh_token(data={"sub": user.email})
    logger.info(f"User {user.email} logged in")
    return {"access_token": access_token, "refresh_token": refresh_token, "user": db_user.public()}

@app.post("/refresh", response_model=dict, summary="Refresh access token")
def refresh(token: str = Depends(oauth2_scheme)):
    try:
        email = decode_token(token, token_type="refresh").email
    except JWTError as e:
        logger.error(f"Refresh rejected: {e}")
        raise HTTPException(
            status_code=401,
            detail="Invalid refresh token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    access_token = create_access_token(data={"sub": email})
    logger.info(f"Token refreshed for {email}")
    return {"message": "Token refreshed", "data": {"access_token": access_token}}

# -------------------------------
# User Routes
# -------------------------------
@app.get("/", response_model=dict, summary="API root endpoint")
def root():
    """Welcome message for the Event Registration API."""
    return {"message": "Welcome to Event Registration API", "data": {}}

@app.get("/users", response_model=dict, summary="List all users")
def list_users(current_user=Depends(get_current_user)):
    check_admin(current_user)
    return {"message": "Users retrieved", "data": [u.public() for u in users.list_users()]}

@app.get("/users/{user_id}", response_model=dict, summary="Get a user")
def get_user(user_id: int, current_user=Depends(get_current_user)):
    check_self_or_admin(user_id, current_user)
    return {"message": "User retrieved", "data": users.get_user(user_id).public()}

@app.patch("/users/{user_id}/role", response_model=dict, summary="Toggle a user's role")
def toggle_role(user_id: int, current_user=Depends(get_current_user)):
    """Switch a user between admin and user (admins only)."""
    check_admin(current_user)
    updated = users.toggle_role(user_id)
    return {"message": f"User role updated to {updated.role}", "data": updated.public()}

@app.delete("/users/{user_id}", response_model=dict, summary="Delete a user")
def delete_user(user_id: int, current_user=Depends(get_current_user)):
    check_admin(current_user)
    users.delete_user(user_id)
    logger.info(f"User {user_id} deleted by {current_user['id']}")
    return {"message": f"User {user_id} deleted", "data": {}}

# -------------------------------
# Event Routes
# -------------------------------
@app.post("/events", response_model=dict, status_code=status.HTTP_201_CREATED, summary="Create a new event")
def create_event(event: EventCreate, current_user=Depends(get_current_user)):
    """Create a new event (admins only)."""
    check_admin(current_user)
    evt = manager.add_event(Event(id=None, createdBy=current_user["id"], **event.model_dump()))
    logger.info(f"Event {evt.id} created by {current_user['id']}")
    return {"message": "Event created", "data": asdict(evt)}

@app.get("/events", response_model=dict, summary="List all events")
def list_events(type: Optional[Literal["Webinar", "Workshop", "Meetup"]] = None):
    """Retrieve a list of all events."""
    return {"message": "Events retrieved", "data": [asdict(e) for e in manager.list_events(type)]}

@app.get("/events/{event_id}", response_model=dict, summary="Get an event")
def get_event(event_id: int):
    return {"message": "Event retrieved", "data": asdict(manager.get_event(event_id))}

@app.patch("/events/{event_id}", response_model=dict, summary="Update an event")
def update_event(event_id: int, event: EventUpdate, current_user=Depends(get_current_user)):
    """Update an existing event (admins only)."""
    check_admin(current_user)
    evt = manager.update_event(event_id, **event.model_dump())
    logger.info(f"Event {event_id} updated by {current_user['id']}")
    return {"message": f"Event {event_id} updated", "data": asdict(evt)}

@app.delete("/events/{event_id}", response_model=dict, summary="Delete an event")
def delete_event(event_id: int, current_user=Depends(get_current_user)):
    """Delete an event and the participations that reference it (admins only)."""
    check_admin(current_user)
    purged = manager.delete_event(event_id)
    logger.info(f"Event {event_id} deleted by {current_user['id']}")
    return {"message": f"Event {event_id} deleted", "data": {"removedParticipations": purged}}

# -------------------------------
# Participation Routes
# -------------------------------
@app.post("/events/{event_id}/register", response_model=dict, status_code=status.HTTP_201_CREATED, summary="Register for an event")
def register_for_event(event_id: int, current_user=Depends(get_current_user)):
    """Register the current user for an event."""
    participation = participations.register(current_user["id"], event_id)
    logger.info(f"User {current_user['id']} registered for event {event_id}")
    return {"message": "Registered for event", "data": participation}

@app.post("/participations", response_model=dict, status_code=status.HTTP_201_CREATED, summary="Create a participation")
def create_participation(body: ParticipationCreate, current_user=Depends(get_current_user)):
    """Create a participation for any user (admins only)."""
    check_admin(current_user)
    participation = participations.create(
        body.userId, body.eventId, body.status, body.registrationDate, body.attendance
    )
    return {"message": "Participation created", "data": participation}

@app.get("/participations", response_model=dict, summary="List participations")
def list_participations(
    userId: Optional[int] = None,
    eventId: Optional[int] = None,
    status: Optional[Literal["Assigned", "Pending", "Registered"]] = None,
    current_user=Depends(get_current_user),
):
    """List participations; regular users only see their own."""
    if current_user["role"] != "admin":
        userId = current_user["id"]
    data = participations.list_participations(userId=userId, eventId=eventId, status=status)
    return {"message": "Participations retrieved", "data": data}

@app.get("/participations/{participation_id}", response_model=dict, summary="Get a participation")
def get_participation(participation_id: int, current_user=Depends(get_current_user)):
    participation = participations.get_participation(participation_id)
    check_self_or_admin(participation["userId"], current_user)
    return {"message": "Participation retrieved", "data": participation}

@app.patch("/participations/{participation_id}/status", response_model=dict, summary="Update participation status")
def update_status(participation_id: int, body: StatusUpdate, current_user=Depends(get_current_user)):
    check_self_or_admin(participations.get_participation(participation_id)["userId"], current_user)
    return {"message": "Status updated", "data": participations.update_status(participation_id, body.status)}

@app.patch("/participations/{participation_id}/attendance", response_model=dict, summary="Update participation attendance")
def update_attendance(participation_id: int, body: AttendanceUpdate, current_user=Depends(get_current_user)):
    check_self_or_admin(participations.get_participation(participation_id)["userId"], current_user)
    return {"message": "Attendance updated", "data": participations.update_attendance(participation_id, body.attendance)}

@app.patch("/users/{user_id}/events/{event_id}/status", response_model=dict, summary="Update status by user and event")
def update_status_for_event(user_id: int, event_id: int, body: StatusUpdate, current_user=Depends(get_current_user)):
    check_self_or_admin(user_id, current_user)
    participation = participations.find_participation(user_id, event_id)
    return {"message": "Status updated", "data": participations.update_status(participation["id"], body.status)}

@app.patch("/users/{user_id}/events/{event_id}/attendance", response_model=dict, summary="Update attendance by user and event")
def update_attendance_for_event(user_id: int, event_id: int, body: AttendanceUpdate, current_user=Depends(get_current_user)):
    check_self_or_admin(user_id, current_user)
    participation = participations.find_participation(user_id, event_id)
    return {"message": "Attendance updated", "data": participations.update_attendance(participation["id"], body.attendance)}

@app.delete("/participations/{participation_id}", response_model=dict, summary="Delete a participation")
def delete_participation(participation_id: int, current_user=Depends(get_current_user)):
    check_self_or_admin(participations.get_participation(participation_id)["userId"], current_user)
    participations.delete_participation(participation_id)
    return {"message": f"Participation {participation_id} deleted", "data": {}}

# -------------------------------
# Registration summary & maintenance
# -------------------------------
@app.get("/userRegistrations", response_model=dict, summary="Per-user registration summary")
def list_user_registrations(current_user=Depends(get_current_user)):
    check_admin(current_user)
    return {"message": "User registrations retrieved", "data": db.user_registrations.list()}

@app.get("/userRegistrations/{user_id}", response_model=dict, summary="Registration summary for one user")
def get_user_registrations(user_id: int, current_user=Depends(get_current_user)):
    check_self_or_admin(user_id, current_user)
    return {"message": "User registrations retrieved", "data": db.user_registrations.get(user_id)}

@app.post("/admin/cleanup", response_model=dict, summary="Remove orphaned participations")
def cleanup(current_user=Depends(get_current_user)):
    """Run the orphan sweep on demand, then resync the summary (admins only)."""
    check_admin(current_user)
    removed = integrity.purge_all_orphans()
    aggregator.rebuild()
    return {"message": f"Removed {len(removed)} orphaned participations", "data": {"removed": removed}}

@app.post("/admin/rebuild", response_model=dict, summary="Rebuild the registration summary")
def rebuild(current_user=Depends(get_current_user)):
    check_admin(current_user)
    summaries = aggregator.rebuild()
    return {"message": "userRegistrations rebuilt", "data": {"users": len(summaries)}}

# -------------------------------
# Export Routes
# -------------------------------
def _user_participations(user_id, status, attendance, start, end):
    data = participations.list_participations(userId=user_id)
    return filter_participations(data, status=status, attendance=attendance, start=start, end=end)

@app.get("/users/{user_id}/participations/export", response_model=None, summary="Export participations as CSV")
def export_participations(
    user_id: int,
    status: Optional[str] = None,
    attendance: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    current_user=Depends(get_current_user),
):
    """Export a user's participations as a CSV file, optionally filtered."""
    check_self_or_admin(user_id, current_user)
    selected = _user_participations(user_id, status, attendance, start, end)
    csv_data = generate_participations_csv(selected, db.events.list())
    suffix = "_".join(v for v in (status, attendance, start, end) if v)
    filename = f"user_events_{suffix}_export.csv" if suffix else "user_events_export.csv"
    logger.info(f"Participations exported for user {user_id} by {current_user['id']}")
    return Response(
        content=csv_data,
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )

@app.get("/users/{user_id}/participations/stats", response_model=dict, summary="Participation statistics")
def participation_stats(
    user_id: int,
    status: Optional[str] = None,
    attendance: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    current_user=Depends(get_current_user),
):
    check_self_or_admin(user_id, current_user)
    selected = _user_participations(user_id, status, attendance, start, end)
    return {"message": "Statistics computed", "data": export_statistics(selected)}
