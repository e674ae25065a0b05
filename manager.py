import logging
from dataclasses import asdict
from passlib.hash import bcrypt

from consistency import IntegrityEngine, RegistrationAggregator
from database import Database
from errors import NotFound, RebuildError, ValidationFailure
from models import ATTENDANCE_CLEARING_STATUSES, Event, User
from utils import today

logger = logging.getLogger(__name__)


class _Manager:
    def __init__(self, db: Database, aggregator: RegistrationAggregator):
        self.db = db
        self.aggregator = aggregator

    def sync_registrations(self):
        """Post-commit hook: refresh userRegistrations after a successful write.

        The write has already committed, so a failed rebuild is logged and
        left for the next mutation or an explicit rebuild to repair.
        """
        try:
            self.aggregator.rebuild()
        except RebuildError as e:
            logger.error(f"Error syncing userRegistrations: {e}")


class UserManager(_Manager):
    def register(self, name: str, email: str, password: str, role: str = "user") -> User:
        """Create a user with a bcrypt-hashed password."""
        if self.get_user_by_email(email):
            raise ValidationFailure("User already exists")
        record = self.db.users.insert({
            "email": email,
            "password": bcrypt.hash(password),
            "name": name,
            "role": role,
        })
        self.sync_registrations()
        return User(**record)

    def get_user_by_email(self, email: str) -> dict | None:
        users = self.db.users.list(email=email)
        return users[0] if users else None

    def authenticate(self, email: str, password: str) -> User | None:
        """Credential lookup: the user whose email and password match, else None."""
        record = self.get_user_by_email(email)
        if not record or not bcrypt.verify(password, record["password"]):
            return None
        return User(**record)

    def get_user(self, user_id) -> User:
        return User(**self.db.users.get(user_id))

    def list_users(self) -> list[User]:
        return [User(**u) for u in self.db.users.list()]

    def toggle_role(self, user_id) -> User:
        """Switch a user between admin and user."""
        user = self.get_user(user_id)
        new_role = "user" if user.role == "admin" else "admin"
        record = self.db.users.patch(user_id, {"role": new_role})
        logger.info(f"User {user_id} role updated to {new_role}")
        self.sync_registrations()
        return User(**record)

    def delete_user(self, user_id):
        self.db.users.remove(user_id)
        logger.info(f"User {user_id} deleted")
        self.sync_registrations()


class EventManager(_Manager):
    def __init__(self, db: Database, integrity: IntegrityEngine, aggregator: RegistrationAggregator):
        """Initialize EventManager with the store and its consistency hooks."""
        super().__init__(db, aggregator)
        self.integrity = integrity

    def add_event(self, event: Event) -> Event:
        """Add a new event to the store."""
        if event.capacity <= 0:
            raise ValidationFailure("Capacity must be positive")
        data = asdict(event)
        if data["id"] is None:
            del data["id"]
        return Event(**self.db.events.insert(data))

    def get_event(self, event_id) -> Event:
        """Retrieve an event by ID."""
        return Event(**self.db.events.get(event_id))

    def list_events(self, type: str | None = None) -> list[Event]:
        """Retrieve all events, optionally of one type."""
        filters = {"type": type} if type else {}
        return [Event(**e) for e in self.db.events.list(**filters)]

    def update_event(self, event_id, **fields) -> Event:
        """Apply the given non-empty fields to an event."""
        updates = {k: v for k, v in fields.items() if v is not None}
        if "capacity" in updates and updates["capacity"] <= 0:
            raise ValidationFailure("Capacity must be positive")
        record = self.db.events.patch(event_id, updates)
        if "title" in updates:
            # summary entries carry a copy of the title
            self.sync_registrations()
        return Event(**record)

    def delete_event(self, event_id) -> list:
        """Delete an event, then purge its participations and resync. Returns purged participation ids."""
        self.db.events.remove(event_id)
        logger.info(f"Deleted event {event_id}")
        purged = self.integrity.purge_participations_of_event(event_id)
        self.sync_registrations()
        return purged


class ParticipationManager(_Manager):
    def __init__(self, db: Database, integrity: IntegrityEngine, aggregator: RegistrationAggregator):
        super().__init__(db, aggregator)
        self.integrity = integrity

    def list_participations(self, **filters) -> list[dict]:
        """List participations after dropping any orphans."""
        if self.integrity.purge_all_orphans():
            self.sync_registrations()
        filters = {k: v for k, v in filters.items() if v is not None}
        return self.db.participations.list(**filters)

    def get_participation(self, participation_id) -> dict:
        return self.db.participations.get(participation_id)

    def find_participation(self, user_id, event_id) -> dict:
        """The first participation of a user for an event."""
        matches = self.db.participations.list(userId=user_id, eventId=event_id)
        if not matches:
            raise NotFound("participations", f"user {user_id}/event {event_id}")
        return matches[0]

    def register(self, user_id, event_id) -> dict:
        """Register a user for an event if there is room."""
        self.db.users.get(user_id)
        # capacity check and insert are one step
        with self.db.participations.lock:
            event = self.db.events.get(event_id)
            if self.db.participations.count(eventId=event_id) >= event["capacity"]:
                raise ValidationFailure("Registration failed: event is full")
            record = self._insert(user_id, event_id, "Registered", today())
        self.sync_registrations()
        return record

    def create(self, user_id, event_id, status: str, registration_date: str, attendance: str | None = None) -> dict:
        """Insert a participation; the event must exist."""
        record = self._insert(user_id, event_id, status, registration_date, attendance)
        self.sync_registrations()
        return record

    def _insert(self, user_id, event_id, status, registration_date, attendance=None) -> dict:
        if event_id is None:
            raise ValidationFailure("eventId is required")
        self.db.events.get(event_id)
        if attendance is not None and status != "Registered":
            raise ValidationFailure("Attendance can only be set for Registered participations")
        record = self.db.participations.insert({
            "userId": user_id,
            "eventId": event_id,
            "status": status,
            "attendance": attendance,
            "registrationDate": registration_date,
        })
        logger.info(f"Participation {record['id']} created for user {user_id} and event {event_id}")
        return record

    def update_status(self, participation_id, status: str) -> dict:
        """Change status; Assigned and Pending clear attendance."""
        updates = {"status": status}
        if status in ATTENDANCE_CLEARING_STATUSES:
            updates["attendance"] = None
        record = self.db.participations.patch(participation_id, updates)
        self.sync_registrations()
        return record

    def update_attendance(self, participation_id, attendance: str) -> dict:
        """Record attendance on a Registered participation."""
        with self.db.participations.lock:
            current = self.db.participations.get(participation_id)
            if current.get("status") != "Registered":
                raise ValidationFailure("Attendance can only be set for Registered participations")
            record = self.db.participations.patch(participation_id, {"attendance": attendance})
        self.sync_registrations()
        return record

    def delete_participation(self, participation_id):
        self.db.participations.remove(participation_id)
        logger.info(f"Deleted participation {participation_id}")
        self.sync_registrations()
