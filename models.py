from dataclasses import dataclass, field
from typing import Optional

Identifier = int

# Statuses that leave attendance meaningless
ATTENDANCE_CLEARING_STATUSES = ("Assigned", "Pending")


@dataclass
class User:
    id: Optional[Identifier]
    email: str
    password: str  # bcrypt hash
    name: str
    role: str = "user"

    def public(self) -> dict:
        """Return the user without the password hash."""
        return {"id": self.id, "email": self.email, "name": self.name, "role": self.role}


@dataclass
class Event:
    id: Optional[Identifier]
    title: str
    description: str
    date: str
    time: str
    location: str
    type: str
    capacity: int
    createdBy: Optional[Identifier] = None  # id of the admin who created it


@dataclass
class Participation:
    id: Optional[Identifier]
    userId: Identifier
    eventId: Optional[Identifier]
    status: str
    registrationDate: str
    attendance: Optional[str] = None

    def is_orphan_of(self, event_ids: set) -> bool:
        """True when eventId is missing or matches none of the given event ids."""
        return self.eventId is None or self.eventId not in event_ids


@dataclass
class RegisteredEvent:
    eventId: Identifier
    eventTitle: str
    status: str
    registrationDate: str
    attendance: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "eventId": self.eventId,
            "eventTitle": self.eventTitle,
            "status": self.status,
            "registrationDate": self.registrationDate,
        }
        if self.attendance is not None:
            data["attendance"] = self.attendance
        return data


@dataclass
class UserRegistrationSummary:
    userId: Identifier
    userName: str
    userEmail: str
    registeredEvents: list[RegisteredEvent] = field(default_factory=list)

    @property
    def totalRegistrations(self) -> int:
        return len(self.registeredEvents)

    def to_dict(self) -> dict:
        return {
            "userId": self.userId,
            "userName": self.userName,
            "userEmail": self.userEmail,
            "registeredEvents": [e.to_dict() for e in self.registeredEvents],
            "totalRegistrations": self.totalRegistrations,
        }
