import os

os.environ.setdefault("DB_NAME", ":memory:")
os.environ.setdefault("SECRET_KEY", "test-secret")

import pytest
from consistency import IntegrityEngine, RegistrationAggregator
from database import COLLECTIONS, Database


@pytest.fixture
def store():
    db = Database(":memory:")
    yield db
    db.close()


@pytest.fixture
def integrity(store):
    return IntegrityEngine(store)


@pytest.fixture
def aggregator(store):
    return RegistrationAggregator(store)


def make_event(store, event_id, title="Event", capacity=10, **extra):
    return store.events.insert({
        "id": event_id,
        "title": title,
        "description": "",
        "date": "2024-03-15",
        "time": "10:00",
        "location": "Online",
        "type": "Webinar",
        "capacity": capacity,
        "createdBy": 1,
        **extra,
    })


def make_user(store, user_id, role="user", name=None):
    return store.users.insert({
        "id": user_id,
        "email": f"user{user_id}@example.com",
        "password": "x",
        "name": name or f"User {user_id}",
        "role": role,
    })


def make_participation(store, participation_id, user_id, event_id, status="Registered", attendance=None,
                       registration_date="2024-01-01"):
    return store.participations.insert({
        "id": participation_id,
        "userId": user_id,
        "eventId": event_id,
        "status": status,
        "attendance": attendance,
        "registrationDate": registration_date,
    })


@pytest.fixture
def app_db():
    """The application's store, emptied before each API test."""
    import main

    for name in COLLECTIONS:
        main.db.collection(name).replace_all([])
    return main.db
