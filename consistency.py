import logging
from collections import defaultdict

from database import Database
from errors import NotFound, RebuildError, TransientIOFailure
from models import Participation, RegisteredEvent, UserRegistrationSummary

logger = logging.getLogger(__name__)


def _participation(record: dict) -> Participation:
    return Participation(
        id=record.get("id"),
        userId=record.get("userId"),
        eventId=record.get("eventId"),
        status=record.get("status"),
        registrationDate=record.get("registrationDate"),
        attendance=record.get("attendance"),
    )


class IntegrityEngine:
    """Keeps every participation pointing at an existing event.

    Removals are best effort: a participation that is already gone counts
    as clean, and a store failure on one record is logged before moving on
    to the next, so a repeated run only removes what is still orphaned.
    """

    def __init__(self, db: Database):
        self.db = db

    def _remove(self, participation_id, reason: str) -> bool:
        try:
            self.db.participations.remove(participation_id)
        except NotFound:
            logger.info(f"Participation {participation_id} already removed")
            return False
        except TransientIOFailure as e:
            logger.error(f"Failed to delete participation {participation_id} ({reason}): {e}")
            return False
        logger.info(f"Deleted participation {participation_id} ({reason})")
        return True

    def purge_participations_of_event(self, event_id) -> list:
        """Remove the participations of a just-deleted event. Returns the removed ids."""
        try:
            participations = self.db.participations.list()
        except TransientIOFailure as e:
            logger.error(f"Could not load participations to clean up event {event_id}: {e}")
            return []
        dependents = [p for p in participations if p.get("eventId") == event_id]
        if dependents:
            logger.info(f"Found {len(dependents)} participations to clean up for event {event_id}")
        return [p["id"] for p in dependents if self._remove(p["id"], f"event {event_id} deleted")]

    def purge_all_orphans(self) -> list:
        """Full sweep: remove participations with no eventId or an unknown one.

        Events and participations are loaded once; the event ids form a set so
        the sweep stays linear. An eventId of 0 is a real id.
        """
        try:
            participations = [_participation(p) for p in self.db.participations.list()]
            event_ids = {e["id"] for e in self.db.events.list()}
        except TransientIOFailure as e:
            logger.error(f"Orphan sweep skipped, store unreadable: {e}")
            return []

        orphans = [p for p in participations if p.is_orphan_of(event_ids)]
        if not orphans:
            logger.info("No orphaned participations found")
            return []

        logger.info(f"Found {len(orphans)} orphaned participations to clean up")
        removed = [p.id for p in orphans if self._remove(p.id, f"orphaned, eventId {p.eventId}")]
        logger.info(f"Orphan sweep removed {len(removed)} of {len(orphans)} participations")
        return removed


class RegistrationAggregator:
    """Rebuilds the userRegistrations projection from users, participations and events."""

    def __init__(self, db: Database):
        self.db = db

    def compute(self) -> list[UserRegistrationSummary]:
        try:
            participations = [_participation(p) for p in self.db.participations.list()]
            users = self.db.users.list()
            events = {e["id"]: e for e in self.db.events.list()}
        except TransientIOFailure as e:
            raise RebuildError(f"Cannot read source collections: {e}") from e

        by_user = defaultdict(list)
        for p in participations:
            event = events.get(p.eventId) if p.eventId is not None else None
            if event is None:
                continue
            by_user[p.userId].append(
                RegisteredEvent(
                    eventId=p.eventId,
                    eventTitle=event.get("title"),
                    status=p.status,
                    registrationDate=p.registrationDate,
                    attendance=p.attendance if p.status == "Registered" and p.attendance else None,
                )
            )

        return [
            UserRegistrationSummary(
                userId=u["id"],
                userName=u.get("name"),
                userEmail=u.get("email"),
                registeredEvents=by_user.get(u["id"], []),
            )
            for u in users
            if u.get("role") == "user"
        ]

    def rebuild(self) -> list[dict]:
        """Recompute the summary and replace the stored collection wholesale.

        Reading the sources and writing the result happen under the summary
        lock, so rebuilds complete one after another and a later one always
        sees at least the data an earlier one saw.
        """
        with self.db.user_registrations.lock:
            summaries = [s.to_dict() for s in self.compute()]
            try:
                self.db.user_registrations.replace_all(summaries)
            except TransientIOFailure as e:
                raise RebuildError(f"Cannot store registration summary: {e}") from e
        logger.info(f"userRegistrations synced for {len(summaries)} users")
        return summaries
