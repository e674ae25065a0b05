import json
import logging
import os
import sqlite3
import threading
from functools import lru_cache
from typing import List

from errors import NotFound, TransientIOFailure, ValidationFailure

logger = logging.getLogger(__name__)

# Base collections never hand out the id of a deleted record again.
COLLECTIONS = {
    "users": "INTEGER PRIMARY KEY AUTOINCREMENT",
    "events": "INTEGER PRIMARY KEY AUTOINCREMENT",
    "participations": "INTEGER PRIMARY KEY AUTOINCREMENT",
    "userRegistrations": "INTEGER PRIMARY KEY",
}


class Collection:
    """Key-indexed records of one kind, stored as JSON bodies in a single table.

    Records are plain dicts. The key field (``id`` for base collections,
    ``userId`` for the registration summary) lives in the table's primary
    key column and is merged back into the dict on read.

    Writes to one collection are serialized by ``lock``; ``patch`` reads and
    writes under it so two concurrent patches of the same record cannot lose
    an update.
    """

    def __init__(self, db: "Database", name: str, key: str = "id"):
        self.db = db
        self.name = name
        self.key = key
        self.lock = threading.RLock()

    def _row_to_record(self, row) -> dict:
        record = json.loads(row[1])
        record[self.key] = row[0]
        return record

    def list(self, **filters) -> list[dict]:
        """Retrieve all records, optionally keeping only those whose fields equal ``filters``."""
        rows = self.db.query(f'SELECT id, data FROM "{self.name}" ORDER BY rowid')
        records = [self._row_to_record(r) for r in rows]
        if filters:
            records = [r for r in records if all(r.get(k) == v for k, v in filters.items())]
        return records

    def count(self, **filters) -> int:
        return len(self.list(**filters))

    def get(self, record_id) -> dict:
        """Retrieve a record by key. Raises NotFound."""
        rows = self.db.query(f'SELECT id, data FROM "{self.name}" WHERE id = ?', (record_id,))
        if not rows:
            raise NotFound(self.name, record_id)
        return self._row_to_record(rows[0])

    def insert(self, record: dict) -> dict:
        """Insert a record; a missing key is assigned by the store, an explicit one (0 included) is kept."""
        body = dict(record)
        record_id = body.pop(self.key, None)
        with self.lock:
            try:
                cursor = self.db.execute(
                    f'INSERT INTO "{self.name}" (id, data) VALUES (?, ?)',
                    (record_id, json.dumps(body)),
                    commit=True,
                )
            except sqlite3.IntegrityError:
                raise ValidationFailure(f"{self.name} record {record_id} already exists")
            body[self.key] = cursor.lastrowid if record_id is None else record_id
        logger.debug(f"Inserted {self.name} record {body[self.key]}")
        return body

    def patch(self, record_id, fields: dict) -> dict:
        """Merge ``fields`` into an existing record. Raises NotFound."""
        with self.lock:
            record = self.get(record_id)
            record.update({k: v for k, v in fields.items() if k != self.key})
            body = {k: v for k, v in record.items() if k != self.key}
            cursor = self.db.execute(
                f'UPDATE "{self.name}" SET data = ? WHERE id = ?',
                (json.dumps(body), record_id),
                commit=True,
            )
            if cursor.rowcount == 0:
                raise NotFound(self.name, record_id)
        return record

    def remove(self, record_id) -> None:
        """Delete a record by key. Raises NotFound."""
        with self.lock:
            cursor = self.db.execute(f'DELETE FROM "{self.name}" WHERE id = ?', (record_id,), commit=True)
            if cursor.rowcount == 0:
                raise NotFound(self.name, record_id)
        logger.debug(f"Removed {self.name} record {record_id}")

    def replace_all(self, records: List[dict]) -> None:
        """Replace the whole collection in one transaction."""
        rows = []
        for record in records:
            body = dict(record)
            rows.append((body.pop(self.key), json.dumps(body)))
        with self.lock:
            self.db.execute_batch(
                [(f'DELETE FROM "{self.name}"', ())]
                + [(f'INSERT INTO "{self.name}" (id, data) VALUES (?, ?)', row) for row in rows]
            )


class Database:
    def __init__(self, db_name="events.db"):
        """
        Initialize the SQLite record store.
        One table per collection; each row holds a record's key and its JSON body.
        """
        self.conn = sqlite3.connect(db_name, check_same_thread=False)
        self._conn_lock = threading.Lock()
        self.create_tables()
        self.users = Collection(self, "users")
        self.events = Collection(self, "events")
        self.participations = Collection(self, "participations")
        self.user_registrations = Collection(self, "userRegistrations", key="userId")

    def create_tables(self):
        """Create one table per collection."""
        statements = [
            (f'CREATE TABLE IF NOT EXISTS "{name}" (id {key_type}, data TEXT NOT NULL)', ())
            for name, key_type in COLLECTIONS.items()
        ]
        self.execute_batch(statements)

    def collection(self, name: str) -> Collection:
        """Look up a collection by its REST name."""
        by_name = {
            "users": self.users,
            "events": self.events,
            "participations": self.participations,
            "userRegistrations": self.user_registrations,
        }
        if name not in by_name:
            raise KeyError(f"Unknown collection {name}")
        return by_name[name]

    def execute(self, sql, params=(), commit=False):
        """Run one statement; store-level failures surface as TransientIOFailure."""
        with self._conn_lock:
            try:
                cursor = self.conn.execute(sql, params)
                if commit:
                    self.conn.commit()
                return cursor
            except sqlite3.IntegrityError:
                self.conn.rollback()
                raise
            except sqlite3.Error as e:
                self.conn.rollback()
                raise TransientIOFailure(f"Store operation failed: {e}") from e

    def query(self, sql, params=()):
        """Run a read and return all rows."""
        with self._conn_lock:
            try:
                return self.conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise TransientIOFailure(f"Store read failed: {e}") from e

    def execute_batch(self, statements):
        """Run several statements as a single transaction."""
        with self._conn_lock:
            try:
                with self.conn:
                    for sql, params in statements:
                        self.conn.execute(sql, params)
            except sqlite3.Error as e:
                raise TransientIOFailure(f"Store transaction failed: {e}") from e

    def close(self):
        """Close the database connection."""
        self.conn.close()


@lru_cache
def get_db() -> Database:
    """Return the process-wide store, opened from DB_NAME."""
    db_name = os.getenv("DB_NAME", "events.db")
    logger.info(f"Opening record store {db_name}")
    return Database(db_name)
