# evledger/storage/sqlite.py
import os
import sqlite3
import json
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

from evledger.core.types import (
    Changeset, ChargingSession, Event, LedgerState, Vehicle,
    event_from_dict, event_to_dict,
)
from . import StorageBackend


class SQLiteStorage(StorageBackend):
    """SQLite persistent storage: one consistent snapshot plus the event log."""

    def __init__(self, db_path: str | Path | None = None):
        if db_path is None:
            env_path = os.environ.get("EVLEDGER_DB_PATH")
            db_path = env_path if env_path else Path.cwd() / "evledger.db"

        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = self.db_path.resolve()

        self._conn: Optional[sqlite3.Connection] = None
        self._loaded_version: Optional[int] = None
        self._connect()

    def _connect(self):
        # autocommit mode; transactions are opened explicitly in transaction()
        self._conn = sqlite3.connect(str(self.db_path), isolation_level=None)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_schema()

    def _create_schema(self):
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS vehicles (
                vehicle_id            TEXT    PRIMARY KEY,
                ordinal               INTEGER NOT NULL UNIQUE,
                model                 TEXT    NOT NULL,
                battery_capacity      TEXT    NOT NULL,
                owner                 TEXT    NOT NULL,
                total_energy_consumed INTEGER NOT NULL,
                registered_at         TEXT    NOT NULL
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS sessions (
                session_id    INTEGER PRIMARY KEY,
                vehicle_id    TEXT    NOT NULL,
                station       TEXT    NOT NULL,
                energy_amount INTEGER NOT NULL,
                cost          INTEGER NOT NULL,
                timestamp     TEXT    NOT NULL,
                completed     INTEGER NOT NULL
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS credits (
                vehicle_id TEXT    PRIMARY KEY,
                balance    INTEGER NOT NULL CHECK (balance >= 0)
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS counters (
                name  TEXT    PRIMARY KEY,
                value INTEGER NOT NULL
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS events (
                seq     INTEGER PRIMARY KEY AUTOINCREMENT,
                kind    TEXT    NOT NULL,
                payload TEXT    NOT NULL
            )
        """)
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_owner ON vehicles(owner, ordinal)")
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_session_vehicle ON sessions(vehicle_id)")

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Storage connection is closed")
        return self._conn

    def _data_version(self) -> int:
        return self.conn.execute("PRAGMA data_version").fetchone()[0]

    def is_stale(self) -> bool:
        # data_version only moves when *another* connection commits
        return self._data_version() != self._loaded_version

    @contextmanager
    def transaction(self) -> Iterator[None]:
        conn = self.conn
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        try:
            conn.execute("COMMIT")
        except sqlite3.Error:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise

    def write(self, changes: Changeset) -> None:
        if not self.conn.in_transaction:
            raise RuntimeError("write() called outside transaction()")

        # plain INSERT: a duplicate key must fail, never replace
        for v in changes.new_vehicles:
            self.conn.execute("""
                INSERT INTO vehicles
                (vehicle_id, ordinal, model, battery_capacity, owner,
                 total_energy_consumed, registered_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                v.vehicle_id, v.ordinal, v.model, v.battery_capacity, v.owner,
                v.total_energy_consumed, v.registered_at
            ))

        for v in changes.vehicles:
            self.conn.execute(
                "UPDATE vehicles SET total_energy_consumed = ? WHERE vehicle_id = ?",
                (v.total_energy_consumed, v.vehicle_id)
            )

        for s in changes.sessions:
            self.conn.execute("""
                INSERT INTO sessions
                (session_id, vehicle_id, station, energy_amount, cost, timestamp, completed)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                s.session_id, s.vehicle_id, s.station, s.energy_amount,
                s.cost, s.timestamp, int(s.completed)
            ))

        for vehicle_id, balance in changes.balances.items():
            self.conn.execute(
                "INSERT OR REPLACE INTO credits (vehicle_id, balance) VALUES (?, ?)",
                (vehicle_id, balance)
            )

        counters = {
            "total_vehicles_registered": changes.total_vehicles_registered,
            "session_counter": changes.session_counter,
        }
        for name, value in counters.items():
            if value is not None:
                self.conn.execute(
                    "INSERT OR REPLACE INTO counters (name, value) VALUES (?, ?)",
                    (name, value)
                )

        # integers must round-trip exactly, so no jcs here
        for event in changes.events:
            self.conn.execute(
                "INSERT INTO events (kind, payload) VALUES (?, ?)",
                (event.kind, json.dumps(event_to_dict(event), sort_keys=True, separators=(",", ":")))
            )

    def load_state(self) -> LedgerState:
        self._loaded_version = self._data_version()
        vehicles = [
            Vehicle(
                vehicle_id=vid,
                model=model,
                battery_capacity=battery,
                owner=owner,
                total_energy_consumed=energy,
                registered_at=reg_at,
                registered=True,
                ordinal=ordinal,
            )
            for vid, ordinal, model, battery, owner, energy, reg_at in self.conn.execute("""
                SELECT vehicle_id, ordinal, model, battery_capacity, owner,
                       total_energy_consumed, registered_at
                FROM vehicles ORDER BY ordinal ASC
            """)
        ]

        sessions = [
            ChargingSession(sid, vid, station, energy, cost, ts, bool(done))
            for sid, vid, station, energy, cost, ts, done in self.conn.execute("""
                SELECT session_id, vehicle_id, station, energy_amount, cost, timestamp, completed
                FROM sessions ORDER BY session_id ASC
            """)
        ]

        credits = dict(self.conn.execute("SELECT vehicle_id, balance FROM credits"))
        counters = dict(self.conn.execute("SELECT name, value FROM counters"))

        return LedgerState.restore(
            vehicles=vehicles,
            sessions=sessions,
            credits=credits,
            total_vehicles_registered=counters.get("total_vehicles_registered", 0),
            session_counter=counters.get("session_counter", 0),
        )

    def load_events(self) -> List[Event]:
        cursor = self.conn.execute("SELECT payload FROM events ORDER BY seq ASC")
        return [event_from_dict(json.loads(payload)) for (payload,) in cursor]

    def query_events(self, limit: int = 50) -> List[Event]:
        """Most recent `limit` events, oldest first."""
        cursor = self.conn.execute(
            "SELECT payload FROM events ORDER BY seq DESC LIMIT ?", (limit,)
        )
        loaded = [event_from_dict(json.loads(payload)) for (payload,) in cursor]
        loaded.reverse()
        return loaded

    def get_event_count(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM events").fetchone()[0]

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
