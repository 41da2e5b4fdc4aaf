"""SQLite-backed persistence for users, instances, ports, and operations."""
from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from ..errors import StateStoreError
from .models import Channel, Instance, InstanceStatus, OperationRecord, User, now_iso

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
  username TEXT PRIMARY KEY,
  home TEXT NOT NULL,
  quota INTEGER,
  banned INTEGER NOT NULL DEFAULT 0,
  created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS instances (
  user TEXT NOT NULL,
  app TEXT NOT NULL,
  port INTEGER NOT NULL,
  channel TEXT NOT NULL,
  version TEXT NOT NULL,
  release_name TEXT NOT NULL,
  install_path TEXT NOT NULL,
  config_path TEXT NOT NULL,
  status TEXT NOT NULL, -- installing|running|stopped|failed|removed|degraded|inconsistent
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  options_json TEXT NOT NULL DEFAULT '{}',
  PRIMARY KEY (user, app)
);

CREATE INDEX IF NOT EXISTS idx_instances_app ON instances(app);

CREATE TABLE IF NOT EXISTS port_allocations (
  user TEXT NOT NULL,
  app TEXT NOT NULL,
  port INTEGER NOT NULL,
  allocated_at TEXT NOT NULL,
  PRIMARY KEY (user, app),
  UNIQUE (app, port)
);

CREATE TABLE IF NOT EXISTS operations (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  timestamp TEXT NOT NULL,
  user TEXT NOT NULL,
  app TEXT NOT NULL,
  action TEXT NOT NULL,
  outcome TEXT NOT NULL,
  error TEXT,
  correlation_id TEXT
);

CREATE INDEX IF NOT EXISTS idx_operations_pair ON operations(user, app, id DESC);
"""


@dataclass(slots=True)
class StateStore:
    """Transactional access to ``state.db``.

    Every write runs inside ``BEGIN IMMEDIATE`` so that concurrent zen
    processes serialise on the database rather than interleaving partial rows.
    """

    db_path: Path
    timeout: float = 10.0

    def __post_init__(self) -> None:
        self.db_path = Path(self.db_path)
        self.ensure_schema()

    def ensure_schema(self) -> None:
        """Create the database file and tables if needed."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StateStoreError(f"Cannot create state directory {self.db_path.parent}: {exc}") from exc
        with self._connect() as conn:
            conn.executescript(SCHEMA)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path, timeout=self.timeout, isolation_level=None)
        except sqlite3.Error as exc:
            raise StateStoreError(f"Cannot open state store {self.db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.Error as exc:
            raise StateStoreError(f"State store error: {exc}") from exc
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    # ------------------------------------------------------------------
    # Users
    def get_user(self, username: str) -> User | None:
        """Return the registered user or ``None``."""
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE username = ?", (username,)).fetchone()
        return _user_from_row(row) if row else None

    def upsert_user(self, user: User) -> None:
        """Insert or replace *user*."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO users(username, home, quota, banned, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(username) DO UPDATE SET
                  home = excluded.home, quota = excluded.quota, banned = excluded.banned
                """,
                (user.username, str(user.home), user.quota, int(user.banned), user.created_at),
            )

    def set_banned(self, username: str, banned: bool) -> bool:
        """Flip the ban flag; return ``False`` when the user is unknown."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE users SET banned = ? WHERE username = ?", (int(banned), username)
            )
            return cursor.rowcount > 0

    def list_users(self) -> list[User]:
        """Return every registered user ordered by name."""
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY username").fetchall()
        return [_user_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Instances
    def get_instance(self, user: str, app: str) -> Instance | None:
        """Return the instance for the pair or ``None``."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM instances WHERE user = ? AND app = ?", (user, app)
            ).fetchone()
        return _instance_from_row(row) if row else None

    def upsert_instance(self, instance: Instance) -> None:
        """Insert or replace the row for ``(instance.user, instance.app)``."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO instances(
                  user, app, port, channel, version, release_name, install_path,
                  config_path, status, created_at, updated_at, options_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user, app) DO UPDATE SET
                  port = excluded.port,
                  channel = excluded.channel,
                  version = excluded.version,
                  release_name = excluded.release_name,
                  install_path = excluded.install_path,
                  config_path = excluded.config_path,
                  status = excluded.status,
                  updated_at = excluded.updated_at,
                  options_json = excluded.options_json
                """,
                (
                    instance.user,
                    instance.app,
                    instance.port,
                    instance.channel.value,
                    instance.version,
                    instance.release_name,
                    str(instance.install_path),
                    str(instance.config_path),
                    instance.status.value,
                    instance.created_at,
                    instance.updated_at,
                    json.dumps(instance.options, sort_keys=True, default=str),
                ),
            )

    def set_status(self, user: str, app: str, status: InstanceStatus) -> bool:
        """Update only the status column; return ``False`` when no row exists."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE instances SET status = ?, updated_at = ? WHERE user = ? AND app = ?",
                (status.value, now_iso(), user, app),
            )
            return cursor.rowcount > 0

    def delete_instance(self, user: str, app: str) -> bool:
        """Delete the row for the pair; return ``True`` when a row was removed."""
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM instances WHERE user = ? AND app = ?", (user, app))
            return cursor.rowcount > 0

    def list_instances_for_user(self, user: str) -> list[Instance]:
        """Return the user's instances ordered by app name."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM instances WHERE user = ? ORDER BY app", (user,)
            ).fetchall()
        return [_instance_from_row(row) for row in rows]

    def list_instances(self, app: str | None = None) -> list[Instance]:
        """Return all instances, optionally filtered by *app*."""
        with self._connect() as conn:
            if app is None:
                rows = conn.execute("SELECT * FROM instances ORDER BY user, app").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM instances WHERE app = ? ORDER BY user", (app,)
                ).fetchall()
        return [_instance_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Ports
    def allocate_port(self, user: str, app: str, port: int) -> bool:
        """Record *port* for the pair; return ``False`` if another user holds it."""
        try:
            with self._transaction() as conn:
                existing = conn.execute(
                    "SELECT port FROM port_allocations WHERE user = ? AND app = ?", (user, app)
                ).fetchone()
                if existing is not None:
                    return int(existing["port"]) == port
                conn.execute(
                    "INSERT INTO port_allocations(user, app, port, allocated_at) VALUES (?, ?, ?, ?)",
                    (user, app, port, now_iso()),
                )
        except StateStoreError as exc:
            if isinstance(exc.__cause__, sqlite3.IntegrityError):
                return False
            raise
        return True

    def get_port(self, user: str, app: str) -> int | None:
        """Return the port recorded for the pair."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT port FROM port_allocations WHERE user = ? AND app = ?", (user, app)
            ).fetchone()
        return int(row["port"]) if row else None

    def ports_for_app(self, app: str) -> set[int]:
        """Return every port recorded for *app*."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT port FROM port_allocations WHERE app = ?", (app,)
            ).fetchall()
        return {int(row["port"]) for row in rows}

    def free_port(self, user: str, app: str) -> int | None:
        """Release the pair's port and return it, or ``None`` if none was held."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT port FROM port_allocations WHERE user = ? AND app = ?", (user, app)
            ).fetchone()
            if row is None:
                return None
            conn.execute("DELETE FROM port_allocations WHERE user = ? AND app = ?", (user, app))
            return int(row["port"])

    def list_ports(self) -> list[dict[str, object]]:
        """Return all port allocations."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT user, app, port, allocated_at FROM port_allocations ORDER BY app, port"
            ).fetchall()
        return [dict(row) for row in rows]

    # ------------------------------------------------------------------
    # Operation record
    def append_op(
        self,
        user: str,
        app: str,
        action: str,
        outcome: str,
        *,
        error: str | None = None,
        correlation_id: str | None = None,
    ) -> int:
        """Append an entry to the operation record and return its id."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO operations(timestamp, user, app, action, outcome, error, correlation_id)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (now_iso(), user, app, action, outcome, error, correlation_id),
            )
            return int(cursor.lastrowid or 0)

    def list_operations(
        self,
        *,
        user: str | None = None,
        app: str | None = None,
        limit: int = 50,
    ) -> list[OperationRecord]:
        """Return the most recent operations, newest first."""
        clauses: list[str] = []
        params: list[object] = []
        if user is not None:
            clauses.append("user = ?")
            params.append(user)
        if app is not None:
            clauses.append("app = ?")
            params.append(app)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(int(limit))
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM operations {where} ORDER BY id DESC LIMIT ?",  # noqa: S608
                params,
            ).fetchall()
        return [
            OperationRecord(
                id=int(row["id"]),
                timestamp=row["timestamp"],
                user=row["user"],
                app=row["app"],
                action=row["action"],
                outcome=row["outcome"],
                error=row["error"],
                correlation_id=row["correlation_id"],
            )
            for row in rows
        ]


def _user_from_row(row: sqlite3.Row) -> User:
    return User(
        username=row["username"],
        home=Path(row["home"]),
        quota=row["quota"],
        banned=bool(row["banned"]),
        created_at=row["created_at"],
    )


def _instance_from_row(row: sqlite3.Row) -> Instance:
    try:
        options = json.loads(row["options_json"] or "{}")
    except json.JSONDecodeError as exc:
        raise StateStoreError(
            f"Corrupt options for {row['user']}/{row['app']}: {exc}"
        ) from exc
    return Instance(
        user=row["user"],
        app=row["app"],
        port=int(row["port"]),
        channel=Channel(row["channel"]),
        version=row["version"],
        release_name=row["release_name"],
        install_path=Path(row["install_path"]),
        config_path=Path(row["config_path"]),
        status=InstanceStatus(row["status"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        options=dict(options) if isinstance(options, dict) else {},
    )


__all__ = ["SCHEMA", "StateStore", "StateStoreError"]
