from __future__ import annotations

import json
import os
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Any, TypeVar

from .models import KINDS, Resource
from .settings import settings

R = TypeVar("R", bound=Resource)


class StoreError(Exception):
    """Base class for store failures. The reconciler retries the whole cycle on these."""


class NotFound(StoreError):
    pass


class Conflict(StoreError):
    """Name already taken, or the object changed since it was read."""


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (Docker creates one for a
    bind-mounted file that does not exist yet), the DB file goes inside it.
    """
    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "qcr.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS objects (
              uid TEXT PRIMARY KEY,
              kind TEXT NOT NULL, -- Cluster|Member|Instance
              namespace TEXT NOT NULL,
              name TEXT NOT NULL,
              labels TEXT NOT NULL,
              owner_uid TEXT,
              spec TEXT NOT NULL,
              status TEXT NOT NULL,
              resource_version INTEGER NOT NULL,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL,
              UNIQUE(kind, namespace, name),
              FOREIGN KEY(owner_uid) REFERENCES objects(uid) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              namespace TEXT,
              cluster TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_objects_kind_ns ON objects(kind, namespace);
            CREATE INDEX IF NOT EXISTS idx_objects_owner ON objects(owner_uid);
            """
        )


def log_event(level: str, message: str, cluster: str | None = None, namespace: str | None = None) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, namespace, cluster, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), level.upper(), namespace, cluster, message),
        )


def latest_events(limit: int = 100, cluster: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if cluster:
            rows = conn.execute(
                "SELECT * FROM events WHERE cluster=? ORDER BY id DESC LIMIT ?", (cluster, limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]


def _row_to_object(row: sqlite3.Row) -> Resource:
    cls: Any = KINDS[row["kind"]]
    return cls(
        name=row["name"],
        namespace=row["namespace"],
        labels=json.loads(row["labels"]),
        owner_uid=row["owner_uid"],
        uid=row["uid"],
        resource_version=row["resource_version"],
        spec=cls.parse_spec(json.loads(row["spec"])),
        status=cls.parse_status(json.loads(row["status"])),
    )


def _raise_stale(conn: sqlite3.Connection, obj: Resource) -> None:
    row = conn.execute("SELECT resource_version FROM objects WHERE uid=?", (obj.uid,)).fetchone()
    if row is None:
        raise NotFound(f"{obj.KIND} {obj.namespace}/{obj.name} not found")
    raise Conflict(
        f"{obj.KIND} {obj.namespace}/{obj.name} was modified "
        f"(have version {obj.resource_version}, store has {row['resource_version']})"
    )


def get_object(cls: type[R], namespace: str, name: str) -> R:
    with connect() as conn:
        row = conn.execute(
            "SELECT * FROM objects WHERE kind=? AND namespace=? AND name=?",
            (cls.KIND, namespace, name),
        ).fetchone()
    if row is None:
        raise NotFound(f"{cls.KIND} {namespace}/{name} not found")
    return _row_to_object(row)  # type: ignore[return-value]


def list_objects(cls: type[R], namespace: str | None = None, labels: dict[str, str] | None = None) -> list[R]:
    """List objects of one kind. Label matching is exact on every given key.

    No ordering is guaranteed; callers sort.
    """
    with connect() as conn:
        if namespace is None:
            rows = conn.execute("SELECT * FROM objects WHERE kind=?", (cls.KIND,)).fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM objects WHERE kind=? AND namespace=?", (cls.KIND, namespace)
            ).fetchall()

    out: list[R] = []
    for r in rows:
        obj = _row_to_object(r)
        if labels and any(obj.labels.get(k) != v for k, v in labels.items()):
            continue
        out.append(obj)  # type: ignore[arg-type]
    return out


def create_object(obj: R) -> R:
    uid = uuid.uuid4().hex
    now = utc_now()
    try:
        with connect() as conn:
            conn.execute(
                """
                INSERT INTO objects (uid, kind, namespace, name, labels, owner_uid, spec, status, resource_version, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
                """,
                (
                    uid,
                    obj.KIND,
                    obj.namespace,
                    obj.name,
                    json.dumps(obj.labels, sort_keys=True),
                    obj.owner_uid,
                    json.dumps(obj.spec_dict(), sort_keys=True),
                    json.dumps(obj.status_dict(), sort_keys=True),
                    now,
                    now,
                ),
            )
    except sqlite3.IntegrityError as e:
        # Either the name is taken or the owner has been deleted meanwhile.
        raise Conflict(f"Cannot create {obj.KIND} {obj.namespace}/{obj.name}: {e}") from e
    obj.uid = uid
    obj.resource_version = 1
    return obj


def update_object(obj: R) -> R:
    """Write labels, owner and spec. Fails with Conflict if the object changed since it was read."""
    with connect() as conn:
        cur = conn.execute(
            """
            UPDATE objects
            SET labels=?, owner_uid=?, spec=?, resource_version=resource_version+1, updated_at=?
            WHERE uid=? AND resource_version=?
            """,
            (
                json.dumps(obj.labels, sort_keys=True),
                obj.owner_uid,
                json.dumps(obj.spec_dict(), sort_keys=True),
                utc_now(),
                obj.uid,
                obj.resource_version,
            ),
        )
        if cur.rowcount == 0:
            _raise_stale(conn, obj)
    obj.resource_version += 1
    return obj


def update_status(obj: R) -> R:
    """Write the status sub-object only, with the same version check as update_object."""
    with connect() as conn:
        cur = conn.execute(
            """
            UPDATE objects
            SET status=?, resource_version=resource_version+1, updated_at=?
            WHERE uid=? AND resource_version=?
            """,
            (json.dumps(obj.status_dict(), sort_keys=True), utc_now(), obj.uid, obj.resource_version),
        )
        if cur.rowcount == 0:
            _raise_stale(conn, obj)
    obj.resource_version += 1
    return obj


def delete_object(obj: Resource) -> None:
    """Delete an object. Everything it owns goes with it."""
    with connect() as conn:
        cur = conn.execute("DELETE FROM objects WHERE uid=?", (obj.uid,))
        if cur.rowcount == 0:
            raise NotFound(f"{obj.KIND} {obj.namespace}/{obj.name} not found")
