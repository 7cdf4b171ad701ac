import json
import logging
import os
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from agora.exceptions import StorageError

logger = logging.getLogger(__name__)

# Allowed filter columns for dynamic rule queries to prevent SQL injection.
VALID_RULE_FILTERS = frozenset({
    "owner_id", "session_id", "subject_type", "subject_id",
    "resource_type", "resource_name", "action", "scope",
})


def _utcnow() -> datetime:
    """Return current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def _utcnow_iso() -> str:
    """Return current UTC time as ISO string."""
    return _utcnow().isoformat()


def _uid() -> str:
    return uuid.uuid4().hex[:12]


def _str_or_none(value: Any) -> Optional[str]:
    return None if value is None else str(value)


class SQLiteManager:
    """Durable store for sessions, frames, rules, approvals and participants.

    One persistent connection guarded by a re-entrant lock. Callers that need
    several statements to be atomic relative to other callers wrap them in
    :meth:`transaction`.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        db_dir = os.path.dirname(db_path) if db_path != ":memory:" else ""
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        if db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._lock = threading.RLock()
        self._init_db()

    def close(self) -> None:
        """Close the persistent connection for clean shutdown."""
        with self._lock:
            if self._conn:
                try:
                    self._conn.close()
                except sqlite3.Error:
                    logger.warning("Error closing database %s", self.db_path)
                self._conn = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"SQLiteManager(db_path={self.db_path!r})"

    def _init_db(self) -> None:
        with self._get_connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    id          TEXT PRIMARY KEY,
                    name        TEXT,
                    owner_id    TEXT,
                    status      TEXT NOT NULL DEFAULT 'active',
                    created_at  TEXT NOT NULL,
                    closed_at   TEXT
                );

                CREATE TABLE IF NOT EXISTS frames (
                    seq         INTEGER PRIMARY KEY AUTOINCREMENT,
                    id          TEXT NOT NULL UNIQUE,
                    session_id  TEXT NOT NULL REFERENCES sessions(id),
                    parent_id   TEXT,
                    target_ids  TEXT,
                    timestamp   TEXT NOT NULL,
                    type        TEXT NOT NULL,
                    author_type TEXT NOT NULL,
                    author_id   TEXT,
                    payload     TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_frames_session_ts ON frames(session_id, timestamp);
                CREATE INDEX IF NOT EXISTS idx_frames_parent ON frames(parent_id);

                CREATE TABLE IF NOT EXISTS permission_rules (
                    id            INTEGER PRIMARY KEY AUTOINCREMENT,
                    owner_id      TEXT,
                    session_id    TEXT,
                    subject_type  TEXT NOT NULL,
                    subject_id    TEXT,
                    resource_type TEXT NOT NULL,
                    resource_name TEXT,
                    action        TEXT NOT NULL,
                    scope         TEXT NOT NULL DEFAULT 'permanent',
                    conditions    TEXT,
                    priority      INTEGER NOT NULL DEFAULT 0,
                    created_at    TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS ability_approvals (
                    execution_id       TEXT PRIMARY KEY,
                    user_id            TEXT,
                    session_id         TEXT,
                    requester_agent_id TEXT,
                    ability_name       TEXT NOT NULL,
                    danger_level       TEXT NOT NULL DEFAULT 'safe',
                    status             TEXT NOT NULL DEFAULT 'pending',
                    request_data       TEXT,
                    request_hash       TEXT,
                    reason             TEXT,
                    created_at         TEXT NOT NULL,
                    resolved_at        TEXT
                );

                CREATE TABLE IF NOT EXISTS session_participants (
                    id               INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id       TEXT NOT NULL REFERENCES sessions(id),
                    participant_type TEXT NOT NULL,
                    participant_id   TEXT NOT NULL,
                    role             TEXT NOT NULL DEFAULT 'member',
                    alias            TEXT,
                    joined_at        TEXT NOT NULL,
                    UNIQUE(session_id, participant_type, participant_id)
                );

                CREATE TABLE IF NOT EXISTS agents (
                    id          TEXT PRIMARY KEY,
                    name        TEXT NOT NULL,
                    type        TEXT NOT NULL,
                    api_url     TEXT,
                    config      TEXT DEFAULT '{}',
                    created_at  TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS audit_logs (
                    id          INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_type  TEXT NOT NULL,
                    user_id     TEXT,
                    agent_id    TEXT,
                    session_id  TEXT,
                    details     TEXT,
                    created_at  TEXT NOT NULL
                );
                """
            )

    @contextmanager
    def _get_connection(self):
        """Yield the persistent connection under the thread lock."""
        with self._lock:
            if self._conn is None:
                raise StorageError("Database is closed", db_path=self.db_path)
            try:
                yield self._conn
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise StorageError(f"Storage failure: {exc}", db_path=self.db_path) from exc
            except Exception:
                self._conn.rollback()
                raise

    @contextmanager
    def transaction(self):
        """Hold the connection lock across several calls.

        Statements issued by other threads wait until the block exits, which
        makes read-then-write sequences atomic within this process.
        """
        with self._get_connection() as conn:
            yield conn

    # ── Sessions ──

    def create_session(
        self,
        session_id: Optional[str] = None,
        name: Optional[str] = None,
        owner_id: Optional[Any] = None,
    ) -> Dict[str, Any]:
        sid = str(session_id) if session_id is not None else _uid()
        now = _utcnow_iso()
        with self._get_connection() as conn:
            conn.execute(
                "INSERT INTO sessions (id, name, owner_id, status, created_at) VALUES (?, ?, ?, 'active', ?)",
                (sid, name, _str_or_none(owner_id), now),
            )
        return {"id": sid, "name": name, "owner_id": _str_or_none(owner_id), "status": "active", "created_at": now, "closed_at": None}

    def get_session(self, session_id: Any) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM sessions WHERE id = ?", (str(session_id),)).fetchone()
        return dict(row) if row else None

    def close_session(self, session_id: Any) -> bool:
        with self._get_connection() as conn:
            cur = conn.execute(
                "UPDATE sessions SET status = 'closed', closed_at = ? WHERE id = ? AND status != 'closed'",
                (_utcnow_iso(), str(session_id)),
            )
        return cur.rowcount > 0

    # ── Frames ──

    def insert_frame(self, frame: Dict[str, Any]) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """INSERT INTO frames
                   (id, session_id, parent_id, target_ids, timestamp, type, author_type, author_id, payload)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    frame["id"],
                    str(frame["session_id"]),
                    frame.get("parent_id"),
                    json.dumps(frame["target_ids"]) if frame.get("target_ids") else None,
                    frame["timestamp"],
                    frame["type"],
                    frame["author_type"],
                    _str_or_none(frame.get("author_id")),
                    json.dumps(frame.get("payload")),
                ),
            )

    def get_frame(self, frame_id: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM frames WHERE id = ?", (frame_id,)).fetchone()
        return self._row_to_frame(row) if row else None

    def list_frames(
        self,
        session_id: Any,
        *,
        since: Optional[str] = None,
        before: Optional[str] = None,
        from_compact: bool = False,
        types: Optional[Iterable[str]] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        clauses = ["session_id = ?"]
        params: List[Any] = [str(session_id)]

        with self._get_connection() as conn:
            if from_compact:
                compact = conn.execute(
                    "SELECT timestamp FROM frames WHERE session_id = ? AND type = 'compact' "
                    "ORDER BY timestamp DESC, seq DESC LIMIT 1",
                    (str(session_id),),
                ).fetchone()
                if compact:
                    clauses.append("timestamp >= ?")
                    params.append(compact["timestamp"])
            elif since:
                clauses.append("timestamp > ?")
                params.append(since)

            if before:
                clauses.append("timestamp < ?")
                params.append(before)

            type_list = list(types or [])
            if type_list:
                clauses.append(f"type IN ({', '.join('?' for _ in type_list)})")
                params.extend(type_list)

            where = " AND ".join(clauses)
            if before and limit:
                rows = conn.execute(
                    f"SELECT * FROM frames WHERE {where} ORDER BY timestamp DESC, seq DESC LIMIT ?",
                    params + [int(limit)],
                ).fetchall()
                rows = list(reversed(rows))
            else:
                sql = f"SELECT * FROM frames WHERE {where} ORDER BY timestamp ASC, seq ASC"
                if limit:
                    sql += " LIMIT ?"
                    params.append(int(limit))
                rows = conn.execute(sql, params).fetchall()
        return [self._row_to_frame(r) for r in rows]

    def child_frames(self, parent_id: str) -> List[Dict[str, Any]]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM frames WHERE parent_id = ? ORDER BY timestamp ASC, seq ASC", (parent_id,)
            ).fetchall()
        return [self._row_to_frame(r) for r in rows]

    def frames_by_target(self, target_id: str, session_id: Optional[Any] = None) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM frames WHERE target_ids LIKE ?"
        params: List[Any] = [f'%"{target_id}"%']
        if session_id is not None:
            sql += " AND session_id = ?"
            params.append(str(session_id))
        sql += " ORDER BY timestamp ASC, seq ASC"
        with self._get_connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        # LIKE is a prefilter; confirm exact membership
        return [f for f in (self._row_to_frame(r) for r in rows) if target_id in f["target_ids"]]

    def count_frames(
        self,
        session_id: Any,
        since: Optional[str] = None,
        types: Optional[Iterable[str]] = None,
    ) -> int:
        sql = "SELECT COUNT(*) AS count FROM frames WHERE session_id = ?"
        params: List[Any] = [str(session_id)]
        if since:
            sql += " AND timestamp > ?"
            params.append(since)
        type_list = list(types or [])
        if type_list:
            sql += f" AND type IN ({', '.join('?' for _ in type_list)})"
            params.extend(type_list)
        with self._get_connection() as conn:
            row = conn.execute(sql, params).fetchone()
        return int(row["count"])

    @staticmethod
    def _row_to_frame(row: sqlite3.Row) -> Dict[str, Any]:
        d = dict(row)
        d.pop("seq", None)
        d["target_ids"] = json.loads(d["target_ids"]) if d.get("target_ids") else []
        payload = d.get("payload")
        if payload is not None:
            try:
                d["payload"] = json.loads(payload)
            except json.JSONDecodeError:
                logger.error("Failed to parse payload for frame %s", d.get("id"))
                d["payload"] = {"error": "Failed to parse payload"}
        return d

    # ── Permission rules ──

    def insert_rule(self, rule: Dict[str, Any]) -> Dict[str, Any]:
        now = _utcnow_iso()
        with self._get_connection() as conn:
            cur = conn.execute(
                """INSERT INTO permission_rules
                   (owner_id, session_id, subject_type, subject_id, resource_type, resource_name,
                    action, scope, conditions, priority, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    _str_or_none(rule.get("owner_id")),
                    _str_or_none(rule.get("session_id")),
                    rule["subject_type"],
                    _str_or_none(rule.get("subject_id")),
                    rule["resource_type"],
                    rule.get("resource_name"),
                    rule["action"],
                    rule.get("scope", "permanent"),
                    json.dumps(rule["conditions"]) if rule.get("conditions") else None,
                    int(rule.get("priority", 0)),
                    rule.get("created_at") or now,
                ),
            )
            row = conn.execute("SELECT * FROM permission_rules WHERE id = ?", (cur.lastrowid,)).fetchone()
        return self._row_to_rule(row)

    def get_rule(self, rule_id: int) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM permission_rules WHERE id = ?", (int(rule_id),)).fetchone()
        return self._row_to_rule(row) if row else None

    def delete_rule(self, rule_id: int) -> bool:
        with self._get_connection() as conn:
            cur = conn.execute("DELETE FROM permission_rules WHERE id = ?", (int(rule_id),))
        return cur.rowcount > 0

    def delete_session_rules(self, session_id: Any) -> int:
        with self._get_connection() as conn:
            cur = conn.execute("DELETE FROM permission_rules WHERE session_id = ?", (str(session_id),))
        return cur.rowcount

    def list_rules(self, **filters: Any) -> List[Dict[str, Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        for key, value in filters.items():
            if key not in VALID_RULE_FILTERS:
                raise ValueError(f"Invalid rule filter: {key}")
            if value is None:
                clauses.append(f"{key} IS NULL")
            else:
                clauses.append(f"{key} = ?")
                params.append(str(value) if key in {"owner_id", "session_id", "subject_id"} else value)
        where = " WHERE " + " AND ".join(clauses) if clauses else ""
        with self._get_connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM permission_rules{where} ORDER BY priority DESC, id ASC", params
            ).fetchall()
        return [self._row_to_rule(r) for r in rows]

    def find_candidate_rules(
        self,
        *,
        subject_type: str,
        subject_id: Optional[Any],
        resource_type: str,
        resource_name: Optional[str],
        session_id: Optional[Any],
        owner_id: Optional[Any],
    ) -> List[Dict[str, Any]]:
        with self._get_connection() as conn:
            rows = conn.execute(
                """SELECT * FROM permission_rules
                   WHERE (subject_type = '*' OR subject_type = ?)
                     AND (subject_id IS NULL OR subject_id = ?)
                     AND (resource_type = '*' OR resource_type = ?)
                     AND (resource_name IS NULL OR resource_name = ?)
                     AND (session_id IS NULL OR session_id = ?)
                     AND (owner_id IS NULL OR owner_id = ?)""",
                (
                    subject_type,
                    _str_or_none(subject_id),
                    resource_type,
                    resource_name,
                    _str_or_none(session_id),
                    _str_or_none(owner_id),
                ),
            ).fetchall()
        return [self._row_to_rule(r) for r in rows]

    @staticmethod
    def _row_to_rule(row: sqlite3.Row) -> Dict[str, Any]:
        d = dict(row)
        d["conditions"] = json.loads(d["conditions"]) if d.get("conditions") else None
        return d

    # ── Ability approvals ──

    def insert_approval(self, approval: Dict[str, Any]) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """INSERT INTO ability_approvals
                   (execution_id, user_id, session_id, requester_agent_id, ability_name, danger_level,
                    status, request_data, request_hash, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, 'pending', ?, ?, ?)""",
                (
                    approval["execution_id"],
                    _str_or_none(approval.get("user_id")),
                    _str_or_none(approval.get("session_id")),
                    _str_or_none(approval.get("requester_agent_id")),
                    approval["ability_name"],
                    approval.get("danger_level", "safe"),
                    json.dumps(approval.get("params") or {}),
                    approval.get("request_hash"),
                    approval.get("created_at") or _utcnow_iso(),
                ),
            )

    def resolve_approval(self, execution_id: str, status: str, reason: Optional[str] = None) -> bool:
        """Move a pending approval to a terminal status. False if it was already resolved."""
        with self._get_connection() as conn:
            cur = conn.execute(
                """UPDATE ability_approvals SET status = ?, reason = ?, resolved_at = ?
                   WHERE execution_id = ? AND status = 'pending'""",
                (status, reason, _utcnow_iso(), execution_id),
            )
        return cur.rowcount > 0

    def get_approval(self, execution_id: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM ability_approvals WHERE execution_id = ?", (execution_id,)
            ).fetchone()
        return self._row_to_approval(row) if row else None

    def list_approvals(
        self,
        user_id: Optional[Any] = None,
        status: Optional[str] = None,
        session_id: Optional[Any] = None,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(str(user_id))
        if status:
            clauses.append("status = ?")
            params.append(status)
        if session_id is not None:
            clauses.append("session_id = ?")
            params.append(str(session_id))
        where = " WHERE " + " AND ".join(clauses) if clauses else ""
        order = "ASC" if status == "pending" else "DESC"
        with self._get_connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM ability_approvals{where} ORDER BY created_at {order} LIMIT ?",
                params + [int(limit)],
            ).fetchall()
        return [self._row_to_approval(r) for r in rows]

    @staticmethod
    def _row_to_approval(row: sqlite3.Row) -> Dict[str, Any]:
        d = dict(row)
        d["params"] = json.loads(d.pop("request_data") or "{}")
        return d

    # ── Participants ──

    def add_participant(
        self,
        session_id: Any,
        participant_type: str,
        participant_id: Any,
        role: str = "member",
        alias: Optional[str] = None,
    ) -> Dict[str, Any]:
        with self._get_connection() as conn:
            cur = conn.execute(
                """INSERT INTO session_participants
                   (session_id, participant_type, participant_id, role, alias, joined_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (str(session_id), participant_type, str(participant_id), role, alias, _utcnow_iso()),
            )
            row = conn.execute("SELECT * FROM session_participants WHERE id = ?", (cur.lastrowid,)).fetchone()
        return dict(row)

    def remove_participant(self, session_id: Any, participant_type: str, participant_id: Any) -> bool:
        with self._get_connection() as conn:
            cur = conn.execute(
                """DELETE FROM session_participants
                   WHERE session_id = ? AND participant_type = ? AND participant_id = ?""",
                (str(session_id), participant_type, str(participant_id)),
            )
        return cur.rowcount > 0

    def update_participant_role(self, session_id: Any, participant_type: str, participant_id: Any, role: str) -> bool:
        with self._get_connection() as conn:
            cur = conn.execute(
                """UPDATE session_participants SET role = ?
                   WHERE session_id = ? AND participant_type = ? AND participant_id = ?""",
                (role, str(session_id), participant_type, str(participant_id)),
            )
        return cur.rowcount > 0

    def list_participants(self, session_id: Any, role: Optional[str] = None) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM session_participants WHERE session_id = ?"
        params: List[Any] = [str(session_id)]
        if role:
            sql += " AND role = ?"
            params.append(role)
        sql += " ORDER BY joined_at ASC, id ASC"
        with self._get_connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [dict(r) for r in rows]

    def is_participant(self, session_id: Any, participant_type: str, participant_id: Any) -> bool:
        with self._get_connection() as conn:
            row = conn.execute(
                """SELECT 1 FROM session_participants
                   WHERE session_id = ? AND participant_type = ? AND participant_id = ?""",
                (str(session_id), participant_type, str(participant_id)),
            ).fetchone()
        return row is not None

    # ── Agents ──

    def add_agent(
        self,
        name: str,
        agent_type: str,
        agent_id: Optional[Any] = None,
        api_url: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        aid = str(agent_id) if agent_id is not None else _uid()
        with self._get_connection() as conn:
            conn.execute(
                "INSERT INTO agents (id, name, type, api_url, config, created_at) VALUES (?, ?, ?, ?, ?, ?)",
                (aid, name, agent_type, api_url, json.dumps(config or {}), _utcnow_iso()),
            )
        return self.get_agent(aid)  # type: ignore[return-value]

    def get_agent(self, agent_id: Any) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM agents WHERE id = ?", (str(agent_id),)).fetchone()
        if row is None:
            return None
        d = dict(row)
        d["config"] = json.loads(d["config"] or "{}")
        return d

    # ── Audit ──

    def log_audit(self, event: str, details: Dict[str, Any]) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """INSERT INTO audit_logs (event_type, user_id, agent_id, session_id, details, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    event,
                    _str_or_none(details.get("user_id")),
                    _str_or_none(details.get("agent_id")),
                    _str_or_none(details.get("session_id")),
                    json.dumps(details, default=str),
                    _utcnow_iso(),
                ),
            )

    def list_audit(self, event: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM audit_logs"
        params: List[Any] = []
        if event:
            sql += " WHERE event_type = ?"
            params.append(event)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(int(limit))
        with self._get_connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        result = []
        for row in rows:
            d = dict(row)
            d["details"] = json.loads(d["details"] or "{}")
            result.append(d)
        return result
