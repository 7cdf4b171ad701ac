"""Append-only per-session frame log."""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from agora.db.sqlite import SQLiteManager
from agora.exceptions import StorageError, ValidationError
from agora.frames.types import Frame, FrameClock, FrameType
from agora.pubsub import Broadcaster

logger = logging.getLogger(__name__)


@dataclass
class FrameFilter:
    """Query options for :meth:`FrameStore.list`.

    ``from_compact`` starts at the latest compact frame and takes precedence
    over ``since``. ``before`` with ``limit`` pages backwards, returning the
    newest ``limit`` frames older than ``before`` in chronological order.
    """
    from_compact: bool = False
    since: Optional[str] = None
    before: Optional[str] = None
    types: Optional[Sequence[str]] = None
    limit: Optional[int] = None


class FrameStore:
    """Append-only frame log keyed by ``(session_id, timestamp)``.

    There is no update or delete: edits are new ``update`` frames. Appends
    within one session run under that session's lock, so timestamps and
    storage order agree. Different sessions append concurrently.
    """

    def __init__(
        self,
        db: SQLiteManager,
        broadcaster: Optional[Broadcaster] = None,
        clock: Optional[FrameClock] = None,
    ) -> None:
        self.db = db
        self.broadcaster = broadcaster
        self.clock = clock or FrameClock()
        self._session_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _session_lock(self, session_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._session_locks.get(session_id)
            if lock is None:
                lock = threading.Lock()
                self._session_locks[session_id] = lock
            return lock

    def append(self, frame: Frame) -> Frame:
        """Store ``frame`` and return the stored copy.

        The id is kept when given. The timestamp always comes from the
        store's clock, so a caller-supplied one is ignored. Closed and
        unknown sessions raise :class:`StorageError`.
        """
        if not frame.session_id:
            raise ValidationError("Frame requires a session_id")
        if frame.type == FrameType.UPDATE and not frame.target_ids:
            raise ValidationError("Update frames require at least one target id")

        session_id = str(frame.session_id)
        with self._session_lock(session_id):
            session = self.db.get_session(session_id)
            if session is None:
                raise StorageError(f"Unknown session: {session_id}", session_id=session_id)
            if session.get("status") == "closed":
                raise StorageError(f"Session is closed: {session_id}", session_id=session_id)

            stored = Frame(
                id=frame.id or uuid.uuid4().hex,
                session_id=session_id,
                parent_id=frame.parent_id,
                target_ids=list(frame.target_ids),
                timestamp=self.clock.now(),
                type=frame.type,
                author_type=frame.author_type,
                author_id=None if frame.author_id is None else str(frame.author_id),
                payload=frame.payload,
            )
            self.db.insert_frame(stored.to_dict())

        logger.debug("Appended %s frame %s to session %s", stored.type.value, stored.id, session_id)
        if self.broadcaster is not None:
            self.broadcaster.broadcast(session_id, "frame", stored.to_dict())
        return stored

    def list(self, session_id: str, frame_filter: Optional[FrameFilter] = None) -> List[Frame]:
        f = frame_filter or FrameFilter()
        rows = self.db.list_frames(
            session_id,
            since=f.since,
            before=f.before,
            from_compact=f.from_compact,
            types=[FrameType(t).value for t in (f.types or [])],
            limit=f.limit,
        )
        return [Frame.from_dict(r) for r in rows]

    def get(self, frame_id: str) -> Optional[Frame]:
        row = self.db.get_frame(frame_id)
        return Frame.from_dict(row) if row else None

    def children(self, parent_id: str) -> List[Frame]:
        return [Frame.from_dict(r) for r in self.db.child_frames(parent_id)]

    def by_target(self, target_id: str, session_id: Optional[str] = None) -> List[Frame]:
        return [Frame.from_dict(r) for r in self.db.frames_by_target(target_id, session_id)]

    def latest_compact(self, session_id: str) -> Optional[Frame]:
        rows = self.db.list_frames(session_id, types=[FrameType.COMPACT.value])
        return Frame.from_dict(rows[-1]) if rows else None

    def count(
        self,
        session_id: str,
        since: Optional[str] = None,
        types: Optional[Sequence[str]] = None,
    ) -> int:
        return self.db.count_frames(
            session_id,
            since=since,
            types=[FrameType(t).value for t in (types or [])],
        )
