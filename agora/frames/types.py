"""Frame data types and the monotonic frame clock."""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class FrameType(str, Enum):
    MESSAGE = "message"   # user/agent/system message
    REQUEST = "request"   # interaction request
    RESULT = "result"     # interaction result
    UPDATE = "update"     # replaces the payload of target frames
    COMPACT = "compact"   # checkpoint snapshot


class AuthorType(str, Enum):
    USER = "user"
    AGENT = "agent"
    SYSTEM = "system"


FRAME_TARGET_PREFIX = "frame:"


def frame_target(frame_id: str) -> str:
    return f"{FRAME_TARGET_PREFIX}{frame_id}"


@dataclass
class Frame:
    session_id: str
    type: FrameType
    author_type: AuthorType
    payload: Any = None
    id: Optional[str] = None
    parent_id: Optional[str] = None
    target_ids: List[str] = field(default_factory=list)
    timestamp: Optional[str] = None
    author_id: Optional[str] = None

    def __post_init__(self) -> None:
        self.type = FrameType(self.type)
        self.author_type = AuthorType(self.author_type)
        self.target_ids = list(self.target_ids or [])

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        data["author_type"] = self.author_type.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Frame":
        return cls(
            id=data.get("id"),
            session_id=data["session_id"],
            parent_id=data.get("parent_id"),
            target_ids=data.get("target_ids") or [],
            timestamp=data.get("timestamp"),
            type=data["type"],
            author_type=data["author_type"],
            author_id=data.get("author_id"),
            payload=data.get("payload"),
        )


class FrameClock:
    """Strictly ascending frame timestamps.

    Format: millisecond ISO-8601 UTC followed by a 6-digit sequence counter,
    e.g. ``2026-02-07T12:34:56.789000123Z``. Lexical order equals issue order.
    """

    _COUNTER_LIMIT = 999999

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last = ""
        self._counter = 0

    def now(self) -> str:
        with self._lock:
            base = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3]
            self._counter = (self._counter + 1) % (self._COUNTER_LIMIT + 1)
            stamp = f"{base}{self._counter:06d}Z"
            if stamp <= self._last:
                last_counter = int(self._last[-7:-1])
                if last_counter >= self._COUNTER_LIMIT:
                    # counter exhausted inside one millisecond; bump the millisecond
                    last_dt = datetime.strptime(self._last[:-7], "%Y-%m-%dT%H:%M:%S.%f")
                    bumped = last_dt.replace(tzinfo=timezone.utc) + timedelta(milliseconds=1)
                    base = bumped.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3]
                    stamp = f"{base}000000Z"
                else:
                    stamp = f"{self._last[:-7]}{last_counter + 1:06d}Z"
            self._last = stamp
            return stamp
