"""Transcript compaction: snapshots, compact frames, and context loading.

A compact frame carries ``{context: <summary>, snapshot: {frame_id: payload}}``.
The snapshot holds compiled payloads of the visible message frames at the
moment of compaction, so compiling ``[compact, *later_frames]`` gives the same
value for every snapshot id as compiling the full history.

Compaction never truncates the log. It bounds what is replayed into a
language model's context (see :func:`load_context`).
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional

from agora.configs.base import CompactionConfig
from agora.frames.builders import FrameWriter
from agora.frames.compiler import compile_frames, is_hidden
from agora.frames.store import FrameFilter, FrameStore
from agora.frames.types import AuthorType, Frame, FrameType
from agora.pubsub import Broadcaster

logger = logging.getLogger(__name__)

_ROLE_LABELS = {
    AuthorType.USER: "User",
    AuthorType.AGENT: "Assistant",
    AuthorType.SYSTEM: "System",
}


def build_snapshot(frames: Iterable[Frame]) -> Dict[str, Any]:
    frames = list(frames)
    compiled = compile_frames(frames)
    snapshot: Dict[str, Any] = {}
    for frame in frames:
        if frame.type != FrameType.MESSAGE:
            continue
        payload = compiled.get(frame.id)
        if payload is None or is_hidden(payload):
            continue
        snapshot[frame.id] = payload
    return snapshot


def payload_text(payload: Any) -> str:
    if isinstance(payload, str):
        return payload
    if isinstance(payload, dict):
        if payload.get("content"):
            return str(payload["content"])
        if payload.get("text"):
            return str(payload["text"])
    return json.dumps(payload, sort_keys=True, default=str)


def build_conversation(frames: Iterable[Frame]) -> str:
    """Plain ``Role: text`` transcript of message frames, for summarizers."""
    frames = list(frames)
    compiled = compile_frames(frames)
    lines: List[str] = []
    for frame in frames:
        if frame.type != FrameType.MESSAGE:
            continue
        payload = compiled.get(frame.id)
        if not payload:
            continue
        lines.append(f"{_ROLE_LABELS.get(frame.author_type, 'User')}: {payload_text(payload)}")
    return "\n\n".join(lines)


def load_context(store: FrameStore, session_id: str, max_recent_frames: int = 50) -> List[Dict[str, str]]:
    """Model-ready ``[{role, content}]`` history starting at the latest compact frame."""
    frames = store.list(session_id, FrameFilter(from_compact=True, limit=max_recent_frames))
    if not frames:
        return []

    compiled = compile_frames(frames)
    messages: List[Dict[str, str]] = []
    for frame in frames:
        payload = compiled.get(frame.id)
        if frame.type == FrameType.COMPACT:
            context = frame.payload.get("context") if isinstance(frame.payload, dict) else None
            if context:
                messages.append({
                    "role": "assistant",
                    "content": (
                        "[RESTORED CONTEXT - Continue from here]\n\n"
                        f"{context}\n\n[END RESTORED CONTEXT - Resume conversation below]"
                    ),
                })
        elif frame.type == FrameType.MESSAGE and payload:
            role = payload.get("role") if isinstance(payload, dict) else None
            if role is None:
                role = "assistant" if frame.author_type == AuthorType.AGENT else "user"
            if role == "system":
                role = "user"
            messages.append({"role": role, "content": payload_text(payload)})
        elif frame.type == FrameType.REQUEST and isinstance(payload, dict) and payload.get("feedback"):
            messages.append({
                "role": "user",
                "content": f"[Interaction Result]\n{json.dumps(payload['feedback'], default=str)}",
            })
        elif frame.type == FrameType.RESULT and payload:
            messages.append({"role": "user", "content": f"[System Result]\n{json.dumps(payload, default=str)}"})
    return messages


class Compactor:
    """Emits compact frames, either on demand or when message counts cross thresholds.

    ``summarize`` callables receive the conversation text and return the summary;
    producing it (usually a language model call) happens outside the core.
    """

    def __init__(
        self,
        store: FrameStore,
        config: Optional[CompactionConfig] = None,
        broadcaster: Optional[Broadcaster] = None,
    ):
        self.store = store
        self.writer = FrameWriter(store)
        self.config = config or CompactionConfig()
        self.broadcaster = broadcaster
        self._timers: Dict[str, threading.Timer] = {}
        self._lock = threading.Lock()

    def messages_since_compact(self, session_id: str) -> int:
        latest = self.store.latest_compact(session_id)
        since = latest.timestamp if latest else None
        return self.store.count(session_id, since=since, types=[FrameType.MESSAGE])

    def trigger_compaction(self, session_id: str, summary_text: str) -> Frame:
        session_id = str(session_id)
        message_count = self.messages_since_compact(session_id)
        snapshot = build_snapshot(self.store.list(session_id))
        frame = self.writer.compact(session_id, summary_text, snapshot)
        logger.info(
            "Compacted session %s: %d messages since last compact, %d snapshot entries",
            session_id, message_count, len(snapshot),
        )
        if self.broadcaster is not None:
            self.broadcaster.broadcast(session_id, "compaction_complete", {
                "frame_id": frame.id,
                "message_count": message_count,
            })
        return frame

    def compact_with(self, session_id: str, summarize: Callable[[str], Optional[str]]) -> Dict[str, Any]:
        """Summarize the conversation since the latest compact and emit a compact frame."""
        session_id = str(session_id)
        conversation = build_conversation(self.store.list(session_id, FrameFilter(from_compact=True)))
        if len(conversation) < 100:
            return {"success": False, "reason": "Not enough content"}

        summary = summarize(conversation)
        if not summary:
            return {"success": False, "reason": "No summary returned"}

        frame = self.trigger_compaction(session_id, summary)
        return {"success": True, "frame_id": frame.id, "summary_length": len(summary)}

    def check_compaction(
        self,
        session_id: str,
        summarize: Callable[[str], Optional[str]],
        force: bool = False,
    ) -> Dict[str, Any]:
        """Compact immediately at ``max_threshold``, debounce between min and max."""
        session_id = str(session_id)
        if not self.config.enabled and not force:
            return {"triggered": False, "reason": "Compaction disabled"}

        count = self.messages_since_compact(session_id)
        if count < self.config.min_threshold and not force:
            self.cancel(session_id)
            return {"triggered": False, "reason": "Below threshold"}

        if force or count >= self.config.max_threshold:
            self.cancel(session_id)
            result = self.compact_with(session_id, summarize)
            return {"triggered": True, "debounced": False, **result}

        self._schedule(session_id, summarize)
        return {"triggered": True, "debounced": True, "reason": "Debounce started"}

    def _schedule(self, session_id: str, summarize: Callable[[str], Optional[str]]) -> None:
        def _fire() -> None:
            with self._lock:
                if self._timers.get(session_id) is not timer:
                    return
                self._timers.pop(session_id, None)
            try:
                self.compact_with(session_id, summarize)
            except Exception:
                logger.exception("Debounced compaction failed for session %s", session_id)

        timer = threading.Timer(self.config.debounce_ms / 1000.0, _fire)
        timer.daemon = True
        with self._lock:
            previous = self._timers.get(session_id)
            if previous is not None:
                previous.cancel()
            self._timers[session_id] = timer
        timer.start()

    def cancel(self, session_id: str) -> None:
        with self._lock:
            timer = self._timers.pop(session_id, None)
        if timer is not None:
            timer.cancel()

    def pending_sessions(self) -> List[str]:
        with self._lock:
            return list(self._timers)

    def close(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()
