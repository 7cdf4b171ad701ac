"""Typed frame constructors on top of :class:`FrameStore`."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from agora.frames.store import FrameStore
from agora.frames.types import AuthorType, Frame, FrameType, frame_target


class FrameWriter:
    """Builds and appends the frame shapes the core emits.

    Message payloads are ``{role, content, hidden}``. Content is stored as
    given; the core never parses it.
    """

    def __init__(self, store: FrameStore):
        self.store = store

    def user_message(self, session_id: str, user_id: Any, content: Any, hidden: bool = False) -> Frame:
        return self.store.append(Frame(
            session_id=session_id,
            type=FrameType.MESSAGE,
            author_type=AuthorType.USER,
            author_id=user_id,
            payload={"role": "user", "content": content, "hidden": hidden},
        ))

    def agent_message(self, session_id: str, agent_id: Any, content: Any, hidden: bool = False) -> Frame:
        return self.store.append(Frame(
            session_id=session_id,
            type=FrameType.MESSAGE,
            author_type=AuthorType.AGENT,
            author_id=agent_id,
            payload={"role": "assistant", "content": content, "hidden": hidden},
        ))

    def system_message(self, session_id: str, content: Any, hidden: bool = True) -> Frame:
        return self.store.append(Frame(
            session_id=session_id,
            type=FrameType.MESSAGE,
            author_type=AuthorType.SYSTEM,
            payload={"role": "system", "content": content, "hidden": hidden},
        ))

    def request(
        self,
        session_id: str,
        agent_id: Any,
        action: str,
        data: Optional[Dict[str, Any]] = None,
        parent_id: Optional[str] = None,
        target_ids: Optional[List[str]] = None,
    ) -> Frame:
        return self.store.append(Frame(
            session_id=session_id,
            type=FrameType.REQUEST,
            author_type=AuthorType.AGENT,
            author_id=agent_id,
            parent_id=parent_id,
            target_ids=target_ids or [f"system:{action}"],
            payload={"action": action, **(data or {})},
        ))

    def result(self, session_id: str, parent_id: Optional[str], agent_id: Any, result: Any) -> Frame:
        return self.store.append(Frame(
            session_id=session_id,
            type=FrameType.RESULT,
            author_type=AuthorType.SYSTEM,
            parent_id=parent_id,
            target_ids=[f"agent:{agent_id}"] if agent_id is not None else [],
            payload=result,
        ))

    def update(self, session_id: str, target_frame_id: str, payload: Any) -> Frame:
        return self.store.append(Frame(
            session_id=session_id,
            type=FrameType.UPDATE,
            author_type=AuthorType.SYSTEM,
            target_ids=[frame_target(target_frame_id)],
            payload=payload,
        ))

    def compact(self, session_id: str, context: str, snapshot: Optional[Dict[str, Any]] = None) -> Frame:
        return self.store.append(Frame(
            session_id=session_id,
            type=FrameType.COMPACT,
            author_type=AuthorType.SYSTEM,
            payload={"context": context, "snapshot": dict(snapshot or {})},
        ))
