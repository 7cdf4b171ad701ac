"""Interaction bus: addressed request/response between agents, users and the system."""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import deque
from concurrent.futures import Future
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from agora.configs.base import AgoraConfig
from agora.exceptions import AgoraError, InteractionTimeout, NotFound, ValidationError
from agora.observability import AuditEvent, AuditLog
from agora.pubsub import Broadcaster

logger = logging.getLogger(__name__)


class Target:
    USER = "@user"        # needs a human answer
    SYSTEM = "@system"    # system handlers
    SESSION = "@session"  # current session
    AGENT = "@agent"      # queued for the session's agent

    FUNCTION = "function"  # handler key for non-special targets


class InteractionStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass
class Interaction:
    target: str
    kind: str
    payload: Any = None
    interaction_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: float = field(default_factory=time.time)
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    source_agent_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class InteractionResult:
    status: InteractionStatus
    result: Any = None

    @property
    def ok(self) -> bool:
        return self.status == InteractionStatus.SUCCESS


@dataclass
class _Pending:
    interaction: Interaction
    future: "Future[InteractionResult]"
    deadline: Optional[float]
    timer: Optional[threading.Timer] = None


Handler = Callable[[Interaction], Any]


class InteractionBus:
    """Routes interactions and tracks the ones awaiting a response.

    Each pending interaction settles exactly once: by :meth:`respond`, by its
    timeout, or by session cancellation, whichever removes it from the pending
    table first. An agent can never answer an interaction it started.

    Usage::

        bus = InteractionBus()
        interaction = bus.create("@user", "confirm", {"question": "Proceed?"},
                                 session_id="s1", source_agent_id="planner")
        future = bus.request(interaction, timeout_ms=30000)
        # elsewhere: bus.respond(interaction.interaction_id, {"answer": "yes"})
        outcome = future.result()
    """

    def __init__(
        self,
        config: Optional[AgoraConfig] = None,
        broadcaster: Optional[Broadcaster] = None,
        audit: Optional[AuditLog] = None,
    ) -> None:
        self.config = config or AgoraConfig()
        self.broadcaster = broadcaster
        self.audit = audit or AuditLog()
        self._lock = threading.RLock()
        self._pending: Dict[str, _Pending] = {}
        self._handlers: Dict[str, Handler] = {}
        self._history: Deque[Interaction] = deque(maxlen=self.config.history_max)
        self._agent_queues: Dict[str, List[Dict[str, Any]]] = {}
        self._register_default_handlers()

    # ── Creation / routing ──

    def create(
        self,
        target: str,
        kind: str,
        payload: Any = None,
        *,
        session_id: Optional[Any] = None,
        user_id: Optional[Any] = None,
        source_agent_id: Optional[Any] = None,
        interaction_id: Optional[str] = None,
    ) -> Interaction:
        if not target:
            raise ValidationError("Interaction target is required")
        if not kind:
            raise ValidationError("Interaction kind is required")
        interaction = Interaction(
            target=target,
            kind=kind,
            payload=payload,
            session_id=None if session_id is None else str(session_id),
            user_id=None if user_id is None else str(user_id),
            source_agent_id=None if source_agent_id is None else str(source_agent_id),
        )
        if interaction_id:
            interaction.interaction_id = str(interaction_id)
        return interaction

    def send(self, interaction: Interaction) -> Any:
        """Route an interaction and return the handler's answer."""
        self._add_to_history(interaction)
        self._emit(interaction.session_id, "interaction", interaction.to_dict())
        return self._route(interaction)

    def fire(self, interaction: Interaction) -> None:
        """Route in the background, without waiting for the outcome."""
        self._add_to_history(interaction)
        self._emit(interaction.session_id, "interaction", interaction.to_dict())

        def _run() -> None:
            try:
                self._route(interaction)
            except Exception:
                logger.exception("Fire-and-forget interaction %s failed", interaction.interaction_id)

        threading.Thread(target=_run, name=f"interaction-{interaction.interaction_id[:8]}", daemon=True).start()

    def register_handler(self, pattern: str, handler: Handler) -> None:
        with self._lock:
            self._handlers[pattern] = handler

    def unregister_handler(self, pattern: str) -> bool:
        with self._lock:
            return self._handlers.pop(pattern, None) is not None

    # ── Request / respond ──

    def request(self, interaction: Interaction, timeout_ms: Optional[int] = None) -> "Future[InteractionResult]":
        """Register ``interaction`` as pending and route it.

        Returns a future resolving to :class:`InteractionResult`. A timeout of
        ``None`` or anything not positive uses ``interaction_timeout_ms``, so
        every interaction has a deadline. Function targets settle immediately
        with the handler's return value; ``@`` targets stay pending until
        answered.
        """
        if timeout_ms is None or timeout_ms <= 0:
            timeout_ms = self.config.interaction_timeout_ms
        iid = interaction.interaction_id
        future: "Future[InteractionResult]" = Future()
        deadline = time.monotonic() + timeout_ms / 1000.0 if timeout_ms > 0 else None

        with self._lock:
            if iid in self._pending:
                raise ValidationError(f"Interaction already pending: {iid}", interaction_id=iid)
            entry = _Pending(interaction=interaction, future=future, deadline=deadline)
            if deadline is not None:
                entry.timer = threading.Timer(timeout_ms / 1000.0, self._expire, args=(iid, entry))
                entry.timer.daemon = True
            self._pending[iid] = entry
            if entry.timer is not None:
                entry.timer.start()

        self._add_to_history(interaction)
        self._emit(interaction.session_id, "interaction_pending", interaction.to_dict())

        try:
            result = self._route(interaction)
        except Exception as exc:
            logger.warning("Routing failed for interaction %s: %s", iid, exc)
            self._settle(iid, InteractionResult(InteractionStatus.ERROR, str(exc)))
            return future
        if not interaction.target.startswith("@"):
            # function targets answer synchronously
            self._settle(iid, InteractionResult(InteractionStatus.SUCCESS, result))
        return future

    def ask(self, interaction: Interaction, timeout_ms: Optional[int] = None) -> Any:
        """Blocking :meth:`request` that returns the answer or raises.

        Raises :class:`InteractionTimeout` on timeout and :class:`AgoraError`
        when the interaction errored or was cancelled.
        """
        outcome = self.request(interaction, timeout_ms).result()
        if outcome.status == InteractionStatus.SUCCESS:
            return outcome.result
        if outcome.status == InteractionStatus.TIMEOUT:
            raise InteractionTimeout(str(outcome.result), interaction_id=interaction.interaction_id)
        raise AgoraError(
            str(outcome.result),
            code=outcome.status.value,
            interaction_id=interaction.interaction_id,
        )

    def respond(
        self,
        interaction_id: str,
        result: Any = None,
        success: bool = True,
        *,
        agent_id: Optional[Any] = None,
    ) -> bool:
        """Settle a pending interaction.

        Returns ``False`` without changing anything when the id is not pending
        or when ``agent_id`` is the agent that created the interaction.
        """
        with self._lock:
            entry = self._pending.get(interaction_id)
            if entry is None:
                return False
            source = entry.interaction.source_agent_id
            blocked = agent_id is not None and source is not None and str(agent_id) == source
            if not blocked:
                del self._pending[interaction_id]

        if blocked:
            self.audit.record(
                AuditEvent.SELF_APPROVAL_BLOCKED,
                interaction_id=interaction_id,
                agent_id=source,
                session_id=entry.interaction.session_id,
            )
            return False
        status = InteractionStatus.SUCCESS if success else InteractionStatus.ERROR
        self._complete(interaction_id, entry, InteractionResult(status, result))
        return True

    def cancel(self, interaction_id: str, reason: str = "Cancelled") -> bool:
        return self._settle(interaction_id, InteractionResult(InteractionStatus.CANCELLED, reason))

    def cancel_session(self, session_id: Any, reason: str = "Session closed") -> int:
        """Settle every pending interaction of a session as cancelled."""
        sid = str(session_id)
        with self._lock:
            ids = [iid for iid, p in self._pending.items() if p.interaction.session_id == sid]
        cancelled = sum(1 for iid in ids if self.cancel(iid, reason))
        if cancelled:
            logger.info("Cancelled %d pending interactions for session %s", cancelled, sid)
        return cancelled

    def _expire(self, interaction_id: str, entry: _Pending) -> None:
        with self._lock:
            if self._pending.get(interaction_id) is not entry:
                return
            del self._pending[interaction_id]
        logger.info("Interaction %s (%s) timed out", interaction_id, entry.interaction.kind)
        self._complete(
            interaction_id,
            entry,
            InteractionResult(InteractionStatus.TIMEOUT, f"Interaction timed out: {entry.interaction.kind}"),
        )

    def _settle(self, interaction_id: str, outcome: InteractionResult) -> bool:
        with self._lock:
            entry = self._pending.pop(interaction_id, None)
        if entry is None:
            return False
        self._complete(interaction_id, entry, outcome)
        return True

    def _complete(self, interaction_id: str, entry: _Pending, outcome: InteractionResult) -> None:
        # Caller has already removed the entry; runs outside the lock.
        if entry.timer is not None:
            entry.timer.cancel()
        entry.future.set_result(outcome)
        self._emit(entry.interaction.session_id, "interaction_settled", {
            "interaction_id": interaction_id,
            "status": outcome.status.value,
        })

    # ── Introspection ──

    def pending_count(self, session_id: Optional[Any] = None) -> int:
        with self._lock:
            if session_id is None:
                return len(self._pending)
            sid = str(session_id)
            return sum(1 for p in self._pending.values() if p.interaction.session_id == sid)

    def is_pending(self, interaction_id: str) -> bool:
        with self._lock:
            return interaction_id in self._pending

    def get_pending(self, interaction_id: str) -> Optional[Interaction]:
        with self._lock:
            entry = self._pending.get(interaction_id)
            return entry.interaction if entry else None

    def history(
        self,
        session_id: Optional[Any] = None,
        user_id: Optional[Any] = None,
        limit: Optional[int] = None,
    ) -> List[Interaction]:
        with self._lock:
            result = list(self._history)
        if session_id is not None:
            result = [i for i in result if i.session_id == str(session_id)]
        if user_id is not None:
            result = [i for i in result if i.user_id == str(user_id)]
        if limit:
            result = result[-limit:]
        return result

    def clear_history(self, session_id: Optional[Any] = None) -> None:
        with self._lock:
            if session_id is None:
                self._history.clear()
                return
            kept = [i for i in self._history if i.session_id != str(session_id)]
            self._history.clear()
            self._history.extend(kept)

    # ── Agent message queue ──

    def queue_agent_message(self, session_id: Any, interaction_id: str, kind: str, payload: Any) -> None:
        with self._lock:
            self._agent_queues.setdefault(str(session_id), []).append({
                "interaction_id": interaction_id,
                "kind": kind,
                "payload": payload,
                "ts": time.time(),
            })

    def agent_messages(self, session_id: Any, clear: bool = True) -> List[Dict[str, Any]]:
        with self._lock:
            if clear:
                return self._agent_queues.pop(str(session_id), [])
            return list(self._agent_queues.get(str(session_id), []))

    # ── Lifecycle ──

    def close(self) -> None:
        with self._lock:
            ids = list(self._pending)
        for iid in ids:
            self.cancel(iid, "Bus closed")

    # ── Internals ──

    def _register_default_handlers(self) -> None:
        def _user(interaction: Interaction) -> Dict[str, Any]:
            self._emit(interaction.session_id, "user_interaction", interaction.to_dict())
            return {"pending": True, "interaction_id": interaction.interaction_id}

        def _system(interaction: Interaction) -> Dict[str, Any]:
            self._emit(interaction.session_id, "system_interaction", interaction.to_dict())
            return {"acknowledged": True}

        def _session(interaction: Interaction) -> Dict[str, Any]:
            self._emit(interaction.session_id, "session_interaction", interaction.to_dict())
            return {"delivered": True}

        def _agent(interaction: Interaction) -> Dict[str, Any]:
            if not interaction.session_id:
                raise ValidationError("@agent target requires session_id")
            self.queue_agent_message(
                interaction.session_id, interaction.interaction_id, interaction.kind, interaction.payload,
            )
            self._emit(interaction.session_id, "agent_message", interaction.to_dict())
            return {"queued": True}

        self._handlers[Target.USER] = _user
        self._handlers[Target.SYSTEM] = _system
        self._handlers[Target.SESSION] = _session
        self._handlers[Target.AGENT] = _agent

    def _route(self, interaction: Interaction) -> Any:
        with self._lock:
            if interaction.target.startswith("@"):
                handler = self._handlers.get(interaction.target)
                if handler is None:
                    raise NotFound(f"No handler for target: {interaction.target}")
            else:
                handler = self._handlers.get(Target.FUNCTION)
                if handler is None:
                    raise NotFound(f"Cannot route interaction to: {interaction.target}")
        return handler(interaction)

    def _add_to_history(self, interaction: Interaction) -> None:
        with self._lock:
            self._history.append(interaction)

    def _emit(self, session_id: Optional[str], event_type: str, payload: Any) -> None:
        if self.broadcaster is not None:
            self.broadcaster.broadcast(session_id, event_type, payload)
