"""In-process topic-based pub/sub and session broadcast. Thread-safe."""

import logging
import threading
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

WILDCARD_TOPIC = "*"


class PubSub:
    """In-process topic-based publish/subscribe.

    Delivery is at-most-once and best-effort: a failing subscriber is logged
    and skipped, never retried.
    """

    def __init__(self) -> None:
        self._subs: Dict[str, List[Callable]] = {}
        self._lock = threading.RLock()

    def subscribe(self, topic: str, callback: Callable[[str, Any], None]) -> None:
        """Register ``callback(topic, data)`` for ``topic``; ``"*"`` receives every topic."""
        with self._lock:
            if topic not in self._subs:
                self._subs[topic] = []
            self._subs[topic].append(callback)

    def unsubscribe(self, topic: str, callback: Callable) -> None:
        with self._lock:
            if topic not in self._subs:
                return
            self._subs[topic] = [cb for cb in self._subs[topic] if cb is not callback]

    def publish(self, topic: str, data: Any) -> int:
        with self._lock:
            subs = list(self._subs.get(topic, []))
            if topic != WILDCARD_TOPIC:
                subs.extend(self._subs.get(WILDCARD_TOPIC, []))
        count = 0
        for cb in subs:
            try:
                cb(topic, data)
                count += 1
            except Exception:
                logger.exception("Error in subscriber callback for topic %s", topic)
        return count

    def subscribers(self, topic: str) -> int:
        with self._lock:
            return len(self._subs.get(topic, []))


def session_topic(session_id: Any) -> str:
    return f"session.{session_id}"


class Broadcaster:
    """Emits ``{type, session_id, payload}`` events to session participants."""

    def __init__(self, pubsub: Optional[PubSub] = None) -> None:
        self.pubsub = pubsub or PubSub()

    def broadcast(self, session_id: Any, event_type: str, payload: Any = None) -> int:
        if session_id is None:
            return 0
        event = {"type": event_type, "session_id": session_id, "payload": payload}
        return self.pubsub.publish(session_topic(session_id), event)

    def subscribe(self, session_id: Any, callback: Callable[[Dict[str, Any]], None]) -> Callable:
        """Register ``callback(event)`` for a session. Returns the handle for unsubscribe."""
        def _deliver(topic: str, data: Any) -> None:
            callback(data)

        topic = WILDCARD_TOPIC if session_id == WILDCARD_TOPIC else session_topic(session_id)
        self.pubsub.subscribe(topic, _deliver)
        _deliver.topic = topic  # type: ignore[attr-defined]
        return _deliver

    def unsubscribe(self, handle: Callable) -> None:
        self.pubsub.unsubscribe(getattr(handle, "topic", ""), handle)
