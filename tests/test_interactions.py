"""Tests for the interaction bus: routing, request/respond, timeouts and cancellation."""

import threading

import pytest

from agora.configs.base import AgoraConfig
from agora.exceptions import AgoraError, InteractionTimeout, ValidationError
from agora.interactions import InteractionBus, InteractionStatus, Target
from agora.observability import AuditEvent, AuditLog
from agora.pubsub import Broadcaster


@pytest.fixture
def audit():
    return AuditLog()


@pytest.fixture
def bus(audit):
    b = InteractionBus(AgoraConfig(db_path=":memory:", interaction_timeout_ms=5000), Broadcaster(), audit)
    yield b
    b.close()


def _question(bus, source="agent-a", session="s1"):
    return bus.create(Target.USER, "question", {"text": "Proceed?"}, session_id=session, source_agent_id=source)


# ── TestSelfResponse ──


class TestSelfResponse:
    def test_source_agent_cannot_respond(self, bus, audit):
        interaction = _question(bus)
        future = bus.request(interaction)

        with audit.capture() as entries:
            assert bus.respond(interaction.interaction_id, "yes", agent_id="agent-a") is False
        assert bus.is_pending(interaction.interaction_id)
        assert not future.done()
        assert entries[-1]["event"] == AuditEvent.SELF_APPROVAL_BLOCKED.value

    def test_other_agent_settles_once(self, bus):
        interaction = _question(bus)
        future = bus.request(interaction)

        assert bus.respond(interaction.interaction_id, "yes", agent_id="agent-b") is True
        outcome = future.result(timeout=1)
        assert outcome.status == InteractionStatus.SUCCESS
        assert outcome.result == "yes"
        assert bus.respond(interaction.interaction_id, "again") is False
        assert not bus.is_pending(interaction.interaction_id)

    def test_user_response_without_agent_id(self, bus):
        interaction = _question(bus)
        future = bus.request(interaction)
        assert bus.respond(interaction.interaction_id, {"answer": "ok"}) is True
        assert future.result(timeout=1).result == {"answer": "ok"}

    def test_agent_ids_compared_as_strings(self, bus):
        interaction = bus.create(Target.USER, "q", {}, session_id="s1", source_agent_id=42)
        bus.request(interaction)
        assert bus.respond(interaction.interaction_id, "x", agent_id="42") is False
        assert bus.respond(interaction.interaction_id, "x", agent_id=43) is True

    def test_error_response(self, bus):
        interaction = _question(bus)
        future = bus.request(interaction)
        bus.respond(interaction.interaction_id, "boom", success=False)
        outcome = future.result(timeout=1)
        assert outcome.status == InteractionStatus.ERROR
        assert not outcome.ok


# ── TestRequest ──


class TestRequest:
    def test_unknown_id_returns_false(self, bus):
        assert bus.respond("missing", "x") is False

    def test_duplicate_pending_id_rejected(self, bus):
        interaction = _question(bus)
        bus.request(interaction)
        with pytest.raises(ValidationError):
            bus.request(interaction)
        assert bus.pending_count() == 1

    def test_same_id_can_be_requested_after_settlement(self, bus):
        interaction = _question(bus)
        bus.request(interaction)
        bus.respond(interaction.interaction_id, "first")
        future = bus.request(interaction)
        bus.respond(interaction.interaction_id, "second")
        assert future.result(timeout=1).result == "second"

    def test_timeout_settles_and_late_respond_fails(self, bus):
        interaction = _question(bus)
        future = bus.request(interaction, timeout_ms=50)
        outcome = future.result(timeout=5)
        assert outcome.status == InteractionStatus.TIMEOUT
        assert bus.respond(interaction.interaction_id, "late") is False
        assert bus.pending_count() == 0

    @pytest.mark.parametrize("timeout_ms", [0, -5])
    def test_non_positive_timeout_uses_configured_default(self, timeout_ms):
        short = InteractionBus(AgoraConfig(db_path=":memory:", interaction_timeout_ms=50), Broadcaster(), AuditLog())
        try:
            future = short.request(_question(short), timeout_ms=timeout_ms)
            assert future.result(timeout=5).status == InteractionStatus.TIMEOUT
            assert short.pending_count() == 0
        finally:
            short.close()

    def test_respond_and_timeout_race_settles_once(self, bus):
        for _ in range(20):
            interaction = _question(bus)
            future = bus.request(interaction, timeout_ms=1)
            responded = bus.respond(interaction.interaction_id, "now")
            outcome = future.result(timeout=5)
            if responded:
                assert outcome.status == InteractionStatus.SUCCESS
            else:
                assert outcome.status == InteractionStatus.TIMEOUT

    def test_concurrent_responders_exactly_one_wins(self, bus):
        interaction = _question(bus)
        future = bus.request(interaction)
        results = []
        barrier = threading.Barrier(8)

        def _answer(n):
            barrier.wait()
            results.append(bus.respond(interaction.interaction_id, n, agent_id=f"agent-{n}"))

        threads = [threading.Thread(target=_answer, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert future.result(timeout=1).status == InteractionStatus.SUCCESS

    def test_routing_failure_settles_with_error(self, bus):
        interaction = bus.create("some_function", "run", {})
        outcome = bus.request(interaction).result(timeout=1)
        assert outcome.status == InteractionStatus.ERROR

    def test_ask_raises_on_timeout(self, bus):
        with pytest.raises(InteractionTimeout):
            bus.ask(_question(bus), timeout_ms=30)

    def test_ask_returns_answer(self, bus):
        interaction = _question(bus)
        threading.Timer(0.05, bus.respond, args=(interaction.interaction_id, "sure")).start()
        assert bus.ask(interaction) == "sure"

    def test_ask_raises_when_cancelled(self, bus):
        interaction = _question(bus)
        threading.Timer(0.05, bus.cancel, args=(interaction.interaction_id,)).start()
        with pytest.raises(AgoraError) as exc:
            bus.ask(interaction)
        assert exc.value.code == "cancelled"


# ── TestCancellation ──


class TestCancellation:
    def test_cancel_session_only_touches_that_session(self, bus):
        f1 = bus.request(_question(bus, session="s1"))
        f2 = bus.request(_question(bus, session="s1"))
        f3 = bus.request(_question(bus, session="s2"))

        assert bus.cancel_session("s1") == 2
        assert f1.result(timeout=1).status == InteractionStatus.CANCELLED
        assert f2.result(timeout=1).status == InteractionStatus.CANCELLED
        assert not f3.done()
        assert bus.pending_count("s2") == 1

    def test_close_cancels_everything(self, audit):
        bus = InteractionBus(AgoraConfig(db_path=":memory:"), audit=audit)
        future = bus.request(_question(bus))
        bus.close()
        assert future.result(timeout=1).status == InteractionStatus.CANCELLED


# ── TestRouting ──


class TestRouting:
    def test_agent_target_queues_message(self, bus):
        bus.send(bus.create(Target.AGENT, "note", {"text": "hi"}, session_id="s1"))
        messages = bus.agent_messages("s1")
        assert [m["kind"] for m in messages] == ["note"]
        assert bus.agent_messages("s1") == []

    def test_agent_target_requires_session(self, bus):
        with pytest.raises(ValidationError):
            bus.send(bus.create(Target.AGENT, "note", {}))

    def test_function_handler(self, bus):
        bus.register_handler(Target.FUNCTION, lambda i: {"ran": i.target, "payload": i.payload})
        result = bus.send(bus.create("search", "run", {"q": "x"}))
        assert result == {"ran": "search", "payload": {"q": "x"}}

    def test_fire_runs_in_background(self, bus):
        done = threading.Event()
        bus.register_handler(Target.FUNCTION, lambda i: done.set())
        bus.fire(bus.create("ping", "run"))
        assert done.wait(2)

    def test_create_requires_target_and_kind(self, bus):
        with pytest.raises(ValidationError):
            bus.create("", "kind")
        with pytest.raises(ValidationError):
            bus.create(Target.USER, "")

    def test_history_filters(self, bus):
        bus.send(bus.create(Target.SYSTEM, "a", session_id="s1", user_id="u1"))
        bus.send(bus.create(Target.SYSTEM, "b", session_id="s2", user_id="u1"))
        bus.send(bus.create(Target.SYSTEM, "c", session_id="s1", user_id="u2"))

        assert [i.kind for i in bus.history(session_id="s1")] == ["a", "c"]
        assert [i.kind for i in bus.history(user_id="u1")] == ["a", "b"]
        assert [i.kind for i in bus.history(limit=1)] == ["c"]
        bus.clear_history("s1")
        assert [i.kind for i in bus.history()] == ["b"]

    def test_history_is_bounded(self):
        bus = InteractionBus(AgoraConfig(db_path=":memory:", history_max=3))
        for n in range(5):
            bus.send(bus.create(Target.SYSTEM, f"k{n}"))
        assert [i.kind for i in bus.history()] == ["k2", "k3", "k4"]

    def test_state_changes_are_broadcast(self, audit):
        broadcaster = Broadcaster()
        events = []
        broadcaster.subscribe("s1", events.append)
        bus = InteractionBus(AgoraConfig(db_path=":memory:"), broadcaster, audit)

        interaction = _question(bus)
        bus.request(interaction)
        bus.respond(interaction.interaction_id, "ok")

        types = [e["type"] for e in events]
        assert "interaction_pending" in types
        assert "user_interaction" in types
        assert types[-1] == "interaction_settled"
        assert events[-1]["payload"]["status"] == "success"

    def test_pending_lookup_and_handler_removal(self, bus):
        interaction = _question(bus)
        bus.request(interaction)
        assert bus.get_pending(interaction.interaction_id) is interaction
        assert bus.get_pending("missing") is None

        bus.register_handler(Target.FUNCTION, lambda i: "ran")
        assert bus.unregister_handler(Target.FUNCTION) is True
        assert bus.unregister_handler(Target.FUNCTION) is False
        outcome = bus.request(bus.create("search", "run")).result(timeout=1)
        assert outcome.status == InteractionStatus.ERROR
