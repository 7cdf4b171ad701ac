"""Tests for the ability registry, executor and approval workflow."""

import threading
import time

import pytest

from agora import AgoraConfig, Workspace
from agora.abilities import (
    Ability,
    AbilityRegistry,
    Allowance,
    ApprovalStatus,
    DangerLevel,
    FunctionAbility,
    request_hash,
)
from agora.exceptions import NotFound, PermissionDenied, ValidationError
from agora.observability import AuditEvent
from agora.permissions import Action, ResourceType, Scope, SubjectType


@pytest.fixture
def ws():
    workspace = Workspace(AgoraConfig(db_path=":memory:", approval_timeout_ms=5000))
    yield workspace
    workspace.close()


@pytest.fixture
def session(ws):
    return ws.create_session(name="planning", owner_id="u1")


@pytest.fixture
def calls():
    return []


@pytest.fixture
def deploy(ws, calls):
    def _deploy(payload, context):
        calls.append((payload["target"], context.agent_id))
        return {"deployed": payload["target"]}

    return ws.abilities.register(FunctionAbility(
        "deploy",
        _deploy,
        description="Deploy a build",
        schema={"type": "object", "required": ["target"]},
        danger_level=DangerLevel.DANGEROUS,
    ))


class _Call(threading.Thread):
    """Runs a blocking call in the background and keeps its result or error."""

    def __init__(self, fn, *args, **kwargs):
        super().__init__(daemon=True)
        self._fn, self._args, self._kwargs = fn, args, kwargs
        self.result = None
        self.error = None
        self.start()

    def run(self):
        try:
            self.result = self._fn(*self._args, **self._kwargs)
        except Exception as exc:
            self.error = exc


def _wait_for_approval(ws, session_id, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        rows = ws.approvals.pending(session_id=session_id)
        if rows and ws.bus.is_pending(rows[0]["execution_id"]):
            return rows[0]
        time.sleep(0.01)
    raise AssertionError("no pending approval")


# ── TestRegistry ──


class TestRegistry:
    def test_register_and_get(self):
        registry = AbilityRegistry()
        ability = registry.register(FunctionAbility("echo", lambda p, c: p))
        assert registry.get("echo") is ability
        assert registry.has("echo")
        assert len(registry) == 1

    def test_duplicate_name_rejected_unless_replace(self):
        registry = AbilityRegistry()
        registry.register(FunctionAbility("echo", lambda p, c: 1))
        with pytest.raises(ValidationError):
            registry.register(FunctionAbility("echo", lambda p, c: 2))
        replacement = registry.register(FunctionAbility("echo", lambda p, c: 2), replace=True)
        assert registry.get("echo") is replacement

    def test_unknown_ability(self):
        registry = AbilityRegistry()
        with pytest.raises(NotFound):
            registry.get("missing")
        assert registry.unregister("missing") is False

    def test_names_sorted(self):
        registry = AbilityRegistry()
        for name in ("zeta", "alpha", "mid"):
            registry.register(FunctionAbility(name, lambda p, c: None))
        assert registry.names() == ["alpha", "mid", "zeta"]

    def test_nameless_ability_rejected(self):
        with pytest.raises(ValidationError):
            AbilityRegistry().register(Ability())

    def test_validate_required_fields(self):
        ability = FunctionAbility("x", lambda p, c: None, schema={"required": ["a", "b"]})
        ability.validate({"a": 1, "b": 2})
        with pytest.raises(ValidationError) as exc:
            ability.validate({"a": 1})
        assert exc.value.details["missing"] == ["b"]
        with pytest.raises(ValidationError):
            ability.validate(["not", "a", "mapping"])

    def test_describe(self):
        ability = FunctionAbility("x", lambda p, c: None, danger_level="moderate", default_permission="allow")
        described = ability.describe()
        assert described["danger_level"] == "moderate"
        assert described["default_permission"] == "allow"

    def test_abilities_do_not_share_schema_or_examples(self):
        class Ping(Ability):
            name = "ping"

        class Pong(Ability):
            name = "pong"

        Ping().describe()["schema"]["required"] = ["host"]
        Ping().describe()["examples"].append({"payload": {"host": "a"}})
        Pong().validate({})
        assert Pong().describe()["schema"] == {}
        assert Pong().describe()["examples"] == []
        with pytest.raises(TypeError):
            Ping.schema["required"] = ["host"]

        search = FunctionAbility("search", lambda p, c: None)
        search.schema["required"] = ["q"]
        assert FunctionAbility("other", lambda p, c: None).schema == {}
        assert Ability.schema == {}

    def test_delegate_is_registered_by_workspace(self, ws):
        assert ws.abilities.has("delegate")


# ── TestExecutor ──


class TestExecutor:
    def test_allow_rule_runs_without_prompt(self, ws, session, deploy, calls):
        ws.permissions.create_rule(
            subject_type=SubjectType.AGENT, subject_id="a1",
            resource_type=ResourceType.ABILITY, resource_name="deploy", action=Action.ALLOW,
        )
        ctx = ws.context(session["id"], agent_id="a1")
        assert ws.execute_ability("deploy", {"target": "prod"}, ctx) == {"deployed": "prod"}
        assert calls == [("prod", "a1")]
        assert ws.approvals.history() == []

    def test_deny_rule_blocks(self, ws, session, deploy, calls):
        rule = ws.permissions.create_rule(
            subject_type=SubjectType.ANY, resource_type=ResourceType.ABILITY, action=Action.DENY,
        )
        ctx = ws.context(session["id"], agent_id="a1")
        with pytest.raises(PermissionDenied) as exc:
            ws.execute_ability("deploy", {"target": "prod"}, ctx)
        assert exc.value.details["rule_id"] == rule.id
        assert calls == []

    def test_default_permission_applies_without_rule(self, ws, session, calls):
        ws.abilities.register(FunctionAbility("ping", lambda p, c: "pong", default_permission=Action.ALLOW))
        ws.abilities.register(FunctionAbility("nuke", lambda p, c: calls.append(1), default_permission=Action.DENY))
        ctx = ws.context(session["id"], agent_id="a1")

        assert ws.execute_ability("ping", {}, ctx) == "pong"
        with pytest.raises(PermissionDenied):
            ws.execute_ability("nuke", {}, ctx)
        assert calls == []

    def test_prompt_approved(self, ws, session, deploy, calls):
        ctx = ws.context(session["id"], agent_id="a1")
        call = _Call(ws.execute_ability, "deploy", {"target": "prod"}, ctx)

        row = _wait_for_approval(ws, session["id"])
        assert row["ability_name"] == "deploy"
        assert row["danger_level"] == "dangerous"
        assert row["requester_agent_id"] == "a1"
        assert ws.approvals.respond(row["execution_id"], True, user_id="u1") is True
        call.join(2)

        assert call.error is None
        assert call.result == {"deployed": "prod"}
        assert ws.db.get_approval(row["execution_id"])["status"] == ApprovalStatus.APPROVED.value

    def test_prompt_denied(self, ws, session, deploy, calls):
        ctx = ws.context(session["id"], agent_id="a1")
        call = _Call(ws.execute_ability, "deploy", {"target": "prod"}, ctx)

        row = _wait_for_approval(ws, session["id"])
        ws.approvals.respond(row["execution_id"], False, reason="not today")
        call.join(2)

        assert isinstance(call.error, PermissionDenied)
        assert call.error.message == "not today"
        assert call.error.details["status"] == "denied"
        assert calls == []

    def test_prompt_times_out(self, ws, session, deploy, calls):
        ctx = ws.context(session["id"], agent_id="a1")
        with pytest.raises(PermissionDenied) as exc:
            ws.execute_ability("deploy", {"target": "prod"}, ctx, approval_timeout_ms=50)

        assert exc.value.details["status"] == "timeout"
        row = ws.db.get_approval(exc.value.details["execution_id"])
        assert row["status"] == ApprovalStatus.TIMEOUT.value
        assert calls == []

    def test_remember_for_session_skips_next_prompt(self, ws, session, deploy, calls):
        ctx = ws.context(session["id"], agent_id="a1")
        call = _Call(ws.execute_ability, "deploy", {"target": "prod"}, ctx)
        row = _wait_for_approval(ws, session["id"])
        ws.approvals.respond(row["execution_id"], True, remember_for_session=True)
        call.join(2)
        assert call.error is None

        rules = ws.permissions.list_rules(session_id=session["id"])
        assert len(rules) == 1
        assert rules[0].subject_id == "a1"
        assert rules[0].resource_name == "deploy"

        assert ws.execute_ability("deploy", {"target": "staging"}, ctx) == {"deployed": "staging"}
        assert len(ws.approvals.history()) == 1

    def test_remembered_grant_does_not_leak_to_other_sessions(self, ws, session, deploy):
        ctx = ws.context(session["id"], agent_id="a1")
        call = _Call(ws.execute_ability, "deploy", {"target": "prod"}, ctx)
        row = _wait_for_approval(ws, session["id"])
        ws.approvals.respond(row["execution_id"], True, remember_for_session=True)
        call.join(2)

        other = ws.create_session(name="other", owner_id="u1")
        with pytest.raises(PermissionDenied):
            ws.execute_ability("deploy", {"target": "prod"}, ws.context(other["id"], agent_id="a1"),
                               approval_timeout_ms=30)

    def test_once_rule_then_prompt(self, ws, session, deploy, calls):
        ws.permissions.create_rule(
            subject_type=SubjectType.AGENT, subject_id="a1", resource_type=ResourceType.ABILITY,
            resource_name="deploy", action=Action.ALLOW, scope=Scope.ONCE,
        )
        ctx = ws.context(session["id"], agent_id="a1")
        ws.execute_ability("deploy", {"target": "prod"}, ctx)
        with pytest.raises(PermissionDenied):
            ws.execute_ability("deploy", {"target": "prod"}, ctx, approval_timeout_ms=30)
        assert calls == [("prod", "a1")]

    def test_allowed_hook_blocks_before_policy(self, ws, session):
        ws.abilities.register(FunctionAbility(
            "scoped", lambda p, c: "ran",
            default_permission=Action.ALLOW,
            check=lambda p, c: Allowance(False, "outside working hours"),
        ))
        ctx = ws.context(session["id"], agent_id="a1")
        with pytest.raises(PermissionDenied) as exc:
            ws.execute_ability("scoped", {}, ctx)
        assert exc.value.message == "outside working hours"
        assert ws.db.list_audit(event=AuditEvent.PERMISSION_ALLOW.value) == []

    def test_validation_runs_before_any_state_change(self, ws, session, deploy):
        events = []
        ws.subscribe(session["id"], events.append)
        ctx = ws.context(session["id"], agent_id="a1")
        with pytest.raises(ValidationError):
            ws.execute_ability("deploy", {}, ctx)
        assert events == []
        assert ws.approvals.history() == []
        assert ws.db.list_audit() == []

    def test_unknown_ability(self, ws, session):
        with pytest.raises(NotFound):
            ws.execute_ability("missing", {}, ws.context(session["id"]))

    def test_lifecycle_broadcasts(self, ws, session):
        def _fail(payload, context):
            raise RuntimeError("disk full")

        ws.abilities.register(FunctionAbility("ok", lambda p, c: 1, default_permission=Action.ALLOW))
        ws.abilities.register(FunctionAbility("broken", _fail, default_permission=Action.ALLOW))
        events = []
        ws.subscribe(session["id"], events.append)
        ctx = ws.context(session["id"], agent_id="a1")

        ws.execute_ability("ok", {}, ctx)
        with pytest.raises(RuntimeError):
            ws.execute_ability("broken", {}, ctx)

        assert [e["type"] for e in events] == [
            "ability_execution_start",
            "ability_execution_complete",
            "ability_execution_start",
            "ability_execution_error",
        ]
        assert events[-1]["payload"]["error"] == "disk full"

    def test_user_context_uses_user_subject(self, ws, session):
        ws.abilities.register(FunctionAbility("whoami", lambda p, c: c.user_id))
        ws.permissions.create_rule(
            subject_type=SubjectType.USER, subject_id="u1",
            resource_type=ResourceType.ABILITY, resource_name="whoami", action=Action.ALLOW,
        )
        assert ws.execute_ability("whoami", {}, ws.context(session["id"])) == "u1"


# ── TestApprovalWorkflow ──


class TestApprovalWorkflow:
    def test_requesting_agent_cannot_approve(self, ws, session, deploy):
        ctx = ws.context(session["id"], agent_id="a1")
        ticket = ws.approvals.submit(deploy, {"target": "prod"}, ctx)

        assert ws.approvals.respond(ticket.execution_id, True, responder_agent_id="a1") is False
        assert ws.db.get_approval(ticket.execution_id)["status"] == "pending"
        assert ws.db.list_audit(event=AuditEvent.SELF_APPROVAL_BLOCKED.value)

        assert ws.approvals.respond(ticket.execution_id, True, responder_agent_id="a2") is True
        assert ticket.wait(1).approved

    def test_owner_mismatch_rejected(self, ws, session, deploy):
        ticket = ws.approvals.submit(deploy, {"target": "prod"}, ws.context(session["id"], agent_id="a1"))
        assert ws.approvals.respond(ticket.execution_id, True, user_id="u2") is False
        assert ws.db.list_audit(event=AuditEvent.APPROVAL_OWNER_MISMATCH.value)
        assert ws.bus.is_pending(ticket.execution_id)

    def test_request_hash_binds_answer(self, ws, session, deploy):
        params = {"target": "prod"}
        ticket = ws.approvals.submit(deploy, params, ws.context(session["id"], agent_id="a1"))
        assert ticket.request_hash == request_hash("deploy", params)

        stale = request_hash("deploy", {"target": "staging"})
        assert ws.approvals.respond(ticket.execution_id, True, request_hash=stale) is False
        assert ws.db.list_audit(event=AuditEvent.APPROVAL_HASH_MISMATCH.value)
        assert ws.approvals.respond(ticket.execution_id, True, request_hash=ticket.request_hash) is True
        assert ticket.wait(1).status == ApprovalStatus.APPROVED

    def test_resolved_approval_cannot_be_answered_again(self, ws, session, deploy):
        ticket = ws.approvals.submit(deploy, {"target": "prod"}, ws.context(session["id"], agent_id="a1"))
        assert ws.approvals.respond(ticket.execution_id, False) is True
        assert ticket.wait(1).status == ApprovalStatus.DENIED
        assert ws.approvals.respond(ticket.execution_id, True) is False
        assert ws.approvals.respond("unknown", True) is False

    def test_cancel(self, ws, session, deploy):
        ticket = ws.approvals.submit(deploy, {"target": "prod"}, ws.context(session["id"], agent_id="a1"))
        assert ws.approvals.cancel(ticket.execution_id, "superseded") is True
        outcome = ticket.wait(1)
        assert outcome.status == ApprovalStatus.DENIED
        assert outcome.reason == "superseded"

    def test_closing_session_cancels_pending_approvals(self, ws, session, deploy, calls):
        ctx = ws.context(session["id"], agent_id="a1")
        call = _Call(ws.execute_ability, "deploy", {"target": "prod"}, ctx)
        row = _wait_for_approval(ws, session["id"])

        assert ws.close_session(session["id"]) is True
        call.join(2)

        assert isinstance(call.error, PermissionDenied)
        assert ws.db.get_approval(row["execution_id"])["status"] == ApprovalStatus.DENIED.value
        assert calls == []

    def test_closed_session_denies_new_approvals_at_once(self, ws, session, deploy, calls):
        ctx = ws.context(session["id"], agent_id="a1")
        assert ws.close_session(session["id"]) is True

        started = time.monotonic()
        with pytest.raises(PermissionDenied):
            ws.execute_ability("deploy", {"target": "prod"}, ctx)
        assert time.monotonic() - started < 1.0

        ticket = ws.approvals.submit(deploy, {"target": "prod"}, ctx)
        outcome = ticket.wait(0)
        assert outcome.status == ApprovalStatus.DENIED
        assert outcome.reason == "Session closed"
        assert ws.db.get_approval(ticket.execution_id)["status"] == ApprovalStatus.DENIED.value
        assert ws.approvals.pending(session_id=session["id"]) == []
        assert not ws.bus.is_pending(ticket.execution_id)
        assert calls == []

    def test_pending_and_history(self, ws, session, deploy):
        ctx = ws.context(session["id"], agent_id="a1")
        first = ws.approvals.submit(deploy, {"target": "a"}, ctx)
        ws.approvals.submit(deploy, {"target": "b"}, ctx)
        ws.approvals.respond(first.execution_id, True)
        first.wait(1)

        pending = ws.approvals.pending(user_id="u1")
        assert [p["params"]["target"] for p in pending] == ["b"]
        assert len(ws.approvals.history(user_id="u1")) == 2
        assert ws.approvals.history(user_id="nobody") == []

    def test_request_and_resolution_are_broadcast(self, ws, session, deploy):
        events = []
        ws.subscribe(session["id"], events.append)
        ticket = ws.approvals.submit(deploy, {"target": "prod"}, ws.context(session["id"], agent_id="a1"))
        ws.approvals.respond(ticket.execution_id, True)
        ticket.wait(1)

        by_type = {e["type"]: e["payload"] for e in events}
        assert by_type["ability_approval_request"]["execution_id"] == ticket.execution_id
        assert by_type["ability_approval_request"]["danger_level"] == "dangerous"
        assert by_type["ability_approval_resolved"]["status"] == "approved"
