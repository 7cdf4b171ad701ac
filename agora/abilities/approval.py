"""User approval of ability executions, carried over the interaction bus."""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from concurrent.futures import Future
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from agora.abilities.registry import Ability, DangerLevel
from agora.configs.base import AgoraConfig
from agora.context import DelegationContext
from agora.db.sqlite import SQLiteManager
from agora.interactions.bus import InteractionBus, InteractionResult, InteractionStatus, Target
from agora.observability import AuditEvent, AuditLog
from agora.permissions.engine import Action, PermissionEngine, ResourceType, Scope
from agora.pubsub import Broadcaster

logger = logging.getLogger(__name__)

APPROVAL_KIND = "ability_approval"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class ApprovalOutcome:
    execution_id: str
    status: ApprovalStatus
    reason: Optional[str] = None

    @property
    def approved(self) -> bool:
        return self.status == ApprovalStatus.APPROVED


@dataclass(frozen=True)
class ApprovalTicket:
    execution_id: str
    request_hash: str
    future: "Future[ApprovalOutcome]"

    def wait(self, timeout: Optional[float] = None) -> ApprovalOutcome:
        return self.future.result(timeout)


def request_hash(ability_name: str, params: Any) -> str:
    """SHA-256 over ``{ability, params}``; binds a response to one exact request."""
    data = json.dumps({"ability": ability_name, "params": params}, separators=(",", ":"), default=str)
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


class ApprovalWorkflow:
    """Persists approval requests and turns user answers into outcomes.

    The request is an ``@user`` interaction whose id is the execution id and
    whose source is the requesting agent, so the bus's self-response ban
    also forbids an agent from approving its own request. Whichever of
    response, timeout or cancellation settles the interaction first decides
    the stored status.
    """

    def __init__(
        self,
        db: SQLiteManager,
        bus: InteractionBus,
        engine: PermissionEngine,
        config: Optional[AgoraConfig] = None,
        broadcaster: Optional[Broadcaster] = None,
        audit: Optional[AuditLog] = None,
    ):
        self.db = db
        self.bus = bus
        self.engine = engine
        self.config = config or AgoraConfig()
        self.broadcaster = broadcaster
        self.audit = audit or AuditLog(db)

    def submit(
        self,
        ability: Ability,
        params: Mapping[str, Any],
        context: DelegationContext,
        timeout_ms: Optional[int] = None,
    ) -> ApprovalTicket:
        """Open an approval request and return without waiting for the answer."""
        execution_id = uuid.uuid4().hex
        params = dict(params or {})
        req_hash = request_hash(ability.name, params)
        danger = DangerLevel(ability.danger_level).value

        self.db.insert_approval({
            "execution_id": execution_id,
            "user_id": context.user_id,
            "session_id": context.session_id,
            "requester_agent_id": context.agent_id,
            "ability_name": ability.name,
            "danger_level": danger,
            "params": params,
            "request_hash": req_hash,
        })

        outcome: "Future[ApprovalOutcome]" = Future()
        session = self.db.get_session(context.session_id) if context.session_id else None
        if session is not None and session.get("status") == "closed":
            closed = InteractionResult(InteractionStatus.CANCELLED, "Session closed")
            self._finalize(execution_id, ability, context, closed, outcome)
            logger.info("Approval %s denied: session %s is closed", execution_id, context.session_id)
            return ApprovalTicket(execution_id=execution_id, request_hash=req_hash, future=outcome)

        request = {
            "execution_id": execution_id,
            "request_hash": req_hash,
            "ability_name": ability.name,
            "description": ability.description,
            "danger_level": danger,
            "params": params,
            "session_id": context.session_id,
            "requester_agent_id": context.agent_id,
        }
        interaction = self.bus.create(
            Target.USER,
            APPROVAL_KIND,
            request,
            session_id=context.session_id,
            user_id=context.user_id,
            source_agent_id=context.agent_id,
            interaction_id=execution_id,
        )

        if timeout_ms is None or timeout_ms <= 0:
            timeout_ms = self.config.approval_timeout_ms
        self._emit(context.session_id, "ability_approval_request", request)
        interaction_future = self.bus.request(interaction, timeout_ms=timeout_ms)
        interaction_future.add_done_callback(
            lambda f: self._finalize(execution_id, ability, context, f.result(), outcome)
        )
        logger.info("Approval %s requested for %s (session %s)", execution_id, ability.name, context.session_id)
        return ApprovalTicket(execution_id=execution_id, request_hash=req_hash, future=outcome)

    def request_approval(
        self,
        ability: Ability,
        params: Mapping[str, Any],
        context: DelegationContext,
        timeout_ms: Optional[int] = None,
    ) -> ApprovalOutcome:
        """Open an approval request and block until it is resolved."""
        return self.submit(ability, params, context, timeout_ms).wait()

    def respond(
        self,
        execution_id: str,
        approved: bool,
        reason: Optional[str] = None,
        remember_for_session: bool = False,
        *,
        responder_agent_id: Optional[Any] = None,
        user_id: Optional[Any] = None,
        request_hash: Optional[str] = None,
    ) -> bool:
        """Answer a pending approval. ``False`` when the answer is not accepted.

        Rejected answers: unknown or resolved execution, ``user_id`` different
        from the requesting user, ``request_hash`` different from the stored
        one, or ``responder_agent_id`` equal to the requesting agent.
        """
        row = self.db.get_approval(execution_id)
        if row is None or row["status"] != ApprovalStatus.PENDING.value:
            return False

        if user_id is not None and row["user_id"] is not None and str(user_id) != row["user_id"]:
            self.audit.record(
                AuditEvent.APPROVAL_OWNER_MISMATCH,
                execution_id=execution_id,
                user_id=str(user_id),
                owner_id=row["user_id"],
                session_id=row["session_id"],
            )
            return False

        if request_hash and row["request_hash"] and request_hash != row["request_hash"]:
            self.audit.record(
                AuditEvent.APPROVAL_HASH_MISMATCH,
                execution_id=execution_id,
                user_id=row["user_id"],
                session_id=row["session_id"],
            )
            return False

        answer = {
            "approved": bool(approved),
            "reason": reason,
            "remember_for_session": bool(remember_for_session),
        }
        return self.bus.respond(execution_id, answer, success=True, agent_id=responder_agent_id)

    def cancel(self, execution_id: str, reason: str = "Cancelled") -> bool:
        return self.bus.cancel(execution_id, reason)

    def pending(self, user_id: Optional[Any] = None, session_id: Optional[Any] = None) -> List[Dict[str, Any]]:
        return self.db.list_approvals(user_id=user_id, session_id=session_id, status=ApprovalStatus.PENDING.value)

    def history(self, user_id: Optional[Any] = None, limit: int = 50) -> List[Dict[str, Any]]:
        return self.db.list_approvals(user_id=user_id, limit=limit)

    # ── Internals ──

    def _finalize(
        self,
        execution_id: str,
        ability: Ability,
        context: DelegationContext,
        result: InteractionResult,
        outcome: "Future[ApprovalOutcome]",
    ) -> None:
        try:
            resolved = self._resolve(execution_id, ability, context, result)
        except Exception as exc:
            logger.exception("Failed to finalize approval %s", execution_id)
            outcome.set_exception(exc)
            return
        outcome.set_result(resolved)

    def _resolve(
        self,
        execution_id: str,
        ability: Ability,
        context: DelegationContext,
        result: InteractionResult,
    ) -> ApprovalOutcome:
        answer = result.result if isinstance(result.result, dict) else {}
        remember = False
        if result.status == InteractionStatus.SUCCESS and answer.get("approved"):
            status, reason = ApprovalStatus.APPROVED, answer.get("reason")
            remember = bool(answer.get("remember_for_session"))
        elif result.status == InteractionStatus.SUCCESS:
            status, reason = ApprovalStatus.DENIED, answer.get("reason") or "Approval denied"
        elif result.status == InteractionStatus.TIMEOUT:
            status, reason = ApprovalStatus.TIMEOUT, "Approval request timed out"
        else:
            status, reason = ApprovalStatus.DENIED, str(result.result or "Cancelled")

        self.db.resolve_approval(execution_id, status.value, reason)

        event = {
            ApprovalStatus.APPROVED: AuditEvent.APPROVAL_GRANT,
            ApprovalStatus.DENIED: AuditEvent.APPROVAL_DENY,
            ApprovalStatus.TIMEOUT: AuditEvent.APPROVAL_TIMEOUT,
        }[status]
        self.audit.record(
            event,
            execution_id=execution_id,
            ability=ability.name,
            agent_id=context.agent_id,
            user_id=context.user_id,
            session_id=context.session_id,
            reason=reason,
        )

        if remember and context.session_id and context.subject.id is not None:
            self.engine.create_rule(
                subject_type=context.subject.type,
                subject_id=context.subject.id,
                resource_type=ResourceType.ABILITY,
                resource_name=ability.name,
                action=Action.ALLOW,
                scope=Scope.PERMANENT,
                session_id=context.session_id,
                owner_id=context.owner_id,
            )

        self._emit(context.session_id, "ability_approval_resolved", {
            "execution_id": execution_id,
            "ability_name": ability.name,
            "status": status.value,
            "reason": reason,
        })
        return ApprovalOutcome(execution_id=execution_id, status=status, reason=reason)

    def _emit(self, session_id: Optional[str], event_type: str, payload: Any) -> None:
        if self.broadcaster is not None:
            self.broadcaster.broadcast(session_id, event_type, payload)
