"""Ability execution gated by permission rules and user approval."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional, Union

from agora.abilities.approval import ApprovalWorkflow
from agora.abilities.registry import Ability, AbilityRegistry
from agora.context import DelegationContext
from agora.exceptions import PermissionDenied
from agora.observability import metrics
from agora.permissions.engine import Action, PermissionEngine, ResourceType
from agora.pubsub import Broadcaster

logger = logging.getLogger(__name__)


class AbilityExecutor:
    """Runs abilities in the order: validate, ``allowed()``, policy, execute.

    Policy comes from :class:`PermissionEngine`. When no rule matches, the
    ability's ``default_permission`` applies. ``prompt`` routes through
    :class:`ApprovalWorkflow`; a denied or timed-out approval raises
    :class:`PermissionDenied`.
    """

    def __init__(
        self,
        registry: AbilityRegistry,
        engine: PermissionEngine,
        approvals: ApprovalWorkflow,
        broadcaster: Optional[Broadcaster] = None,
    ):
        self.registry = registry
        self.engine = engine
        self.approvals = approvals
        self.broadcaster = broadcaster

    def execute_ability(
        self,
        ability: Union[str, Ability],
        params: Optional[Mapping[str, Any]],
        context: DelegationContext,
        approval_timeout_ms: Optional[int] = None,
    ) -> Any:
        if isinstance(ability, str):
            ability = self.registry.get(ability)
        params = dict(params or {})
        ability.validate(params)

        session_id = context.session_id
        self._emit(session_id, "ability_execution_start", {
            "ability_name": ability.name,
            "params": params,
            "agent_id": context.agent_id,
        })

        try:
            with metrics.measure(f"ability.{ability.name}"):
                self._authorize(ability, params, context, approval_timeout_ms)
                result = ability.execute(params, context)
        except PermissionDenied as exc:
            metrics.increment("ability.denied")
            self._emit(session_id, "ability_execution_denied", {
                "ability_name": ability.name,
                "reason": exc.message,
            })
            raise
        except Exception as exc:
            logger.warning("Ability %s failed: %s", ability.name, exc)
            self._emit(session_id, "ability_execution_error", {
                "ability_name": ability.name,
                "error": str(exc),
            })
            raise

        self._emit(session_id, "ability_execution_complete", {
            "ability_name": ability.name,
            "result": result,
        })
        return result

    def _authorize(
        self,
        ability: Ability,
        params: Mapping[str, Any],
        context: DelegationContext,
        approval_timeout_ms: Optional[int],
    ) -> None:
        allowance = ability.allowed(params, context)
        if not allowance.allowed:
            raise PermissionDenied(allowance.reason or f"{ability.name} is not allowed here", ability=ability.name)

        resolution = self.engine.resolve(
            context.subject,
            ResourceType.ABILITY,
            ability.name,
            context.session_id,
            context.conditions(),
        )
        action = resolution.action if resolution.matched_rule else Action(ability.default_permission)

        if action == Action.DENY:
            rule_id = resolution.matched_rule.id if resolution.matched_rule else None
            raise PermissionDenied(f"Permission denied for {ability.name}", ability=ability.name, rule_id=rule_id)

        if action == Action.PROMPT:
            outcome = self.approvals.request_approval(ability, params, context, approval_timeout_ms)
            if not outcome.approved:
                raise PermissionDenied(
                    outcome.reason or "Approval denied",
                    ability=ability.name,
                    execution_id=outcome.execution_id,
                    status=outcome.status.value,
                )

    def _emit(self, session_id: Optional[str], event_type: str, payload: Any) -> None:
        if self.broadcaster is not None:
            self.broadcaster.broadcast(session_id, event_type, payload)
