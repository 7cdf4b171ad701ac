"""Rule-based permission resolution."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from agora.db.sqlite import SQLiteManager
from agora.exceptions import ValidationError
from agora.observability import AuditEvent, AuditLog

logger = logging.getLogger(__name__)

WILDCARD = "*"


class SubjectType(str, Enum):
    USER = "user"
    AGENT = "agent"
    PLUGIN = "plugin"
    ANY = "*"


class ResourceType(str, Enum):
    COMMAND = "command"
    TOOL = "tool"
    ABILITY = "ability"
    ANY = "*"


class Action(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    PROMPT = "prompt"


class Scope(str, Enum):
    ONCE = "once"
    SESSION = "session"
    PERMANENT = "permanent"


@dataclass(frozen=True)
class Subject:
    type: SubjectType
    id: Optional[str] = None

    @classmethod
    def agent(cls, agent_id: Any) -> "Subject":
        return cls(SubjectType.AGENT, str(agent_id))

    @classmethod
    def user(cls, user_id: Any) -> "Subject":
        return cls(SubjectType.USER, str(user_id))


@dataclass
class PermissionRule:
    subject_type: SubjectType
    resource_type: ResourceType
    action: Action
    subject_id: Optional[str] = None
    resource_name: Optional[str] = None
    session_id: Optional[str] = None
    owner_id: Optional[str] = None
    scope: Scope = Scope.PERMANENT
    conditions: Optional[Dict[str, Any]] = None
    priority: int = 0
    id: Optional[int] = None
    created_at: Optional[str] = None

    @property
    def specificity(self) -> int:
        """3 exact subject and resource, 2 exact subject, 1 exact resource, 0 neither."""
        exact_subject = self.subject_id is not None
        exact_resource = self.resource_name is not None
        if exact_subject and exact_resource:
            return 3
        if exact_subject:
            return 2
        if exact_resource:
            return 1
        return 0

    def matches_conditions(self, context: Mapping[str, Any]) -> bool:
        if not self.conditions:
            return True
        for key, expected in self.conditions.items():
            if key not in context or context[key] != expected:
                return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "session_id": self.session_id,
            "subject_type": self.subject_type.value,
            "subject_id": self.subject_id,
            "resource_type": self.resource_type.value,
            "resource_name": self.resource_name,
            "action": self.action.value,
            "scope": self.scope.value,
            "conditions": self.conditions,
            "priority": self.priority,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PermissionRule":
        try:
            return cls(
                id=data.get("id"),
                owner_id=_str_or_none(data.get("owner_id")),
                session_id=_str_or_none(data.get("session_id")),
                subject_type=SubjectType(data["subject_type"]),
                subject_id=_str_or_none(data.get("subject_id")),
                resource_type=ResourceType(data["resource_type"]),
                resource_name=data.get("resource_name"),
                action=Action(data["action"]),
                scope=Scope(data.get("scope") or Scope.PERMANENT),
                conditions=data.get("conditions") or None,
                priority=int(data.get("priority") or 0),
                created_at=data.get("created_at"),
            )
        except KeyError as exc:
            raise ValidationError(f"Permission rule missing field: {exc.args[0]}") from exc
        except ValueError as exc:
            raise ValidationError(f"Invalid permission rule: {exc}") from exc


@dataclass(frozen=True)
class Resolution:
    action: Action
    matched_rule: Optional[PermissionRule] = None
    consumed: bool = False

    @property
    def allowed(self) -> bool:
        return self.action == Action.ALLOW


def _str_or_none(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def _rank_key(rule: PermissionRule):
    return (rule.priority, rule.specificity, rule.created_at or "", rule.id or 0)


class PermissionEngine:
    """Resolves ``(subject, resource, session)`` to allow / deny / prompt.

    Candidates match on subject (exact id or wildcard), resource (exact name,
    type wildcard or full wildcard), session (global or equal), owner (global
    or equal to ``context['owner_id']``) and conditions (every key equal in
    ``context``). The winner has the highest priority, then the highest
    specificity, then the latest ``created_at``. With no candidate the answer
    is ``prompt``.

    A winning ``once`` rule is deleted in the same locked transaction that
    read it, so two racing resolves cannot both use it.
    """

    def __init__(self, db: SQLiteManager, audit: Optional[AuditLog] = None):
        self.db = db
        self.audit = audit or AuditLog(db)

    # ── Rule CRUD ──

    def create_rule(self, rule: Any = None, **fields: Any) -> PermissionRule:
        if isinstance(rule, PermissionRule):
            data = rule.to_dict()
        else:
            data = dict(rule or {})
        data.update(fields)
        for required in ("subject_type", "resource_type", "action"):
            if not data.get(required):
                raise ValidationError(f"Permission rule requires {required}", field=required)
        data.pop("id", None)
        parsed = PermissionRule.from_dict(data)
        row = self.db.insert_rule(parsed.to_dict())
        created = PermissionRule.from_dict(row)
        logger.info(
            "Created %s rule %s: %s %s:%s -> %s:%s (priority %d)",
            created.scope.value, created.id, created.action.value,
            created.subject_type.value, created.subject_id or WILDCARD,
            created.resource_type.value, created.resource_name or WILDCARD,
            created.priority,
        )
        return created

    def get_rule(self, rule_id: int) -> Optional[PermissionRule]:
        row = self.db.get_rule(rule_id)
        return PermissionRule.from_dict(row) if row else None

    def delete_rule(self, rule_id: int) -> bool:
        return self.db.delete_rule(rule_id)

    def list_rules(self, **filters: Any) -> List[PermissionRule]:
        try:
            rows = self.db.list_rules(**{
                k: (v.value if isinstance(v, Enum) else v) for k, v in filters.items()
            })
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        return [PermissionRule.from_dict(r) for r in rows]

    def clear_session_rules(self, session_id: Any) -> int:
        removed = self.db.delete_session_rules(session_id)
        if removed:
            logger.info("Removed %d rules for session %s", removed, session_id)
        return removed

    # ── Resolution ──

    def resolve(
        self,
        subject: Subject,
        resource_type: Any,
        resource_name: Optional[str],
        session_id: Optional[Any],
        context: Optional[Mapping[str, Any]] = None,
    ) -> Resolution:
        context = dict(context or {})
        subject_type = SubjectType(subject.type)
        resource_type = ResourceType(resource_type)
        consumed = False

        with self.db.transaction():
            rows = self.db.find_candidate_rules(
                subject_type=subject_type.value,
                subject_id=subject.id,
                resource_type=resource_type.value,
                resource_name=resource_name,
                session_id=session_id,
                owner_id=context.get("owner_id"),
            )
            candidates = [PermissionRule.from_dict(r) for r in rows]
            candidates = [r for r in candidates if r.matches_conditions(context)]
            winner = max(candidates, key=_rank_key) if candidates else None
            if winner is not None and winner.scope == Scope.ONCE:
                consumed = self.db.delete_rule(winner.id)

        if winner is None:
            resolution = Resolution(Action.PROMPT)
        else:
            resolution = Resolution(winner.action, winner, consumed)

        self._audit(resolution, subject, resource_type, resource_name, session_id)
        return resolution

    def _audit(
        self,
        resolution: Resolution,
        subject: Subject,
        resource_type: ResourceType,
        resource_name: Optional[str],
        session_id: Optional[Any],
    ) -> None:
        event = {
            Action.ALLOW: AuditEvent.PERMISSION_ALLOW,
            Action.DENY: AuditEvent.PERMISSION_DENY,
            Action.PROMPT: AuditEvent.PERMISSION_PROMPT,
        }[resolution.action]
        rule = resolution.matched_rule
        details = {
            "subject_type": SubjectType(subject.type).value,
            "subject_id": subject.id,
            "resource_type": resource_type.value,
            "resource_name": resource_name,
            "session_id": _str_or_none(session_id),
            "rule_id": rule.id if rule else None,
        }
        if subject.type == SubjectType.AGENT:
            details["agent_id"] = subject.id
        elif subject.type == SubjectType.USER:
            details["user_id"] = subject.id
        self.audit.record(event, **details)
        if resolution.consumed:
            self.audit.record(AuditEvent.RULE_CONSUMED, rule_id=rule.id, session_id=details["session_id"])
