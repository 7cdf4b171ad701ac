"""Per-call execution context threaded through abilities and delegation."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Optional

from agora.permissions.engine import Subject, SubjectType


@dataclass(frozen=True)
class DelegationContext:
    """Who is acting, in which session, and how deep in a delegation chain.

    Immutable: nested calls derive a new context with :meth:`child` instead of
    mutating a shared counter, so concurrent chains never interfere.
    """

    session_id: Optional[str] = None
    agent_id: Optional[str] = None
    user_id: Optional[str] = None
    delegation_depth: int = 0
    credentials_handle: Any = None
    owner_id: Optional[str] = None
    attributes: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for name in ("session_id", "agent_id", "user_id", "owner_id"):
            value = getattr(self, name)
            if value is not None and not isinstance(value, str):
                object.__setattr__(self, name, str(value))

    @property
    def subject(self) -> Subject:
        if self.agent_id is not None:
            return Subject(SubjectType.AGENT, self.agent_id)
        return Subject(SubjectType.USER, self.user_id)

    def child(self, agent_id: Any) -> "DelegationContext":
        return replace(self, agent_id=str(agent_id), delegation_depth=self.delegation_depth + 1)

    def conditions(self) -> Dict[str, Any]:
        """Values permission rule conditions are matched against."""
        values: Dict[str, Any] = dict(self.attributes)
        values.update({
            "session_id": self.session_id,
            "agent_id": self.agent_id,
            "user_id": self.user_id,
            "owner_id": self.owner_id,
            "delegation_depth": self.delegation_depth,
        })
        return values
