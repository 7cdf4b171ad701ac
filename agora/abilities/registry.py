"""Ability contract and the name-keyed registry."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from agora.context import DelegationContext
from agora.exceptions import NotFound, ValidationError
from agora.interactions.bus import Target
from agora.permissions.engine import Action

logger = logging.getLogger(__name__)


class DangerLevel(str, Enum):
    SAFE = "safe"
    MODERATE = "moderate"
    DANGEROUS = "dangerous"


@dataclass(frozen=True)
class Allowance:
    allowed: bool
    reason: Optional[str] = None


class Ability:
    """Base class for a named, schema-described capability.

    ``schema`` follows the JSON Schema object shape; only ``required`` is
    enforced here. Subclasses override :meth:`execute` and optionally
    :meth:`allowed`.
    """

    name: str = ""
    target: str = Target.SYSTEM
    default_permission: Action = Action.PROMPT
    schema: Mapping[str, Any] = MappingProxyType({})
    examples: Sequence[Dict[str, Any]] = ()
    description: str = ""
    danger_level: DangerLevel = DangerLevel.SAFE

    def validate(self, payload: Mapping[str, Any]) -> None:
        if not isinstance(payload, Mapping):
            raise ValidationError(f"{self.name}: payload must be an object")
        missing = [f for f in self.schema.get("required", []) if payload.get(f) in (None, "")]
        if missing:
            raise ValidationError(
                f"{self.name}: missing required field(s): {', '.join(missing)}",
                ability=self.name,
                missing=missing,
            )

    def allowed(self, payload: Mapping[str, Any], context: DelegationContext) -> Allowance:
        return Allowance(True)

    def execute(self, payload: Mapping[str, Any], context: DelegationContext) -> Any:
        raise NotImplementedError

    def describe(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "target": self.target,
            "default_permission": Action(self.default_permission).value,
            "schema": dict(self.schema),
            "examples": list(self.examples),
            "description": self.description,
            "danger_level": DangerLevel(self.danger_level).value,
        }

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name!r}>"


class FunctionAbility(Ability):
    """Wraps a plain ``fn(payload, context)`` callable as an ability."""

    def __init__(
        self,
        name: str,
        fn: Callable[[Mapping[str, Any], DelegationContext], Any],
        *,
        description: str = "",
        schema: Optional[Dict[str, Any]] = None,
        examples: Optional[List[Dict[str, Any]]] = None,
        danger_level: DangerLevel = DangerLevel.SAFE,
        default_permission: Action = Action.PROMPT,
        target: str = Target.SYSTEM,
        check: Optional[Callable[[Mapping[str, Any], DelegationContext], Allowance]] = None,
    ):
        self.name = name
        self.fn = fn
        self.description = description
        self.schema = dict(schema or {})
        self.examples = list(examples or [])
        self.danger_level = DangerLevel(danger_level)
        self.default_permission = Action(default_permission)
        self.target = target
        self._check = check

    def allowed(self, payload: Mapping[str, Any], context: DelegationContext) -> Allowance:
        if self._check is None:
            return Allowance(True)
        return self._check(payload, context)

    def execute(self, payload: Mapping[str, Any], context: DelegationContext) -> Any:
        return self.fn(payload, context)


class AbilityRegistry:
    """Closed name → ability mapping. Dispatch never switches on names."""

    def __init__(self) -> None:
        self._abilities: Dict[str, Ability] = {}
        self._lock = threading.Lock()

    def register(self, ability: Ability, replace: bool = False) -> Ability:
        if not ability.name:
            raise ValidationError("Ability must have a name")
        with self._lock:
            if ability.name in self._abilities and not replace:
                raise ValidationError(f"Ability already registered: {ability.name}", ability=ability.name)
            self._abilities[ability.name] = ability
        logger.debug("Registered ability %s", ability.name)
        return ability

    def get(self, name: str) -> Ability:
        with self._lock:
            ability = self._abilities.get(name)
        if ability is None:
            raise NotFound(f"Unknown ability: {name}", ability=name)
        return ability

    def has(self, name: str) -> bool:
        with self._lock:
            return name in self._abilities

    def unregister(self, name: str) -> bool:
        with self._lock:
            return self._abilities.pop(name, None) is not None

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._abilities)

    def __len__(self) -> int:
        with self._lock:
            return len(self._abilities)
