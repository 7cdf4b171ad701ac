from agora.abilities.registry import Ability, AbilityRegistry, Allowance, DangerLevel, FunctionAbility
from agora.abilities.approval import ApprovalOutcome, ApprovalStatus, ApprovalTicket, ApprovalWorkflow, request_hash
from agora.abilities.executor import AbilityExecutor

__all__ = [
    "Ability",
    "AbilityRegistry",
    "Allowance",
    "DangerLevel",
    "FunctionAbility",
    "ApprovalOutcome",
    "ApprovalStatus",
    "ApprovalTicket",
    "ApprovalWorkflow",
    "request_hash",
    "AbilityExecutor",
]
