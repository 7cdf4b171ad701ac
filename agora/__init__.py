"""agora package exports.

agora: coordination core for multi-agent conversational workspaces
- Frames: append-only session log with a pure compile/compaction fold
- Interactions: addressed request/response with a self-response ban
- Permissions: priority rules with consumable ``once`` grants
- Abilities: permission-gated capabilities with user approval
- Delegation: bounded agent-to-agent task handoff

Quick Start:
    from agora import Workspace, AgoraConfig

    with Workspace(AgoraConfig(db_path=":memory:")) as ws:
        session = ws.create_session(name="demo", owner_id="u1")
        ws.frames.user_message(session["id"], "u1", "hello")
"""

from agora.workspace import Workspace
from agora.configs.base import AgoraConfig, CompactionConfig, RetryConfig
from agora.context import DelegationContext
from agora.frames import Frame, FrameFilter, FrameStore, FrameType, FrameWriter, Compactor, compile_frames
from agora.interactions import Interaction, InteractionBus, InteractionResult, InteractionStatus
from agora.permissions import Action, PermissionEngine, PermissionRule, Resolution, Scope, Subject
from agora.abilities import Ability, AbilityExecutor, AbilityRegistry, ApprovalWorkflow, FunctionAbility
from agora.delegation import DelegateAbility, DelegationController, DelegationOutcome, MAX_DELEGATION_DEPTH

__version__ = "0.1.0"
__all__ = [
    "Workspace",
    # Config
    "AgoraConfig",
    "CompactionConfig",
    "RetryConfig",
    # Frames
    "Frame",
    "FrameFilter",
    "FrameStore",
    "FrameType",
    "FrameWriter",
    "Compactor",
    "compile_frames",
    # Interactions
    "Interaction",
    "InteractionBus",
    "InteractionResult",
    "InteractionStatus",
    # Permissions
    "Action",
    "PermissionEngine",
    "PermissionRule",
    "Resolution",
    "Scope",
    "Subject",
    # Abilities
    "Ability",
    "AbilityExecutor",
    "AbilityRegistry",
    "ApprovalWorkflow",
    "FunctionAbility",
    # Delegation
    "DelegationContext",
    "DelegateAbility",
    "DelegationController",
    "DelegationOutcome",
    "MAX_DELEGATION_DEPTH",
]
