"""Agent-to-agent delegation with bounded depth."""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, replace
from typing import Any, Callable, Dict, List, Mapping, Optional

from agora.abilities.registry import Ability, Allowance
from agora.configs.base import AgoraConfig
from agora.context import DelegationContext
from agora.exceptions import (
    AgentNotFound,
    AgoraError,
    DelegationDepthExceeded,
    MissingCredentials,
    NotAParticipant,
    SelfDelegation,
)
from agora.frames.builders import FrameWriter
from agora.frames.compaction import load_context
from agora.frames.store import FrameStore
from agora.interactions.bus import Target
from agora.observability import AuditEvent, AuditLog, metrics
from agora.participants import AgentDirectory, AgentRecord, ParticipantStore, ParticipantType
from agora.permissions.engine import Action
from agora.utils.retry import call_with_retry

logger = logging.getLogger(__name__)

MAX_DELEGATION_DEPTH = 10
DELEGATE_CONTEXT_FRAMES = 10

# runner(agent, messages, child_context) -> response text or {"content": ...}
AgentRunner = Callable[[AgentRecord, List[Dict[str, str]], DelegationContext], Any]


@dataclass(frozen=True)
class DelegationOutcome:
    agent_id: str
    agent_name: str
    response: str
    depth: int
    frame_id: Optional[str] = None
    status: str = "completed"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def build_delegation_prompt(
    task: str,
    from_agent: Any,
    target_name: str,
    depth: int,
    additional_context: Optional[str] = None,
) -> str:
    lines = [
        f"[Delegated Task - Depth {depth}]",
        "",
        f"You ({target_name}) have been delegated a task by the coordinator agent (ID: {from_agent}).",
        "",
        f"**Task:** {task}",
    ]
    if additional_context:
        lines += ["", f"**Additional Context:** {additional_context}"]
    lines += ["", "Please complete this task and provide your response. Be concise and focused on the task at hand."]
    return "\n".join(lines)


def response_text(response: Any) -> str:
    """Text of a runner response: a string, or ``content`` as a string or text blocks."""
    if isinstance(response, str):
        return response
    content = response.get("content") if isinstance(response, Mapping) else getattr(response, "content", None)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            block.get("text", "") for block in content
            if isinstance(block, Mapping) and block.get("type") == "text"
        )
    return "" if response is None else str(response)


class DelegationController:
    """Hands a task from one agent to another agent in the same session.

    Checks run in a fixed order (depth, self, membership, existence,
    credentials) and each rejection is audited before it is raised. The
    target runs with a child context one level deeper; the controller keeps
    no per-chain state, so chains in different threads are independent.
    """

    def __init__(
        self,
        participants: ParticipantStore,
        agents: AgentDirectory,
        store: FrameStore,
        runner: Optional[AgentRunner] = None,
        config: Optional[AgoraConfig] = None,
        audit: Optional[AuditLog] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.participants = participants
        self.agents = agents
        self.store = store
        self.writer = FrameWriter(store)
        self.runner = runner
        self.config = config or AgoraConfig()
        self.audit = audit or AuditLog()
        self._sleep = sleep

    @property
    def max_depth(self) -> int:
        return self.config.max_delegation_depth

    def delegate(
        self,
        from_agent: Any,
        to_agent_id: Any,
        task: str,
        depth: Optional[int] = None,
        context: Optional[DelegationContext] = None,
        additional_context: Optional[str] = None,
    ) -> DelegationOutcome:
        context = context or DelegationContext(agent_id=from_agent)
        if depth is not None and int(depth) != context.delegation_depth:
            context = replace(context, delegation_depth=int(depth))
        depth = context.delegation_depth
        from_agent = None if from_agent is None else str(from_agent)
        to_agent_id = str(to_agent_id)
        session_id = context.session_id

        if depth >= self.max_depth:
            self._reject(DelegationDepthExceeded(
                f"Maximum delegation depth ({self.max_depth}) exceeded. Cannot delegate further.",
                depth=depth,
            ), context, to_agent_id)
        if to_agent_id == from_agent:
            self._reject(SelfDelegation("An agent cannot delegate to itself", agent_id=from_agent), context, to_agent_id)
        if not session_id or not self.participants.is_participant(session_id, ParticipantType.AGENT, to_agent_id):
            self._reject(NotAParticipant(
                f"Agent {to_agent_id} is not a participant in session {session_id}",
                agent_id=to_agent_id,
                session_id=session_id,
            ), context, to_agent_id)
        agent = self._lookup(to_agent_id, context)
        if context.credentials_handle is None:
            self._reject(MissingCredentials(
                "Credentials not available for agent credential decryption", agent_id=to_agent_id,
            ), context, to_agent_id)
        if self.runner is None:
            raise AgoraError("No agent runner configured", code="not_configured")

        child = context.child(to_agent_id)
        messages = load_context(self.store, session_id, max_recent_frames=DELEGATE_CONTEXT_FRAMES)
        messages.append({
            "role": "user",
            "content": build_delegation_prompt(task, from_agent, agent.name, child.delegation_depth, additional_context),
        })

        logger.info(
            "Delegating from %s to %s in session %s at depth %d",
            from_agent, to_agent_id, session_id, child.delegation_depth,
        )
        with metrics.measure("delegate"):
            response = call_with_retry(
                self.runner, agent, messages, child, config=self.config.retry, sleep=self._sleep,
            )
        content = response_text(response)
        frame = self.writer.agent_message(session_id, to_agent_id, content)

        self.audit.record(
            AuditEvent.DELEGATION_COMPLETED,
            agent_id=from_agent,
            target_agent_id=to_agent_id,
            session_id=session_id,
            depth=child.delegation_depth,
        )
        return DelegationOutcome(
            agent_id=to_agent_id,
            agent_name=agent.name,
            response=content,
            depth=child.delegation_depth,
            frame_id=frame.id,
        )

    def _lookup(self, agent_id: str, context: DelegationContext) -> AgentRecord:
        agent = self.agents.get(agent_id)
        if agent is None:
            self._reject(AgentNotFound(f"Agent {agent_id} not found", agent_id=agent_id), context, agent_id)
        return agent

    def _reject(self, error: AgoraError, context: DelegationContext, to_agent_id: str) -> None:
        self.audit.record(
            AuditEvent.DELEGATION_REJECTED,
            agent_id=context.agent_id,
            target_agent_id=to_agent_id,
            session_id=context.session_id,
            depth=context.delegation_depth,
            code=error.code,
            reason=error.message,
        )
        raise error


class DelegateAbility(Ability):
    """The built-in ``delegate`` ability, routed through the executor like any other."""

    name = "delegate"
    target = Target.SYSTEM
    default_permission = Action.ALLOW
    description = (
        "Delegate a task to a member agent in the current session. "
        "The member agent will process the task and return a response."
    )
    schema = {
        "type": "object",
        "properties": {
            "agent_id": {"type": "string", "description": "Target agent (must be a participant in this session)"},
            "task": {"type": "string", "description": "The task description or instruction for the member agent"},
            "context": {"type": "string", "description": "Optional additional context for the member agent"},
        },
        "required": ["agent_id", "task"],
    }
    examples = [
        {
            "description": "Delegate a research task to another agent",
            "payload": {
                "agent_id": "researcher",
                "task": "Research the latest developments in quantum computing and summarize the key findings.",
                "context": "Focus on practical applications announced in the last 6 months.",
            },
        },
    ]

    def __init__(self, controller: DelegationController):
        self.controller = controller

    def allowed(self, payload: Mapping[str, Any], context: DelegationContext) -> Allowance:
        if not context.session_id:
            return Allowance(False, "Delegation requires a session context")
        return Allowance(True)

    def execute(self, payload: Mapping[str, Any], context: DelegationContext) -> Dict[str, Any]:
        outcome = self.controller.delegate(
            context.agent_id,
            payload["agent_id"],
            payload["task"],
            context.delegation_depth,
            context,
            additional_context=payload.get("context"),
        )
        return outcome.to_dict()
