"""Process-level wiring of storage, frames, bus, permissions, abilities and delegation."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Mapping, Optional

from agora.abilities.approval import ApprovalWorkflow
from agora.abilities.executor import AbilityExecutor
from agora.abilities.registry import AbilityRegistry
from agora.configs.base import AgoraConfig
from agora.context import DelegationContext
from agora.db.sqlite import SQLiteManager
from agora.delegation import AgentRunner, DelegateAbility, DelegationController
from agora.exceptions import NotFound
from agora.frames.builders import FrameWriter
from agora.frames.compaction import Compactor
from agora.frames.store import FrameStore
from agora.interactions.bus import Interaction, InteractionBus, Target
from agora.observability import AuditLog, logger as structured_logger
from agora.participants import AgentDirectory, ParticipantRole, ParticipantStore, ParticipantType
from agora.permissions.engine import PermissionEngine
from agora.pubsub import Broadcaster

logger = logging.getLogger(__name__)


class Workspace:
    """One agora instance: every component, explicitly owned and shared by reference.

    Nothing here is a module-level singleton, so two workspaces (or two
    tests) never share pending interactions or rules.

    Usage::

        with Workspace(AgoraConfig(db_path=":memory:")) as ws:
            session = ws.create_session(name="planning", owner_id="u1")
            ws.frames.user_message(session["id"], "u1", "hello")
    """

    def __init__(
        self,
        config: Optional[AgoraConfig] = None,
        runner: Optional[AgentRunner] = None,
        db: Optional[SQLiteManager] = None,
    ) -> None:
        self.config = config or AgoraConfig.from_env()
        self.db = db or SQLiteManager(self.config.db_path)
        self.broadcaster = Broadcaster()
        self.audit = AuditLog(self.db)

        self.store = FrameStore(self.db, self.broadcaster)
        self.frames = FrameWriter(self.store)
        self.compactor = Compactor(self.store, self.config.compaction, self.broadcaster)

        self.bus = InteractionBus(self.config, self.broadcaster, self.audit)
        self.permissions = PermissionEngine(self.db, self.audit)
        self.participants = ParticipantStore(self.db)
        self.agents = AgentDirectory(self.db)

        self.abilities = AbilityRegistry()
        self.approvals = ApprovalWorkflow(
            self.db, self.bus, self.permissions, self.config, self.broadcaster, self.audit,
        )
        self.executor = AbilityExecutor(self.abilities, self.permissions, self.approvals, self.broadcaster)
        self.delegation = DelegationController(
            self.participants, self.agents, self.store, runner, self.config, self.audit,
        )
        self.abilities.register(DelegateAbility(self.delegation))
        self.bus.register_handler(Target.FUNCTION, self._run_function)

    def __enter__(self) -> "Workspace":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # ── Sessions ──

    def create_session(
        self,
        name: Optional[str] = None,
        owner_id: Optional[Any] = None,
        session_id: Optional[Any] = None,
    ) -> Dict[str, Any]:
        session = self.db.create_session(session_id=session_id, name=name, owner_id=owner_id)
        if owner_id is not None:
            self.participants.add(session["id"], ParticipantType.USER, owner_id, ParticipantRole.OWNER)
        logger.info("Created session %s", session["id"])
        return session

    def close_session(self, session_id: Any) -> bool:
        """Close a session: pending interactions and approvals settle as cancelled."""
        sid = str(session_id)
        if not self.db.close_session(sid):
            return False
        cancelled = self.bus.cancel_session(sid)
        self.compactor.cancel(sid)
        removed = self.permissions.clear_session_rules(sid)
        self.broadcaster.broadcast(sid, "session_closed", {"cancelled": cancelled, "rules_removed": removed})
        structured_logger.info("Session closed", session_id=sid, cancelled=cancelled, rules_removed=removed)
        return True

    def add_agent(
        self,
        session_id: Any,
        agent_id: Any,
        role: Any = ParticipantRole.MEMBER,
        alias: Optional[str] = None,
    ):
        return self.participants.add(session_id, ParticipantType.AGENT, agent_id, role, alias)

    # ── Agents / abilities ──

    def set_runner(self, runner: AgentRunner) -> None:
        self.delegation.runner = runner

    def context(
        self,
        session_id: Any,
        agent_id: Optional[Any] = None,
        user_id: Optional[Any] = None,
        credentials: Any = None,
        **attributes: Any,
    ) -> DelegationContext:
        session = self.db.get_session(session_id)
        if session is None:
            raise NotFound(f"Unknown session: {session_id}", session_id=str(session_id))
        return DelegationContext(
            session_id=session["id"],
            agent_id=agent_id,
            user_id=user_id if user_id is not None else session.get("owner_id"),
            owner_id=session.get("owner_id"),
            credentials_handle=credentials,
            attributes=attributes,
        )

    def execute_ability(
        self,
        name: str,
        params: Optional[Mapping[str, Any]],
        context: DelegationContext,
        approval_timeout_ms: Optional[int] = None,
    ) -> Any:
        return self.executor.execute_ability(name, params, context, approval_timeout_ms)

    def subscribe(self, session_id: Any, callback: Callable[[Dict[str, Any]], None]) -> Callable:
        return self.broadcaster.subscribe(session_id, callback)

    # ── Lifecycle ──

    def close(self) -> None:
        self.bus.close()
        self.compactor.close()
        self.db.close()

    def _run_function(self, interaction: Interaction) -> Any:
        """Bus handler for non-``@`` targets: the target names an ability."""
        session = self.db.get_session(interaction.session_id) if interaction.session_id else None
        context = DelegationContext(
            session_id=interaction.session_id,
            agent_id=interaction.source_agent_id,
            user_id=interaction.user_id,
            owner_id=session.get("owner_id") if session else None,
        )
        return self.executor.execute_ability(interaction.target, interaction.payload, context)
