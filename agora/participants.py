"""Session membership and the agent directory."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from agora.db.sqlite import SQLiteManager
from agora.exceptions import AgentNotFound, ValidationError

logger = logging.getLogger(__name__)


class ParticipantType(str, Enum):
    USER = "user"
    AGENT = "agent"


class ParticipantRole(str, Enum):
    OWNER = "owner"              # created the session
    COORDINATOR = "coordinator"  # answers unaddressed messages
    MEMBER = "member"            # answers when addressed


@dataclass
class Participant:
    session_id: str
    participant_type: ParticipantType
    participant_id: str
    role: ParticipantRole = ParticipantRole.MEMBER
    alias: Optional[str] = None
    joined_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Participant":
        return cls(
            session_id=row["session_id"],
            participant_type=ParticipantType(row["participant_type"]),
            participant_id=row["participant_id"],
            role=ParticipantRole(row["role"]),
            alias=row.get("alias"),
            joined_at=row.get("joined_at"),
        )


@dataclass
class AgentRecord:
    id: str
    name: str
    type: str
    api_url: Optional[str] = None
    config: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "AgentRecord":
        return cls(
            id=row["id"],
            name=row["name"],
            type=row["type"],
            api_url=row.get("api_url"),
            config=row.get("config") or {},
        )


class ParticipantStore:
    def __init__(self, db: SQLiteManager):
        self.db = db

    def add(
        self,
        session_id: Any,
        participant_type: Any,
        participant_id: Any,
        role: Any = ParticipantRole.MEMBER,
        alias: Optional[str] = None,
    ) -> Participant:
        ptype = ParticipantType(participant_type)
        prole = ParticipantRole(role)
        if self.db.is_participant(session_id, ptype.value, participant_id):
            raise ValidationError(
                f"{ptype.value} {participant_id} already in session {session_id}",
                session_id=str(session_id),
            )
        row = self.db.add_participant(session_id, ptype.value, participant_id, prole.value, alias)
        logger.info("Added %s %s to session %s as %s", ptype.value, participant_id, session_id, prole.value)
        return Participant.from_row(row)

    def remove(self, session_id: Any, participant_type: Any, participant_id: Any) -> bool:
        return self.db.remove_participant(session_id, ParticipantType(participant_type).value, participant_id)

    def list(
        self,
        session_id: Any,
        role: Optional[Any] = None,
        participant_type: Optional[Any] = None,
    ) -> List[Participant]:
        rows = self.db.list_participants(session_id, ParticipantRole(role).value if role else None)
        participants = [Participant.from_row(r) for r in rows]
        if participant_type is not None:
            ptype = ParticipantType(participant_type)
            participants = [p for p in participants if p.participant_type == ptype]
        return participants

    def coordinator(self, session_id: Any) -> Optional[Participant]:
        """First agent that joined as coordinator, if any."""
        agents = self.list(session_id, role=ParticipantRole.COORDINATOR, participant_type=ParticipantType.AGENT)
        return agents[0] if agents else None

    def set_role(self, session_id: Any, participant_type: Any, participant_id: Any, role: Any) -> bool:
        return self.db.update_participant_role(
            session_id, ParticipantType(participant_type).value, participant_id, ParticipantRole(role).value,
        )

    def is_participant(self, session_id: Any, participant_type: Any, participant_id: Any) -> bool:
        return self.db.is_participant(session_id, ParticipantType(participant_type).value, participant_id)


class AgentDirectory:
    def __init__(self, db: SQLiteManager):
        self.db = db

    def register(
        self,
        name: str,
        agent_type: str,
        agent_id: Optional[Any] = None,
        api_url: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
    ) -> AgentRecord:
        if not name or not agent_type:
            raise ValidationError("Agent requires name and type")
        return AgentRecord.from_row(self.db.add_agent(name, agent_type, agent_id, api_url, config))

    def get(self, agent_id: Any) -> Optional[AgentRecord]:
        row = self.db.get_agent(agent_id)
        return AgentRecord.from_row(row) if row else None

    def require(self, agent_id: Any) -> AgentRecord:
        agent = self.get(agent_id)
        if agent is None:
            raise AgentNotFound(f"Agent {agent_id} not found", agent_id=str(agent_id))
        return agent
