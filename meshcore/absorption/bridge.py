"""AbsorptionBridge: maps rail join events onto the absorption protocol."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from meshcore.absorption.protocol import AbsorptionProtocol, AbsorptionStage

logger = logging.getLogger("MeshCore.AbsorptionBridge")

MEMBER_SCOPES = ["message", "broadcast", "coherence"]
ABSORBED_SCOPES = MEMBER_SCOPES + ["spawn", "admin"]

#: ``(agent_id, scopes) -> token``; supplied by the external security layer.
TokenIssuer = Callable[[str, List[str]], str]


@dataclass
class RailClient:
    """What the rail knows about a joining agent."""

    agent_id: str
    agent_name: str
    capabilities: List[str] = field(default_factory=list)
    embedding: Optional[List[float]] = None


@dataclass
class JoinResult:
    accepted: bool
    stage: AbsorptionStage
    capability_token: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "accepted": self.accepted,
            "stage": self.stage.value,
            "capability_token": self.capability_token,
        }


class AbsorptionBridge:
    """Drives absorption stages from rail joins and hands out capability tokens.

    Tokens are never minted here: *token_issuer* belongs to the security layer.
    """

    def __init__(self, absorption: AbsorptionProtocol, token_issuer: TokenIssuer) -> None:
        self.absorption = absorption
        self._issue = token_issuer

    def handle_join(self, client: RailClient) -> JoinResult:
        """Advance *client* one step on (re)joining the rail."""
        stage = self.absorption.get_candidate_stage(client.agent_id)

        if stage is None:
            self.absorption.observe(client.agent_id, client.embedding, agent_name=client.agent_name)
            return JoinResult(accepted=True, stage=AbsorptionStage.OBSERVED)

        if stage == AbsorptionStage.ASSESSED:
            if self.absorption.invite_candidate(client.agent_id):
                return JoinResult(accepted=True, stage=AbsorptionStage.INVITED)
            return JoinResult(accepted=True, stage=stage)

        if stage == AbsorptionStage.INVITED:
            if not self.absorption.accept_invitation(client.agent_id):
                return JoinResult(accepted=True, stage=stage)
            token = self._issue_token(client.agent_id, MEMBER_SCOPES)
            return JoinResult(accepted=True, stage=AbsorptionStage.CONNECTED, capability_token=token)

        if stage in (AbsorptionStage.CONNECTED, AbsorptionStage.SYNCING, AbsorptionStage.ABSORBED):
            scopes = ABSORBED_SCOPES if stage == AbsorptionStage.ABSORBED else MEMBER_SCOPES
            token = self._issue_token(client.agent_id, scopes)
            return JoinResult(accepted=True, stage=stage, capability_token=token)

        return JoinResult(accepted=True, stage=stage)

    def record_interaction(self, agent_id: str, embedding: Optional[Sequence[float]] = None) -> None:
        self.absorption.observe(agent_id, embedding)

    def get_capability_token(self, agent_id: str) -> Optional[str]:
        """The live token held by *agent_id*, or None once revoked or ejected."""
        candidate = self.absorption.get_candidate(agent_id)
        return candidate.capability_token if candidate else None

    def remove_agent(self, agent_id: str) -> None:
        candidate = self.absorption.get_candidate(agent_id)
        if candidate is not None:
            candidate.capability_token = None

    def _issue_token(self, agent_id: str, scopes: List[str]) -> str:
        token = self._issue(agent_id, list(scopes))
        candidate = self.absorption.get_candidate(agent_id)
        if candidate is not None:
            candidate.capability_token = token
        logger.debug(f"Capability token issued to {agent_id} (scopes: {', '.join(scopes)})")
        return token
