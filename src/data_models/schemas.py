# Entity and request schemas for the liquid voting engine
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================
# Entities
# ============================================

class Participant(BaseModel):
    """A voter, unique by email within an organization"""
    id: str = Field(default_factory=_new_id)
    organization_id: str
    email: str
    name: Optional[str] = None
    inserted_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class Vote(BaseModel):
    """A direct yes/no vote; weight folds in transitive delegators"""
    id: str = Field(default_factory=_new_id)
    organization_id: str
    participant_id: str
    proposal_url: str
    in_favor: bool
    weight: int = 1
    inserted_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class Delegation(BaseModel):
    """A delegator -> delegate edge; global when proposal_url is None"""
    id: str = Field(default_factory=_new_id)
    organization_id: str
    delegator_id: str
    delegate_id: str
    proposal_url: Optional[str] = None
    inserted_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_global(self) -> bool:
        return self.proposal_url is None


class VotingResult(BaseModel):
    """Weighted tally for one proposal within one organization"""
    organization_id: str
    proposal_url: str
    in_favor: int = 0
    against: int = 0
    updated_at: Optional[datetime] = None


# ============================================
# Requests
# ============================================

class ParticipantRef(BaseModel):
    """Identifies a participant by existing id, or by email to upsert."""
    id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None


class VoteCreateRequest(BaseModel):
    participant: ParticipantRef
    proposal_url: str
    in_favor: bool


class VoteDeleteRequest(BaseModel):
    participant: ParticipantRef
    proposal_url: str


class DelegationCreateRequest(BaseModel):
    delegator: ParticipantRef
    delegate: Optional[ParticipantRef] = None
    proposal_url: Optional[str] = None


class DelegationDeleteRequest(BaseModel):
    delegator: ParticipantRef
    delegate: ParticipantRef
    proposal_url: Optional[str] = None


class RefreshRequest(BaseModel):
    proposal_url: Optional[str] = None


# ============================================
# Responses
# ============================================

class VoteResponse(BaseModel):
    vote: Vote
    participant: Participant
    voting_result: VotingResult


class DelegationResponse(BaseModel):
    delegation: Delegation
    delegator: Participant
    delegate: Participant
    voting_results: List[VotingResult] = Field(default_factory=list)


class ErrorDetail(BaseModel):
    kind: str
    message: str
    details: Dict[str, List[str]] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    """Body of every non-2xx response"""
    error: ErrorDetail
