from typing import List, Optional

from fastapi import APIRouter, Depends

from src.data_models.schemas import (
    Delegation,
    DelegationCreateRequest,
    DelegationDeleteRequest,
    DelegationResponse,
    Participant,
    RefreshRequest,
    Vote,
    VoteCreateRequest,
    VoteDeleteRequest,
    VoteResponse,
    VotingResult,
)
from src.routers.deps import get_engine, get_organization_id
from src.voting.engine import VotingEngine

# Handlers are plain `def` so the blocking store calls run in the threadpool
router = APIRouter()


# --------------------------------------------------
# Votes
# --------------------------------------------------

@router.post("/votes", response_model=VoteResponse)
def create_vote(
    req: VoteCreateRequest,
    organization_id: str = Depends(get_organization_id),
    engine: VotingEngine = Depends(get_engine),
):
    return engine.create_vote(req.participant, req.proposal_url, req.in_favor, organization_id)


@router.delete("/votes", response_model=VoteResponse)
def delete_vote(
    req: VoteDeleteRequest,
    organization_id: str = Depends(get_organization_id),
    engine: VotingEngine = Depends(get_engine),
):
    return engine.delete_vote(req.participant, req.proposal_url, organization_id)


@router.get("/votes", response_model=List[Vote])
def list_votes(
    proposal_url: Optional[str] = None,
    participant_id: Optional[str] = None,
    organization_id: str = Depends(get_organization_id),
    engine: VotingEngine = Depends(get_engine),
):
    return engine.list_votes(organization_id, proposal_url=proposal_url, participant_id=participant_id)


@router.get("/votes/{vote_id}", response_model=Vote)
def get_vote(
    vote_id: str,
    organization_id: str = Depends(get_organization_id),
    engine: VotingEngine = Depends(get_engine),
):
    return engine.get_vote(vote_id, organization_id)


# --------------------------------------------------
# Delegations
# --------------------------------------------------

@router.post("/delegations", response_model=DelegationResponse)
def create_delegation(
    req: DelegationCreateRequest,
    organization_id: str = Depends(get_organization_id),
    engine: VotingEngine = Depends(get_engine),
):
    return engine.create_delegation(req.delegator, req.delegate, req.proposal_url, organization_id)


@router.delete("/delegations", response_model=DelegationResponse)
def delete_delegation(
    req: DelegationDeleteRequest,
    organization_id: str = Depends(get_organization_id),
    engine: VotingEngine = Depends(get_engine),
):
    return engine.delete_delegation(req.delegator, req.delegate, req.proposal_url, organization_id)


@router.get("/delegations", response_model=List[Delegation])
def list_delegations(
    organization_id: str = Depends(get_organization_id),
    engine: VotingEngine = Depends(get_engine),
):
    return engine.list_delegations(organization_id)


@router.get("/delegations/{delegation_id}", response_model=Delegation)
def get_delegation(
    delegation_id: str,
    organization_id: str = Depends(get_organization_id),
    engine: VotingEngine = Depends(get_engine),
):
    return engine.get_delegation(delegation_id, organization_id)


# --------------------------------------------------
# Participants
# --------------------------------------------------

@router.get("/participants", response_model=List[Participant])
def list_participants(
    organization_id: str = Depends(get_organization_id),
    engine: VotingEngine = Depends(get_engine),
):
    return engine.list_participants(organization_id)


@router.get("/participants/{participant_id}", response_model=Participant)
def get_participant(
    participant_id: str,
    organization_id: str = Depends(get_organization_id),
    engine: VotingEngine = Depends(get_engine),
):
    return engine.get_participant(participant_id, organization_id)


# --------------------------------------------------
# Results
# --------------------------------------------------

@router.get("/results", response_model=VotingResult)
def get_result(
    proposal_url: str,
    organization_id: str = Depends(get_organization_id),
    engine: VotingEngine = Depends(get_engine),
):
    return engine.get_result(proposal_url, organization_id)


@router.get("/results/all", response_model=List[VotingResult])
def list_results(
    organization_id: str = Depends(get_organization_id),
    engine: VotingEngine = Depends(get_engine),
):
    return engine.list_results(organization_id)


@router.post("/results/refresh", response_model=List[VotingResult])
def refresh_results(
    req: RefreshRequest,
    organization_id: str = Depends(get_organization_id),
    engine: VotingEngine = Depends(get_engine),
):
    """Recompute one proposal, or the whole organization when no url is given."""
    if req.proposal_url is None:
        return engine.refresh_organization(organization_id)
    return [engine.refresh_result(req.proposal_url, organization_id)]
