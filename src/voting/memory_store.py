"""
In-process Entity Store.

Tables are plain dicts keyed by record id. Every transaction holds the
store-wide lock and works on the live tables; a copy taken before its
first write is restored if it fails, so readers never see partial
writes. Serializing every transaction is stricter than the per-proposal
ordering the engine needs, which is fine for a single process.
"""

import copy
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from src.data_models.schemas import Delegation, Participant, Vote, VotingResult
from src.utils.logger import logger
from src.voting.exceptions import ConflictError
from src.voting.store import EntityStore, ParticipantMergePolicy, StoreSession


class _Tables:
    def __init__(self):
        self.participants: Dict[str, Participant] = {}
        self.votes: Dict[str, Vote] = {}
        self.delegations: Dict[str, Delegation] = {}
        self.results: Dict[Tuple[str, str], VotingResult] = {}


class InMemoryStoreSession(StoreSession):
    """StoreSession over the in-memory tables."""

    def __init__(self, tables: _Tables, merge_policy: ParticipantMergePolicy):
        self._t = tables
        self._merge_policy = merge_policy
        # Copy of the tables taken before the first write, restored on rollback
        self.snapshot: Optional[_Tables] = None

    def _writable(self) -> _Tables:
        if self.snapshot is None:
            self.snapshot = copy.deepcopy(self._t)
        return self._t

    # Participants

    def upsert_participant(self, organization_id: str, email: str, name: Optional[str] = None) -> Participant:
        incoming = Participant(organization_id=organization_id, email=email, name=name)
        existing = self.get_participant_by_email(organization_id, email)
        if existing is None:
            self._writable().participants[incoming.id] = incoming
            return incoming.model_copy()
        merged = self._merge_policy.merge(existing, incoming)
        self._writable().participants[merged.id] = merged
        return merged.model_copy()

    def get_participant(self, organization_id: str, participant_id: str) -> Optional[Participant]:
        participant = self._t.participants.get(participant_id)
        if participant is None or participant.organization_id != organization_id:
            return None
        return participant.model_copy()

    def get_participant_by_email(self, organization_id: str, email: str) -> Optional[Participant]:
        for participant in self._t.participants.values():
            if participant.organization_id == organization_id and participant.email == email:
                return participant.model_copy()
        return None

    def list_participants(self, organization_id: str) -> List[Participant]:
        return [p.model_copy() for p in self._t.participants.values() if p.organization_id == organization_id]

    # Votes

    def insert_vote(self, organization_id: str, participant_id: str, proposal_url: str, in_favor: bool) -> Vote:
        if self.get_vote(organization_id, participant_id, proposal_url) is not None:
            raise ConflictError(
                "Participant has already voted on this proposal",
                details={"participant_id": ["has already voted on this proposal"]},
            )
        vote = Vote(
            organization_id=organization_id,
            participant_id=participant_id,
            proposal_url=proposal_url,
            in_favor=in_favor,
        )
        self._writable().votes[vote.id] = vote
        return vote.model_copy()

    def get_vote(self, organization_id: str, participant_id: str, proposal_url: str) -> Optional[Vote]:
        for vote in self._t.votes.values():
            if (
                vote.organization_id == organization_id
                and vote.participant_id == participant_id
                and vote.proposal_url == proposal_url
            ):
                return vote.model_copy()
        return None

    def get_vote_by_id(self, organization_id: str, vote_id: str) -> Optional[Vote]:
        vote = self._t.votes.get(vote_id)
        if vote is None or vote.organization_id != organization_id:
            return None
        return vote.model_copy()

    def list_votes(
        self,
        organization_id: str,
        proposal_url: Optional[str] = None,
        participant_id: Optional[str] = None,
    ) -> List[Vote]:
        votes = [v for v in self._t.votes.values() if v.organization_id == organization_id]
        if proposal_url is not None:
            votes = [v for v in votes if v.proposal_url == proposal_url]
        if participant_id is not None:
            votes = [v for v in votes if v.participant_id == participant_id]
        return [v.model_copy() for v in sorted(votes, key=lambda v: (v.inserted_at, v.id))]

    def update_vote_weight(self, vote_id: str, weight: int) -> Vote:
        vote = self._t.votes[vote_id]
        if vote.weight != weight:
            vote = vote.model_copy(update={"weight": weight, "updated_at": datetime.now(timezone.utc)})
            self._writable().votes[vote_id] = vote
        return vote.model_copy()

    def delete_vote(self, vote_id: str) -> None:
        self._writable().votes.pop(vote_id, None)

    def list_voted_proposals(self, organization_id: str) -> List[str]:
        return sorted({v.proposal_url for v in self._t.votes.values() if v.organization_id == organization_id})

    # Delegations

    def insert_delegation(
        self,
        organization_id: str,
        delegator_id: str,
        delegate_id: str,
        proposal_url: Optional[str] = None,
    ) -> Delegation:
        if self.get_delegation(organization_id, delegator_id, proposal_url) is not None:
            raise ConflictError(
                "Delegator already has a delegation for this scope",
                details={"delegator_id": ["already has a delegation for this scope"]},
            )
        delegation = Delegation(
            organization_id=organization_id,
            delegator_id=delegator_id,
            delegate_id=delegate_id,
            proposal_url=proposal_url,
        )
        self._writable().delegations[delegation.id] = delegation
        return delegation.model_copy()

    def get_delegation(
        self, organization_id: str, delegator_id: str, proposal_url: Optional[str] = None
    ) -> Optional[Delegation]:
        for delegation in self._t.delegations.values():
            if (
                delegation.organization_id == organization_id
                and delegation.delegator_id == delegator_id
                and delegation.proposal_url == proposal_url
            ):
                return delegation.model_copy()
        return None

    def get_delegation_by_id(self, organization_id: str, delegation_id: str) -> Optional[Delegation]:
        delegation = self._t.delegations.get(delegation_id)
        if delegation is None or delegation.organization_id != organization_id:
            return None
        return delegation.model_copy()

    def list_delegations(self, organization_id: str) -> List[Delegation]:
        delegations = [d for d in self._t.delegations.values() if d.organization_id == organization_id]
        return [d.model_copy() for d in sorted(delegations, key=lambda d: (d.inserted_at, d.id))]

    def delete_delegation(self, delegation_id: str) -> None:
        self._writable().delegations.pop(delegation_id, None)

    def list_delegated_proposals(self, organization_id: str) -> List[str]:
        return sorted({
            d.proposal_url
            for d in self._t.delegations.values()
            if d.organization_id == organization_id and d.proposal_url is not None
        })

    # Results

    def upsert_result(self, organization_id: str, proposal_url: str, in_favor: int, against: int) -> VotingResult:
        result = VotingResult(
            organization_id=organization_id,
            proposal_url=proposal_url,
            in_favor=in_favor,
            against=against,
            updated_at=datetime.now(timezone.utc),
        )
        self._writable().results[(organization_id, proposal_url)] = result
        return result.model_copy()

    def get_result(self, organization_id: str, proposal_url: str) -> Optional[VotingResult]:
        result = self._t.results.get((organization_id, proposal_url))
        return result.model_copy() if result is not None else None

    def list_results(self, organization_id: str) -> List[VotingResult]:
        return [
            r.model_copy()
            for key, r in sorted(self._t.results.items())
            if key[0] == organization_id
        ]


class InMemoryEntityStore(EntityStore):
    """Entity store kept in process memory."""

    backend = "memory"

    def __init__(self, merge_policy: Optional[ParticipantMergePolicy] = None):
        self._tables = _Tables()
        self._lock = threading.RLock()
        self._merge_policy = merge_policy or ParticipantMergePolicy()

    @contextmanager
    def transaction(
        self,
        organization_id: str,
        lock_keys: Iterable[str] = (),
        exclusive: bool = False,
    ) -> Iterator[InMemoryStoreSession]:
        with self._lock:
            session = InMemoryStoreSession(self._tables, self._merge_policy)
            try:
                yield session
            except BaseException:
                if session.snapshot is not None:
                    self._tables = session.snapshot
                    logger.info("InMemoryEntityStore: transaction rolled back (org=%s)", organization_id)
                raise

    def health(self):
        with self._lock:
            return {
                "backend": self.backend,
                "status": "ok",
                "participants": len(self._tables.participants),
                "votes": len(self._tables.votes),
                "delegations": len(self._tables.delegations),
            }
