"""
Delegation Resolver.

Answers, for one proposal, which delegation of a participant is live and
which participants funnel their vote into a given direct voter.

Resolution never caches across requests: every call reads a fresh
``DelegationGraph`` snapshot from the current store session. Traversal is
iterative with a visited set, so corrupted data containing a cycle still
terminates and counts every participant at most once.

Liveness rules for a participant P on proposal U:
  1. P has a direct vote on U -> no live delegation (the vote wins).
  2. P has a delegation scoped to U -> that one.
  3. P has a global delegation -> that one.
  4. Otherwise P has no live delegation on U.
"""

from collections import defaultdict
from typing import Dict, FrozenSet, Iterable, List, Optional, Set

from src.data_models.schemas import Delegation, Participant
from src.utils.logger import logger
from src.voting.exceptions import ConflictError, CycleError, SelfDelegationError
from src.voting.store import StoreSession


class DelegationGraph:
    """Snapshot of an organization's delegation edges as seen by one proposal.

    ``proposal_url=None`` gives the global-only view: no proposal-specific
    edges and no direct voters.
    """

    def __init__(
        self,
        organization_id: str,
        proposal_url: Optional[str],
        delegations: Iterable[Delegation],
        voter_ids: Iterable[str] = (),
    ):
        self.organization_id = organization_id
        self.proposal_url = proposal_url
        self._delegations = list(delegations)
        self._voters: FrozenSet[str] = frozenset(voter_ids)
        self._global: Dict[str, Delegation] = {}
        self._specific: Dict[str, Delegation] = {}
        for delegation in self._delegations:
            if delegation.is_global:
                self._global[delegation.delegator_id] = delegation
            elif proposal_url is not None and delegation.proposal_url == proposal_url:
                self._specific[delegation.delegator_id] = delegation

        # delegate -> delegators holding an edge that could apply to this proposal
        self._incoming: Dict[str, List[str]] = defaultdict(list)
        for delegator_id, delegation in list(self._global.items()) + list(self._specific.items()):
            self._incoming[delegation.delegate_id].append(delegator_id)

    @classmethod
    def load(cls, session: StoreSession, organization_id: str, proposal_url: Optional[str]) -> "DelegationGraph":
        """Read the current delegations and direct voters from the store."""
        delegations = session.list_delegations(organization_id)
        voter_ids: Set[str] = set()
        if proposal_url is not None:
            voter_ids = {v.participant_id for v in session.list_votes(organization_id, proposal_url=proposal_url)}
        return cls(organization_id, proposal_url, delegations, voter_ids)

    def has_voted(self, participant_id: str) -> bool:
        return participant_id in self._voters

    def effective_delegation(self, participant_id: str) -> Optional[Delegation]:
        if participant_id in self._voters:
            return None
        return self._specific.get(participant_id) or self._global.get(participant_id)

    def effective_delegate(self, participant_id: str) -> Optional[str]:
        delegation = self.effective_delegation(participant_id)
        return delegation.delegate_id if delegation is not None else None

    def transitive_delegators(self, participant_id: str) -> FrozenSet[str]:
        """Ids of every participant whose vote flows into ``participant_id``."""
        visited = {participant_id}
        found: Set[str] = set()
        worklist = [participant_id]
        while worklist:
            current = worklist.pop()
            for delegator_id in self._incoming.get(current, ()):
                if delegator_id in visited:
                    continue
                # Only follow the edge if it is the delegator's live one here
                if self.effective_delegate(delegator_id) != current:
                    continue
                visited.add(delegator_id)
                found.add(delegator_id)
                worklist.append(delegator_id)
        return frozenset(found)

    def delegation_chain(self, participant_id: str) -> List[str]:
        """Participants reached by following live delegations from ``participant_id``.

        Stops at a participant without a live delegation or at the first
        repeated participant.
        """
        chain = [participant_id]
        seen = {participant_id}
        current = self.effective_delegate(participant_id)
        while current is not None:
            chain.append(current)
            if current in seen:
                break
            seen.add(current)
            current = self.effective_delegate(current)
        return chain

    def possible_delegates(self, participant_id: str) -> List[str]:
        """Every delegate that can carry ``participant_id``'s vote here.

        Ignores direct votes and specific overrides: deleting a vote or an
        override makes the remaining edge live without any new write.
        """
        delegates = []
        for scope in (self._specific, self._global):
            delegation = scope.get(participant_id)
            if delegation is not None:
                delegates.append(delegation.delegate_id)
        return delegates

    def can_reach(self, source_id: str, target_id: str) -> bool:
        """True if some chain of possible delegations leads from source to target."""
        visited = {source_id}
        worklist = [source_id]
        while worklist:
            current = worklist.pop()
            if current == target_id:
                return True
            for delegate_id in self.possible_delegates(current):
                if delegate_id not in visited:
                    visited.add(delegate_id)
                    worklist.append(delegate_id)
        return False


class DelegationResolver:
    """Delegation queries and write-time validation against one store session."""

    def __init__(self, session: StoreSession):
        self.session = session

    def graph(self, organization_id: str, proposal_url: Optional[str]) -> DelegationGraph:
        return DelegationGraph.load(self.session, organization_id, proposal_url)

    def effective_delegate(
        self, participant_id: str, proposal_url: str, organization_id: str
    ) -> Optional[Participant]:
        """Participant currently carrying ``participant_id``'s vote on ``proposal_url``."""
        delegate_id = self.graph(organization_id, proposal_url).effective_delegate(participant_id)
        if delegate_id is None:
            return None
        return self.session.get_participant(organization_id, delegate_id)

    def transitive_delegators(
        self, participant_id: str, proposal_url: str, organization_id: str
    ) -> List[Participant]:
        """Participants whose vote on ``proposal_url`` flows into ``participant_id``, ordered by email."""
        ids = self.graph(organization_id, proposal_url).transitive_delegators(participant_id)
        participants = [self.session.get_participant(organization_id, pid) for pid in ids]
        return sorted((p for p in participants if p is not None), key=lambda p: p.email)

    def _cycle_contexts(self, organization_id: str, proposal_url: Optional[str]) -> List[Optional[str]]:
        if proposal_url is not None:
            return [proposal_url]
        # A global edge is live on every proposal without a more specific
        # override; only proposals with specific edges can differ from the
        # global-only view.
        return [None] + self.session.list_delegated_proposals(organization_id)

    def validate_new_delegation(
        self,
        organization_id: str,
        delegator_id: str,
        delegate_id: str,
        proposal_url: Optional[str] = None,
    ) -> None:
        """Reject a delegation that may not be created; raises, never mutates."""
        if delegator_id == delegate_id:
            raise SelfDelegationError()

        if self.session.get_delegation(organization_id, delegator_id, proposal_url) is not None:
            scope = "this proposal" if proposal_url else "all proposals"
            raise ConflictError(
                f"Delegator already has a delegation for {scope}; delete it first",
                details={"delegator": ["already has a delegation for this scope"]},
            )

        if proposal_url is not None and self.session.get_vote(organization_id, delegator_id, proposal_url):
            raise ConflictError(
                "Delegator has already voted on this proposal; delete the vote first",
                details={"delegator": ["has already voted on this proposal"]},
            )

        # Votes and specific overrides are transient, so the check runs on
        # every edge that could become live, not only the live ones.
        delegations = self.session.list_delegations(organization_id)
        for context_url in self._cycle_contexts(organization_id, proposal_url):
            graph = DelegationGraph(organization_id, context_url, delegations)
            if graph.can_reach(delegate_id, delegator_id):
                logger.warning(
                    "DelegationResolver: rejected cycle %s -> %s (org=%s, proposal=%s)",
                    delegator_id,
                    delegate_id,
                    organization_id,
                    context_url or "*",
                )
                raise CycleError()
