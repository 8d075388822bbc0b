"""Weight Calculator: weight = 1 + number of transitive delegators of the voter."""

from typing import List, Optional

from src.data_models.schemas import Vote
from src.voting.resolver import DelegationGraph, DelegationResolver
from src.voting.store import StoreSession


class WeightCalculator:
    def __init__(self, session: StoreSession, resolver: Optional[DelegationResolver] = None):
        self.session = session
        self.resolver = resolver or DelegationResolver(session)

    @staticmethod
    def compute_weight(vote: Vote, graph: DelegationGraph) -> int:
        return 1 + len(graph.transitive_delegators(vote.participant_id))

    def recompute_weight(self, vote: Vote, graph: Optional[DelegationGraph] = None) -> Vote:
        """Compute the vote's weight against the current graph and persist it."""
        if graph is None:
            graph = self.resolver.graph(vote.organization_id, vote.proposal_url)
        return self.session.update_vote_weight(vote.id, self.compute_weight(vote, graph))

    def recompute_proposal(self, organization_id: str, proposal_url: str) -> List[Vote]:
        """Recompute every vote on a proposal from one graph snapshot."""
        graph = self.resolver.graph(organization_id, proposal_url)
        votes = self.session.list_votes(organization_id, proposal_url=proposal_url)
        return [self.recompute_weight(vote, graph) for vote in votes]
