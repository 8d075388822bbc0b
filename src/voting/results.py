"""
Result Aggregator.

A VotingResult is derived data: it is always rebuilt from the votes and the
delegation graph, never patched with a delta, so it cannot drift.
"""

from typing import Iterable, Optional, Tuple

from src.data_models.schemas import Vote, VotingResult
from src.utils.logger import logger
from src.voting.store import StoreSession
from src.voting.weights import WeightCalculator


def tally(votes: Iterable[Vote]) -> Tuple[int, int]:
    """Sum vote weights into (in_favor, against)."""
    in_favor = 0
    against = 0
    for vote in votes:
        if vote.in_favor:
            in_favor += vote.weight
        else:
            against += vote.weight
    return in_favor, against


class ResultAggregator:
    def __init__(self, session: StoreSession, weights: Optional[WeightCalculator] = None):
        self.session = session
        self.weights = weights or WeightCalculator(session)

    def recalculate_result(self, organization_id: str, proposal_url: str) -> VotingResult:
        """Refresh every vote weight on the proposal, then upsert the tally.

        Must run inside the caller's store transaction so the weights and
        the result commit together.
        """
        votes = self.weights.recompute_proposal(organization_id, proposal_url)
        in_favor, against = tally(votes)
        result = self.session.upsert_result(organization_id, proposal_url, in_favor, against)
        logger.info(
            "ResultAggregator: %s (org=%s) -> in_favor=%d against=%d over %d votes",
            proposal_url, organization_id, in_favor, against, len(votes),
        )
        return result
