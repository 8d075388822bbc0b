"""
Voting engine: the vote/delegation write transactions and their read side.

Per (organization, participant, proposal) a participant is in one of three
states: no opinion, delegated (global or proposal-specific), or direct vote.
Every write that moves between those states runs as one store transaction:

    graph mutation -> weight recompute -> result recompute -> persist

and the refreshed VotingResults are published only after that transaction
commits. A rejected write raises before anything is committed, so there is
never partial state or a stray notification.

Global delegation changes (and votes that cancel a global delegation) can
move weight on any proposal of the organization. With
``GLOBAL_DELEGATION_REFRESH=eager`` those writes also recompute every
proposal that has votes; with ``lazy`` only the proposal named by the write
is recomputed and ``refresh_result`` / ``refresh_organization`` bring the
others up to date on demand.
"""

import threading
from typing import Callable, Iterable, List, Optional, Tuple, TypeVar

from src.data_models.schemas import (
    Delegation,
    DelegationResponse,
    Participant,
    ParticipantRef,
    Vote,
    VoteResponse,
    VotingResult,
)
from src.utils.logger import logger
from src.voting.exceptions import (
    DelegationNotFoundError,
    LiquidVotingError,
    MissingOrganizationError,
    NotFoundError,
    SelfDelegationError,
    ValidationError,
    VoteNotFoundError,
)
from src.voting.notifier import ChangeNotifier, Subscription
from src.voting.resolver import DelegationResolver
from src.voting.results import ResultAggregator
from src.voting.store import EntityStore, StoreSession, get_entity_store

T = TypeVar("T")

REFRESH_MODES = ("eager", "lazy")


class _ExclusiveLockRequired(Exception):
    """The write turned out to touch a global delegation; rerun it org-exclusive."""


def _require_organization(organization_id: Optional[str]) -> str:
    if organization_id is None or not str(organization_id).strip():
        raise MissingOrganizationError()
    return str(organization_id).strip()


def _require_proposal_url(proposal_url: Optional[str]) -> str:
    if proposal_url is None or not proposal_url.strip():
        raise ValidationError("A proposal url is required", details={"proposal_url": ["can't be blank"]})
    return proposal_url.strip()


def _optional_proposal_url(proposal_url: Optional[str]) -> Optional[str]:
    if proposal_url is None:
        return None
    return _require_proposal_url(proposal_url)


def _validate_ref(ref: Optional[ParticipantRef], field: str) -> ParticipantRef:
    if ref is None or (not (ref.id or "").strip() and ref.email is None):
        raise ValidationError(
            f"Could not identify {field}",
            details={field: ["can't be blank"]},
        )
    if (ref.id or "").strip():
        return ParticipantRef(id=ref.id.strip(), email=ref.email, name=ref.name)
    email = (ref.email or "").strip()
    if not email:
        raise ValidationError(f"Could not identify {field}", details={f"{field}_email": ["can't be blank"]})
    if "@" not in email:
        raise ValidationError(f"Could not identify {field}", details={f"{field}_email": ["has invalid format"]})
    return ParticipantRef(email=email, name=ref.name)


def _same_identity(a: ParticipantRef, b: ParticipantRef) -> bool:
    if a.id and b.id:
        return a.id == b.id
    if a.email and b.email and not a.id and not b.id:
        return a.email == b.email
    return False


class VotingEngine:
    """Entry point used by the transport layer for every voting operation."""

    def __init__(
        self,
        store: Optional[EntityStore] = None,
        notifier: Optional[ChangeNotifier] = None,
        global_refresh: Optional[str] = None,
    ):
        from src.config.common_settings import GLOBAL_DELEGATION_REFRESH, SUBSCRIPTION_QUEUE_SIZE

        self.store = store or get_entity_store()
        self.notifier = notifier or ChangeNotifier(queue_size=SUBSCRIPTION_QUEUE_SIZE)
        self.global_refresh = (global_refresh or GLOBAL_DELEGATION_REFRESH).lower()
        if self.global_refresh not in REFRESH_MODES:
            raise ValueError(f"GLOBAL_DELEGATION_REFRESH must be one of {REFRESH_MODES}, got '{self.global_refresh}'")

    @property
    def eager(self) -> bool:
        return self.global_refresh == "eager"

    # ------------------------------------------------------------------
    # Transaction plumbing
    # ------------------------------------------------------------------

    def _write(
        self,
        operation: str,
        organization_id: str,
        lock_keys: Iterable[str],
        exclusive: bool,
        work: Callable[[StoreSession, bool], Tuple[T, List[VotingResult]]],
    ) -> T:
        lock_keys = list(lock_keys)
        try:
            try:
                value, results = self._commit(organization_id, lock_keys, exclusive, work)
            except _ExclusiveLockRequired:
                logger.info("VotingEngine: %s needs the organization lock, retrying (org=%s)", operation, organization_id)
                value, results = self._commit(organization_id, lock_keys, True, work)
        except LiquidVotingError as e:
            logger.warning("VotingEngine: %s rejected (org=%s): %s", operation, organization_id, e.message)
            raise

        # Publish strictly after commit
        for result in results:
            self.notifier.publish(organization_id, result.proposal_url, result)
        logger.info("VotingEngine: %s committed (org=%s, %d result(s) refreshed)", operation, organization_id, len(results))
        return value

    def _commit(self, organization_id, lock_keys, exclusive, work):
        with self.store.transaction(organization_id, lock_keys, exclusive=exclusive) as session:
            return work(session, exclusive)

    def _read(self, organization_id: str, work: Callable[[StoreSession], T]) -> T:
        with self.store.transaction(organization_id) as session:
            return work(session)

    def _recalculate(self, session: StoreSession, organization_id: str, proposal_urls: Iterable[str]) -> List[VotingResult]:
        aggregator = ResultAggregator(session)
        return [aggregator.recalculate_result(organization_id, url) for url in sorted(set(proposal_urls))]

    def _global_fanout(self, session: StoreSession, organization_id: str) -> List[str]:
        if not self.eager:
            return []
        return session.list_voted_proposals(organization_id)

    @staticmethod
    def _resolve(
        session: StoreSession,
        ref: ParticipantRef,
        organization_id: str,
        create: bool,
        missing: Callable[[], NotFoundError],
    ) -> Participant:
        if ref.id:
            participant = session.get_participant(organization_id, ref.id)
        elif create:
            participant = session.upsert_participant(organization_id, ref.email, ref.name)
        else:
            participant = session.get_participant_by_email(organization_id, ref.email)
        if participant is None:
            raise missing()
        return participant

    # ------------------------------------------------------------------
    # Votes
    # ------------------------------------------------------------------

    def create_vote(
        self,
        participant: ParticipantRef,
        proposal_url: str,
        in_favor: bool,
        organization_id: str,
    ) -> VoteResponse:
        """Cast a direct vote, cancelling any delegation that applies to the proposal."""
        organization_id = _require_organization(organization_id)
        proposal_url = _require_proposal_url(proposal_url)
        participant = _validate_ref(participant, "participant")

        def work(session: StoreSession, exclusive: bool):
            voter = self._resolve(
                session, participant, organization_id, create=True,
                missing=lambda: NotFoundError("Participant not found"),
            )
            global_delegation = session.get_delegation(organization_id, voter.id, None)
            if global_delegation is not None and not exclusive:
                raise _ExclusiveLockRequired()
            specific_delegation = session.get_delegation(organization_id, voter.id, proposal_url)

            vote = session.insert_vote(organization_id, voter.id, proposal_url, bool(in_favor))
            for delegation in (specific_delegation, global_delegation):
                if delegation is not None:
                    session.delete_delegation(delegation.id)
                    logger.info(
                        "VotingEngine: vote by %s cancels delegation %s -> %s (%s)",
                        voter.id, delegation.delegator_id, delegation.delegate_id,
                        delegation.proposal_url or "global",
                    )

            urls = [proposal_url]
            if global_delegation is not None:
                urls += self._global_fanout(session, organization_id)
            results = self._recalculate(session, organization_id, urls)
            vote = session.get_vote_by_id(organization_id, vote.id)
            result = next(r for r in results if r.proposal_url == proposal_url)
            return VoteResponse(vote=vote, participant=voter, voting_result=result), results

        return self._write("create_vote", organization_id, [proposal_url], False, work)

    def delete_vote(self, participant: ParticipantRef, proposal_url: str, organization_id: str) -> VoteResponse:
        """Withdraw a direct vote; the result is republished even when it drops to zero."""
        organization_id = _require_organization(organization_id)
        proposal_url = _require_proposal_url(proposal_url)
        participant = _validate_ref(participant, "participant")

        def work(session: StoreSession, exclusive: bool):
            voter = self._resolve(session, participant, organization_id, create=False, missing=VoteNotFoundError)
            vote = session.get_vote(organization_id, voter.id, proposal_url)
            if vote is None:
                raise VoteNotFoundError()
            session.delete_vote(vote.id)
            results = self._recalculate(session, organization_id, [proposal_url])
            return VoteResponse(vote=vote, participant=voter, voting_result=results[0]), results

        return self._write("delete_vote", organization_id, [proposal_url], False, work)

    def get_vote(self, vote_id: str, organization_id: str) -> Vote:
        organization_id = _require_organization(organization_id)
        vote = self._read(organization_id, lambda s: s.get_vote_by_id(organization_id, vote_id))
        if vote is None:
            raise NotFoundError("Vote not found")
        return vote

    def list_votes(
        self,
        organization_id: str,
        proposal_url: Optional[str] = None,
        participant_id: Optional[str] = None,
    ) -> List[Vote]:
        organization_id = _require_organization(organization_id)
        return self._read(
            organization_id,
            lambda s: s.list_votes(organization_id, proposal_url=proposal_url, participant_id=participant_id),
        )

    # ------------------------------------------------------------------
    # Delegations
    # ------------------------------------------------------------------

    def create_delegation(
        self,
        delegator: ParticipantRef,
        delegate: Optional[ParticipantRef],
        proposal_url: Optional[str],
        organization_id: str,
    ) -> DelegationResponse:
        """Create a global (proposal_url=None) or proposal-specific delegation."""
        organization_id = _require_organization(organization_id)
        proposal_url = _optional_proposal_url(proposal_url)
        delegator = _validate_ref(delegator, "delegator")
        delegate = _validate_ref(delegate, "delegate")
        if _same_identity(delegator, delegate):
            raise SelfDelegationError()

        def work(session: StoreSession, exclusive: bool):
            not_found = lambda: NotFoundError("Participant not found")  # noqa: E731
            delegator_p = self._resolve(session, delegator, organization_id, create=True, missing=not_found)
            delegate_p = self._resolve(session, delegate, organization_id, create=True, missing=not_found)

            DelegationResolver(session).validate_new_delegation(
                organization_id, delegator_p.id, delegate_p.id, proposal_url
            )
            delegation = session.insert_delegation(organization_id, delegator_p.id, delegate_p.id, proposal_url)

            urls = [proposal_url] if proposal_url else self._global_fanout(session, organization_id)
            results = self._recalculate(session, organization_id, urls)
            response = DelegationResponse(
                delegation=delegation, delegator=delegator_p, delegate=delegate_p, voting_results=results
            )
            return response, results

        lock_keys = [proposal_url] if proposal_url else []
        return self._write("create_delegation", organization_id, lock_keys, proposal_url is None, work)

    def delete_delegation(
        self,
        delegator: ParticipantRef,
        delegate: ParticipantRef,
        proposal_url: Optional[str],
        organization_id: str,
    ) -> DelegationResponse:
        """Remove the delegator's delegation to ``delegate`` for exactly this scope."""
        organization_id = _require_organization(organization_id)
        proposal_url = _optional_proposal_url(proposal_url)
        delegator = _validate_ref(delegator, "delegator")
        delegate = _validate_ref(delegate, "delegate")

        def work(session: StoreSession, exclusive: bool):
            delegator_p = self._resolve(
                session, delegator, organization_id, create=False, missing=DelegationNotFoundError
            )
            delegate_p = self._resolve(
                session, delegate, organization_id, create=False, missing=DelegationNotFoundError
            )
            delegation = session.get_delegation(organization_id, delegator_p.id, proposal_url)
            if delegation is None or delegation.delegate_id != delegate_p.id:
                raise DelegationNotFoundError()
            session.delete_delegation(delegation.id)

            urls = [proposal_url] if proposal_url else self._global_fanout(session, organization_id)
            results = self._recalculate(session, organization_id, urls)
            response = DelegationResponse(
                delegation=delegation, delegator=delegator_p, delegate=delegate_p, voting_results=results
            )
            return response, results

        lock_keys = [proposal_url] if proposal_url else []
        return self._write("delete_delegation", organization_id, lock_keys, proposal_url is None, work)

    def get_delegation(self, delegation_id: str, organization_id: str) -> Delegation:
        organization_id = _require_organization(organization_id)
        delegation = self._read(organization_id, lambda s: s.get_delegation_by_id(organization_id, delegation_id))
        if delegation is None:
            raise NotFoundError("Delegation not found")
        return delegation

    def list_delegations(self, organization_id: str) -> List[Delegation]:
        organization_id = _require_organization(organization_id)
        return self._read(organization_id, lambda s: s.list_delegations(organization_id))

    # ------------------------------------------------------------------
    # Participants
    # ------------------------------------------------------------------

    def get_participant(self, participant_id: str, organization_id: str) -> Participant:
        organization_id = _require_organization(organization_id)
        participant = self._read(organization_id, lambda s: s.get_participant(organization_id, participant_id))
        if participant is None:
            raise NotFoundError("Participant not found")
        return participant

    def list_participants(self, organization_id: str) -> List[Participant]:
        organization_id = _require_organization(organization_id)
        return self._read(organization_id, lambda s: s.list_participants(organization_id))

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def get_result(self, proposal_url: str, organization_id: str) -> VotingResult:
        """Current stored result; a zero tally if nobody has voted on the proposal yet."""
        organization_id = _require_organization(organization_id)
        proposal_url = _require_proposal_url(proposal_url)
        result = self._read(organization_id, lambda s: s.get_result(organization_id, proposal_url))
        if result is None:
            return VotingResult(organization_id=organization_id, proposal_url=proposal_url)
        return result

    def list_results(self, organization_id: str) -> List[VotingResult]:
        organization_id = _require_organization(organization_id)
        return self._read(organization_id, lambda s: s.list_results(organization_id))

    def refresh_result(self, proposal_url: str, organization_id: str) -> VotingResult:
        """Explicitly recompute and republish one proposal's result."""
        organization_id = _require_organization(organization_id)
        proposal_url = _require_proposal_url(proposal_url)

        def work(session: StoreSession, exclusive: bool):
            results = self._recalculate(session, organization_id, [proposal_url])
            return results[0], results

        return self._write("refresh_result", organization_id, [proposal_url], False, work)

    def refresh_organization(self, organization_id: str) -> List[VotingResult]:
        """Recompute every proposal that has votes or a stored result."""
        organization_id = _require_organization(organization_id)

        def work(session: StoreSession, exclusive: bool):
            urls = set(session.list_voted_proposals(organization_id))
            urls.update(r.proposal_url for r in session.list_results(organization_id))
            results = self._recalculate(session, organization_id, urls)
            return results, results

        return self._write("refresh_organization", organization_id, [], True, work)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, proposal_url: str, organization_id: str) -> Subscription:
        """Listen for result changes on one proposal; call from the consuming event loop."""
        organization_id = _require_organization(organization_id)
        proposal_url = _require_proposal_url(proposal_url)
        return self.notifier.subscribe(organization_id, proposal_url)


# Global engine instance for lazy initialization
_engine: Optional[VotingEngine] = None
_engine_lock = threading.Lock()


def get_voting_engine() -> VotingEngine:
    """Get or create the process-wide voting engine."""
    global _engine

    with _engine_lock:
        if _engine is None:
            _engine = VotingEngine()
            logger.info("VotingEngine initialized (store=%s, global refresh=%s)", _engine.store.backend, _engine.global_refresh)
        return _engine


def reset_voting_engine() -> None:
    global _engine

    with _engine_lock:
        _engine = None
