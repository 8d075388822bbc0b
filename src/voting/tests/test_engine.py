"""Tests for the vote/delegation write transactions of VotingEngine."""
import threading

import pytest
from unittest.mock import MagicMock

from src.data_models.schemas import ParticipantRef
from src.voting.exceptions import (
    ConflictError,
    CycleError,
    MissingOrganizationError,
    NotFoundError,
    SelfDelegationError,
    ValidationError,
)
from src.voting.resolver import DelegationGraph
from src.voting.weights import WeightCalculator

ORG = "org-1"
URL = "https://proposals.example.org/1"
OTHER_URL = "https://proposals.example.org/2"


def ref(email):
    return ParticipantRef(email=email)


def counts(result):
    return result.in_favor, result.against


def votes_by_email(engine, url=URL, org=ORG):
    participants = {p.id: p.email for p in engine.list_participants(org)}
    return {participants[v.participant_id]: v for v in engine.list_votes(org, proposal_url=url)}


@pytest.fixture
def abc(engine):
    """B delegates globally to A, C delegates to B for URL."""
    engine.create_delegation(ref("b@example.org"), ref("a@example.org"), None, ORG)
    engine.create_delegation(ref("c@example.org"), ref("b@example.org"), URL, ORG)
    return engine


class TestScenarios:
    """End to end scenarios over a three participant chain."""

    def test_chain_carries_full_weight(self, abc):
        response = abc.create_vote(ref("a@example.org"), URL, True, ORG)

        assert response.vote.weight == 3
        assert counts(response.voting_result) == (3, 0)
        assert counts(abc.get_result(URL, ORG)) == (3, 0)

    def test_direct_vote_leaves_the_chain(self, abc):
        abc.create_vote(ref("a@example.org"), URL, True, ORG)
        response = abc.create_vote(ref("c@example.org"), URL, False, ORG)

        assert response.vote.weight == 1
        assert counts(response.voting_result) == (2, 1)
        votes = votes_by_email(abc)
        assert votes["a@example.org"].weight == 2
        assert votes["c@example.org"].weight == 1

    def test_deleting_vote_zeroes_result_and_keeps_delegations(self, abc):
        abc.create_vote(ref("a@example.org"), URL, True, ORG)
        response = abc.delete_vote(ref("a@example.org"), URL, ORG)

        assert counts(response.voting_result) == (0, 0)
        assert abc.list_votes(ORG) == []
        assert len(abc.list_delegations(ORG)) == 2


class TestVotes:
    def test_vote_cancels_applicable_delegations(self, engine):
        engine.create_delegation(ref("p@example.org"), ref("q@example.org"), None, ORG)
        engine.create_delegation(ref("p@example.org"), ref("r@example.org"), URL, ORG)
        engine.create_delegation(ref("p@example.org"), ref("r@example.org"), OTHER_URL, ORG)

        engine.create_vote(ref("p@example.org"), URL, True, ORG)

        remaining = engine.list_delegations(ORG)
        assert [d.proposal_url for d in remaining] == [OTHER_URL]

    def test_second_vote_on_same_proposal_conflicts(self, engine):
        engine.create_vote(ref("a@example.org"), URL, True, ORG)

        with pytest.raises(ConflictError):
            engine.create_vote(ref("a@example.org"), URL, False, ORG)

        assert len(engine.list_votes(ORG)) == 1
        assert counts(engine.get_result(URL, ORG)) == (1, 0)

    def test_vote_by_participant_id(self, engine):
        created = engine.create_vote(ref("a@example.org"), URL, True, ORG)
        response = engine.create_vote(ParticipantRef(id=created.participant.id), OTHER_URL, False, ORG)
        assert response.participant.email == "a@example.org"

    def test_vote_with_unknown_participant_id(self, engine):
        with pytest.raises(NotFoundError):
            engine.create_vote(ParticipantRef(id="missing"), URL, True, ORG)

    def test_delete_missing_vote_uses_fixed_message(self, engine):
        engine.create_vote(ref("a@example.org"), URL, True, ORG)

        with pytest.raises(NotFoundError) as excinfo:
            engine.delete_vote(ref("a@example.org"), OTHER_URL, ORG)
        assert excinfo.value.message == "No vote found to delete"

        with pytest.raises(NotFoundError) as excinfo:
            engine.delete_vote(ref("nobody@example.org"), URL, ORG)
        assert excinfo.value.message == "No vote found to delete"

    def test_participant_upsert_is_last_write_wins(self, engine):
        first = engine.create_vote(ParticipantRef(email="a@example.org", name="Old"), URL, True, ORG)
        second = engine.create_vote(ParticipantRef(email="a@example.org", name="New"), OTHER_URL, True, ORG)

        assert second.participant.id == first.participant.id
        assert second.participant.name == "New"
        assert second.participant.inserted_at == first.participant.inserted_at
        assert len(engine.list_participants(ORG)) == 1

    def test_get_vote(self, engine):
        created = engine.create_vote(ref("a@example.org"), URL, True, ORG)
        assert engine.get_vote(created.vote.id, ORG).id == created.vote.id
        with pytest.raises(NotFoundError):
            engine.get_vote(created.vote.id, "another-org")


class TestDelegations:
    def test_self_delegation_rejected(self, engine):
        with pytest.raises(SelfDelegationError):
            engine.create_delegation(ref("a@example.org"), ref("a@example.org"), None, ORG)
        assert engine.list_participants(ORG) == []

    def test_self_delegation_by_id_rejected(self, engine):
        participant = engine.create_vote(ref("a@example.org"), URL, True, ORG).participant
        with pytest.raises(SelfDelegationError):
            engine.create_delegation(ParticipantRef(id=participant.id), ref("a@example.org"), OTHER_URL, ORG)

    def test_closing_edge_of_cycle_rejected(self, engine):
        engine.create_delegation(ref("a@example.org"), ref("b@example.org"), None, ORG)
        engine.create_delegation(ref("b@example.org"), ref("c@example.org"), None, ORG)

        with pytest.raises(CycleError):
            engine.create_delegation(ref("c@example.org"), ref("a@example.org"), None, ORG)
        with pytest.raises(CycleError):
            engine.create_delegation(ref("c@example.org"), ref("a@example.org"), URL, ORG)
        assert len(engine.list_delegations(ORG)) == 2

    def test_deleted_vote_cannot_expose_a_cycle(self, engine):
        engine.create_delegation(ref("a@example.org"), ref("b@example.org"), None, ORG)
        engine.create_vote(ref("a@example.org"), URL, True, ORG)
        engine.create_delegation(ref("a@example.org"), ref("b@example.org"), None, ORG)

        with pytest.raises(CycleError):
            engine.create_delegation(ref("b@example.org"), ref("a@example.org"), URL, ORG)

        engine.delete_vote(ref("a@example.org"), URL, ORG)
        assert counts(engine.refresh_result(URL, ORG)) == (0, 0)

    def test_deleted_override_cannot_expose_a_cycle(self, engine):
        engine.create_delegation(ref("a@example.org"), ref("b@example.org"), None, ORG)
        engine.create_delegation(ref("a@example.org"), ref("c@example.org"), URL, ORG)

        with pytest.raises(CycleError):
            engine.create_delegation(ref("b@example.org"), ref("a@example.org"), URL, ORG)
        assert len(engine.list_delegations(ORG)) == 2

    def test_email_identity_is_case_sensitive(self, engine):
        response = engine.create_delegation(ref("A@example.org"), ref("a@example.org"), None, ORG)

        assert response.delegation.delegator_id != response.delegation.delegate_id
        assert sorted(p.email for p in engine.list_participants(ORG)) == ["A@example.org", "a@example.org"]

    def test_specific_override_breaks_cycle(self, engine):
        engine.create_delegation(ref("a@example.org"), ref("b@example.org"), None, ORG)
        engine.create_delegation(ref("b@example.org"), ref("d@example.org"), URL, ORG)

        # On URL, B delegates to D, so C -> A -> B -> D is a chain there
        response = engine.create_delegation(ref("b@example.org"), ref("c@example.org"), OTHER_URL, ORG)
        assert response.delegation.proposal_url == OTHER_URL

        with pytest.raises(CycleError):
            engine.create_delegation(ref("c@example.org"), ref("a@example.org"), OTHER_URL, ORG)
        engine.create_delegation(ref("c@example.org"), ref("a@example.org"), URL, ORG)

    def test_same_scope_delegation_conflicts(self, engine):
        engine.create_delegation(ref("a@example.org"), ref("b@example.org"), URL, ORG)
        with pytest.raises(ConflictError):
            engine.create_delegation(ref("a@example.org"), ref("c@example.org"), URL, ORG)

        engine.create_delegation(ref("a@example.org"), ref("c@example.org"), None, ORG)
        with pytest.raises(ConflictError):
            engine.create_delegation(ref("a@example.org"), ref("d@example.org"), None, ORG)

    def test_delegation_after_vote_requires_deleting_vote(self, engine):
        engine.create_vote(ref("a@example.org"), URL, True, ORG)
        with pytest.raises(ConflictError):
            engine.create_delegation(ref("a@example.org"), ref("b@example.org"), URL, ORG)

        engine.delete_vote(ref("a@example.org"), URL, ORG)
        engine.create_delegation(ref("a@example.org"), ref("b@example.org"), URL, ORG)

    def test_delete_delegation_requires_matching_delegate(self, engine):
        engine.create_delegation(ref("a@example.org"), ref("b@example.org"), URL, ORG)
        engine.create_vote(ref("c@example.org"), OTHER_URL, True, ORG)

        with pytest.raises(NotFoundError) as excinfo:
            engine.delete_delegation(ref("a@example.org"), ref("c@example.org"), URL, ORG)
        assert excinfo.value.message == "No delegation found to delete"

        with pytest.raises(NotFoundError):
            engine.delete_delegation(ref("a@example.org"), ref("b@example.org"), None, ORG)

        engine.delete_delegation(ref("a@example.org"), ref("b@example.org"), URL, ORG)
        assert engine.list_delegations(ORG) == []

    def test_specific_delegation_recomputes_proposal(self, engine):
        engine.create_vote(ref("b@example.org"), URL, False, ORG)
        response = engine.create_delegation(ref("a@example.org"), ref("b@example.org"), URL, ORG)

        assert [counts(r) for r in response.voting_results] == [(0, 2)]

        response = engine.delete_delegation(ref("a@example.org"), ref("b@example.org"), URL, ORG)
        assert [counts(r) for r in response.voting_results] == [(0, 1)]

    def test_missing_delegate_is_validation_error(self, engine):
        with pytest.raises(ValidationError) as excinfo:
            engine.create_delegation(ref("a@example.org"), None, URL, ORG)
        assert "delegate" in excinfo.value.details

    def test_blank_email_is_validation_error(self, engine):
        with pytest.raises(ValidationError) as excinfo:
            engine.create_delegation(ref("a@example.org"), ref("  "), URL, ORG)
        assert excinfo.value.details == {"delegate_email": ["can't be blank"]}


class TestGlobalRefresh:
    def test_eager_global_delegation_refreshes_every_voted_proposal(self, engine):
        engine.create_vote(ref("a@example.org"), URL, True, ORG)
        engine.create_vote(ref("a@example.org"), OTHER_URL, False, ORG)

        response = engine.create_delegation(ref("b@example.org"), ref("a@example.org"), None, ORG)

        assert sorted((r.proposal_url, counts(r)) for r in response.voting_results) == [
            (URL, (2, 0)),
            (OTHER_URL, (0, 2)),
        ]
        assert counts(engine.get_result(OTHER_URL, ORG)) == (0, 2)

        engine.delete_delegation(ref("b@example.org"), ref("a@example.org"), None, ORG)
        assert counts(engine.get_result(URL, ORG)) == (1, 0)
        assert counts(engine.get_result(OTHER_URL, ORG)) == (0, 1)

    def test_vote_cancelling_global_delegation_refreshes_others(self, engine):
        engine.create_vote(ref("a@example.org"), OTHER_URL, True, ORG)
        engine.create_delegation(ref("b@example.org"), ref("a@example.org"), None, ORG)
        assert counts(engine.get_result(OTHER_URL, ORG)) == (2, 0)

        engine.create_vote(ref("b@example.org"), URL, True, ORG)

        assert counts(engine.get_result(OTHER_URL, ORG)) == (1, 0)

    def test_lazy_mode_leaves_other_proposals_until_refresh(self, lazy_engine):
        lazy_engine.create_vote(ref("a@example.org"), URL, True, ORG)
        lazy_engine.create_vote(ref("a@example.org"), OTHER_URL, True, ORG)

        response = lazy_engine.create_delegation(ref("b@example.org"), ref("a@example.org"), None, ORG)

        assert response.voting_results == []
        assert counts(lazy_engine.get_result(URL, ORG)) == (1, 0)

        assert counts(lazy_engine.refresh_result(URL, ORG)) == (2, 0)
        assert counts(lazy_engine.get_result(OTHER_URL, ORG)) == (1, 0)

        refreshed = lazy_engine.refresh_organization(ORG)
        assert sorted((r.proposal_url, counts(r)) for r in refreshed) == [
            (URL, (2, 0)),
            (OTHER_URL, (2, 0)),
        ]

    def test_invalid_refresh_mode(self, store, notifier):
        from src.voting.engine import VotingEngine

        with pytest.raises(ValueError):
            VotingEngine(store=store, notifier=notifier, global_refresh="sometimes")


class TestNotificationsAndAtomicity:
    def test_publish_after_commit(self, engine):
        engine.notifier = MagicMock()
        engine.create_vote(ref("a@example.org"), URL, True, ORG)

        engine.notifier.publish.assert_called_once()
        org, url, result = engine.notifier.publish.call_args[0]
        assert (org, url) == (ORG, URL)
        assert counts(result) == (1, 0)

    def test_rejected_write_publishes_nothing_and_rolls_back(self, engine):
        engine.create_vote(ref("a@example.org"), URL, True, ORG)
        engine.create_delegation(ref("x@example.org"), ref("y@example.org"), None, ORG)
        engine.notifier = MagicMock()

        with pytest.raises(ConflictError):
            engine.create_vote(ref("a@example.org"), URL, True, ORG)
        with pytest.raises(CycleError):
            engine.create_delegation(ref("y@example.org"), ref("x@example.org"), None, ORG)
        with pytest.raises(SelfDelegationError):
            engine.create_delegation(ref("z@example.org"), ref("z@example.org"), URL, ORG)

        engine.notifier.publish.assert_not_called()
        assert len(engine.list_delegations(ORG)) == 1
        assert {p.email for p in engine.list_participants(ORG)} == {
            "a@example.org", "x@example.org", "y@example.org",
        }

    def test_failed_transaction_restores_state(self, engine):
        engine.create_delegation(ref("p@example.org"), ref("q@example.org"), None, ORG)

        with pytest.raises(NotFoundError):
            engine.create_delegation(ref("p@example.org"), ParticipantRef(id="missing"), URL, ORG)

        assert len(engine.list_delegations(ORG)) == 1

    def test_get_result_of_unknown_proposal_is_zero(self, engine):
        result = engine.get_result(URL, ORG)
        assert counts(result) == (0, 0)
        assert result.updated_at is None


class TestOrganizationScope:
    @pytest.mark.parametrize("org", [None, "", "   "])
    def test_missing_organization_rejected(self, engine, org):
        with pytest.raises(MissingOrganizationError):
            engine.create_vote(ref("a@example.org"), URL, True, org)
        with pytest.raises(MissingOrganizationError):
            engine.get_result(URL, org)

    def test_organizations_are_isolated(self, engine):
        engine.create_delegation(ref("b@example.org"), ref("a@example.org"), None, "org-2")
        response = engine.create_vote(ref("a@example.org"), URL, True, ORG)

        assert response.vote.weight == 1
        assert counts(engine.get_result(URL, "org-2")) == (0, 0)

    def test_blank_proposal_url_rejected(self, engine):
        with pytest.raises(ValidationError) as excinfo:
            engine.create_vote(ref("a@example.org"), "  ", True, ORG)
        assert excinfo.value.details == {"proposal_url": ["can't be blank"]}


class TestConcurrentWrites:
    def test_interleaved_writes_leave_consistent_result(self, engine, store):
        voters = [f"v{i}@example.org" for i in range(6)]
        barrier = threading.Barrier(len(voters) * 2 + 1)
        errors = []

        def run(write):
            try:
                barrier.wait(timeout=5)
                write()
            except Exception as e:
                errors.append(e)

        writes = [lambda: engine.create_delegation(ref("g@example.org"), ref(voters[0]), None, ORG)]
        for i, voter in enumerate(voters):
            writes.append(lambda v=voter, f=i % 2 == 0: engine.create_vote(ref(v), URL, f, ORG))
            writes.append(lambda v=voter, n=i: engine.create_delegation(ref(f"d{n}@example.org"), ref(v), URL, ORG))

        threads = [threading.Thread(target=run, args=(write,)) for write in writes]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert errors == []
        stored = counts(engine.get_result(URL, ORG))
        assert stored == counts(engine.refresh_result(URL, ORG))
        assert stored == (7, 6)

        with store.transaction(ORG) as session:
            graph = DelegationGraph.load(session, ORG, URL)
            for vote in session.list_votes(ORG, proposal_url=URL):
                assert vote.weight == WeightCalculator.compute_weight(vote, graph)
