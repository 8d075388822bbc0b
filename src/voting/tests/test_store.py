"""Tests for the store contract, the in-memory backend and backend selection."""
import pytest

from src.data_models.schemas import Participant
from src.voting import store as store_module
from src.voting.exceptions import ConflictError
from src.voting.memory_store import InMemoryEntityStore
from src.voting.store import ParticipantMergePolicy, get_entity_store, reset_entity_store

ORG = "org-1"
URL = "https://proposals.example.org/1"


class TestParticipantMergePolicy:
    def test_replaced_fields(self):
        assert ParticipantMergePolicy().replaced_fields == ("name", "updated_at")

    def test_merge_keeps_identity(self):
        existing = Participant(organization_id=ORG, email="a@example.org", name="Old")
        incoming = Participant(organization_id=ORG, email="a@example.org", name="New")

        merged = ParticipantMergePolicy().merge(existing, incoming)

        assert (merged.id, merged.inserted_at, merged.name) == (existing.id, existing.inserted_at, "New")


class TestInMemoryEntityStore:
    def test_failed_transaction_rolls_back(self, store):
        with pytest.raises(ConflictError):
            with store.transaction(ORG) as session:
                participant = session.upsert_participant(ORG, "a@example.org")
                session.insert_vote(ORG, participant.id, URL, True)
                session.insert_vote(ORG, participant.id, URL, False)

        with store.transaction(ORG) as session:
            assert session.list_participants(ORG) == []
            assert session.list_votes(ORG) == []

    def test_snapshot_taken_only_on_first_write(self, store):
        with store.transaction(ORG) as session:
            session.list_votes(ORG)
            session.get_delegation(ORG, "p")
            assert session.snapshot is None

            participant = session.upsert_participant(ORG, "a@example.org")
            snapshot = session.snapshot
            session.insert_vote(ORG, participant.id, URL, True)

            assert snapshot is not None
            assert session.snapshot is snapshot
            assert snapshot.participants == {}

    def test_failed_read_keeps_tables(self, store):
        with store.transaction(ORG) as session:
            session.upsert_participant(ORG, "a@example.org")
        tables = store._tables

        with pytest.raises(KeyError):
            with store.transaction(ORG) as session:
                session.update_vote_weight("missing", 2)

        assert store._tables is tables

    def test_returned_records_are_copies(self, store):
        with store.transaction(ORG) as session:
            participant = session.upsert_participant(ORG, "a@example.org", "A")
            participant.name = "changed"
            assert session.get_participant(ORG, participant.id).name == "A"

    def test_delegation_scopes_are_independent(self, store):
        with store.transaction(ORG) as session:
            session.insert_delegation(ORG, "p", "q")
            session.insert_delegation(ORG, "p", "r", URL)
            with pytest.raises(ConflictError):
                session.insert_delegation(ORG, "p", "s")
            assert session.get_delegation(ORG, "p").delegate_id == "q"
            assert session.get_delegation(ORG, "p", URL).delegate_id == "r"
            assert session.list_delegated_proposals(ORG) == [URL]

    def test_health(self, store):
        health = store.health()
        assert health["backend"] == "memory"
        assert health["status"] == "ok"


class TestEntityStoreFactory:
    @pytest.fixture(autouse=True)
    def clean_singleton(self):
        reset_entity_store()
        yield
        reset_entity_store()

    def test_memory_backend_is_singleton(self, monkeypatch):
        monkeypatch.setattr("src.config.common_settings.ENTITY_STORE_BACKEND", "memory")
        first = get_entity_store()
        assert isinstance(first, InMemoryEntityStore)
        assert get_entity_store() is first

    def test_unknown_backend(self, monkeypatch):
        monkeypatch.setattr("src.config.common_settings.ENTITY_STORE_BACKEND", "redis")
        with pytest.raises(ValueError):
            get_entity_store()
        assert store_module._store_instance is None
