"""
Entity Store contract.

The engine talks to persistence only through ``EntityStore.transaction()``,
which yields a ``StoreSession`` bound to one atomic unit of work. Backends
are selected by ``ENTITY_STORE_BACKEND``:

  - "memory" (default): in-process store, see ``memory_store``
  - "postgresql": psycopg2-backed store, see ``postgres_store``

Locking: a transaction names the proposal urls it will recompute
(``lock_keys``). Those (organization, proposal) pairs are serialized against
each other. A transaction that touches a global delegation passes
``exclusive=True`` and is serialized against every other transaction of the
organization, since a global edge can change the weights of any proposal.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from typing import Any, Dict, Iterable, List, Optional, Tuple

from src.data_models.schemas import Delegation, Participant, Vote, VotingResult
from src.utils.logger import logger


class ParticipantMergePolicy:
    """Merge applied when a participant upsert hits an existing (organization, email).

    Last write wins: every field of the incoming record replaces the stored
    one except the identity columns listed in ``preserved_fields``.
    ``inserted_at`` is kept as well, so it records the first upsert of the
    email while ``updated_at`` moves with each later one.
    """

    preserved_fields: Tuple[str, ...] = ("id", "organization_id", "email", "inserted_at")

    @property
    def replaced_fields(self) -> Tuple[str, ...]:
        return tuple(f for f in Participant.model_fields if f not in self.preserved_fields)

    def merge(self, existing: Participant, incoming: Participant) -> Participant:
        update = {f: getattr(incoming, f) for f in self.replaced_fields}
        return existing.model_copy(update=update)


class StoreSession(ABC):
    """CRUD operations available inside one store transaction."""

    # Participants

    @abstractmethod
    def upsert_participant(self, organization_id: str, email: str, name: Optional[str] = None) -> Participant:
        ...

    @abstractmethod
    def get_participant(self, organization_id: str, participant_id: str) -> Optional[Participant]:
        ...

    @abstractmethod
    def get_participant_by_email(self, organization_id: str, email: str) -> Optional[Participant]:
        ...

    @abstractmethod
    def list_participants(self, organization_id: str) -> List[Participant]:
        ...

    # Votes

    @abstractmethod
    def insert_vote(self, organization_id: str, participant_id: str, proposal_url: str, in_favor: bool) -> Vote:
        """Insert a vote; raises ConflictError if one exists for (org, participant, proposal)."""

    @abstractmethod
    def get_vote(self, organization_id: str, participant_id: str, proposal_url: str) -> Optional[Vote]:
        ...

    @abstractmethod
    def get_vote_by_id(self, organization_id: str, vote_id: str) -> Optional[Vote]:
        ...

    @abstractmethod
    def list_votes(
        self,
        organization_id: str,
        proposal_url: Optional[str] = None,
        participant_id: Optional[str] = None,
    ) -> List[Vote]:
        ...

    @abstractmethod
    def update_vote_weight(self, vote_id: str, weight: int) -> Vote:
        ...

    @abstractmethod
    def delete_vote(self, vote_id: str) -> None:
        ...

    @abstractmethod
    def list_voted_proposals(self, organization_id: str) -> List[str]:
        """Distinct proposal urls with at least one vote, sorted."""

    # Delegations

    @abstractmethod
    def insert_delegation(
        self,
        organization_id: str,
        delegator_id: str,
        delegate_id: str,
        proposal_url: Optional[str] = None,
    ) -> Delegation:
        """Insert a delegation; raises ConflictError if the delegator already has one for that scope."""

    @abstractmethod
    def get_delegation(
        self, organization_id: str, delegator_id: str, proposal_url: Optional[str] = None
    ) -> Optional[Delegation]:
        """Delegation of ``delegator_id`` for exactly this scope (None = global)."""

    @abstractmethod
    def get_delegation_by_id(self, organization_id: str, delegation_id: str) -> Optional[Delegation]:
        ...

    @abstractmethod
    def list_delegations(self, organization_id: str) -> List[Delegation]:
        ...

    @abstractmethod
    def delete_delegation(self, delegation_id: str) -> None:
        ...

    @abstractmethod
    def list_delegated_proposals(self, organization_id: str) -> List[str]:
        """Distinct proposal urls named by proposal-specific delegations, sorted."""

    # Results

    @abstractmethod
    def upsert_result(self, organization_id: str, proposal_url: str, in_favor: int, against: int) -> VotingResult:
        ...

    @abstractmethod
    def get_result(self, organization_id: str, proposal_url: str) -> Optional[VotingResult]:
        ...

    @abstractmethod
    def list_results(self, organization_id: str) -> List[VotingResult]:
        ...


class EntityStore(ABC):
    """Transactional entity store shared by all requests."""

    backend = "abstract"

    @abstractmethod
    def transaction(
        self,
        organization_id: str,
        lock_keys: Iterable[str] = (),
        exclusive: bool = False,
    ) -> AbstractContextManager:
        """Open an atomic unit of work yielding a ``StoreSession``.

        Commits on normal exit, rolls back on any exception.
        """

    def health(self) -> Dict[str, Any]:
        return {"backend": self.backend, "status": "ok"}

    def close(self) -> None:
        pass


# Global entity store instance (singleton)
_store_instance: Optional[EntityStore] = None


def get_entity_store() -> EntityStore:
    """Return the entity store selected by ENTITY_STORE_BACKEND."""
    global _store_instance

    if _store_instance is not None:
        return _store_instance

    from src.config.common_settings import ENTITY_STORE_BACKEND

    logger.info("[EntityStore] Initializing with backend: %s", ENTITY_STORE_BACKEND)

    if ENTITY_STORE_BACKEND == "postgresql":
        from src.voting.postgres_store import PostgresEntityStore
        _store_instance = PostgresEntityStore()
    elif ENTITY_STORE_BACKEND == "memory":
        from src.voting.memory_store import InMemoryEntityStore
        _store_instance = InMemoryEntityStore()
    else:
        raise ValueError(
            f"Unsupported ENTITY_STORE_BACKEND '{ENTITY_STORE_BACKEND}'. "
            "Use 'memory' or 'postgresql'."
        )

    return _store_instance


def reset_entity_store() -> None:
    """Close and forget the global store (used on shutdown and in tests)."""
    global _store_instance

    if _store_instance is not None:
        _store_instance.close()
        _store_instance = None
