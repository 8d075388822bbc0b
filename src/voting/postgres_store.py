"""
PostgreSQL Entity Store.

Uniqueness invariants live in the schema (unique constraints and partial
unique indexes), so concurrent writers cannot slip a second vote or a second
same-scope delegation past the application checks. Serialization uses
transaction-scoped advisory locks: a shared lock on the organization plus an
exclusive lock per (organization, proposal); ``exclusive=True`` takes the
organization lock exclusively instead.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional

import psycopg2.errors
from psycopg2 import sql

from src.data_models.schemas import Delegation, Participant, Vote, VotingResult
from src.services.connection_pool import get_connection_pool
from src.services.database import DatabaseService
from src.utils.logger import logger
from src.voting.exceptions import ConflictError
from src.voting.store import EntityStore, ParticipantMergePolicy, StoreSession


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS participants (
    id TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL,
    email TEXT NOT NULL,
    name TEXT,
    inserted_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    CONSTRAINT participants_org_email_key UNIQUE (organization_id, email)
);

CREATE TABLE IF NOT EXISTS votes (
    id TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL,
    participant_id TEXT NOT NULL REFERENCES participants (id),
    proposal_url TEXT NOT NULL,
    in_favor BOOLEAN NOT NULL,
    weight INTEGER NOT NULL DEFAULT 1 CHECK (weight >= 1),
    inserted_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    CONSTRAINT votes_org_participant_proposal_key UNIQUE (organization_id, participant_id, proposal_url)
);
CREATE INDEX IF NOT EXISTS votes_org_proposal_idx ON votes (organization_id, proposal_url);

CREATE TABLE IF NOT EXISTS delegations (
    id TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL,
    delegator_id TEXT NOT NULL REFERENCES participants (id),
    delegate_id TEXT NOT NULL REFERENCES participants (id),
    proposal_url TEXT,
    inserted_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    CONSTRAINT delegations_not_self CHECK (delegator_id <> delegate_id)
);
CREATE UNIQUE INDEX IF NOT EXISTS delegations_global_scope_key
    ON delegations (organization_id, delegator_id) WHERE proposal_url IS NULL;
CREATE UNIQUE INDEX IF NOT EXISTS delegations_proposal_scope_key
    ON delegations (organization_id, delegator_id, proposal_url) WHERE proposal_url IS NOT NULL;

CREATE TABLE IF NOT EXISTS voting_results (
    organization_id TEXT NOT NULL,
    proposal_url TEXT NOT NULL,
    in_favor INTEGER NOT NULL DEFAULT 0,
    against INTEGER NOT NULL DEFAULT 0,
    updated_at TIMESTAMPTZ NOT NULL,
    PRIMARY KEY (organization_id, proposal_url)
);
"""

_LOCK_SQL = "SELECT pg_advisory_xact_lock(hashtextextended(%s, 0))"
_SHARED_LOCK_SQL = "SELECT pg_advisory_xact_lock_shared(hashtextextended(%s, 0))"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _row(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    return dict(row) if row is not None else None


class PostgresStoreSession(StoreSession):
    """StoreSession bound to one psycopg2 cursor."""

    def __init__(self, cur, merge_policy: ParticipantMergePolicy):
        self._cur = cur
        self._merge_policy = merge_policy

    def _one(self, query, params) -> Optional[Dict[str, Any]]:
        self._cur.execute(query, params)
        return _row(self._cur.fetchone())

    def _all(self, query, params) -> List[Dict[str, Any]]:
        self._cur.execute(query, params)
        return [_row(r) for r in self._cur.fetchall()]

    # Participants

    def upsert_participant(self, organization_id: str, email: str, name: Optional[str] = None) -> Participant:
        incoming = Participant(organization_id=organization_id, email=email, name=name)
        replaced = [f for f in self._merge_policy.replaced_fields]
        query = sql.SQL(
            """
            INSERT INTO participants (id, organization_id, email, name, inserted_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (organization_id, email) DO UPDATE SET {assignments}
            RETURNING id, organization_id, email, name, inserted_at, updated_at
            """
        ).format(
            assignments=sql.SQL(", ").join(
                sql.SQL("{col} = EXCLUDED.{col}").format(col=sql.Identifier(f)) for f in replaced
            )
        )
        row = self._one(
            query,
            (incoming.id, organization_id, email, name, incoming.inserted_at, incoming.updated_at),
        )
        return Participant(**row)

    def get_participant(self, organization_id: str, participant_id: str) -> Optional[Participant]:
        row = self._one(
            "SELECT * FROM participants WHERE organization_id = %s AND id = %s",
            (organization_id, participant_id),
        )
        return Participant(**row) if row else None

    def get_participant_by_email(self, organization_id: str, email: str) -> Optional[Participant]:
        row = self._one(
            "SELECT * FROM participants WHERE organization_id = %s AND email = %s",
            (organization_id, email),
        )
        return Participant(**row) if row else None

    def list_participants(self, organization_id: str) -> List[Participant]:
        rows = self._all(
            "SELECT * FROM participants WHERE organization_id = %s ORDER BY inserted_at, id",
            (organization_id,),
        )
        return [Participant(**r) for r in rows]

    # Votes

    def insert_vote(self, organization_id: str, participant_id: str, proposal_url: str, in_favor: bool) -> Vote:
        vote = Vote(
            organization_id=organization_id,
            participant_id=participant_id,
            proposal_url=proposal_url,
            in_favor=in_favor,
        )
        try:
            row = self._one(
                """
                INSERT INTO votes (id, organization_id, participant_id, proposal_url, in_favor, weight,
                                   inserted_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (vote.id, organization_id, participant_id, proposal_url, in_favor, vote.weight,
                 vote.inserted_at, vote.updated_at),
            )
        except psycopg2.errors.UniqueViolation as e:
            raise ConflictError(
                "Participant has already voted on this proposal",
                details={"participant_id": ["has already voted on this proposal"]},
            ) from e
        return Vote(**row)

    def get_vote(self, organization_id: str, participant_id: str, proposal_url: str) -> Optional[Vote]:
        row = self._one(
            """
            SELECT * FROM votes
            WHERE organization_id = %s AND participant_id = %s AND proposal_url = %s
            """,
            (organization_id, participant_id, proposal_url),
        )
        return Vote(**row) if row else None

    def get_vote_by_id(self, organization_id: str, vote_id: str) -> Optional[Vote]:
        row = self._one(
            "SELECT * FROM votes WHERE organization_id = %s AND id = %s",
            (organization_id, vote_id),
        )
        return Vote(**row) if row else None

    def list_votes(
        self,
        organization_id: str,
        proposal_url: Optional[str] = None,
        participant_id: Optional[str] = None,
    ) -> List[Vote]:
        clauses = [sql.SQL("organization_id = %s")]
        params: List[Any] = [organization_id]
        if proposal_url is not None:
            clauses.append(sql.SQL("proposal_url = %s"))
            params.append(proposal_url)
        if participant_id is not None:
            clauses.append(sql.SQL("participant_id = %s"))
            params.append(participant_id)
        query = sql.SQL("SELECT * FROM votes WHERE {where} ORDER BY inserted_at, id").format(
            where=sql.SQL(" AND ").join(clauses)
        )
        return [Vote(**r) for r in self._all(query, tuple(params))]

    def update_vote_weight(self, vote_id: str, weight: int) -> Vote:
        row = self._one(
            """
            UPDATE votes
            SET weight = %s,
                updated_at = CASE WHEN weight = %s THEN updated_at ELSE %s END
            WHERE id = %s
            RETURNING *
            """,
            (weight, weight, _now(), vote_id),
        )
        return Vote(**row)

    def delete_vote(self, vote_id: str) -> None:
        self._cur.execute("DELETE FROM votes WHERE id = %s", (vote_id,))

    def list_voted_proposals(self, organization_id: str) -> List[str]:
        rows = self._all(
            "SELECT DISTINCT proposal_url FROM votes WHERE organization_id = %s ORDER BY proposal_url",
            (organization_id,),
        )
        return [r["proposal_url"] for r in rows]

    # Delegations

    def insert_delegation(
        self,
        organization_id: str,
        delegator_id: str,
        delegate_id: str,
        proposal_url: Optional[str] = None,
    ) -> Delegation:
        delegation = Delegation(
            organization_id=organization_id,
            delegator_id=delegator_id,
            delegate_id=delegate_id,
            proposal_url=proposal_url,
        )
        try:
            row = self._one(
                """
                INSERT INTO delegations (id, organization_id, delegator_id, delegate_id, proposal_url,
                                         inserted_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (delegation.id, organization_id, delegator_id, delegate_id, proposal_url,
                 delegation.inserted_at, delegation.updated_at),
            )
        except psycopg2.errors.UniqueViolation as e:
            raise ConflictError(
                "Delegator already has a delegation for this scope",
                details={"delegator_id": ["already has a delegation for this scope"]},
            ) from e
        return Delegation(**row)

    def get_delegation(
        self, organization_id: str, delegator_id: str, proposal_url: Optional[str] = None
    ) -> Optional[Delegation]:
        row = self._one(
            """
            SELECT * FROM delegations
            WHERE organization_id = %s AND delegator_id = %s
              AND proposal_url IS NOT DISTINCT FROM %s
            """,
            (organization_id, delegator_id, proposal_url),
        )
        return Delegation(**row) if row else None

    def get_delegation_by_id(self, organization_id: str, delegation_id: str) -> Optional[Delegation]:
        row = self._one(
            "SELECT * FROM delegations WHERE organization_id = %s AND id = %s",
            (organization_id, delegation_id),
        )
        return Delegation(**row) if row else None

    def list_delegations(self, organization_id: str) -> List[Delegation]:
        rows = self._all(
            "SELECT * FROM delegations WHERE organization_id = %s ORDER BY inserted_at, id",
            (organization_id,),
        )
        return [Delegation(**r) for r in rows]

    def delete_delegation(self, delegation_id: str) -> None:
        self._cur.execute("DELETE FROM delegations WHERE id = %s", (delegation_id,))

    def list_delegated_proposals(self, organization_id: str) -> List[str]:
        rows = self._all(
            """
            SELECT DISTINCT proposal_url FROM delegations
            WHERE organization_id = %s AND proposal_url IS NOT NULL
            ORDER BY proposal_url
            """,
            (organization_id,),
        )
        return [r["proposal_url"] for r in rows]

    # Results

    def upsert_result(self, organization_id: str, proposal_url: str, in_favor: int, against: int) -> VotingResult:
        row = self._one(
            """
            INSERT INTO voting_results (organization_id, proposal_url, in_favor, against, updated_at)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (organization_id, proposal_url) DO UPDATE
            SET in_favor = EXCLUDED.in_favor,
                against = EXCLUDED.against,
                updated_at = EXCLUDED.updated_at
            RETURNING *
            """,
            (organization_id, proposal_url, in_favor, against, _now()),
        )
        return VotingResult(**row)

    def get_result(self, organization_id: str, proposal_url: str) -> Optional[VotingResult]:
        row = self._one(
            "SELECT * FROM voting_results WHERE organization_id = %s AND proposal_url = %s",
            (organization_id, proposal_url),
        )
        return VotingResult(**row) if row else None

    def list_results(self, organization_id: str) -> List[VotingResult]:
        rows = self._all(
            "SELECT * FROM voting_results WHERE organization_id = %s ORDER BY proposal_url",
            (organization_id,),
        )
        return [VotingResult(**r) for r in rows]


class PostgresEntityStore(EntityStore):
    """Entity store on PostgreSQL through the shared psycopg2 pool."""

    backend = "postgresql"

    def __init__(self, merge_policy: Optional[ParticipantMergePolicy] = None, create_schema: bool = True):
        self._merge_policy = merge_policy or ParticipantMergePolicy()
        if create_schema:
            self.ensure_schema()

    def ensure_schema(self) -> None:
        """Create tables and indexes if they don't exist yet."""
        with DatabaseService.transaction() as cur:
            cur.execute(SCHEMA_SQL)
        logger.info("PostgresEntityStore: schema ensured")

    @staticmethod
    def _acquire_locks(cur, organization_id: str, lock_keys: Iterable[str], exclusive: bool) -> None:
        # Fixed order (org first, then sorted proposals) keeps writers deadlock free
        org_key = f"org:{organization_id}"
        cur.execute(_LOCK_SQL if exclusive else _SHARED_LOCK_SQL, (org_key,))
        for proposal_url in sorted(set(lock_keys)):
            cur.execute(_LOCK_SQL, (f"proposal:{organization_id}:{proposal_url}",))

    @contextmanager
    def transaction(
        self,
        organization_id: str,
        lock_keys: Iterable[str] = (),
        exclusive: bool = False,
    ) -> Iterator[PostgresStoreSession]:
        with DatabaseService.transaction() as cur:
            self._acquire_locks(cur, organization_id, lock_keys, exclusive)
            yield PostgresStoreSession(cur, self._merge_policy)

    def health(self) -> Dict[str, Any]:
        stats = get_connection_pool().get_stats()
        return {
            "backend": self.backend,
            "status": "degraded" if stats.get("in_backoff") else "ok",
            "pool_stats": stats,
        }

    def close(self) -> None:
        from src.services.connection_pool import close_connection_pool
        close_connection_pool()
