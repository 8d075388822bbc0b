from .engine import VotingEngine, get_voting_engine, reset_voting_engine
from .exceptions import (
    ConflictError,
    CycleError,
    LiquidVotingError,
    MissingOrganizationError,
    NotFoundError,
    SelfDelegationError,
    StoreUnavailableError,
    ValidationError,
)

__all__ = [
    "VotingEngine",
    "get_voting_engine",
    "reset_voting_engine",
    "LiquidVotingError",
    "ValidationError",
    "MissingOrganizationError",
    "NotFoundError",
    "ConflictError",
    "CycleError",
    "SelfDelegationError",
    "StoreUnavailableError",
]
