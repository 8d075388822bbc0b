import pytest

from src.voting.engine import VotingEngine
from src.voting.memory_store import InMemoryEntityStore
from src.voting.notifier import ChangeNotifier


@pytest.fixture
def store():
    return InMemoryEntityStore()


@pytest.fixture
def notifier():
    return ChangeNotifier(queue_size=10)


@pytest.fixture
def engine(store, notifier):
    return VotingEngine(store=store, notifier=notifier, global_refresh="eager")


@pytest.fixture
def lazy_engine(store, notifier):
    return VotingEngine(store=store, notifier=notifier, global_refresh="lazy")
