"""ThreadMem test configuration."""
import re
from datetime import datetime, timedelta, timezone

import pytest

from threadmem.adapters.memory_graph import InMemoryGraphAdapter
from threadmem.adapters.memory_vector import InMemoryVectorAdapter
from threadmem.services.memory_store import MemoryStore
from threadmem.utils.config import MemoryConfig, RetentionConfig

DIMENSION = 64
EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)


class KeywordEmbedder:
    """Bag-of-words embedding over a vocabulary assigned in first-seen order.

    Texts sharing words get close vectors and texts with disjoint words are orthogonal,
    as long as a test stays under ``DIMENSION`` distinct words.
    """

    def __init__(self, dimension: int = DIMENSION):
        self.dimension = dimension
        self.vocabulary = {}
        self.calls = 0

    def __call__(self, text):
        self.calls += 1
        vector = [0.0] * self.dimension
        for word in re.findall(r'\w+', text.lower()):
            index = self.vocabulary.setdefault(word, len(self.vocabulary) % self.dimension)
            vector[index] += 1.0
        return vector


class SteppingClock:
    """Returns a time one ``step`` later on every call."""

    def __init__(self, start: datetime = EPOCH, step: timedelta = timedelta(seconds=1)):
        self.current = start
        self.step = step

    def __call__(self):
        now = self.current
        self.current = self.current + self.step
        return now

    def advance(self, seconds: float) -> None:
        self.current = self.current + timedelta(seconds=seconds)


@pytest.fixture
def embedder():
    return KeywordEmbedder()


@pytest.fixture
def clock():
    return SteppingClock()


@pytest.fixture
def vector_store():
    return InMemoryVectorAdapter()


@pytest.fixture
def graph_store():
    return InMemoryGraphAdapter()


@pytest.fixture
def memory_config():
    return MemoryConfig(retention=RetentionConfig(max_entries=None, max_age=None, max_per_thread=None, max_total=None))


@pytest.fixture
def store(vector_store, graph_store, embedder, clock, memory_config):
    """MemoryStore over in-memory backends with no retention caps."""
    return MemoryStore(vector_store, embedder, graph_store=graph_store, config=memory_config, clock=clock)


@pytest.fixture
def make_store(vector_store, graph_store, embedder, clock):
    """Factory for a MemoryStore whose config fields (including ``retention``) are overridden."""

    def build(summarizer=None, **overrides):
        retention = overrides.pop('retention', None) or RetentionConfig(
            max_entries=None, max_age=None, max_per_thread=None, max_total=None)
        config = MemoryConfig(retention=retention, **overrides)
        return MemoryStore(vector_store, embedder, graph_store=graph_store, summarizer=summarizer, config=config, clock=clock)

    return build
