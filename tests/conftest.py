from __future__ import annotations

import threading
from typing import Sequence

import pytest

from starindex.config import ConfigManager
from starindex.errors import ContextLengthError, StorageError, TransientItemError
from starindex.indexer import IndexingOrchestrator
from starindex.models import Item
from starindex.providers import EmbeddingProvider, SourceProvider
from starindex.search import SearchService
from starindex.services import Services
from starindex.store import SQLiteVectorStore

DIM = 4


def make_item(idx: int, name: str | None = None, **fields) -> Item:
    name = name or f"owner/repo-{idx:03d}"
    return Item(
        id=idx,
        name=name,
        url=f"https://github.com/{name}",
        description=fields.pop("description", f"Description of {name}"),
        star_count=fields.pop("star_count", idx * 10),
        topics=fields.pop("topics", ("python",)),
        **fields,
    )


class FakeSource(SourceProvider):
    def __init__(self, items: Sequence[Item], total: int | None = None, contents=None, failing_content=()):
        self.items = list(items)
        self.total = len(self.items) if total is None else total
        self.contents = contents or {}
        self.failing_content = set(failing_content)
        self.list_calls: list[tuple[int, int]] = []
        self.content_calls: list[str] = []
        self.list_error: Exception | None = None

    def list_starred(self, page: int, page_size: int) -> list[Item]:
        self.list_calls.append((page, page_size))
        if self.list_error is not None:
            raise self.list_error
        start = (page - 1) * page_size
        return self.items[start:start + page_size]

    def get_content(self, item: Item) -> str | None:
        self.content_calls.append(item.name)
        if item.name in self.failing_content:
            raise TransientItemError(f"no README for {item.name}")
        return self.contents.get(item.name, f"# {item.name}\n\nA README.")

    def total_starred_count(self) -> int:
        return self.total

    def validate_credential(self) -> bool:
        return True


class FakeEmbedder(EmbeddingProvider):
    """Returns the vector of the first key found in the text, else a default."""

    def __init__(self, dimension: int = DIM, vectors=None, fail_for=(), max_chars: int | None = None):
        self.dimension = dimension
        self.vectors = dict(vectors or {})
        self.fail_for = tuple(fail_for)
        self.max_chars = max_chars
        self.batch_calls: list[list[str]] = []
        self.one_calls: list[str] = []
        self.batch_error: Exception | None = None

    def _vector(self, text: str) -> list[float]:
        for key in self.fail_for:
            if key in text:
                raise TransientItemError(f"cannot embed {key}")
        if self.max_chars is not None and len(text) > self.max_chars:
            raise ContextLengthError("This model's maximum context length is exceeded")
        for key, vector in self.vectors.items():
            if key in text:
                return list(vector)
        return [1.0] + [0.0] * (self.dimension - 1)

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        self.batch_calls.append(list(texts))
        if self.batch_error is not None:
            raise self.batch_error
        return [self._vector(text) for text in texts]

    def embed_one(self, text: str) -> list[float]:
        self.one_calls.append(text)
        return self._vector(text)


class FlakyStore(SQLiteVectorStore):
    """Fails the upsert calls whose 1-based number is in ``fail_calls``."""

    def __init__(self, fail_calls=(), **kwargs):
        super().__init__(**kwargs)
        self.fail_calls = set(fail_calls)
        self.upsert_calls = 0

    def upsert(self, records):
        self.upsert_calls += 1
        if self.upsert_calls in self.fail_calls:
            raise StorageError("disk full")
        super().upsert(records)


class BlockingSource(FakeSource):
    """Holds ``list_starred`` until ``release`` is set."""

    def __init__(self, items):
        super().__init__(items)
        self.entered = threading.Event()
        self.release = threading.Event()

    def list_starred(self, page: int, page_size: int) -> list[Item]:
        self.entered.set()
        self.release.wait(timeout=5)
        return super().list_starred(page, page_size)


@pytest.fixture
def store():
    store = SQLiteVectorStore(dimension=DIM)
    yield store
    store.close()


@pytest.fixture
def config_manager(tmp_path):
    return ConfigManager(tmp_path / "indexing.yaml")


@pytest.fixture
def items():
    return [make_item(i) for i in range(1, 6)]


@pytest.fixture
def source(items):
    return FakeSource(items)


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def orchestrator(source, embedder, store, config_manager):
    return IndexingOrchestrator(source, embedder, store, config_manager, token_budget=500)


@pytest.fixture
def services(source, embedder, store, config_manager, orchestrator):
    return Services(
        None,
        store,
        config_manager,
        source=source,
        embedder=embedder,
        orchestrator=orchestrator,
        search=SearchService(embedder, store),
    )
