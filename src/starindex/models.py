"""Records passed between the providers, the store and the orchestrator."""

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Sequence


@dataclass(frozen=True)
class Item:
    """A starred repository."""

    id: int
    name: str
    url: str
    description: str | None = None
    star_count: int = 0
    topics: tuple[str, ...] = ()
    content: str = ""

    def to_dict(self, include_content: bool = True) -> dict[str, Any]:
        data = asdict(self)
        data["topics"] = list(self.topics)
        if not include_content:
            data.pop("content")
        return data


@dataclass(frozen=True)
class EmbeddedItem:
    item: Item
    embedding: Sequence[float] | None = None


@dataclass(frozen=True)
class SearchResult:
    item: Item
    score: float

    def to_dict(self) -> dict[str, Any]:
        return {"repository": self.item.to_dict(include_content=False), "score": round(self.score, 4)}


@dataclass(frozen=True)
class ProgressEvent:
    phase: str  # "fetching" | "embedding"
    current: int
    total: int
    label: str = ""
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class IndexState(str, Enum):
    IDLE = "idle"
    PAGING = "paging"
    EMBEDDING_BATCH = "embedding_batch"
    FAILED = "failed"


@dataclass
class RunResult:
    """Outcome of one ``run(page)`` call."""

    page: int
    indexed: int
    total: int
    next_page: int | None = None
    fetched: int = 0
    embedded: int = 0
    skipped_content: int = 0
    skipped_embeddings: int = 0
    short_circuited: bool = False
    failed_items: list[str] = field(default_factory=list)

    @property
    def has_more(self) -> bool:
        return self.next_page is not None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["has_more"] = self.has_more
        return data
