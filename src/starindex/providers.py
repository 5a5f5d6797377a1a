"""Contracts for the two remote collaborators of the indexing pipeline."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Sequence

from .models import Item

Vector = list[float]


class SourceProvider(ABC):
    """Paginated access to the authenticated user's starred repositories."""

    @abstractmethod
    def list_starred(self, page: int, page_size: int) -> list[Item]:
        """Return one page of items, oldest star first, with empty ``content``."""

    @abstractmethod
    def get_content(self, item: Item) -> str | None:
        """Return the item's long-form text, or None when it has none.

        Raises TransientItemError when the fetch fails.
        """

    @abstractmethod
    def total_starred_count(self) -> int:
        ...

    @abstractmethod
    def validate_credential(self) -> bool:
        ...


class EmbeddingProvider(ABC):
    """Turns bounded text into fixed-length vectors."""

    dimension: int

    @abstractmethod
    def embed_batch(self, texts: Sequence[str]) -> list[Vector]:
        """Embed ``texts``, returning exactly one vector per input in order."""

    def embed_one(self, text: str) -> Vector:
        return self.embed_batch([text])[0]
