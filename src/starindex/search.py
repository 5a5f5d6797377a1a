"""Query interface - cosine nearest neighbours over stored repositories."""

from __future__ import annotations

import logging
from typing import Any

from .models import Item, SearchResult
from .providers import EmbeddingProvider
from .store import DEFAULT_K, VectorStore

logger = logging.getLogger(__name__)


class SearchService:
    def __init__(self, embedder: EmbeddingProvider, store: VectorStore, default_k: int = DEFAULT_K) -> None:
        self.embedder = embedder
        self.store = store
        self.default_k = default_k

    def search(self, query_text: str, k: int | None = None) -> list[SearchResult]:
        """Embed ``query_text`` and return the closest repositories, best first.

        Callers reject empty queries before they get here.
        """
        limit = self.default_k if k is None else k
        logger.debug(f"Searching for {query_text!r} (k={limit})")
        embedding = self.embedder.embed_one(query_text)
        return self.store.query(embedding, limit)


def get_item_by_name(store: VectorStore, name: str) -> Item | None:
    """Get a single repository by its ``owner/name``, case-insensitively."""
    return store.find_by_name(name)


def list_items(store: VectorStore) -> dict[str, Any]:
    """List all stored repositories.

    Returns a dictionary with count and list of all repositories.
    """
    items = [item.to_dict(include_content=False) for item in store.list_items()]
    return {"count": len(items), "items": items}
