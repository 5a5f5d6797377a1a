"""Vector store backed by a ChromaDB persistent collection."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Sequence

from chromadb import PersistentClient

from .config import CHROMA_COLLECTION_NAME, ensure_db_writable
from .errors import StorageError
from .models import EmbeddedItem, Item, SearchResult
from .store import DEFAULT_K, VectorStore, dedupe_last

logger = logging.getLogger(__name__)

EMBEDDED_FILTER = {"embedded": True}


def _metadata(item: Item, embedded: bool, seq: int) -> dict[str, Any]:
    metadata: dict[str, Any] = {
        "name": item.name,
        "url": item.url,
        "star_count": item.star_count,
        "topics": json.dumps(list(item.topics)),
        "embedded": embedded,
        "seq": seq,
    }
    if item.description is not None:
        metadata["description"] = item.description
    return metadata


def _item(record_id: str, metadata: dict[str, Any], document: str | None) -> Item:
    return Item(
        id=int(record_id),
        name=metadata["name"],
        url=metadata.get("url", ""),
        description=metadata.get("description"),
        star_count=int(metadata.get("star_count", 0)),
        topics=tuple(json.loads(metadata.get("topics") or "[]")),
        content=document or "",
    )


def _as_lists(embeddings: Any) -> list[list[float]]:
    if embeddings is None:
        return []
    return [[float(value) for value in vector] for vector in embeddings]


class ChromaVectorStore(VectorStore):
    """Items live in one cosine-space collection.

    Chroma needs a vector for every record, so items without an embedding get
    a fixed placeholder vector and ``embedded: False``; queries filter them
    out. Chroma has no transactions: a failed upsert restores the records it
    replaced.
    """

    def __init__(
        self,
        path: str | Path,
        dimension: int = 3072,
        collection_name: str = CHROMA_COLLECTION_NAME,
    ) -> None:
        self.path = Path(path)
        self.dimension = dimension
        self.collection_name = collection_name
        self._lock = threading.RLock()
        ensure_db_writable(self.path)
        self._client = PersistentClient(path=str(self.path))
        self._collection = self._open_collection()
        self._max_seq: int | None = None

    def _open_collection(self):
        return self._client.get_or_create_collection(
            name=self.collection_name,
            metadata={"hnsw:space": "cosine"},
            embedding_function=None,
        )

    def _placeholder(self) -> list[float]:
        return [1.0] + [0.0] * (self.dimension - 1)

    def _next_seq(self) -> int:
        if self._max_seq is None:
            stored = self._collection.get(include=["metadatas"])
            self._max_seq = max((meta.get("seq", 0) for meta in stored["metadatas"] or []), default=0)
        self._max_seq += 1
        return self._max_seq

    def upsert(self, records: Sequence[EmbeddedItem]) -> None:
        records = dedupe_last(records)
        if not records:
            return
        with self._lock:
            for record in records:
                self._check_dimension(record)

            ids = [str(record.item.id) for record in records]
            previous = self._collection.get(ids=ids, include=["embeddings", "metadatas", "documents"])
            previous_seq = {
                record_id: meta.get("seq", 0)
                for record_id, meta in zip(previous["ids"], previous["metadatas"] or [])
            }

            metadatas = []
            embeddings = []
            for record_id, record in zip(ids, records):
                seq = previous_seq.get(record_id) or self._next_seq()
                embedded = record.embedding is not None
                metadatas.append(_metadata(record.item, embedded, seq))
                embeddings.append(
                    [float(value) for value in record.embedding] if embedded else self._placeholder()
                )

            try:
                self._collection.upsert(
                    ids=ids,
                    embeddings=embeddings,
                    metadatas=metadatas,
                    documents=[record.item.content for record in records],
                )
            except Exception as exc:
                logger.error(f"Error storing {len(ids)} repositories, restoring previous state: {exc}")
                self._restore(ids, previous)
                raise StorageError(f"Upsert failed: {exc}") from exc
        logger.debug(f"Upserted {len(records)} repositories")

    def _restore(self, ids: list[str], previous: dict[str, Any]) -> None:
        self._max_seq = None
        existed = set(previous["ids"])
        added = [record_id for record_id in ids if record_id not in existed]
        try:
            if added:
                self._collection.delete(ids=added)
            if previous["ids"]:
                self._collection.upsert(
                    ids=previous["ids"],
                    embeddings=_as_lists(previous["embeddings"]),
                    metadatas=previous["metadatas"],
                    documents=previous["documents"],
                )
        except Exception as exc:  # pragma: no cover - double failure
            logger.error(f"Failed to restore repositories after a failed upsert: {exc}")

    def _embedded_count(self) -> int:
        return len(self._collection.get(where=EMBEDDED_FILTER, include=["metadatas"])["ids"])

    def query(self, embedding: Sequence[float], k: int = DEFAULT_K) -> list[SearchResult]:
        if k <= 0:
            return []
        if len(embedding) != self.dimension:
            raise StorageError(f"Query embedding must have {self.dimension} components")

        with self._lock:
            available = self._embedded_count()
            if not available:
                return []
            results = self._collection.query(
                query_embeddings=[[float(value) for value in embedding]],
                n_results=min(k, available),
                where=EMBEDDED_FILTER,
                include=["metadatas", "documents", "distances"],
            )

        ranked = []
        for record_id, metadata, document, distance in zip(
            results["ids"][0],
            results["metadatas"][0],
            results["documents"][0],
            results["distances"][0],
        ):
            ranked.append((1 - distance, metadata.get("seq", 0), _item(record_id, metadata, document)))
        ranked.sort(key=lambda entry: (-entry[0], entry[1]))
        return [SearchResult(item=item, score=float(score)) for score, _seq, item in ranked]

    def count(self) -> int:
        with self._lock:
            return self._collection.count()

    def clear(self) -> None:
        with self._lock:
            try:
                self._client.delete_collection(name=self.collection_name)
                logger.info(f"Deleted collection '{self.collection_name}'")
            except Exception as exc:
                logger.error(f"Failed to delete collection '{self.collection_name}': {exc}")
                raise StorageError(f"Clearing collection '{self.collection_name}' failed: {exc}") from exc
            self._collection = self._open_collection()
            self._max_seq = None

    def get(self, item_id: int) -> EmbeddedItem | None:
        with self._lock:
            result = self._collection.get(
                ids=[str(item_id)], include=["embeddings", "metadatas", "documents"]
            )
        if not result["ids"]:
            return None
        metadata = result["metadatas"][0]
        embedding = _as_lists(result["embeddings"])[0] if metadata.get("embedded") else None
        return EmbeddedItem(item=_item(result["ids"][0], metadata, result["documents"][0]), embedding=embedding)

    def find_by_name(self, name: str) -> Item | None:
        lowered = name.lower()
        for item in self.list_items():
            if item.name.lower() == lowered:
                return item
        return None

    def list_items(self) -> list[Item]:
        with self._lock:
            stored = self._collection.get(include=["metadatas", "documents"])
        rows = sorted(
            zip(stored["ids"], stored["metadatas"] or [], stored["documents"] or []),
            key=lambda row: row[1].get("seq", 0),
        )
        return [_item(record_id, metadata, document) for record_id, metadata, document in rows]
