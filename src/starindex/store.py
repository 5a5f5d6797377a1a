"""Durable storage of starred repositories and their embeddings."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Sequence

import numpy as np

from .errors import StorageError
from .models import EmbeddedItem, Item, SearchResult

logger = logging.getLogger(__name__)

DEFAULT_K = 10


def dedupe_last(records: Sequence[EmbeddedItem]) -> list[EmbeddedItem]:
    """Keep one record per item id; later records win, first-seen order is kept."""
    latest: dict[int, EmbeddedItem] = {}
    for record in records:
        latest[record.item.id] = record
    return list(latest.values())


class VectorStore(ABC):
    """Items keyed by id, each with at most one embedding.

    ``upsert`` is all-or-nothing per call; ``query`` ranks embedded items by
    cosine similarity, ties resolved by insertion order.
    """

    dimension: int

    @abstractmethod
    def upsert(self, records: Sequence[EmbeddedItem]) -> None:
        ...

    @abstractmethod
    def query(self, embedding: Sequence[float], k: int = DEFAULT_K) -> list[SearchResult]:
        ...

    @abstractmethod
    def count(self) -> int:
        ...

    @abstractmethod
    def clear(self) -> None:
        ...

    @abstractmethod
    def get(self, item_id: int) -> EmbeddedItem | None:
        ...

    @abstractmethod
    def find_by_name(self, name: str) -> Item | None:
        ...

    @abstractmethod
    def list_items(self) -> list[Item]:
        """All items in insertion order."""

    def close(self) -> None:
        pass

    def _check_dimension(self, record: EmbeddedItem) -> None:
        if record.embedding is not None and len(record.embedding) != self.dimension:
            raise StorageError(
                f"Embedding for {record.item.name} has {len(record.embedding)} "
                f"components, expected {self.dimension}"
            )


_SCHEMA = """
CREATE TABLE IF NOT EXISTS repositories (
    id INTEGER PRIMARY KEY,
    seq INTEGER NOT NULL,
    name TEXT NOT NULL,
    description TEXT,
    url TEXT NOT NULL,
    star_count INTEGER NOT NULL DEFAULT 0,
    topics TEXT NOT NULL DEFAULT '[]',
    content TEXT NOT NULL DEFAULT '',
    indexed_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS repositories_seq ON repositories(seq);
CREATE INDEX IF NOT EXISTS repositories_name ON repositories(name);
CREATE TABLE IF NOT EXISTS embeddings (
    repo_id INTEGER PRIMARY KEY REFERENCES repositories(id) ON DELETE CASCADE,
    embedding BLOB NOT NULL
);
"""

_UPSERT_REPOSITORY = """
INSERT INTO repositories (id, seq, name, description, url, star_count, topics, content)
VALUES (?, (SELECT COALESCE(MAX(seq), 0) + 1 FROM repositories), ?, ?, ?, ?, ?, ?)
ON CONFLICT (id) DO UPDATE SET
    name = excluded.name,
    description = excluded.description,
    url = excluded.url,
    star_count = excluded.star_count,
    topics = excluded.topics,
    content = excluded.content,
    indexed_at = CURRENT_TIMESTAMP
"""

_UPSERT_EMBEDDING = """
INSERT INTO embeddings (repo_id, embedding) VALUES (?, ?)
ON CONFLICT (repo_id) DO UPDATE SET embedding = excluded.embedding
"""

_ITEM_COLUMNS = "r.id, r.name, r.url, r.description, r.star_count, r.topics, r.content"


def _row_to_item(row: Sequence) -> Item:
    return Item(
        id=row[0],
        name=row[1],
        url=row[2],
        description=row[3],
        star_count=row[4],
        topics=tuple(json.loads(row[5] or "[]")),
        content=row[6] or "",
    )


class SQLiteVectorStore(VectorStore):
    """SQLite tables for items and embeddings, scored with numpy.

    The whole embedding matrix is cached in memory between writes; a star list
    is small enough for exact cosine scoring.
    """

    def __init__(self, path: str | Path = ":memory:", dimension: int = 3072) -> None:
        self.path = str(path)
        self.dimension = dimension
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self.path, check_same_thread=False, isolation_level=None)
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.executescript(_SCHEMA)
        self._cache: tuple[list[int], np.ndarray] | None = None
        logger.debug(f"Opened SQLite vector store at {self.path}")

    def upsert(self, records: Sequence[EmbeddedItem]) -> None:
        records = dedupe_last(records)
        if not records:
            return
        with self._lock:
            cursor = self._conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                for record in records:
                    self._check_dimension(record)
                    item = record.item
                    cursor.execute(
                        _UPSERT_REPOSITORY,
                        (
                            item.id,
                            item.name,
                            item.description,
                            item.url,
                            item.star_count,
                            json.dumps(list(item.topics)),
                            item.content,
                        ),
                    )
                    if record.embedding is None:
                        cursor.execute("DELETE FROM embeddings WHERE repo_id = ?", (item.id,))
                    else:
                        blob = np.asarray(record.embedding, dtype=np.float32).tobytes()
                        cursor.execute(_UPSERT_EMBEDDING, (item.id, blob))
                cursor.execute("COMMIT")
            except Exception as exc:
                if self._conn.in_transaction:
                    cursor.execute("ROLLBACK")
                logger.error(f"Rolled back upsert of {len(records)} repositories: {exc}")
                if isinstance(exc, StorageError):
                    raise
                raise StorageError(f"Upsert failed: {exc}") from exc
            finally:
                self._cache = None
                cursor.close()
        logger.debug(f"Upserted {len(records)} repositories")

    def _matrix(self) -> tuple[list[int], np.ndarray]:
        if self._cache is None:
            rows = self._conn.execute(
                "SELECT e.repo_id, e.embedding FROM embeddings e "
                "JOIN repositories r ON r.id = e.repo_id ORDER BY r.seq"
            ).fetchall()
            ids = [row[0] for row in rows]
            if rows:
                matrix = np.vstack([np.frombuffer(row[1], dtype=np.float32) for row in rows])
            else:
                matrix = np.empty((0, self.dimension), dtype=np.float32)
            self._cache = (ids, matrix.astype(np.float64))
        return self._cache

    def query(self, embedding: Sequence[float], k: int = DEFAULT_K) -> list[SearchResult]:
        if k <= 0:
            return []
        vector = np.asarray(embedding, dtype=np.float64)
        if vector.shape != (self.dimension,):
            raise StorageError(f"Query embedding must have {self.dimension} components")

        with self._lock:
            ids, matrix = self._matrix()
            if not ids:
                return []
            norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(vector)
            dots = matrix @ vector
            scores = np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)
            # Stable sort keeps insertion order among equal scores
            order = np.argsort(-scores, kind="stable")[:k]
            top_ids = [ids[i] for i in order]
            placeholders = ",".join("?" for _ in top_ids)
            rows = self._conn.execute(
                f"SELECT {_ITEM_COLUMNS} FROM repositories r WHERE r.id IN ({placeholders})",
                top_ids,
            ).fetchall()

        items = {row[0]: _row_to_item(row) for row in rows}
        return [SearchResult(item=items[ids[i]], score=float(scores[i])) for i in order]

    def count(self) -> int:
        with self._lock:
            return self._conn.execute("SELECT COUNT(*) FROM repositories").fetchone()[0]

    def clear(self) -> None:
        with self._lock:
            cursor = self._conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                cursor.execute("DELETE FROM embeddings")
                cursor.execute("DELETE FROM repositories")
                cursor.execute("COMMIT")
            except sqlite3.Error as exc:
                if self._conn.in_transaction:
                    cursor.execute("ROLLBACK")
                raise StorageError(f"Clearing the store failed: {exc}") from exc
            finally:
                self._cache = None
                cursor.close()
        logger.info("Cleared all repositories and embeddings")

    def get(self, item_id: int) -> EmbeddedItem | None:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_ITEM_COLUMNS}, e.embedding FROM repositories r "
                "LEFT JOIN embeddings e ON e.repo_id = r.id WHERE r.id = ?",
                (item_id,),
            ).fetchone()
        if row is None:
            return None
        embedding = None
        if row[7] is not None:
            embedding = np.frombuffer(row[7], dtype=np.float32).astype(float).tolist()
        return EmbeddedItem(item=_row_to_item(row), embedding=embedding)

    def find_by_name(self, name: str) -> Item | None:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_ITEM_COLUMNS} FROM repositories r WHERE lower(r.name) = lower(?) "
                "ORDER BY r.seq LIMIT 1",
                (name,),
            ).fetchone()
        return _row_to_item(row) if row else None

    def list_items(self) -> list[Item]:
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_ITEM_COLUMNS} FROM repositories r ORDER BY r.seq"
            ).fetchall()
        return [_row_to_item(row) for row in rows]

    def close(self) -> None:
        with self._lock:
            self._conn.close()
