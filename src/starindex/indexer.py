"""Indexing orchestrator: pages through stars, embeds them in batches, stores each batch."""

from __future__ import annotations

import dataclasses
import logging
import math
import queue
import threading
from typing import Any, Callable, Iterator, Sequence

from .budget import DEFAULT_TOKEN_BUDGET, compose_document
from .config import ConfigManager
from .embeddings import embed_within_budget
from .errors import (
    AlreadyIndexingError,
    ProviderAuthError,
    ProviderRateOrNetworkError,
    StarIndexError,
    TransientItemError,
)
from .models import EmbeddedItem, IndexState, Item, ProgressEvent, RunResult
from .providers import EmbeddingProvider, SourceProvider, Vector
from .store import VectorStore

logger = logging.getLogger(__name__)

ProgressListener = Callable[[ProgressEvent], None]


def next_page_for(indexed: int, total: int, page_size: int) -> int | None:
    """Page to fetch next, or None once everything the provider reports is stored."""
    if total <= indexed:
        return None
    return math.ceil(indexed / page_size) + 1


class IndexingOrchestrator:
    """Drives one page of indexing per ``run(page)`` call.

    Each batch is upserted as soon as it is embedded, so a failure part-way
    through a page leaves earlier batches in the store. Only one run may be in
    flight at a time; a second ``run()`` raises AlreadyIndexingError.
    """

    def __init__(
        self,
        source: SourceProvider,
        embedder: EmbeddingProvider,
        store: VectorStore,
        config_manager: ConfigManager,
        listener: ProgressListener | None = None,
        token_budget: int = DEFAULT_TOKEN_BUDGET,
        run_lock: threading.Lock | None = None,
    ) -> None:
        self.source = source
        self.embedder = embedder
        self.store = store
        self.config_manager = config_manager
        self.listener = listener
        self.token_budget = token_budget
        self.state = IndexState.IDLE
        # Also taken by Services.clear
        self.run_lock = run_lock or threading.Lock()

    @property
    def is_running(self) -> bool:
        return self.run_lock.locked()

    def _notify(self, event: ProgressEvent, listener: ProgressListener | None) -> None:
        for callback in (self.listener, listener):
            if callback is None:
                continue
            try:
                callback(event)
            except Exception as exc:
                logger.warning(f"Progress listener failed on {event.phase} event: {exc}")

    def status(self) -> dict[str, Any]:
        total = self.source.total_starred_count()
        indexed = self.store.count()
        return {
            "indexed": indexed,
            "total": total,
            "next_page": next_page_for(indexed, total, self.config_manager.config.page_size),
            "state": self.state.value,
        }

    def run(self, page: int = 1, listener: ProgressListener | None = None) -> RunResult:
        if page < 1:
            raise ValueError("page must be >= 1")
        return self._guarded(page, listener, reset=False)

    def reindex(self, listener: ProgressListener | None = None) -> RunResult:
        """Drop everything stored and index the first page again."""
        return self._guarded(1, listener, reset=True)

    def clear(self) -> None:
        clear_store(self.store, self.run_lock)
        self.state = IndexState.IDLE

    def _guarded(self, page: int, listener: ProgressListener | None, reset: bool) -> RunResult:
        if not self.run_lock.acquire(blocking=False):
            raise AlreadyIndexingError("An indexing run is already in progress", page=page)
        try:
            if reset:
                logger.info("Reindexing: clearing stored repositories")
                self.store.clear()
            return self._run(page, listener)
        except StarIndexError as exc:
            if exc.page is None:
                exc.page = page
            if exc.phase is None:
                exc.phase = self.state.value
            self.state = IndexState.FAILED
            logger.error(f"Indexing page {page} failed during {exc.phase}: {exc}")
            raise
        except Exception:
            self.state = IndexState.FAILED
            logger.exception(f"Indexing page {page} failed unexpectedly")
            raise
        finally:
            self.run_lock.release()

    def _run(self, page: int, listener: ProgressListener | None) -> RunResult:
        config = self.config_manager.config
        self.state = IndexState.PAGING
        total = self.source.total_starred_count()

        if page == 1:
            existing = self.store.count()
            if existing > 0:
                logger.info(f"Store already holds {existing} repositories, skipping fetch")
                self.state = IndexState.IDLE
                return RunResult(
                    page=page,
                    indexed=existing,
                    total=total,
                    next_page=next_page_for(existing, total, config.page_size),
                    short_circuited=True,
                )

        logger.info(f"Fetching page {page} ({config.page_size} per page)")
        items = self.source.list_starred(page, config.page_size)
        result = RunResult(page=page, indexed=0, total=total, fetched=len(items))
        items = self._attach_content(items, result, listener)

        self.state = IndexState.EMBEDDING_BATCH
        batches = [items[i:i + config.batch_size] for i in range(0, len(items), config.batch_size)]
        for number, batch in enumerate(batches, 1):
            records = self._embed(batch, config.max_retries, result)
            self.store.upsert(records)
            indexed = self.store.count()
            logger.info(f"Stored batch {number}/{len(batches)} of page {page} ({indexed}/{total} indexed)")
            self._notify(
                ProgressEvent(
                    phase="embedding",
                    current=indexed,
                    total=total,
                    label=batch[0].name,
                    detail=f"Completed batch {number} of {len(batches)} in current page",
                ),
                listener,
            )

        result.indexed = self.store.count()
        result.next_page = next_page_for(result.indexed, total, config.page_size)
        self.state = IndexState.IDLE
        logger.info(
            f"Page {page} done: {result.embedded} embedded, {result.skipped_embeddings} without embedding, "
            f"{result.indexed}/{total} indexed"
        )
        return result

    def _attach_content(
        self, items: list[Item], result: RunResult, listener: ProgressListener | None
    ) -> list[Item]:
        enriched = []
        for idx, item in enumerate(items, 1):
            self._notify(
                ProgressEvent(
                    phase="fetching",
                    current=idx,
                    total=len(items),
                    label=item.name,
                    detail=f"Processing {idx} of {len(items)} in current page",
                ),
                listener,
            )
            try:
                content = self.source.get_content(item) or ""
            except ProviderAuthError:
                raise
            except Exception as exc:
                logger.warning(f"README skipped for {item.name}: {exc}")
                result.skipped_content += 1
                content = ""
            enriched.append(dataclasses.replace(item, content=content))
        return enriched

    def _embed(self, batch: Sequence[Item], max_retries: int, result: RunResult) -> list[EmbeddedItem]:
        documents = [compose_document(item, self.token_budget) for item in batch]
        try:
            vectors: Sequence[Vector | None] = self.embedder.embed_batch(documents)
        except TransientItemError as exc:
            logger.warning(f"Batch embedding failed ({exc}), embedding {len(batch)} items one by one")
            vectors = [self._embed_single(item, text, max_retries) for item, text in zip(batch, documents)]

        if len(vectors) != len(batch):
            raise ProviderRateOrNetworkError(
                f"Embedding provider returned {len(vectors)} vectors for {len(batch)} inputs"
            )

        records = []
        for item, vector in zip(batch, vectors):
            if vector is not None and len(vector) != self.store.dimension:
                logger.warning(
                    f"Embedding for {item.name} has {len(vector)} components, "
                    f"expected {self.store.dimension}; storing without embedding"
                )
                vector = None
            if vector is None:
                result.skipped_embeddings += 1
                result.failed_items.append(item.name)
            else:
                result.embedded += 1
            records.append(EmbeddedItem(item=item, embedding=vector))
        return records

    def _embed_single(self, item: Item, text: str, max_retries: int) -> Vector | None:
        try:
            return embed_within_budget(self.embedder, text, self.token_budget, max_retries)
        except TransientItemError as exc:
            logger.warning(f"Embedding skipped for {item.name}: {exc}")
            return None


def clear_store(store: VectorStore, run_lock: threading.Lock) -> None:
    """Remove every stored repository unless an indexing run holds ``run_lock``."""
    if not run_lock.acquire(blocking=False):
        raise AlreadyIndexingError("Cannot clear while indexing")
    try:
        logger.info("Clearing stored repositories")
        store.clear()
    finally:
        run_lock.release()

def iter_run(orchestrator: IndexingOrchestrator, page: int = 1) -> Iterator[dict[str, Any]]:
    """Run one page in a worker thread, yielding progress events as dicts.

    The last event has phase ``done`` with the run result, or ``failed``.
    """
    events: queue.Queue[dict[str, Any] | None] = queue.Queue()

    def work() -> None:
        try:
            result = orchestrator.run(page, listener=lambda event: events.put(event.to_dict()))
            events.put({"phase": "done", **result.to_dict()})
        except Exception as exc:
            events.put(
                {
                    "phase": "failed",
                    "page": page,
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                }
            )
        finally:
            events.put(None)

    worker = threading.Thread(target=work, name=f"starindex-page-{page}", daemon=True)
    worker.start()
    while True:
        event = events.get()
        if event is None:
            break
        yield event
    worker.join()
