"""Wires providers, store and config together from Settings."""

from __future__ import annotations

import logging
import threading
from functools import cached_property

from .config import (
    INDEXING_CONFIG_FILENAME,
    SQLITE_FILENAME,
    ConfigManager,
    Settings,
    ensure_db_writable,
    require,
)
from .embeddings import OllamaEmbeddingProvider, OpenAIEmbeddingProvider
from .errors import ConfigurationError, ProviderAuthError
from .github import GitHubSource
from .indexer import IndexingOrchestrator, ProgressListener, clear_store
from .providers import EmbeddingProvider, SourceProvider
from .search import SearchService
from .store import SQLiteVectorStore, VectorStore

logger = logging.getLogger(__name__)


class Services:
    """Opens the store and config up front and builds credentialed collaborators on first use.

    Collaborators passed in are used as-is instead of being built from ``settings``.
    """

    def __init__(
        self,
        settings: Settings | None,
        store: VectorStore,
        config_manager: ConfigManager,
        listener: ProgressListener | None = None,
        *,
        source: SourceProvider | None = None,
        embedder: EmbeddingProvider | None = None,
        orchestrator: IndexingOrchestrator | None = None,
        search: SearchService | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.config_manager = config_manager
        self.listener = listener
        self.run_lock = orchestrator.run_lock if orchestrator is not None else threading.Lock()
        for name, value in (
            ("source", source),
            ("embedder", embedder),
            ("orchestrator", orchestrator),
            ("search", search),
        ):
            if value is not None:
                setattr(self, name, value)

    @cached_property
    def source(self) -> SourceProvider:
        return build_source(self.settings)

    @cached_property
    def embedder(self) -> EmbeddingProvider:
        return build_embedder(self.settings)

    @cached_property
    def orchestrator(self) -> IndexingOrchestrator:
        return IndexingOrchestrator(
            self.source,
            self.embedder,
            self.store,
            self.config_manager,
            listener=self.listener,
            token_budget=self.settings.token_budget,
            run_lock=self.run_lock,
        )

    @cached_property
    def search(self) -> SearchService:
        return SearchService(self.embedder, self.store)

    @property
    def is_running(self) -> bool:
        return self.run_lock.locked()

    def clear(self) -> None:
        clear_store(self.store, self.run_lock)


def build_store(settings: Settings) -> VectorStore:
    ensure_db_writable(settings.db_path)
    if settings.store_backend == "chroma":
        # Imported lazily so the SQLite path never loads chromadb
        from .chroma import ChromaVectorStore

        logger.info(f"Opening ChromaDB store at {settings.db_path}")
        return ChromaVectorStore(settings.db_path, dimension=settings.embedding_dimension)
    if settings.store_backend != "sqlite":
        raise ConfigurationError(f"Unknown store backend '{settings.store_backend}' (expected sqlite or chroma)")
    path = settings.db_path / SQLITE_FILENAME
    logger.info(f"Opening SQLite store at {path}")
    return SQLiteVectorStore(path, dimension=settings.embedding_dimension)


def build_source(settings: Settings) -> SourceProvider:
    token = require(settings.github_token, "STARINDEX_GITHUB_TOKEN", "github_token")
    return GitHubSource(token, api_url=settings.github_api_url)


def build_embedder(settings: Settings) -> EmbeddingProvider:
    if settings.embedding_backend == "ollama":
        headers = {"X-API-Key": settings.ollama_api_key.strip()} if settings.ollama_api_key.strip() else None
        return OllamaEmbeddingProvider(
            embeddings_url=settings.ollama_url,
            model_name=settings.embedding_model,
            dimension=settings.embedding_dimension,
            headers=headers,
        )
    if settings.embedding_backend != "openai":
        raise ConfigurationError(
            f"Unknown embedding backend '{settings.embedding_backend}' (expected openai or ollama)"
        )
    api_key = require(settings.openai_api_key, "STARINDEX_OPENAI_API_KEY", "openai_api_key")
    return OpenAIEmbeddingProvider(
        api_key,
        model=settings.embedding_model,
        url=settings.openai_url,
        dimension=settings.embedding_dimension,
    )


def build_services(
    settings: Settings,
    listener: ProgressListener | None = None,
    validate: bool = False,
) -> Services:
    services = Services(
        settings,
        build_store(settings),
        ConfigManager(settings.db_path / INDEXING_CONFIG_FILENAME),
        listener=listener,
    )
    if validate and not services.source.validate_credential():
        raise ProviderAuthError("GitHub token is invalid")
    return services
