"""starindex - semantic search over GitHub starred repositories."""

from .budget import fit, compose_document
from .config import AppConfig, ConfigManager, settings
from .indexer import IndexingOrchestrator, iter_run
from .models import Item, EmbeddedItem, SearchResult, ProgressEvent, RunResult
from .search import SearchService
from .store import SQLiteVectorStore, VectorStore

__all__ = [
    "settings",
    "fit",
    "compose_document",
    "AppConfig",
    "ConfigManager",
    "IndexingOrchestrator",
    "iter_run",
    "Item",
    "EmbeddedItem",
    "SearchResult",
    "ProgressEvent",
    "RunResult",
    "SearchService",
    "SQLiteVectorStore",
    "VectorStore",
]
