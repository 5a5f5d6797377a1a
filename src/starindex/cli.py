"""Command-line interface for starindex."""

from __future__ import annotations

import argparse
import logging
import os
import sys

from .config import settings
from .errors import StarIndexError
from .search import get_item_by_name
from .services import build_services
from .viewer import (
    display_results,
    print_progress,
    print_run_result,
    view_item,
    view_items,
)

logger = logging.getLogger(__name__)


def _configure_logging() -> None:
    log_level_str = os.getenv("STARINDEX_LOG_LEVEL", "INFO").upper()
    valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    log_level = getattr(logging, log_level_str if log_level_str in valid_levels else "INFO")
    logging.basicConfig(level=log_level, format="%(asctime)s - %(levelname)s - %(message)s")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="starindex", description="Semantic search over your GitHub stars")
    sub = parser.add_subparsers(dest="command")

    index_parser = sub.add_parser("index", help="Index one page of starred repositories")
    index_parser.add_argument("--page", type=int, default=1, help="Page to fetch (default: 1)")

    query_parser = sub.add_parser("query", help="Search repositories")
    query_parser.add_argument("-k", type=int, default=10, help="Number of results")
    query_parser.add_argument("query", nargs="+", help="Search query")

    view_parser = sub.add_parser("view", help="View stored repositories")
    view_parser.add_argument("repo_name", nargs="?", help="Specific repository (owner/name)")

    sub.add_parser("status", help="Show indexed vs. starred counts")

    config_parser = sub.add_parser("config", help="Show or update indexing settings")
    config_parser.add_argument("--batch-size", dest="batch_size", help="Embedding requests per batch (1-50)")
    config_parser.add_argument("--max-retries", dest="max_retries", help="Attempts for over-long inputs (1-10)")
    config_parser.add_argument("--page-size", dest="page_size", help="Repositories per page (1-100)")

    sub.add_parser("reindex", help="Delete everything and index the first page again")
    sub.add_parser("clear", help="Clear the database")

    return parser


def main(argv: list[str] | None = None) -> int:
    _configure_logging()
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    if args.command == "query" and not " ".join(args.query).strip():
        parser.error("Please provide a search query")

    try:
        services = build_services(
            settings,
            listener=print_progress,
            validate=args.command in ("index", "reindex"),
        )

        if args.command == "index":
            print_run_result(services.orchestrator.run(args.page))
        elif args.command == "reindex":
            print_run_result(services.orchestrator.reindex())
        elif args.command == "query":
            query_text = " ".join(args.query)
            print(f"\nSearching for: '{query_text}'")
            display_results(services.search.search(query_text, k=args.k))
        elif args.command == "view":
            if args.repo_name:
                view_item(get_item_by_name(services.store, args.repo_name), args.repo_name)
            else:
                view_items(services.store.list_items())
        elif args.command == "status":
            status = services.orchestrator.status()
            print(f"{status['indexed']} of {status['total']} repositories indexed")
            if status["next_page"] is not None:
                print(f"Next page to index: {status['next_page']}")
        elif args.command == "config":
            changes = {
                key: value
                for key, value in vars(args).items()
                if key in ("batch_size", "max_retries", "page_size") and value is not None
            }
            config = services.config_manager.update(changes) if changes else services.config_manager.config
            print(f"batch_size={config.batch_size} max_retries={config.max_retries} page_size={config.page_size}")
        elif args.command == "clear":
            services.clear()
            print("Cleared all stored repositories.")
    except StarIndexError as exc:
        where = f" (page {exc.page}, {exc.phase})" if exc.page is not None else ""
        print(f"Error{where}: {exc}", file=sys.stderr)
        return 1
    except RuntimeError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
