"""Plain-text rendering of stored repositories, search results and progress."""

from __future__ import annotations

from .models import Item, ProgressEvent, RunResult, SearchResult


def _preview(text: str, limit: int = 200) -> str:
    flat = " ".join(text.split())
    return flat[:limit] + "..." if len(flat) > limit else flat


def view_item(item: Item | None, name: str = "") -> None:
    if item is None:
        print(f"Repository '{name}' not found.")
        return

    print(f"\n{'='*80}")
    print(f"Repository: {item.name}")
    print(f"{'='*80}\n")
    print(f"URL: {item.url}")
    print(f"Stars: {item.star_count}")
    if item.description:
        print(f"Description: {item.description}")
    if item.topics:
        print(f"Topics: {', '.join(item.topics)}")
    print(f"README length: {len(item.content)} chars\n")
    print(f"README:\n{_preview(item.content, 1000) or '(none)'}\n")


def view_items(items: list[Item]) -> None:
    if not items:
        print("No repositories stored yet. Run 'starindex index' first.")
        return

    print(f"\n{'='*80}")
    print(f"Stored Repositories ({len(items)})")
    print(f"{'='*80}\n")

    for idx, item in enumerate(items, 1):
        print(f"{idx}. {item.name}")
        print(f"   URL: {item.url}")
        print(f"   Stars: {item.star_count}")
        if item.description:
            print(f"   {item.description}")
        print(f"{'-'*80}")


def display_results(results: list[SearchResult]) -> None:
    """Pretty print search results."""
    print(f"\nFound {len(results)} matching repositories:\n")

    for idx, result in enumerate(results, 1):
        item = result.item
        print(f"{idx}. {item.name}")
        print(f"   URL: {item.url}")
        print(f"   Similarity: {result.score*100:.1f}%")
        if item.description:
            print(f"   Description: {item.description}")
        if item.topics:
            print(f"   Topics: {', '.join(item.topics)}")
        print()


def print_progress(event: ProgressEvent) -> None:
    stage = "Downloading READMEs" if event.phase == "fetching" else "Generating embeddings"
    print(f"[{event.current}/{event.total}] {stage}: {event.label} ({event.detail})")


def print_run_result(result: RunResult) -> None:
    if result.short_circuited:
        print("Repositories already indexed; use --page to fetch more or 'reindex' to start over.")
    else:
        print(
            f"Page {result.page}: fetched {result.fetched}, embedded {result.embedded}, "
            f"{result.skipped_embeddings} without embedding, {result.skipped_content} without README"
        )
    print(f"{result.indexed} of {result.total} repositories indexed")
    if result.next_page is not None:
        print(f"More repositories remain. Continue with: starindex index --page {result.next_page}")
