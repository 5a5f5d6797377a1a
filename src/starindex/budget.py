"""Shrink document text to fit an approximate token budget.

No tokenizer is involved: a budget of ``n`` tokens allows ``n * CHARS_PER_TOKEN``
characters. Over-long text keeps a head and a tail slice joined by a marker, so
both the opening (title, summary) and the closing sections survive.
"""

from __future__ import annotations

import math

from .models import Item

CHARS_PER_TOKEN = 4
DEFAULT_TOKEN_BUDGET = 6000
TRUNCATION_MARKER = "\n[...content truncated...]\n"
README_TRUNCATION_MARKER = "\n[...README truncated...]\n"
MISSING_README = "No README available"

# Room kept free for the "README:" heading and separators
FORMAT_RESERVE_CHARS = 100


def max_chars(token_budget: int) -> int:
    return max(0, int(token_budget) * CHARS_PER_TOKEN)


def _head_tail(text: str, head_len: int, tail_len: int, marker: str) -> str:
    head = text[:head_len]
    tail = text[len(text) - tail_len:] if tail_len > 0 else ""
    return f"{head}{marker}{tail}"


def fit(text: str, token_budget: int) -> str:
    """Return ``text`` unchanged if it fits the budget, otherwise a head/tail cut.

    The head takes 60% of the allowed characters, or 40% once the input is
    more than twice the allowance. The result never exceeds the allowance.
    """
    limit = max_chars(token_budget)
    if len(text) <= limit:
        return text

    if limit <= len(TRUNCATION_MARKER):
        return text[:limit]

    head_ratio = 0.4 if len(text) > limit * 2 else 0.6
    head_len = min(math.floor(limit * head_ratio), limit - len(TRUNCATION_MARKER))
    tail_len = limit - head_len - len(TRUNCATION_MARKER)
    return _head_tail(text, head_len, tail_len, TRUNCATION_MARKER)


def _metadata_block(item: Item) -> str:
    lines = [f"Repository: {item.name}"]
    if item.description:
        lines.append(f"Description: {item.description}")
    if item.topics:
        lines.append(f"Topics: {', '.join(item.topics)}")
    return "\n".join(lines)


def compose_document(item: Item, token_budget: int = DEFAULT_TOKEN_BUDGET) -> str:
    """Build the text embedded for ``item``.

    Metadata is kept whole; the README gets whatever room is left, split 60/40
    between head and tail. The composed document goes through ``fit`` once more.
    """
    metadata = _metadata_block(item)
    remaining = max_chars(token_budget) - len(metadata) - FORMAT_RESERVE_CHARS

    readme = item.content or MISSING_README
    if remaining <= 0:
        readme = ""
    elif len(readme) > remaining:
        readme = _head_tail(
            readme,
            math.floor(remaining * 0.6),
            math.floor(remaining * 0.4),
            README_TRUNCATION_MARKER,
        )

    return fit(f"{metadata}\n\nREADME:\n{readme}", token_budget)
