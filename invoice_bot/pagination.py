"""Splitting line items across pages, and the limits that follow from it."""

from __future__ import annotations

from typing import List, Sequence, TypeVar

from .layout import FIRST_PAGE_CAPACITY, LAST_PAGE_CAPACITY, MID_PAGE_CAPACITY

T = TypeVar("T")


def estimate_page_count(item_count: int) -> int:
    if item_count <= FIRST_PAGE_CAPACITY:
        return 1
    remaining = item_count - FIRST_PAGE_CAPACITY
    if remaining <= LAST_PAGE_CAPACITY:
        return 2
    mid_items = remaining - LAST_PAGE_CAPACITY
    mid_pages = (mid_items + MID_PAGE_CAPACITY - 1) // MID_PAGE_CAPACITY
    return 2 + mid_pages


def max_items_for_pages(page_count: int) -> int:
    if page_count <= 1:
        return FIRST_PAGE_CAPACITY
    return FIRST_PAGE_CAPACITY + LAST_PAGE_CAPACITY + MID_PAGE_CAPACITY * (page_count - 2)


def page_slices(items: Sequence[T]) -> List[Sequence[T]]:
    """Split items into per-page chunks.

    The first page holds the invoice header, so it has its own capacity; the
    last page must leave room for the totals block. A list that fits on the
    first page yields a single chunk.
    """
    if len(items) <= FIRST_PAGE_CAPACITY:
        return [items]

    pages: List[Sequence[T]] = [items[:FIRST_PAGE_CAPACITY]]
    cursor = FIRST_PAGE_CAPACITY
    last_page_start = len(items) - LAST_PAGE_CAPACITY
    while cursor < last_page_start:
        take = min(MID_PAGE_CAPACITY, last_page_start - cursor)
        pages.append(items[cursor : cursor + take])
        cursor += take
    pages.append(items[cursor:])
    return pages
