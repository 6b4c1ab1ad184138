"""Arrange a catalog page into category lanes or collection groups for display."""

from __future__ import annotations

import re
from collections import OrderedDict
from typing import Iterable, List, Optional, Sequence, Tuple

from .filters import (
    ALL,
    filter_books_by_audience,
    filter_books_by_collection,
    filter_books_by_fiction,
    filter_books_by_media,
)
from .models import (
    CatalogEntry,
    Category,
    CategoryLane,
    Collection,
    CollectionCatalog,
    CollectionGroup,
    GroupedCatalog,
    NavigationLink,
    Pagination,
)

SUBJECT_SCHEME = "http://palace.io/subjects"
COLLECTION_SCHEME = "http://opds-spec.org/collection"
MODE_SUBJECT = "subject"
MODE_FLAT = "flat"

_WHITESPACE_RE = re.compile(r"\s+")

LaneKey = Tuple[Optional[str], Optional[str]]


def _lane_key(category: Category) -> LaneKey:
    return (category.scheme, category.label)


def _subject_category(subject: str) -> Category:
    return Category(term=_WHITESPACE_RE.sub("-", subject.lower()), label=subject, scheme=SUBJECT_SCHEME)


def extract_collection_navigation(entries: Iterable[CatalogEntry]) -> List[Collection]:
    """Unique collections across ``entries``, keyed on their href."""
    found: "OrderedDict[str, Collection]" = OrderedDict()
    for entry in entries:
        for collection in entry.collections:
            found.setdefault(collection.href, collection)
    return list(found.values())


def group_books_by_mode(
    entries: Sequence[CatalogEntry],
    nav_links: Sequence[NavigationLink],
    pagination: Optional[Pagination] = None,
    mode: str = MODE_SUBJECT,
    *,
    audience: str = ALL,
    fiction: str = ALL,
    media: str = ALL,
    collection: str = ALL,
) -> GroupedCatalog:
    """Filter ``entries`` and lay them out in category lanes.

    Entries with categories are laned by ``(scheme, label)``. In ``subject`` mode an
    entry without categories is laned by its subjects instead. Collection links are
    only offered at the root, that is while no collection is selected.
    """
    books = filter_books_by_media(entries, media)
    books = filter_books_by_fiction(books, fiction)
    books = filter_books_by_audience(books, audience)
    books = filter_books_by_collection(books, collection, nav_links)

    lanes: "OrderedDict[LaneKey, CategoryLane]" = OrderedDict()
    uncategorized: List[CatalogEntry] = []
    for book in books:
        categories = list(book.categories)
        if not categories and mode == MODE_SUBJECT:
            categories = [_subject_category(subject) for subject in book.subjects]
        for category in categories:
            lanes.setdefault(_lane_key(category), CategoryLane(category=category)).books.append(book)
        if not categories:
            uncategorized.append(book)

    at_root = not collection or collection == ALL
    collection_links = extract_collection_navigation(entries) if at_root else []
    return GroupedCatalog(
        books=books,
        nav_links=list(nav_links),
        pagination=pagination or Pagination(),
        category_lanes=list(lanes.values()),
        collection_links=collection_links,
        uncategorized_books=uncategorized,
    )


def group_books_by_categories(
    entries: Sequence[CatalogEntry],
    nav_links: Sequence[NavigationLink],
    pagination: Optional[Pagination] = None,
) -> GroupedCatalog:
    lanes: "OrderedDict[LaneKey, CategoryLane]" = OrderedDict()
    uncategorized: List[CatalogEntry] = []
    for book in entries:
        for category in book.categories:
            lanes.setdefault(_lane_key(category), CategoryLane(category=category)).books.append(book)
        if not book.categories:
            uncategorized.append(book)
    return GroupedCatalog(
        books=list(entries),
        nav_links=list(nav_links),
        pagination=pagination or Pagination(),
        category_lanes=list(lanes.values()),
        uncategorized_books=uncategorized,
    )


def _by_collection_title(entries: Iterable[CatalogEntry]):
    groups: "OrderedDict[str, CollectionGroup]" = OrderedDict()
    uncategorized: List[CatalogEntry] = []
    for book in entries:
        if not book.collections:
            uncategorized.append(book)
            continue
        for collection in book.collections:
            groups.setdefault(collection.title, CollectionGroup(collection=collection)).books.append(book)
    return list(groups.values()), uncategorized


def group_books_by_collections(
    entries: Sequence[CatalogEntry],
    nav_links: Sequence[NavigationLink],
    pagination: Optional[Pagination] = None,
) -> CollectionCatalog:
    groups, uncategorized = _by_collection_title(entries)
    return CollectionCatalog(
        books=list(entries),
        nav_links=list(nav_links),
        pagination=pagination or Pagination(),
        collections=groups,
        uncategorized_books=uncategorized,
    )


def group_books_by_collections_as_lanes(
    entries: Sequence[CatalogEntry],
    nav_links: Sequence[NavigationLink],
    pagination: Optional[Pagination] = None,
) -> GroupedCatalog:
    """Collections presented as category lanes; the lane term is the collection href."""
    groups, uncategorized = _by_collection_title(entries)
    lanes = [
        CategoryLane(
            category=Category(
                term=group.collection.href or _WHITESPACE_RE.sub("-", group.collection.title.lower()),
                label=group.collection.title,
                scheme=COLLECTION_SCHEME,
            ),
            books=group.books,
        )
        for group in groups
    ]
    # Last collection seen wins for each title.
    links: "OrderedDict[str, Collection]" = OrderedDict()
    for book in entries:
        for collection in book.collections:
            links[collection.title] = collection
    return GroupedCatalog(
        books=list(entries),
        nav_links=list(nav_links),
        pagination=pagination or Pagination(),
        category_lanes=lanes,
        collection_links=list(links.values()),
        uncategorized_books=uncategorized,
    )
