from __future__ import annotations

import re
from collections import OrderedDict
from typing import Dict, Iterable, List, Optional, Sequence, Set

from .models import CatalogEntry, Category, NavigationLink

MEDIA_EBOOK = "ebook"
MEDIA_AUDIOBOOK = "audiobook"
ALL = "all"

AUDIENCE_ADULT = "adult"
AUDIENCE_YOUNG_ADULT = "young-adult"
AUDIENCE_CHILDREN = "children"
FICTION = "fiction"
NON_FICTION = "non-fiction"

_AUDIENCE_SCHEMES = ("audience", "target-age")
_FICTION_SCHEMES = ("fiction", "genre", "bisac")
_FICTION_GENRES = (
    "romance",
    "mystery",
    "thriller",
    "fantasy",
    "science fiction",
    "horror",
    "adventure",
    "literary",
    "drama",
    "suspense",
)
_NON_FICTION_GENRES = (
    "biography",
    "history",
    "science",
    "philosophy",
    "religion",
    "self-help",
    "health",
    "business",
    "politics",
    "economics",
)
_YA_RE = re.compile(r"\bya\b")
_NAVIGATION_COLLECTION_RELS = {"collection", "subsection"}


def media_mode(entry: CatalogEntry) -> str:
    if (entry.format or "").upper() == "AUDIOBOOK":
        return MEDIA_AUDIOBOOK
    return MEDIA_EBOOK


def get_available_media_modes(entries: Iterable[CatalogEntry]) -> List[str]:
    return list(OrderedDict.fromkeys(media_mode(entry) for entry in entries))


def filter_books_by_media(entries: Iterable[CatalogEntry], mode: Optional[str]) -> List[CatalogEntry]:
    items = list(entries)
    if not mode or mode == ALL:
        return items
    return [entry for entry in items if media_mode(entry) == mode]


def filter_books_by_availability(entries: Iterable[CatalogEntry], status: Optional[str]) -> List[CatalogEntry]:
    """Keep entries with the given status; ``available`` also keeps entries without one."""
    items = list(entries)
    if not status or status == ALL:
        return items
    wanted = status.lower()
    if wanted == "available":
        return [entry for entry in items if (entry.availability_status or "available") != "unavailable"]
    return [entry for entry in items if (entry.availability_status or "") == wanted]


def get_available_distributors(entries: Iterable[CatalogEntry]) -> List[Dict[str, str]]:
    distributors: "OrderedDict[str, str]" = OrderedDict()
    for entry in entries:
        name = (entry.distributor or "").strip()
        if name and name.casefold() not in distributors:
            distributors[name.casefold()] = name
    return [{"key": key, "label": label} for key, label in distributors.items()]


def filter_books_by_distributor(entries: Iterable[CatalogEntry], distributor: Optional[str]) -> List[CatalogEntry]:
    items = list(entries)
    if not distributor or distributor == ALL:
        return items
    wanted = distributor.strip().casefold()
    return [entry for entry in items if (entry.distributor or "").strip().casefold() == wanted]


def _audiences_in(text: Optional[str]) -> Set[str]:
    lowered = (text or "").lower()
    found: Set[str] = set()
    if ("adult" in lowered and "young" not in lowered) or "18+" in lowered:
        found.add(AUDIENCE_ADULT)
    if "young adult" in lowered or "young-adult" in lowered or "teen" in lowered or _YA_RE.search(lowered):
        found.add(AUDIENCE_YOUNG_ADULT)
    if any(word in lowered for word in ("child", "juvenile", "kids")):
        found.add(AUDIENCE_CHILDREN)
    return found


def _has_scheme(category: Category, markers: Sequence[str]) -> bool:
    scheme = (category.scheme or "").lower()
    return any(marker in scheme for marker in markers)


def entry_audiences(entry: CatalogEntry) -> Optional[Set[str]]:
    """Audiences an entry declares, or ``None`` when it carries no audience information.

    Audience-scheme categories win over subjects: an entry with such categories is
    judged on them alone, even when none of them names a known audience.
    """
    audience_categories = [category for category in entry.categories if _has_scheme(category, _AUDIENCE_SCHEMES)]
    found: Set[str] = set()
    if audience_categories:
        for category in audience_categories:
            found |= _audiences_in(category.label) | _audiences_in(category.term)
        return found
    for subject in entry.subjects:
        found |= _audiences_in(subject)
    return found or None


def filter_books_by_audience(entries: Iterable[CatalogEntry], audience: Optional[str]) -> List[CatalogEntry]:
    """Entries without audience information count as adult."""
    items = list(entries)
    if not audience or audience == ALL:
        return items
    kept = []
    for entry in items:
        audiences = entry_audiences(entry)
        if audiences is None:
            if audience == AUDIENCE_ADULT:
                kept.append(entry)
        elif audience in audiences:
            kept.append(entry)
    return kept


def get_available_audiences(entries: Iterable[CatalogEntry]) -> List[str]:
    found: Set[str] = set()
    for entry in entries:
        found |= entry_audiences(entry) or set()
    return [ALL] + [mode for mode in (AUDIENCE_ADULT, AUDIENCE_YOUNG_ADULT, AUDIENCE_CHILDREN) if mode in found]


def _fiction_verdict(text: Optional[str]) -> Optional[bool]:
    lowered = (text or "").lower()
    if "non-fiction" in lowered or "nonfiction" in lowered:
        return False
    if "fiction" in lowered:
        return True
    if any(genre in lowered for genre in _NON_FICTION_GENRES):
        return False
    if any(genre in lowered for genre in _FICTION_GENRES):
        return True
    return None


def is_fiction(entry: CatalogEntry) -> Optional[bool]:
    """``True``/``False`` from the first category or subject that decides, else ``None``."""
    for category in entry.categories:
        if not _has_scheme(category, _FICTION_SCHEMES):
            continue
        verdict = _fiction_verdict(category.label)
        if verdict is None:
            verdict = _fiction_verdict(category.term)
        if verdict is not None:
            return verdict
    for subject in entry.subjects:
        verdict = _fiction_verdict(subject)
        if verdict is not None:
            return verdict
    return None


def filter_books_by_fiction(entries: Iterable[CatalogEntry], mode: Optional[str]) -> List[CatalogEntry]:
    """Unclassified entries are kept under both fiction modes."""
    items = list(entries)
    if not mode or mode == ALL:
        return items
    wanted = mode == FICTION
    kept = []
    for entry in items:
        verdict = is_fiction(entry)
        if verdict is None or verdict == wanted:
            kept.append(entry)
    return kept


def get_available_fiction_modes(entries: Iterable[CatalogEntry]) -> List[str]:
    verdicts = {is_fiction(entry) for entry in entries}
    modes = [ALL]
    if True in verdicts:
        modes.append(FICTION)
    if False in verdicts:
        modes.append(NON_FICTION)
    return modes


def is_category_group(title: Optional[str], href: Optional[str]) -> bool:
    """Grouping lanes (``/groups/`` URLs, fiction or audience buckets) rather than feed collections."""
    lowered = (title or "").strip().lower()
    return (
        "/groups/" in (href or "")
        or lowered in {"fiction", "nonfiction"}
        or "young adult" in lowered
        or "children" in lowered
    )


def _navigation_collections(nav_links: Iterable[NavigationLink]) -> List[NavigationLink]:
    return [link for link in nav_links if link.rel in _NAVIGATION_COLLECTION_RELS]


def filter_books_by_collection(
    entries: Iterable[CatalogEntry],
    collection: Optional[str],
    nav_links: Iterable[NavigationLink] = (),
) -> List[CatalogEntry]:
    """Keep entries belonging to ``collection``.

    A collection that is also a navigation link is browsed by following the link,
    so the entries are returned unfiltered in that case.
    """
    items = list(entries)
    if not collection or collection == ALL:
        return items
    if any(link.title == collection for link in _navigation_collections(nav_links)):
        return items
    return [entry for entry in items if any(item.title == collection for item in entry.collections)]


def _collection_titles(
    entries: Iterable[CatalogEntry],
    nav_links: Iterable[NavigationLink],
    categories: bool,
) -> List[str]:
    titles: Set[str] = set()
    for entry in entries:
        for item in entry.collections:
            if item.title and is_category_group(item.title, item.href) == categories:
                titles.add(item.title)
    for link in _navigation_collections(nav_links):
        if link.title and is_category_group(link.title, link.url) == categories:
            titles.add(link.title)
    return sorted(titles)


def get_available_categories(entries: Iterable[CatalogEntry], nav_links: Iterable[NavigationLink] = ()) -> List[str]:
    return _collection_titles(entries, nav_links, categories=True)


def get_available_collections(entries: Iterable[CatalogEntry], nav_links: Iterable[NavigationLink] = ()) -> List[str]:
    return _collection_titles(entries, nav_links, categories=False)
