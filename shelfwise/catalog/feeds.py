"""Helpers shared by the OPDS 1 and OPDS 2 normalizers."""

from __future__ import annotations

import html
import re
from collections import OrderedDict
from pathlib import PurePosixPath
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar
from urllib.parse import urljoin, urlparse

from .models import CatalogEntry, NavigationLink

ACQUISITION_REL = "http://opds-spec.org/acquisition"
OPEN_ACCESS_REL = "http://opds-spec.org/acquisition/open-access"
IMAGE_RELS = {
    "http://opds-spec.org/image",
    "http://opds-spec.org/image/thumbnail",
    "http://opds-spec.org/cover",
    "http://opds-spec.org/thumbnail",
    "x-stanza-cover-image",
    "x-stanza-cover-image-thumbnail",
    "cover",
    "thumbnail",
    "image",
}
SUBSECTION_RELS = {"subsection", "http://opds-spec.org/subsection"}
PAGINATION_RELS = {"first": "first", "previous": "previous", "prev": "previous", "next": "next", "last": "last"}

EPUB_MIME_TYPES = {
    "application/epub+zip",
    "application/zip",
    "application/x-zip",
    "application/x-zip-compressed",
}
PDF_MIME_TYPES = {"application/pdf"}
TERMINAL_MIME_TYPES = {"application/epub+zip", "application/pdf", "application/octet-stream"}
SUPPORTED_DOWNLOAD_EXTENSIONS = {".epub", ".pdf"}

_TAG_STRIP_RE = re.compile(r"<[^>]+>")
_KIND_RE = re.compile(r"kind\s*=\s*\"?(navigation|acquisition)", re.IGNORECASE)

T = TypeVar("T")


def mime_of(value: Optional[str]) -> str:
    """Return the bare, lowercase MIME type without parameters."""
    return (value or "").split(";")[0].strip().lower()


def format_for_mime(value: Optional[str]) -> Optional[str]:
    mime = mime_of(value)
    if not mime:
        return None
    if "epub" in mime:
        return "EPUB"
    if "pdf" in mime:
        return "PDF"
    if "audiobook" in mime or mime.startswith("audio/"):
        return "AUDIOBOOK"
    if "html" in mime:
        return "Web"
    return None


def is_book_type(value: Optional[str]) -> bool:
    return format_for_mime(value) in {"EPUB", "PDF"}


def has_supported_extension(href: Optional[str]) -> bool:
    parsed_path = urlparse((href or "").strip()).path or ""
    return PurePosixPath(parsed_path).suffix.lower() in SUPPORTED_DOWNLOAD_EXTENSIONS


def catalog_kind(value: Optional[str]) -> Optional[str]:
    """Return ``navigation`` or ``acquisition`` for OPDS catalog MIME types carrying ``kind=``."""
    raw = (value or "").lower()
    if "atom+xml" not in raw and "opds-catalog" not in raw and "opds+json" not in raw:
        return None
    match = _KIND_RE.search(raw)
    return match.group(1) if match else None


def is_catalog_type(value: Optional[str]) -> bool:
    raw = (value or "").lower()
    if "type=entry" in raw:
        return False
    return "opds-catalog" in raw or "atom+xml" in raw or mime_of(raw) == "application/opds+json"


def is_acquisition_rel(rel: Optional[str]) -> bool:
    return (rel or "").strip().startswith(ACQUISITION_REL)


def is_open_access_rel(rel: Optional[str]) -> bool:
    return (rel or "").strip() == OPEN_ACCESS_REL or (rel or "").endswith("/open-access")


def strip_html(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    cleaned = _TAG_STRIP_RE.sub("", value)
    return html.unescape(cleaned).strip() or None


def resolve_href(base_url: str, href: Optional[str]) -> Optional[str]:
    cleaned = (href or "").strip()
    if not cleaned:
        return None
    return urljoin(base_url, cleaned) if base_url else cleaned


def unique(items: Iterable[T]) -> List[T]:
    seen: "OrderedDict[T, None]" = OrderedDict()
    for item in items:
        if item not in seen:
            seen[item] = None
    return list(seen)


def merge_entry(existing: CatalogEntry, incoming: CatalogEntry) -> CatalogEntry:
    """Fold ``incoming`` into ``existing``: scalars keep their first value, lists are unioned."""
    for name in (
        "cover_image",
        "summary",
        "format",
        "media_type",
        "acquisition_media_type",
        "provider_id",
        "distributor",
        "availability_status",
        "publisher",
        "publication_date",
        "language",
        "schema_org_type",
        "publication_type_label",
    ):
        if getattr(existing, name) is None and getattr(incoming, name) is not None:
            setattr(existing, name, getattr(incoming, name))
    if not existing.download_url and incoming.download_url:
        existing.download_url = incoming.download_url
        existing.acquisition_chain = list(incoming.acquisition_chain)
    if not existing.acquisition_chain and incoming.acquisition_chain:
        existing.acquisition_chain = list(incoming.acquisition_chain)
    existing.is_open_access = existing.is_open_access or incoming.is_open_access
    existing.contributors = unique([*existing.contributors, *incoming.contributors])
    existing.collections = unique([*existing.collections, *incoming.collections])
    existing.categories = unique([*existing.categories, *incoming.categories])
    existing.subjects = unique([*existing.subjects, *incoming.subjects])
    known_urls = {existing.download_url} | {item.url for item in existing.alternative_formats}
    for item in incoming.alternative_formats:
        if item.url not in known_urls:
            existing.alternative_formats.append(item)
            known_urls.add(item.url)
    return existing


def merge_entries(entries: Sequence[CatalogEntry]) -> List[CatalogEntry]:
    """Merge entries sharing a merge key; entries without one are kept as they are."""
    merged: List[CatalogEntry] = []
    positions: Dict[str, int] = {}
    for entry in entries:
        key = entry.merge_key
        if key is None:
            merged.append(entry)
        elif key in positions:
            merge_entry(merged[positions[key]], entry)
        else:
            positions[key] = len(merged)
            merged.append(entry)
    return merged


class NavigationCollector:
    """Ordered navigation links, de-duplicated on ``(rel, url)``."""

    def __init__(self) -> None:
        self._links: "OrderedDict[Tuple[str, str], NavigationLink]" = OrderedDict()

    def add(
        self,
        title: Optional[str],
        url: Optional[str],
        rel: str,
        link_type: Optional[str] = None,
        source: Optional[str] = "navigation",
    ) -> None:
        if not url:
            return
        key = (rel, url)
        if key in self._links:
            return
        self._links[key] = NavigationLink(
            title=(title or "").strip() or url,
            url=url,
            rel=rel,
            type=link_type,
            source=source,
        )

    def links(self) -> List[NavigationLink]:
        return list(self._links.values())


def choose_acquisition(candidates: Sequence[Dict[str, object]]) -> Optional[Dict[str, object]]:
    """Pick the preferred acquisition link.

    Each candidate is a mapping with ``open_access`` (bool) and ``effective_type`` (str).
    Preference: open-access EPUB, open-access PDF, EPUB, PDF, anything not HTML, first.
    """
    if not candidates:
        return None

    def matches(candidate: Dict[str, object], wanted: str, open_only: bool) -> bool:
        if open_only and not candidate.get("open_access"):
            return False
        return format_for_mime(str(candidate.get("effective_type") or "")) == wanted

    for wanted, open_only in (("EPUB", True), ("PDF", True), ("EPUB", False), ("PDF", False)):
        for candidate in candidates:
            if matches(candidate, wanted, open_only):
                return candidate
    for candidate in candidates:
        if format_for_mime(str(candidate.get("effective_type") or "")) != "Web":
            return candidate
    return candidates[0]
