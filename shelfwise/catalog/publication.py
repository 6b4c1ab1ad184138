from __future__ import annotations

import re
from collections import OrderedDict
from typing import Dict, Iterable, List, Optional

from .models import CatalogEntry

ALL_PUBLICATIONS = "all"

_SCHEMA_ORG_LABELS = {
    "book": "Book",
    "audiobook": "Audiobook",
    "photograph": "Photograph",
    "drawing": "Drawing",
    "sculpture": "Sculpture",
    "poster": "Poster",
    "painting": "Painting",
    "image": "Image",
    "imageobject": "Image Object",
    "article": "Article",
    "periodical": "Periodical",
    "shortstory": "Short Story",
    "map": "Map",
    "manuscript": "Manuscript",
    "sheetmusic": "Sheet Music",
    "audio": "Audio",
    "video": "Video",
    "chapter": "Chapter",
    "musicalbum": "Music Album",
    "digitaldocument": "Digital Document",
}

_CAMEL_BOUNDARY_RE = re.compile(r"([a-z0-9])([A-Z])")
_NON_SLUG_RE = re.compile(r"[^a-zA-Z0-9]+")


def _final_segment(value: Optional[str]) -> str:
    text = (value or "").strip()
    if not text:
        return ""
    segments = [part for part in re.split(r"[/#:]", text) if part]
    return segments[-1] if segments else text


def slugify_type(value: Optional[str]) -> Optional[str]:
    """``https://schema.org/ImageObject`` -> ``image-object``."""
    segment = _final_segment(value)
    slug = _CAMEL_BOUNDARY_RE.sub(r"\1-\2", segment)
    slug = _NON_SLUG_RE.sub("-", slug).strip("-").lower()
    return slug or None


def label_for_schema_type(value: Optional[str]) -> Optional[str]:
    """Known display label for a schema.org type, or ``None``."""
    segment = _final_segment(value).lower()
    return _SCHEMA_ORG_LABELS.get(segment)


def publication_type_key(entry: CatalogEntry) -> Optional[str]:
    return (
        slugify_type(entry.schema_org_type)
        or slugify_type(entry.publication_type_label)
        or ("audiobook" if (entry.format or "").upper() == "AUDIOBOOK" else None)
    )


def publication_type_label(entry: CatalogEntry, key: str) -> str:
    label = (entry.publication_type_label or "").strip()
    if label:
        return label
    return " ".join(part.capitalize() for part in key.split("-"))


def get_available_publication_types(entries: Iterable[CatalogEntry]) -> List[Dict[str, str]]:
    options: "OrderedDict[str, str]" = OrderedDict()
    for entry in entries:
        key = publication_type_key(entry)
        if not key or key in options:
            continue
        options[key] = publication_type_label(entry, key)
    return [{"key": key, "label": label} for key, label in options.items()]


def filter_books_by_publication(entries: Iterable[CatalogEntry], key: Optional[str]) -> List[CatalogEntry]:
    items = list(entries)
    wanted = (key or "").strip().lower()
    if not wanted or wanted == ALL_PUBLICATIONS:
        return items
    return [entry for entry in items if publication_type_key(entry) == wanted]
