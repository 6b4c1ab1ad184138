"""Normalize OPDS 2.0 (JSON) catalog documents."""

from __future__ import annotations

import json
import logging
import xml.etree.ElementTree as ET
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from .errors import FeedParseError, snippet_of
from .feeds import (
    IMAGE_RELS,
    PAGINATION_RELS,
    SUBSECTION_RELS,
    NavigationCollector,
    choose_acquisition,
    format_for_mime,
    is_book_type,
    is_open_access_rel,
    merge_entries,
    mime_of,
    resolve_href,
    strip_html,
    unique,
)
from .models import (
    AcquisitionFormat,
    Category,
    CatalogEntry,
    Collection,
    FacetGroup,
    FacetLink,
    Pagination,
    ParsedFeed,
    SearchDescriptor,
)
from .publication import label_for_schema_type

logger = logging.getLogger(__name__)

_NAVIGATION_LINK_RELS = {"collection", "related", "section"} | SUBSECTION_RELS


def as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def link_rels(link: Mapping[str, Any]) -> List[str]:
    return [str(rel).strip() for rel in as_list(link.get("rel")) if rel]


def _has_rel(link: Mapping[str, Any], wanted: str) -> bool:
    return any(rel.lower() == wanted for rel in link_rels(link))


def _first_string(value: Any) -> Optional[str]:
    for item in as_list(value):
        if isinstance(item, str) and item.strip():
            return item.strip()
        if isinstance(item, Mapping):
            for key in ("value", "name", "@value"):
                candidate = item.get(key)
                if isinstance(candidate, str) and candidate.strip():
                    return candidate.strip()
    return None


def _normalize_names(value: Any) -> List[str]:
    """Flatten the string | {name} | list contributor shapes to plain names."""
    names: List[str] = []
    for item in as_list(value):
        if isinstance(item, str):
            name = item.strip()
        elif isinstance(item, Mapping):
            raw = item.get("name")
            if isinstance(raw, Mapping):
                # Localized names: {"en": "...", "fr": "..."}
                raw = next((text for text in raw.values() if isinstance(text, str)), None)
            name = str(raw).strip() if raw else ""
        else:
            continue
        if name:
            names.append(name)
    return names


def _title_of(metadata: Mapping[str, Any]) -> Optional[str]:
    title = metadata.get("title")
    if isinstance(title, Mapping):
        title = next((text for text in title.values() if isinstance(text, str)), None)
    if isinstance(title, str) and title.strip():
        return title.strip()
    return None


def _links_from_xml_string(payload: str) -> List[Dict[str, Any]]:
    try:
        root = ET.fromstring(f"<links>{payload}</links>")
    except ET.ParseError:
        logger.debug("Ignoring unparseable embedded link markup")
        return []
    links: List[Dict[str, Any]] = []
    for node in root.iter():
        if node.tag.rsplit("}", 1)[-1] != "link":
            continue
        links.append({key.rsplit("}", 1)[-1]: value for key, value in node.attrib.items()})
    return links


def _publication_links(publication: Mapping[str, Any]) -> List[Mapping[str, Any]]:
    raw = publication.get("links")
    if raw is None:
        properties = publication.get("properties")
        if isinstance(properties, Mapping):
            raw = properties.get("links") or properties.get("link") or properties.get("acquisitions")
    if isinstance(raw, str) and raw.strip().startswith("<"):
        return _links_from_xml_string(raw)
    return [link for link in as_list(raw) if isinstance(link, Mapping)]


def _indirect_chain(value: Any) -> List[str]:
    fallback: List[str] = []
    for item in as_list(value):
        if not isinstance(item, Mapping):
            continue
        nested = item.get("child") or item.get("indirectAcquisition")
        chain = [text for text in [item.get("type")] + _indirect_chain(nested) if isinstance(text, str) and text]
        if any(is_book_type(text) for text in chain):
            return chain
        if not fallback:
            fallback = chain
    return fallback


def link_chain(link: Mapping[str, Any]) -> List[str]:
    properties = link.get("properties")
    source = link.get("indirectAcquisition")
    if source is None and isinstance(properties, Mapping):
        source = properties.get("indirectAcquisition")
    return _indirect_chain(source)


def link_availability(link: Mapping[str, Any]) -> Optional[str]:
    properties = link.get("properties")
    if not isinstance(properties, Mapping):
        return None
    availability = properties.get("availability")
    if isinstance(availability, Mapping):
        state = availability.get("state") or availability.get("status")
        if isinstance(state, str) and state.strip():
            return state.strip().lower()
    return None


def _image_href(publication: Mapping[str, Any], metadata: Mapping[str, Any], base_url: str) -> Optional[str]:
    for source in (publication.get("images"), metadata.get("image")):
        for image in as_list(source):
            if isinstance(image, str):
                return resolve_href(base_url, image)
            if isinstance(image, Mapping):
                href = image.get("href") or image.get("url")
                if href:
                    return resolve_href(base_url, str(href))
    for link in _publication_links(publication):
        if any(rel.lower() in IMAGE_RELS for rel in link_rels(link)) and link.get("href"):
            return resolve_href(base_url, str(link["href"]))
    return None


def _collections(publication: Mapping[str, Any], metadata: Mapping[str, Any], base_url: str) -> List[Collection]:
    collections: List[Collection] = []
    belongs_to = metadata.get("belongsTo")
    if isinstance(belongs_to, Mapping):
        for item in as_list(belongs_to.get("collection")):
            if not isinstance(item, Mapping):
                continue
            name = _normalize_names(item)
            href = next(
                (link.get("href") for link in as_list(item.get("links")) if isinstance(link, Mapping) and link.get("href")),
                None,
            )
            resolved = resolve_href(base_url, href)
            if name and resolved:
                collections.append(Collection(title=name[0], href=resolved))
    for link in _publication_links(publication):
        if not _has_rel(link, "collection") or not link.get("href"):
            continue
        resolved = resolve_href(base_url, str(link["href"]))
        title = str(link.get("title") or "").strip() or resolved
        if resolved:
            collections.append(Collection(title=title, href=resolved))
    return unique(collections)


def _subjects(metadata: Mapping[str, Any]) -> List[Category]:
    categories: List[Category] = []
    for item in as_list(metadata.get("subject")):
        if isinstance(item, str) and item.strip():
            categories.append(Category(term=item.strip(), label=item.strip()))
        elif isinstance(item, Mapping):
            names = _normalize_names(item)
            code = item.get("code")
            term = str(code).strip() if code else (names[0] if names else "")
            if term:
                categories.append(Category(term=term, label=names[0] if names else None, scheme=item.get("scheme")))
    return unique(categories)


def _parse_publication(publication: Mapping[str, Any], base_url: str) -> Optional[CatalogEntry]:
    metadata = publication.get("metadata")
    if not isinstance(metadata, Mapping):
        metadata = {}
    links = _publication_links(publication)
    title = _title_of(metadata)
    if not title and not links:
        return None

    candidates: List[Dict[str, Any]] = []
    for link in links:
        rels = link_rels(link)
        if not link.get("href") or not any("acquisition" in rel for rel in rels):
            continue
        chain = link_chain(link)
        effective = link.get("type")
        if not is_book_type(effective):
            effective = next((value for value in reversed(chain) if is_book_type(value)), effective)
        candidates.append(
            {
                "href": resolve_href(base_url, str(link["href"])),
                "type": link.get("type"),
                "effective_type": effective,
                "chain": chain,
                "open_access": any(is_open_access_rel(rel) for rel in rels),
                "availability": link_availability(link),
            }
        )

    chosen = choose_acquisition(candidates)
    download_url = ""
    entry_format: Optional[str] = None
    media_type: Optional[str] = None
    effective_type: Optional[str] = None
    chain: List[str] = []
    if chosen:
        download_url = str(chosen["href"])
        media_type = chosen["type"]
        effective_type = chosen["effective_type"]
        chain = list(chosen["chain"])
        entry_format = format_for_mime(effective_type) or mime_of(effective_type) or None
    else:
        for content in as_list(publication.get("content")):
            if isinstance(content, Mapping) and content.get("href"):
                download_url = resolve_href(base_url, str(content["href"])) or ""
                media_type = content.get("type")
                entry_format = format_for_mime(media_type) or mime_of(media_type) or None
                break

    schema_type = metadata.get("@type") or metadata.get("type")
    schema_type = schema_type if isinstance(schema_type, str) and schema_type.strip() else None
    if schema_type and schema_type.rstrip("/").lower().endswith("audiobook"):
        entry_format = "AUDIOBOOK"

    authors = _normalize_names(metadata.get("author"))
    categories = _subjects(metadata)
    identifier = _first_string(metadata.get("identifier"))
    description = metadata.get("description")

    return CatalogEntry(
        title=title or "Untitled",
        author=authors[0] if authors else "Unknown Author",
        contributors=authors[1:],
        cover_image=_image_href(publication, metadata, base_url),
        download_url=download_url,
        summary=strip_html(description) if isinstance(description, str) else None,
        format=entry_format,
        media_type=media_type,
        acquisition_media_type=effective_type,
        acquisition_chain=chain,
        alternative_formats=[
            AcquisitionFormat(
                url=str(item["href"]),
                media_type=item["effective_type"],
                format=format_for_mime(item["effective_type"]),
            )
            for item in candidates
            if item is not chosen and item["href"] != download_url
        ],
        identifier=identifier,
        provider_id=identifier,
        is_open_access=bool(chosen and chosen["open_access"]),
        availability_status=chosen["availability"] if chosen else None,
        collections=_collections(publication, metadata, base_url),
        categories=categories,
        subjects=unique(category.label or category.term for category in categories),
        publisher=next(iter(_normalize_names(metadata.get("publisher"))), None),
        publication_date=_first_string(metadata.get("published")),
        language=_first_string(metadata.get("language")),
        schema_org_type=schema_type,
        publication_type_label=label_for_schema_type(schema_type),
    )


def _catalog_link(entry: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
    links = [link for link in as_list(entry.get("links")) if isinstance(link, Mapping) and link.get("href")]
    for link in links:
        if any("catalog" in rel.lower() for rel in link_rels(link)):
            return link
    for link in links:
        if "opds" in str(link.get("type") or ""):
            return link
    return links[0] if links else None


def _add_navigation_items(items: Iterable[Any], base_url: str, nav: NavigationCollector) -> None:
    for item in items:
        if not isinstance(item, Mapping) or not item.get("href"):
            continue
        rels = link_rels(item)
        rel = "collection" if any(value.lower() == "collection" for value in rels) else "navigation"
        nav.add(str(item.get("title") or ""), resolve_href(base_url, str(item["href"])), rel, item.get("type"))


def _parse_facets(payload: Mapping[str, Any], base_url: str) -> List[FacetGroup]:
    groups: List[FacetGroup] = []
    for facet in as_list(payload.get("facets")):
        if not isinstance(facet, Mapping):
            continue
        metadata = facet.get("metadata") if isinstance(facet.get("metadata"), Mapping) else {}
        group = FacetGroup(title=_title_of(metadata) or "Filters")
        for link in as_list(facet.get("links")):
            if not isinstance(link, Mapping) or not link.get("href"):
                continue
            properties = link.get("properties") if isinstance(link.get("properties"), Mapping) else {}
            count = properties.get("numberOfItems")
            group.links.append(
                FacetLink(
                    title=str(link.get("title") or link["href"]),
                    url=resolve_href(base_url, str(link["href"])) or str(link["href"]),
                    active=_has_rel(link, "self"),
                    count=count if isinstance(count, int) else None,
                )
            )
        groups.append(group)
    return groups


def parse_opds2(payload: Union[Mapping[str, Any], str, bytes], base_url: str) -> ParsedFeed:
    """Parse an OPDS 2 feed, or a single publication document, into a :class:`ParsedFeed`."""
    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except ValueError as exc:
            raise FeedParseError(f"Unable to parse OPDS 2 feed: {exc}", snippet_of(payload)) from exc
    if not isinstance(payload, Mapping):
        raise FeedParseError("OPDS 2 feed must be a JSON object", snippet_of(repr(payload)))

    nav = NavigationCollector()
    search: Optional[SearchDescriptor] = None
    pagination = Pagination()

    for link in as_list(payload.get("links")):
        if not isinstance(link, Mapping) or not link.get("href"):
            continue
        href = resolve_href(base_url, str(link["href"])) or ""
        title = str(link.get("title") or "").strip() or None
        for rel in (value.lower() for value in link_rels(link)):
            if rel == "search":
                if search is None:
                    search = SearchDescriptor(description_url=href, type=link.get("type"), title=title)
            elif rel == "start":
                nav.add("Home", href, "start", link.get("type"))
            elif rel == "up":
                nav.add(title or "Up", href, "up", link.get("type"))
            elif rel in PAGINATION_RELS:
                setattr(pagination, PAGINATION_RELS[rel], href)
            elif title and rel in _NAVIGATION_LINK_RELS:
                nav.add(title, href, "collection" if rel == "collection" else "navigation", link.get("type"))

    _add_navigation_items(as_list(payload.get("navigation")), base_url, nav)
    for catalog in as_list(payload.get("catalogs")):
        if not isinstance(catalog, Mapping):
            continue
        link = _catalog_link(catalog)
        if link is None:
            continue
        metadata = catalog.get("metadata") if isinstance(catalog.get("metadata"), Mapping) else {}
        title = _title_of(metadata) or str(catalog.get("title") or "Catalog")
        nav.add(title, resolve_href(base_url, str(link["href"])), "navigation", link.get("type"))

    publications: List[Any] = list(as_list(payload.get("publications")))
    for group in as_list(payload.get("groups")):
        if not isinstance(group, Mapping):
            continue
        _add_navigation_items(as_list(group.get("navigation")), base_url, nav)
        publications.extend(as_list(group.get("publications")))
    if not publications and isinstance(payload.get("metadata"), Mapping) and "publications" not in payload:
        # A bare publication document.
        if any("acquisition" in rel for link in _publication_links(payload) for rel in link_rels(link)):
            publications.append(payload)

    books: List[CatalogEntry] = []
    for publication in publications:
        if not isinstance(publication, Mapping):
            continue
        entry = _parse_publication(publication, base_url)
        if entry is not None:
            books.append(entry)

    feed_metadata = payload.get("metadata") if isinstance(payload.get("metadata"), Mapping) else {}
    return ParsedFeed(
        books=merge_entries(books),
        nav_links=nav.links(),
        search=search,
        title=_title_of(feed_metadata),
        pagination=pagination,
        facet_groups=_parse_facets(payload, base_url),
        version="2",
    )
