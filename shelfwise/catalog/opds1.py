"""Normalize OPDS 1.x (Atom) catalog documents."""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, Union

from .errors import FeedParseError, snippet_of
from .feeds import (
    IMAGE_RELS,
    PAGINATION_RELS,
    SUBSECTION_RELS,
    NavigationCollector,
    catalog_kind,
    format_for_mime,
    has_supported_extension,
    is_acquisition_rel,
    is_book_type,
    is_catalog_type,
    is_open_access_rel,
    merge_entries,
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

ATOM_NS = "http://www.w3.org/2005/Atom"
OPDS_NS = "http://opds-spec.org/2010/catalog"
DC_NS = "http://purl.org/dc/terms/"
DC_ELEMENTS_NS = "http://purl.org/dc/elements/1.1/"
SCHEMA_NS = "http://schema.org/"
THREAD_NS = "http://purl.org/syndication/thread/1.0"
NS = {
    "atom": ATOM_NS,
    "opds": OPDS_NS,
    "dc": DC_NS,
    "dcel": DC_ELEMENTS_NS,
    "schema": SCHEMA_NS,
    "thr": THREAD_NS,
}

FACET_REL = "http://opds-spec.org/facet"


@dataclass
class AtomLink:
    href: str
    rel: str
    type: Optional[str]
    title: Optional[str]
    node: ET.Element


def local_name(tag: object) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1].lower()


def _attribute(node: ET.Element, name: str) -> Optional[str]:
    wanted = name.lower()
    for key, value in node.attrib.items():
        if local_name(key) == wanted and value and value.strip():
            return value.strip()
    return None


def find_descendant_attribute(node: ET.Element, element: str, attribute: str) -> Optional[str]:
    wanted = element.lower()
    for child in node.iter():
        if child is node or local_name(child.tag) != wanted:
            continue
        value = _attribute(child, attribute)
        if value:
            return value
    return None


def _text(node: Optional[ET.Element]) -> Optional[str]:
    if node is None:
        return None
    text = "".join(node.itertext()).strip()
    return text or None


def _dc_text(node: ET.Element, name: str) -> Optional[str]:
    for prefix in ("dc", "dcel"):
        value = _text(node.find(f"{prefix}:{name}", NS))
        if value:
            return value
    return None


def extract_links(node: ET.Element, base_url: str) -> List[AtomLink]:
    links: List[AtomLink] = []
    for link in node.findall("atom:link", NS):
        href = resolve_href(base_url, link.attrib.get("href"))
        if not href:
            continue
        links.append(
            AtomLink(
                href=href,
                rel=(link.attrib.get("rel") or "alternate").strip(),
                type=link.attrib.get("type"),
                title=(link.attrib.get("title") or "").strip() or None,
                node=link,
            )
        )
    return links


def _indirect_chain(node: ET.Element) -> List[str]:
    """MIME types of nested ``opds:indirectAcquisition`` elements, outermost first.

    When a link offers several branches, the first one ending in EPUB/PDF wins.
    """
    fallback: List[str] = []
    for child in node:
        if local_name(child.tag) != "indirectacquisition":
            continue
        chain = [value for value in [child.attrib.get("type")] + _indirect_chain(child) if value]
        if any(is_book_type(value) for value in chain):
            return chain
        if not fallback:
            fallback = chain
    return fallback


def effective_type(link: AtomLink) -> Tuple[Optional[str], List[str]]:
    chain = _indirect_chain(link.node)
    if is_book_type(link.type):
        return link.type, chain
    for value in reversed(chain):
        if is_book_type(value):
            return value, chain
    return link.type, chain


def _acquisition_links(links: List[AtomLink]) -> List[AtomLink]:
    acquisitions = [link for link in links if is_acquisition_rel(link.rel)]
    if acquisitions:
        return acquisitions
    # Plain enclosures of EPUB/PDF files count as acquisitions.
    return [
        link
        for link in links
        if link.rel.lower() not in IMAGE_RELS
        and not is_catalog_type(link.type)
        and (is_book_type(link.type) or (not link.type and has_supported_extension(link.href)))
    ]


def _choose_acquisition(acquisitions: List[AtomLink]) -> AtomLink:
    for link in acquisitions:
        if is_open_access_rel(link.rel):
            return link
    for link in acquisitions:
        if is_book_type(effective_type(link)[0]):
            return link
    return acquisitions[0]


def _is_distributor_mirror(link: AtomLink, distributor: Optional[str]) -> bool:
    if not distributor or not link.title:
        return False
    return link.title.strip().casefold() == distributor.strip().casefold()


def _add_entry_navigation(title: str, links: List[AtomLink], nav: NavigationCollector) -> None:
    """Emit the single navigation link a non-acquisition entry stands for."""
    ordered = (
        [link for link in links if link.rel.lower() in SUBSECTION_RELS],
        [link for link in links if link.rel.lower() == "collection"],
        [link for link in links if catalog_kind(link.type) == "navigation"],
        [link for link in links if catalog_kind(link.type) == "acquisition"],
        [
            link
            for link in links
            if link.rel.lower() not in {"self"} | IMAGE_RELS
            and (is_catalog_type(link.type) or link.rel.lower().endswith("navigation"))
        ],
    )
    for group in ordered:
        if not group:
            continue
        link = group[0]
        kind = catalog_kind(link.type)
        if kind == "acquisition":
            rel = "acquisition"
        elif link.rel.lower() == "collection":
            rel = "collection"
        else:
            rel = "navigation"
        nav.add(title, link.href, rel, link.type, source="navigation")
        return
    logger.debug("Skipping OPDS entry without acquisition or navigation links: %s", title)


def _parse_book(
    node: ET.Element,
    title: str,
    links: List[AtomLink],
    acquisitions: List[AtomLink],
    nav: NavigationCollector,
) -> CatalogEntry:
    chosen = _choose_acquisition(acquisitions)
    resolved_type, chain = effective_type(chosen)

    authors: List[str] = []
    for author_node in node.findall("atom:author", NS):
        name = (author_node.findtext("atom:name", default="", namespaces=NS) or "").strip()
        if name:
            authors.append(name)
    if not authors:
        for prefix in ("dc", "dcel"):
            for creator in node.findall(f"{prefix}:creator", NS):
                value = (creator.text or "").strip()
                if value:
                    authors.append(value)

    cover_image = next((link.href for link in links if link.rel.lower() in IMAGE_RELS), None)

    summary = strip_html(
        _text(node.find("atom:summary", NS))
        or _text(node.find("atom:content", NS))
        or _dc_text(node, "description")
    )

    distributor = find_descendant_attribute(chosen.node, "distribution", "ProviderName") or find_descendant_attribute(
        node, "distribution", "ProviderName"
    )
    availability = find_descendant_attribute(chosen.node, "availability", "status") or find_descendant_attribute(
        node, "availability", "status"
    )

    collections: List[Collection] = []
    for link in links:
        if link.rel.lower() != "collection":
            continue
        collection_title = link.title or link.href
        collections.append(Collection(title=collection_title, href=link.href))
        if not _is_distributor_mirror(link, distributor):
            nav.add(collection_title, link.href, "collection", link.type, source="navigation")

    categories: List[Category] = []
    for category in node.findall("atom:category", NS):
        term = (category.attrib.get("term") or "").strip()
        label = (category.attrib.get("label") or "").strip() or None
        if not term and not label:
            continue
        categories.append(Category(term=term or label or "", label=label, scheme=category.attrib.get("scheme")))

    schema_type = _attribute(node, "additionalType")
    entry_format = format_for_mime(resolved_type)
    if entry_format == "Web":
        entry_format = None
    if schema_type and schema_type.rstrip("/").lower().endswith("audiobook"):
        entry_format = "AUDIOBOOK"

    entry_id = _text(node.find("atom:id", NS))
    alternatives: List[AcquisitionFormat] = []
    for link in acquisitions:
        if link.href == chosen.href:
            continue
        link_type = effective_type(link)[0]
        alternatives.append(AcquisitionFormat(url=link.href, media_type=link_type, format=format_for_mime(link_type)))

    return CatalogEntry(
        title=title,
        author=authors[0] if authors else "Unknown Author",
        contributors=authors[1:],
        cover_image=cover_image,
        download_url=chosen.href,
        summary=summary,
        format=entry_format,
        media_type=chosen.type,
        acquisition_media_type=resolved_type,
        acquisition_chain=chain,
        alternative_formats=alternatives,
        identifier=entry_id,
        provider_id=_dc_text(node, "identifier") or entry_id,
        is_open_access=is_open_access_rel(chosen.rel),
        distributor=distributor,
        availability_status=availability.lower() if availability else None,
        collections=unique(collections),
        categories=unique(categories),
        subjects=unique(category.label or category.term for category in categories),
        publisher=_dc_text(node, "publisher"),
        publication_date=_dc_text(node, "issued") or _text(node.find("atom:published", NS)) or _dc_text(node, "date"),
        language=_dc_text(node, "language"),
        schema_org_type=schema_type,
        publication_type_label=label_for_schema_type(schema_type),
    )


def _parse_facet(link: AtomLink, groups: Dict[str, FacetGroup]) -> None:
    group_title = _attribute(link.node, "facetGroup") or "Filters"
    count_raw = _attribute(link.node, "count")
    try:
        count: Optional[int] = int(count_raw) if count_raw is not None else None
    except ValueError:
        count = None
    active = (_attribute(link.node, "activeFacet") or "").lower() == "true"
    group = groups.setdefault(group_title, FacetGroup(title=group_title))
    group.links.append(FacetLink(title=link.title or link.href, url=link.href, active=active, count=count))


def parse_opds1(xml_text: Union[str, bytes], base_url: str) -> ParsedFeed:
    """Parse an OPDS 1 feed (or a single Atom entry document) into a :class:`ParsedFeed`."""
    try:
        root = ET.fromstring(xml_text.strip())
    except ET.ParseError as exc:
        raise FeedParseError(f"Unable to parse OPDS feed: {exc}", snippet_of(xml_text)) from exc

    nav = NavigationCollector()
    search: Optional[SearchDescriptor] = None
    pagination = Pagination()
    facet_groups: Dict[str, FacetGroup] = {}

    is_entry_document = local_name(root.tag) == "entry"
    feed_links = [] if is_entry_document else extract_links(root, base_url)
    for link in feed_links:
        rel = link.rel.lower()
        if rel == "search":
            if search is None or ("{searchTerms}" not in search.description_url and "{searchTerms}" in link.href):
                search = SearchDescriptor(description_url=link.href, type=link.type, title=link.title)
        elif rel == "start":
            nav.add("Home", link.href, "start", link.type)
        elif rel == "up":
            nav.add(link.title or "Up", link.href, "up", link.type)
        elif rel in PAGINATION_RELS:
            setattr(pagination, PAGINATION_RELS[rel], link.href)
        elif rel == FACET_REL:
            _parse_facet(link, facet_groups)
        elif link.title and (rel == "collection" or rel in SUBSECTION_RELS):
            nav.add(link.title, link.href, "collection" if rel == "collection" else "navigation", link.type)

    entry_nodes = [root] if is_entry_document else root.findall("atom:entry", NS)
    books: List[CatalogEntry] = []
    for node in entry_nodes:
        links = extract_links(node, base_url)
        if not links:
            continue
        title = _text(node.find("atom:title", NS)) or "Untitled"
        acquisitions = _acquisition_links(links)
        if not acquisitions:
            _add_entry_navigation(title, links, nav)
            continue
        books.append(_parse_book(node, title, links, acquisitions, nav))

    return ParsedFeed(
        books=merge_entries(books),
        nav_links=nav.links(),
        search=search,
        title=None if is_entry_document else _text(root.find("atom:title", NS)),
        pagination=pagination,
        facet_groups=list(facet_groups.values()),
        version="1",
    )
