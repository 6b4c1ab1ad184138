from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class Collection:
    title: str
    href: str

    def to_dict(self) -> Dict[str, str]:
        return {"title": self.title, "href": self.href}


@dataclass(frozen=True)
class Category:
    term: str
    label: Optional[str] = None
    scheme: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"term": self.term, "label": self.label, "scheme": self.scheme}


@dataclass(frozen=True)
class AcquisitionFormat:
    url: str
    media_type: Optional[str] = None
    format: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"url": self.url, "mediaType": self.media_type, "format": self.format}


@dataclass
class CatalogEntry:
    title: str
    download_url: str = ""
    author: str = "Unknown Author"
    contributors: List[str] = field(default_factory=list)
    cover_image: Optional[str] = None
    summary: Optional[str] = None
    format: Optional[str] = None
    media_type: Optional[str] = None
    acquisition_media_type: Optional[str] = None
    acquisition_chain: List[str] = field(default_factory=list)
    alternative_formats: List[AcquisitionFormat] = field(default_factory=list)
    identifier: Optional[str] = None
    provider_id: Optional[str] = None
    is_open_access: bool = False
    distributor: Optional[str] = None
    availability_status: Optional[str] = None
    collections: List[Collection] = field(default_factory=list)
    categories: List[Category] = field(default_factory=list)
    subjects: List[str] = field(default_factory=list)
    publisher: Optional[str] = None
    publication_date: Optional[str] = None
    language: Optional[str] = None
    schema_org_type: Optional[str] = None
    publication_type_label: Optional[str] = None

    @property
    def merge_key(self) -> Optional[str]:
        return self.identifier or self.provider_id or self.download_url or None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "author": self.author,
            "contributors": list(self.contributors),
            "coverImage": self.cover_image,
            "downloadUrl": self.download_url,
            "summary": self.summary,
            "format": self.format,
            "mediaType": self.media_type,
            "acquisitionMediaType": self.acquisition_media_type,
            "acquisitionChain": list(self.acquisition_chain),
            "alternativeFormats": [item.to_dict() for item in self.alternative_formats],
            "identifier": self.identifier,
            "providerId": self.provider_id,
            "isOpenAccess": self.is_open_access,
            "distributor": self.distributor,
            "availabilityStatus": self.availability_status,
            "collections": [item.to_dict() for item in self.collections],
            "categories": [item.to_dict() for item in self.categories],
            "subjects": list(self.subjects),
            "publisher": self.publisher,
            "publicationDate": self.publication_date,
            "language": self.language,
            "schemaOrgType": self.schema_org_type,
            "publicationTypeLabel": self.publication_type_label,
        }


@dataclass(frozen=True)
class NavigationLink:
    title: str
    url: str
    rel: str
    type: Optional[str] = None
    source: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "title": self.title,
            "url": self.url,
            "rel": self.rel,
            "type": self.type,
            "source": self.source,
        }


@dataclass(frozen=True)
class SearchDescriptor:
    description_url: str
    type: Optional[str] = None
    title: Optional[str] = None
    rel: str = "search"
    kind: str = "opensearch"

    @property
    def is_template(self) -> bool:
        return bool(re.search(r"\{[^}]+\}", self.description_url))

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "kind": self.kind,
            "descriptionUrl": self.description_url,
            "type": self.type,
            "title": self.title,
            "rel": self.rel,
        }


@dataclass
class Pagination:
    first: Optional[str] = None
    previous: Optional[str] = None
    next: Optional[str] = None
    last: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"first": self.first, "previous": self.previous, "next": self.next, "last": self.last}


@dataclass(frozen=True)
class FacetLink:
    title: str
    url: str
    active: bool = False
    count: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"title": self.title, "url": self.url, "active": self.active, "count": self.count}


@dataclass
class FacetGroup:
    title: str
    links: List[FacetLink] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"title": self.title, "links": [link.to_dict() for link in self.links]}


@dataclass
class ParsedFeed:
    books: List[CatalogEntry] = field(default_factory=list)
    nav_links: List[NavigationLink] = field(default_factory=list)
    search: Optional[SearchDescriptor] = None
    title: Optional[str] = None
    pagination: Pagination = field(default_factory=Pagination)
    facet_groups: List[FacetGroup] = field(default_factory=list)
    version: str = "1"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "version": self.version,
            "books": [book.to_dict() for book in self.books],
            "navLinks": [link.to_dict() for link in self.nav_links],
            "search": self.search.to_dict() if self.search else None,
            "pagination": self.pagination.to_dict(),
            "facetGroups": [group.to_dict() for group in self.facet_groups],
        }


def feed_to_dict(feed: ParsedFeed) -> Dict[str, Any]:
    return feed.to_dict()


@dataclass
class CategoryLane:
    category: Category
    books: List[CatalogEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"category": self.category.to_dict(), "books": [book.to_dict() for book in self.books]}


@dataclass
class CollectionGroup:
    collection: Collection
    books: List[CatalogEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"collection": self.collection.to_dict(), "books": [book.to_dict() for book in self.books]}


@dataclass
class GroupedCatalog:
    """A catalog page arranged into category lanes for display."""

    books: List[CatalogEntry] = field(default_factory=list)
    nav_links: List[NavigationLink] = field(default_factory=list)
    pagination: Pagination = field(default_factory=Pagination)
    category_lanes: List[CategoryLane] = field(default_factory=list)
    collection_links: List[Collection] = field(default_factory=list)
    uncategorized_books: List[CatalogEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "books": [book.to_dict() for book in self.books],
            "navLinks": [link.to_dict() for link in self.nav_links],
            "pagination": self.pagination.to_dict(),
            "categoryLanes": [lane.to_dict() for lane in self.category_lanes],
            "collectionLinks": [item.to_dict() for item in self.collection_links],
            "uncategorizedBooks": [book.to_dict() for book in self.uncategorized_books],
        }


@dataclass
class CollectionCatalog:
    books: List[CatalogEntry] = field(default_factory=list)
    nav_links: List[NavigationLink] = field(default_factory=list)
    pagination: Pagination = field(default_factory=Pagination)
    collections: List[CollectionGroup] = field(default_factory=list)
    uncategorized_books: List[CatalogEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "books": [book.to_dict() for book in self.books],
            "navLinks": [link.to_dict() for link in self.nav_links],
            "pagination": self.pagination.to_dict(),
            "collections": [group.to_dict() for group in self.collections],
            "uncategorizedBooks": [book.to_dict() for book in self.uncategorized_books],
        }
