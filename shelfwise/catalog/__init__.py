from .client import CatalogClient, CatalogResult, parse_catalog
from .coordinator import AuthCoordinator, CredentialPrompt
from .credentials import Credential, CredentialStore, StoredCredential
from .errors import (
    AcquisitionError,
    AuthRequired,
    CatalogError,
    CatalogFetchError,
    ErrorKind,
    FeedParseError,
    NetworkError,
    RateLimited,
    TooManyRedirects,
    Unavailable,
    UnsupportedFormat,
)
from .filters import (
    filter_books_by_audience,
    filter_books_by_collection,
    filter_books_by_fiction,
    get_available_audiences,
    get_available_categories,
    get_available_collections,
    get_available_fiction_modes,
)
from .grouping import (
    extract_collection_navigation,
    group_books_by_categories,
    group_books_by_collections,
    group_books_by_collections_as_lanes,
    group_books_by_mode,
)
from .models import (
    CatalogEntry,
    CategoryLane,
    Collection,
    CollectionCatalog,
    CollectionGroup,
    GroupedCatalog,
    NavigationLink,
    ParsedFeed,
    SearchDescriptor,
)
from .opds1 import parse_opds1
from .opds2 import parse_opds2
from .publication import filter_books_by_publication, get_available_publication_types
from .resolver import AcquisitionResolver, CancellationToken, ProviderSession, ResolutionResult
from .routing import CorsRouter

__all__ = [
    "AcquisitionError",
    "AcquisitionResolver",
    "AuthCoordinator",
    "AuthRequired",
    "CancellationToken",
    "CatalogClient",
    "CatalogEntry",
    "CatalogError",
    "CatalogFetchError",
    "CatalogResult",
    "CategoryLane",
    "Collection",
    "CollectionCatalog",
    "CollectionGroup",
    "CorsRouter",
    "Credential",
    "CredentialPrompt",
    "CredentialStore",
    "ErrorKind",
    "FeedParseError",
    "GroupedCatalog",
    "NavigationLink",
    "NetworkError",
    "ParsedFeed",
    "ProviderSession",
    "RateLimited",
    "ResolutionResult",
    "SearchDescriptor",
    "StoredCredential",
    "TooManyRedirects",
    "Unavailable",
    "UnsupportedFormat",
    "extract_collection_navigation",
    "filter_books_by_audience",
    "filter_books_by_collection",
    "filter_books_by_fiction",
    "filter_books_by_publication",
    "get_available_audiences",
    "get_available_categories",
    "get_available_collections",
    "get_available_fiction_modes",
    "get_available_publication_types",
    "group_books_by_categories",
    "group_books_by_collections",
    "group_books_by_collections_as_lanes",
    "group_books_by_mode",
    "parse_catalog",
    "parse_opds1",
    "parse_opds2",
]
