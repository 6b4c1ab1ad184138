from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

import httpx

from ..settings import CatalogSettings
from .credentials import Credential
from .errors import CatalogError, CatalogFetchError, FeedParseError
from .feeds import mime_of
from .models import ParsedFeed, SearchDescriptor
from .opds1 import parse_opds1
from .opds2 import parse_opds2
from .opensearch import OpenSearchDescription, build_opensearch_url, parse_opensearch_description
from .routing import CorsRouter

logger = logging.getLogger(__name__)

_ACCEPT_BY_VERSION = {
    "1": "application/atom+xml;profile=opds-catalog, application/atom+xml;q=0.9, application/xml;q=0.8, */*;q=0.5",
    "2": "application/opds+json, application/json;q=0.9, */*;q=0.5",
    "auto": (
        "application/opds+json, application/atom+xml;profile=opds-catalog;q=0.9, "
        "application/json;q=0.8, application/xml;q=0.8, */*;q=0.5"
    ),
}
_OPENSEARCH_ACCEPT = "application/opensearchdescription+xml, application/xml, text/xml;q=0.9, */*;q=0.5"


@dataclass
class CatalogResult:
    success: bool
    feed: Optional[ParsedFeed] = None
    error: Optional[str] = None
    status: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        if self.success and self.feed is not None:
            return {"success": True, "data": self.feed.to_dict()}
        payload: Dict[str, Any] = {"success": False, "error": self.error}
        if self.status is not None:
            payload["status"] = self.status
        return payload


def parse_catalog(body: str, base_url: str, *, content_type: Optional[str] = None, version: str = "auto") -> ParsedFeed:
    """Dispatch a catalog body to the OPDS 1 or OPDS 2 normalizer."""
    text = body.strip()
    mime = mime_of(content_type)
    if version == "2" or (version == "auto" and ("json" in mime or (not mime.endswith("xml") and text.startswith("{")))):
        try:
            return parse_opds2(text, base_url)
        except FeedParseError:
            if version == "2" or not text.startswith("<"):
                raise
    return parse_opds1(text, base_url)


class CatalogClient:
    """Fetch and normalize OPDS catalog pages through the CORS router."""

    def __init__(
        self,
        router: Optional[CorsRouter] = None,
        settings: Optional[CatalogSettings] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._router = router or CorsRouter(settings, transport=transport)
        self._settings = settings or self._router.settings
        self._transport = transport
        self._etags: Dict[str, Tuple[str, ParsedFeed]] = {}

    def clear_etag_cache(self) -> None:
        self._etags.clear()

    def _open_client(self, credential: Optional[Credential]) -> httpx.AsyncClient:
        auth = httpx.BasicAuth(credential.username, credential.password) if credential else None
        return httpx.AsyncClient(
            auth=auth,
            headers={"User-Agent": self._settings.user_agent},
            timeout=self._settings.timeout,
            verify=self._settings.verify_ssl,
            transport=self._transport,
        )

    async def _get(
        self,
        url: str,
        accept: str,
        credential: Optional[Credential],
        headers: Optional[Mapping[str, str]] = None,
    ) -> httpx.Response:
        try:
            target = await self._router.decide_route(url)
        except ValueError as exc:
            raise CatalogFetchError(str(exc)) from exc
        if credential is not None and self._router.is_public_proxy(target):
            raise CatalogFetchError("Refusing to send catalog credentials through a public CORS proxy")
        try:
            async with self._open_client(credential) as client:
                request_headers = {"Accept": accept, **(headers or {})}
                response = await client.get(target, headers=request_headers, follow_redirects=True)
                if response.status_code != 304:
                    response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            detail = (exc.response.text or "").strip()[:200]
            if status in (401, 403):
                message = f"Catalog requires authentication ({status})"
            elif status == 429:
                message = "Catalog is rate limiting requests; try again later"
            elif detail:
                message = f"Catalog request failed with status {status}: {detail}"
            else:
                message = f"Catalog request failed with status {status}"
            raise CatalogFetchError(message, status=status) from exc
        except httpx.HTTPError as exc:
            raise CatalogFetchError(f"Catalog request failed: {exc}") from exc
        return response

    async def fetch_feed(
        self,
        url: str,
        *,
        version: str = "auto",
        credential: Optional[Credential] = None,
    ) -> ParsedFeed:
        """Fetch and parse one catalog page.

        Pages served with an ``ETag`` are revalidated with ``If-None-Match`` on the
        next fetch, and a 304 answer returns the feed parsed the first time.
        """
        cached = self._etags.get(url)
        conditional = {"If-None-Match": cached[0]} if cached else None
        accept = _ACCEPT_BY_VERSION.get(version, _ACCEPT_BY_VERSION["auto"])
        response = await self._get(url, accept, credential, conditional)
        if response.status_code == 304:
            if cached is None:
                raise CatalogFetchError("Catalog answered 304 Not Modified without a cached copy", status=304)
            logger.debug("%s not modified, reusing the cached feed", url)
            return cached[1]

        feed = parse_catalog(response.text, url, content_type=response.headers.get("Content-Type"), version=version)
        etag = response.headers.get("ETag")
        if etag:
            self._etags[url] = (etag, feed)
        else:
            self._etags.pop(url, None)
        logger.debug("Loaded %s: %d book(s), %d navigation link(s)", url, len(feed.books), len(feed.nav_links))
        return feed

    async def load_catalog(
        self,
        url: str,
        *,
        version: str = "auto",
        credential: Optional[Credential] = None,
    ) -> CatalogResult:
        """Like :meth:`fetch_feed`, but reports failures as a result instead of raising."""
        try:
            feed = await self.fetch_feed(url, version=version, credential=credential)
        except CatalogError as exc:
            return CatalogResult(success=False, error=str(exc), status=getattr(exc, "status", None))
        return CatalogResult(success=True, feed=feed)

    async def fetch_opensearch_description(self, descriptor: SearchDescriptor) -> OpenSearchDescription:
        response = await self._get(descriptor.description_url, _OPENSEARCH_ACCEPT, None)
        return parse_opensearch_description(response.text, descriptor.description_url)

    async def search(
        self,
        descriptor: SearchDescriptor,
        query: str,
        *,
        extra: Optional[Mapping[str, Any]] = None,
        credential: Optional[Credential] = None,
    ) -> ParsedFeed:
        values: Dict[str, Any] = dict(extra or {})
        values["searchTerms"] = query
        values.setdefault("query", query)
        if descriptor.is_template:
            search_url = build_opensearch_url(descriptor.description_url, values)
        else:
            description = await self.fetch_opensearch_description(descriptor)
            template = description.active_template
            if template is None:
                raise CatalogFetchError("Catalog search description has no usable URL template")
            search_url = build_opensearch_url(template, values)
        return await self.fetch_feed(search_url, credential=credential)
