from __future__ import annotations

import json
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urljoin, urlparse

import httpx

from ..settings import CatalogSettings
from .credentials import Credential
from .errors import (
    AcquisitionError,
    AuthRequired,
    NetworkError,
    NoAcquisitionFound,
    RateLimited,
    ResolutionCancelled,
    TooManyRedirects,
    Unavailable,
    UnsupportedFormat,
    snippet_of,
)
from .feeds import (
    TERMINAL_MIME_TYPES,
    has_supported_extension,
    is_acquisition_rel,
    is_book_type,
    mime_of,
)
from .models import CatalogEntry
from .opds1 import ATOM_NS, AtomLink, effective_type, extract_links, find_descendant_attribute, local_name
from .opds2 import as_list, link_availability, link_chain, link_rels
from .routing import CorsRouter

logger = logging.getLogger(__name__)

VERSIONS = {"auto", "1", "2"}
AUTH_DOCUMENT_TYPE = "application/vnd.opds.authentication.v1.0+json"
_JSON_URL_KEYS = ("url", "location", "href", "contentLocation")
_HOP_RELS = ("borrow", "loan", "fulfill")
_ACCEPT = (
    "application/epub+zip, application/pdf, application/atom+xml;q=0.9, "
    "application/opds+json;q=0.9, application/json;q=0.8, */*;q=0.5"
)


class CancellationToken:
    """Cooperative cancellation shared by the hops of one resolution."""

    def __init__(self) -> None:
        self._cancelled = False
        self.reason = "Resolution cancelled"

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: Optional[str] = None) -> None:
        self._cancelled = True
        if reason:
            self.reason = reason

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise ResolutionCancelled(self.reason)


@dataclass(frozen=True)
class ProviderSession:
    """Session material captured after a login performed outside the engine."""

    cookies: Dict[str, str] = field(default_factory=dict)
    bearer_token: Optional[str] = None


@dataclass
class ResolutionResult:
    success: bool
    data: Optional[str] = None
    error: Optional[str] = None
    status: Optional[int] = None
    kind: Optional[str] = None
    auth_document: Optional[Dict[str, Any]] = None
    proxy_used: bool = False
    hops: int = 0

    @classmethod
    def failure(cls, exc: AcquisitionError, **extra: Any) -> "ResolutionResult":
        return cls(
            success=False,
            error=str(exc),
            status=exc.status,
            kind=exc.kind.value,
            auth_document=exc.auth_document,
            **extra,
        )

    def to_dict(self) -> Dict[str, Any]:
        if self.success:
            return {"success": True, "data": self.data}
        payload: Dict[str, Any] = {"success": False, "error": self.error, "kind": self.kind}
        if self.status is not None:
            payload["status"] = self.status
        if self.auth_document is not None:
            payload["authDocument"] = self.auth_document
        return payload


@dataclass
class _Hop:
    url: str
    terminal: bool = False


class AcquisitionResolver:
    """Walk an acquisition link through borrow/indirect documents to a content URL."""

    def __init__(
        self,
        router: CorsRouter,
        settings: Optional[CatalogSettings] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._router = router
        self._settings = settings or router.settings
        self._transport = transport

    @property
    def router(self) -> CorsRouter:
        return self._router

    async def resolve(
        self,
        href: str,
        version: str = "auto",
        credential: Optional[Credential] = None,
        *,
        entry: Optional[CatalogEntry] = None,
        token: Optional[CancellationToken] = None,
        session: Optional[ProviderSession] = None,
    ) -> ResolutionResult:
        visited: List[str] = []
        try:
            url = await self._walk(href, str(version), credential, entry, token, session, visited)
        except AcquisitionError as exc:
            logger.debug("Acquisition of %s failed after %d hop(s): %s", href, len(visited), exc)
            return ResolutionResult.failure(exc, proxy_used=self._used_proxy(visited), hops=len(visited))
        return ResolutionResult(success=True, data=url, proxy_used=self._used_proxy(visited), hops=len(visited))

    def _used_proxy(self, fetched: List[str]) -> bool:
        return any(self._router.is_proxied(url) for url in fetched)

    def _open_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers={"User-Agent": self._settings.user_agent, "Accept": _ACCEPT},
            timeout=self._settings.timeout,
            verify=self._settings.verify_ssl,
            transport=self._transport,
        )

    async def _walk(
        self,
        href: str,
        version: str,
        credential: Optional[Credential],
        entry: Optional[CatalogEntry],
        token: Optional[CancellationToken],
        session: Optional[ProviderSession],
        fetched: List[str],
    ) -> str:
        if version not in VERSIONS:
            raise UnsupportedFormat(f"Unknown OPDS version hint: {version!r}")
        if not href:
            raise NoAcquisitionFound("Catalog entry has no acquisition link")
        if entry is not None and (entry.availability_status or "").lower() == "unavailable":
            raise Unavailable(f"'{entry.title}' is not currently available to borrow")

        origin_host = urlparse(href).hostname
        is_open_access = bool(entry and entry.is_open_access)
        seen: List[str] = []
        current = href
        async with self._open_client() as client:
            for _ in range(self._settings.max_hops):
                if token is not None:
                    token.raise_if_cancelled()
                if current in seen:
                    raise TooManyRedirects(f"Acquisition chain loops back to {current}")
                seen.append(current)

                same_host = urlparse(current).hostname == origin_host
                try:
                    fetch_url = await self._router.decide_route(current, is_open_access)
                except ValueError as exc:
                    raise UnsupportedFormat(str(exc)) from exc
                if credential is not None and same_host and self._router.is_public_proxy(fetch_url):
                    raise NetworkError(
                        "Refusing to send catalog credentials through a public CORS proxy; "
                        "configure an owned proxy for this catalog"
                    )
                fetched.append(fetch_url)
                headers: Dict[str, str] = {}
                if session is not None and same_host and not self._router.is_public_proxy(fetch_url):
                    headers.update(_session_headers(session))
                auth = httpx.BasicAuth(credential.username, credential.password) if credential and same_host else None

                logger.debug("Acquisition hop %d: %s", len(seen), current)
                hop = await self._fetch(client, current, fetch_url, version, auth, headers)
                if token is not None:
                    token.raise_if_cancelled()
                if hop.terminal:
                    return hop.url
                current = hop.url
        raise TooManyRedirects(f"Acquisition chain exceeded {self._settings.max_hops} hops")

    async def _fetch(
        self,
        client: httpx.AsyncClient,
        current: str,
        fetch_url: str,
        version: str,
        auth: Optional[httpx.BasicAuth],
        headers: Dict[str, str],
    ) -> _Hop:
        try:
            response = await self._send(client, "GET", fetch_url, auth, headers)
            if response.status_code == 405:
                await response.aclose()
                response = await self._send(client, "POST", fetch_url, auth, headers)
            try:
                return await self._classify(response, current, version)
            finally:
                await response.aclose()
        except httpx.TimeoutException as exc:
            raise NetworkError(f"Timed out fetching {current}") from exc
        except httpx.HTTPError as exc:
            raise NetworkError(f"Acquisition request failed: {exc}") from exc

    @staticmethod
    async def _send(
        client: httpx.AsyncClient,
        method: str,
        url: str,
        auth: Optional[httpx.BasicAuth],
        headers: Dict[str, str],
    ) -> httpx.Response:
        request = client.build_request(method, url, headers=headers)
        return await client.send(request, auth=auth, stream=True, follow_redirects=False)

    async def _classify(self, response: httpx.Response, current: str, version: str) -> _Hop:
        status = response.status_code
        if status in (401, 403):
            body = await response.aread()
            raise AuthRequired(
                f"Catalog requires authentication ({status})",
                status=status,
                auth_document=_auth_document(response, body),
            )
        if status == 429:
            raise RateLimited("Catalog is rate limiting requests; try again later", status=status)
        if 300 <= status < 400:
            location = response.headers.get("Location")
            if not location:
                raise NetworkError(f"Redirect from {current} has no Location header", status=status)
            target = urljoin(current, location)
            return _Hop(target, terminal=has_supported_extension(target))
        if status >= 400:
            detail = snippet_of(await response.aread())
            message = f"Acquisition request failed with status {status}"
            raise NetworkError(f"{message}: {detail}" if detail else message, status=status)

        content_type = response.headers.get("Content-Type")
        mime = mime_of(content_type)
        if mime in TERMINAL_MIME_TYPES or (not mime and has_supported_extension(current)):
            return _Hop(current, terminal=True)

        body = await response.aread()
        text = body.decode(response.encoding or "utf-8", "replace").strip()
        looks_json = "json" in mime or (not mime and text.startswith(("{", "[")))
        looks_xml = "xml" in mime or (not mime and text.startswith("<") and not text.lower().startswith("<!doctype html"))
        if looks_json and version != "1":
            return _next_from_json(text, current, content_type)
        if looks_xml and version != "2":
            return _next_from_xml(text, current)
        raise UnsupportedFormat(f"Unsupported content type {mime or 'unknown'} at {current}", status=status)


def _session_headers(session: ProviderSession) -> Dict[str, str]:
    """Headers carrying a provider session; only ever sent to the catalog's own host."""
    headers: Dict[str, str] = {}
    if session.bearer_token:
        headers["Authorization"] = f"Bearer {session.bearer_token}"
    if session.cookies:
        headers["Cookie"] = "; ".join(f"{name}={value}" for name, value in session.cookies.items())
    return headers


def _auth_document(response: httpx.Response, body: bytes) -> Optional[Dict[str, Any]]:
    if "json" not in mime_of(response.headers.get("Content-Type")):
        return None
    try:
        document = json.loads(body.decode("utf-8", "replace"))
    except ValueError:
        return None
    return document if isinstance(document, dict) else None


def _score(link_type: Optional[str], chain: List[str], rels: List[str]) -> int:
    if is_book_type(link_type):
        return 4
    if any(is_book_type(value) for value in chain):
        return 3
    lowered = [rel.lower() for rel in rels]
    if any(is_acquisition_rel(rel) or any(word in rel for word in _HOP_RELS) for rel in lowered):
        return 2
    if any("auth" in rel for rel in lowered):
        return 1
    if "alternate" in lowered:
        return 0
    return -1


def _pick(candidates: List[Tuple[int, str, Optional[str]]], current: str) -> _Hop:
    usable = [item for item in candidates if item[0] >= 0 and item[1] != current]
    if not usable:
        raise NoAcquisitionFound(f"No acquisition link found in document at {current}")
    _, url, link_type = max(usable, key=lambda item: item[0])
    return _Hop(url, terminal=is_book_type(link_type) or has_supported_extension(url))


def _next_from_xml(text: str, current: str) -> _Hop:
    try:
        root = ET.fromstring(text)
    except ET.ParseError as exc:
        raise UnsupportedFormat(f"Malformed acquisition document at {current}: {exc}") from exc
    entries = list(root.iter(f"{{{ATOM_NS}}}entry"))
    if local_name(root.tag) == "entry":
        described: Optional[ET.Element] = root
    else:
        described = entries[0] if len(entries) == 1 else None
    if described is not None:
        status = find_descendant_attribute(described, "availability", "status")
        if (status or "").lower() == "unavailable":
            raise Unavailable("Catalog reports this title as unavailable")

    links: List[AtomLink] = []
    # ``iter`` yields the root itself for single-entry documents.
    scopes = entries if local_name(root.tag) == "entry" else [root] + entries
    for scope in scopes:
        links.extend(extract_links(scope, current))
    candidates = []
    for link in links:
        chain = effective_type(link)[1]
        candidates.append((_score(link.type, chain, [link.rel]), link.href, link.type))
    return _pick(candidates, current)


def _next_from_json(text: str, current: str, content_type: Optional[str]) -> _Hop:
    try:
        document = json.loads(text)
    except ValueError as exc:
        raise UnsupportedFormat(f"Malformed acquisition document at {current}: {exc}") from exc
    if isinstance(document, list):
        document = {"links": document}
    if not isinstance(document, Mapping):
        raise NoAcquisitionFound(f"No acquisition link found in document at {current}")
    if "authentication" in document or mime_of(content_type) == AUTH_DOCUMENT_TYPE:
        raise AuthRequired("Catalog requires authentication", status=401, auth_document=dict(document))

    availability = document.get("availability")
    properties = document.get("properties")
    if isinstance(properties, Mapping) and isinstance(properties.get("availability"), Mapping):
        availability = properties["availability"]
    if isinstance(availability, Mapping) and str(availability.get("state") or "").lower() == "unavailable":
        raise Unavailable("Catalog reports this title as unavailable")

    for key in _JSON_URL_KEYS:
        value = document.get(key)
        if isinstance(value, str) and value.strip():
            target = urljoin(current, value.strip())
            link_type = document.get("type") if isinstance(document.get("type"), str) else None
            return _Hop(target, terminal=is_book_type(link_type) or has_supported_extension(target))

    candidates = []
    for link in as_list(document.get("links")):
        if not isinstance(link, Mapping) or not link.get("href"):
            continue
        if link_availability(link) == "unavailable":
            raise Unavailable("Catalog reports this title as unavailable")
        rels = link_rels(link)
        link_type = link.get("type") if isinstance(link.get("type"), str) else None
        candidates.append((_score(link_type, link_chain(link), rels), urljoin(current, str(link["href"])), link_type))
    return _pick(candidates, current)
