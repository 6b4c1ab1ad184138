from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional
from urllib.parse import quote, urlparse

import httpx

from ..settings import CatalogSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProbeResult:
    direct: bool
    status: Optional[int] = None
    allow_origin: Optional[str] = None
    allow_credentials: bool = False
    error: Optional[str] = None


class CorsRouter:
    """Decide whether a catalog URL is fetched directly or through a CORS proxy.

    Probe verdicts are cached per host for the lifetime of the router, so each
    catalog session should own one instance.
    """

    def __init__(
        self,
        settings: Optional[CatalogSettings] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._settings = settings or CatalogSettings()
        self._transport = transport
        self._cache: Dict[str, ProbeResult] = {}

    @property
    def settings(self) -> CatalogSettings:
        return self._settings

    def clear_cache(self) -> None:
        self._cache.clear()

    def cached_probe(self, url: str) -> Optional[ProbeResult]:
        return self._cache.get(self._host_key(url))

    def proxied_url(self, url: str) -> str:
        encoded = quote(url, safe="")
        owned = self._settings.normalized_proxy_base()
        if owned:
            return f"{owned}{_query_separator(owned)}url={encoded}"
        return f"{self._settings.public_proxy_url}{encoded}"

    def is_public_proxy(self, url: str) -> bool:
        prefix = self._settings.public_proxy_url
        return bool(prefix) and url.startswith(prefix)

    def is_proxied(self, url: str) -> bool:
        owned = self._settings.normalized_proxy_base()
        return self.is_public_proxy(url) or bool(owned and url.startswith(f"{owned}{_query_separator(owned)}url="))

    async def decide_route(self, url: str, is_open_access: bool = False) -> str:
        """Return ``url`` unchanged for direct access, or its proxied form."""
        parsed = urlparse(url or "")
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(f"Cannot route non-HTTP URL: {url!r}")
        if self.is_proxied(url) or self._settings.skip_cors_check:
            return url
        if self._settings.force_proxy:
            return self.proxied_url(url)
        if is_open_access:
            return url

        host = self._host_key(url)
        verdict = self._cache.get(host)
        if verdict is None:
            verdict = await self._probe(url)
            self._cache[host] = verdict
        if verdict.direct:
            return url
        routed = self.proxied_url(url)
        logger.debug("Routing %s through proxy (%s)", host, verdict.error or verdict.status)
        return routed

    @staticmethod
    def _host_key(url: str) -> str:
        return (urlparse(url).hostname or "").lower()

    def _open_client(self) -> httpx.AsyncClient:
        headers = {"User-Agent": self._settings.user_agent}
        if self._settings.app_origin:
            headers["Origin"] = self._settings.app_origin
        return httpx.AsyncClient(
            headers=headers,
            timeout=self._settings.timeout,
            verify=self._settings.verify_ssl,
            transport=self._transport,
        )

    async def _probe(self, url: str) -> ProbeResult:
        try:
            async with self._open_client() as client:
                response = await client.head(url, follow_redirects=False)
                if response.status_code == 405:
                    response = await client.get(url, follow_redirects=False)
        except httpx.HTTPError as exc:
            logger.warning("CORS probe failed for %s: %s", url, exc)
            return ProbeResult(direct=False, error=str(exc) or exc.__class__.__name__)
        return self._verdict(response)

    def _verdict(self, response: httpx.Response) -> ProbeResult:
        allow_origin = (response.headers.get("Access-Control-Allow-Origin") or "").strip()
        allow_credentials = (response.headers.get("Access-Control-Allow-Credentials") or "").strip().lower() == "true"
        origin = self._settings.app_origin
        direct = response.is_success and (
            (allow_origin == "*" and not allow_credentials) or bool(origin and allow_origin == origin)
        )
        return ProbeResult(
            direct=direct,
            status=response.status_code,
            allow_origin=allow_origin or None,
            allow_credentials=allow_credentials,
        )


def _query_separator(base: str) -> str:
    return "&" if "?" in base else "?"
