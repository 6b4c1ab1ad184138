from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Optional, Set
from urllib.parse import urlparse

from .credentials import Credential, CredentialStore
from .errors import ErrorKind, NoAcquisitionFound, RetryAborted, UnsupportedFormat
from .models import CatalogEntry
from .resolver import AcquisitionResolver, CancellationToken, ProviderSession, ResolutionResult
from .routing import CorsRouter

logger = logging.getLogger(__name__)

PUBLIC_PROXY_RETRY_MESSAGE = (
    "Retry aborted: public CORS proxy would be used, so the provider login session cannot be forwarded. "
    "Configure an owned proxy or enter credentials instead."
)
_SUPPORTED_FORMATS = {"EPUB", "PDF"}


@dataclass(frozen=True)
class CredentialPrompt:
    is_open: bool = False
    host: Optional[str] = None
    pending_href: Optional[str] = None
    pending_entry: Optional[CatalogEntry] = None
    pending_catalog_name: Optional[str] = None
    auth_document: Optional[Dict[str, Any]] = None


PromptListener = Callable[[CredentialPrompt], None]


class AuthCoordinator:
    """Drive acquisition through credential challenges raised by a catalog.

    ``on_prompt_change`` is called with the new :class:`CredentialPrompt` whenever
    the challenge opens, changes or closes. Retries only happen when the caller
    invokes :meth:`submit_credential` or :meth:`retry_after_external_login`.
    """

    def __init__(
        self,
        resolver: AcquisitionResolver,
        store: CredentialStore,
        router: Optional[CorsRouter] = None,
        *,
        on_prompt_change: Optional[PromptListener] = None,
        version: str = "auto",
    ) -> None:
        self._resolver = resolver
        self._store = store
        self._router = router or resolver.router
        self._listener = on_prompt_change
        self._version = version
        self._prompt = CredentialPrompt()
        self._tokens: Set[CancellationToken] = set()

    @property
    def prompt(self) -> CredentialPrompt:
        return self._prompt

    def _set_prompt(self, prompt: CredentialPrompt) -> None:
        self._prompt = prompt
        if self._listener is not None:
            self._listener(prompt)

    def open_challenge(
        self,
        host: str,
        pending_href: str,
        pending_entry: Optional[CatalogEntry] = None,
        auth_document: Optional[Dict[str, Any]] = None,
        catalog_name: Optional[str] = None,
    ) -> CredentialPrompt:
        logger.debug("Opening credential challenge for %s", host)
        self._set_prompt(
            CredentialPrompt(
                is_open=True,
                host=host,
                pending_href=pending_href,
                pending_entry=pending_entry,
                pending_catalog_name=catalog_name,
                auth_document=auth_document,
            )
        )
        return self._prompt

    def cancel(self) -> None:
        for token in list(self._tokens):
            token.cancel("Acquisition cancelled")
        self._set_prompt(CredentialPrompt())

    async def acquire(
        self,
        entry: CatalogEntry,
        catalog_name: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> ResolutionResult:
        """Resolve ``entry`` with any saved credential, opening a challenge on auth failure."""
        if (entry.format or "").upper() not in _SUPPORTED_FORMATS and entry.format is not None:
            return ResolutionResult.failure(
                UnsupportedFormat(f"'{entry.title}' is offered as {entry.format}; only EPUB and PDF can be imported")
            )
        if not entry.download_url:
            return ResolutionResult.failure(NoAcquisitionFound(f"'{entry.title}' has no acquisition link"))

        credential = self._store.find_credential_for_url(entry.download_url)
        result = await self._run(entry.download_url, entry, credential, token=token)
        if not result.success and result.kind == ErrorKind.AUTH_REQUIRED.value:
            host = urlparse(entry.download_url).hostname or ""
            self.open_challenge(host, entry.download_url, entry, result.auth_document, catalog_name)
        return result

    async def submit_credential(self, username: str, password: str, save: bool = False) -> ResolutionResult:
        prompt = self._prompt
        if not prompt.is_open or not prompt.pending_href:
            return ResolutionResult.failure(NoAcquisitionFound("No pending credential challenge"))

        credential = Credential(username=username, password=password)
        result = await self._run(prompt.pending_href, prompt.pending_entry, credential)
        if not result.success:
            if result.kind == ErrorKind.AUTH_REQUIRED.value and result.auth_document:
                self._set_prompt(replace(prompt, auth_document=result.auth_document))
            return result

        if save and prompt.host:
            self._store.save_credential(prompt.host, username, password)
        self._set_prompt(CredentialPrompt())
        return result

    async def retry_after_external_login(self, session: Optional[ProviderSession] = None) -> ResolutionResult:
        """Retry the pending acquisition without credentials after a provider login.

        The provider session cannot survive a shared public proxy, so the retry is
        refused up front when the pending URL, or the URL it resolves to, routes
        through one.
        """
        prompt = self._prompt
        if not prompt.is_open or not prompt.pending_href:
            return ResolutionResult.failure(NoAcquisitionFound("No pending credential challenge"))

        is_open_access = bool(prompt.pending_entry and prompt.pending_entry.is_open_access)
        try:
            route = await self._router.decide_route(prompt.pending_href, is_open_access)
        except ValueError as exc:
            return ResolutionResult.failure(UnsupportedFormat(str(exc)))
        if self._router.is_public_proxy(route):
            logger.warning("Refusing login retry for %s through the public proxy", prompt.host)
            return ResolutionResult.failure(RetryAborted(PUBLIC_PROXY_RETRY_MESSAGE))

        result = await self._run(prompt.pending_href, prompt.pending_entry, None, session=session)
        if not result.success:
            return result
        try:
            final_route = await self._router.decide_route(result.data or "", is_open_access)
        except ValueError as exc:
            return ResolutionResult.failure(UnsupportedFormat(str(exc)), hops=result.hops)
        if self._router.is_public_proxy(final_route):
            return ResolutionResult.failure(RetryAborted(PUBLIC_PROXY_RETRY_MESSAGE), proxy_used=True)

        self._set_prompt(CredentialPrompt())
        return result

    async def _run(
        self,
        href: str,
        entry: Optional[CatalogEntry],
        credential: Optional[Credential],
        *,
        token: Optional[CancellationToken] = None,
        session: Optional[ProviderSession] = None,
    ) -> ResolutionResult:
        active = token or CancellationToken()
        self._tokens.add(active)
        try:
            return await self._resolver.resolve(
                href,
                self._version,
                credential,
                entry=entry,
                token=active,
                session=session,
            )
        finally:
            self._tokens.discard(active)
