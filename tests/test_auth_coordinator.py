from __future__ import annotations

import asyncio

import httpx
import pytest

from shelfwise.catalog.coordinator import PUBLIC_PROXY_RETRY_MESSAGE, AuthCoordinator
from shelfwise.catalog.credentials import CredentialStore
from shelfwise.catalog.models import CatalogEntry
from shelfwise.catalog.resolver import AcquisitionResolver, ProviderSession
from shelfwise.catalog.routing import CorsRouter
from shelfwise.settings import CatalogSettings

BORROW_URL = "https://lib.example.org/borrow/1"


def _coordinator(handler, tmp_path, prompts=None, **settings):
    settings.setdefault("skip_cors_check", True)
    transport = httpx.MockTransport(handler)
    router = CorsRouter(CatalogSettings(**settings), transport=transport)
    resolver = AcquisitionResolver(router, transport=transport)
    store = CredentialStore(tmp_path / "creds.json")
    listener = prompts.append if prompts is not None else None
    return AuthCoordinator(resolver, store, on_prompt_change=listener), store


def _basic_auth_handler(request: httpx.Request) -> httpx.Response:
    if request.headers.get("Authorization", "").startswith("Basic "):
        return httpx.Response(200, headers={"Content-Type": "application/epub+zip"}, content=b"PK")
    return httpx.Response(
        401,
        headers={"Content-Type": "application/vnd.opds.authentication.v1.0+json"},
        json={"title": "Library card", "authentication": [{"type": "http://opds-spec.org/auth/basic"}]},
    )


def _entry(**overrides) -> CatalogEntry:
    values = {"title": "Locked Book", "download_url": BORROW_URL, "format": "EPUB"}
    values.update(overrides)
    return CatalogEntry(**values)


@pytest.mark.asyncio
async def test_auth_failure_opens_a_challenge_and_submit_saves(tmp_path) -> None:
    prompts = []
    coordinator, store = _coordinator(_basic_auth_handler, tmp_path, prompts)

    first = await coordinator.acquire(_entry(), catalog_name="City Library")

    assert first.kind == "auth_required"
    assert coordinator.prompt.is_open
    assert coordinator.prompt.host == "lib.example.org"
    assert coordinator.prompt.pending_catalog_name == "City Library"
    assert coordinator.prompt.auth_document["title"] == "Library card"

    result = await coordinator.submit_credential("reader", "secret", save=True)

    assert result.success
    assert result.data == BORROW_URL
    assert not coordinator.prompt.is_open
    assert store.find_credential("lib.example.org").username == "reader"
    assert [prompt.is_open for prompt in prompts] == [True, False]


@pytest.mark.asyncio
async def test_saved_credential_is_used_without_a_prompt(tmp_path) -> None:
    coordinator, store = _coordinator(_basic_auth_handler, tmp_path)
    store.save_credential("lib.example.org", "reader", "secret")

    result = await coordinator.acquire(_entry())

    assert result.success
    assert not coordinator.prompt.is_open


@pytest.mark.asyncio
async def test_rejected_credentials_keep_the_prompt_open(tmp_path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401)

    coordinator, store = _coordinator(handler, tmp_path)
    await coordinator.acquire(_entry())

    result = await coordinator.submit_credential("reader", "wrong", save=True)

    assert result.kind == "auth_required"
    assert coordinator.prompt.is_open
    assert store.all_credentials() == []


@pytest.mark.asyncio
async def test_external_login_retry_is_aborted_through_the_public_proxy(tmp_path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    coordinator, _ = _coordinator(handler, tmp_path, skip_cors_check=False, force_proxy=True)
    coordinator.open_challenge("lib.example.org", BORROW_URL, _entry())

    result = await coordinator.retry_after_external_login(ProviderSession(cookies={"sid": "abc"}))

    assert not result.success
    assert result.kind == "retry_aborted"
    assert result.error == PUBLIC_PROXY_RETRY_MESSAGE
    assert result.error.startswith("Retry aborted: public CORS proxy would be used")
    assert coordinator.prompt.is_open


@pytest.mark.asyncio
async def test_external_login_retry_through_owned_proxy(tmp_path) -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.url.host, request.headers.get("Cookie")))
        return httpx.Response(200, headers={"Content-Type": "application/epub+zip"}, content=b"PK")

    coordinator, _ = _coordinator(
        handler,
        tmp_path,
        skip_cors_check=False,
        force_proxy=True,
        own_proxy_url="https://proxy.example.app",
    )
    coordinator.open_challenge("lib.example.org", BORROW_URL, _entry())

    result = await coordinator.retry_after_external_login(ProviderSession(cookies={"sid": "abc"}))

    assert result.success
    assert result.proxy_used is True
    assert seen[0][0] == "proxy.example.app"
    assert "sid=abc" in seen[0][1]
    assert not coordinator.prompt.is_open


@pytest.mark.asyncio
async def test_retry_without_a_challenge_and_unsupported_formats(tmp_path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    coordinator, _ = _coordinator(handler, tmp_path)

    assert (await coordinator.retry_after_external_login()).kind == "no_acquisition"
    assert (await coordinator.submit_credential("a", "b")).kind == "no_acquisition"
    assert (await coordinator.acquire(_entry(format="AUDIOBOOK"))).kind == "unsupported_format"
    assert (await coordinator.acquire(_entry(download_url=""))).kind == "no_acquisition"


@pytest.mark.asyncio
async def test_cancel_reaches_every_acquisition_in_flight(tmp_path) -> None:
    started = asyncio.Event()
    release = asyncio.Event()

    async def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/borrow/slow":
            started.set()
            await release.wait()
        return httpx.Response(200, headers={"Content-Type": "application/epub+zip"}, content=b"PK")

    coordinator, _ = _coordinator(handler, tmp_path)
    slow = asyncio.create_task(coordinator.acquire(_entry(download_url="https://lib.example.org/borrow/slow")))
    await started.wait()

    quick = await coordinator.acquire(_entry())
    coordinator.cancel()
    release.set()
    result = await slow

    assert quick.success
    assert not result.success
    assert result.kind == "cancelled"


@pytest.mark.asyncio
async def test_external_login_retry_with_a_non_http_href_is_a_tagged_failure(tmp_path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    coordinator, _ = _coordinator(handler, tmp_path, skip_cors_check=False)
    coordinator.open_challenge("lib.example.org", "ftp://lib.example.org/borrow/1", _entry())

    result = await coordinator.retry_after_external_login()

    assert not result.success
    assert result.kind == "unsupported_format"
    assert coordinator.prompt.is_open


def test_cancel_closes_the_prompt(tmp_path) -> None:
    coordinator, _ = _coordinator(_basic_auth_handler, tmp_path)
    coordinator.open_challenge("lib.example.org", BORROW_URL)

    coordinator.cancel()

    assert not coordinator.prompt.is_open
