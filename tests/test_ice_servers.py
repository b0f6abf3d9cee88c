"""
tests/test_ice_servers.py
-------------------------

Covers ICE server list validation and retrieval over HTTP.
"""

import httpx
import pytest

from p2p_call.core.errors import EngineSetupError
from p2p_call.core.ice_servers import (
    fetch_ice_servers,
    parse_ice_servers,
    resolve_ice_servers,
)

TURN_LIST = [
    {"urls": "stun:stun.example.org:3478"},
    {
        "urls": ["turn:turn.example.org:3478?transport=udp", "turns:turn.example.org:5349"],
        "username": "user",
        "credential": "secret",
    },
]


def client_returning(response_factory):
    seen = []

    def handler(request):
        seen.append(request)
        return response_factory(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return client, seen


def test_parse_accepts_browser_shape():
    servers = parse_ice_servers(TURN_LIST)
    assert len(servers) == 2
    assert servers[0].urls == ["stun:stun.example.org:3478"]
    assert servers[1].username == "user"
    assert servers[1].credential == "secret"


def test_parse_accepts_legacy_url_key():
    servers = parse_ice_servers([{"url": "stun:stun.example.org"}])
    assert servers[0].urls == ["stun:stun.example.org"]


@pytest.mark.parametrize(
    "data",
    [
        {},
        [],
        ["stun:stun.example.org"],
        [{"username": "u"}],
        [{"urls": "http://example.org"}],
        [{"urls": ["stun:ok", 3]}],
    ],
)
def test_parse_rejects_bad_lists(data):
    with pytest.raises(EngineSetupError):
        parse_ice_servers(data)


@pytest.mark.asyncio
async def test_fetch_parses_response():
    client, seen = client_returning(lambda request: httpx.Response(200, json=TURN_LIST))
    async with client:
        servers = await fetch_ice_servers("https://ice.example.org/servers", client=client)
    assert len(servers) == 2
    assert str(seen[0].url) == "https://ice.example.org/servers"


@pytest.mark.asyncio
async def test_fetch_http_error_is_setup_error():
    client, _ = client_returning(lambda request: httpx.Response(503, text="down"))
    async with client:
        with pytest.raises(EngineSetupError):
            await fetch_ice_servers("https://ice.example.org/servers", client=client)


@pytest.mark.asyncio
async def test_fetch_transport_error_is_setup_error():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    client, _ = client_returning(refuse)
    async with client:
        with pytest.raises(EngineSetupError):
            await fetch_ice_servers("https://ice.example.org/servers", client=client)


@pytest.mark.asyncio
async def test_fetch_invalid_json_is_setup_error():
    client, _ = client_returning(lambda request: httpx.Response(200, text="<html>"))
    async with client:
        with pytest.raises(EngineSetupError):
            await fetch_ice_servers("https://ice.example.org/servers", client=client)


@pytest.mark.asyncio
async def test_resolve_prefers_static_servers(config):
    config.ice_servers = [{"urls": "stun:static.example.org"}]
    config.ice_server_list_url = "https://ice.example.org/servers"
    client, seen = client_returning(lambda request: httpx.Response(200, json=TURN_LIST))
    async with client:
        servers = await resolve_ice_servers(config, client=client)
    assert servers[0].urls == ["stun:static.example.org"]
    assert seen == []


@pytest.mark.asyncio
async def test_resolve_fetches_from_url(config):
    config.ice_server_list_url = "https://ice.example.org/servers"
    client, seen = client_returning(lambda request: httpx.Response(200, json=TURN_LIST))
    async with client:
        servers = await resolve_ice_servers(config, client=client)
    assert len(servers) == 2
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_resolve_without_any_source_fails(config):
    with pytest.raises(EngineSetupError):
        await resolve_ice_servers(config)
