"""
ICE server list resolution.

The list is the JSON array a browser would pass as ``RTCConfiguration.iceServers``:
``[{"urls": "stun:...", "username": "...", "credential": "..."}, ...]``.
It comes either from the static ``ice.servers`` config entry or from an HTTP
endpoint (typically one that mints short-lived TURN credentials).
"""

from __future__ import annotations

from typing import Any, List, Optional

import httpx
from aiortc import RTCIceServer

from p2p_call.config import Config
from p2p_call.core.errors import EngineSetupError
from p2p_call.logging_config import get_logger

logger = get_logger("ice_servers")

_URL_SCHEMES = ("stun:", "stuns:", "turn:", "turns:")


def parse_ice_servers(data: Any) -> List[RTCIceServer]:
    """
    Validate an ICE server list and convert it to aiortc objects.

    Raises:
        EngineSetupError: if the list is empty or any entry is malformed
    """
    if not isinstance(data, list):
        raise EngineSetupError(
            f"ICE server list must be a JSON array, got {type(data).__name__}"
        )
    if not data:
        raise EngineSetupError("ICE server list is empty")

    servers = []
    for index, entry in enumerate(data):
        if not isinstance(entry, dict):
            raise EngineSetupError(f"ICE server #{index} is not an object")

        urls = entry.get("urls") or entry.get("url")
        if isinstance(urls, str):
            urls = [urls]
        if not urls or not all(isinstance(u, str) for u in urls):
            raise EngineSetupError(f"ICE server #{index} has no urls")
        bad = [u for u in urls if not u.startswith(_URL_SCHEMES)]
        if bad:
            raise EngineSetupError(f"ICE server #{index} has unsupported urls: {bad}")

        servers.append(
            RTCIceServer(
                urls=urls,
                username=entry.get("username"),
                credential=entry.get("credential"),
            )
        )
    return servers


async def fetch_ice_servers(
    url: str,
    timeout: float = 10.0,
    client: Optional[httpx.AsyncClient] = None,
) -> List[RTCIceServer]:
    """
    Fetch and validate the ICE server list from ``url``.

    Args:
        url: Endpoint returning the JSON list
        timeout: Request timeout in seconds
        client: Optional shared client (tests pass one with a mock transport)

    Raises:
        EngineSetupError: on transport errors, non-2xx responses or a bad body
    """
    logger.info(f"Fetching ICE server list from {url}")
    try:
        if client is None:
            async with httpx.AsyncClient(timeout=timeout) as own_client:
                response = await own_client.get(url)
        else:
            response = await client.get(url, timeout=timeout)
        response.raise_for_status()
        data = response.json()
    except httpx.HTTPError as exc:
        raise EngineSetupError(f"Failed to fetch ICE server list: {exc}") from exc
    except ValueError as exc:
        raise EngineSetupError(f"ICE server list is not valid JSON: {exc}") from exc

    servers = parse_ice_servers(data)
    logger.info(f"Got {len(servers)} ICE server(s)")
    return servers


async def resolve_ice_servers(
    config: Config, client: Optional[httpx.AsyncClient] = None
) -> List[RTCIceServer]:
    """Static servers from config win; otherwise fetch from the configured URL."""
    if config.ice_servers:
        logger.debug("Using ICE servers from config")
        return parse_ice_servers(config.ice_servers)

    url = config.ice_server_list_url
    if not url:
        raise EngineSetupError(
            "No ICE servers configured (set ice.servers or ice.server_list_url)"
        )
    return await fetch_ice_servers(url, timeout=config.ice_fetch_timeout, client=client)
