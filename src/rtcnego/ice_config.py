"""ICE server resolution.

Builds the STUN list from config and, when a TURN credential endpoint is
configured, fetches TURN servers from it. The endpoint returns:

    {"username": "...", "password": "...", "uris": ["turn:host:3478?transport=udp", ...]}

A failed lookup is not fatal: the call proceeds with STUN only, which
is unlikely to traverse restrictive NATs.
"""

import logging

import aiohttp
from aiortc import RTCIceServer

from rtcnego.config import IceConfig

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 10.0  # seconds


async def fetch_turn_servers(
    session: aiohttp.ClientSession,
    turn_url: str,
) -> list[RTCIceServer]:
    """Fetch TURN servers from a credential endpoint.

    Raises:
        aiohttp.ClientError: On HTTP failure.
        ValueError: If the response is not in the expected shape.
    """
    async with session.get(
        turn_url,
        timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT),
    ) as response:
        response.raise_for_status()
        data = await response.json(content_type=None)

    if not isinstance(data, dict):
        raise ValueError("TURN response must be a JSON object")
    uris = data.get("uris")
    if not isinstance(uris, list) or not uris:
        raise ValueError("TURN response has no uris")

    return [
        RTCIceServer(
            urls=[str(uri) for uri in uris],
            username=data.get("username"),
            credential=data.get("password"),
        )
    ]


async def resolve_ice_servers(
    config: IceConfig,
    session: aiohttp.ClientSession | None = None,
) -> list[RTCIceServer]:
    """Resolve the ICE server list for a call.

    Args:
        config: ICE configuration.
        session: HTTP session for the TURN lookup. Required only when
            config.turn_url is set.

    Returns:
        STUN servers plus any TURN servers fetched.
    """
    servers: list[RTCIceServer] = []
    if config.stun_servers:
        servers.append(RTCIceServer(urls=list(config.stun_servers)))

    if not config.turn_url:
        if config.relay_only:
            logger.warning("Relay-only mode without a TURN server: no candidates will be sent")
        return servers

    if session is None:
        raise ValueError("An HTTP session is required to fetch TURN servers")

    try:
        turn_servers = await fetch_turn_servers(session, config.turn_url)
    except (aiohttp.ClientError, ValueError, TimeoutError) as e:
        logger.warning(
            f"No TURN server; unlikely that media will traverse networks. ({e})"
        )
        return servers

    logger.info(f"Fetched {len(turn_servers[0].urls)} TURN server URI(s)")
    return servers + turn_servers
