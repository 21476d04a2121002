#!/usr/bin/env python3
"""Network readiness gate: block startup until outbound DNS resolution works."""

import asyncio
import logging
import socket
from typing import Awaitable, Callable, List

from log_config import ALERT

logger = logging.getLogger(__name__)

PROBE_HOST = "apple.com"
RETRY_DELAY = 5.0

Lookup = Callable[[str], Awaitable[List[str]]]


async def lookup_host(host: str) -> List[str]:
    """Resolve host through the event loop's resolver, returning unique addresses"""
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, None, type=socket.SOCK_STREAM)
    return list(dict.fromkeys(info[4][0] for info in infos))


async def wait_for_network(
    host: str = PROBE_HOST,
    delay: float = RETRY_DELAY,
    lookup: Lookup = lookup_host,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> None:
    """Retry resolving ``host`` every ``delay`` seconds until it succeeds.

    There is no retry cap: asset downloads and update checks that follow
    need the network, so startup waits here for as long as it takes.
    """
    while True:
        try:
            addrs = await lookup(host)
        except OSError as e:
            logger.debug(f"lookup {host} failed: {e}")
            addrs = []
        if addrs:
            break
        logger.log(ALERT, "waiting for network connected")
        await sleep(delay)
    logger.log(ALERT, "network is connected")
