import logging
import random

from aiohttp import ClientSession, ClientTimeout, TCPConnector
from aiohttp_proxy import ProxyConnector

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/136.0.0.0 Safari/537.36"


def browser_headers(is_segment: bool = False) -> dict:
    """Headers that make an upstream fetch look like it comes from a browser player."""
    if is_segment:
        accept = 'application/vnd.apple.mpegurl,application/x-mpegURL,video/*,audio/*,image/*,*/*;q=0.8'
    else:
        accept = 'text/html,application/xhtml+xml,application/xml;q=0.9,application/vnd.apple.mpegurl,application/x-mpegURL,*/*;q=0.8'
    return {
        'User-Agent': DEFAULT_USER_AGENT,
        'Accept': accept,
        'Accept-Language': 'en-US,en;q=0.9',
        'Cache-Control': 'no-cache',
        'Pragma': 'no-cache',
    }


def open_session(proxies: list = None, timeout: ClientTimeout = None, **kwargs) -> ClientSession:
    """
    Opens a fresh ClientSession for a single upstream exchange.
    When outbound proxies are configured one is picked at random.
    """
    proxy = random.choice(proxies) if proxies else None
    if proxy:
        logger.info(f"📡 Using outbound proxy {proxy}")
        connector = ProxyConnector.from_url(proxy)
    else:
        connector = TCPConnector(limit=20, limit_per_host=10, enable_cleanup_closed=True)

    return ClientSession(
        timeout=timeout or ClientTimeout(total=60, connect=30),
        connector=connector,
        **kwargs
    )
