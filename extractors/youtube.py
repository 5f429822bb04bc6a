import logging
import re
import asyncio
from typing import Optional
from urllib.parse import urlsplit

import aiohttp
from aiohttp import ClientTimeout

from utils.content import BodyDecodeError, TEXT_ACCEPT_ENCODING, read_text
from utils.upstream import DEFAULT_USER_AGENT, open_session

logger = logging.getLogger(__name__)

DEFAULT_DOMAINS = ("youtube.com", "youtu.be")

# "hlsManifestUrl":"https://...m3u8..."
PLAIN_MANIFEST_PATTERN = re.compile(r'"hlsManifestUrl":"(https:[^"]+\.m3u8[^"]*)"')
# Same field when the JSON blob sits inside a quoted JS string
ESCAPED_MANIFEST_PATTERN = re.compile(r'\\"hlsManifestUrl\\":\\"(https:[^"]+?\.m3u8[^"]*?)\\"')


def unescape_manifest_url(url: str) -> str:
    return url.replace('\\u0026', '&').replace('\\/', '/')


def find_manifest_url(html: str) -> Optional[str]:
    """Returns the live playlist URL embedded in a watch page, or None."""
    for pattern in (PLAIN_MANIFEST_PATTERN, ESCAPED_MANIFEST_PATTERN):
        match = pattern.search(html)
        if match:
            return unescape_manifest_url(match.group(1))
    return None


def host_matches(url: str, domains) -> bool:
    try:
        host = (urlsplit(url).hostname or '').lower()
    except ValueError:
        return False
    return any(host == d or host.endswith('.' + d) for d in domains)


class YouTubeExtractor:
    """Recovers the HLS manifest of a YouTube live stream from its watch page."""

    def __init__(self, request_headers: dict = None, proxies: list = None, timeout: float = 60):
        self.request_headers = request_headers or {}
        self.base_headers = {
            "User-Agent": DEFAULT_USER_AGENT,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.9",
            "Accept-Encoding": TEXT_ACCEPT_ENCODING,
            "Referer": "https://www.youtube.com/",
            "Origin": "https://www.youtube.com",
            "Sec-CH-UA": '"Chromium";v="136", "Not.A/Brand";v="99", "Google Chrome";v="136"',
            "Sec-CH-UA-Mobile": "?0",
            "Sec-CH-UA-Platform": '"Windows"',
        }
        self.session = None
        self.proxies = proxies or []
        self.timeout = ClientTimeout(total=timeout, connect=30)

    async def _get_session(self):
        if self.session is None or self.session.closed:
            self.session = open_session(self.proxies, self.timeout, auto_decompress=False)
        return self.session

    async def extract(self, url: str, **kwargs) -> Optional[dict]:
        """
        Fetches the page and looks for its hlsManifestUrl.

        Returns the same dict shape the proxy expects from any extractor, or
        None when the page could not be fetched or holds no live manifest
        (video not live, markup changed).
        """
        headers = self.base_headers.copy()
        if 'Accept-Language' in self.request_headers:
            headers['Accept-Language'] = self.request_headers['Accept-Language']

        session = await self._get_session()
        try:
            async with session.get(url, headers=headers) as response:
                if response.status >= 400:
                    logger.warning(f"⚠️ YouTube page fetch failed for {url}: {response.status} {response.reason}")
                    return None
                html = await read_text(response)
        except (aiohttp.ClientError, asyncio.TimeoutError, BodyDecodeError) as e:
            logger.warning(f"⚠️ YouTube page unreachable or unreadable {url}: {e}")
            return None

        manifest_url = find_manifest_url(html)
        if not manifest_url:
            logger.warning(f"⚠️ No HLS manifest found in YouTube page: {url}")
            return None

        logger.info(f"✅ Extracted HLS manifest from YouTube: {manifest_url}")
        return {
            "destination_url": manifest_url,
            "request_headers": {"Referer": headers["Referer"], "Origin": headers["Origin"]},
            "endpoint_type": "hls_proxy",
        }

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()
