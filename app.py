import asyncio
import logging
import os
import sys
from urllib.parse import urlsplit

import aiohttp
from aiohttp import web, ClientTimeout
from dotenv import load_dotenv

from extractors.youtube import DEFAULT_DOMAINS, YouTubeExtractor, host_matches
from routes.playlist_rewriter import (
    DEFAULT_PLAYLIST_DIRECTIVES,
    DEFAULT_URI_DIRECTIVES,
    PlaylistRewriter,
)
from utils.content import BodyDecodeError, TEXT_ACCEPT_ENCODING, read_text
from utils.upstream import browser_headers, open_session

load_dotenv()  # Load variables from a .env file if present

# --- Logging ---
logging.basicConfig(
    level=getattr(logging, os.environ.get("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format='%(asctime)s - %(levelname)s - %(name)s - %(message)s'
)

logger = logging.getLogger(__name__)


# --- Configuration ---
def parse_list(env_var: str, default=()) -> list:
    """Parses a comma separated list from an environment variable."""
    value = os.environ.get(env_var)
    if value is None:
        return list(default)
    return [item.strip() for item in value.split(',') if item.strip()]


def parse_number(env_var: str, default, cast=int):
    value = os.environ.get(env_var, "").strip()
    if not value:
        return default
    try:
        return cast(value)
    except ValueError:
        logger.warning(f"⚠️ Invalid value for {env_var}: {value!r}, using {default}")
        return default


HOST = os.environ.get("HOST", "0.0.0.0")
PORT = parse_number("PORT", 7860)
UPSTREAM_TIMEOUT = parse_number("UPSTREAM_TIMEOUT", 60.0, float)

ALLOWED_ORIGINS = parse_list("ALLOWED_ORIGINS")
GLOBAL_PROXIES = parse_list("GLOBAL_PROXY")
PROXY_PATH_PREFIX = os.environ.get("PROXY_PATH_PREFIX", "")
HLS_URI_DIRECTIVES = parse_list("HLS_URI_DIRECTIVES", DEFAULT_URI_DIRECTIVES)
HLS_PLAYLIST_DIRECTIVES = parse_list("HLS_PLAYLIST_DIRECTIVES", DEFAULT_PLAYLIST_DIRECTIVES)
PAGE_EXTRACTOR_DOMAINS = [d.lower() for d in parse_list("PAGE_EXTRACTOR_DOMAINS", DEFAULT_DOMAINS)]

if ALLOWED_ORIGINS: logger.info(f"🔒 CORS restricted to {len(ALLOWED_ORIGINS)} origins.")
if GLOBAL_PROXIES: logger.info(f"🌍 Loaded {len(GLOBAL_PROXIES)} outbound proxies.")

PLAYLIST_CONTENT_TYPE = 'application/vnd.apple.mpegurl'
SEGMENT_CACHE_CONTROL = 'public, max-age=3600'
SEGMENT_CHUNK_SIZE = 64 * 1024
# Upstream response headers that may reach the client
FORWARDED_SEGMENT_HEADERS = ('Content-Type', 'Content-Length', 'Content-Encoding', 'Last-Modified', 'ETag')


def is_valid_url(url: str) -> bool:
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    return parts.scheme in ('http', 'https') and bool(parts.netloc)


class HLSProxy:
    """Stateless HLS CORS proxy: rewrites playlists and streams segments."""

    def __init__(self, allowed_origins=None, proxies=None, extractor_domains=None,
                 rewriter: PlaylistRewriter = None, upstream_timeout: float = None):
        self.allowed_origins = frozenset(ALLOWED_ORIGINS if allowed_origins is None else allowed_origins)
        self.proxies = GLOBAL_PROXIES if proxies is None else proxies
        self.extractor_domains = PAGE_EXTRACTOR_DOMAINS if extractor_domains is None else extractor_domains
        self.rewriter = rewriter or PlaylistRewriter(
            route_prefix=PROXY_PATH_PREFIX,
            uri_directives=HLS_URI_DIRECTIVES,
            playlist_directives=HLS_PLAYLIST_DIRECTIVES,
        )
        self.upstream_timeout = upstream_timeout or UPSTREAM_TIMEOUT

    # --- CORS / responses ---
    def cors_headers(self, request) -> dict:
        if not self.allowed_origins:
            return {'Access-Control-Allow-Origin': '*'}
        origin = request.headers.get('Origin')
        if origin and origin in self.allowed_origins:
            return {'Access-Control-Allow-Origin': origin, 'Vary': 'Origin'}
        return {'Vary': 'Origin'}

    def json_error(self, request, message: str, status: int):
        return web.json_response({"error": message}, status=status, headers=self.cors_headers(request))

    def get_extractor(self, url: str, request_headers: dict):
        """Returns a page extractor when the URL points at a known video-hosting page."""
        if self.extractor_domains and host_matches(url, self.extractor_domains):
            return YouTubeExtractor(request_headers, proxies=self.proxies, timeout=self.upstream_timeout)
        return None

    @web.middleware
    async def error_middleware(self, request, handler):
        """Turns anything escaping a handler into a JSON error response."""
        try:
            return await handler(request)
        except web.HTTPException as e:
            if e.status < 400:
                raise
            return self.json_error(request, e.reason, e.status)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"❌ Unhandled error for {request.path}: {e}")
            return self.json_error(request, "Internal server error", 500)

    # --- Manifest ---
    async def handle_manifest_request(self, request):
        """GET /manifest?url=<playlist or hosting page>"""
        target_url = request.query.get('url')
        if not target_url:
            return self.json_error(request, "Missing url parameter", 400)
        if not is_valid_url(target_url):
            return self.json_error(request, "Invalid url format", 400)

        logger.info(f"📥 Manifest request: {target_url}")
        extractor = self.get_extractor(target_url, dict(request.headers))
        if extractor is None:
            return await self._proxy_manifest(request, target_url)
        return await self._extract_and_proxy(request, target_url, extractor)

    async def handle_youtube_request(self, request):
        """GET /youtube?url=<page>: always runs page extraction first."""
        page_url = request.query.get('url')
        if not page_url:
            return self.json_error(request, "Missing url parameter", 400)
        if not is_valid_url(page_url):
            return self.json_error(request, "Invalid url format", 400)

        logger.info(f"📥 YouTube request: {page_url}")
        extractor = YouTubeExtractor(dict(request.headers), proxies=self.proxies, timeout=self.upstream_timeout)
        return await self._extract_and_proxy(request, page_url, extractor)

    async def _extract_and_proxy(self, request, page_url: str, extractor):
        try:
            result = await extractor.extract(page_url)
        finally:
            await extractor.close()

        if not result:
            return self.json_error(
                request,
                "Failed to extract HLS manifest from page URL. The video might not be live or the page format has changed.",
                502
            )
        return await self._proxy_manifest(request, result["destination_url"], result.get("request_headers"))

    async def _proxy_manifest(self, request, manifest_url: str, extra_headers: dict = None):
        headers = browser_headers()
        headers['Accept-Encoding'] = TEXT_ACCEPT_ENCODING
        headers.update(extra_headers or {})

        timeout = ClientTimeout(total=self.upstream_timeout, connect=30)
        try:
            async with open_session(self.proxies, timeout, auto_decompress=False) as session:
                async with session.get(manifest_url, headers=headers) as resp:
                    if not 200 <= resp.status < 300:
                        logger.warning(f"⚠️ Upstream rejected manifest {manifest_url}: {resp.status} {resp.reason}")
                        return self.json_error(
                            request, f"Failed to fetch manifest: upstream responded {resp.status} {resp.reason}", resp.status
                        )
                    try:
                        manifest_text = await read_text(resp)
                    except BodyDecodeError as e:
                        logger.error(f"❌ Could not read manifest body from {manifest_url}: {e}")
                        return self.json_error(request, "Failed to read manifest body", 500)
                    # Relative URIs resolve against where the playlist really came from
                    final_url = str(resp.url)
                    upstream_type = resp.headers.get('Content-Type', '')
                    content_type = upstream_type if 'mpegurl' in upstream_type.lower() else PLAYLIST_CONTENT_TYPE
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"⚠️ Upstream unreachable for manifest {manifest_url}: {e!r}")
            return self.json_error(request, "Failed to fetch manifest: upstream unreachable", 502)

        if final_url != manifest_url:
            logger.info(f"↪️ Manifest redirected: {manifest_url} -> {final_url}")

        try:
            rewritten_manifest = self.rewriter.rewrite(manifest_text, final_url)
        except Exception as e:
            logger.exception(f"❌ Manifest rewrite failed for {final_url}: {e}")
            return self.json_error(request, "Failed to rewrite manifest", 500)

        response_headers = {
            'Content-Type': content_type,
            'Cache-Control': 'no-cache',
        }
        response_headers.update(self.cors_headers(request))
        return web.Response(text=rewritten_manifest, headers=response_headers)

    # --- Segment ---
    async def handle_segment_request(self, request):
        """GET /segment?url=<resource>: streams bytes through unmodified."""
        segment_url = request.query.get('url')
        if not segment_url:
            return self.json_error(request, "Missing url parameter", 400)
        if not is_valid_url(segment_url):
            return self.json_error(request, "Invalid url format", 400)

        logger.info(f"📦 Segment request: {segment_url}")
        # Segments may be large: bound connect and per-read time, not the whole transfer
        timeout = ClientTimeout(total=None, connect=30, sock_read=self.upstream_timeout)
        try:
            async with open_session(self.proxies, timeout, auto_decompress=False) as session:
                async with session.get(segment_url, headers=browser_headers(is_segment=True)) as resp:
                    if not 200 <= resp.status < 300:
                        logger.warning(f"⚠️ Upstream rejected segment {segment_url}: {resp.status} {resp.reason}")
                        return self.json_error(
                            request, f"Failed to fetch segment: upstream responded {resp.status} {resp.reason}", resp.status
                        )

                    response_headers = {}
                    for header in FORWARDED_SEGMENT_HEADERS:
                        if header in resp.headers:
                            response_headers[header] = resp.headers[header]
                    response_headers.update(self.cors_headers(request))
                    response_headers['Cache-Control'] = SEGMENT_CACHE_CONTROL

                    response = web.StreamResponse(status=resp.status, headers=response_headers)
                    return await self._stream_segment(request, resp, response, segment_url)

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"⚠️ Upstream unreachable for segment {segment_url}: {e!r}")
            return self.json_error(request, "Failed to fetch segment: upstream unreachable", 502)

    async def _stream_segment(self, request, resp, response, segment_url: str):
        """
        Copies the upstream body into the prepared response.

        Once headers are sent no error response can follow, so any failure
        drops the client connection: with Content-Length forwarded the client
        would otherwise wait for bytes that never arrive.
        """
        try:
            await response.prepare(request)
            async for chunk in resp.content.iter_chunked(SEGMENT_CHUNK_SIZE):
                await response.write(chunk)
            await response.write_eof()
        except (aiohttp.ClientError, asyncio.TimeoutError, ConnectionResetError) as e:
            logger.warning(f"⚠️ Segment stream interrupted: {segment_url} ({e!r})")
            self._abort(request)
        except Exception as e:
            logger.exception(f"❌ Segment stream failed: {segment_url}: {e}")
            self._abort(request)
        return response

    @staticmethod
    def _abort(request):
        if request.transport is not None:
            request.transport.close()

    # --- Misc ---
    async def handle_root(self, request):
        return web.Response(text=USAGE_HTML, content_type='text/html')

    async def handle_options(self, request):
        """Answers CORS preflight"""
        headers = self.cors_headers(request)
        headers.update({
            'Access-Control-Allow-Methods': 'GET, OPTIONS',
            'Access-Control-Allow-Headers': 'Range, Content-Type',
            'Access-Control-Max-Age': '86400'
        })
        return web.Response(headers=headers)


USAGE_HTML = """<!DOCTYPE html>
<html lang="en">
<head><meta charset="utf-8"><title>HLS CORS Proxy</title></head>
<body>
<h1>HLS CORS Proxy</h1>
<ul>
  <li><code>GET /manifest?url=&lt;playlist or YouTube live URL&gt;</code> - fetch and rewrite an HLS playlist</li>
  <li><code>GET /segment?url=&lt;resource URL&gt;</code> - stream a segment, key or init section</li>
  <li><code>GET /youtube?url=&lt;watch page URL&gt;</code> - extract and rewrite a YouTube live playlist</li>
</ul>
</body>
</html>
"""


# --- Startup ---
def create_app(proxy: HLSProxy = None):
    """Creates and configures the aiohttp application."""
    proxy = proxy or HLSProxy()

    app = web.Application(middlewares=[proxy.error_middleware])

    app.router.add_get('/', proxy.handle_root)
    app.router.add_get('/manifest', proxy.handle_manifest_request)
    app.router.add_get('/segment', proxy.handle_segment_request)
    app.router.add_get('/youtube', proxy.handle_youtube_request)

    # CORS
    app.router.add_route('OPTIONS', '/{tail:.*}', proxy.handle_options)

    return app


app = create_app()


def main():
    """Starts the server."""
    if sys.platform == 'win32':
        logging.getLogger('asyncio').setLevel(logging.CRITICAL)

    logger.info(f"🚀 HLS CORS proxy listening on http://{HOST}:{PORT}")
    web.run_app(app, host=HOST, port=PORT)


if __name__ == '__main__':
    main()
