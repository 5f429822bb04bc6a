import gzip

import pytest
import zstandard
from aiohttp import web

from app import HLSProxy, create_app

MASTER_PLAYLIST = """#EXTM3U
#EXT-X-VERSION:6
#EXT-X-MEDIA:TYPE=AUDIO,GROUP-ID="aud",NAME="en",URI="audio/en.m3u8"
#EXT-X-STREAM-INF:BANDWIDTH=1280000,CODECS="avc1.4d401f,mp4a.40.2",AUDIO="aud"
720p.m3u8
#EXT-X-I-FRAME-STREAM-INF:BANDWIDTH=86000,URI="iframes.m3u8"

"""

MEDIA_PLAYLIST = """#EXTM3U
#EXT-X-TARGETDURATION:6
#EXT-X-MEDIA-SEQUENCE:100
#EXT-X-KEY:METHOD=AES-128,URI="key.bin",IV=0x1234
#EXT-X-MAP:URI="init.mp4"
#EXTINF:6.0,
seg001.ts
#EXTINF:6.0,
seg002.ts"""

SEGMENT_BYTES = bytes(range(256)) * 4096  # 1 MiB


async def master(request):
    return web.Response(text=MASTER_PLAYLIST, content_type='application/vnd.apple.mpegurl')


async def media(request):
    return web.Response(text=MEDIA_PLAYLIST, content_type='application/vnd.apple.mpegurl')


async def redirect(request):
    raise web.HTTPFound('/moved/media.m3u8')


async def missing(request):
    return web.Response(status=404, text='nope')


async def forbidden(request):
    return web.Response(status=403, text='denied')


async def gzipped(request):
    return web.Response(
        body=gzip.compress(MEDIA_PLAYLIST.encode()),
        headers={'Content-Type': 'application/vnd.apple.mpegurl', 'Content-Encoding': 'gzip'}
    )


async def zstd_compressed(request):
    return web.Response(
        body=zstandard.ZstdCompressor().compress(MEDIA_PLAYLIST.encode()),
        headers={'Content-Type': 'application/vnd.apple.mpegurl', 'Content-Encoding': 'zstd'}
    )


async def undecodable(request):
    return web.Response(body=b'#EXTM3U\n\xff\xfe\xfa', content_type='application/vnd.apple.mpegurl', charset='utf-8')


async def segment(request):
    return web.Response(
        body=SEGMENT_BYTES,
        headers={
            'Content-Type': 'video/mp2t',
            'ETag': '"abc123"',
            'Last-Modified': 'Wed, 21 Oct 2015 07:28:00 GMT',
            'Set-Cookie': 'session=secret',
            'X-Frame-Options': 'DENY',
        }
    )


async def untyped_media(request):
    content_type = request.query.get('type', 'application/octet-stream')
    return web.Response(body=MEDIA_PLAYLIST.encode(), headers={'Content-Type': content_type})


async def truncated_segment(request):
    # promises more than it sends, then hangs up
    response = web.StreamResponse(headers={'Content-Type': 'video/mp2t', 'Content-Length': '1000000'})
    await response.prepare(request)
    await response.write(b"\x47" * 1000)
    request.transport.close()
    return response


async def gzipped_segment(request):
    return web.Response(
        body=gzip.compress(b'key-material'),
        headers={'Content-Type': 'application/octet-stream', 'Content-Encoding': 'gzip'}
    )


async def live_page(request):
    return web.Response(text='<html><script>var x = {"videoId":"abc"};</script></html>', content_type='text/html')


def build_origin_app():
    origin = web.Application()
    origin.router.add_get('/path/master.m3u8', master)
    origin.router.add_get('/path/media.m3u8', media)
    origin.router.add_get('/moved/media.m3u8', media)
    origin.router.add_get('/redirect.m3u8', redirect)
    origin.router.add_get('/missing.m3u8', missing)
    origin.router.add_get('/forbidden.ts', forbidden)
    origin.router.add_get('/missing.ts', missing)
    origin.router.add_get('/gzip/media.m3u8', gzipped)
    origin.router.add_get('/zstd/media.m3u8', zstd_compressed)
    origin.router.add_get('/bad.m3u8', undecodable)
    origin.router.add_get('/seg001.ts', segment)
    origin.router.add_get('/key.bin', gzipped_segment)
    origin.router.add_get('/untyped/media.m3u8', untyped_media)
    origin.router.add_get('/truncated.ts', truncated_segment)
    origin.router.add_get('/watch', live_page)
    return origin


@pytest.fixture
async def origin(aiohttp_server):
    return await aiohttp_server(build_origin_app())


@pytest.fixture
def make_client(aiohttp_client):
    async def factory(**kwargs):
        kwargs.setdefault('proxies', [])
        kwargs.setdefault('allowed_origins', [])
        kwargs.setdefault('extractor_domains', [])
        return await aiohttp_client(create_app(HLSProxy(**kwargs)))
    return factory
