import gzip
import logging
import zlib

import aiohttp
import zstandard

logger = logging.getLogger(__name__)

# Advertised on text fetches: every encoding here is decoded by read_text()
TEXT_ACCEPT_ENCODING = 'gzip, deflate, zstd'


class BodyDecodeError(Exception):
    """The upstream body could not be decompressed or decoded as text."""
    pass


def decompress_body(raw_body: bytes, content_encoding: str) -> bytes:
    content_encoding = (content_encoding or '').strip().lower()
    if content_encoding == 'zstd':
        # stream_reader copes with frames that omit the content size
        dctx = zstandard.ZstdDecompressor()
        with dctx.stream_reader(raw_body) as reader:
            return reader.read()
    if content_encoding in ('gzip', 'x-gzip'):
        return gzip.decompress(raw_body)
    if content_encoding == 'deflate':
        try:
            return zlib.decompress(raw_body)
        except zlib.error:
            # raw deflate stream without zlib header
            return zlib.decompress(raw_body, -zlib.MAX_WBITS)
    if content_encoding in ('', 'identity'):
        return raw_body
    raise BodyDecodeError(f"Unsupported content encoding: {content_encoding}")


async def read_text(response: aiohttp.ClientResponse) -> str:
    """
    Reads a response fetched with auto_decompress=False and returns its text.

    Handles zstd, gzip and deflate explicitly; anything that cannot be
    decompressed or decoded raises BodyDecodeError.
    """
    content_encoding = response.headers.get('Content-Encoding', '')
    try:
        raw_body = await response.read()
    except aiohttp.ClientPayloadError as e:
        raise BodyDecodeError(f"Incomplete body from {response.url}: {e}") from e

    try:
        body = decompress_body(raw_body, content_encoding)
    except (zstandard.ZstdError, OSError, EOFError, zlib.error) as e:
        logger.error(f"Decompression ({content_encoding}) failed for {response.url}: {e}")
        raise BodyDecodeError(f"Could not decompress body: {e}") from e

    try:
        return body.decode(response.charset or 'utf-8')
    except (UnicodeDecodeError, LookupError) as e:
        logger.error(f"Could not decode body from {response.url}: {e}")
        raise BodyDecodeError(f"Could not decode body: {e}") from e
