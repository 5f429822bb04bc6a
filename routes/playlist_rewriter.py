import logging
import re
import urllib.parse
from typing import Iterable, Iterator, List

from routes.url_resolver import resolve_url

logger = logging.getLogger(__name__)

DEFAULT_URI_DIRECTIVES = (
    "EXT-X-STREAM-INF",
    "EXT-X-I-FRAME-STREAM-INF",
    "EXT-X-MEDIA",
    "EXT-X-KEY",
    "EXT-X-MAP",
)
DEFAULT_PLAYLIST_DIRECTIVES = (
    "EXT-X-STREAM-INF",
    "EXT-X-I-FRAME-STREAM-INF",
    "EXT-X-MEDIA",
)

# Line classifications
DIRECTIVE_WITH_URI = "directive-with-uri"
DIRECTIVE_NO_URI = "directive-no-uri"
COMMENT_OR_BLANK = "comment-or-blank"
URI_LINE = "uri-line"

URI_ATTRIBUTE = re.compile(r'(?<![\w-])URI="([^"]+)"')


class PlaylistRewriter:
    """Rewrites every URI of an HLS playlist so it is fetched back through the proxy."""

    def __init__(self, route_prefix: str = "", uri_directives: Iterable[str] = None,
                 playlist_directives: Iterable[str] = None, log: logging.Logger = None):
        self.route_prefix = route_prefix.rstrip('/')
        self.uri_directives = frozenset(
            d.lstrip('#') for d in (uri_directives or DEFAULT_URI_DIRECTIVES)
        )
        self.playlist_directives = frozenset(
            d.lstrip('#') for d in (playlist_directives or DEFAULT_PLAYLIST_DIRECTIVES)
        )
        self.log = log or logger

    @staticmethod
    def directive_name(line: str) -> str:
        """'#EXT-X-KEY:METHOD=...' -> 'EXT-X-KEY'"""
        return line[1:].split(':', 1)[0].strip()

    def classify(self, line: str) -> str:
        if not line:
            return COMMENT_OR_BLANK
        if line.startswith('#'):
            if self.directive_name(line) not in self.uri_directives:
                return COMMENT_OR_BLANK
            if URI_ATTRIBUTE.search(line):
                return DIRECTIVE_WITH_URI
            return DIRECTIVE_NO_URI
        return URI_LINE

    def proxied_uri(self, absolute_url: str, is_playlist: bool) -> str:
        endpoint = "manifest" if is_playlist else "segment"
        return f"{self.route_prefix}/{endpoint}?url={urllib.parse.quote(absolute_url, safe='')}"

    @staticmethod
    def is_playlist_reference(reference: str) -> bool:
        # Decided on what the playlist author wrote, before resolution.
        return reference.lower().endswith('.m3u8')

    def rewrite_line(self, line: str, base_url: str) -> str:
        line = line.strip()
        kind = self.classify(line)

        if kind == URI_LINE:
            absolute_url = resolve_url(line, base_url, self.log)
            return self.proxied_uri(absolute_url, self.is_playlist_reference(line))

        if kind == DIRECTIVE_WITH_URI:
            match = URI_ATTRIBUTE.search(line)
            original_uri = match.group(1)
            absolute_url = resolve_url(original_uri, base_url, self.log)
            is_playlist = (
                self.directive_name(line) in self.playlist_directives
                and self.is_playlist_reference(original_uri)
            )
            proxied = self.proxied_uri(absolute_url, is_playlist)
            return f'{line[:match.start()]}URI="{proxied}"{line[match.end():]}'

        return line

    def iter_rewritten_lines(self, lines: Iterable[str], base_url: str) -> Iterator[str]:
        for line in lines:
            yield self.rewrite_line(line, base_url)

    def rewrite(self, playlist_text: str, base_url: str) -> str:
        """
        Rewrites a playlist line by line. The number of lines is preserved:
        blank lines and unknown tags pass through, directive URIs and bare
        reference lines become proxy routes resolved against base_url.
        """
        lines: List[str] = playlist_text.split('\n')
        rewritten = '\n'.join(self.iter_rewritten_lines(lines, base_url))
        self.log.debug(f"Rewrote {len(lines)} playlist lines against {base_url}")
        return rewritten
