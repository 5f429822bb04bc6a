import logging
from urllib.parse import urljoin, urlsplit, urlunsplit

logger = logging.getLogger(__name__)


def is_absolute_url(reference: str) -> bool:
    """True if the reference carries its own scheme (e.g. https://, skd://)."""
    try:
        return bool(urlsplit(reference).scheme)
    except ValueError:
        return False


def base_directory(base_url: str) -> str:
    """Strip the last path segment of base_url, keeping the trailing slash."""
    parts = urlsplit(base_url)
    directory = parts.path[:parts.path.rfind('/') + 1] or '/'
    return urlunsplit((parts.scheme, parts.netloc, directory, '', ''))


def resolve_url(reference: str, base_url: str, log: logging.Logger = None) -> str:
    """
    Resolves a URI found inside a playlist against the URL the playlist was
    fetched from. Never raises: if parsing fails the original reference is
    returned unchanged.
    """
    log = log or logger
    try:
        if is_absolute_url(reference):
            return reference
        resolved = urljoin(base_directory(base_url), reference)
        if not urlsplit(resolved).netloc:
            raise ValueError(f"no host after resolution against {base_url!r}")
        return resolved
    except ValueError as e:
        log.warning(f"⚠️ Could not resolve URI {reference!r} against {base_url!r}: {e}")
        return reference
