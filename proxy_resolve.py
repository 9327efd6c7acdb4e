"""Target URL resolution from query parameters or from the Referer header."""
import logging
from urllib.parse import urlparse, urlsplit, parse_qs, quote

from proxy_errors import MissingTarget, InvalidUrl, UnresolvableReferer

logger = logging.getLogger(__name__)

# Checked in this order; the first non-empty one wins
TARGET_PARAMS = ('url', 'src', 'link')
LEGACY_ENDPOINT = '/proxy'

# RFC 3986 pchar sub-delims plus "/"; everything else gets percent-encoded
PATH_SAFE = "/:@!$&'()*+,;=~"


def validate_url(candidate):
    """Return candidate if it parses as an absolute URL (scheme + host)."""
    try:
        parsed = urlparse(candidate)
    except ValueError as e:
        raise InvalidUrl(f'Could not parse URL: {e}')

    if not parsed.scheme or not parsed.netloc:
        raise InvalidUrl(f'Not an absolute URL: {candidate[:200]}')
    return candidate


def resolve_target(args):
    """Pick the target URL out of the request arguments."""
    for name in TARGET_PARAMS:
        value = args.get(name)
        if value:
            return validate_url(value)
    raise MissingTarget(TARGET_PARAMS)


def inbound_path(environ, path):
    """
    The request path as the client sent it.

    Werkzeug hands views a percent-decoded path, which turns an encoded
    "?" or "/" into a real one. Prefer the raw request URI when the server
    exposes it, otherwise re-quote the decoded path.
    """
    raw = environ.get('RAW_URI') or environ.get('REQUEST_URI')
    if raw:
        raw = raw.split('?', 1)[0]
        if not raw.startswith('/'):
            # absolute-form request target
            raw = urlsplit(raw).path
        if raw:
            return raw
    return quote(path, safe=PATH_SAFE)


def origin_of(url):
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


def resolve_from_referer(referer, path, query_string, proxy_endpoint):
    """
    Rebuild the original-site URL for a request that escaped rewriting.

    The referer must be a proxied page (proxy endpoint with a target
    parameter). Its target's origin is combined with the current inbound
    path and query string.
    """
    if not referer:
        raise UnresolvableReferer('No Referer header')

    ref = urlparse(referer)
    if ref.path.rstrip('/') not in (proxy_endpoint.rstrip('/'), LEGACY_ENDPOINT):
        raise UnresolvableReferer(f'Referer is not a proxied page: {referer[:200]}')

    params = parse_qs(ref.query)
    embedded = None
    for name in TARGET_PARAMS:
        if params.get(name):
            embedded = params[name][0]
            break
    if not embedded:
        raise UnresolvableReferer('Referer carries no target parameter')

    try:
        validate_url(embedded)
    except InvalidUrl as e:
        raise UnresolvableReferer(e.message)

    if isinstance(query_string, bytes):
        query_string = query_string.decode('utf-8', errors='replace')

    target = origin_of(embedded) + path
    if query_string:
        target += '?' + query_string

    logger.debug(f"Referer {referer[:80]} -> {target[:80]}")
    return target
