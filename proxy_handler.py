"""
Per-request orchestration: resolve -> cache -> fetch -> rewrite -> store -> respond.

ProxyService owns everything that outlives a single request (cache, fetcher,
rate limiter, counters) and is stored on the Flask app so views never touch
module-level state.
"""
import logging
import threading
import time
from contextlib import contextmanager
from urllib.parse import quote

from flask import Response, redirect

from proxy_cache import is_cacheable_size
from proxy_errors import ProxyError, UnresolvableReferer
from proxy_resolve import resolve_target, resolve_from_referer
from proxy_rewrite import rewrite_html

logger = logging.getLogger(__name__)

CONTENT_SOURCE = 'Academic-Repository'

NOT_FOUND_PAGE = '''<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <title>Resource not found</title>
    <style>
        body { font-family: system-ui, -apple-system, sans-serif; background: #f8f9fa; color: #212529; padding: 40px; }
        .card { max-width: 640px; margin: 0 auto; background: white; border-radius: 8px; padding: 2rem; box-shadow: 0 1px 3px rgba(0,0,0,0.1); }
        h1 { color: #1e3a8a; font-size: 1.5rem; margin-bottom: 1rem; }
        code { background: #f1f5f9; padding: 2px 6px; border-radius: 4px; }
    </style>
</head>
<body>
    <div class="card">
        <h1>Direct path access is not supported</h1>
        <p>This path could not be matched to a previously opened resource.</p>
        <p>Open resources through <code>__PROXY_ENDPOINT__?url=https://example.com/</code> instead.</p>
    </div>
</body>
</html>
'''


def log_request(mode, method, url, status="→"):
    """Consistent logging format"""
    logger.info(f"[{mode.upper():8}] {status} {method:4} {url[:80]}")


class RequestCounters:
    """Active and total proxied requests, updated under a lock."""

    def __init__(self):
        self._lock = threading.Lock()
        self.active_connections = 0
        self.total_requests = 0

    def enter(self):
        with self._lock:
            self.active_connections += 1
            self.total_requests += 1
            return self.active_connections

    def exit(self):
        with self._lock:
            self.active_connections -= 1

    @contextmanager
    def track(self):
        active = self.enter()
        try:
            yield active
        finally:
            self.exit()

    def snapshot(self):
        with self._lock:
            return {
                'active_connections': self.active_connections,
                'total_requests': self.total_requests,
            }


class ProxyService:

    def __init__(self, proxy_endpoint, cache, fetcher, limiter=None, counters=None):
        self.proxy_endpoint = proxy_endpoint
        self.cache = cache
        self.fetcher = fetcher
        self.limiter = limiter
        self.counters = counters or RequestCounters()
        self.sweeper = None
        self.started_at = time.time()

    def uptime(self):
        return time.time() - self.started_at

    def _respond(self, body, content_type, cache_status):
        return Response(body, status=200, headers={
            'Content-Type': content_type,
            'X-Cache-Status': cache_status,
            'X-Content-Source': CONTENT_SOURCE,
        })

    def _cached(self, target_url):
        try:
            return self.cache.get(target_url)
        except Exception as e:
            logger.warning(f"Cache read failed for {target_url[:80]}: {e}")
            return None

    def _rewrite(self, result, target_url):
        encoding = result.encoding or 'utf-8'
        try:
            html = rewrite_html(result.text, target_url, self.proxy_endpoint)
            return html.encode(encoding, errors='xmlcharrefreplace')
        except (LookupError, UnicodeError) as e:
            logger.error(f"HTML rewrite failed for {target_url[:80]}: {e}")
            return result.body

    def handle(self, args):
        """Serve one proxied request; ProxyErrors propagate to the app's error handler."""
        with self.counters.track() as active:
            target_url = resolve_target(args)

            cached = self._cached(target_url)
            if cached is not None:
                log_request('cache', 'GET', target_url, 'HIT')
                return self._respond(cached.body, cached.content_type, 'HIT')

            log_request('fetch', 'GET', target_url, f"Active: {active}")
            try:
                result = self.fetcher.fetch(target_url)
            except ProxyError as e:
                log_request('error', 'GET', target_url, f"✗ {e.message}")
                raise

            body = result.body
            if result.is_html:
                body = self._rewrite(result, target_url)

            if result.ok and is_cacheable_size(body):
                self.cache.put(target_url, body, result.content_type)

            log_request('fetch', 'GET', target_url, f"✓ {result.status_code} {len(body)}b")
            return self._respond(body, result.content_type, 'MISS')

    def fallback(self, referer, path, query_string):
        """Redirect a stray same-origin request back through the proxy endpoint."""
        try:
            target_url = resolve_from_referer(referer, path, query_string, self.proxy_endpoint)
        except UnresolvableReferer as e:
            log_request('fallback', 'GET', path, f"✗ {e.message}")
            page = NOT_FOUND_PAGE.replace('__PROXY_ENDPOINT__', self.proxy_endpoint)
            return Response(page, status=404, mimetype='text/html')

        log_request('fallback', 'GET', path, f"→ {target_url[:60]}")
        return redirect(f"{self.proxy_endpoint}?url={quote(target_url, safe='')}", code=302)
