"""Outbound fetch with browser-like headers and a hard deadline."""
import logging
import socket
import threading
import time
from dataclasses import dataclass

import requests

from proxy_errors import FetchTimeout, UpstreamUnreachable

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15
CONNECT_TIMEOUT = 5
CHUNK_SIZE = 8192
DEFAULT_CONTENT_TYPE = 'text/html'

# Looks like a top-level navigation from desktop Chrome.
# No 'br' in Accept-Encoding: requests can only decode it with brotli installed.
DISGUISE_HEADERS = {
    'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
    'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,image/apng,*/*;q=0.8',
    'Accept-Language': 'en-US,en;q=0.9',
    'Accept-Encoding': 'gzip, deflate',
    'Cache-Control': 'no-cache',
    'Pragma': 'no-cache',
    'Sec-Fetch-Dest': 'document',
    'Sec-Fetch-Mode': 'navigate',
    'Sec-Fetch-Site': 'none',
    'Upgrade-Insecure-Requests': '1',
    'Connection': 'keep-alive',
}


@dataclass
class FetchResult:
    body: bytes
    content_type: str
    status_code: int
    encoding: str = None

    @property
    def ok(self):
        return self.status_code < 400

    @property
    def is_html(self):
        return 'text/html' in self.content_type.lower()

    @property
    def text(self):
        return self.body.decode(self.encoding or 'utf-8', errors='replace')


def _abort(resp, expired):
    """Watchdog callback: tear the connection down so a blocked read returns."""
    expired.set()
    conn = getattr(resp.raw, '_connection', None)
    sock = getattr(conn, 'sock', None)
    if sock is not None:
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass  # already closed
    resp.close()


class UpstreamFetcher:
    """Single-attempt GET; network failures raise, HTTP error statuses do not."""

    def __init__(self, timeout=DEFAULT_TIMEOUT, clock=time.monotonic):
        self.timeout = timeout
        self._clock = clock

    def fetch(self, url):
        deadline = self._clock() + self.timeout
        connect_timeout = min(CONNECT_TIMEOUT, self.timeout / 2)
        try:
            resp = requests.get(
                url,
                headers=DISGUISE_HEADERS,
                timeout=(connect_timeout, self.timeout - connect_timeout),
                stream=True,
                allow_redirects=True
            )
        except requests.exceptions.Timeout:
            raise FetchTimeout()
        except requests.exceptions.RequestException as e:
            raise UpstreamUnreachable(str(e))

        # requests' read timeout is per socket read, so a body trickling in
        # one byte at a time never trips it. The timer bounds the whole read.
        expired = threading.Event()
        watchdog = threading.Timer(max(deadline - self._clock(), 0), _abort, args=(resp, expired))
        watchdog.daemon = True
        watchdog.start()

        try:
            chunks = []
            for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                if chunk:
                    chunks.append(chunk)
                if expired.is_set() or self._clock() > deadline:
                    raise FetchTimeout()
        except FetchTimeout:
            logger.warning(f"Deadline of {self.timeout}s passed while reading {url[:80]}")
            raise
        except requests.exceptions.Timeout:
            raise FetchTimeout()
        except requests.exceptions.RequestException as e:
            # read timeouts while streaming surface as ConnectionError
            if expired.is_set() or self._clock() > deadline:
                raise FetchTimeout()
            raise UpstreamUnreachable(str(e))
        except (OSError, ValueError, AttributeError):
            # reading from a connection the watchdog closed underneath us
            if expired.is_set():
                logger.warning(f"Deadline of {self.timeout}s passed while reading {url[:80]}")
                raise FetchTimeout()
            raise
        finally:
            watchdog.cancel()
            resp.close()

        if expired.is_set():
            # the body ended early because the watchdog cut it
            logger.warning(f"Deadline of {self.timeout}s passed while reading {url[:80]}")
            raise FetchTimeout()

        content_type = resp.headers.get('Content-Type') or DEFAULT_CONTENT_TYPE
        # requests falls back to ISO-8859-1 for text/* without a charset
        encoding = resp.encoding if 'charset' in content_type.lower() else None

        return FetchResult(
            body=b''.join(chunks),
            content_type=content_type,
            status_code=resp.status_code,
            encoding=encoding
        )
