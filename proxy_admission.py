"""Per-client fixed-window rate limiting for the proxy endpoint."""
import logging
import math
import threading
import time
from dataclasses import dataclass
from functools import wraps

from flask import request, jsonify, current_app

logger = logging.getLogger(__name__)

RATE_LIMIT_WINDOW = 15 * 60  # seconds
RATE_LIMIT_MAX = 100


@dataclass
class Decision:
    allowed: bool
    limit: int
    remaining: int
    reset_in: float


class RateLimiter:
    """At most `max_requests` per client within each `window`-second window."""

    def __init__(self, window=RATE_LIMIT_WINDOW, max_requests=RATE_LIMIT_MAX, clock=time.monotonic):
        self.window = window
        self.max_requests = max_requests
        self._clock = clock
        self._windows = {}  # client -> (window_start, count)
        self._lock = threading.Lock()

    def hit(self, client):
        now = self._clock()
        with self._lock:
            start, count = self._windows.get(client, (now, 0))
            if now - start >= self.window:
                start, count = now, 0
            count += 1
            self._windows[client] = (start, count)

            # drop windows nobody has touched for a while
            if len(self._windows) > 10000:
                self._windows = {
                    k: v for k, v in self._windows.items() if now - v[0] < self.window
                }

        return Decision(
            allowed=count <= self.max_requests,
            limit=self.max_requests,
            remaining=max(self.max_requests - count, 0),
            reset_in=max(self.window - (now - start), 0)
        )

    def reset(self):
        with self._lock:
            self._windows.clear()


def _client_key():
    forwarded = request.headers.get('X-Forwarded-For', '')
    if forwarded:
        return forwarded.split(',')[0].strip()
    return request.remote_addr or 'unknown'


def rate_limited(view):
    """Apply the app's RateLimiter (if any) before running the view."""

    @wraps(view)
    def wrapper(*args, **kwargs):
        limiter = current_app.extensions['stealth_proxy'].limiter
        if limiter is None:
            return view(*args, **kwargs)

        decision = limiter.hit(_client_key())
        reset = str(math.ceil(decision.reset_in))
        if not decision.allowed:
            logger.warning(f"Rate limit exceeded for {_client_key()}")
            resp = jsonify({
                'error': 'Rate limit exceeded',
                'message': f'At most {decision.limit} requests per {limiter.window} seconds'
            })
            resp.status_code = 429
            resp.headers['Retry-After'] = reset
        else:
            resp = current_app.make_response(view(*args, **kwargs))

        resp.headers['RateLimit-Limit'] = str(decision.limit)
        resp.headers['RateLimit-Remaining'] = str(decision.remaining)
        resp.headers['RateLimit-Reset'] = reset
        return resp

    return wrapper
