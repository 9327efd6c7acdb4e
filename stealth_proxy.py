#!/usr/bin/env python3
"""
STEALTH PROXY - Resource delivery through a single API-looking endpoint

    /api/resource?url=...   fetch, rewrite links, cache, return
    /proxy?url=...          old endpoint, same handler
    /                       status page
    anything else           redirect back through /api/resource using the Referer
"""
import argparse
import logging
import os
import sys

from flask import Flask, request, jsonify, render_template_string
from flask_compress import Compress
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from proxy_admission import RateLimiter, rate_limited
from proxy_cache import ResponseCache, CacheSweeper
from proxy_errors import ProxyError
from proxy_fetch import UpstreamFetcher
from proxy_handler import ProxyService
from proxy_resolve import inbound_path

logger = logging.getLogger(__name__)

POWERED_BY = 'Educational-Platform/2.0'

# --- Configuration ---
# Every key can be overridden with an environment variable of the same name.
DEFAULTS = {
    'HOST': '0.0.0.0',
    'PORT': 3000,
    'PROXY_ENDPOINT': '/api/resource',
    'CACHE_TTL_SECONDS': 5 * 60,
    'CACHE_SWEEP_SECONDS': 10 * 60,
    'CACHE_SWEEP_ENABLED': True,
    'CACHE_MAX_ENTRIES': 500,          # 0 or less: unbounded
    'FETCH_TIMEOUT_SECONDS': 15,
    'RATE_LIMIT_ENABLED': True,
    'RATE_LIMIT_WINDOW_SECONDS': 15 * 60,
    'RATE_LIMIT_MAX': 100,
    'LOG_LEVEL': 'INFO',
    'LOG_FILE': '',
}
# ---------------------

LOG_FORMAT = '[%(asctime)s] [%(levelname)s] %(message)s'


def _coerce(raw, default):
    if isinstance(default, bool):
        return raw.strip().lower() in ('1', 'true', 'yes', 'on')
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw


def load_config(overrides=None, environ=None):
    environ = os.environ if environ is None else environ
    config = dict(DEFAULTS)
    for key, default in DEFAULTS.items():
        if key in environ:
            try:
                config[key] = _coerce(environ[key], default)
            except ValueError:
                logger.warning(f"Ignoring invalid value for {key}: {environ[key]!r}")
    config.update(overrides or {})

    endpoint = config['PROXY_ENDPOINT']
    if not endpoint.startswith('/'):
        endpoint = '/' + endpoint
    config['PROXY_ENDPOINT'] = endpoint.rstrip('/') or '/api/resource'
    return config


def configure_logging(level='INFO', log_file=''):
    formatter = logging.Formatter(LOG_FORMAT)
    root = logging.getLogger()
    root.setLevel(level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)


HOMEPAGE = '''<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Educational Resource Platform</title>
    <style>
        * { margin: 0; padding: 0; box-sizing: border-box; }
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; background: #f8f9fa; color: #212529; line-height: 1.6; }
        .header { background: linear-gradient(135deg, #1e3a8a 0%, #3b82f6 100%); color: white; padding: 2rem; text-align: center; }
        .container { max-width: 1000px; margin: 2rem auto; padding: 0 1rem; }
        .card { background: white; border-radius: 8px; padding: 2rem; margin-bottom: 1.5rem; box-shadow: 0 1px 3px rgba(0,0,0,0.1); }
        .card h2 { color: #1e3a8a; margin-bottom: 1rem; }
        .stats { display: grid; grid-template-columns: repeat(auto-fit, minmax(200px, 1fr)); gap: 1rem; }
        .stat { background: #f1f5f9; padding: 1.5rem; border-radius: 6px; text-align: center; }
        .stat-value { font-size: 2rem; font-weight: bold; color: #3b82f6; display: block; }
        .stat-label { color: #64748b; font-size: 0.875rem; }
        .status-badge { background: #10b981; color: white; padding: 0.25rem 0.75rem; border-radius: 1rem; font-size: 0.875rem; }
        li { padding: 0.5rem 0; list-style: none; }
    </style>
</head>
<body>
    <div class="header">
        <h1>Educational Resource Platform</h1>
        <p>Secure Academic Content Delivery System</p>
    </div>
    <div class="container">
        <div class="card">
            <h2>System Status <span class="status-badge">Operational</span></h2>
            <div class="stats">
                <div class="stat"><span class="stat-value">{{ active }}</span><span class="stat-label">Active Sessions</span></div>
                <div class="stat"><span class="stat-value">{{ total }}</span><span class="stat-label">Resources Delivered</span></div>
                <div class="stat"><span class="stat-value">{{ cached }}</span><span class="stat-label">Cached Resources</span></div>
                <div class="stat"><span class="stat-value">{{ hours }}h {{ minutes }}m</span><span class="stat-label">Uptime</span></div>
            </div>
        </div>
        <div class="card">
            <h2>Technical Specifications</h2>
            <ul>
                <li>Endpoint: {{ endpoint }}?url=...</li>
                <li>Cache Duration: {{ ttl_minutes }} minutes</li>
                <li>Rate Limit: {{ rate_limit }}</li>
                <li>Compression: Enabled</li>
            </ul>
        </div>
    </div>
</body>
</html>
'''


def build_service(config):
    max_entries = config['CACHE_MAX_ENTRIES']
    cache = ResponseCache(
        ttl=config['CACHE_TTL_SECONDS'],
        max_entries=max_entries if max_entries and max_entries > 0 else None
    )
    limiter = None
    if config['RATE_LIMIT_ENABLED']:
        limiter = RateLimiter(
            window=config['RATE_LIMIT_WINDOW_SECONDS'],
            max_requests=config['RATE_LIMIT_MAX']
        )
    return ProxyService(
        proxy_endpoint=config['PROXY_ENDPOINT'],
        cache=cache,
        fetcher=UpstreamFetcher(timeout=config['FETCH_TIMEOUT_SECONDS']),
        limiter=limiter
    )


def create_app(overrides=None, service=None):
    config = load_config(overrides)

    app = Flask(__name__)
    app.config.update(config)
    CORS(app, origins='*', send_wildcard=True,
         methods=['GET', 'POST', 'OPTIONS'], allow_headers=['Content-Type'])
    Compress(app)

    service = service or build_service(config)
    app.extensions['stealth_proxy'] = service

    if config['CACHE_SWEEP_ENABLED']:
        service.sweeper = CacheSweeper(service.cache, interval=config['CACHE_SWEEP_SECONDS'])
        service.sweeper.start()

    endpoint = config['PROXY_ENDPOINT']

    @app.route('/')
    def index():
        """Status page"""
        counters = service.counters.snapshot()
        uptime = int(service.uptime())
        if service.limiter:
            rate_limit = f"{service.limiter.max_requests} requests per {service.limiter.window // 60} minutes"
        else:
            rate_limit = 'disabled'
        return render_template_string(
            HOMEPAGE,
            active=counters['active_connections'],
            total=counters['total_requests'],
            cached=len(service.cache),
            hours=uptime // 3600,
            minutes=(uptime % 3600) // 60,
            endpoint=endpoint,
            ttl_minutes=service.cache.ttl // 60,
            rate_limit=rate_limit
        )

    @app.route(endpoint)
    @rate_limited
    def resource():
        """Main proxy endpoint (url, src or link)"""
        return service.handle(request.args)

    @app.route('/proxy')
    @rate_limited
    def legacy_proxy():
        """Backwards-compatible endpoint; only forwards `url`"""
        return service.handle({'url': request.args.get('url', '')})

    @app.route('/<path:path>')
    def navigation_fallback(path):
        return service.fallback(
            request.headers.get('Referer'),
            inbound_path(request.environ, request.path),
            request.query_string
        )

    @app.after_request
    def powered_by(resp):
        resp.headers['X-Powered-By'] = POWERED_BY
        return resp

    @app.errorhandler(ProxyError)
    def handle_proxy_error(e):
        resp = jsonify(e.to_dict())
        resp.status_code = e.status_code
        return resp

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        if isinstance(e, HTTPException):
            return e
        logger.exception(f"Unhandled error on {request.path}: {e}")
        return jsonify({'error': 'Internal error'}), 500

    return app


def main(argv=None):
    parser = argparse.ArgumentParser(description='Link-rewriting resource proxy')
    parser.add_argument('--host', help='interface to bind (default: $HOST or 0.0.0.0)')
    parser.add_argument('--port', type=int, help='port to listen on (default: $PORT or 3000)')
    args = parser.parse_args(argv)

    overrides = {}
    if args.host:
        overrides['HOST'] = args.host
    if args.port:
        overrides['PORT'] = args.port

    config = load_config(overrides)
    configure_logging(config['LOG_LEVEL'], config['LOG_FILE'])
    app = create_app(overrides)

    logger.info("=" * 70)
    logger.info("STEALTH PROXY - Educational Resource Platform")
    logger.info("=" * 70)
    logger.info(f"Endpoint:   {config['PROXY_ENDPOINT']}?url=...  (aliases: src, link)")
    logger.info(f"Cache:      {config['CACHE_TTL_SECONDS']}s TTL, sweep every {config['CACHE_SWEEP_SECONDS']}s")
    logger.info(f"Rate limit: {config['RATE_LIMIT_MAX']} per {config['RATE_LIMIT_WINDOW_SECONDS']}s")
    logger.info(f"Starting server on http://{config['HOST']}:{config['PORT']}")

    app.run(host=config['HOST'], port=config['PORT'], debug=False, threaded=True)


if __name__ == '__main__':
    main()
