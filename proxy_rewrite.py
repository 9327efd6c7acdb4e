"""
HTML rewriting so that every link on a proxied page leads back through the proxy.

Each href/src/action/data attribute value is classified exactly once:

    absolute           http://a.com/x, https://a.com/x
    protocol-relative  //cdn.com/a.js   (https: is assumed)
    root-relative      /img/p.png       (joined to the target's origin)
    relative           img/p.png        (resolved against the full target URL)

and replaced with `{proxy_endpoint}?url={quoted absolute url}`. Fragments,
data:/javascript: values, other schemes and values that already point at the
proxy endpoint are left alone. A <base> tag and a small navigation script are
added to the <head> afterwards.
"""
import html as html_lib
import json
import logging
import re
from urllib.parse import urljoin, urlparse, urlsplit, parse_qs, quote

from proxy_resolve import TARGET_PARAMS

logger = logging.getLogger(__name__)

ABSOLUTE = 'absolute'
PROTOCOL_RELATIVE = 'protocol-relative'
ROOT_RELATIVE = 'root-relative'
RELATIVE = 'relative'

# data-* attributes are not URLs; the lookbehind keeps "data-src" out of "src"
_ATTR_PATTERN = re.compile(
    r'(?<![\w-])(?P<attr>href|src|action|data)(?P<eq>\s*=\s*)(?P<quote>["\'])(?P<value>.*?)(?P=quote)',
    re.IGNORECASE | re.DOTALL
)
_SCHEME_PATTERN = re.compile(r'^[a-zA-Z][a-zA-Z0-9+.\-]*:')
_HEAD_OPEN = re.compile(r'<head(?:\s[^>]*)?>', re.IGNORECASE)
_HEAD_CLOSE = re.compile(r'</head\s*>', re.IGNORECASE)
_BASE_TAG = re.compile(r'<base[\s/>]', re.IGNORECASE)

NAVIGATION_MARKER = "/* proxy-navigation */"

NAVIGATION_SCRIPT = '''
<script>
/* proxy-navigation */
(function() {
    var PROXY = __PROXY_ENDPOINT__;
    var TARGET = __TARGET_URL__;

    function proxied(url) {
        if (url === undefined || url === null) return url;
        url = String(url);
        if (/^\\s*(#|javascript:|data:|blob:|about:|mailto:|tel:)/i.test(url)) return url;
        if ((url.indexOf(PROXY + '?') === 0 || url.indexOf(location.origin + PROXY + '?') === 0) &&
            /[?&](url|src|link)=[^&]/.test(url)) return url;
        var abs;
        try {
            abs = new URL(url, TARGET).href;
        } catch (e) {
            return url;
        }
        if (!/^https?:/i.test(abs)) return url;
        return PROXY + '?url=' + encodeURIComponent(abs);
    }

    try {
        var loc = window.location;
        var assign = loc.assign.bind(loc);
        var replace = loc.replace.bind(loc);
        loc.assign = function(url) { return assign(proxied(url)); };
        loc.replace = function(url) { return replace(proxied(url)); };
    } catch (e) {}

    // Location.href is unforgeable in most browsers; this only takes where allowed
    try {
        var hrefDesc = Object.getOwnPropertyDescriptor(Location.prototype, 'href') ||
                       Object.getOwnPropertyDescriptor(window.location, 'href');
        Object.defineProperty(window.location, 'href', {
            configurable: true,
            get: function() { return hrefDesc.get.call(window.location); },
            set: function(url) { hrefDesc.set.call(window.location, proxied(url)); }
        });
    } catch (e) {}

    ['pushState', 'replaceState'].forEach(function(name) {
        var original = history[name];
        if (!original) return;
        history[name] = function(state, title, url) {
            if (url !== undefined && url !== null) url = proxied(url);
            return original.call(history, state, title, url);
        };
    });

    var originalOpen = window.open;
    window.open = function(url) {
        var args = Array.prototype.slice.call(arguments);
        if (args.length) args[0] = proxied(url);
        return originalOpen.apply(window, args);
    };
})();
</script>
'''


def classify(value):
    """Return which rewrite rule applies to an attribute value, or None."""
    if not value:
        return None
    lowered = value.lower()
    if lowered.startswith(('http://', 'https://')):
        return ABSOLUTE
    if value.startswith('//'):
        return PROTOCOL_RELATIVE
    if value.startswith('/'):
        return ROOT_RELATIVE
    if value.startswith('#') or _SCHEME_PATTERN.match(value):
        return None
    return RELATIVE


def _script_literal(value):
    return json.dumps(value).replace('</', '<\\/')


class HtmlRewriter:
    """One rewrite pass over a document fetched from `target_url`."""

    def __init__(self, target_url, proxy_endpoint):
        self.target_url = target_url
        self.proxy_endpoint = proxy_endpoint
        parsed = urlparse(target_url)
        self.origin = f"{parsed.scheme}://{parsed.netloc}"

    def wrap(self, absolute_url):
        return f"{self.proxy_endpoint}?url={quote(absolute_url, safe='')}"

    def is_wrapped(self, value):
        """A proxy link carries a target; the site's own /api/resource?page=2 does not."""
        if not value.startswith(self.proxy_endpoint + '?'):
            return False
        params = parse_qs(urlsplit(value).query)
        return any(params.get(name) for name in TARGET_PARAMS)

    def absolutize(self, value):
        """Turn an attribute value into the absolute URL it refers to, or None."""
        if self.is_wrapped(value):
            return None
        kind = classify(value)
        if kind == ABSOLUTE:
            return value
        if kind == PROTOCOL_RELATIVE:
            return 'https:' + value
        if kind == ROOT_RELATIVE:
            return self.origin + value
        if kind == RELATIVE:
            return urljoin(self.target_url, value)
        return None

    def rewrite_url(self, value):
        absolute = self.absolutize(value)
        return self.wrap(absolute) if absolute else None

    def _replace_attr(self, match):
        value = html_lib.unescape(match.group('value')).strip()
        rewritten = self.rewrite_url(value)
        if rewritten is None:
            return match.group(0)
        q = match.group('quote')
        return f"{match.group('attr')}{match.group('eq')}{q}{rewritten}{q}"

    def rewrite_attributes(self, html):
        return _ATTR_PATTERN.sub(self._replace_attr, html)

    def insert_base(self, html):
        if _BASE_TAG.search(html):
            return html
        head = _HEAD_OPEN.search(html)
        if not head:
            return html
        base = f'<base href="{self.wrap(self.origin + "/")}">'
        return html[:head.end()] + base + html[head.end():]

    def inject_script(self, html):
        if NAVIGATION_MARKER in html:
            return html
        script = (NAVIGATION_SCRIPT
                  .replace('__PROXY_ENDPOINT__', _script_literal(self.proxy_endpoint))
                  .replace('__TARGET_URL__', _script_literal(self.target_url)))
        close = _HEAD_CLOSE.search(html)
        if not close:
            return script + html
        return html[:close.start()] + script + html[close.start():]

    def rewrite(self, html):
        try:
            html_out = self.rewrite_attributes(html)
            html_out = self.insert_base(html_out)
            return self.inject_script(html_out)
        except Exception as e:
            logger.error(f"HTML rewrite failed for {self.target_url[:80]}: {e}")
            return html


def rewrite_html(html, target_url, proxy_endpoint):
    return HtmlRewriter(target_url, proxy_endpoint).rewrite(html)
