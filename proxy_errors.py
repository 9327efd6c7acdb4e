"""
Error taxonomy for the resource proxy.

Every failure that reaches the client is a ProxyError subclass; the Flask
error handler in stealth_proxy turns it into a JSON response using the
status and label carried by the class.
"""


class ProxyError(Exception):
    status_code = 500
    label = 'Internal error'

    def __init__(self, message=None):
        super().__init__(message or self.label)
        self.message = message or self.label

    def to_dict(self):
        return {'error': self.label, 'message': self.message}


class MissingTarget(ProxyError):
    status_code = 400
    label = 'Missing parameter'

    def __init__(self, params=('url', 'src', 'link')):
        names = ', '.join(params[:-1]) + ', or ' + params[-1] if len(params) > 1 else params[0]
        super().__init__(f'Required parameter: {names}')


class InvalidUrl(ProxyError):
    status_code = 400
    label = 'Invalid URL'


class UnresolvableReferer(ProxyError):
    status_code = 404
    label = 'Not found'


class FetchTimeout(ProxyError):
    status_code = 504
    label = 'Timeout'

    def __init__(self, message='Resource unavailable'):
        super().__init__(message)


class UpstreamUnreachable(ProxyError):
    status_code = 500
    label = 'Fetch failed'
