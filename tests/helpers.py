"""Shared helpers for faking HTTP sessions in tests."""

from unittest.mock import MagicMock

import requests

IPV4_URL = "https://example.com/ips-v4"
IPV6_URL = "https://example.com/ips-v6"


def make_response(url, status=200, body=b""):
    """Build a real requests.Response with the given status and body."""
    response = requests.Response()
    response.status_code = status
    response._content = body
    response.url = url
    response.reason = "OK" if status < 400 else "Error"
    return response


def make_session_factory(routes):
    """
    Session factory serving canned responses.

    ``routes`` maps a URL to (status, body) or to an exception instance.
    """
    calls = []

    def get(url, **kwargs):
        calls.append((url, kwargs))
        result = routes[url]
        if isinstance(result, Exception):
            raise result
        status, body = result
        return make_response(url, status, body)

    def factory():
        session = MagicMock(spec=requests.Session)
        session.get.side_effect = get
        return session

    factory.calls = calls
    return factory
