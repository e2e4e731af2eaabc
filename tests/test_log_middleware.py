"""
Tests for the client key used by rate limiting and audit records.
"""

from typing import Optional

import pytest
from starlette.requests import Request

from bulkorder.core.log_middleware import client_key_for


def _request(peer: Optional[str], forwarded: Optional[str] = None) -> Request:
    headers = []
    if forwarded is not None:
        headers.append((b"x-forwarded-for", forwarded.encode()))
    return Request({
        "type": "http",
        "method": "POST",
        "path": "/api/bulk-orders/upload",
        "headers": headers,
        "client": (peer, 50000) if peer else None,
    })


class TestClientKey:
    def test_peer_address_without_proxies(self):
        assert client_key_for(_request("198.51.100.7"), trusted_proxies=[]) == "198.51.100.7"

    def test_forwarded_header_ignored_from_untrusted_peer(self):
        request = _request("198.51.100.7", forwarded="10.9.9.9")
        assert client_key_for(request, trusted_proxies=["10.0.0.0/8"]) == "198.51.100.7"

    def test_forwarded_header_ignored_when_no_proxies_configured(self):
        request = _request("10.0.0.2", forwarded="203.0.113.9")
        assert client_key_for(request, trusted_proxies=[]) == "10.0.0.2"

    @pytest.mark.parametrize(
        "forwarded, expected",
        [
            ("203.0.113.9", "203.0.113.9"),
            ("1.2.3.4, 203.0.113.9", "203.0.113.9"),
            ("203.0.113.9, 10.0.0.7", "203.0.113.9"),
            ("10.0.0.8, 10.0.0.7", "10.0.0.8"),
            ("", "10.0.0.2"),
        ],
    )
    def test_trusted_proxy_chain(self, forwarded, expected):
        request = _request("10.0.0.2", forwarded=forwarded)
        assert client_key_for(request, trusted_proxies=["10.0.0.0/8"]) == expected

    def test_single_address_entry(self):
        request = _request("192.0.2.1", forwarded="203.0.113.9")
        assert client_key_for(request, trusted_proxies=["192.0.2.1"]) == "203.0.113.9"

    def test_non_ip_peer_is_never_trusted(self):
        request = _request("testclient", forwarded="203.0.113.9")
        assert client_key_for(request, trusted_proxies=["0.0.0.0/0"]) == "testclient"

    def test_missing_peer(self):
        assert client_key_for(_request(None), trusted_proxies=[]) == "unknown"
