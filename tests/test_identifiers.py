"""Tests for rate-limit identifier resolution."""

from types import SimpleNamespace

import pytest

from quotagate.app.exceptions import IdentifierResolutionError
from quotagate.app.services.rate_limit import IdentifierMode, IdentifierResolver, RequestContext
from quotagate.app.services.rate_limit.identifiers import UNKNOWN_ADDRESS, client_address, normalize_address


class TestNormalizeAddress:

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("203.0.113.7", "203.0.113.7"),
            (" 203.0.113.7 ", "203.0.113.7"),
            ("2001:DB8:0:0::1", "2001:db8::1"),
            ("::ffff:203.0.113.7", "203.0.113.7"),
            ("testclient", "testclient"),
            ("", UNKNOWN_ADDRESS),
            (None, UNKNOWN_ADDRESS),
        ],
    )
    def test_variants(self, raw, expected):
        assert normalize_address(raw) == expected


class TestClientAddress:

    def test_forwarded_header_ignored_without_trusted_hops(self):
        context = RequestContext(remote_addr="10.0.0.1", forwarded_for=("198.51.100.9",))
        assert client_address(context, 0) == "10.0.0.1"

    def test_one_trusted_hop_takes_last_forwarded_entry(self):
        context = RequestContext(
            remote_addr="10.0.0.1",
            forwarded_for=("6.6.6.6", "198.51.100.9"),
        )
        assert client_address(context, 1) == "198.51.100.9"

    def test_two_trusted_hops(self):
        context = RequestContext(
            remote_addr="10.0.0.1",
            forwarded_for=("6.6.6.6", "198.51.100.9", "10.0.0.2"),
        )
        assert client_address(context, 2) == "198.51.100.9"

    def test_more_hops_than_chain_uses_first_entry(self):
        context = RequestContext(remote_addr="10.0.0.1", forwarded_for=("198.51.100.9",))
        assert client_address(context, 5) == "198.51.100.9"

    def test_missing_address(self):
        assert client_address(RequestContext(), 0) == UNKNOWN_ADDRESS
        assert client_address(RequestContext(), 1) == UNKNOWN_ADDRESS


class TestIdentifierResolver:

    def test_ip_mode(self):
        resolver = IdentifierResolver(IdentifierMode.IP)
        assert resolver.resolve(RequestContext(remote_addr="203.0.113.7")) == "203.0.113.7"

    def test_caller_key_mode(self):
        resolver = IdentifierResolver(IdentifierMode.CALLER_KEY)
        assert resolver.resolve(RequestContext(caller_key="key-ABC")) == "key-ABC"

    @pytest.mark.parametrize("caller_key", [None, "", "   "])
    def test_caller_key_missing(self, caller_key):
        resolver = IdentifierResolver(IdentifierMode.CALLER_KEY)

        with pytest.raises(IdentifierResolutionError) as exc_info:
            resolver.resolve(RequestContext(remote_addr="203.0.113.7", caller_key=caller_key))

        assert exc_info.value.status_code == 401
        assert exc_info.value.code == "IDENTIFIER_UNRESOLVED"

    def test_custom_mode(self):
        resolver = IdentifierResolver(IdentifierMode.CUSTOM, lambda ctx: f"tenant:{ctx.path.split('/')[1]}")
        assert resolver.resolve(RequestContext(path="/acme/items")) == "tenant:acme"

    @pytest.mark.parametrize("value", [None, "", "  "])
    def test_custom_mode_empty_identifier(self, value):
        resolver = IdentifierResolver(IdentifierMode.CUSTOM, lambda ctx: value)

        with pytest.raises(IdentifierResolutionError):
            resolver.resolve(RequestContext(path="/items"))

    def test_custom_mode_non_string_identifier(self):
        resolver = IdentifierResolver(IdentifierMode.CUSTOM, lambda ctx: 42)
        assert resolver.resolve(RequestContext()) == "42"

    def test_custom_mode_requires_extractor(self):
        with pytest.raises(ValueError):
            IdentifierResolver(IdentifierMode.CUSTOM)

    def test_negative_hops_rejected(self):
        with pytest.raises(ValueError):
            IdentifierResolver(IdentifierMode.IP, trusted_proxy_hops=-1)

    def test_mode_accepts_string_value(self):
        assert IdentifierResolver("caller_key").mode is IdentifierMode.CALLER_KEY


class TestRequestContext:

    def test_from_request(self):
        request = SimpleNamespace(
            headers={"x-forwarded-for": "198.51.100.9, 10.0.0.2"},
            url=SimpleNamespace(path="/api/v1/data"),
            client=SimpleNamespace(host="10.0.0.1"),
            state=SimpleNamespace(caller_key="key-1"),
            method="POST",
        )

        context = RequestContext.from_request(request)

        assert context.path == "/api/v1/data"
        assert context.remote_addr == "10.0.0.1"
        assert context.forwarded_for == ("198.51.100.9", "10.0.0.2")
        assert context.caller_key == "key-1"
        assert context.method == "POST"

    def test_from_request_without_client_or_key(self):
        request = SimpleNamespace(
            headers={},
            url=SimpleNamespace(path="/"),
            client=None,
            state=SimpleNamespace(),
            method="GET",
        )

        context = RequestContext.from_request(request)

        assert context.remote_addr is None
        assert context.caller_key is None
        assert context.forwarded_for == ()
