"""
Tests for client connection descriptors.

Tests cover:
- Credential generation and mask-domain choice
- anytls:// URI, Surge line and manual fields
- Public IP lookup with fallback and placeholder
"""

from __future__ import annotations

import random
import string

import httpx
import pytest

from anytlsctl.export import (
    COMMON_MASK_DOMAINS,
    IP_PLACEHOLDER,
    build_export,
    build_surge_line,
    build_uri,
    choose_mask_domain,
    default_profile_name,
    generate_credential,
    get_public_ip,
    manual_fields,
)
from anytlsctl.lifecycle.store import ServiceConfig


class TestGenerateCredential:
    """Tests for generate_credential."""

    def test_default_length_and_alphabet(self) -> None:
        """32 alphanumeric characters by default."""
        credential = generate_credential()

        assert len(credential) == 32
        assert set(credential) <= set(string.ascii_letters + string.digits)

    def test_not_repeated(self) -> None:
        """Two credentials differ."""
        assert generate_credential() != generate_credential()

    def test_invalid_length(self) -> None:
        """Zero length is rejected."""
        with pytest.raises(ValueError):
            generate_credential(0)


class TestChooseMaskDomain:
    """Tests for choose_mask_domain."""

    def test_seeded_choice_is_stable(self) -> None:
        """The same seed picks the same domain."""
        first = choose_mask_domain(random.Random(42))
        second = choose_mask_domain(random.Random(42))

        assert first == second
        assert first in COMMON_MASK_DOMAINS


class TestDescriptors:
    """Tests for URI, Surge line and manual fields."""

    def test_uri(self) -> None:
        """URI carries port, insecure flag, SNI and the profile name."""
        config = ServiceConfig(port=8443, credential="abc123", mask_domain="www.bing.com")

        uri = build_uri(config, "203.0.113.7", "AnyTLS_edge")

        assert uri == (
            "anytls://abc123@203.0.113.7:8443/?insecure=1&sni=www.bing.com#AnyTLS_edge"
        )

    def test_uri_without_mask_domain(self) -> None:
        """An empty mask domain omits sni."""
        uri = build_uri(ServiceConfig(credential="abc123"), "203.0.113.7", "n")

        assert "sni=" not in uri
        assert uri.endswith("/?insecure=1#n")

    def test_uri_quotes_and_brackets(self) -> None:
        """Reserved characters are escaped and IPv6 hosts bracketed."""
        config = ServiceConfig(port=443, credential="a@b:c/d")

        uri = build_uri(config, "2001:db8::1", "my server")

        assert uri.startswith("anytls://a%40b%3Ac%2Fd@[2001:db8::1]:443/")
        assert uri.endswith("#my%20server")

    def test_surge_line(self) -> None:
        """Surge entry with certificate verification disabled."""
        config = ServiceConfig(port=8443, credential="abc123", mask_domain="www.bing.com")

        line = build_surge_line(config, "203.0.113.7", "AnyTLS_edge")

        assert line == (
            "AnyTLS_edge = anytls, 203.0.113.7, 8443, password=abc123, "
            "skip-cert-verify=true, sni=www.bing.com"
        )

    def test_manual_fields(self) -> None:
        """Manual fields list every connection parameter."""
        fields = dict(manual_fields(ServiceConfig(credential="abc123"), "h", "n"))

        assert fields["Port"] == "8443"
        assert fields["Password"] == "abc123"
        assert fields["Remark"] == "n"
        assert "empty" in fields["SNI"]

    def test_render(self) -> None:
        """The rendered block has one section per format."""
        export = build_export(ServiceConfig(credential="abc123"), "203.0.113.7", "n")

        text = export.render()

        assert "== AnyTLS URI ==" in text
        assert "[Proxy]" in text
        assert "Host: 203.0.113.7" in text
        assert text.endswith("\n")

    def test_default_profile_name(self) -> None:
        """Profile names are prefixed with AnyTLS_."""
        assert default_profile_name("edge-1") == "AnyTLS_edge-1"


class TestGetPublicIp:
    """Tests for get_public_ip."""

    @pytest.mark.asyncio
    async def test_first_service_answers(self) -> None:
        """The first valid answer wins."""
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text="198.51.100.4\n"))

        assert await get_public_ip(("https://ip.test",), transport=transport) == "198.51.100.4"

    @pytest.mark.asyncio
    async def test_falls_back_to_second_service(self) -> None:
        """Errors and garbage move on to the next service."""

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "first.test":
                return httpx.Response(503)
            if request.url.host == "second.test":
                return httpx.Response(200, text="<html>nope</html>")
            return httpx.Response(200, text="2001:db8::5")

        ip = await get_public_ip(
            ("https://first.test", "https://second.test", "https://third.test"),
            transport=httpx.MockTransport(handler),
        )

        assert ip == "2001:db8::5"

    @pytest.mark.asyncio
    async def test_placeholder_when_all_fail(self) -> None:
        """No answer yields the placeholder."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("unreachable", request=request)

        ip = await get_public_ip(
            ("https://a.test", "https://b.test"), transport=httpx.MockTransport(handler)
        )

        assert ip == IP_PLACEHOLDER
