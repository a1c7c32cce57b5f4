import pytest

from safe_proxy.target import (
    Accepted,
    Rejected,
    RejectionReason,
    TargetDescriptor,
    is_allowlisted,
    is_private_or_literal_host,
    validate,
)

ALLOWLIST = frozenset({"example.com", "api.partner.org"})


def reason_of(raw, allowlist=ALLOWLIST):
    verdict = validate(raw, allowlist)
    assert isinstance(verdict, Rejected), f"expected rejection for {raw!r}, got {verdict}"
    return verdict.reason


def descriptor_of(raw, allowlist=ALLOWLIST) -> TargetDescriptor:
    verdict = validate(raw, allowlist)
    assert isinstance(verdict, Accepted), f"expected acceptance for {raw!r}, got {verdict}"
    return verdict.descriptor


class TestPresence:
    @pytest.mark.parametrize("raw", [None, "", "   ", "\t"])
    def test_missing_target(self, raw):
        assert reason_of(raw) == RejectionReason.MISSING_TARGET


class TestSyntax:
    @pytest.mark.parametrize(
        "raw",
        [
            "example.com/foo",
            "//example.com/foo",
            "/relative/path",
            "https://",
            "https:///path-only",
            "http://example.com:notaport/",
            "http://example.com:99999/",
            "http://[::1/",
            "https://a..example.com/",
            "https://exa mple.com/",
            "mailto:someone@example.com",
        ],
    )
    def test_invalid_url(self, raw):
        assert reason_of(raw) == RejectionReason.INVALID_URL

    @pytest.mark.parametrize(
        "raw", ["https://☃.example.com/", "wss://a\u200d.example.com/"]
    )
    def test_unencodable_international_host(self, raw):
        assert reason_of(raw) == RejectionReason.INVALID_URL

    def test_syntax_is_checked_before_scheme(self):
        assert reason_of("ftp://") == RejectionReason.INVALID_URL


class TestScheme:
    @pytest.mark.parametrize(
        "raw",
        ["ftp://example.com/", "file://example.com/etc/passwd", "gopher://example.com/"],
    )
    def test_unsupported_scheme(self, raw):
        assert reason_of(raw) == RejectionReason.UNSUPPORTED_SCHEME

    @pytest.mark.parametrize("scheme", ["http", "https", "ws", "wss", "HTTPS", "Ws"])
    def test_supported_schemes_case_insensitive(self, scheme):
        descriptor = descriptor_of(f"{scheme}://example.com/")
        assert descriptor.scheme == scheme.lower()

    def test_scheme_is_checked_before_host_safety(self):
        assert reason_of("ftp://127.0.0.1/") == RejectionReason.UNSUPPORTED_SCHEME


class TestNetworkSafety:
    @pytest.mark.parametrize(
        "host",
        ["127.0.0.1", "10.0.0.1", "8.8.8.8", "93.184.216.34", "999.999.999.999", "0.0.0.0"],
    )
    def test_ipv4_literals_rejected_even_if_public(self, host):
        assert reason_of(f"http://{host}/") == RejectionReason.PRIVATE_OR_LITERAL_HOST

    @pytest.mark.parametrize(
        "raw",
        [
            "http://[::1]/",
            "http://[::ffff:127.0.0.1]/",
            "https://[2606:4700:4700::1111]:8443/",
            "http://[fe80::1%25eth0]/",
        ],
    )
    def test_ipv6_literals_rejected(self, raw):
        assert reason_of(raw) == RejectionReason.PRIVATE_OR_LITERAL_HOST

    def test_ipv4_literal_rejected_even_when_allowlisted(self):
        allowlist = frozenset({"127.0.0.1", "example.com"})
        assert (
            reason_of("http://127.0.0.1:8080/", allowlist)
            == RejectionReason.PRIVATE_OR_LITERAL_HOST
        )

    @pytest.mark.parametrize(
        "host", ["localhost", "LOCALHOST", "api.localhost", "localhost."]
    )
    def test_localhost_and_subdomains_rejected(self, host):
        allowlist = frozenset({"localhost"})
        assert reason_of(f"http://{host}/", allowlist) == RejectionReason.PRIVATE_OR_LITERAL_HOST

    @pytest.mark.parametrize("host", ["2130706433", "0x7f000001", "0x7f.1", "127.1"])
    def test_numeric_address_forms_rejected(self, host):
        assert reason_of(f"http://{host}/") == RejectionReason.PRIVATE_OR_LITERAL_HOST

    def test_helper_accepts_regular_domains(self):
        assert not is_private_or_literal_host("example.com")
        assert not is_private_or_literal_host("1.2.3.4.example.com")
        assert is_private_or_literal_host("192.168.1.10")


class TestAllowlist:
    @pytest.mark.parametrize(
        "raw",
        [
            "https://example.com/",
            "https://www.example.com/",
            "https://deep.sub.example.com/",
            "http://api.partner.org/v1",
        ],
    )
    def test_exact_and_subdomain_match_accepted(self, raw):
        descriptor_of(raw)

    @pytest.mark.parametrize(
        "raw",
        [
            "https://evil-example.com.com/",
            "https://evilexample.com/",
            "https://example.com.evil.net/",
            "https://partner.org/",
            "https://other.partner.org/",
            "https://example.org/",
        ],
    )
    def test_lookalike_domains_rejected(self, raw):
        assert reason_of(raw) == RejectionReason.DOMAIN_NOT_ALLOWLISTED

    def test_userinfo_does_not_decide_the_host(self):
        assert reason_of("https://example.com@evil.net/") == RejectionReason.DOMAIN_NOT_ALLOWLISTED
        descriptor = descriptor_of("https://evil.net@example.com/")
        assert descriptor.hostname == "example.com"
        assert "evil.net" not in descriptor.url

    def test_is_allowlisted_helper(self):
        assert is_allowlisted("Example.COM", ALLOWLIST)
        assert not is_allowlisted("notexample.com", ALLOWLIST)


class TestDescriptor:
    def test_scenario_descriptor_fields(self):
        descriptor = descriptor_of("https://example.com/foo?x=1", frozenset({"example.com"}))
        assert descriptor == TargetDescriptor(
            scheme="https", hostname="example.com", port=None, path="/foo", query="x=1"
        )
        assert descriptor.url == "https://example.com/foo?x=1"

    def test_host_lowercased_and_trailing_dot_removed(self):
        descriptor = descriptor_of("HTTPS://WWW.Example.COM./Path")
        assert descriptor.hostname == "www.example.com"
        assert descriptor.path == "/Path"

    def test_international_host_is_stored_in_ascii_form(self):
        descriptor = descriptor_of("https://Bücher.example.com/katalog")
        assert descriptor.hostname == "xn--bcher-kva.example.com"
        assert descriptor.url == "https://xn--bcher-kva.example.com/katalog"

    def test_port_kept_and_defaulted(self):
        assert descriptor_of("http://example.com:8080/").port == 8080
        assert descriptor_of("http://example.com:8080/").authority == "example.com:8080"
        assert descriptor_of("https://example.com/").effective_port == 443
        assert descriptor_of("ws://example.com/").effective_port == 80

    def test_empty_path_becomes_root_and_fragment_dropped(self):
        descriptor = descriptor_of("https://example.com?q=1#section")
        assert descriptor.path == "/"
        assert descriptor.query == "q=1"
        assert descriptor.url == "https://example.com/?q=1"

    def test_scheme_mapping(self):
        ws = descriptor_of("wss://example.com/socket?t=1")
        assert ws.is_websocket
        assert ws.http_url() == "https://example.com/socket?t=1"
        assert ws.websocket_url() == "wss://example.com/socket?t=1"
        http = descriptor_of("http://example.com:81/live")
        assert http.websocket_url() == "ws://example.com:81/live"

    def test_descriptor_is_immutable(self):
        descriptor = descriptor_of("https://example.com/")
        with pytest.raises(Exception):
            descriptor.hostname = "evil.net"

    def test_from_static_url(self):
        descriptor = TargetDescriptor.from_static_url("https://Upstream.example.com:8443/ignored?x=1")
        assert descriptor.hostname == "upstream.example.com"
        assert descriptor.port == 8443
        assert descriptor.path == "/"
        assert descriptor.query == ""
        with pytest.raises(ValueError):
            TargetDescriptor.from_static_url("ftp://example.com")
        with pytest.raises(ValueError):
            TargetDescriptor.from_static_url("not a url")


class TestVerdict:
    @pytest.mark.parametrize(
        "raw",
        ["https://example.com/a?b=c", "http://10.0.0.1/", "ftp://x/", "", "https://nope.net/"],
    )
    def test_validation_is_idempotent(self, raw):
        assert validate(raw, ALLOWLIST) == validate(raw, ALLOWLIST)

    def test_verdict_discriminator(self):
        assert validate("https://example.com/", ALLOWLIST).accepted is True
        assert validate("https://nope.net/", ALLOWLIST).accepted is False

    def test_reason_values_are_client_codes(self):
        assert RejectionReason.PRIVATE_OR_LITERAL_HOST.value == "PrivateOrLiteralHost"
        assert RejectionReason.MISSING_TARGET.description
