from typing import Dict, Iterable, List, Mapping, Set, Tuple, Union

from safe_proxy.vars import SERVICE_NAME

# Hop-by-hop headers that should NOT be forwarded (RFC 2616)
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

# Kept for the single hop of a protocol-upgrade request
UPGRADE_HEADERS = {"connection", "upgrade"}

# Headers that would tell the upstream who the original client is
CLIENT_IDENTIFYING_HEADERS = {
    "forwarded",
    "x-forwarded-for",
    "x-forwarded-host",
    "x-forwarded-proto",
    "x-forwarded-port",
    "x-forwarded-prefix",
    "x-real-ip",
}

# Server banners and framework fingerprints removed from upstream responses
FINGERPRINT_HEADERS = {
    "server",
    "x-powered-by",
    "x-aspnet-version",
    "x-aspnetmvc-version",
    "x-runtime",
    "x-generator",
    "via",
}

FORWARDED_BY_HEADER = "x-forwarded-by"

HeaderSource = Union[Mapping[str, str], Iterable[Tuple[str, str]]]


def _items(headers: HeaderSource) -> Iterable[Tuple[str, str]]:
    if hasattr(headers, "items"):
        return headers.items()
    return headers


def _connection_tokens(headers: HeaderSource) -> Set[str]:
    """Header names listed in Connection are hop-by-hop for this leg as well."""
    tokens = set()
    for name, value in _items(headers):
        if name.lower() == "connection":
            tokens.update(t.strip().lower() for t in value.split(",") if t.strip())
    return tokens


def sanitize_request_headers(
    headers: HeaderSource, upgrade: bool = False
) -> Dict[str, str]:
    """
    Prepare inbound headers for the upstream leg.

    Drops hop-by-hop headers (plus anything named in Connection), Host, and
    client-identifying forwarding headers, then names this proxy in
    X-Forwarded-By. For an upgrade request, Upgrade and Connection survive.
    """
    drop = HOP_BY_HOP_HEADERS | CLIENT_IDENTIFYING_HEADERS | {"host", FORWARDED_BY_HEADER}
    drop |= _connection_tokens(headers)
    if upgrade:
        drop -= UPGRADE_HEADERS

    result = {}
    for name, value in _items(headers):
        name_lower = name.lower()
        if name_lower in drop:
            continue
        if name_lower in result:
            separator = "; " if name_lower == "cookie" else ", "
            result[name_lower] = f"{result[name_lower]}{separator}{value}"
        else:
            result[name_lower] = value

    result[FORWARDED_BY_HEADER] = SERVICE_NAME
    return result


def sanitize_response_headers(headers: HeaderSource) -> List[Tuple[str, str]]:
    """Upstream response headers minus hop-by-hop and fingerprinting headers."""
    drop = HOP_BY_HOP_HEADERS | FINGERPRINT_HEADERS | _connection_tokens(headers)
    return [
        (name, value) for name, value in _items(headers) if name.lower() not in drop
    ]
