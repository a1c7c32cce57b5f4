"""
Target validation for the /proxy endpoint.

``validate`` is a pure function: it parses the requested URL exactly once and
either rejects it with the first failing rule or returns the descriptor that
the forwarder will use verbatim.
"""

import re
from typing import AbstractSet, Optional
from urllib.parse import urlsplit

import idna

from safe_proxy.target.descriptor import (
    SUPPORTED_SCHEMES,
    Accepted,
    Rejected,
    RejectionReason,
    TargetDescriptor,
    ValidationVerdict,
)

IPV4_LITERAL = re.compile(r"^(\d{1,3}\.){3}\d{1,3}$")

# Final labels like "2130706433" or "0x7f" are resolved as IPv4 by inet_aton.
_NUMERIC_LABEL = re.compile(r"^(\d+|0x[0-9a-f]*)$")

_FORBIDDEN_HOST_CHARS = re.compile(r"[\s/\\@%#?<>\[\]^|\"'`{}]")


def _normalize_hostname(hostname: str) -> Optional[str]:
    host = hostname.lower()
    if host.endswith("."):
        host = host[:-1]
    # ":" belongs to IPv6 literals, which the safety check reports on its own.
    if ":" in host:
        return host
    if not host or _FORBIDDEN_HOST_CHARS.search(host):
        return None
    if any(not label for label in host.split(".")):
        return None
    if not host.isascii():
        # Same IDNA 2008 encoding httpx applies; the ASCII form is what gets dialled.
        try:
            host = idna.encode(host).decode("ascii")
        except idna.IDNAError:
            return None
    return host


def is_private_or_literal_host(hostname: str) -> bool:
    """True for IP literals in any form the resolver accepts, and for localhost."""
    host = hostname.lower().rstrip(".")
    if IPV4_LITERAL.match(host) or ":" in host:
        return True
    if host == "localhost" or host.endswith(".localhost"):
        return True
    return bool(_NUMERIC_LABEL.match(host.rsplit(".", 1)[-1]))


def is_allowlisted(hostname: str, allowlist: AbstractSet[str]) -> bool:
    """Exact match or true subdomain match only; ``evil-example.com`` is not ``example.com``."""
    host = hostname.lower()
    return any(host == entry or host.endswith("." + entry) for entry in allowlist)


def validate(raw_target: Optional[str], allowlist: AbstractSet[str]) -> ValidationVerdict:
    if raw_target is None or not raw_target.strip():
        return Rejected(RejectionReason.MISSING_TARGET)

    try:
        parsed = urlsplit(raw_target.strip())
        port = parsed.port
        raw_hostname = parsed.hostname
    except ValueError:
        return Rejected(RejectionReason.INVALID_URL)

    if not parsed.scheme or not raw_hostname:
        return Rejected(RejectionReason.INVALID_URL)
    hostname = _normalize_hostname(raw_hostname)
    if hostname is None:
        return Rejected(RejectionReason.INVALID_URL)

    scheme = parsed.scheme.lower()
    if scheme not in SUPPORTED_SCHEMES:
        return Rejected(RejectionReason.UNSUPPORTED_SCHEME)

    if is_private_or_literal_host(hostname):
        return Rejected(RejectionReason.PRIVATE_OR_LITERAL_HOST)

    if not is_allowlisted(hostname, allowlist):
        return Rejected(RejectionReason.DOMAIN_NOT_ALLOWLISTED)

    return Accepted(
        TargetDescriptor(
            scheme=scheme,
            hostname=hostname,
            port=port,
            path=parsed.path or "/",
            query=parsed.query,
        )
    )
