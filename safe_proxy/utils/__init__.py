from typing import Optional
from urllib.parse import urlsplit, urlunsplit

from starlette.requests import HTTPConnection


def client_ip(connection: HTTPConnection, trust_proxy: bool = False) -> str:
    """Client address used for rate limiting; X-Forwarded-For only when trusted."""
    if trust_proxy:
        forwarded_for = connection.headers.get("x-forwarded-for", "")
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    return connection.client.host if connection.client else "unknown"


def redact_query(url: Optional[str]) -> str:
    """Drop the query string from a URL before it is logged."""
    if not url:
        return ""
    try:
        parts = urlsplit(url)
    except ValueError:
        return "<unparseable url>"
    if not parts.query:
        return url
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "****", ""))
