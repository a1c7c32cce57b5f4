from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union
from urllib.parse import urlsplit, urlunsplit

SUPPORTED_SCHEMES = frozenset({"http", "https", "ws", "wss"})

DEFAULT_PORTS = {"http": 80, "https": 443, "ws": 80, "wss": 443}

_HTTP_EQUIVALENT = {"ws": "http", "wss": "https"}
_WEBSOCKET_EQUIVALENT = {"http": "ws", "https": "wss"}


class RejectionReason(str, Enum):
    """Why a requested target was refused. The value is the client-visible code."""

    MISSING_TARGET = "MissingTarget"
    INVALID_URL = "InvalidURL"
    UNSUPPORTED_SCHEME = "UnsupportedScheme"
    PRIVATE_OR_LITERAL_HOST = "PrivateOrLiteralHost"
    DOMAIN_NOT_ALLOWLISTED = "DomainNotAllowlisted"

    @property
    def description(self) -> str:
        return _DESCRIPTIONS[self]


_DESCRIPTIONS = {
    RejectionReason.MISSING_TARGET: "No target URL was supplied",
    RejectionReason.INVALID_URL: "Target is not a valid absolute URL",
    RejectionReason.UNSUPPORTED_SCHEME: "Only http, https, ws and wss targets are allowed",
    RejectionReason.PRIVATE_OR_LITERAL_HOST: "IP literals, localhost and private addresses are not allowed",
    RejectionReason.DOMAIN_NOT_ALLOWLISTED: "Target host is not in the allowlist",
}


@dataclass(frozen=True)
class TargetDescriptor:
    """
    A validated upstream target.

    Built only from parsed URL components, never from the raw client string,
    so the value that was checked is exactly the value that gets forwarded.
    """

    scheme: str
    hostname: str
    port: Optional[int] = None
    path: str = "/"
    query: str = ""

    @property
    def effective_port(self) -> int:
        return self.port if self.port is not None else DEFAULT_PORTS[self.scheme]

    @property
    def authority(self) -> str:
        if self.port is None:
            return self.hostname
        return f"{self.hostname}:{self.port}"

    @property
    def is_websocket(self) -> bool:
        return self.scheme in ("ws", "wss")

    def _build(self, scheme: str) -> str:
        return urlunsplit((scheme, self.authority, self.path or "/", self.query, ""))

    @property
    def url(self) -> str:
        return self._build(self.scheme)

    def http_url(self) -> str:
        """URL for a plain HTTP exchange; ws/wss map onto http/https."""
        return self._build(_HTTP_EQUIVALENT.get(self.scheme, self.scheme))

    def websocket_url(self) -> str:
        """URL for a WebSocket handshake; http/https map onto ws/wss."""
        return self._build(_WEBSOCKET_EQUIVALENT.get(self.scheme, self.scheme))

    @classmethod
    def from_static_url(cls, raw: str) -> "TargetDescriptor":
        """
        Build the descriptor for a configured upstream (scheme, host and port
        only). Raises ValueError when the URL cannot be used as a target.
        """
        parsed = urlsplit(raw.strip())
        scheme = parsed.scheme.lower()
        if scheme not in SUPPORTED_SCHEMES:
            raise ValueError(f"unsupported scheme in {raw!r}")
        if not parsed.hostname:
            raise ValueError(f"no host in {raw!r}")
        return cls(scheme=scheme, hostname=parsed.hostname.lower(), port=parsed.port)


@dataclass(frozen=True)
class Accepted:
    descriptor: TargetDescriptor
    accepted: bool = True


@dataclass(frozen=True)
class Rejected:
    reason: RejectionReason
    accepted: bool = False


ValidationVerdict = Union[Accepted, Rejected]
