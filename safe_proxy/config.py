import logging
import os
from dataclasses import dataclass
from typing import FrozenSet, Mapping, Optional, Tuple

from safe_proxy.target.descriptor import TargetDescriptor

logger = logging.getLogger("uvicorn.error")


class ConfigurationError(Exception):
    """Raised when the proxy must not start serving traffic."""


def _parse_list(raw: Optional[str], lower: bool = False) -> Tuple[str, ...]:
    items = []
    for entry in (raw or "").split(","):
        entry = entry.strip()
        if not entry:
            continue
        items.append(entry.lower() if lower else entry)
    return tuple(items)


def _parse_int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")
    if value < 0:
        raise ConfigurationError(f"{name} must not be negative, got {value}")
    return value


def _parse_bool(environ: Mapping[str, str], name: str, default: bool) -> bool:
    raw = environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class ProxyConfig:
    allowlist: FrozenSet[str]
    default_target: TargetDescriptor
    cors_origins: Tuple[str, ...] = ()
    rate_window_seconds: float = 60.0
    rate_max: int = 120
    host: str = "0.0.0.0"
    port: int = 3000
    idle_timeout: float = 30.0
    follow_redirects: bool = True
    max_redirects: int = 5
    max_body_bytes: int = 10 * 1024 * 1024
    trust_proxy: bool = False
    static_dir: str = "public"

    def __post_init__(self):
        if not self.allowlist:
            raise ConfigurationError(
                "PROXY_ALLOWLIST is empty. Add at least one permitted domain."
            )


def load_config(environ: Optional[Mapping[str, str]] = None) -> ProxyConfig:
    """Read the proxy configuration from the environment once at startup."""
    env = os.environ if environ is None else environ

    allowlist = frozenset(
        entry.rstrip(".") for entry in _parse_list(env.get("PROXY_ALLOWLIST"), lower=True)
    )

    raw_default = env.get("DEFAULT_TARGET", "https://example.com")
    try:
        default_target = TargetDescriptor.from_static_url(raw_default)
    except ValueError as e:
        raise ConfigurationError(f"DEFAULT_TARGET is not usable: {e}")

    config = ProxyConfig(
        allowlist=allowlist,
        default_target=default_target,
        cors_origins=_parse_list(env.get("CORS_ORIGINS")),
        rate_window_seconds=_parse_int(env, "RATE_WINDOW_MS", 60_000) / 1000,
        rate_max=_parse_int(env, "RATE_MAX", 120),
        host=env.get("HOST", "0.0.0.0"),
        port=_parse_int(env, "PORT", 3000),
        idle_timeout=float(_parse_int(env, "PROXY_IDLE_TIMEOUT", 30)),
        follow_redirects=_parse_bool(env, "PROXY_FOLLOW_REDIRECTS", True),
        max_redirects=_parse_int(env, "PROXY_MAX_REDIRECTS", 5),
        max_body_bytes=_parse_int(env, "PROXY_MAX_BODY_BYTES", 10 * 1024 * 1024),
        trust_proxy=_parse_bool(env, "TRUST_PROXY", False),
        static_dir=env.get("STATIC_DIR", "public"),
    )
    logger.info(f"[Config] Allowlist: {', '.join(sorted(config.allowlist))}")
    return config
