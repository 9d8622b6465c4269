"""
gotcha/features/origin/service.py

Origin validation for the two trust boundaries:

- Same-site (internal) endpoints compare the Origin hostname with the
  request's own Host header: loosely (missing headers admitted) or
  strictly (missing headers denied).
- Public SDK endpoints compare the Origin hostname with a tenant's
  allow-list of exact hosts and `*.domain` wildcards, each optionally
  restricted to a port (`host:3000`) or any port (`host:*`).

All comparisons are on parsed hostnames; substring matching is never used.
"""

from dataclasses import dataclass
from typing import Iterable, Optional, Tuple
from urllib.parse import urlsplit


_DEFAULT_PORTS = {"http": 80, "https": 443}


def _parse_origin(origin: str) -> Optional[Tuple[str, Optional[int]]]:
    """Return (hostname, effective port) or None when origin is not a URL."""
    try:
        parts = urlsplit(origin.strip())
        hostname = parts.hostname
        port = parts.port
    except ValueError:
        return None
    if not parts.scheme or not hostname:
        return None
    if port is None:
        port = _DEFAULT_PORTS.get(parts.scheme.lower())
    return hostname.lower(), port


def origin_hostname(origin: Optional[str]) -> Optional[str]:
    """Hostname of an Origin header value, or None if absent or unparseable."""
    if not origin:
        return None
    parsed = _parse_origin(origin)
    return parsed[0] if parsed else None


def _strip_port(host: str) -> str:
    host = host.strip().lower()
    if host.startswith("["):
        # Bracketed IPv6 literal, e.g. [::1]:3000
        return host[1:host.find("]")] if "]" in host else host
    return host.split(":")[0]


def is_origin_allowed(origin: Optional[str], host: Optional[str]) -> bool:
    """Loose same-site check.

    Missing Origin or Host is admitted (same-origin navigation or a
    non-browser caller). Otherwise the Origin hostname must equal the
    Host with its port removed.
    """
    if not origin or not host:
        return True
    hostname = origin_hostname(origin)
    if hostname is None:
        return False
    return hostname == _strip_port(host)


def is_origin_allowed_strict(origin: Optional[str], host: Optional[str]) -> bool:
    """Same comparison as is_origin_allowed, but both headers are required."""
    if not origin or not host:
        return False
    return is_origin_allowed(origin, host)


@dataclass(frozen=True)
class DomainPattern:
    host: str
    wildcard: bool = False
    port: Optional[int] = None
    any_port: bool = True

    @classmethod
    def parse(cls, raw: str) -> Optional["DomainPattern"]:
        value = raw.strip().lower()
        if "://" in value:
            value = value.split("://", 1)[1]
        value = value.rstrip("/")
        if not value:
            return None

        port_part: Optional[str] = None
        if value.startswith("["):
            # Bracketed IPv6 literal; urlsplit reports the host without brackets
            end = value.find("]")
            if end == -1:
                return None
            value, rest = value[1:end], value[end + 1:]
            if rest:
                if not rest.startswith(":"):
                    return None
                port_part = rest[1:]
        elif ":" in value:
            value, port_part = value.rsplit(":", 1)

        port: Optional[int] = None
        any_port = True
        if port_part is not None:
            if port_part != "*":
                if not port_part.isdigit():
                    return None
                port = int(port_part)
                any_port = False

        wildcard = value.startswith("*.")
        if wildcard:
            value = value[2:]
        if not value or "*" in value:
            return None
        return cls(host=value, wildcard=wildcard, port=port, any_port=any_port)

    def matches(self, hostname: str, port: Optional[int]) -> bool:
        if not self.any_port and port != self.port:
            return False
        if hostname == self.host:
            return True
        return self.wildcard and hostname.endswith("." + self.host)


def is_domain_allowed(origin: Optional[str], allowed_domains: Iterable[str]) -> bool:
    """Check an SDK caller's Origin against a tenant allow-list.

    An empty allow-list admits every origin. A missing Origin (server-to-
    server caller) is admitted. A present but unparseable Origin is denied.
    """
    patterns = [p for p in (allowed_domains or []) if p and p.strip()]
    if not patterns:
        return True
    if not origin:
        return True

    parsed = _parse_origin(origin)
    if parsed is None:
        return False
    hostname, port = parsed

    for raw in patterns:
        pattern = DomainPattern.parse(raw)
        if pattern is not None and pattern.matches(hostname, port):
            return True
    return False
