"""
Domain allow/deny matching used by the filtering proxy.
"""

from typing import Iterable, Optional


def normalize_host(host: Optional[str]) -> str:
    """Lower-case a hostname, drop IPv6 brackets and any trailing dot."""
    if not host:
        return ""
    host = host.strip().lower()
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host.rstrip(".")


def domain_matches(host: str, pattern: str) -> bool:
    """
    Match a host against one pattern.

    "example.com" matches only itself; "*.example.com" matches any
    subdomain but not example.com.
    """
    pattern = normalize_host(pattern)
    if not pattern:
        return False
    if pattern.startswith("*."):
        suffix = pattern[1:]
        return host.endswith(suffix) and len(host) > len(suffix)
    return host == pattern


class DomainFilter:
    """Immutable rule set; build a new one to change the rules."""

    def __init__(
        self,
        allowed_domains: Optional[Iterable[str]] = None,
        denied_domains: Optional[Iterable[str]] = None,
        deny_all: bool = False,
    ):
        self.allowed_domains = frozenset(normalize_host(d) for d in (allowed_domains or ()))
        self.denied_domains = frozenset(normalize_host(d) for d in (denied_domains or ()))
        self.deny_all = deny_all

    @classmethod
    def revoked(cls) -> "DomainFilter":
        """A filter that refuses everything."""
        return cls(deny_all=True)

    def is_denied(self, host: str) -> bool:
        return any(domain_matches(host, pattern) for pattern in self.denied_domains)

    def is_allowed(self, host: Optional[str]) -> bool:
        host = normalize_host(host)
        if self.deny_all or not host:
            return False

        # Deny always wins
        if self.is_denied(host):
            return False

        if self.allowed_domains:
            return any(domain_matches(host, pattern) for pattern in self.allowed_domains)

        return True

    def __repr__(self) -> str:
        if self.deny_all:
            return "DomainFilter(deny_all=True)"
        return (
            f"DomainFilter(allowed={sorted(self.allowed_domains)}, "
            f"denied={sorted(self.denied_domains)})"
        )
