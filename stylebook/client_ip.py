"""Client identity resolution behind trusted reverse proxies.

The resolved address is used as the rate-limit key, so it must not be
spoofable by a caller that controls request headers.

Rules:
1. The socket peer address is the answer unless the peer is a trusted proxy.
2. Behind a trusted proxy, X-Forwarded-For hops (plus the peer itself) are
   scanned right-to-left; the first hop outside every trusted range wins.
3. Unparsable hops are dropped, never matched.
"""
import ipaddress
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple, Union

UNKNOWN_CLIENT = "unknown"

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


def parse_ip(raw: Optional[str]) -> Optional[IPAddress]:
    """
    Parse one address, tolerating surrounding noise.

    Strips whitespace, brackets and IPv6 zone suffixes ("fe80::1%eth0").
    IPv4-mapped IPv6 addresses collapse to their IPv4 form.

    Returns:
        Parsed address or None when the value is not an IP address
    """
    if raw is None:
        return None
    candidate = raw.strip()
    if candidate.startswith("[") and candidate.endswith("]"):
        candidate = candidate[1:-1]
    zone_idx = candidate.find("%")
    if zone_idx > 0:
        candidate = candidate[:zone_idx]
    if not candidate:
        return None
    try:
        address = ipaddress.ip_address(candidate)
    except ValueError:
        return None
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        return address.ipv4_mapped
    return address


@dataclass(frozen=True)
class CidrRange:
    """Immutable, pre-parsed network range."""
    network: IPNetwork

    @classmethod
    def parse(cls, cidr: str) -> "CidrRange":
        """
        Parse "address/prefix".

        Host bits are masked off, so "10.1.2.3/8" equals "10.0.0.0/8".

        Raises:
            ValueError: If the value is not a valid CIDR block
        """
        text = cidr.strip()
        if "/" not in text:
            raise ValueError(f"Invalid CIDR: {cidr}")
        try:
            network = ipaddress.ip_network(text, strict=False)
        except ValueError as e:
            raise ValueError(f"Invalid CIDR: {cidr}") from e
        return cls(network=network)

    @property
    def prefix_length(self) -> int:
        return self.network.prefixlen

    def contains(self, address: IPAddress) -> bool:
        if address.version != self.network.version:
            return False
        return address in self.network


class ClientIdentityResolver:
    """
    Resolves the real client IP for admission control.

    Pattern: Pure function over immutable configuration.
    Safe for unlimited concurrent callers (no shared mutable state).
    """

    def __init__(self, trusted_cidrs: Iterable[str]):
        """
        Initialize resolver.

        Args:
            trusted_cidrs: CIDR strings of proxies whose forwarded-for
                           claims are honored

        Raises:
            ValueError: If any CIDR is invalid (fail at startup, not per request)
        """
        self.trusted_ranges: Tuple[CidrRange, ...] = tuple(
            CidrRange.parse(cidr) for cidr in trusted_cidrs
        )

    def is_trusted(self, address: IPAddress) -> bool:
        return any(cidr.contains(address) for cidr in self.trusted_ranges)

    def resolve(self, remote_addr: Optional[str], forwarded_for: Optional[str] = None) -> str:
        """
        Resolve the caller's IP.

        Args:
            remote_addr: Socket peer address
            forwarded_for: Raw X-Forwarded-For header value (untrusted)

        Returns:
            Client IP string, or "unknown" if the peer address is unparsable
        """
        peer = parse_ip(remote_addr)
        if peer is None:
            return UNKNOWN_CLIENT

        if not self.is_trusted(peer):
            return str(peer)

        hops = self._forwarded_chain(forwarded_for)
        if not hops:
            return str(peer)
        hops.append(peer)

        # Right-to-left: left-most entries are attacker-controlled
        for hop in reversed(hops):
            if not self.is_trusted(hop):
                return str(hop)

        return str(peer)

    @staticmethod
    def _forwarded_chain(forwarded_for: Optional[str]) -> List[IPAddress]:
        if not forwarded_for or not forwarded_for.strip():
            return []
        hops = []
        for part in forwarded_for.split(","):
            address = parse_ip(part)
            if address is not None:
                hops.append(address)
        return hops


def resolve(remote_addr: Optional[str], forwarded_for: Optional[str], trusted_cidrs: Iterable[str]) -> str:
    """One-shot resolution; prefer a long-lived ClientIdentityResolver in request paths."""
    return ClientIdentityResolver(trusted_cidrs).resolve(remote_addr, forwarded_for)
