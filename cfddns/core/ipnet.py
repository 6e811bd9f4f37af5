"""IP families and prefix helpers."""

import ipaddress
from enum import Enum
from typing import Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPPrefix = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


class IPFamily(Enum):
    """Address family of a record or list item."""

    IP4 = 4
    IP6 = 6

    def describe(self) -> str:
        return f"IPv{self.value}"

    @property
    def record_type(self) -> str:
        return "A" if self is IPFamily.IP4 else "AAAA"

    @property
    def max_prefix_len(self) -> int:
        """Longest prefix Cloudflare accepts in a WAF list (/32 and /64)."""
        return 32 if self is IPFamily.IP4 else 64

    def matches(self, ip: IPAddress) -> bool:
        return ip.version == self.value

    @classmethod
    def of(cls, ip: IPAddress) -> "IPFamily":
        return cls(ip.version)


def unmap(ip: IPAddress) -> IPAddress:
    """Turn an IPv4-mapped IPv6 address into plain IPv4."""
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def parse_ip(raw: str) -> IPAddress:
    """Parse an address; raises ``ValueError`` on garbage."""
    return ipaddress.ip_address(raw.strip())


def parse_prefix_or_ip(raw: str) -> IPPrefix:
    """Parse ``10.0.0.0/16`` or a bare address (as a single-address prefix).

    Host bits are masked off. Raises ``ValueError`` when neither form parses.
    """
    return ipaddress.ip_network(raw.strip(), strict=False)


def describe_prefix_or_ip(prefix: IPPrefix) -> str:
    """Like ``str(prefix)`` but prints a bare address for single-address prefixes."""
    if prefix.num_addresses == 1:
        return str(prefix.network_address)
    return str(prefix)


def max_specific_prefix(ip: IPAddress) -> IPPrefix:
    """The most specific prefix Cloudflare lists accept around *ip*."""
    family = IPFamily.of(ip)
    return ipaddress.ip_network(f"{ip}/{family.max_prefix_len}", strict=False)


def prefix_sort_key(prefix: IPPrefix) -> tuple:
    return (prefix.version, prefix.network_address.packed, prefix.prefixlen)
