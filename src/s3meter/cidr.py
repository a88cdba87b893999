# src/s3meter/cidr.py

import ipaddress
import logging
import re
from bisect import bisect_right
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

Network = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]
Address = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

# Separators accepted between prefixes in a configuration string
_SEPARATORS = re.compile(r"[,;\s]+")


class PrefixSet:
    """Immutable set of network prefixes with O(log n) membership tests.

    Networks are collapsed on construction (duplicates, overlapping and
    adjacent ranges merged), then stored per address family as sorted,
    disjoint ``(start, end)`` integer intervals. A lookup is a single bisect.

    The set holds only tuples after ``__init__`` so one instance can be shared
    by every request thread without locking.
    """

    __slots__ = ("_networks", "_ranges")

    def __init__(self, networks: Iterable[Network]):
        networks = list(networks)
        collapsed: List[Network] = []
        ranges: Dict[int, Tuple[Tuple[int, ...], Tuple[int, ...]]] = {}
        for version in (4, 6):
            family = list(
                ipaddress.collapse_addresses(n for n in networks if n.version == version)
            )
            collapsed.extend(family)
            ranges[version] = (
                tuple(int(n.network_address) for n in family),
                tuple(int(n.broadcast_address) for n in family),
            )
        self._networks: Tuple[Network, ...] = tuple(collapsed)
        self._ranges = ranges

    @property
    def networks(self) -> Tuple[Network, ...]:
        """The collapsed networks, IPv4 first, each family in ascending order."""
        return self._networks

    def __contains__(self, addr: object) -> bool:
        if not isinstance(addr, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
            return False
        if self._lookup(addr.version, int(addr)):
            return True
        # ::ffff:a.b.c.d also matches IPv4 prefixes covering a.b.c.d
        mapped = getattr(addr, "ipv4_mapped", None)
        return mapped is not None and self._lookup(4, int(mapped))

    def _lookup(self, version: int, value: int) -> bool:
        starts, ends = self._ranges[version]
        index = bisect_right(starts, value) - 1
        return index >= 0 and value <= ends[index]

    def __len__(self) -> int:
        return len(self._networks)

    def __iter__(self):
        return iter(self._networks)

    def __repr__(self) -> str:
        return f"PrefixSet({[str(n) for n in self._networks]})"


def parse_prefixes(
    config_text: Optional[str],
    on_invalid: Optional[Callable[[str, ValueError], None]] = None,
) -> List[Network]:
    """Parse a comma/semicolon/whitespace separated list of CIDR prefixes.

    Each prefix is returned in canonical masked form (host bits zeroed), so
    ``10.1.2.3/8`` comes back as ``10.0.0.0/8``. Tokens that fail to parse are
    skipped; ``on_invalid`` is called with the token and the parse error.
    """
    prefixes: List[Network] = []
    if not config_text:
        return prefixes

    for token in _SEPARATORS.split(config_text):
        token = token.strip()
        if not token:
            continue
        try:
            prefixes.append(ipaddress.ip_network(token, strict=False))
        except ValueError as e:
            logger.debug(f"Skipping invalid prefix {token!r}: {e}")
            if on_invalid is not None:
                on_invalid(token, e)
    return prefixes


def build_prefix_set(
    config_text: Optional[str],
    on_invalid: Optional[Callable[[str, ValueError], None]] = None,
) -> Optional[PrefixSet]:
    """Build a PrefixSet from configuration text.

    Returns None when the text is empty or holds no valid prefix. Malformed
    entries never raise; they are reported through ``on_invalid`` if given.

    Example:
        build_prefix_set("10.0.0.0/8, 172.16.0.0/12;192.168.0.0/16")
    """
    prefixes = parse_prefixes(config_text, on_invalid)
    if not prefixes:
        return None
    return PrefixSet(prefixes)


def contains(prefix_set: Optional[PrefixSet], addr: Union[Address, str, None]) -> bool:
    """Return True if any prefix in ``prefix_set`` covers ``addr``.

    An absent set, a missing address and an unparseable address string all
    test as not contained.
    """
    if prefix_set is None or addr is None:
        return False
    if isinstance(addr, str):
        try:
            addr = ipaddress.ip_address(addr.strip())
        except ValueError:
            return False
    return addr in prefix_set
