"""Client network origin checks for attendance submissions."""
import ipaddress
import re
from typing import Iterable, List, Mapping, Optional

MAPPED_IPV4_PREFIX = '::ffff:'
_PREFIX_PATTERN = re.compile(r'[0-9]{1,2}')


class NetworkService:
    """IPv4 allowlist matching and client address resolution.

    Every check fails closed: a malformed candidate address or allowlist
    entry never matches and never raises.
    """

    @staticmethod
    def normalize_ip(value) -> str:
        """First comma-separated element, trimmed and lowercased, without the mapped-IPv6 prefix."""
        first = str(value or '').split(',')[0].strip().lower()
        if first.startswith(MAPPED_IPV4_PREFIX):
            return first[len(MAPPED_IPV4_PREFIX):]
        return first

    @staticmethod
    def client_ip(headers: Mapping, remote_addr: Optional[str]) -> str:
        """Resolve the submitting client's address.

        The first hop of ``X-Forwarded-For`` wins when present, so the service
        must sit behind a reverse proxy that overwrites that header.
        """
        forwarded = headers.get('X-Forwarded-For') if headers else None
        if forwarded:
            return NetworkService.normalize_ip(forwarded)
        return NetworkService.normalize_ip(remote_addr)

    @staticmethod
    def _parse_ipv4(value: str) -> Optional[ipaddress.IPv4Address]:
        try:
            return ipaddress.IPv4Address(value)
        except ValueError:
            return None

    @staticmethod
    def _parse_cidr(entry: str) -> Optional[ipaddress.IPv4Network]:
        base, _, prefix = entry.partition('/')
        if not _PREFIX_PATTERN.fullmatch(prefix):
            return None
        prefix_length = int(prefix)
        if prefix_length > 32:
            return None
        if NetworkService._parse_ipv4(base) is None:
            return None
        return ipaddress.IPv4Network(f'{base}/{prefix_length}', strict=False)

    @staticmethod
    def is_cidr_match(ip: str, cidr: str) -> bool:
        """True when ``ip`` falls inside the IPv4 ``cidr`` block."""
        network = NetworkService._parse_cidr(cidr)
        address = NetworkService._parse_ipv4(ip)
        if network is None or address is None:
            return False
        return address in network

    @staticmethod
    def is_ip_allowed(client_ip: str, allowlist: Iterable[str]) -> bool:
        """Check a client address against exact and CIDR allowlist entries."""
        ip = NetworkService.normalize_ip(client_ip)
        if not ip or not allowlist:
            return False

        for raw_entry in allowlist:
            entry = NetworkService.normalize_ip(raw_entry)
            if not entry:
                continue
            if '/' in entry:
                if NetworkService.is_cidr_match(ip, entry):
                    return True
            elif ip == entry:
                return True
        return False

    @staticmethod
    def usable_entries(allowlist: Iterable[str]) -> List[str]:
        """Entries that could ever match a client address."""
        usable = []
        for raw_entry in allowlist or ():
            entry = NetworkService.normalize_ip(raw_entry)
            if not entry:
                continue
            if '/' in entry:
                if NetworkService._parse_cidr(entry) is not None:
                    usable.append(entry)
            else:
                try:
                    ipaddress.ip_address(entry)
                except ValueError:
                    continue
                usable.append(entry)
        return usable
