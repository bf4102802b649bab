"""Network locality checks against tenant-trusted ranges."""
import ipaddress
from typing import Iterable, Optional

class NetworkService:
    """Service for campus network detection."""

    @staticmethod
    def client_ip(request) -> Optional[str]:
        """Peer address as seen by WSGI.

        Forwarded headers are honoured only through ``ProxyFix`` configured
        with ``PROXY_FIX_X_FOR``; raw client headers are ignored.
        """
        return request.remote_addr

    @staticmethod
    def parse_ip(value: Optional[str]):
        if not value:
            return None
        try:
            address = ipaddress.ip_address(value.strip())
        except ValueError:
            return None

        if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped:
            return address.ipv4_mapped
        return address

    @staticmethod
    def is_trusted(ip: Optional[str], trusted_ranges: Iterable[str]) -> bool:
        """True when the address falls inside any configured CIDR."""
        address = NetworkService.parse_ip(ip)
        if address is None:
            return False

        for cidr in trusted_ranges:
            try:
                network = ipaddress.ip_network(cidr, strict=False)
            except ValueError:
                continue
            if address.version == network.version and address in network:
                return True

        return False
