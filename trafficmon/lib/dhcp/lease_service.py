import asyncio
from abc import ABC, abstractmethod

import structlog

from trafficmon.lib.constants import DHCP_LEASE_FILE_PATH
from trafficmon.lib.dhcp.lease import DHCPLease
from trafficmon.lib.dhcp.utils import parse_dhcp_leases

log = structlog.get_logger(__name__)


class LeaseTableUnavailable(RuntimeError):
    pass


class LeaseService(ABC):
    @abstractmethod
    async def get_all_leases(self) -> list[DHCPLease]:
        ...

    async def get_lease_by_ip(self, ip: str) -> DHCPLease | None:
        for lease in await self.get_all_leases():
            if lease.ip == ip:
                return lease
        return None


class DnsmasqLeaseService(LeaseService):
    """Reads the dnsmasq lease file that OpenWrt keeps in /tmp."""

    def __init__(self, path: str = DHCP_LEASE_FILE_PATH) -> None:
        self.path = path

    def _read(self) -> str:
        with open(self.path, "r", errors="replace") as f:
            return f.read()

    async def get_all_leases(self) -> list[DHCPLease]:
        loop = asyncio.get_running_loop()
        try:
            content = await loop.run_in_executor(None, self._read)
        except OSError as e:
            raise LeaseTableUnavailable(f"Leases file not readable: {self.path}: {e}") from e

        leases, rejected = parse_dhcp_leases(content)
        for line in rejected:
            log.debug("lease_line_skipped", path=self.path, line=line)

        return leases
