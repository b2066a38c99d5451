from dataclasses import dataclass

import structlog

from trafficmon.lib.dhcp.lease import DHCPLease
from trafficmon.lib.dhcp.lease_service import LeaseService, LeaseTableUnavailable
from trafficmon.lib.dhcp.utils import is_valid_mac
from trafficmon.lib.services.neighbor_cache import NeighborCache

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class DeviceIdentity:
    mac: str
    name: str


class IdentityResolver:
    """
    Maps an IP address to (mac, display name): DHCP lease first, neighbor cache as fallback.
    The lease table is read once per cycle with refresh().
    """

    def __init__(self, lease_service: LeaseService, neighbor_cache: NeighborCache) -> None:
        self.lease_service = lease_service
        self.neighbor_cache = neighbor_cache
        self._leases_by_ip: dict[str, DHCPLease] = {}

    async def refresh(self) -> None:
        try:
            leases = await self.lease_service.get_all_leases()
        except LeaseTableUnavailable as e:
            # Identities can still come from the neighbor cache
            log.warning("lease_table_unavailable", error=str(e))
            leases = []

        self._leases_by_ip = {}
        for lease in leases:
            self._leases_by_ip.setdefault(lease.ip, lease)

    async def resolve(self, address: str) -> DeviceIdentity | None:
        lease = self._leases_by_ip.get(address)

        if lease is not None:
            mac = (lease.mac or "").lower()
        else:
            mac = await self.neighbor_cache.lookup(address) or ""

        if not is_valid_mac(mac):
            return None

        name = lease.hostname if lease is not None and lease.hostname else address
        return DeviceIdentity(mac=mac, name=name)
