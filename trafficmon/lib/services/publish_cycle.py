import asyncio
import socket
from dataclasses import dataclass, field
from typing import List, Literal, Set

import structlog

from trafficmon.lib.dhcp.utils import is_ipv4
from trafficmon.lib.nftables.helpers import NftClient, NftError
from trafficmon.lib.services.baseline_store import BaselineStoreError
from trafficmon.lib.services.discovery import DiscoveryPublisher, SeenSet
from trafficmon.lib.services.identity_resolver import IdentityResolver
from trafficmon.lib.services.traffic_state import TrafficStateEngine

log = structlog.get_logger(__name__)


async def resolve_ipv4(host: str | None) -> Set[str]:
    """IPv4 addresses of a host name or literal. Empty if it cannot be resolved."""
    if not host:
        return set()
    if is_ipv4(host):
        return {host}

    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(host, None, family=socket.AF_INET, type=socket.SOCK_STREAM)
    except OSError as e:
        log.warning("broker_unresolvable", broker=host, error=str(e))
        return set()
    return {info[4][0] for info in infos}


@dataclass
class PublishReport:
    status: Literal["OK", "SKIPPED", "FAILED"] = "OK"
    reason: str | None = None
    matched: int = 0
    published: int = 0
    failed_publishes: int = 0
    unresolved: List[str] = field(default_factory=list)
    skipped_broker: int = 0
    baseline_errors: int = 0
    discovered: List[str] = field(default_factory=list)


class PublishCycle:
    """
    One traffic cycle: snapshot, wait, snapshot, then per rule resolve the device,
    roll its baselines forward (persisted first) and publish discovery and state.
    """

    def __init__(
        self,
        nft: NftClient,
        engine: TrafficStateEngine,
        resolver: IdentityResolver,
        discovery: DiscoveryPublisher,
        broker_host: str | None = None,
    ) -> None:
        self.nft = nft
        self.engine = engine
        self.resolver = resolver
        self.discovery = discovery
        self.broker_host = broker_host
        self._broker_ips: Set[str] = set()

    async def run_cycle(self) -> PublishReport:
        report = PublishReport()
        c = self.nft.config

        try:
            if not await self.nft.table_exists():
                raise NftError(f"Missing nft table: {c.family} {c.table}")
            if not await self.nft.chain_exists():
                raise NftError(f"Missing nft chain: {c.family} {c.table} {c.chain}")
            samples = await self.engine.sample()
        except NftError as e:
            log.error("counters_unavailable", error=str(e))
            return PublishReport(status="FAILED", reason=str(e))

        report.matched = len(samples)
        if not samples:
            log.warning("no_counters_matched", table=f"{c.family}/{c.table}", chain=c.chain)
            report.status = "SKIPPED"
            report.reason = "no counters matched"
            return report

        await self.resolver.refresh()

        # Resolved once; retried on later cycles while it keeps failing
        if not self._broker_ips:
            self._broker_ips = await resolve_ipv4(self.broker_host)

        # Discovery goes out once per MAC for this cycle only
        seen: SeenSet = set()

        for sample in samples:
            if sample.address in self._broker_ips:
                log.debug("skipping_broker_ip", ip=sample.address)
                report.skipped_broker += 1
                continue

            identity = await self.resolver.resolve(sample.address)
            if identity is None:
                log.warning("no_mac_for_ip", ip=sample.address, dir=sample.direction.value)
                report.unresolved.append(sample.address)
                continue

            try:
                usage = await self.engine.update(identity.mac, sample.direction, sample.bytes)
            except BaselineStoreError as e:
                log.warning("baseline_update_failed", mac=identity.mac, dir=sample.direction.value, error=str(e))
                report.baseline_errors += 1
                continue

            if await self.discovery.publish_discovery(identity, seen):
                report.discovered.append(identity.mac)

            if await self.discovery.publish_state(identity, sample, usage):
                report.published += 1
            else:
                report.failed_publishes += 1

        log.info(
            "publish_done",
            matched_rows=report.matched,
            published=report.published,
            failed=report.failed_publishes,
            unresolved=len(report.unresolved),
        )
        return report
