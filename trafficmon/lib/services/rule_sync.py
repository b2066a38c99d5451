from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Literal, Tuple

import structlog

from trafficmon.lib.dhcp.lease_service import LeaseService, LeaseTableUnavailable
from trafficmon.lib.dhcp.utils import leased_ipv4_addresses
from trafficmon.lib.nftables.counters import CounterReader
from trafficmon.lib.nftables.helpers import NftClient, NftError
from trafficmon.lib.nftables.rule import CounterRule, TrafficDirection
from trafficmon.lib.nftables.tags import encode_tag

log = structlog.get_logger(__name__)

RuleKey = Tuple[str, TrafficDirection]


@dataclass
class SyncReport:
    status: Literal["OK", "SKIPPED", "FAILED"] = "OK"
    reason: str | None = None
    leased: int = 0
    added: List[RuleKey] = field(default_factory=list)
    deleted: List[int] = field(default_factory=list)
    failed_adds: List[RuleKey] = field(default_factory=list)
    failed_deletes: List[int] = field(default_factory=list)
    managed_rules: int = 0


class RuleSynchronizer:
    """
    Keeps exactly one counter rule per (leased ip, direction) in the owned chain.
    Runs to completion each cycle and keeps no state between cycles.
    """

    def __init__(self, nft: NftClient, lease_service: LeaseService, namespace: str) -> None:
        self.nft = nft
        self.lease_service = lease_service
        self.namespace = namespace
        self.counter_reader = CounterReader(nft, namespace=namespace)

    async def _add_rule(self, report: SyncReport, ip: str, direction: TrafficDirection) -> None:
        tag = encode_tag(ip, direction, namespace=self.namespace)
        log.info("adding_rule", ip=ip, dir=direction.value, comment=tag)
        try:
            await self.nft.add_counter_rule(ip, direction, tag)
            report.added.append((ip, direction))
        except NftError as e:
            log.warning("add_rule_failed", ip=ip, dir=direction.value, error=str(e))
            report.failed_adds.append((ip, direction))

    async def _delete_rule(self, report: SyncReport, rule: CounterRule, reason: str) -> None:
        if rule.handle is None:
            log.warning("rule_without_handle", ip=rule.address, dir=rule.direction.value)
            return

        log.info("deleting_rule", ip=rule.address, dir=rule.direction.value, handle=rule.handle, reason=reason)
        try:
            await self.nft.delete_rule(rule.handle)
            report.deleted.append(rule.handle)
        except NftError as e:
            log.warning("delete_rule_failed", ip=rule.address, handle=rule.handle, error=str(e))
            report.failed_deletes.append(rule.handle)

    async def run_cycle(self) -> SyncReport:
        report = SyncReport()
        c = self.nft.config
        log.info("sync_start", table=f"{c.family}/{c.table}", chain=c.chain, tag=self.namespace)

        try:
            await self.nft.ensure_container()
        except NftError as e:
            log.error("ensure_container_failed", error=str(e))
            return SyncReport(status="FAILED", reason=str(e))

        try:
            leases = await self.lease_service.get_all_leases()
        except LeaseTableUnavailable as e:
            log.warning("lease_table_unavailable", error=str(e))
            return SyncReport(status="SKIPPED", reason=str(e))

        desired = leased_ipv4_addresses(leases)
        report.leased = len(desired)
        log.info("leases_found", count=len(desired))

        if not desired:
            # Never wipe every rule on an empty lease table
            log.warning("no_leased_ips", detail="existing rules left untouched")
            report.status = "SKIPPED"
            report.reason = "empty lease table"
            return report

        try:
            actual = await self.counter_reader.read(keep_unreadable=True)
        except NftError as e:
            log.error("list_rules_failed", error=str(e))
            return SyncReport(status="FAILED", reason=str(e), leased=len(desired))

        present: Dict[RuleKey, List[CounterRule]] = defaultdict(list)
        for rule in actual:
            present[(rule.address, rule.direction)].append(rule)

        desired_set = set(desired)

        for ip in desired:
            log.debug("processing_ip", ip=ip)
            for direction in (TrafficDirection.OUTBOUND, TrafficDirection.INBOUND):
                existing = present.get((ip, direction), [])
                readable = [r for r in existing if r.readable]

                if readable:
                    log.debug("rule_exists", ip=ip, dir=direction.value, handle=readable[0].handle)
                    for duplicate in readable[1:]:
                        await self._delete_rule(report, duplicate, reason="duplicate")
                else:
                    await self._add_rule(report, ip, direction)

                # Owned rules without a readable counter are replaced
                for rule in existing:
                    if not rule.readable:
                        await self._delete_rule(report, rule, reason="unreadable counter")

        for (ip, direction), rules in present.items():
            if ip in desired_set:
                continue
            for rule in rules:
                await self._delete_rule(report, rule, reason="not leased")

        report.managed_rules = len(actual) + len(report.added) - len(report.deleted)
        log.info(
            "sync_done",
            leased=report.leased,
            added=len(report.added),
            deleted=len(report.deleted),
            failed=len(report.failed_adds) + len(report.failed_deletes),
            managed_rules=report.managed_rules,
        )
        return report
