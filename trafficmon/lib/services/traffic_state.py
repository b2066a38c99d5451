import asyncio
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Tuple

import structlog

from trafficmon.lib.nftables.counters import CounterReader
from trafficmon.lib.nftables.rule import CounterRule, TrafficDirection
from trafficmon.lib.services.baseline_store import BaselineRecord, BaselineStore

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class BandwidthSample:
    address: str
    direction: TrafficDirection
    bytes: int
    packets: int
    bandwidth: int # bytes per second over the snapshot interval


@dataclass(frozen=True)
class UsageFigures:
    bytes: int
    daily: int
    weekly: int
    ts: int


def day_key(now: datetime) -> str:
    return now.strftime("%Y-%m-%d")


def week_key(now: datetime) -> str:
    return now.strftime("%G-W%V")


def local_now() -> datetime:
    # Day and week boundaries follow the router's local time
    return datetime.now().astimezone()


def compute_bandwidth(
    first: List[CounterRule],
    second: List[CounterRule],
    interval: float,
) -> List[BandwidthSample]:
    """
    Join two snapshots on (address, direction). Entries missing from the first snapshot count from 0;
    a counter that went backwards between snapshots (rule recreated) yields 0, never a negative rate.
    Output keeps the order of the second snapshot.
    """
    if interval <= 0:
        raise ValueError("interval must be > 0")

    before: Dict[Tuple[str, TrafficDirection], int] = {}
    for rule in first:
        before.setdefault((rule.address, rule.direction), rule.bytes)

    samples: List[BandwidthSample] = []
    for rule in second:
        delta = rule.bytes - before.get((rule.address, rule.direction), 0)
        if delta < 0:
            delta = 0
        samples.append(BandwidthSample(
            address=rule.address,
            direction=rule.direction,
            bytes=rule.bytes,
            packets=rule.packets,
            bandwidth=int(delta // interval),
        ))
    return samples


def _roll(bytes_now: int, base: int | None, key: str | None, current_key: str) -> Tuple[int, str]:
    # Counter below the baseline means nftables was reset (reboot, table flush)
    if base is not None and bytes_now < base:
        base, key = None, None

    if base is None or key != current_key:
        return bytes_now, current_key

    return base, key


def apply_sample(record: BaselineRecord, bytes_now: int, now: datetime) -> UsageFigures:
    """Update the record in place for a new cumulative counter value and return the derived usage."""
    ts = int(now.timestamp())

    record.day_bytes, record.day_date = _roll(bytes_now, record.day_bytes, record.day_date, day_key(now))
    record.week_bytes, record.week_num = _roll(bytes_now, record.week_bytes, record.week_num, week_key(now))
    record.bw_bytes = bytes_now
    record.bw_ts = ts

    return UsageFigures(
        bytes=bytes_now,
        daily=bytes_now - record.day_bytes,
        weekly=bytes_now - record.week_bytes,
        ts=ts,
    )


class TrafficStateEngine:
    def __init__(
        self,
        counter_reader: CounterReader,
        store: BaselineStore,
        bw_interval: float,
        clock: Callable[[], datetime] = local_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.counter_reader = counter_reader
        self.store = store
        self.bw_interval = bw_interval
        self.clock = clock
        self.sleep = sleep

    async def sample(self) -> List[BandwidthSample]:
        """Two counter snapshots bw_interval seconds apart, turned into per-rule rates."""
        started = time.monotonic()
        first = await self.counter_reader.read()
        await self.sleep(self.bw_interval)
        second = await self.counter_reader.read()

        log.debug("snapshots_taken", first=len(first), second=len(second), elapsed=round(time.monotonic() - started, 3))
        return compute_bandwidth(first, second, self.bw_interval)

    async def update(self, mac: str, direction: TrafficDirection, bytes_now: int) -> UsageFigures:
        """Load-or-create the baseline for (mac, direction), roll it forward and persist it."""
        record = await self.store.load(mac, direction)
        if record is None:
            log.debug("baseline_created", mac=mac, dir=direction.value)
            record = BaselineRecord(mac=mac, direction=direction)

        usage = apply_sample(record, bytes_now, self.clock())
        await self.store.save(record)
        return usage
