from dataclasses import dataclass
from enum import Enum


class TrafficDirection(Enum):
    INBOUND = "in"   # to the device, matched on ip daddr
    OUTBOUND = "out" # from the device, matched on ip saddr

    @property
    def match_field(self) -> str:
        return "daddr" if self is TrafficDirection.INBOUND else "saddr"


@dataclass(frozen=True)
class CounterRule:
    address: str
    direction: TrafficDirection
    bytes: int
    packets: int

    # Assigned by nftables, only valid for the listing it was read from
    handle: int | None = None

    # False for an owned rule whose counter could not be read (bytes and packets are 0)
    readable: bool = True
