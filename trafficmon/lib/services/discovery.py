from dataclasses import dataclass
from typing import List, Set, Tuple

import structlog

from trafficmon.lib.dhcp.utils import mac_id
from trafficmon.lib.mqtt.publisher import MQTTPublisher
from trafficmon.lib.nftables.rule import TrafficDirection
from trafficmon.lib.services.identity_resolver import DeviceIdentity
from trafficmon.lib.services.traffic_state import BandwidthSample, UsageFigures

log = structlog.get_logger(__name__)

DEVICE_MODEL = "OpenWrt nft counters"
DEVICE_MANUFACTURER = "OpenWrt"

SeenSet = Set[str]


@dataclass(frozen=True)
class SensorMetric:
    field: str # key in the state payload
    label: str
    device_class: str
    unit: str
    state_class: str


SENSOR_METRICS: Tuple[SensorMetric, ...] = (
    SensorMetric("bytes", "Bytes", "data_size", "B", "total_increasing"),
    SensorMetric("bw", "Bandwidth", "data_rate", "B/s", "measurement"),
    SensorMetric("daily", "Today", "data_size", "B", "total_increasing"),
    SensorMetric("weekly", "This Week", "data_size", "B", "total_increasing"),
)

_DIRECTION_LABEL = {
    TrafficDirection.INBOUND: "In",
    TrafficDirection.OUTBOUND: "Out",
}


def state_topic(base_topic: str, mac: str, direction: TrafficDirection) -> str:
    return f"{base_topic}/{mac}/{direction.value}"


def discovery_messages(
    discovery_prefix: str,
    base_topic: str,
    mac: str,
    name: str,
    direction: TrafficDirection,
) -> List[Tuple[str, dict]]:
    """Home Assistant MQTT discovery configs for every metric of one device direction."""
    mid = mac_id(mac)
    dev_id = f"openwrt_{mid}"
    dev_name = f"LAN {name}"
    label = _DIRECTION_LABEL[direction]

    device = {
        "identifiers": [dev_id],
        "name": dev_name,
        "model": DEVICE_MODEL,
        "manufacturer": DEVICE_MANUFACTURER,
        "connections": [["mac", mac]],
    }

    messages = []
    for metric in SENSOR_METRICS:
        object_id = f"lan_{mid}_{direction.value}_{metric.field}"
        messages.append((
            f"{discovery_prefix}/sensor/{object_id}/config",
            {
                "name": f"{dev_name} {label} {metric.label}",
                "state_topic": state_topic(base_topic, mac, direction),
                "value_template": f"{{{{ value_json.{metric.field} }}}}",
                "unique_id": f"{dev_id}_{direction.value}_{metric.field}",
                "device_class": metric.device_class,
                "unit_of_measurement": metric.unit,
                "state_class": metric.state_class,
                "device": device,
            },
        ))
    return messages


def state_payload(identity: DeviceIdentity, sample: BandwidthSample, usage: UsageFigures) -> dict:
    return {
        "ip": sample.address,
        "mac": identity.mac,
        "name": identity.name,
        "dir": sample.direction.value,
        "bytes": usage.bytes,
        "packets": sample.packets,
        "bw": sample.bandwidth,
        "daily": usage.daily,
        "weekly": usage.weekly,
        "ts": usage.ts,
    }


class DiscoveryPublisher:
    def __init__(self, publisher: MQTTPublisher, base_topic: str, discovery_prefix: str) -> None:
        self.publisher = publisher
        self.base_topic = base_topic
        self.discovery_prefix = discovery_prefix

    async def publish_discovery(self, identity: DeviceIdentity, seen: SeenSet) -> bool:
        """
        Publish retained discovery for both directions of a device, once per MAC per seen set.
        Returns True if discovery was sent by this call.
        """
        if identity.mac in seen:
            return False
        seen.add(identity.mac)

        ok = True
        for direction in (TrafficDirection.INBOUND, TrafficDirection.OUTBOUND):
            for topic, payload in discovery_messages(
                self.discovery_prefix, self.base_topic, identity.mac, identity.name, direction
            ):
                ok = await self.publisher.publish(topic, payload, retain=True) and ok

        log.info("discovery_published", mac=identity.mac, name=identity.name, ok=ok)
        return True

    async def publish_state(self, identity: DeviceIdentity, sample: BandwidthSample, usage: UsageFigures) -> bool:
        topic = state_topic(self.base_topic, identity.mac, sample.direction)
        payload = state_payload(identity, sample, usage)
        log.info("publishing_state", topic=topic, bytes=usage.bytes, bw=sample.bandwidth, daily=usage.daily, weekly=usage.weekly)
        return await self.publisher.publish(topic, payload, retain=False)
