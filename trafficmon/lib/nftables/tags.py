import ipaddress

from trafficmon.lib.constants import NFT_RULE_TAG
from trafficmon.lib.nftables.rule import TrafficDirection

# IPv4 dotted quads never contain ':'
TAG_SEPARATOR = ":"


def encode_tag(address: str, direction: TrafficDirection, namespace: str = NFT_RULE_TAG) -> str:
    """Build the rule comment for (address, direction), e.g. "tm:10.0.0.5:in"."""
    return TAG_SEPARATOR.join((namespace, address, direction.value))


def decode_tag(tag: object, namespace: str = NFT_RULE_TAG) -> tuple[str, TrafficDirection] | None:
    """
    Returns (address, direction) for a tag written by encode_tag, None for anything else.
    Never raises: rules owned by other tooling or half-written comments are simply not ours.
    """
    if not isinstance(tag, str) or not tag.startswith(namespace + TAG_SEPARATOR):
        return None

    parts = tag.split(TAG_SEPARATOR)
    if len(parts) != 3 or parts[0] != namespace:
        return None

    _, address, raw_direction = parts
    try:
        ipaddress.IPv4Address(address)
        direction = TrafficDirection(raw_direction)
    except ValueError:
        return None

    return address, direction
