from typing import List

import structlog

from trafficmon.lib.constants import NFT_RULE_TAG
from trafficmon.lib.nftables.helpers import NftClient
from trafficmon.lib.nftables.rule import CounterRule
from trafficmon.lib.nftables.tags import decode_tag

log = structlog.get_logger(__name__)


def _rule_counter(rule: dict) -> tuple[int, int] | None:
    for e in rule.get("expr", []) or []:
        if not isinstance(e, dict) or "counter" not in e:
            continue
        counter = e.get("counter")
        if not isinstance(counter, dict):
            return None
        nbytes, npackets = counter.get("bytes"), counter.get("packets")
        if isinstance(nbytes, bool) or isinstance(npackets, bool):
            return None
        if not isinstance(nbytes, int) or not isinstance(npackets, int):
            return None
        if nbytes < 0 or npackets < 0:
            return None
        return nbytes, npackets

    return None


def parse_counter_rules(
    nft_json: dict,
    table: str,
    chain: str,
    namespace: str = NFT_RULE_TAG,
    keep_unreadable: bool = False,
) -> List[CounterRule]:
    """
    Turn an `nft -j list chain` document into CounterRules, keeping listing order.
    Rules without our tag are ignored. Tagged rules whose counter cannot be read are dropped
    with a warning, or with keep_unreadable returned as `readable=False` so they can be cleaned up.
    """
    rules: List[CounterRule] = []

    for item in nft_json.get("nftables", []) or []:
        if not isinstance(item, dict):
            continue
        rule = item.get("rule")
        if not isinstance(rule, dict):
            continue

        if rule.get("table") != table or rule.get("chain") != chain:
            continue

        decoded = decode_tag(rule.get("comment"), namespace=namespace)
        if decoded is None:
            continue
        address, direction = decoded

        handle = rule.get("handle")
        handle = handle if isinstance(handle, int) else None

        counter = _rule_counter(rule)
        if counter is None:
            log.warning("counter_unparsable", ip=address, dir=direction.value, handle=handle)
            if keep_unreadable:
                rules.append(CounterRule(address, direction, 0, 0, handle=handle, readable=False))
            continue
        nbytes, npackets = counter

        rules.append(CounterRule(
            address=address,
            direction=direction,
            bytes=nbytes,
            packets=npackets,
            handle=handle,
        ))

    return rules


class CounterReader:
    def __init__(self, nft: NftClient, namespace: str = NFT_RULE_TAG):
        self.nft = nft
        self.namespace = namespace

    async def read(self, keep_unreadable: bool = False) -> List[CounterRule]:
        snapshot = await self.nft.list_chain()
        return parse_counter_rules(
            snapshot,
            table=self.nft.config.table,
            chain=self.nft.config.chain,
            namespace=self.namespace,
            keep_unreadable=keep_unreadable,
        )
